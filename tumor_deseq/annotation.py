"""
Gene annotation joins.

Symbol lookup and the curated gene-role reference live outside this package;
they are reached through the narrow interfaces below. Unresolved accessions
are reported explicitly, and joins never modify the tables they start from.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable, Mapping, Protocol

import pandas as pd

logger = logging.getLogger(__name__)


class GeneSymbolResolver(Protocol):
    """Anything that maps gene accessions to display names."""

    def resolve(self, accessions: Iterable[str]) -> Mapping[str, str]:
        ...


class MappingResolver:
    """Resolver backed by an in-memory accession -> name table."""

    def __init__(self, names):
        self.names = dict(names)

    def resolve(self, accessions):
        return {acc: self.names[acc] for acc in accessions if acc in self.names}


@dataclass
class SymbolResolution:
    """Resolved names plus the accessions that have none."""

    mapping: dict
    unresolved: list = field(default_factory=list)

    @property
    def n_unresolved(self):
        return len(self.unresolved)


def resolve_symbols(accessions, resolver):
    """
    Resolve accessions to names through ``resolver``.

    Accessions the resolver leaves out, or maps to None or an empty or
    blank string, are listed in ``unresolved`` instead of receiving a
    placeholder name.

    Returns
    -------
    SymbolResolution
    """
    accessions = list(dict.fromkeys(str(a) for a in accessions))
    raw = resolver.resolve(accessions)

    mapping = {}
    unresolved = []
    for acc in accessions:
        name = raw.get(acc)
        if name is None or not str(name).strip():
            unresolved.append(acc)
        else:
            mapping[acc] = str(name).strip()

    if unresolved:
        logger.warning("%d of %d accessions have no gene symbol",
                       len(unresolved), len(accessions))
    return SymbolResolution(mapping=mapping, unresolved=unresolved)


def annotate_gene_names(deg, resolution, column="gene_name"):
    """
    Add a name column to a gene-indexed table without dropping rows.

    Unresolved genes get a missing value (not an empty string).

    Returns
    -------
    pd.DataFrame
        A new table; ``deg`` is unchanged.
    """
    out = deg.copy()
    out[column] = pd.Series(resolution.mapping, dtype=object).reindex(out.index)
    return out


@dataclass
class RoleJoin:
    """Inner join of DEG rows with a gene-role reference."""

    table: pd.DataFrame
    n_unmatched: int
    unmatched: list


def join_gene_roles(deg, roles, key="gene_id", role_col="role"):
    """
    Inner-join a curated gene-role table onto the DEG table.

    Parameters
    ----------
    deg : pd.DataFrame
        Indexed by gene accession.
    roles : pd.DataFrame
        Has an accession column ``key`` and a role column ``role_col``.

    Returns
    -------
    RoleJoin
        Joined table plus the DEG genes without a role entry. The input
        tables are left untouched.
    """
    if key not in roles.columns or role_col not in roles.columns:
        raise ValueError(f"roles table needs columns '{key}' and '{role_col}'")

    ref = roles[[key, role_col]].drop_duplicates(subset=[key]).copy()
    ref[key] = ref[key].astype(str)
    ref = ref.set_index(key)

    joined = deg.join(ref, how="inner")
    unmatched = [g for g in deg.index if g not in ref.index]
    logger.info("%d genes matched the role reference, %d did not",
                len(joined), len(unmatched))
    return RoleJoin(table=joined, n_unmatched=len(unmatched), unmatched=unmatched)
