"""
CountDataSet container for tumor-vs-normal RNA-seq counts.

Holds the raw integer count matrix (genes x samples) together with the
per-sample metadata (patient, condition, optional subtype). Samples are
matched to metadata by identifier, never by position: a count column with
no metadata row is a fatal error rather than a silent misalignment.

The container is read-only. Gene filtering returns a new data set, and
every analysis result is computed from it by the functions in
:mod:`tumor_deseq.pipeline`.

References:
    - Love MI, Huber W, Anders S (2014). Moderated estimation of fold change
      and dispersion for RNA-seq data with DESeq2. Genome Biology 15:550
"""

import logging

import numpy as np
import pandas as pd

from .design import coefficient_index, create_design_matrix
from .exceptions import PreconditionError

logger = logging.getLogger(__name__)


class CountDataSet:
    """
    Raw counts plus sample design for a two-condition comparison.

    Parameters
    ----------
    counts : pd.DataFrame
        Raw count matrix (genes x samples). Index holds stable gene
        accessions, columns hold sample barcodes.
    coldata : pd.DataFrame
        Sample metadata indexed by sample barcode. Must contain the
        condition column; ``patient`` and ``subtype`` are optional.
    reference_level : str, default "normal"
        Baseline condition.
    treatment_level : str, default "tumor"
        Condition compared against the baseline.
    condition_col : str, default "condition"
        Name of the condition column in coldata.
    gene_names : mapping or pd.Series, optional
        Accession -> display name.

    Attributes
    ----------
    counts : pd.DataFrame
        Validated integer counts.
    coldata : pd.DataFrame
        Metadata reordered to match ``counts.columns``.

    Examples
    --------
    >>> counts = pd.DataFrame(
    ...     [[10, 12, 100, 110], [50, 52, 48, 51]],
    ...     index=["A", "B"], columns=["N1", "N2", "T1", "T2"])
    >>> coldata = pd.DataFrame(
    ...     {"condition": ["normal", "normal", "tumor", "tumor"]},
    ...     index=["N1", "N2", "T1", "T2"])
    >>> dds = CountDataSet(counts, coldata)
    >>> dds
    CountDataSet with 2 genes and 4 samples (normal=2, tumor=2)
    """

    def __init__(self, counts, coldata, reference_level="normal",
                 treatment_level="tumor", condition_col="condition",
                 gene_names=None):
        if not isinstance(counts, pd.DataFrame):
            raise TypeError("counts must be a pandas DataFrame (genes x samples)")
        if not isinstance(coldata, pd.DataFrame):
            raise TypeError("coldata must be a pandas DataFrame")

        self.reference_level = reference_level
        self.treatment_level = treatment_level
        self.condition_col = condition_col

        self.counts = _validate_counts(counts)
        self.coldata = _align_coldata(self.counts, coldata)
        _validate_conditions(self.coldata, condition_col,
                             reference_level, treatment_level)

        if gene_names is None:
            self.gene_names = pd.Series(dtype=object)
        else:
            self.gene_names = pd.Series(gene_names, dtype=object)

    @classmethod
    def from_metadata(cls, counts, metadata, sample_col="barcode",
                      condition_col="condition", reference_level="normal",
                      treatment_level="tumor", gene_names=None):
        """
        Join an external sample-metadata table onto a count matrix by key.

        Parameters
        ----------
        counts : pd.DataFrame
            Raw counts (genes x samples); columns are sample identifiers.
        metadata : pd.DataFrame
            One row per sample, in any order, with a key column matching
            the count columns.
        sample_col : str, default "barcode"
            Key column in metadata.

        Returns
        -------
        CountDataSet

        Raises
        ------
        PreconditionError
            If the key column is missing or duplicated, or a sample in the
            matrix has no metadata row.
        """
        if sample_col not in metadata.columns:
            raise PreconditionError(f"metadata has no key column '{sample_col}'")

        keys = metadata[sample_col].astype(str)
        dup = keys[keys.duplicated()].unique()
        if len(dup):
            raise PreconditionError(
                f"metadata has duplicated sample keys: {', '.join(sorted(dup)[:5])}"
            )

        coldata = metadata.drop(columns=[sample_col]).copy()
        coldata.index = pd.Index(keys.values, name="sample")

        extra = coldata.index.difference(counts.columns.astype(str))
        if len(extra):
            logger.warning("Dropping %d metadata rows with no count column", len(extra))
            coldata = coldata.drop(index=extra)

        return cls(counts, coldata, reference_level=reference_level,
                   treatment_level=treatment_level, condition_col=condition_col,
                   gene_names=gene_names)

    # ------------------------------------------------------------------
    # accessors

    @property
    def gene_ids(self):
        return np.asarray(self.counts.index)

    @property
    def sample_ids(self):
        return np.asarray(self.counts.columns)

    @property
    def n_genes(self):
        return self.counts.shape[0]

    @property
    def n_samples(self):
        return self.counts.shape[1]

    @property
    def condition(self):
        return self.coldata[self.condition_col].astype(str)

    @property
    def patients(self):
        if "patient" not in self.coldata.columns:
            return None
        return self.coldata["patient"]

    @property
    def subtypes(self):
        if "subtype" not in self.coldata.columns:
            return None
        return self.coldata["subtype"]

    def counts_array(self):
        """Raw counts as a float ndarray (genes x samples)."""
        return self.counts.to_numpy(dtype=float)

    def condition_indicator(self):
        """1.0 for treatment samples, 0.0 for reference samples."""
        return (self.condition == self.treatment_level).to_numpy(dtype=float)

    def design_matrix(self, covariates=()):
        """
        Treatment-coded design matrix and the index of the tested coefficient.

        Returns
        -------
        np.ndarray
            Design matrix (samples x parameters).
        list
            Column names.
        int
            Index of the treatment-vs-reference coefficient.
        """
        X, names = create_design_matrix(
            self.coldata, self.condition_col, self.reference_level, covariates)
        coef = coefficient_index(names, self.condition_col, self.treatment_level)
        return X, names, coef

    def gene_name(self, accession):
        """Display name of a gene, or None when unknown."""
        name = self.gene_names.get(accession)
        if name is None or (isinstance(name, float) and np.isnan(name)):
            return None
        return name

    # ------------------------------------------------------------------
    # drop-only filtering

    def filter_genes(self, mask):
        """
        Keep only the genes where ``mask`` is True.

        Parameters
        ----------
        mask : array-like of bool or pd.Series
            One entry per gene. A Series is aligned on gene identifier.

        Returns
        -------
        CountDataSet
            New data set; this one is unchanged.
        """
        if isinstance(mask, pd.Series):
            mask = mask.reindex(self.counts.index).fillna(False).to_numpy(dtype=bool)
        mask = np.asarray(mask, dtype=bool)
        if mask.shape != (self.n_genes,):
            raise ValueError(f"mask must have one entry per gene ({self.n_genes})")

        kept = self.gene_names[self.gene_names.index.isin(self.counts.index[mask])]
        return CountDataSet(
            self.counts.loc[mask], self.coldata,
            reference_level=self.reference_level,
            treatment_level=self.treatment_level,
            condition_col=self.condition_col,
            gene_names=kept if len(kept) else None,
        )

    def drop_zero_genes(self):
        """Drop genes with no reads in any sample."""
        return self.filter_genes(self.counts.sum(axis=1).to_numpy() > 0)

    def __repr__(self):
        G, S = self.counts.shape
        levels = self.condition.value_counts()
        parts = ", ".join(
            f"{lvl}={int(levels.get(lvl, 0))}"
            for lvl in (self.reference_level, self.treatment_level)
        )
        return f"CountDataSet with {G} genes and {S} samples ({parts})"


def _validate_counts(counts):
    if counts.shape[0] == 0 or counts.shape[1] == 0:
        raise PreconditionError("count matrix is empty")
    if counts.index.has_duplicates:
        raise PreconditionError("count matrix has duplicated gene identifiers")
    if counts.columns.has_duplicates:
        raise PreconditionError("count matrix has duplicated sample identifiers")

    try:
        values = counts.to_numpy(dtype=float)
    except (TypeError, ValueError) as exc:
        raise PreconditionError(f"count matrix is not numeric: {exc}") from exc

    if not np.all(np.isfinite(values)):
        raise PreconditionError("count matrix contains missing or infinite values")
    if np.any(values < 0):
        raise PreconditionError("count matrix contains negative values")
    if np.any(values != np.round(values)):
        raise PreconditionError("count matrix contains non-integer values")

    out = pd.DataFrame(values.astype(np.int64), index=counts.index.astype(str),
                       columns=counts.columns.astype(str))
    out.index.name = counts.index.name or "gene"
    return out


def _align_coldata(counts, coldata):
    coldata = coldata.copy()
    coldata.index = coldata.index.astype(str)
    if coldata.index.has_duplicates:
        dup = coldata.index[coldata.index.duplicated()].unique()
        raise PreconditionError(
            f"coldata has duplicated sample identifiers: {', '.join(dup[:5])}"
        )

    missing = counts.columns.difference(coldata.index)
    if len(missing):
        raise PreconditionError(
            f"{len(missing)} samples have no metadata row: "
            f"{', '.join(sorted(missing)[:5])}"
        )
    extra = coldata.index.difference(counts.columns)
    if len(extra):
        raise PreconditionError(
            f"{len(extra)} metadata rows have no count column: "
            f"{', '.join(sorted(extra)[:5])}"
        )

    # reorder by identifier
    return coldata.loc[counts.columns]


def _validate_conditions(coldata, condition_col, reference_level, treatment_level):
    if condition_col not in coldata.columns:
        raise PreconditionError(f"coldata has no condition column '{condition_col}'")

    cond = coldata[condition_col]
    if cond.isna().any():
        raise PreconditionError("every sample needs a condition label")

    levels = set(cond.astype(str))
    expected = {reference_level, treatment_level}
    if levels != expected:
        raise PreconditionError(
            f"condition must take exactly the levels {sorted(expected)}, "
            f"found {sorted(levels)}"
        )

    if "subtype" in coldata.columns:
        tagged = coldata["subtype"].notna() & (cond.astype(str) != treatment_level)
        if tagged.any():
            raise PreconditionError(
                f"subtype is only defined for {treatment_level} samples; "
                f"found it on {', '.join(coldata.index[tagged][:5])}"
            )
