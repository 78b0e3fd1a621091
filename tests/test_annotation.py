import numpy as np
import pandas as pd
import pytest

from tumor_deseq.annotation import (MappingResolver, annotate_gene_names,
                                    join_gene_roles, resolve_symbols)


@pytest.fixture
def deg():
    return pd.DataFrame(
        {"log2FoldChange": [2.5, -1.8, 0.1],
         "regulation": ["Upregulated", "Downregulated", "Non-significant"]},
        index=pd.Index(["ENSG01", "ENSG02", "ENSG03"], name="gene_id"))


def test_unresolved_accessions_are_reported():
    resolver = MappingResolver({"ENSG01": "TP53", "ENSG02": "  ", "ENSG04": "MYC"})
    res = resolve_symbols(["ENSG01", "ENSG02", "ENSG03", "ENSG01"], resolver)
    assert res.mapping == {"ENSG01": "TP53"}
    assert res.unresolved == ["ENSG02", "ENSG03"]
    assert res.n_unresolved == 2


def test_annotation_keeps_every_row(deg):
    res = resolve_symbols(deg.index, MappingResolver({"ENSG02": "EGFR"}))
    out = annotate_gene_names(deg, res)
    assert len(out) == len(deg)
    assert out.loc["ENSG02", "gene_name"] == "EGFR"
    assert pd.isna(out.loc["ENSG01", "gene_name"])
    assert "gene_name" not in deg.columns


def test_role_join_is_inner_and_counts_unmatched(deg):
    roles = pd.DataFrame({"gene_id": ["ENSG01", "ENSG03", "ENSG99"],
                          "role": ["tumor suppressor", "oncogene", "oncogene"]})
    before = deg.copy()
    joined = join_gene_roles(deg, roles)

    assert list(joined.table.index) == ["ENSG01", "ENSG03"]
    assert joined.table.loc["ENSG03", "role"] == "oncogene"
    assert joined.n_unmatched == 1
    assert joined.unmatched == ["ENSG02"]
    pd.testing.assert_frame_equal(deg, before)


def test_role_join_drops_duplicate_reference_rows(deg):
    roles = pd.DataFrame({"gene_id": ["ENSG01", "ENSG01"],
                          "role": ["oncogene", "fusion"]})
    joined = join_gene_roles(deg, roles)
    assert len(joined.table) == 1
    assert np.all(joined.table["role"] == "oncogene")


def test_role_join_needs_columns(deg):
    with pytest.raises(ValueError, match="roles table"):
        join_gene_roles(deg, pd.DataFrame({"symbol": ["TP53"]}))
