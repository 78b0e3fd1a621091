import logging

import numpy as np
import pandas as pd
import pytest

from tumor_deseq import CountDataSet, PreconditionError
from tumor_deseq.design import (build_formula, check_full_rank,
                                create_design_matrix)


def test_repr(scenario_counts, scenario_coldata):
    dds = CountDataSet(scenario_counts, scenario_coldata)
    assert repr(dds) == "CountDataSet with 2 genes and 4 samples (normal=2, tumor=2)"


def test_metadata_is_matched_by_identifier(scenario_counts, scenario_coldata):
    shuffled = scenario_coldata.loc[["T2", "N1", "T1", "N2"]]
    dds = CountDataSet(scenario_counts, shuffled)
    assert list(dds.coldata.index) == ["N1", "N2", "T1", "T2"]
    assert list(dds.condition) == ["normal", "normal", "tumor", "tumor"]
    np.testing.assert_array_equal(dds.condition_indicator(), [0, 0, 1, 1])


def test_sample_without_metadata_is_fatal(scenario_counts, scenario_coldata):
    with pytest.raises(PreconditionError, match="no metadata row"):
        CountDataSet(scenario_counts, scenario_coldata.drop(index="T2"))


def test_metadata_without_sample_is_fatal(scenario_counts, scenario_coldata):
    extra = pd.concat([scenario_coldata,
                       pd.DataFrame({"condition": ["tumor"], "patient": ["P9"]},
                                    index=["T9"])])
    with pytest.raises(PreconditionError, match="no count column"):
        CountDataSet(scenario_counts, extra)


def test_duplicated_metadata_rows(scenario_counts, scenario_coldata):
    dup = pd.concat([scenario_coldata, scenario_coldata.loc[["N1"]]])
    with pytest.raises(PreconditionError, match="duplicated"):
        CountDataSet(scenario_counts, dup)


@pytest.mark.parametrize("value, match", [
    (-1, "negative"),
    (1.5, "non-integer"),
    (np.nan, "missing"),
])
def test_invalid_count_values(scenario_counts, scenario_coldata, value, match):
    counts = scenario_counts.astype(float)
    counts.iloc[0, 0] = value
    with pytest.raises(PreconditionError, match=match):
        CountDataSet(counts, scenario_coldata)


def test_empty_matrix(scenario_coldata):
    empty = pd.DataFrame(index=[], columns=["N1", "N2", "T1", "T2"], dtype=float)
    with pytest.raises(PreconditionError, match="empty"):
        CountDataSet(empty, scenario_coldata)


def test_single_condition_level(scenario_counts, scenario_coldata):
    coldata = scenario_coldata.assign(condition="tumor")
    with pytest.raises(PreconditionError, match="exactly the levels"):
        CountDataSet(scenario_counts, coldata)


def test_subtype_only_on_tumor_samples(scenario_counts, scenario_coldata):
    coldata = scenario_coldata.assign(subtype=["LumA", None, "LumA", "Basal"])
    with pytest.raises(PreconditionError, match="subtype"):
        CountDataSet(scenario_counts, coldata)

    ok = scenario_coldata.assign(subtype=[None, None, "LumA", "Basal"])
    dds = CountDataSet(scenario_counts, ok)
    assert list(dds.subtypes.dropna()) == ["LumA", "Basal"]


def test_counts_must_be_dataframe(scenario_counts, scenario_coldata):
    with pytest.raises(TypeError):
        CountDataSet(scenario_counts.to_numpy(), scenario_coldata)


def test_from_metadata_joins_by_key(scenario_counts, scenario_coldata, caplog):
    metadata = scenario_coldata.rename_axis("barcode").reset_index()
    metadata = metadata.iloc[[3, 1, 0, 2]]
    metadata = pd.concat([metadata, pd.DataFrame(
        {"barcode": ["X9"], "condition": ["tumor"], "patient": ["P9"]})])

    with caplog.at_level(logging.WARNING, logger="tumor_deseq.dataset"):
        dds = CountDataSet.from_metadata(scenario_counts, metadata)

    assert "Dropping 1 metadata rows" in caplog.text
    assert list(dds.coldata.index) == ["N1", "N2", "T1", "T2"]
    assert list(dds.patients) == ["P1", "P2", "P1", "P2"]


def test_from_metadata_duplicate_keys(scenario_counts, scenario_coldata):
    metadata = scenario_coldata.rename_axis("barcode").reset_index()
    metadata = pd.concat([metadata, metadata.iloc[[0]]])
    with pytest.raises(PreconditionError, match="duplicated sample keys"):
        CountDataSet.from_metadata(scenario_counts, metadata)


def test_from_metadata_missing_key_column(scenario_counts, scenario_coldata):
    with pytest.raises(PreconditionError, match="key column"):
        CountDataSet.from_metadata(scenario_counts, scenario_coldata)


def test_filter_genes_returns_new_dataset(dataset):
    mask = np.zeros(dataset.n_genes, dtype=bool)
    mask[:10] = True
    small = dataset.filter_genes(mask)
    assert small.n_genes == 10
    assert dataset.n_genes == 202
    assert list(small.gene_ids) == list(dataset.gene_ids[:10])


def test_drop_zero_genes(dataset):
    dropped = dataset.drop_zero_genes()
    assert "ZERO" not in dropped.gene_ids
    assert dropped.n_genes == dataset.n_genes - 1


def test_gene_name_lookup(scenario_counts, scenario_coldata):
    dds = CountDataSet(scenario_counts, scenario_coldata, gene_names={"A": "TP53"})
    assert dds.gene_name("A") == "TP53"
    assert dds.gene_name("B") is None


def test_design_matrix(scenario_counts, scenario_coldata):
    dds = CountDataSet(scenario_counts, scenario_coldata)
    X, names, coef = dds.design_matrix()
    assert X.shape == (4, 2)
    assert coef == 1
    assert names[coef] == "C(condition, Treatment(reference='normal'))[T.tumor]"
    np.testing.assert_array_equal(X[:, 1], [0, 0, 1, 1])


def test_build_formula_with_covariates():
    assert build_formula(covariates=["batch"]) == (
        "~ C(condition, Treatment(reference='normal')) + C(batch)")


def test_design_missing_reference(scenario_coldata):
    with pytest.raises(PreconditionError, match="Reference level"):
        create_design_matrix(scenario_coldata, reference_level="healthy")


def test_design_confounded_covariate(scenario_coldata):
    coldata = scenario_coldata.assign(batch=["a", "a", "b", "b"])
    with pytest.raises(PreconditionError, match="not full rank"):
        create_design_matrix(coldata, covariates=["batch"])


def test_check_full_rank():
    assert check_full_rank(np.array([[1, 0], [1, 0], [1, 1], [1, 1]]))
    assert not check_full_rank(np.array([[1, 1], [1, 1], [1, 1]]))
