import numpy as np
import pandas as pd
import pytest

import run_tumor_normal
from conftest import N_DOWN, N_UP, SAMPLES, simulate_counts
from tumor_deseq import AnalysisConfig, CountDataSet, PreconditionError
from tumor_deseq.pipeline import (run_analysis, run_clustering, run_deseq,
                                  write_outputs)
from tumor_deseq.results import DEG_COLUMNS

SMALL = AnalysisConfig(restarts=3, k_max=4)


@pytest.fixture(scope="module")
def de_result():
    counts, _ = simulate_counts()
    coldata = pd.DataFrame({"condition": ["normal"] * 4 + ["tumor"] * 4},
                           index=SAMPLES)
    return run_deseq(CountDataSet(counts, coldata))


def test_two_gene_example(scenario_counts, scenario_coldata):
    res = run_deseq(CountDataSet(scenario_counts, scenario_coldata),
                    control_genes=["B"])
    deg = res.deg
    assert deg.loc["A", "regulation"] == "Upregulated"
    assert deg.loc["A", "log2FoldChange"] > 1
    assert deg.loc["A", "padj"] < 0.01
    assert deg.loc["B", "regulation"] == "Non-significant"
    assert list(deg.index) == ["A", "B"]
    assert res.size_factors.index.tolist() == ["N1", "N2", "T1", "T2"]


def test_all_zero_gene_is_excluded(de_result):
    assert de_result.full.loc["ZERO", "baseMean"] == 0
    assert "ZERO" not in de_result.deg.index
    assert de_result.excluded.all_zero == 1


def test_sparse_gene_is_excluded_as_undefined(de_result):
    assert de_result.full.loc["SPARSE", "exclusion"] == "undefined_dispersion"
    assert "SPARSE" not in de_result.deg.index
    assert de_result.excluded.undefined_dispersion >= 1


def test_exclusions_add_up(de_result):
    excluded = de_result.excluded
    assert excluded.total_excluded == len(de_result.full) - len(de_result.deg)
    assert de_result.summary["excluded_total_excluded"] == excluded.total_excluded


def test_recovers_simulated_changes(de_result):
    _, lfc = simulate_counts()
    deg = de_result.deg
    genes = [f"ENSG{i:05d}" for i in range(len(lfc))]
    up = [g for g, v in zip(genes, lfc) if v > 0]
    down = [g for g, v in zip(genes, lfc) if v < 0]
    null = [g for g, v in zip(genes, lfc) if v == 0]

    called = deg["regulation"]
    assert (called.reindex(up) == "Upregulated").sum() >= N_UP - 5
    assert (called.reindex(down) == "Downregulated").sum() >= N_DOWN - 5
    assert called.reindex(null).isin(["Upregulated", "Downregulated"]).sum() <= 5


def test_deg_table_is_ranked(de_result):
    padj = de_result.deg["padj"].dropna().to_numpy()
    assert np.all(np.diff(padj) >= 0)
    assert set(DEG_COLUMNS) <= set(de_result.deg.columns)


def test_filtered_genes_are_non_significant(de_result):
    full = de_result.full
    filtered = full[full["padjStatus"] == "filtered"]
    assert filtered["padj"].isna().all()
    assert (filtered["regulation"] == "Non-significant").all()


def test_thresholds_come_from_config(simulated, coldata):
    counts, _ = simulated
    res = run_deseq(CountDataSet(counts, coldata), AnalysisConfig(lfc_threshold=10.0))
    assert not (res.deg["regulation"] == "Upregulated").any()


def test_prefilter_drops_low_genes(dataset):
    res = run_deseq(dataset, AnalysisConfig(min_count=10))
    assert "ZERO" not in res.full.index
    assert res.excluded.all_zero == 0


def test_missing_control_gene(scenario_counts, scenario_coldata):
    with pytest.raises(PreconditionError, match="control genes"):
        run_deseq(CountDataSet(scenario_counts, scenario_coldata),
                  control_genes=["NOPE"])


def test_clustering_branch(dataset):
    res = run_clustering(dataset, SMALL)
    assert res.stabilized.shape == dataset.counts.shape
    assert list(res.clusters.labels.index) == SAMPLES
    assert set(res.clusters.labels) <= {1, 2}
    assert len(res.elbow) == 4
    assert np.all(np.diff(res.elbow["wcss"]) <= 1e-9)


def test_full_run_is_deterministic(dataset):
    a = run_analysis(dataset, SMALL)
    b = run_analysis(dataset, SMALL)
    pd.testing.assert_frame_equal(a.de.deg, b.de.deg)
    pd.testing.assert_frame_equal(a.samples, b.samples)
    pd.testing.assert_frame_equal(a.clustering.elbow, b.clustering.elbow)


def test_sample_table_joins_by_sample(dataset):
    res = run_analysis(dataset, AnalysisConfig(restarts=2, k_max=3, blind=False))
    samples = res.samples
    assert list(samples.index) == SAMPLES
    assert {"PC1", "PC2", "condition", "cluster"} <= set(samples.columns)
    assert samples.loc["T1", "condition"] == "tumor"


def test_write_outputs(dataset, tmp_path):
    res = run_analysis(dataset, SMALL)
    paths = write_outputs(res, tmp_path / "out")
    for path in paths.values():
        assert path.exists()

    deg = pd.read_csv(paths["deg_results.csv"], index_col=0)
    assert list(deg.columns) == DEG_COLUMNS
    assert len(deg) == len(res.de.deg)

    variance = pd.read_csv(paths["pca_variance.csv"])
    assert variance["label"].iloc[0].startswith("PC1: ")

    clusters = pd.read_csv(paths["clusters.csv"], index_col=0)
    assert list(clusters.columns) == ["cluster"]


def test_command_line(simulated, tmp_path):
    counts, _ = simulated
    counts_path = tmp_path / "counts.csv"
    counts.to_csv(counts_path)

    # metadata rows in a different order than the count columns
    meta = pd.DataFrame({
        "barcode": SAMPLES[::-1],
        "condition": (["normal"] * 4 + ["tumor"] * 4)[::-1],
    })
    meta_path = tmp_path / "meta.csv"
    meta.to_csv(meta_path, index=False)

    config_path = tmp_path / "config.json"
    config_path.write_text('{"restarts": 2, "k_max": 3}')

    outdir = tmp_path / "results"
    run_tumor_normal.main([str(counts_path), str(meta_path), "--config",
                           str(config_path), "--outdir", str(outdir)])

    assert (outdir / "deg_results.csv").exists()
    elbow = pd.read_csv(outdir / "elbow.csv")
    assert list(elbow["k"]) == [1, 2, 3]


def test_two_gene_example_with_an_empty_gene(scenario_counts, scenario_coldata):
    counts = pd.concat([scenario_counts, pd.DataFrame(
        [[0, 0, 0, 0]], index=["Z"], columns=scenario_counts.columns)])
    res = run_deseq(CountDataSet(counts, scenario_coldata), control_genes=["B"])
    assert res.deg.loc["A", "regulation"] == "Upregulated"
    assert "Z" not in res.deg.index
    assert res.full.loc["Z", "padjStatus"] == "untested"
    assert res.excluded.all_zero == 1
    assert res.filtering.n_tested == 2


def test_non_converged_genes_are_excluded_and_counted(dataset):
    res = run_deseq(dataset, AnalysisConfig(glm_max_iter=1, glm_tol=1e-14))
    full = res.full
    failed = full.index[full["exclusion"] == "glm_not_converged"]

    assert len(failed) > 0
    assert not full.loc[failed, "converged"].any()
    assert not set(failed) & set(res.deg.index)
    assert res.excluded.glm_not_converged == len(failed)
    assert res.summary["excluded_glm_not_converged"] == len(failed)
    assert res.excluded.total_excluded == len(full) - len(res.deg)
