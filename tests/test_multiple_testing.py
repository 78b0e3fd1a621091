import numpy as np
import pytest
from statsmodels.stats.multitest import multipletests

from tumor_deseq.multiple_testing import (PadjStatus, benjamini_hochberg,
                                          find_optimal_threshold,
                                          independent_filtering, status_mask)


@pytest.fixture
def pvalues():
    rng = np.random.default_rng(9)
    return np.concatenate([rng.uniform(0, 1, 300), rng.uniform(0, 1e-4, 50)])


def test_bh_matches_statsmodels(pvalues):
    expected = multipletests(pvalues, method="fdr_bh")[1]
    np.testing.assert_allclose(benjamini_hochberg(pvalues), expected, rtol=1e-12)


def test_bh_never_below_raw_and_monotone(pvalues):
    padj = benjamini_hochberg(pvalues)
    assert np.all(padj >= pvalues)
    order = np.argsort(pvalues)
    assert np.all(np.diff(padj[order]) >= 0)
    assert np.all(padj <= 1)


def test_bh_preserves_nan_and_length():
    p = np.array([0.01, np.nan, 0.04, 0.03, np.nan])
    padj = benjamini_hochberg(p)
    assert padj.shape == p.shape
    assert np.isnan(padj[[1, 4]]).all()
    np.testing.assert_allclose(padj[[0, 2, 3]], [0.03, 0.04, 0.04])


def test_bh_all_nan():
    assert np.isnan(benjamini_hochberg(np.array([np.nan, np.nan]))).all()


def test_filtering_increases_rejections():
    rng = np.random.default_rng(2)
    base_means = np.arange(1.0, 1001.0)
    p = rng.uniform(0, 1, 1000)
    p[800:] = rng.uniform(0, 5e-3, 200)

    unfiltered = int(np.sum(benjamini_hochberg(p) < 0.01))
    threshold, theta, curve = find_optimal_threshold(base_means, p, alpha=0.01)
    assert threshold > 1.0
    assert 0.0 < theta <= 0.95
    assert curve["rejections"].max() >= unfiltered
    assert len(curve) == 50

    result = independent_filtering(base_means, p, alpha=0.01)
    assert result.threshold == threshold
    assert result.rejections(0.01) == curve["rejections"].max()


def test_status_is_tagged():
    base_means = np.array([0.0, 1.0, 2.0, 50.0, 80.0] + [100.0] * 10)
    p = np.array([np.nan, 1e-8, 0.5, 1e-6, 0.2] + [0.3] * 10)
    result = independent_filtering(base_means, p, alpha=0.05, theta=10.0)

    assert result.status[0] == PadjStatus.UNTESTED
    assert result.status[1] == PadjStatus.FILTERED
    assert result.status[2] == PadjStatus.FILTERED
    assert result.status[3] == PadjStatus.TESTED
    assert np.isnan(result.padj[[0, 1, 2]]).all()
    assert np.isfinite(result.padj[3:]).all()
    assert result.n_filtered == 2
    assert result.n_tested == 12


def test_cutoff_scan_starts_at_zero_mean_fraction():
    base_means = np.concatenate([np.zeros(20), np.arange(1.0, 81.0)])
    p = np.concatenate([np.full(20, np.nan), np.linspace(0.001, 1, 80)])
    _, _, curve = find_optimal_threshold(base_means, p, alpha=0.1)
    assert curve["theta"].iloc[0] == pytest.approx(0.2)
    assert curve["theta"].iloc[-1] == pytest.approx(0.95)


def test_few_genes_skip_the_search():
    threshold, theta, curve = find_optimal_threshold(
        np.array([1.0, 2.0]), np.array([0.01, 0.5]))
    assert threshold == 0.0
    assert curve.empty


def test_disabled_filtering_tests_everything(pvalues):
    base_means = np.linspace(0, 100, pvalues.size)
    result = independent_filtering(base_means, pvalues, enabled=False)
    assert result.n_filtered == 0
    np.testing.assert_allclose(result.padj, benjamini_hochberg(pvalues))


def test_status_members_survive_the_array():
    result = independent_filtering(np.array([1.0, 5.0]), np.array([np.nan, 0.01]),
                                   alpha=0.05, enabled=False)
    assert all(type(s) is PadjStatus for s in result.status)
    assert result.status[0] is PadjStatus.UNTESTED
    assert result.status[1] is PadjStatus.TESTED
    assert result.n_tested == 1
    assert result.n_filtered == 0
    assert result.rejections(0.05) == 1


def test_status_mask_accepts_values():
    mask = status_mask(["tested", PadjStatus.FILTERED, PadjStatus.TESTED],
                       PadjStatus.TESTED)
    np.testing.assert_array_equal(mask, [True, False, True])
