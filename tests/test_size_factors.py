import numpy as np
import pytest

from tumor_deseq import PreconditionError
from tumor_deseq.size_factors import estimate_size_factors, log_geometric_means
from tumor_deseq.utils import base_means, filter_low_counts, normalize_counts


def test_known_example():
    counts = np.array([[100, 200], [50, 100], [25, 50]])
    sf = estimate_size_factors(counts)
    np.testing.assert_allclose(sf, [1 / np.sqrt(2), np.sqrt(2)])


def test_scaling_one_sample_with_fixed_reference(simulated):
    counts, _ = simulated
    values = counts.to_numpy(dtype=float)
    geo = np.exp(log_geometric_means(values))

    scaled = values.copy()
    scaled[:, 2] *= 3

    sf = estimate_size_factors(values, geo_means=geo, center=False)
    sf_scaled = estimate_size_factors(scaled, geo_means=geo, center=False)

    np.testing.assert_allclose(sf_scaled[2], 3 * sf[2], rtol=1e-12)
    np.testing.assert_allclose(np.delete(sf_scaled, 2), np.delete(sf, 2), rtol=1e-12)
    np.testing.assert_allclose(normalize_counts(scaled, sf_scaled),
                               normalize_counts(values, sf), rtol=1e-12)


def test_scaling_one_sample_relative_factors(simulated):
    counts, _ = simulated
    values = counts.to_numpy(dtype=float)
    scaled = values.copy()
    scaled[:, 5] *= 4

    sf = estimate_size_factors(values)
    sf_scaled = estimate_size_factors(scaled)

    ratio = sf / sf[5]
    ratio_scaled = sf_scaled / sf_scaled[5]
    others = [j for j in range(values.shape[1]) if j != 5]
    np.testing.assert_allclose(ratio_scaled[others], ratio[others] / 4, rtol=1e-10)


def test_recovers_simulated_depths(simulated):
    from conftest import SIZE_FACTORS
    counts, _ = simulated
    sf = estimate_size_factors(counts.to_numpy())
    expected = SIZE_FACTORS / np.exp(np.mean(np.log(SIZE_FACTORS)))
    np.testing.assert_allclose(sf, expected, rtol=0.15)


def test_every_gene_has_a_zero():
    counts = np.array([[0, 5, 3], [4, 0, 2]])
    with pytest.raises(PreconditionError, match="poscounts"):
        estimate_size_factors(counts)

    sf = estimate_size_factors(counts, type="poscounts")
    assert np.all(np.isfinite(sf)) and np.all(sf > 0)


def test_control_genes_restrict_the_ratios(scenario_counts):
    values = scenario_counts.to_numpy()
    sf = estimate_size_factors(values, control_genes=np.array([False, True]))
    geo = np.exp(np.mean(np.log(values[1])))
    np.testing.assert_allclose(sf, values[1] / geo)


def test_unknown_type():
    with pytest.raises(ValueError):
        estimate_size_factors(np.ones((3, 2)), type="tmm")


def test_normalize_counts_keeps_frame(scenario_counts):
    out = normalize_counts(scenario_counts, np.array([1.0, 2.0, 1.0, 2.0]))
    assert list(out.columns) == list(scenario_counts.columns)
    assert out.loc["A", "N2"] == 6.0

    with pytest.raises(ValueError):
        normalize_counts(scenario_counts, np.ones(3))


def test_base_means_and_low_count_filter():
    counts = np.array([[100, 200], [1, 2], [50, 100]])
    np.testing.assert_allclose(base_means(counts, np.ones(2)), [150, 1.5, 75])
    np.testing.assert_array_equal(
        filter_low_counts(counts, min_count=10, min_samples=2), [True, False, True])
