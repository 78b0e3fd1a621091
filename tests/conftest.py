"""
Shared fixtures: simulated negative binomial counts for a 4 normal vs
4 tumor design.
"""
import numpy as np
import pandas as pd
import pytest

from tumor_deseq import CountDataSet

SAMPLES = ["N1", "N2", "N3", "N4", "T1", "T2", "T3", "T4"]
CONDITIONS = ["normal"] * 4 + ["tumor"] * 4
SIZE_FACTORS = np.array([0.8, 1.0, 1.2, 1.1, 0.9, 1.0, 1.3, 0.7])

N_GENES = 200
N_UP = 20
N_DOWN = 20


def simulate_counts(seed=20240101, n_genes=N_GENES):
    rng = np.random.default_rng(seed)
    base = np.exp(rng.normal(np.log(200.0), 0.5, size=n_genes))

    lfc = np.zeros(n_genes)
    lfc[:N_UP] = 3.0
    lfc[N_UP:N_UP + N_DOWN] = -3.0

    is_tumor = np.array([c == "tumor" for c in CONDITIONS])
    mu = base[:, None] * SIZE_FACTORS[None, :] * np.where(is_tumor, 2.0 ** lfc[:, None], 1.0)
    alpha = 0.05 + 1.0 / mu
    n = 1.0 / alpha
    counts = rng.negative_binomial(n, n / (n + mu))

    genes = [f"ENSG{i:05d}" for i in range(n_genes)]
    df = pd.DataFrame(counts, index=genes, columns=SAMPLES)

    # one gene without reads, one with a single read-bearing sample per condition
    df.loc["ZERO"] = 0
    df.loc["SPARSE"] = [0, 0, 5, 0, 0, 3, 0, 0]
    return df.astype(np.int64), lfc


@pytest.fixture
def simulated():
    counts, lfc = simulate_counts()
    return counts, lfc


@pytest.fixture
def coldata():
    return pd.DataFrame({
        "patient": ["P1", "P2", "P3", "P4", "P1", "P2", "P3", "P4"],
        "condition": CONDITIONS,
        "subtype": [None] * 4 + ["LumA", "LumA", "Basal", "Basal"],
    }, index=SAMPLES)


@pytest.fixture
def dataset(simulated, coldata):
    counts, _ = simulated
    return CountDataSet(counts, coldata)


@pytest.fixture
def scenario_counts():
    return pd.DataFrame(
        [[10, 12, 100, 110], [50, 52, 48, 51]],
        index=["A", "B"], columns=["N1", "N2", "T1", "T2"])


@pytest.fixture
def scenario_coldata():
    return pd.DataFrame(
        {"condition": ["normal", "normal", "tumor", "tumor"],
         "patient": ["P1", "P2", "P1", "P2"]},
        index=["N1", "N2", "T1", "T2"])
