"""
Multiple testing correction with independent filtering.

Genes are filtered by mean normalized count, a statistic independent of
the test statistic under the null, before Benjamini-Hochberg correction.
The cutoff is the baseMean quantile that maximises the number of
rejections at the target FDR.

Every gene ends up in one of three states, kept in :class:`PadjStatus`:
tested (a numeric q-value exists), filtered (removed by the mean filter,
q-value not applicable) or untested (no p-value to begin with). A filtered
gene carries NaN in the numeric column and must be interpreted through its
status, never through the number.

References:
    - Benjamini Y, Hochberg Y (1995). Controlling the false discovery rate.
      JRSS B 57:289-300
    - Bourgon R, Gentleman R, Huber W (2010). Independent filtering
      increases detection power for high-throughput experiments.
      PNAS 107(21):9546-9551
"""

import enum
import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

MIN_FILTER_GENES = 10


class PadjStatus(str, enum.Enum):
    TESTED = "tested"
    FILTERED = "filtered"
    UNTESTED = "untested"


def status_mask(status, state):
    """
    Boolean mask of the genes in ``state``.

    Compares member by member; numpy would turn the str-based enum members
    into plain strings if the comparison were vectorised.
    """
    state = PadjStatus(state)
    return np.array([PadjStatus(s) is state for s in status], dtype=bool)


def benjamini_hochberg(pvals):
    """
    Benjamini-Hochberg FDR correction.

    NaN p-values are left out of the ranking and stay NaN in the output.

    Parameters
    ----------
    pvals : array-like

    Returns
    -------
    padj : np.ndarray
        Same length as ``pvals``.
    """
    pvals = np.asarray(pvals, dtype=float)
    padj = np.full(pvals.shape, np.nan)
    valid = np.isfinite(pvals)
    m = int(valid.sum())
    if m == 0:
        return padj

    p = pvals[valid]
    order = np.argsort(p, kind="mergesort")
    ranked_p = p[order]

    adj = ranked_p * m / np.arange(1, m + 1)
    # enforce monotone non-decreasing when going backwards
    adj_rev = np.minimum.accumulate(adj[::-1])[::-1]

    out = np.empty(m)
    out[order] = np.clip(adj_rev, 0, 1)
    padj[valid] = out
    return padj


def find_optimal_threshold(base_means, pvalues, alpha=0.01, n_quantiles=50,
                           max_quantile=0.95):
    """
    Scan baseMean quantiles for the cutoff with the most rejections.

    Candidate quantiles run from the fraction of genes with baseMean 0 up
    to ``max_quantile``. The first (lowest) cutoff reaching the maximum
    number of BH rejections at ``alpha`` wins.

    Parameters
    ----------
    base_means : np.ndarray
        Mean normalized counts per gene.
    pvalues : np.ndarray
        Raw p-values per gene (NaN for untested genes).
    alpha : float, default 0.01
        FDR level at which rejections are counted.
    n_quantiles : int, default 50
        Number of candidate quantiles.
    max_quantile : float, default 0.95
        Highest quantile tried.

    Returns
    -------
    float
        Cutoff on baseMean (genes with baseMean >= cutoff are kept).
    float
        Quantile the cutoff corresponds to.
    pd.DataFrame
        ``theta``, ``cutoff`` and ``rejections`` for every candidate.
        Empty when there are too few genes to scan.
    """
    base_means = np.asarray(base_means, dtype=float)
    pvalues = np.asarray(pvalues, dtype=float)

    valid = np.isfinite(pvalues) & np.isfinite(base_means)
    if valid.sum() < MIN_FILTER_GENES:
        return 0.0, 0.0, pd.DataFrame(columns=["theta", "cutoff", "rejections"])

    lower = float(np.mean(base_means[np.isfinite(base_means)] == 0))
    upper = max(max_quantile, lower)
    thetas = np.linspace(lower, upper, n_quantiles)
    cutoffs = np.quantile(base_means[np.isfinite(base_means)], thetas)

    rejections = np.zeros(n_quantiles, dtype=int)
    for i, cutoff in enumerate(cutoffs):
        keep = valid & (base_means >= cutoff)
        if not keep.any():
            continue
        rejections[i] = int(np.sum(benjamini_hochberg(pvalues[keep]) < alpha))

    best = int(np.argmax(rejections))
    curve = pd.DataFrame({"theta": thetas, "cutoff": cutoffs,
                          "rejections": rejections})
    return float(cutoffs[best]), float(thetas[best]), curve


@dataclass
class FilterResult:
    """Outcome of independent filtering plus BH correction."""

    padj: np.ndarray
    status: np.ndarray
    threshold: float
    theta: float
    curve: pd.DataFrame

    @property
    def n_filtered(self):
        return int(status_mask(self.status, PadjStatus.FILTERED).sum())

    @property
    def n_tested(self):
        return int(status_mask(self.status, PadjStatus.TESTED).sum())

    def rejections(self, alpha):
        tested = status_mask(self.status, PadjStatus.TESTED)
        return int(np.sum(tested & (self.padj < alpha)))


def independent_filtering(base_means, pvalues, alpha=0.01, n_quantiles=50,
                          max_quantile=0.95, theta=None, enabled=True):
    """
    Filter genes by mean expression, then apply BH to the rest.

    Parameters
    ----------
    base_means : np.ndarray
        Mean normalized counts per gene (filter criterion).
    pvalues : np.ndarray
        Raw p-values per gene.
    alpha : float, default 0.01
        FDR level used to choose the cutoff.
    n_quantiles, max_quantile
        Passed to :func:`find_optimal_threshold`.
    theta : float, optional
        Fixed cutoff on baseMean instead of searching for one.
    enabled : bool, default True
        When False every gene with a p-value is tested.

    Returns
    -------
    FilterResult
    """
    base_means = np.asarray(base_means, dtype=float)
    pvalues = np.asarray(pvalues, dtype=float)
    G = len(pvalues)

    if not enabled:
        threshold, quantile = 0.0, 0.0
        curve = pd.DataFrame(columns=["theta", "cutoff", "rejections"])
    elif theta is not None:
        threshold, quantile = float(theta), np.nan
        curve = pd.DataFrame(columns=["theta", "cutoff", "rejections"])
    else:
        threshold, quantile, curve = find_optimal_threshold(
            base_means, pvalues, alpha, n_quantiles, max_quantile)

    has_p = np.isfinite(pvalues)
    passes = has_p & (base_means >= threshold) if enabled else has_p

    # filled from a list so the members stay enum objects
    status = np.empty(G, dtype=object)
    status[:] = [PadjStatus.TESTED if kept else
                 PadjStatus.FILTERED if tested else PadjStatus.UNTESTED
                 for kept, tested in zip(passes, has_p)]

    padj = np.full(G, np.nan)
    if passes.any():
        padj[passes] = benjamini_hochberg(pvalues[passes])

    result = FilterResult(padj=padj, status=status, threshold=threshold,
                          theta=quantile, curve=curve)
    logger.info("Independent filtering: cutoff baseMean >= %.4g, %d filtered, "
                "%d tested", threshold, result.n_filtered, result.n_tested)
    return result
