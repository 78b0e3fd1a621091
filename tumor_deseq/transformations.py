"""
Variance stabilizing transformations for RNA-seq count data.

Two transformations prepare counts for distance-based methods (PCA,
k-means):

- vst: derived from the fitted dispersion trend. For a trend of the form
  alpha(mu) = asympt_disp + extra_pois / mu the transform has a closed form;
  for a LOWESS trend the integral of 1 / sqrt(mu + alpha(mu) mu^2) is taken
  numerically. Flattens the variance over the whole expression range but
  needs a usable trend.
- log2: log2(count / size_factor + pseudocount). No dependency on the
  dispersion fit; low counts keep an inflated variance.

Both are monotone in the raw count for a fixed size factor and keep the
shape of the input.

References:
    - Anders S, Huber W (2010). Differential expression analysis for sequence
      count data. Genome Biology 11:R106
    - Love MI, Huber W, Anders S (2014). Moderated estimation of fold change
      and dispersion for RNA-seq data with DESeq2. Genome Biology 15:550
"""

import logging

import numpy as np
import pandas as pd
from scipy.integrate import cumulative_trapezoid

from .design import intercept_only
from .dispersion import estimate_dispersions
from .exceptions import PreconditionError
from .size_factors import estimate_size_factors

logger = logging.getLogger(__name__)

VST_METHODS = ("vst", "log2")


def _unwrap(counts):
    if hasattr(counts, "counts_array"):
        return counts.counts_array(), counts.counts.index, counts.counts.columns
    if isinstance(counts, pd.DataFrame):
        return counts.to_numpy(dtype=float), counts.index, counts.columns
    return np.asarray(counts, dtype=float), None, None


def _wrap(values, index, columns):
    if index is None:
        return values
    return pd.DataFrame(values, index=index, columns=columns)


def norm_transform(counts, size_factors, pseudocount=1.0):
    """
    Simple log2 transformation of normalized counts.

    Parameters
    ----------
    counts : np.ndarray or pd.DataFrame
        Raw count matrix (genes x samples).
    size_factors : np.ndarray
        Size factors for each sample.
    pseudocount : float, default 1.0
        Added before taking the log.

    Returns
    -------
    np.ndarray or pd.DataFrame
        log2(counts / size_factors + pseudocount), same shape as input.
    """
    values, index, columns = _unwrap(counts)
    if pseudocount <= 0:
        raise ValueError("pseudocount must be positive")
    norm_counts = values / np.asarray(size_factors, dtype=float)
    return _wrap(np.log2(norm_counts + pseudocount), index, columns)


def _vst_parametric(norm_counts, asympt_disp, extra_pois):
    q = norm_counts
    a0, a1 = asympt_disp, extra_pois
    return np.log((1.0 + a1 + 2.0 * a0 * q
                   + 2.0 * np.sqrt(a0 * q * (1.0 + a1 + a0 * q)))
                  / (4.0 * a0)) / np.log(2.0)


def _vst_numeric(norm_counts, trend, n_grid=1000):
    top = max(float(norm_counts.max()), 1.0)
    xg = np.sinh(np.linspace(0.0, np.arcsinh(top), n_grid))[1:]
    integrand = 1.0 / np.sqrt(xg + trend(xg) * xg ** 2)

    # integral of 1/sqrt(mu) on [0, xg[0]] closes the gap at zero
    cum = 2.0 * np.sqrt(xg[0]) + cumulative_trapezoid(integrand, xg, initial=0.0)
    x = np.concatenate([[0.0], xg])
    f = np.concatenate([[0.0], cum])
    raw = np.interp(norm_counts, x, f)

    # rescale so that highly expressed genes sit on the log2 scale
    row_means = norm_counts.mean(axis=1)
    h1, h2 = np.quantile(row_means, [0.95, 0.999])
    f1, f2 = np.interp([h1, h2], x, f)
    if h1 > 0 and h2 > h1 and f2 > f1:
        eta = (np.log2(h2) - np.log2(h1)) / (f2 - f1)
        xi = np.log2(h1) - eta * f1
    else:
        eta, xi = 1.0 / np.log(2.0), 0.0
    return eta * raw + xi


def _usable_trend(trend):
    if trend is None:
        return False
    if trend.is_parametric:
        a0, a1 = trend.coefs
        return np.isfinite(a0) and np.isfinite(a1) and a0 > 0 and a1 >= 0
    return trend.x_smooth is not None and len(trend.x_smooth) > 1


def vst(counts, size_factors, trend):
    """
    Variance stabilizing transformation from a fitted dispersion trend.

    Parameters
    ----------
    counts : np.ndarray or pd.DataFrame
        Raw count matrix (genes x samples).
    size_factors : np.ndarray
        Size factors for each sample.
    trend : DispersionTrend
        Fitted mean-dispersion relationship.

    Returns
    -------
    np.ndarray or pd.DataFrame
        Transformed values, same shape as input.

    Notes
    -----
    With alpha(mu) = a0 + a1 / mu the variance is (1 + a1) mu + a0 mu^2 and

        vst(q) = log2((1 + a1 + 2 a0 q + 2 sqrt(a0 q (1 + a1 + a0 q))) / (4 a0))

    which approaches log2(q) for large q.
    """
    values, index, columns = _unwrap(counts)
    if not _usable_trend(trend):
        raise ValueError("vst needs a fitted dispersion trend with positive coefficients")

    norm_counts = values / np.asarray(size_factors, dtype=float)
    if trend.is_parametric:
        transformed = _vst_parametric(norm_counts, *trend.coefs)
    else:
        transformed = _vst_numeric(norm_counts, trend)
    return _wrap(transformed, index, columns)


def blind_trend(counts, size_factors, fit_type="parametric", min_disp=1e-8,
                max_disp=10.0, n_jobs=1):
    """
    Dispersion trend fitted without the condition labels.

    Uses an intercept-only design so the transform does not see which
    samples are tumor and which are normal.
    """
    values, _, _ = _unwrap(counts)
    S = values.shape[1]
    table = estimate_dispersions(
        values, size_factors, intercept_only(S), groups=np.zeros(S),
        fit_type=fit_type, min_disp=min_disp, max_disp=max_disp, n_jobs=n_jobs)
    return table.trend


def stabilize(counts, size_factors=None, method="vst", trend=None,
              fit_type="parametric", pseudocount=1.0, size_factor_type="ratio",
              n_jobs=1):
    """
    Variance-stabilize a count matrix with the selected method.

    Parameters
    ----------
    counts : CountDataSet, pd.DataFrame or np.ndarray
        Raw counts (genes x samples).
    size_factors : np.ndarray, optional
        Estimated from the counts when None.
    method : {"vst", "log2"}
        Transformation to apply.
    trend : DispersionTrend, optional
        Trend to derive the vst from. When None the trend is fitted blind
        (intercept-only design).
    fit_type : str, default "parametric"
        Trend type for the blind fit.
    pseudocount : float, default 1.0
        Used by the log2 method and the fallback.

    Returns
    -------
    pd.DataFrame or np.ndarray
        Stabilized matrix with the shape of the input. ``vst`` falls back to
        ``log2`` with a warning when no usable trend can be obtained.
    """
    if method not in VST_METHODS:
        raise ValueError(f"Unknown method: {method}. Use 'vst' or 'log2'.")

    values, index, columns = _unwrap(counts)
    if size_factors is None:
        size_factors = estimate_size_factors(values, type=size_factor_type)

    if method == "vst":
        if trend is None:
            try:
                trend = blind_trend(values, size_factors, fit_type=fit_type,
                                    n_jobs=n_jobs)
            except PreconditionError as exc:
                logger.warning("Blind dispersion fit failed: %s", exc)
                trend = None

        if _usable_trend(trend):
            logger.info("Applying vst from %r", trend)
            return _wrap(vst(values, size_factors, trend), index, columns)
        logger.warning("No usable dispersion trend for vst; falling back to log2")

    return _wrap(norm_transform(values, size_factors, pseudocount), index, columns)
