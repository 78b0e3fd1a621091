"""
Dispersion estimation for the negative binomial model.

Three steps, as in DESeq2:

1. gene-wise estimates maximising the Cox-Reid adjusted profile likelihood;
2. a smooth trend of dispersion against mean normalized count;
3. empirical-Bayes shrinkage of each gene toward the trend (MAP), except for
   genes lying far above the trend, which keep their own estimate.

Genes that cannot produce a gene-wise estimate (all zeros, or fewer than two
non-zero samples in some condition) stay in the table with ``defined=False``
and do not take part in fitting the trend or the prior.

References:
    - Love MI, Huber W, Anders S (2014). Moderated estimation of fold change
      and dispersion for RNA-seq data with DESeq2. Genome Biology 15:550
    - Cox DR, Reid N (1987). Parameter orthogonality and approximate
      conditional inference. JRSS B 49:1-39
    - Cleveland WS (1979). Robust Locally Weighted Regression and Smoothing
      Scatterplots. JASA 74:829-836
"""

import logging
import warnings
from dataclasses import dataclass

import numpy as np
import pandas as pd
import statsmodels.api as sm
from scipy.optimize import minimize_scalar
from scipy.special import polygamma
from scipy.stats import chi2
from statsmodels.nonparametric.smoothers_lowess import lowess
from statsmodels.tools.sm_exceptions import DomainWarning

from .exceptions import PreconditionError
from .nbinom_glm import nbinom_log_likelihood
from .parallel import parallel_map
from .utils import base_means as mean_normalized, normalize_counts

logger = logging.getLogger(__name__)

MIN_TREND_GENES = 10


# --- objective -------------------------------------------------------------

def cox_reid_apl(log_alpha, y, mu, X):
    """
    Cox-Reid adjusted profile log-likelihood of log(alpha) for one gene.

        APL = logLik(y | mu, alpha) - 0.5 * log det(X^T W X)
    """
    alpha = np.exp(log_alpha)
    w = mu / (1.0 + alpha * mu)
    sign, logdet = np.linalg.slogdet((X.T * w) @ X)
    if sign <= 0:
        return -np.inf
    return nbinom_log_likelihood(y, mu, alpha) - 0.5 * logdet


def _maximize_apl(task):
    """
    Maximise the APL (optionally plus a normal prior on log alpha) over
    [log_lo, log_hi]: coarse grid plus the starting value first, then bounded
    Brent around the best point.
    """
    y, mu, X, log_lo, log_hi, start, prior_mean, prior_var = task

    def objective(log_alpha):
        val = cox_reid_apl(log_alpha, y, mu, X)
        if prior_mean is not None:
            val -= (log_alpha - prior_mean) ** 2 / (2.0 * prior_var)
        return -val if np.isfinite(val) else np.inf

    grid = np.linspace(log_lo, log_hi, 21)
    if start is not None and np.isfinite(start):
        grid = np.unique(np.append(grid, np.clip(start, log_lo, log_hi)))
    values = np.array([objective(a) for a in grid])
    if not np.any(np.isfinite(values)):
        return np.nan
    best = int(np.argmin(values))

    lo = grid[max(best - 1, 0)]
    hi = grid[min(best + 1, len(grid) - 1)]
    res = minimize_scalar(objective, bounds=(lo, hi), method="bounded",
                          options={"xatol": 1e-6})
    log_alpha = res.x if res.fun <= values[best] else grid[best]
    return float(np.clip(log_alpha, log_lo, log_hi))


# --- trend -------------------------------------------------------------------

class DispersionTrend:
    """
    Fitted mean-dispersion relationship.

    Parameters
    ----------
    fit_type : {"parametric", "local", "mean"}
        Which curve was fitted.
    coefs : tuple, optional
        ``(asympt_disp, extra_pois)`` for alpha(mu) = asympt_disp +
        extra_pois / mu. A mean trend is ``(value, 0.0)``.
    x_smooth, y_smooth : np.ndarray, optional
        LOWESS curve on the log10/log10 scale for local trends.
    min_disp : float
        Floor applied to predictions.
    """

    def __init__(self, fit_type, coefs=None, x_smooth=None, y_smooth=None,
                 min_disp=1e-8):
        self.fit_type = fit_type
        self.coefs = coefs
        self.x_smooth = x_smooth
        self.y_smooth = y_smooth
        self.min_disp = min_disp

    @property
    def is_parametric(self):
        """True when the trend has the closed form asympt_disp + extra_pois / mu."""
        return self.fit_type in ("parametric", "mean")

    def __call__(self, means):
        means = np.maximum(np.asarray(means, dtype=float), 1e-8)
        if self.is_parametric:
            asympt_disp, extra_pois = self.coefs
            val = asympt_disp + extra_pois / means
        else:
            log_disp = np.interp(np.log10(means), self.x_smooth, self.y_smooth,
                                 left=self.y_smooth[0], right=self.y_smooth[-1])
            val = 10.0 ** log_disp
        return np.maximum(val, self.min_disp)

    def __repr__(self):
        if self.is_parametric:
            return (f"DispersionTrend({self.fit_type}, asympt_disp={self.coefs[0]:.4g}, "
                    f"extra_pois={self.coefs[1]:.4g})")
        return f"DispersionTrend(local, {len(self.x_smooth)} points)"


def fit_parametric_trend(base_means, disp_gw, min_disp=1e-8, max_iter=10):
    """
    Fit alpha(mu) = asympt_disp + extra_pois / mu.

    A gamma-family GLM with identity link is refitted repeatedly; between
    fits, genes whose ratio of estimate to prediction falls outside
    (1e-4, 15) are dropped and the two coefficients are re-estimated until
    they stop changing.

    Returns
    -------
    DispersionTrend or None
        None when fewer than MIN_TREND_GENES genes are usable, the fit fails
        or a coefficient is not positive.
    """
    use = np.isfinite(disp_gw) & (disp_gw >= 100 * min_disp) & (base_means > 0)
    if use.sum() < MIN_TREND_GENES:
        return None

    coefs = np.array([0.1, 1.0])
    converged = False
    for _ in range(max_iter):
        with np.errstate(divide="ignore", invalid="ignore"):
            resid = disp_gw / (coefs[0] + coefs[1] / base_means)
        good = use & (resid > 1e-4) & (resid < 15)
        if good.sum() < MIN_TREND_GENES:
            return None

        X = np.column_stack([np.ones(good.sum()), 1.0 / base_means[good]])
        family = sm.families.Gamma(link=sm.families.links.Identity())
        try:
            with warnings.catch_warnings():
                warnings.simplefilter("ignore", DomainWarning)
                res = sm.GLM(disp_gw[good], X, family=family).fit(start_params=coefs)
        except (ValueError, np.linalg.LinAlgError, FloatingPointError) as exc:
            logger.warning("Parametric dispersion fit failed: %s", exc)
            return None

        new = np.asarray(res.params, dtype=float)
        if not np.all(np.isfinite(new)) or np.any(new <= 0):
            return None
        change = np.sum(np.log(new / coefs) ** 2)
        coefs = new
        if change < 1e-6:
            converged = True
            break

    if not converged:
        logger.warning("Parametric dispersion trend did not converge")

    logger.info("Trend coefficients: asympt_disp=%.4g, extra_pois=%.4g",
                coefs[0], coefs[1])
    return DispersionTrend("parametric", coefs=(float(coefs[0]), float(coefs[1])),
                           min_disp=min_disp)


def fit_local_trend(base_means, disp_gw, min_disp=1e-8, frac=0.2, it=3):
    """
    LOWESS trend on the log10/log10 scale.

    Makes no assumption about the functional form; preferred when the
    parametric a/mean + b curve fits poorly.
    """
    mask = np.isfinite(disp_gw) & (disp_gw >= 100 * min_disp) & (base_means > 0)
    if mask.sum() < MIN_TREND_GENES:
        return None

    x = np.log10(base_means[mask])
    y = np.log10(disp_gw[mask])
    order = np.argsort(x)
    smoothed = lowess(y[order], x[order], frac=frac, it=it, return_sorted=True)
    # lowess returns duplicated x for tied means; np.interp needs increasing x
    x_smooth, idx = np.unique(smoothed[:, 0], return_index=True)
    return DispersionTrend("local", x_smooth=x_smooth, y_smooth=smoothed[idx, 1],
                           min_disp=min_disp)


def fit_mean_trend(disp_gw, min_disp=1e-8):
    """
    Constant trend: geometric mean of the usable gene-wise estimates.

    Equivalent to assuming every gene shares one dispersion up to sampling
    noise; used for small data sets and as the fallback of the other fits.
    """
    valid = np.isfinite(disp_gw) & (disp_gw >= 100 * min_disp)
    if not valid.any():
        valid = np.isfinite(disp_gw)
    if not valid.any():
        value = min_disp
    else:
        value = float(np.exp(np.mean(np.log(np.maximum(disp_gw[valid], min_disp)))))
    return DispersionTrend("mean", coefs=(value, 0.0), min_disp=min_disp)


def fit_dispersion_trend(base_means, disp_gw, fit_type="parametric", min_disp=1e-8):
    """
    Fit the dispersion trend with the requested method.

    Parametric and local fits that cannot be made fall back to the mean
    trend with a warning.
    """
    base_means = np.asarray(base_means, dtype=float)
    disp_gw = np.asarray(disp_gw, dtype=float)

    if fit_type == "parametric":
        trend = fit_parametric_trend(base_means, disp_gw, min_disp=min_disp)
    elif fit_type == "local":
        trend = fit_local_trend(base_means, disp_gw, min_disp=min_disp)
    elif fit_type == "mean":
        return fit_mean_trend(disp_gw, min_disp=min_disp)
    else:
        raise ValueError(f"Unknown fit_type: {fit_type}")

    if trend is None:
        logger.warning("%s dispersion trend could not be fitted; using mean trend",
                       fit_type)
        trend = fit_mean_trend(disp_gw, min_disp=min_disp)
    return trend


# --- table -------------------------------------------------------------------

@dataclass
class DispersionTable:
    """
    Per-gene dispersion estimates plus the fitted trend.

    ``table`` columns: baseMean, baseVar, allZero, defined, dispGeneEst,
    dispFit, dispMAP, dispersion (final value to use) and dispOutlier.
    """

    table: pd.DataFrame
    trend: DispersionTrend
    prior_var: float
    var_log_disp: float
    used_gene_estimates: bool = False

    @property
    def dispersions(self):
        return self.table["dispersion"].to_numpy()

    @property
    def n_undefined(self):
        return int((~self.table["defined"] & ~self.table["allZero"]).sum())

    @property
    def n_outliers(self):
        return int(self.table["dispOutlier"].sum())


def _fitted_means(norm_counts, size_factors, X, min_mu):
    # least-squares means of normalized counts; exact group means when X
    # is a cell-means design such as ~ condition
    hat = X @ np.linalg.pinv(X)
    mu_norm = norm_counts @ hat.T
    return np.maximum(mu_norm * size_factors, min_mu)


def _defined_mask(counts, groups):
    defined = np.ones(counts.shape[0], dtype=bool)
    for g in np.unique(groups):
        nonzero = (counts[:, groups == g] > 0).sum(axis=1)
        defined &= nonzero >= 2
    return defined


def estimate_dispersions(counts, size_factors, design_matrix, groups=None,
                         fit_type="parametric", min_disp=1e-8, max_disp=10.0,
                         outlier_level=0.95, min_mu=0.5, n_jobs=1,
                         gene_ids=None):
    """
    The full dispersion pipeline: gene-wise, trend, MAP, outliers.

    Parameters
    ----------
    counts : np.ndarray
        Raw counts (genes x samples).
    size_factors : np.ndarray
        Per-sample size factors.
    design_matrix : np.ndarray
        Design matrix (samples x parameters).
    groups : array-like, optional
        Condition label per sample, used for the "fewer than two non-zero
        samples per condition" rule. Defaults to the distinct rows of the
        design matrix.
    fit_type : {"parametric", "local", "mean"}
        Trend type.
    min_disp, max_disp : float
        Bounds of every estimate.
    outlier_level : float, default 0.95
        Chi-squared (1 df) quantile of the squared standardized log
        residual above which a gene keeps its gene-wise estimate.
    min_mu : float, default 0.5
        Floor on fitted means.
    n_jobs : int, default 1
        Workers for the per-gene optimisations.
    gene_ids : array-like, optional
        Index of the output table.

    Returns
    -------
    DispersionTable

    Raises
    ------
    PreconditionError
        If the design leaves no residual degrees of freedom.
    """
    counts = np.asarray(counts, dtype=float)
    sf = np.asarray(size_factors, dtype=float)
    X = np.asarray(design_matrix, dtype=float)
    G, S = counts.shape
    P = X.shape[1]

    df = S - P
    if df < 1:
        raise PreconditionError(
            f"{S} samples and {P} coefficients leave no residual degrees of "
            "freedom for dispersion estimation"
        )

    if groups is None:
        _, groups = np.unique(X, axis=0, return_inverse=True)
    groups = np.asarray(groups).ravel()

    norm_counts = normalize_counts(counts, sf)
    base_means = mean_normalized(counts, sf)
    base_var = norm_counts.var(axis=1, ddof=1)
    all_zero = counts.sum(axis=1) == 0
    defined = _defined_mask(counts, groups) & ~all_zero

    mu_hat = _fitted_means(norm_counts, sf, X, min_mu)
    log_lo, log_hi = np.log(min_disp), np.log(max_disp)

    # 1) gene-wise
    rows = np.where(defined)[0]
    logger.info("Running Cox-Reid APL for %d genes (%d undefined)",
                len(rows), int((~defined & ~all_zero).sum()))
    log_start = np.log(moments_dispersion(counts, sf, groups, min_disp=min_disp))
    tasks = [(counts[g], mu_hat[g], X, log_lo, log_hi, log_start[g], None, None)
             for g in rows]
    log_gw = parallel_map(_maximize_apl, tasks, n_jobs=n_jobs)

    disp_gw = np.full(G, np.nan)
    disp_gw[rows] = np.exp(log_gw)
    failed = rows[~np.isfinite(disp_gw[rows])]
    if len(failed):
        logger.warning("Gene-wise dispersion undefined for %d genes", len(failed))
        defined[failed] = False

    # 2) trend
    trend = fit_dispersion_trend(base_means, disp_gw, fit_type=fit_type,
                                 min_disp=min_disp)
    disp_fit = np.full(G, np.nan)
    disp_fit[~all_zero] = trend(base_means[~all_zero])

    # 3) prior width from genes clearly above the floor
    above_min = defined & (disp_gw >= 100 * min_disp)
    used_gene_estimates = not above_min.any()
    if used_gene_estimates:
        logger.warning(
            "All gene-wise dispersion estimates are within 2 orders of magnitude "
            "of the minimum; using gene-wise estimates as final"
        )

    log_resid = np.log(disp_gw) - np.log(disp_fit)
    if above_min.sum() >= 2:
        resid = log_resid[above_min]
        mad = np.median(np.abs(resid - np.median(resid)))
        var_log_disp = float((1.4826 * mad) ** 2)
    else:
        var_log_disp = np.nan
    expected_var = float(polygamma(1, df / 2.0))
    if np.isfinite(var_log_disp):
        prior_var = max(var_log_disp - expected_var, 0.25)
    else:
        prior_var = 0.25

    # 4) MAP
    disp_map = np.full(G, np.nan)
    if not used_gene_estimates:
        logger.info("Estimating MAP dispersions (prior var %.4f)", prior_var)
        tasks = [
            (counts[g], mu_hat[g], X, log_lo, log_hi, log_start[g],
             np.log(disp_fit[g]), prior_var)
            for g in rows[defined[rows]]
        ]
        log_map = parallel_map(_maximize_apl, tasks, n_jobs=n_jobs)
        disp_map[rows[defined[rows]]] = np.exp(log_map)

    # 5) outliers keep their gene-wise estimate
    outlier = np.zeros(G, dtype=bool)
    if np.isfinite(var_log_disp) and var_log_disp > 0 and not used_gene_estimates:
        cutoff = chi2.ppf(outlier_level, df=1)
        with np.errstate(invalid="ignore"):
            z2 = log_resid ** 2 / var_log_disp
            outlier = defined & (log_resid > 0) & (z2 > cutoff)

    final = np.full(G, np.nan)
    if used_gene_estimates:
        final[defined] = disp_gw[defined]
    else:
        final[defined] = np.where(outlier[defined], disp_gw[defined], disp_map[defined])
    undefined_nonzero = ~defined & ~all_zero
    final[undefined_nonzero] = disp_fit[undefined_nonzero]
    final = np.where(np.isfinite(final), np.clip(final, min_disp, max_disp), np.nan)

    if outlier.any():
        logger.info("%d dispersion outliers keep their gene-wise estimate",
                    int(outlier.sum()))

    table = pd.DataFrame({
        "baseMean": base_means,
        "baseVar": base_var,
        "allZero": all_zero,
        "defined": defined,
        "dispGeneEst": disp_gw,
        "dispFit": disp_fit,
        "dispMAP": disp_map,
        "dispersion": final,
        "dispOutlier": outlier,
    }, index=gene_ids)

    return DispersionTable(table=table, trend=trend, prior_var=prior_var,
                           var_log_disp=var_log_disp,
                           used_gene_estimates=used_gene_estimates)


def moments_dispersion(counts, size_factors, groups=None, min_disp=1e-8):
    """
    Pooled within-condition method-of-moments dispersion.

    A fast rough estimate, alpha = (var - mean) / mean^2, averaged over
    conditions with n - 1 weights. Used by blind transformations when a
    full likelihood fit is not wanted.
    """
    counts = np.asarray(counts, dtype=float)
    norm_counts = counts / np.asarray(size_factors, dtype=float)
    G, S = counts.shape
    if groups is None:
        groups = np.zeros(S)
    groups = np.asarray(groups)

    alpha_sum = np.zeros(G)
    weight_sum = np.zeros(G)
    for g in np.unique(groups):
        mask_g = groups == g
        n_g = mask_g.sum()
        if n_g <= 1:
            continue
        sub = norm_counts[:, mask_g]
        mean_g = sub.mean(axis=1)
        var_g = sub.var(axis=1, ddof=1)
        with np.errstate(divide="ignore", invalid="ignore"):
            a = (var_g - mean_g) / mean_g ** 2
        a = np.where(np.isfinite(a), np.maximum(a, min_disp), min_disp)
        alpha_sum += a * (n_g - 1)
        weight_sum += n_g - 1

    disp = np.full(G, np.nan)
    ok = (weight_sum > 0) & (counts.sum(axis=1) > 0)
    disp[ok] = alpha_sum[ok] / weight_sum[ok]
    return disp
