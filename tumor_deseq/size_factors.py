import logging

import numpy as np

from .exceptions import PreconditionError

logger = logging.getLogger(__name__)


def log_geometric_means(counts, type="ratio"):
    """
    Per-gene log geometric mean used as the pseudo-reference sample.

    ``ratio`` uses every count, so any gene with a zero gets -inf and drops
    out of the ratios. ``poscounts`` averages over positive counts only
    (all-zero genes still get -inf).
    """
    counts = np.asarray(counts, dtype=float)
    if type == "ratio":
        with np.errstate(divide="ignore", invalid="ignore"):
            return np.mean(np.log(counts), axis=1)
    if type == "poscounts":
        lc = np.log(counts, where=(counts > 0), out=np.zeros_like(counts))
        n_pos = (counts > 0).sum(axis=1)
        with np.errstate(divide="ignore", invalid="ignore"):
            log_geomeans = lc.sum(axis=1) / n_pos
        log_geomeans[n_pos == 0] = -np.inf
        return log_geomeans
    raise ValueError(f"Unknown size factor type: {type}")


def estimate_size_factors(
    counts,
    type="ratio",
    loc_func=np.median,
    geo_means=None,
    control_genes=None,
    center=True,
):
    """
    Median-of-ratios size factors (DESeq2 estimateSizeFactorsForMatrix).

    Parameters
    ----------
    counts : np.ndarray
        2D (genes x samples) raw counts.
    type : {"ratio", "poscounts"}
        How the pseudo-reference is built when ``geo_means`` is None.
    loc_func : function
        Location function applied to each sample's log ratios, default median.
    geo_means : np.ndarray or None
        Fixed pseudo-reference (one value per gene).
    control_genes : array-like or None
        Row indices or boolean mask of the genes used for the ratios,
        e.g. housekeeping genes.
    center : bool, default True
        With external ``geo_means``, rescale the factors to geometric mean 1.

    Returns
    -------
    np.ndarray of size factors (length = num samples)

    Raises
    ------
    PreconditionError
        If no gene is usable as reference or a sample gets a zero or
        non-finite factor.
    """
    counts = np.asarray(counts, dtype=float)
    G, S = counts.shape

    if geo_means is None:
        log_geomeans = log_geometric_means(counts, type=type)
    else:
        geo_means = np.asarray(geo_means, dtype=float)
        if geo_means.shape[0] != G:
            raise ValueError("geo_means should be as long as number of genes")
        with np.errstate(divide="ignore"):
            log_geomeans = np.log(geo_means)

    if control_genes is not None:
        log_geomeans = log_geomeans[control_genes]
        counts = counts[control_genes, :]

    if not np.any(np.isfinite(log_geomeans)):
        raise PreconditionError(
            "every gene contains at least one zero; cannot compute size factors "
            "(use type='poscounts')"
        )

    size_factors = np.zeros(S)
    for j in range(S):
        c = counts[:, j]
        mask = np.isfinite(log_geomeans) & (c > 0)
        if not mask.any():
            raise PreconditionError(
                f"sample {j} shares no non-zero gene with the reference; "
                "cannot compute its size factor"
            )
        vals = np.log(c[mask]) - log_geomeans[mask]
        size_factors[j] = np.exp(loc_func(vals))

    if geo_means is not None and center:
        size_factors = size_factors / np.exp(np.mean(np.log(size_factors)))

    if not np.all(np.isfinite(size_factors)) or np.any(size_factors <= 0):
        raise PreconditionError("size factors must be finite and positive")

    logger.debug("Size factors: %s", np.array2string(size_factors, precision=3))
    return size_factors
