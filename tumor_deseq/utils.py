"""
Count normalization and low-count pre-filtering.

References:
    - Anders S, Huber W (2010). Differential expression analysis for sequence
      count data. Genome Biology 11:R106
"""

import numpy as np
import pandas as pd


def normalize_counts(counts, size_factors):
    """
    Divide each sample's counts by its size factor.

    The raw matrix is left as it is; model fits use the size factors as an
    offset and only descriptive statistics (baseMean, transforms) work on
    normalized values.

    Parameters
    ----------
    counts : np.ndarray or pd.DataFrame
        Raw counts, genes x samples.
    size_factors : array-like
        One factor per sample column.

    Returns
    -------
    np.ndarray or pd.DataFrame
        Same type, shape and labels as ``counts``.

    Examples
    --------
    >>> normalize_counts(np.array([[10, 40], [6, 12]]), np.array([0.5, 2.0]))
    array([[20., 20.],
           [12.,  6.]])
    """
    sf = np.asarray(size_factors, dtype=float)
    values = counts.to_numpy(dtype=float) if isinstance(counts, pd.DataFrame) \
        else np.asarray(counts, dtype=float)
    if sf.shape != (values.shape[1],):
        raise ValueError(
            f"got {sf.size} size factors for {values.shape[1]} samples")

    scaled = values / sf[None, :]
    if isinstance(counts, pd.DataFrame):
        return pd.DataFrame(scaled, index=counts.index, columns=counts.columns)
    return scaled


def base_means(counts, size_factors):
    """Mean normalized count per gene."""
    return np.asarray(normalize_counts(counts, size_factors)).mean(axis=1)


def filter_low_counts(counts, min_count=10, min_samples=None, groups=None):
    """
    Mask of genes with enough reads to be worth testing.

    A gene passes when ``min_samples`` or more samples carry at least
    ``min_count`` reads. Without an explicit ``min_samples`` the size of the
    smallest condition in ``groups`` is used (so a gene expressed in only one
    condition can pass), or half the samples when no groups are given.

    Parameters
    ----------
    counts : np.ndarray or pd.DataFrame
        Raw counts, genes x samples.
    min_count : int, default 10
    min_samples : int, optional
    groups : array-like, optional
        Condition label per sample.

    Returns
    -------
    np.ndarray of bool

    Examples
    --------
    >>> filter_low_counts(np.array([[100, 200], [1, 2], [50, 100]]),
    ...                   min_count=10, min_samples=2)
    array([ True, False,  True])
    """
    values = np.asarray(counts, dtype=float)
    n_samples = values.shape[1]

    if min_samples is None:
        if groups is not None:
            _, sizes = np.unique(np.asarray(groups), return_counts=True)
            min_samples = int(sizes.min())
        else:
            min_samples = max(1, n_samples // 2)

    return (values >= min_count).sum(axis=1) >= min_samples
