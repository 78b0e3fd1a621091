"""
Principal component analysis of a stabilized expression matrix.

Samples are projected onto the principal axes of the most variable genes.
The decomposition is deterministic: genes are ranked by variance with a
stable tie-break on position, and each axis is oriented so that its
largest-magnitude loading is positive.
"""

import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)


@dataclass
class PCAResult:
    """
    Sample coordinates and explained variance.

    Attributes
    ----------
    scores : pd.DataFrame
        Samples x components (``PC1``, ``PC2``, ...).
    percent_variance : np.ndarray
        Percent of total variance per component, non-increasing. Kept at
        full precision; rounding happens only in :meth:`axis_labels`.
    genes : pd.Index
        Genes used for the projection, most variable first.
    loadings : pd.DataFrame
        Genes x components.
    """

    scores: pd.DataFrame
    percent_variance: np.ndarray
    genes: pd.Index
    loadings: pd.DataFrame

    @property
    def n_components(self):
        return self.scores.shape[1]

    def axis_labels(self, decimals=1):
        """Axis titles such as ``"PC1: 45.3% variance"``."""
        return [f"{name}: {pct:.{decimals}f}% variance"
                for name, pct in zip(self.scores.columns, self.percent_variance)]

    def to_frame(self, coldata=None, n_components=2):
        """
        Leading scores as a sample-indexed table, optionally joined with
        sample metadata by identifier.
        """
        frame = self.scores.iloc[:, :n_components].copy()
        if coldata is not None:
            frame = frame.join(coldata, how="left")
        frame.index.name = "sample"
        return frame


def select_top_genes(values, n_top):
    """Row indices of the ``n_top`` rows with largest variance, ties by position."""
    variances = np.var(values, axis=1, ddof=1) if values.shape[1] > 1 else np.zeros(len(values))
    order = np.argsort(-variances, kind="mergesort")
    return order[:min(n_top, len(order))]


def pca(stabilized, n_top=500, n_components=None, scale=False):
    """
    Principal components of the top-variance genes.

    Parameters
    ----------
    stabilized : pd.DataFrame or np.ndarray
        Transformed expression (genes x samples), e.g. from ``stabilize``.
    n_top : int, default 500
        Number of most variable genes kept.
    n_components : int, optional
        Components returned. Default: ``min(n_samples, n_genes_used)``.
    scale : bool, default False
        Divide each gene by its standard deviation after centring.

    Returns
    -------
    PCAResult

    Notes
    -----
    SVD of the centred samples x genes matrix ``Xc = U S Vt``. Scores are
    ``U S``, loadings ``Vt.T`` and the eigenvalues of the sample covariance
    are ``S^2 / (n - 1)``, so percent variance is ``S^2 / sum(S^2) * 100``.
    """
    if isinstance(stabilized, pd.DataFrame):
        values = stabilized.to_numpy(dtype=float)
        gene_index = stabilized.index
        sample_index = stabilized.columns
    else:
        values = np.asarray(stabilized, dtype=float)
        gene_index = pd.RangeIndex(values.shape[0])
        sample_index = pd.RangeIndex(values.shape[1])

    if values.ndim != 2 or values.shape[0] == 0 or values.shape[1] == 0:
        raise ValueError("stabilized must be a non-empty genes x samples matrix")
    if not np.all(np.isfinite(values)):
        raise ValueError("stabilized matrix contains non-finite values")

    top = select_top_genes(values, n_top)
    data = values[top, :].T  # samples x genes
    data = data - data.mean(axis=0)
    if scale:
        sd = data.std(axis=0, ddof=1)
        data = np.divide(data, sd, out=np.zeros_like(data), where=sd > 0)

    U, S_vals, Vt = np.linalg.svd(data, full_matrices=False)

    max_comp = len(S_vals)
    if n_components is None:
        n_components = max_comp
    n_components = min(n_components, max_comp)

    # orient each axis by its largest loading
    for i in range(len(S_vals)):
        j = int(np.argmax(np.abs(Vt[i])))
        if Vt[i, j] < 0:
            Vt[i] = -Vt[i]
            U[:, i] = -U[:, i]

    ev = S_vals ** 2
    total = ev.sum()
    percent = ev / total * 100.0 if total > 0 else np.zeros_like(ev)

    names = [f"PC{i + 1}" for i in range(n_components)]
    scores = pd.DataFrame(U[:, :n_components] * S_vals[:n_components],
                          index=sample_index, columns=names)
    loadings = pd.DataFrame(Vt[:n_components].T, index=gene_index[top], columns=names)

    logger.info("PCA on %d genes: %s", len(top),
                ", ".join(f"{n}={p:.1f}%" for n, p in zip(names[:3], percent)))

    return PCAResult(scores=scores, percent_variance=percent[:n_components],
                     genes=gene_index[top], loadings=loadings)
