"""
k-means clustering of samples with seeded restarts and an elbow sweep.

Each restart is a single Lloyd run from a Forgy initialisation (k distinct
samples picked at random) with its own seed spawned from one
``numpy.random.SeedSequence``, so the outcome does not depend on how the
restarts are scheduled across workers. The restart with the lowest
within-cluster sum of squares (WCSS) wins; ties go to the lowest restart
index.

Lloyd iterations stop when no label changes. Clusters that lose all their
points are re-seeded with the point farthest from its centroid (scikit-learn
relocates empty clusters this way). A run that hits the iteration cap keeps
its last assignment and is flagged.
"""

import logging
import warnings
from dataclasses import dataclass

import numpy as np
import pandas as pd
from sklearn.cluster import KMeans
from sklearn.exceptions import ConvergenceWarning

from .parallel import parallel_map

logger = logging.getLogger(__name__)


@dataclass
class ClusterAssignment:
    """
    Best k-means solution.

    ``labels`` is indexed by sample and takes values 1..k, numbered in order
    of first appearance; label identity carries no meaning across runs.
    """

    labels: pd.Series
    wcss: float
    centroids: np.ndarray
    converged: bool
    n_iter: int
    restart: int

    @property
    def k(self):
        return self.centroids.shape[0]

    def to_frame(self):
        frame = self.labels.to_frame("cluster")
        frame.index.name = "sample"
        return frame


def _unwrap(points):
    if isinstance(points, pd.DataFrame):
        return points.to_numpy(dtype=float), points.index
    values = np.asarray(points, dtype=float)
    return values, pd.RangeIndex(values.shape[0])


def total_wcss(X, labels, centroids):
    """Sum of squared Euclidean distances of points to their centroid."""
    return float(np.sum((X - centroids[labels]) ** 2))


def farthest_point(X, centroids):
    """Index of the point farthest from its nearest centroid."""
    d2 = ((X[:, None, :] - centroids[None, :, :]) ** 2).sum(axis=2)
    return int(np.argmax(d2.min(axis=1)))


def is_fixed_point(X, labels, centroids):
    """True when another Lloyd step would change neither labels nor centroids."""
    d2 = ((X[:, None, :] - centroids[None, :, :]) ** 2).sum(axis=2)
    own = d2[np.arange(len(X)), labels]
    if not np.allclose(own, d2.min(axis=1)):
        return False
    for c in np.unique(labels):
        if not np.allclose(X[labels == c].mean(axis=0), centroids[c]):
            return False
    return True


def _lloyd(task):
    X, k, init, seed, max_iter = task
    if init is None:
        init = X[np.random.default_rng(seed).choice(len(X), size=k, replace=False)]
    # tol=0 stops only when no label changes
    km = KMeans(n_clusters=k, init=init, n_init=1, max_iter=max_iter, tol=0.0,
                algorithm="lloyd", random_state=0)
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", ConvergenceWarning)
        km.fit(X)
    labels = km.labels_.astype(int)
    centroids = km.cluster_centers_
    return {
        "labels": labels,
        "centroids": centroids,
        "wcss": total_wcss(X, labels, centroids),
        "n_iter": int(km.n_iter_),
        # a run may settle on its last allowed iteration
        "converged": (int(km.n_iter_) < max_iter
                      or is_fixed_point(X, labels, centroids)),
    }


def _relabel(labels, centroids):
    # number clusters 1..k by first appearance
    order = list(dict.fromkeys(labels.tolist()))
    order += [c for c in range(len(centroids)) if c not in order]
    mapping = {old: new for new, old in enumerate(order)}
    new_labels = np.array([mapping[lab] for lab in labels]) + 1
    return new_labels, centroids[order]


def kmeans(points, k, restarts=10, seed=0, max_iter=300, n_jobs=1,
           init_centroids=None):
    """
    Partition points into k clusters.

    Parameters
    ----------
    points : pd.DataFrame or np.ndarray
        Points x features, e.g. PCA scores or the transposed stabilized
        matrix (samples as rows).
    k : int
        Number of clusters, 1 <= k <= number of points.
    restarts : int, default 10
        Independent random initialisations.
    seed : int, default 0
        Root seed; identical seed, restarts and input give identical output.
    max_iter : int, default 300
        Lloyd iteration cap per restart.
    n_jobs : int, default 1
        Workers for the restarts.
    init_centroids : np.ndarray, optional
        Extra (k x features) starting centroids, run as one more restart
        after the random ones.

    Returns
    -------
    ClusterAssignment

    Examples
    --------
    >>> pts = np.array([[0.0], [0.1], [5.0], [5.1]])
    >>> res = kmeans(pts, k=2, restarts=5, seed=1)
    >>> sorted(res.labels.value_counts().tolist())
    [2, 2]
    """
    X, index = _unwrap(points)
    n = X.shape[0]
    if X.ndim != 2 or n == 0:
        raise ValueError("points must be a non-empty 2D matrix")
    if not 1 <= k <= n:
        raise ValueError(f"k must lie between 1 and the number of points ({n}), got {k}")
    if restarts < 1:
        raise ValueError("restarts must be at least 1")

    seeds = np.random.SeedSequence(seed).spawn(restarts)
    tasks = [(X, k, None, s, max_iter) for s in seeds]
    if init_centroids is not None:
        init = np.asarray(init_centroids, dtype=float)
        if init.shape != (k, X.shape[1]):
            raise ValueError(f"init_centroids must have shape {(k, X.shape[1])}")
        tasks.append((X, k, init, None, max_iter))

    runs = parallel_map(_lloyd, tasks, n_jobs=n_jobs)

    # lowest WCSS, ties to the earliest restart
    best = min(range(len(runs)), key=lambda i: (runs[i]["wcss"], i))
    run = runs[best]
    if not run["converged"]:
        logger.warning("k-means (k=%d) best restart hit the iteration cap of %d",
                       k, max_iter)

    labels, centroids = _relabel(run["labels"], run["centroids"])
    return ClusterAssignment(
        labels=pd.Series(labels, index=index, name="cluster"),
        wcss=run["wcss"],
        centroids=centroids,
        converged=run["converged"],
        n_iter=run["n_iter"],
        restart=best,
    )


def elbow(points, k_max, restarts=10, seed=0, max_iter=300, n_jobs=1):
    """
    WCSS for k = 1..k_max.

    For k > 1 the (k-1)-cluster solution plus the point farthest from it is
    tried alongside the random restarts, so the curve never increases with
    k. Picking k from the curve is left to the reader.

    Returns
    -------
    pd.DataFrame
        Columns ``k``, ``wcss`` and ``converged``.
    """
    X, _ = _unwrap(points)
    n = X.shape[0]
    if k_max > n:
        logger.warning("k_max=%d exceeds the %d points; sweeping k up to %d",
                       k_max, n, n)
        k_max = n

    rows = []
    prev = None
    for k in range(1, k_max + 1):
        init = None
        if prev is not None:
            init = np.vstack([prev.centroids, X[farthest_point(X, prev.centroids)]])
        res = kmeans(X, k, restarts=restarts, seed=seed, max_iter=max_iter,
                     n_jobs=n_jobs, init_centroids=init)
        rows.append({"k": k, "wcss": res.wcss, "converged": res.converged})
        prev = res

    curve = pd.DataFrame(rows)
    logger.info("Elbow sweep: %s", ", ".join(
        f"k={r.k}: {r.wcss:.4g}" for r in curve.itertuples()))
    return curve
