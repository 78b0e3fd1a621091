"""Order-stable parallel map used for per-gene fits and k-means restarts."""

import logging

from joblib import Parallel, delayed

logger = logging.getLogger(__name__)


def parallel_map(func, items, n_jobs=1, backend="loky", batch_size="auto"):
    """
    Apply ``func`` to every item and return results in input order.

    Parameters
    ----------
    func : callable
        Pure function of one item. Must be picklable for process backends.
    items : iterable
        Work items.
    n_jobs : int, default 1
        Number of workers. 1 runs serially in the calling process;
        -1 uses every core (joblib convention).
    backend : str, default "loky"
        joblib backend.
    batch_size : int or "auto"
        Items dispatched per worker call.

    Returns
    -------
    list
        ``[func(item) for item in items]``, independent of scheduling.
    """
    seq = list(items)
    if not seq:
        return []

    if n_jobs == 1 or len(seq) == 1:
        return [func(item) for item in seq]

    logger.debug("parallel_map: %d items, n_jobs=%s, backend=%s",
                 len(seq), n_jobs, backend)
    # joblib preserves submission order in its output list
    return Parallel(n_jobs=n_jobs, backend=backend, batch_size=batch_size)(
        delayed(func)(item) for item in seq
    )
