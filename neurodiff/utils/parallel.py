"""
Parallel execution helpers
"""

from typing import Any, Callable, Iterable, List

from joblib import Parallel, delayed


def run_parallel(
    func: Callable[..., Any],
    items: Iterable[Any],
    n_jobs: int = 1,
    backend: str = "loky",
) -> List[Any]:
    """
    Apply ``func`` to every item and return results in input order

    The call returns only after every item has been processed.

    Args:
        func: Callable taking a single item
        items: Items to process
        n_jobs: Number of workers (1 runs inline, -1 uses all cores)
        backend: joblib backend name

    Returns:
        List of results, one per item
    """
    items = list(items)

    if n_jobs == 1 or len(items) <= 1:
        return [func(item) for item in items]

    return Parallel(n_jobs=n_jobs, backend=backend)(
        delayed(func)(item) for item in items
    )
