"""Bounded thread pool shared by the audit tools."""

from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, List, Optional, Sequence, Tuple, TypeVar

from .models import FolderFailure

T = TypeVar("T")
R = TypeVar("R")

DEFAULT_THROTTLE = 6


def run_pool(
    items: Sequence[T],
    task: Callable[[T], R],
    max_workers: int = DEFAULT_THROTTLE,
    on_done: Optional[Callable[[T, R], None]] = None,
    on_error: Optional[Callable[[T, BaseException], None]] = None,
) -> Tuple[List[R], List[FolderFailure]]:
    """
    Run one task per item with at most max_workers in flight.

    Items must have a ``name``; it is what a failure is reported under. A
    failing task is recorded and does not stop its siblings. If anything
    escapes the loop (Ctrl+C, a raising callback), items not yet started are
    cancelled and running workers are joined before the exception propagates,
    so no worker outlives the call.

    Returns:
        Tuple of (results in completion order, failures)
    """
    results: List[R] = []
    failures: List[FolderFailure] = []
    if not items:
        return results, failures

    executor = ThreadPoolExecutor(max_workers=max(1, max_workers), thread_name_prefix="spaudit")
    try:
        futures = {executor.submit(task, item): item for item in items}
        for future in as_completed(futures):
            item = futures[future]
            try:
                result = future.result()
            except Exception as e:
                failures.append(FolderFailure(item.name, e))
                if on_error:
                    on_error(item, e)
                continue
            results.append(result)
            if on_done:
                on_done(item, result)
    finally:
        executor.shutdown(wait=True, cancel_futures=True)
    return results, failures
