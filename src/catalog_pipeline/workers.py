"""Bounded worker pool for per-item network calls.

Each item runs in its own future; an exception or timeout is captured on
that item's ``WorkResult`` and never cancels its siblings. Results come back
in submission order so downstream output stays deterministic.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from typing import Callable, Generic, List, Optional, Sequence, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


class WorkResult(Generic[T, R]):
    __slots__ = ("item", "value", "error")

    def __init__(self, item: T, value: Optional[R] = None, error: Optional[BaseException] = None):
        self.item = item
        self.value = value
        self.error = error

    @property
    def ok(self) -> bool:
        return self.error is None

    def __repr__(self) -> str:
        state = "ok" if self.ok else f"error={self.error!r}"
        return f"WorkResult({short_label(self.item)}, {state})"


def short_label(item) -> str:
    """Log-friendly name for a work item; lists are summarised by length."""
    if isinstance(item, (list, tuple)):
        return f"<{len(item)} items>"
    text = repr(item)
    return text if len(text) <= 80 else text[:77] + "..."


def run_bounded(
    func: Callable[[T], R],
    items: Sequence[T],
    max_workers: int = 4,
    item_timeout: Optional[float] = None,
    label: str = "task",
    describe: Callable[[T], str] = short_label,
    wait_for_stragglers: bool = False,
) -> List[WorkResult[T, R]]:
    """Apply ``func`` to every item with at most ``max_workers`` in flight.

    ``item_timeout`` bounds how long we wait on each result once it is our
    turn to collect it; a timed-out item is reported as failed. By default
    its thread is left to finish in the background. Writes whose failure
    triggers a compensating action pass ``wait_for_stragglers=True``: items
    that never started are cancelled and running ones are waited for, so no
    late write can land after this call returns.
    """
    if not items:
        return []

    results: List[WorkResult[T, R]] = []
    executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=label)
    try:
        futures = [executor.submit(func, item) for item in items]
        for item, future in zip(items, futures):
            try:
                results.append(WorkResult(item, value=future.result(timeout=item_timeout)))
            except FutureTimeout:
                logger.warning("%s timed out after %ss for %s", label, item_timeout, describe(item))
                results.append(WorkResult(item, error=TimeoutError(f"{label} timed out")))
            except Exception as e:
                logger.warning("%s failed for %s: %s", label, describe(item), e)
                results.append(WorkResult(item, error=e))
    finally:
        executor.shutdown(wait=wait_for_stragglers, cancel_futures=True)

    failed = sum(1 for r in results if not r.ok)
    logger.debug("%s: %d items, %d failed (workers=%d)", label, len(results), failed, max_workers)
    return results
