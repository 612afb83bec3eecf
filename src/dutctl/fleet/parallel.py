"""Parallel fan-out used for discovery and fleet checks.

One thread per item (optionally capped by a semaphore), a per-item
deadline measured from when the item starts, and a join that returns once
every item has either finished or run past its deadline. Items that time
out are abandoned: their daemon threads are left to the transport's own
timeouts and their late results are discarded. A timed-out item gives its
concurrency slot to the next queued item, so one hung host cannot stall
a capped batch.
"""

import threading
import time
from dataclasses import dataclass
from typing import Callable, Generic, Iterable, Optional, TypeVar

from dutctl.telemetry.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")
R = TypeVar("R")


@dataclass
class FetchOutcome(Generic[T, R]):
    """Outcome of one item in a parallel fetch.

    Attributes:
        item: The input item
        value: Return value of the fetch function, if it succeeded
        error: Exception raised by the fetch function, if any
        timed_out: Whether the item ran past its deadline
        duration_ms: Time from start to completion or abandonment
    """

    item: T
    value: Optional[R] = None
    error: Optional[Exception] = None
    timed_out: bool = False
    duration_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None and not self.timed_out


def fetch_in_parallel(
    items: Iterable[T],
    fetch: Callable[[T], R],
    timeout: Optional[float] = None,
    max_concurrent: Optional[int] = None,
) -> list[FetchOutcome[T, R]]:
    """Apply fetch to every item concurrently.

    Exceptions raised by fetch are captured per item and never abort the
    batch.

    Args:
        items: Inputs, one task each
        fetch: Function run for each item
        timeout: Per-item deadline in seconds (None waits for completion)
        max_concurrent: Maximum items running at once (None is unbounded)

    Returns:
        One outcome per item, in input order
    """
    items = list(items)
    outcomes: dict[int, FetchOutcome[T, R]] = {}
    started: dict[int, float] = {}
    released: set[int] = set()
    cond = threading.Condition()
    semaphore = threading.Semaphore(max_concurrent) if max_concurrent else None
    batch_start = time.perf_counter()

    def release_slot(index: int) -> None:
        # Called with cond held; a slot is handed back once per item
        if semaphore and index not in released:
            released.add(index)
            semaphore.release()

    def run_item(index: int, item: T) -> None:
        if semaphore:
            semaphore.acquire()
        try:
            with cond:
                started[index] = time.monotonic()
                cond.notify_all()
            value: Optional[R] = None
            error: Optional[Exception] = None
            try:
                value = fetch(item)
            except Exception as e:
                error = e
            with cond:
                if index not in outcomes:
                    outcomes[index] = FetchOutcome(
                        item=item,
                        value=value,
                        error=error,
                        duration_ms=(time.monotonic() - started[index]) * 1000,
                    )
                cond.notify_all()
        finally:
            with cond:
                release_slot(index)

    for index, item in enumerate(items):
        thread = threading.Thread(
            target=run_item, args=(index, item), name=f"fetch-{index}", daemon=True
        )
        thread.start()

    with cond:
        while len(outcomes) < len(items):
            wait: Optional[float] = None
            if timeout is not None:
                now = time.monotonic()
                for index, start in started.items():
                    if index in outcomes:
                        continue
                    remaining = start + timeout - now
                    if remaining <= 0:
                        outcomes[index] = FetchOutcome(
                            item=items[index],
                            timed_out=True,
                            duration_ms=timeout * 1000,
                        )
                        # The abandoned thread keeps running; queued items
                        # take over its slot
                        release_slot(index)
                    elif wait is None or remaining < wait:
                        wait = remaining
                if len(outcomes) == len(items):
                    break
                if wait is None:
                    wait = timeout
            cond.wait(wait)

    result = [outcomes[index] for index in range(len(items))]
    logger.debug(
        "Parallel fetch completed",
        total=len(items),
        succeeded=sum(1 for o in result if o.ok),
        timed_out=sum(1 for o in result if o.timed_out),
        duration_ms=(time.perf_counter() - batch_start) * 1000,
    )
    return result
