"""
pNode Crawler - Bounded Worker Pool

Fans a function out over many items with a fixed number of threads in
flight, so probing thousands of peers never spawns thousands of threads.
An optional deadline and cancel event bound the whole batch.
"""

import logging
import threading
import time
from collections.abc import Callable, Hashable, Iterable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

# How often a blocked map() re-checks the cancel event.
CANCEL_POLL_INTERVAL = 0.25


@dataclass
class PoolResult:
    """Results of a bounded map, keyed by item."""
    results: dict[Hashable, Any] = field(default_factory=dict)
    errors: dict[Hashable, Exception] = field(default_factory=dict)
    unfinished: list[Hashable] = field(default_factory=list)

    @property
    def completed(self) -> bool:
        return not self.unfinished


class WorkerPool:
    """Runs func(item) for each item with at most max_workers in flight."""

    def __init__(self, max_workers: int, name: str = "worker"):
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self.max_workers = max_workers
        self.name = name

    def map(
        self,
        func: Callable[[Hashable], Any],
        items: Iterable[Hashable],
        deadline: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> PoolResult:
        """
        Apply func to every item.

        Args:
            func: Called once per item on a worker thread
            items: Hashable work items (duplicates are run once)
            deadline: Absolute time.monotonic() value after which pending
                work is abandoned
            cancel_event: Abandons pending work when set

        Returns:
            PoolResult with per-item results, per-item exceptions and the
            items that did not finish in time.
        """
        unique = list(dict.fromkeys(items))
        outcome = PoolResult()
        if not unique:
            return outcome

        executor = ThreadPoolExecutor(
            max_workers=min(self.max_workers, len(unique)),
            thread_name_prefix=self.name,
        )
        futures: dict[Future, Hashable] = {executor.submit(func, item): item for item in unique}
        pending = set(futures)
        abandoned = False

        try:
            while pending:
                if cancel_event is not None and cancel_event.is_set():
                    abandoned = True
                    break

                timeout = CANCEL_POLL_INTERVAL if cancel_event is not None else None
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        abandoned = True
                        break
                    timeout = remaining if timeout is None else min(timeout, remaining)

                done, pending = wait(pending, timeout=timeout, return_when=FIRST_COMPLETED)
                for future in done:
                    item = futures[future]
                    try:
                        outcome.results[item] = future.result()
                    except Exception as e:
                        logger.debug(f"{self.name} task for {item} failed: {e}")
                        outcome.errors[item] = e
        finally:
            if abandoned:
                for future in pending:
                    future.cancel()
                outcome.unfinished = [futures[f] for f in pending]
                logger.warning(
                    f"{self.name} pool abandoned {len(outcome.unfinished)}/{len(unique)} tasks"
                )
            executor.shutdown(wait=not abandoned, cancel_futures=abandoned)

        return outcome
