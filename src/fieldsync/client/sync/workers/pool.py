"""Bounded worker pool for concurrent transfers.

This module provides:
- BoundedWorkerPool: Runs one function per item on worker threads, with
  at most ``max_workers`` calls in flight
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


class BoundedWorkerPool:
    """Fan out work over items with a hard concurrency bound.

    The bound is enforced by a counting semaphore around each call; the
    in-flight counter and its high-water mark are exposed for
    monitoring.

    Usage:
        pool = BoundedWorkerPool(max_workers=4, name="upload")
        results = pool.run(items, upload_one)
    """

    def __init__(self, max_workers: int, name: str = "worker") -> None:
        """Initialize the pool.

        Args:
            max_workers: Maximum concurrent calls (at least 1).
            name: Thread name prefix.
        """
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self._max_workers = max_workers
        self._name = name
        self._semaphore = threading.BoundedSemaphore(max_workers)
        self._lock = threading.Lock()
        self._in_flight = 0
        self._peak_in_flight = 0

    @property
    def max_workers(self) -> int:
        return self._max_workers

    @property
    def in_flight(self) -> int:
        """Number of calls currently running."""
        with self._lock:
            return self._in_flight

    @property
    def peak_in_flight(self) -> int:
        """Highest number of simultaneous calls seen so far."""
        with self._lock:
            return self._peak_in_flight

    def run(
        self,
        items: Iterable[T],
        func: Callable[[T], R],
        cancel: threading.Event | None = None,
    ) -> list[R]:
        """Call ``func`` on every item and wait for all of them.

        Items not yet started when ``cancel`` is set are skipped. ``func``
        is expected to handle its own errors; an exception escaping it is
        logged and that item contributes no result.

        Returns:
            Results of the calls that completed, in item order.
        """
        items = list(items)
        if not items:
            return []

        def guarded(item: T) -> tuple[bool, R | None]:
            with self._semaphore:
                if cancel is not None and cancel.is_set():
                    return False, None
                with self._lock:
                    self._in_flight += 1
                    self._peak_in_flight = max(self._peak_in_flight, self._in_flight)
                try:
                    return True, func(item)
                finally:
                    with self._lock:
                        self._in_flight -= 1

        results: list[R] = []
        workers = min(self._max_workers, len(items))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=self._name) as executor:
            futures = [executor.submit(guarded, item) for item in items]
            for future in futures:
                try:
                    ran, result = future.result()
                except Exception:
                    logger.exception("Unexpected error in %s worker", self._name)
                    continue
                if ran:
                    results.append(result)  # type: ignore[arg-type]
        return results
