"""
Shared utilities for the processing stages: cooperative cancellation,
time budgets and the worker pool used for per-point parallel work.
"""

import logging
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Optional, Tuple, TypeVar

from .constants import DEFAULT_CHUNK_SIZE

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationToken:
    """Thread-safe flag polled by bounded loops between iterations."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        """Request cancellation of in-flight processing."""
        self._event.set()

    def reset(self) -> None:
        self._event.clear()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def check(self, stage: str = "processing") -> None:
        """
        Raise if cancellation was requested.

        Args:
            stage: Name of the stage polling the token

        Raises:
            ProcessingCancelledError: If the token has been cancelled
        """
        if self._event.is_set():
            # Local import keeps core independent of the processing package
            from ..processing.exceptions import ProcessingCancelledError
            raise ProcessingCancelledError(stage)


class Deadline:
    """Wall-clock budget for a bounded operation."""

    def __init__(self, budget: Optional[float] = None, clock: Callable[[], float] = time.monotonic):
        """
        Args:
            budget: Budget in seconds, None for unlimited
            clock: Monotonic time source
        """
        self.budget = budget
        self._clock = clock
        self._start = clock()

    def elapsed(self) -> float:
        return self._clock() - self._start

    def expired(self) -> bool:
        return self.budget is not None and self.elapsed() > self.budget


def partition_range(n: int, chunk_size: int) -> List[Tuple[int, int]]:
    """
    Split [0, n) into contiguous (start, stop) chunks.

    Args:
        n: Number of elements
        chunk_size: Maximum elements per chunk

    Returns:
        List of (start, stop) tuples covering the range in order
    """
    if n <= 0:
        return []
    chunk_size = max(1, int(chunk_size))
    return [(start, min(start + chunk_size, n)) for start in range(0, n, chunk_size)]


class WorkerPool:
    """
    Task-parallel execution of per-point work.

    Work over [0, n) is partitioned into contiguous chunks, executed on a
    thread pool and joined before returning, so callers see a hard barrier
    between stages. Results come back in chunk order.
    """

    def __init__(self, num_workers: Optional[int] = None, chunk_size: int = DEFAULT_CHUNK_SIZE):
        """
        Initialize the worker pool.

        Args:
            num_workers: Number of worker threads (defaults to the CPU count)
            chunk_size: Number of elements per task
        """
        self.num_workers = num_workers or os.cpu_count() or 4
        self.chunk_size = chunk_size
        self._executor: Optional[ThreadPoolExecutor] = None
        self._lock = threading.Lock()

    def _get_executor(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.num_workers,
                    thread_name_prefix="scanfusion-worker"
                )
            return self._executor

    def map_ranges(self,
                   fn: Callable[[int, int], T],
                   n: int,
                   cancel_token: Optional[CancellationToken] = None,
                   stage: str = "processing") -> List[T]:
        """
        Run fn(start, stop) over contiguous chunks of [0, n).

        Args:
            fn: Function processing one chunk
            n: Number of elements
            cancel_token: Optional token polled before each chunk
            stage: Stage name reported on cancellation

        Returns:
            List of chunk results in order
        """
        chunks = partition_range(n, self.chunk_size)
        if not chunks:
            return []

        def run(bounds: Tuple[int, int]) -> T:
            if cancel_token is not None:
                cancel_token.check(stage)
            return fn(*bounds)

        # A single chunk or a single worker gains nothing from the executor
        if len(chunks) == 1 or self.num_workers <= 1:
            return [run(bounds) for bounds in chunks]

        futures = [self._get_executor().submit(run, bounds) for bounds in chunks]
        return [future.result() for future in futures]

    def shutdown(self) -> None:
        """Release the worker threads."""
        with self._lock:
            if self._executor is not None:
                self._executor.shutdown(wait=True)
                self._executor = None

    def __enter__(self) -> "WorkerPool":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.shutdown()
