"""
RequestDeduplicator - Single-flight execution of concurrent loads.

When multiple callers request the same key simultaneously,
only one actual load runs and its outcome is shared.
"""

import asyncio
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger

T = TypeVar("T")


class RequestDeduplicator:
    """
    Deduplicates concurrent async loads.

    When multiple coroutines request the same key simultaneously,
    only one load runs. All callers await the same result, and a
    caller that gives up (timeout, cancellation) does not cancel the
    load for the others: each waiter awaits a shielded view of the
    shared task.

    Usage:
        dedup = RequestDeduplicator()

        async def fetch_detail(product_id: str):
            return await dedup.dedupe(
                key=product_id,
                request_fn=lambda: client.fetch_detail(product_id),
            )
    """

    def __init__(self, debug: bool = False):
        self._in_flight: dict[str, asyncio.Task[Any]] = {}
        self._lock = asyncio.Lock()
        self._debug = debug
        self._stats = DeduplicatorStats()

    async def dedupe(
        self,
        key: str,
        request_fn: Callable[[], Awaitable[T]],
    ) -> T:
        """
        Execute request with deduplication.

        If a load with the same key is already in flight,
        wait for and return its result instead of starting a new one.

        Args:
            key: Unique identifier for this load
            request_fn: Async function to execute if no load is in flight

        Returns:
            Result from request_fn (either fresh or from the in-flight load)

        Raises:
            Whatever request_fn raised, to every waiter of that load
        """
        async with self._lock:
            if key in self._in_flight:
                self._stats.deduplicated += 1
                self._log(f"DEDUPE: Waiting for in-flight request: {key[:50]}")
                task = self._in_flight[key]
            else:
                self._stats.total += 1
                self._log(f"NEW: Starting request: {key[:50]}")
                task = asyncio.create_task(self._execute_and_cleanup(key, request_fn))
                task.add_done_callback(_consume_exception)
                self._in_flight[key] = task

        return await asyncio.shield(task)

    async def _execute_and_cleanup(
        self,
        key: str,
        request_fn: Callable[[], Awaitable[T]],
    ) -> T:
        """Execute request and clean up when done."""
        try:
            return await request_fn()
        finally:
            async with self._lock:
                # cancel_all() may have dropped this task and a new load taken the key
                if self._in_flight.get(key) is asyncio.current_task():
                    del self._in_flight[key]
                self._log(f"DONE: Request completed: {key[:50]}")

    async def cancel_all(self) -> int:
        """Cancel all in-flight loads."""
        async with self._lock:
            count = len(self._in_flight)
            for task in self._in_flight.values():
                task.cancel()
            self._in_flight.clear()
            if count:
                self._log(f"CANCEL_ALL: {count} requests cancelled")
            return count

    def is_in_flight(self, key: str) -> bool:
        """Check whether a load for key is currently running."""
        return key in self._in_flight

    def get_in_flight_count(self) -> int:
        """Get number of in-flight loads."""
        return len(self._in_flight)

    def get_in_flight_keys(self) -> list[str]:
        """Get keys of all in-flight loads."""
        return list(self._in_flight.keys())

    def get_stats(self) -> "DeduplicatorStats":
        """Get deduplication statistics."""
        self._stats.in_flight = len(self._in_flight)
        return self._stats

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[Deduplicator] {message}")


def _consume_exception(task: asyncio.Task[Any]) -> None:
    # Waiters may all have given up; mark the outcome as retrieved.
    if not task.cancelled():
        task.exception()


class DeduplicatorStats:
    """Statistics for request deduplication."""

    def __init__(self):
        self.total: int = 0  # Loads actually started
        self.deduplicated: int = 0  # Callers that joined an in-flight load
        self.in_flight: int = 0

    @property
    def dedup_rate(self) -> float:
        """Calculate deduplication rate."""
        total = self.total + self.deduplicated
        if total == 0:
            return 0.0
        return self.deduplicated / total

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "total_requests": self.total,
            "deduplicated": self.deduplicated,
            "in_flight": self.in_flight,
            "dedup_rate": f"{self.dedup_rate:.2%}",
        }
