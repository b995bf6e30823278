"""
RequestCoalescer - At most one in-flight lookup per key.

When multiple callers request the same IP simultaneously,
only one lookup runs and every caller receives the same result object.
"""

import asyncio
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger

T = TypeVar("T")


class RequestCoalescer:
    """
    Coalesces concurrent async lookups by key.

    The pending entry for a key is removed as soon as its work settles
    (success or failure) and before waiters are resumed, so a caller that
    arrives afterwards starts fresh work instead of joining a finished one.

    A caller that is cancelled while waiting does not cancel the shared
    work; it only stops waiting for it.

    Usage:
        coalescer = RequestCoalescer()

        location = await coalescer.lookup_or_join(
            ip, lambda: resolve_upstream(ip)
        )
    """

    def __init__(self, debug: bool = False):
        self._pending: dict[str, asyncio.Task[Any]] = {}
        self._lock = asyncio.Lock()
        self._debug = debug
        self._stats = CoalescerStats()

    async def lookup_or_join(
        self,
        key: str,
        work_fn: Callable[[], Awaitable[T]],
    ) -> T:
        """
        Run ``work_fn`` for ``key`` or join the run already in flight.

        Args:
            key: Unique identifier for this request (normalized IP)
            work_fn: Async function to execute if nothing is pending for key

        Returns:
            Result of the single ``work_fn`` run, shared by all joiners
        """
        async with self._lock:
            task = self._pending.get(key)
            if task is not None:
                self._stats.joined += 1
                self._log(f"JOIN: {key}")
            else:
                self._stats.started += 1
                self._log(f"NEW: {key}")
                task = asyncio.create_task(self._execute_and_cleanup(key, work_fn))
                self._pending[key] = task

        return await asyncio.shield(task)

    async def _execute_and_cleanup(
        self,
        key: str,
        work_fn: Callable[[], Awaitable[T]],
    ) -> T:
        """Execute work and drop the pending entry when it settles."""
        try:
            return await work_fn()
        finally:
            # A cancelled run must not drop a newer run for the same key
            if self._pending.get(key) is asyncio.current_task():
                del self._pending[key]
            self._log(f"DONE: {key}")

    def is_pending(self, key: str) -> bool:
        return key in self._pending

    async def cancel_all(self) -> int:
        """Cancel all in-flight work."""
        async with self._lock:
            tasks = list(self._pending.values())
            self._pending.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            self._log(f"CANCEL_ALL: {len(tasks)} requests cancelled")
        return len(tasks)

    def get_in_flight_count(self) -> int:
        """Get number of in-flight requests."""
        return len(self._pending)

    def get_stats(self) -> "CoalescerStats":
        """Get coalescing statistics."""
        self._stats.in_flight = len(self._pending)
        return self._stats

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[Coalescer] {message}")


class CoalescerStats:
    """Statistics for request coalescing."""

    def __init__(self):
        self.started: int = 0  # Lookups that ran their own work
        self.joined: int = 0  # Lookups that joined in-flight work
        self.in_flight: int = 0  # Current in-flight lookups

    @property
    def join_rate(self) -> float:
        """Fraction of lookups served by joining."""
        total = self.started + self.joined
        if total == 0:
            return 0.0
        return self.joined / total

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "started": self.started,
            "joined": self.joined,
            "in_flight": self.in_flight,
            "join_rate": f"{self.join_rate:.2%}",
        }
