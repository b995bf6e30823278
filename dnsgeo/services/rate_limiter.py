"""
SlidingWindowRateLimiter - Caps outbound calls to the geolocation API.

Two gates, both must pass:
- Window cap: at most ``max_requests`` admitted calls in the trailing window
- Minimum spacing: ``min_delay`` between consecutive admitted calls. A small
  deficit (<= ``max_wait``) is waited out; a larger one is rejected so callers
  never queue for an unbounded time.

Rejections are soft: ``admit()`` returns ``Admission.REJECTED`` instead of
raising.
"""

import asyncio
import time
from collections import deque
from enum import Enum
from typing import Any, Awaitable, Callable

from loguru import logger


class Admission(str, Enum):
    """Outcome of an admission check."""

    ALLOWED = "ALLOWED"  # Admitted immediately
    DEFERRED = "DEFERRED"  # Admitted after waiting out the spacing deficit
    REJECTED = "REJECTED"  # Not admitted, caller should give up for now

    @property
    def admitted(self) -> bool:
        return self is not Admission.REJECTED


class SlidingWindowRateLimiter:
    """
    Sliding-window limiter with a minimum inter-call spacing.

    Usage:
        limiter = SlidingWindowRateLimiter(max_requests=15, window=60, min_delay=4)

        if not (await limiter.admit()).admitted:
            return None
        result = await call_upstream()
    """

    def __init__(
        self,
        max_requests: int = 15,
        window: float = 60.0,
        min_delay: float = 4.0,
        max_wait: float = 2.0,
        service_id: str = "geoip",
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        debug: bool = False,
    ):
        if max_requests <= 0:
            raise ValueError(f"max_requests must be positive, got {max_requests}")
        if window <= 0 or min_delay < 0 or max_wait < 0:
            raise ValueError("window must be positive, delays non-negative")

        self.service_id = service_id
        self._max_requests = max_requests
        self._window = window
        self._min_delay = min_delay
        self._max_wait = max_wait
        self._clock = clock
        self._sleep = sleep
        self._debug = debug

        self._timestamps: deque[float] = deque()
        self._last_admitted: float | None = None
        self._rejections = 0
        self._lock = asyncio.Lock()

    async def admit(self) -> Admission:
        """Check both gates and record the call if admitted."""
        async with self._lock:
            now = self._clock()
            self._purge(now)

            if len(self._timestamps) >= self._max_requests:
                return self._reject(
                    f"window full ({len(self._timestamps)}/{self._max_requests})"
                )

            deficit = 0.0
            if self._last_admitted is not None:
                deficit = self._min_delay - (now - self._last_admitted)
                if deficit > self._max_wait:
                    return self._reject(f"spacing deficit {deficit:.2f}s")

            # Reserve the slot at its future start so callers arriving during
            # the wait see the full deficit
            admitted_at = now + max(deficit, 0.0)
            self._last_admitted = admitted_at
            self._timestamps.append(admitted_at)
            self._log(f"ADMIT: {len(self._timestamps)}/{self._max_requests} in window")

        if deficit > 0:
            self._log(f"DEFER: waiting {deficit:.2f}s")
            await self._sleep(deficit)
            return Admission.DEFERRED
        return Admission.ALLOWED

    def _purge(self, now: float) -> None:
        cutoff = now - self._window
        while self._timestamps and self._timestamps[0] <= cutoff:
            self._timestamps.popleft()

    def _reject(self, reason: str) -> Admission:
        self._rejections += 1
        self._log(f"REJECT: {reason}")
        return Admission.REJECTED

    def get_time_until_available(self) -> float:
        """Seconds until a call would be admitted without waiting."""
        now = self._clock()
        waits = [0.0]
        if self._last_admitted is not None:
            waits.append(self._min_delay - (now - self._last_admitted))
        if len(self._timestamps) >= self._max_requests:
            waits.append(self._timestamps[0] + self._window - now)
        return max(waits)

    @property
    def rejections(self) -> int:
        return self._rejections

    def get_status(self) -> dict[str, Any]:
        """Get current status as dictionary."""
        self._purge(self._clock())
        return {
            "service_id": self.service_id,
            "in_window": len(self._timestamps),
            "max_requests": self._max_requests,
            "window_seconds": self._window,
            "min_delay_seconds": self._min_delay,
            "rejections": self._rejections,
            "time_until_available": self.get_time_until_available(),
        }

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[RateLimiter] {message}")
