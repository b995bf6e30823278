"""
CircuitBreaker - Stops calling the geolocation API while it is degraded.

States:
- CLOSED: Normal operation, requests pass through
- OPEN: Service is failing, requests are blocked
- HALF_OPEN: A single trial request tests for recovery

Transitions:
- CLOSED → OPEN: When max_failures consecutive failures are recorded
- OPEN → HALF_OPEN: On the first permission check after reset_timeout
- HALF_OPEN → CLOSED: On successful trial request
- HALF_OPEN → OPEN: On failed trial request

State only changes through the transition methods below. All methods are
synchronous, so each one runs atomically on the event loop.
"""

import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

from loguru import logger


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "CLOSED"  # Normal operation
    OPEN = "OPEN"  # Blocking requests
    HALF_OPEN = "HALF_OPEN"  # Testing recovery


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Configuration for circuit breaker."""

    max_failures: int = 5  # Consecutive failures before opening
    reset_timeout: float = 30.0  # Seconds after last failure before half-open

    def __post_init__(self) -> None:
        if self.max_failures <= 0:
            raise ValueError(f"max_failures must be positive, got {self.max_failures}")
        if self.reset_timeout <= 0:
            raise ValueError(
                f"reset_timeout must be positive, got {self.reset_timeout}"
            )


class Permit:
    """Permission for one upstream call. ``is_trial`` marks the half-open trial call."""

    __slots__ = ("is_trial",)

    def __init__(self, is_trial: bool = False):
        self.is_trial = is_trial


class CircuitBreaker:
    """
    Three-state circuit breaker for a single upstream service.

    Usage:
        cb = CircuitBreaker("geoip")

        permit = cb.allow_request()
        if permit is None:
            return None

        try:
            result = await make_request()
        except ServiceError:
            cb.record_failure()
            raise
        except asyncio.CancelledError:
            cb.release(permit)
            raise
        cb.record_success()
    """

    def __init__(
        self,
        service_id: str,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.service_id = service_id
        self.config = config or CircuitBreakerConfig()
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: float | None = None
        self._trial_permit: Permit | None = None
        self._trips = 0

    @property
    def state(self) -> CircuitState:
        """Current state (read-only; no transition happens here)."""
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def trips(self) -> int:
        """How many times the circuit has moved to OPEN."""
        return self._trips

    def allow_request(self) -> Permit | None:
        """
        Ask permission for one upstream call.

        In OPEN, the first check after reset_timeout moves to HALF_OPEN and
        lets exactly that call through. Further checks are denied until the
        trial call is recorded or its permit released. Returns None when
        denied.
        """
        if self._state == CircuitState.CLOSED:
            return Permit()

        if self._state == CircuitState.OPEN:
            if self.get_time_until_reset() > 0:
                return None
            self._half_open()

        # HALF_OPEN: one trial at a time
        if self._trial_permit is not None:
            return None
        self._trial_permit = Permit(is_trial=True)
        return self._trial_permit

    def record_success(self) -> None:
        """Record a successful request."""
        if self._state == CircuitState.HALF_OPEN:
            self._close()
        elif self._state == CircuitState.CLOSED:
            # Only consecutive failures count
            self._failure_count = 0

    def record_failure(self) -> None:
        """Record a failed request."""
        self._failure_count += 1
        self._last_failure_time = self._clock()

        if self._state == CircuitState.HALF_OPEN:
            # Any failure in half-open reopens the circuit
            self._open()
        elif self._state == CircuitState.CLOSED:
            if self._failure_count >= self.config.max_failures:
                self._open()

    def release(self, permit: Permit | None) -> None:
        """Give back a permit that was granted but never used.

        Only the holder of the half-open trial slot can free it.
        """
        if permit is not None and permit is self._trial_permit:
            self._trial_permit = None

    def _open(self) -> None:
        """Transition to OPEN state."""
        self._state = CircuitState.OPEN
        self._trial_permit = None
        self._trips += 1
        logger.warning(
            f"Circuit breaker '{self.service_id}' OPENED after {self._failure_count} failures"
        )

    def _half_open(self) -> None:
        """Transition to HALF_OPEN state."""
        self._state = CircuitState.HALF_OPEN
        self._trial_permit = None
        logger.info(f"Circuit breaker '{self.service_id}' transitioned to HALF_OPEN")

    def _close(self) -> None:
        """Transition to CLOSED state."""
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._trial_permit = None
        logger.info(f"Circuit breaker '{self.service_id}' CLOSED (recovered)")

    def reset(self) -> None:
        """Manually reset the circuit breaker."""
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._trial_permit = None
        self._last_failure_time = None
        logger.info(f"Circuit breaker '{self.service_id}' manually reset")

    def get_time_until_reset(self) -> float:
        """Seconds until an OPEN circuit admits a trial request (0 otherwise)."""
        if self._state != CircuitState.OPEN or self._last_failure_time is None:
            return 0.0

        elapsed = self._clock() - self._last_failure_time
        return max(0.0, self.config.reset_timeout - elapsed)

    def get_status(self) -> dict[str, Any]:
        """Get current status as dictionary."""
        return {
            "service_id": self.service_id,
            "state": self._state.value,
            "failure_count": self._failure_count,
            "trips": self._trips,
            "seconds_since_last_failure": (
                self._clock() - self._last_failure_time
                if self._last_failure_time is not None
                else None
            ),
            "time_until_reset": self.get_time_until_reset(),
        }
