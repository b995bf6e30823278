"""
GeoService - Resilient IP → location lookup for the DNS dashboard.

Combines:
- LocationCache for positive and negative results
- RequestCoalescer so each IP has at most one upstream call in flight
- CircuitBreaker to stop calling a degraded API
- SlidingWindowRateLimiter to stay within the API's budget
- GeoApiClient for the HTTP call with timeout and retry

Per request:
    validate → cache → private check → coalesce → breaker → rate limit
    → upstream → update breaker → write cache → return

``lookup()`` never raises for expected conditions; it returns a
LocationResult or None.
"""

import asyncio
import time
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable

import httpx
from loguru import logger

from dnsgeo.models import LocationResult, SourceLocation
from dnsgeo.services.address import is_private_address, parse_ip
from dnsgeo.services.cache import LocationCache
from dnsgeo.services.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
)
from dnsgeo.services.client import GeoApiClient
from dnsgeo.services.coalescer import RequestCoalescer
from dnsgeo.services.errors import ApiRejectedError, ServiceError
from dnsgeo.services.rate_limiter import SlidingWindowRateLimiter
from dnsgeo.settings import GeoSettings


@dataclass
class ServiceStats:
    """Monotonic counters for observability."""

    total_lookups: int = 0
    invalid_inputs: int = 0
    private_addresses: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    upstream_calls: int = 0
    upstream_failures: int = 0
    upstream_rejections: int = 0
    rate_limit_rejections: int = 0
    breaker_short_circuits: int = 0
    breaker_trips: int = 0

    @property
    def hit_rate(self) -> float:
        """Calculate cache hit rate."""
        total = self.cache_hits + self.cache_misses
        if total == 0:
            return 0.0
        return self.cache_hits / total

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {**asdict(self), "hit_rate": f"{self.hit_rate:.2%}"}


class GeoService:
    """
    Single owned lookup service, constructed once with explicit settings.

    Usage:
        async with GeoService(load_settings()) as geo:
            location = await geo.lookup("8.8.8.8")
            if location is None:
                return  # skip visualization
    """

    def __init__(
        self,
        settings: GeoSettings | None = None,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.settings = settings or GeoSettings()
        s = self.settings

        # Raises ValidationError on bad coordinates
        self._source = SourceLocation(
            lat=s.source_lat,
            lng=s.source_lng,
            city=s.source_city,
            country=s.source_country,
        )

        self._cache = LocationCache(max_size=s.max_cache_size, debug=s.debug)
        self._coalescer = RequestCoalescer(debug=s.debug)
        self._breaker = CircuitBreaker(
            GeoApiClient.SERVICE_ID,
            CircuitBreakerConfig(
                max_failures=s.breaker_max_failures,
                reset_timeout=s.breaker_reset_timeout_ms / 1000,
            ),
            clock=clock,
        )
        self._rate_limiter = SlidingWindowRateLimiter(
            max_requests=s.max_requests_per_minute,
            window=s.request_window_ms / 1000,
            min_delay=s.min_request_delay_ms / 1000,
            max_wait=s.max_spacing_wait_ms / 1000,
            service_id=GeoApiClient.SERVICE_ID,
            clock=clock,
            sleep=sleep,
            debug=s.debug,
        )
        self._api = GeoApiClient(
            base_url=s.api_base_url,
            timeout=s.api_timeout_ms / 1000,
            max_retries=s.max_retries,
            retry_delay=s.retry_delay_ms / 1000,
            http_client=http_client,
            sleep=sleep,
        )
        self._stats = ServiceStats()

    async def lookup(self, ip: object) -> LocationResult | None:
        """
        Get the location for an IP address.

        Returns:
            LocationResult, or None when no location is available (invalid
            input, private address, rate limited, circuit open, upstream
            failure or upstream has no data)
        """
        self._stats.total_lookups += 1

        addr = parse_ip(ip)
        if addr is None:
            self._stats.invalid_inputs += 1
            logger.debug(f"Ignoring invalid address: {ip!r}")
            return None
        key = str(addr)

        entry = await self._cache.get(key)
        if entry is not None:
            self._stats.cache_hits += 1
            return entry.location
        self._stats.cache_misses += 1

        if is_private_address(addr):
            self._stats.private_addresses += 1
            await self._cache.put(key, None)
            return None

        try:
            return await self._coalescer.lookup_or_join(
                key, lambda: self._resolve(key)
            )
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(f"Unexpected error resolving {key}")
            return None

    async def _resolve(self, ip: str) -> LocationResult | None:
        """Breaker → rate limiter → upstream, run once per coalesced IP."""
        # A previous run may have settled between our cache miss and now
        entry = await self._cache.get(ip)
        if entry is not None:
            return entry.location

        permit = self._breaker.allow_request()
        if permit is None:
            self._stats.breaker_short_circuits += 1
            logger.debug(
                f"Circuit open, skipping {ip} "
                f"({self._breaker.get_time_until_reset():.1f}s until trial)"
            )
            return None

        settled = False
        try:
            admission = await self._rate_limiter.admit()
            if not admission.admitted:
                self._stats.rate_limit_rejections += 1
                return None

            self._stats.upstream_calls += 1
            try:
                location = await self._api.call(ip)
            except ApiRejectedError as e:
                # API answered, so it is healthy
                self._stats.upstream_rejections += 1
                self._breaker.record_success()
                settled = True
                logger.debug(f"GeoIP has no data for {ip}: {e.reason}")
                await self._cache.put(ip, None)
                return None
            except ServiceError as e:
                self._stats.upstream_failures += 1
                trips_before = self._breaker.trips
                self._breaker.record_failure()
                settled = True
                if self._breaker.trips > trips_before:
                    self._stats.breaker_trips += 1
                logger.warning(f"GeoIP lookup failed for {ip}: {e}")
                await self._cache.put(ip, None)
                return None

            self._breaker.record_success()
            settled = True
            await self._cache.put(ip, location)
            logger.debug(
                f"GeoIP found {ip}: {location.city}, {location.country} "
                f"({location.lat}, {location.lng})"
            )
            return location
        finally:
            if not settled:
                # Rate limited or cancelled before the breaker saw an outcome
                self._breaker.release(permit)

    def get_source(self) -> SourceLocation:
        """Return a copy of the dashboard origin."""
        return self._source.model_copy()

    async def clear_cache(self) -> None:
        """Clear all cached lookups."""
        await self._cache.clear()

    def get_cache_stats(self) -> dict[str, Any]:
        """Cache size, capacity, evictions and hit rate."""
        return {
            **self._cache.get_stats().to_dict(),
            "hit_rate": f"{self._stats.hit_rate:.2%}",
        }

    def get_stats(self) -> ServiceStats:
        """Snapshot of the service counters."""
        return ServiceStats(**asdict(self._stats))

    def get_health_status(self) -> dict[str, Any]:
        """Get health status of all components."""
        return {
            "stats": self._stats.to_dict(),
            "cache": self.get_cache_stats(),
            "circuit_breaker": self._breaker.get_status(),
            "rate_limiter": self._rate_limiter.get_status(),
            "coalescer": self._coalescer.get_stats().to_dict(),
        }

    @property
    def circuit_state(self) -> CircuitState:
        return self._breaker.state

    def reset_circuit(self) -> None:
        """Force the breaker CLOSED (operator intervention)."""
        self._breaker.reset()

    async def close(self) -> None:
        """Cancel in-flight lookups and close the HTTP client."""
        await self._coalescer.cancel_all()
        await self._api.close()
        logger.debug("GeoService closed")

    async def __aenter__(self) -> "GeoService":
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.close()
