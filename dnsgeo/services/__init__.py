"""
Service layer - resilient IP geolocation lookups.

Provides:
- LocationCache: Bounded LRU cache with negative entries
- SlidingWindowRateLimiter: Outbound call budget with minimum spacing
- CircuitBreaker: Stops calling a degraded API
- RequestCoalescer: One in-flight lookup per IP
- GeoApiClient: HTTP client with timeout and retry
- GeoService: Lookup orchestrator combining all of the above
"""

from dnsgeo.services.errors import (
    ServiceError,
    RequestTimeoutError,
    UpstreamHTTPError,
    ApiRejectedError,
)
from dnsgeo.services.address import is_private_address, normalize_ip, parse_ip
from dnsgeo.services.cache import LocationCache, CacheEntry, CacheStats
from dnsgeo.services.rate_limiter import Admission, SlidingWindowRateLimiter
from dnsgeo.services.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
    Permit,
)
from dnsgeo.services.coalescer import RequestCoalescer
from dnsgeo.services.client import GeoApiClient, IpApiResponse
from dnsgeo.services.geo_service import GeoService, ServiceStats

__all__ = [
    # Errors
    "ServiceError",
    "RequestTimeoutError",
    "UpstreamHTTPError",
    "ApiRejectedError",
    # Addresses
    "is_private_address",
    "normalize_ip",
    "parse_ip",
    # Cache
    "LocationCache",
    "CacheEntry",
    "CacheStats",
    # Rate limiter
    "Admission",
    "SlidingWindowRateLimiter",
    # Circuit Breaker
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitState",
    "Permit",
    # Coalescer
    "RequestCoalescer",
    # Client
    "GeoApiClient",
    "IpApiResponse",
    # Orchestrator
    "GeoService",
    "ServiceStats",
]
