"""
GeoApiClient - HTTP client for the ip-api.com style geolocation endpoint.

One GET per attempt:
    {base_url}/{ip}?fields=status,message,lat,lon,city,country

- Per-attempt deadline enforced by cancellation
- Timeouts and HTTP/transport errors retried with exponential backoff
- A ``status: "fail"`` body or unusable coordinates is an ApiRejectedError,
  which is never retried
"""

import asyncio
from typing import Any, Awaitable, Callable, Literal

import httpx
from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from dnsgeo.models import LocationResult
from dnsgeo.services.errors import (
    RETRYABLE_ERRORS,
    ApiRejectedError,
    RequestTimeoutError,
    UpstreamHTTPError,
)

RESPONSE_FIELDS = "status,message,lat,lon,city,country"


class IpApiResponse(BaseModel):
    """A successful response body from the geolocation endpoint."""

    status: Literal["success"]
    lat: float = Field(ge=-90, le=90, strict=True, allow_inf_nan=False)
    lon: float = Field(ge=-180, le=180, strict=True, allow_inf_nan=False)
    city: str | None = None
    country: str | None = None

    def to_location(self) -> LocationResult:
        return LocationResult(
            lat=self.lat,
            lng=self.lon,
            city=self.city or "Unknown",
            country=self.country or "Unknown",
        )


class GeoApiClient:
    """
    Geolocation API client with bounded timeout and retry.

    Usage:
        async with GeoApiClient("http://ip-api.com/json") as api:
            try:
                location = await api.call("8.8.8.8")
            except ApiRejectedError:
                location = None
    """

    SERVICE_ID = "geoip"

    def __init__(
        self,
        base_url: str = "http://ip-api.com/json",
        timeout: float = 5.0,
        max_retries: int = 2,
        retry_delay: float = 1.0,
        http_client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._max_retries = max_retries
        self._retry_delay = retry_delay
        self._sleep = sleep

        self._http_client = http_client
        self._owns_client = http_client is None
        self._attempts = 0

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout),
                follow_redirects=True,
            )
        return self._http_client

    @property
    def attempts(self) -> int:
        """Total HTTP attempts made, retries included."""
        return self._attempts

    async def call(self, ip: str) -> LocationResult:
        """
        Resolve ``ip`` to a location.

        Raises:
            ApiRejectedError: Upstream has no usable location (not retried)
            RequestTimeoutError: Last attempt timed out
            UpstreamHTTPError: Last attempt failed at the HTTP level
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self._attempt(ip)
            except RETRYABLE_ERRORS as e:
                if attempt > self._max_retries:
                    logger.warning(
                        f"GeoIP lookup for {ip} failed after {attempt} attempts: {e}"
                    )
                    raise

                delay = self._retry_delay * 2 ** (attempt - 1)
                logger.warning(
                    f"GeoIP attempt {attempt} for {ip} failed ({e}), "
                    f"retrying in {delay:.1f}s"
                )
                await self._sleep(delay)

    async def _attempt(self, ip: str) -> LocationResult:
        """Execute a single HTTP request and validate the body."""
        self._attempts += 1
        data = await self._fetch(ip)

        if not isinstance(data, dict):
            raise UpstreamHTTPError(
                f"Unexpected response type {type(data).__name__}",
                service_id=self.SERVICE_ID,
            )

        if data.get("status") != "success":
            reason = data.get("message") or f"status={data.get('status')!r}"
            raise ApiRejectedError(ip, str(reason), service_id=self.SERVICE_ID)

        try:
            body = IpApiResponse.model_validate(data)
        except ValidationError as e:
            raise ApiRejectedError(
                ip,
                f"invalid coordinates ({e.error_count()} errors)",
                service_id=self.SERVICE_ID,
            ) from e

        return body.to_location()

    async def _fetch(self, ip: str) -> Any:
        client = await self._get_http_client()
        url = f"{self.base_url}/{ip}"

        try:
            response = await asyncio.wait_for(
                client.get(url, params={"fields": RESPONSE_FIELDS}),
                timeout=self._timeout,
            )
            response.raise_for_status()
            return response.json()

        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            raise RequestTimeoutError(self.SERVICE_ID, self._timeout) from e

        except httpx.HTTPStatusError as e:
            raise UpstreamHTTPError(
                f"HTTP {e.response.status_code}: {e.response.text[:200]}",
                service_id=self.SERVICE_ID,
                status_code=e.response.status_code,
            ) from e

        except httpx.RequestError as e:
            raise UpstreamHTTPError(str(e), service_id=self.SERVICE_ID) from e

        except ValueError as e:
            # Body was not JSON
            raise UpstreamHTTPError(
                f"Invalid JSON body: {e}", service_id=self.SERVICE_ID
            ) from e

    async def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._http_client and self._owns_client:
            await self._http_client.aclose()
        self._http_client = None
        logger.debug("GeoApiClient closed")

    async def __aenter__(self) -> "GeoApiClient":
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.close()
