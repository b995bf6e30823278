from typing import Any

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class GeoSettings(BaseSettings):
    """Lookup service settings read from GEOIP_* / SOURCE_* env vars or .env."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_ignore_empty=True,
        populate_by_name=True,
        extra="ignore",
    )

    # Upstream API
    api_base_url: str = Field(default="http://ip-api.com/json", alias="GEOIP_API_URL")
    api_timeout_ms: int = Field(default=5000, gt=0, alias="GEOIP_API_TIMEOUT")
    max_retries: int = Field(default=2, ge=0, alias="GEOIP_MAX_RETRIES")
    retry_delay_ms: int = Field(default=1000, gt=0, alias="GEOIP_RETRY_DELAY")

    # Cache
    max_cache_size: int = Field(default=10000, gt=0, alias="GEOIP_MAX_CACHE_SIZE")

    # Rate limiting
    max_requests_per_minute: int = Field(
        default=15, gt=0, alias="GEOIP_MAX_REQUESTS_PER_MINUTE"
    )
    request_window_ms: int = Field(default=60000, gt=0, alias="GEOIP_REQUEST_WINDOW")
    min_request_delay_ms: int = Field(
        default=4000, gt=0, alias="GEOIP_MIN_REQUEST_DELAY"
    )
    max_spacing_wait_ms: int = Field(
        default=2000, gt=0, alias="GEOIP_MAX_SPACING_WAIT"
    )

    # Circuit breaker
    breaker_max_failures: int = Field(
        default=5, gt=0, alias="GEOIP_BREAKER_MAX_FAILURES"
    )
    breaker_reset_timeout_ms: int = Field(
        default=30000, gt=0, alias="GEOIP_BREAKER_RESET_TIMEOUT"
    )

    # Dashboard origin (Kuala Lumpur)
    source_lat: float = Field(default=3.139, ge=-90, le=90, alias="SOURCE_LAT")
    source_lng: float = Field(default=101.6869, ge=-180, le=180, alias="SOURCE_LNG")
    source_city: str = Field(default="Kuala Lumpur", alias="SOURCE_CITY")
    source_country: str = Field(default="MY", alias="SOURCE_COUNTRY")

    debug: bool = Field(default=False, alias="GEOIP_DEBUG")


def load_settings(**overrides: Any) -> GeoSettings:
    """Build settings from the environment; keyword overrides (by field name) win."""
    return GeoSettings(**overrides)
