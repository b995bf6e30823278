"""
Location value objects shared by the lookup service and its callers.
"""

from pydantic import BaseModel, ConfigDict, Field


class LocationResult(BaseModel):
    """Geographic location resolved for a public IP address."""

    model_config = ConfigDict(frozen=True)

    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)
    city: str = "Unknown"
    country: str = "Unknown"


class SourceLocation(LocationResult):
    """Fixed origin point of the dashboard (where arcs start)."""

    pass
