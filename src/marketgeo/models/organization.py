"""Coordinate and organization models."""

from __future__ import annotations

from typing import Any

from pydantic import AliasChoices, Field, field_validator, model_validator

from marketgeo._normalize import safe_float, safe_int, safe_str
from marketgeo.models._base import MarketBaseModel


class Coordinate(MarketBaseModel):
    """A WGS84 latitude/longitude pair in degrees."""

    latitude: float = Field(..., ge=-90.0, le=90.0, validation_alias=AliasChoices("latitude", "lat"))
    longitude: float = Field(
        ...,
        ge=-180.0,
        le=180.0,
        validation_alias=AliasChoices("longitude", "lon", "lng"),
    )

    def as_lon_lat(self) -> list[float]:
        """GeoJSON position order."""
        return [self.longitude, self.latitude]

    def cache_key(self) -> tuple[float, float]:
        # Sub-meter rounding so float noise does not split cache entries.
        return (round(self.latitude, 6), round(self.longitude, 6))


class Organization(MarketBaseModel):
    """A healthcare organization as stored in the persistence layer.

    Rows use the warehouse column names (``dhc`` for the id, ``latitude``
    and ``longitude`` as flat columns); both those and the field names are
    accepted.

    Parameters
    ----------
    id : str
        Organization id (the ``dhc`` column).
    name : str
        Display name.
    coordinate : Coordinate
        Location; rows without a usable location fail validation.
    type : str
        Organization type (hospital, clinic, ...).
    network : str or None
        Health system / network the organization belongs to.
    """

    id: str = Field(..., validation_alias=AliasChoices("id", "dhc"))
    name: str = ""
    coordinate: Coordinate
    type: str = "Unknown"
    network: str | None = None
    street: str | None = None
    city: str | None = None
    state: str | None = None
    zip: str | None = None
    phone: str | None = None
    beds: int | None = None
    fips: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _lift_flat_coordinate(cls, values: Any) -> Any:
        if not isinstance(values, dict) or "coordinate" in values:
            return values
        merged = dict(values)
        lat = safe_float(merged.get("latitude", merged.get("lat")))
        lon = safe_float(merged.get("longitude", merged.get("lon", merged.get("lng"))))
        if lat is not None and lon is not None:
            merged["coordinate"] = {"latitude": lat, "longitude": lon}
        return merged

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> str:
        text = safe_str(value)
        if text is None:
            raise ValueError("organization id must be non-empty")
        return text

    @field_validator("name", mode="before")
    @classmethod
    def _coerce_name(cls, value: Any) -> str:
        return safe_str(value) or ""

    @field_validator("type", mode="before")
    @classmethod
    def _coerce_type(cls, value: Any) -> str:
        return safe_str(value) or "Unknown"

    @field_validator("network", "street", "city", "state", "zip", "phone", "fips", mode="before")
    @classmethod
    def _coerce_optional_str(cls, value: Any) -> str | None:
        return safe_str(value)

    @field_validator("beds", mode="before")
    @classmethod
    def _coerce_beds(cls, value: Any) -> int | None:
        return safe_int(value)

    @property
    def latitude(self) -> float:
        return self.coordinate.latitude

    @property
    def longitude(self) -> float:
        return self.coordinate.longitude
