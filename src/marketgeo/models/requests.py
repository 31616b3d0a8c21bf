"""Pydantic request models for engine entrypoints.

These models provide a consistent "validate → normalize → execute" flow.
They are used internally by :class:`marketgeo.market.MarketResolutionService`
so that bad input is rejected before any network call.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from marketgeo.exceptions import MarketValidationError
from marketgeo.models.organization import Coordinate


class ResolveRequest(BaseModel):
    """A market resolution request."""

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        validate_default=True,
        str_strip_whitespace=True,
    )

    center: Coordinate
    radius_miles: float = Field(..., gt=0)
    tag_scope: str | None = None
    center_id: str | None = None

    @field_validator("center", mode="before")
    @classmethod
    def _coerce_center(cls, value: Any) -> Any:
        if isinstance(value, (tuple, list)) and len(value) == 2:
            return {"latitude": value[0], "longitude": value[1]}
        return value

    @field_validator("tag_scope", "center_id")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value or None

    @classmethod
    def build(cls, *, max_radius_miles: float, **values: Any) -> ResolveRequest:
        """Validate *values*, raising :class:`MarketValidationError` on bad input."""
        try:
            request = cls.model_validate(values)
        except ValidationError as exc:
            raise MarketValidationError(str(exc)) from exc
        if request.radius_miles > max_radius_miles:
            raise MarketValidationError(f"radius must be at most {max_radius_miles} miles, got {request.radius_miles}")
        return request


class TagRequest(BaseModel):
    """A tag write for one (scope, entity) pair."""

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        str_strip_whitespace=True,
    )

    scope: str
    entity_id: str

    @field_validator("scope", "entity_id")
    @classmethod
    def _non_empty(cls, value: str) -> str:
        if not value:
            raise ValueError("must be non-empty")
        return value
