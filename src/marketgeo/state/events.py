"""Tag change events broadcast by the overlay store."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from marketgeo.models.market import TagType, TagValue, normalize_tag


class TagChangeSource(StrEnum):
    OPTIMISTIC = "optimistic"
    PERSISTED = "persisted"
    REVERTED = "reverted"


class TagChange(BaseModel):
    """A change to one (scope, entity) tag.

    ``tag`` is :attr:`TagType.NONE` when the tag was cleared.
    """

    model_config = ConfigDict(frozen=True)

    scope: str = Field(..., description="Saved market or session scope")
    entity_id: str
    tag: TagValue = TagType.NONE
    source: TagChangeSource
    observed_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_validator("scope", "entity_id")
    @classmethod
    def _non_empty(cls, value: str) -> str:
        text = value.strip()
        if not text:
            raise ValueError("must be non-empty")
        return text

    @field_validator("tag", mode="before")
    @classmethod
    def _coerce_tag(cls, value: Any) -> TagValue:
        return normalize_tag(value)

    @field_validator("observed_at")
    @classmethod
    def _ensure_tz_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    @property
    def cleared(self) -> bool:
        return self.tag == TagType.NONE
