"""Market entity and market view models."""

from __future__ import annotations

from collections.abc import Mapping
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import Field, field_validator

from marketgeo.models._base import MarketBaseModel
from marketgeo.models.organization import Coordinate, Organization


class TagType(StrEnum):
    NONE = "none"
    PARTNER = "partner"
    COMPETITOR = "competitor"


TagValue = TagType | str
"""A built-in tag or a team-defined custom label."""


def normalize_tag(value: Any) -> TagValue:
    """Map a raw tag value onto :class:`TagType` where one matches.

    ``None`` and empty strings are the untagged state.
    """
    if isinstance(value, TagType):
        return value
    if value is None:
        return TagType.NONE
    text = str(value).strip()
    if not text:
        return TagType.NONE
    try:
        return TagType(text.lower())
    except ValueError:
        return text


class ViewIssue(StrEnum):
    """Sub-lookups that can fail without aborting a resolution."""

    IDENTIFIERS = "identifiers"
    TAGS = "tags"


class IdentifierSystem(StrEnum):
    """External identifier systems cross-referenced per organization.

    The value doubles as the identifier column name in lookup rows.
    """

    NPI = "npi"
    CCN = "ccn"


class MarketEntity(Organization):
    """An organization enriched for one resolution cycle."""

    distance_miles: float = Field(..., ge=0)
    identifiers: dict[IdentifierSystem, tuple[str, ...]] = Field(default_factory=dict)
    tag: TagValue = TagType.NONE

    @field_validator("tag", mode="before")
    @classmethod
    def _coerce_tag(cls, value: Any) -> TagValue:
        return normalize_tag(value)

    @classmethod
    def from_organization(
        cls,
        organization: Organization,
        *,
        distance_miles: float,
        identifiers: Mapping[IdentifierSystem, tuple[str, ...]] | None = None,
        tag: TagValue = TagType.NONE,
    ) -> MarketEntity:
        return cls(
            **organization.model_dump(),
            distance_miles=distance_miles,
            identifiers=dict(identifiers or {}),
            tag=tag,
        )

    def identifiers_for(self, system: IdentifierSystem | str) -> tuple[str, ...]:
        return self.identifiers.get(IdentifierSystem(system), ())

    @property
    def npis(self) -> tuple[str, ...]:
        return self.identifiers_for(IdentifierSystem.NPI)

    @property
    def ccns(self) -> tuple[str, ...]:
        return self.identifiers_for(IdentifierSystem.CCN)

    @property
    def has_identifiers(self) -> bool:
        return any(self.identifiers.values())

    @property
    def is_tagged(self) -> bool:
        return self.tag != TagType.NONE

    def with_tag(self, tag: TagValue) -> MarketEntity:
        """Return a copy carrying *tag*; the original is left untouched."""
        return self.model_copy(update={"tag": normalize_tag(tag)})


class MarketView(MarketBaseModel):
    """Denormalized market snapshot consumed by tables and the map.

    ``entities`` preserves ascending-distance order. A view is never
    mutated: radius, center, entity-set or tag changes produce a new view
    with a higher ``revision``.
    """

    center: Coordinate
    radius_miles: float = Field(..., gt=0)
    center_id: str | None = None
    tag_scope: str | None = None
    entities: dict[str, MarketEntity] = Field(default_factory=dict)
    generated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    revision: int = 0
    issues: tuple[ViewIssue, ...] = ()

    def ordered(self) -> list[MarketEntity]:
        return list(self.entities.values())

    def get(self, entity_id: str) -> MarketEntity | None:
        return self.entities.get(entity_id)

    @property
    def is_partial(self) -> bool:
        """Whether any sub-lookup failed while building this view."""
        return bool(self.issues)

    def tags(self) -> dict[str, TagValue]:
        return {entity_id: entity.tag for entity_id, entity in self.entities.items() if entity.is_tagged}

    def with_tags(self, tags: Mapping[str, TagValue], *, revision: int) -> MarketView:
        """Return a superseding view with *tags* applied to matching entities.

        Entities absent from *tags* keep their current tag.
        """
        entities = {
            entity_id: entity.with_tag(tags[entity_id]) if entity_id in tags else entity
            for entity_id, entity in self.entities.items()
        }
        return self.model_copy(
            update={
                "entities": entities,
                "revision": revision,
                "generated_at": datetime.now(UTC),
            }
        )
