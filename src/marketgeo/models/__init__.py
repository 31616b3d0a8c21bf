"""Data models for the market geospatial engine."""

from marketgeo.models._base import MarketBaseModel
from marketgeo.models.layers import LayerState, Popup
from marketgeo.models.market import (
    IdentifierSystem,
    MarketEntity,
    MarketView,
    TagType,
    TagValue,
    ViewIssue,
    normalize_tag,
)
from marketgeo.models.organization import Coordinate, Organization
from marketgeo.models.requests import ResolveRequest, TagRequest

__all__ = [
    "Coordinate",
    "IdentifierSystem",
    "LayerState",
    "MarketBaseModel",
    "MarketEntity",
    "MarketView",
    "Organization",
    "Popup",
    "ResolveRequest",
    "TagRequest",
    "TagType",
    "TagValue",
    "ViewIssue",
    "normalize_tag",
]
