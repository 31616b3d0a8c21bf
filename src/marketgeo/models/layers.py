"""Map layer state and popup models."""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import Field

from marketgeo.models._base import MarketBaseModel
from marketgeo.models.market import MarketEntity


class LayerState(StrEnum):
    UNINITIALIZED = "uninitialized"
    CONTAINER_READY = "containerReady"
    SURFACE_LOADED = "surfaceLoaded"
    STYLE_READY = "styleReady"
    DATA_READY = "dataReady"
    LAYERS_CREATED = "layersCreated"


# Forward transitions only; a full reset to UNINITIALIZED is always allowed.
LAYER_TRANSITIONS: dict[LayerState, frozenset[LayerState]] = {
    LayerState.UNINITIALIZED: frozenset({LayerState.CONTAINER_READY}),
    LayerState.CONTAINER_READY: frozenset({LayerState.SURFACE_LOADED}),
    LayerState.SURFACE_LOADED: frozenset({LayerState.STYLE_READY}),
    LayerState.STYLE_READY: frozenset({LayerState.DATA_READY}),
    LayerState.DATA_READY: frozenset({LayerState.LAYERS_CREATED}),
    LayerState.LAYERS_CREATED: frozenset(),
}


def can_transition(current: LayerState, target: LayerState) -> bool:
    if target == LayerState.UNINITIALIZED:
        return True
    return target in LAYER_TRANSITIONS[current]


class Popup(MarketBaseModel):
    """Info popup content for one map feature."""

    entity_id: str
    position: list[float] = Field(..., min_length=2, max_length=2)
    """``[longitude, latitude]``."""
    title: str
    attributes: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def for_entity(cls, entity: MarketEntity) -> Popup:
        attributes: dict[str, Any] = {
            "type": entity.type,
            "distance": f"{entity.distance_miles:.2f} miles",
            "tag": str(entity.tag),
        }
        if entity.network:
            attributes["network"] = entity.network
        for system, values in entity.identifiers.items():
            if values:
                attributes[system.value] = ", ".join(values)
        return cls(
            entity_id=entity.id,
            position=entity.coordinate.as_lon_lat(),
            title=entity.name,
            attributes=attributes,
        )
