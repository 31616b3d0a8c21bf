from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import pytest

from marketgeo._constants import POINTS_LAYER_ID, POINTS_SOURCE_ID, RADIUS_LAYER_ID, RADIUS_SOURCE_ID
from marketgeo.config import EngineConfig
from marketgeo.layers import MapLayerSynchronizer
from marketgeo.models import Coordinate, IdentifierSystem, LayerState, MarketEntity, MarketView, Popup
from marketgeo.models.layers import can_transition

CENTER = Coordinate(latitude=38.6592, longitude=-90.358)


@dataclass
class FakeSurface:
    size: tuple[float, float] = (800.0, 600.0)
    sources: dict[str, dict[str, Any]] = field(default_factory=dict)
    layers: dict[str, dict[str, Any]] = field(default_factory=dict)
    add_layer_calls: int = 0
    updates: list[str] = field(default_factory=list)
    handlers: dict[tuple[str, str], Callable[[dict[str, Any]], None]] = field(default_factory=dict)
    popups: dict[int, Popup] = field(default_factory=dict)
    opened: int = 0
    cursor: str = ""

    def container_size(self) -> tuple[float, float]:
        return self.size

    def add_source(self, source_id: str, data: dict[str, Any]) -> None:
        assert source_id not in self.sources, f"duplicate source {source_id}"
        self.sources[source_id] = data

    def update_source_data(self, source_id: str, data: dict[str, Any]) -> None:
        self.sources[source_id] = data
        self.updates.append(source_id)

    def has_source(self, source_id: str) -> bool:
        return source_id in self.sources

    def remove_source(self, source_id: str) -> None:
        del self.sources[source_id]

    def add_layer(self, spec: dict[str, Any]) -> None:
        assert spec["id"] not in self.layers, f"duplicate layer {spec['id']}"
        self.add_layer_calls += 1
        self.layers[spec["id"]] = spec

    def has_layer(self, layer_id: str) -> bool:
        return layer_id in self.layers

    def remove_layer(self, layer_id: str) -> None:
        del self.layers[layer_id]

    def on(self, event: str, layer_id: str, handler: Callable[[dict[str, Any]], None]) -> Callable[[], None]:
        self.handlers[(event, layer_id)] = handler
        return lambda: self.handlers.pop((event, layer_id), None)

    def open_popup(self, popup: Popup) -> int:
        self.opened += 1
        self.popups[self.opened] = popup
        return self.opened

    def close_popup(self, handle: Any) -> None:
        self.popups.pop(handle, None)

    def set_cursor(self, cursor: str) -> None:
        self.cursor = cursor

    def fire(self, event: str, entity_id: str | None = None) -> None:
        payload = {"features": [{"properties": {"id": entity_id}}]} if entity_id else {"features": []}
        self.handlers[(event, POINTS_LAYER_ID)](payload)


def _entity(entity_id: str, lat: float, distance: float) -> MarketEntity:
    return MarketEntity.model_validate(
        {"dhc": entity_id, "name": f"Org {entity_id}", "lat": lat, "lon": CENTER.longitude, "distance_miles": distance}
    )


def _view(radius: float = 10.0, center: Coordinate = CENTER, revision: int = 1) -> MarketView:
    return MarketView(
        center=center,
        radius_miles=radius,
        center_id="center",
        revision=revision,
        entities={
            "center": _entity("center", center.latitude, 0.0),
            "a": _entity("a", center.latitude + 0.03, 2.07),
            "b": _entity("b", center.latitude + 0.07, 4.84),
        },
    )


def _config() -> EngineConfig:
    return EngineConfig(layer_debounce=0.001, container_backoff=0.001, container_attempts=4)


def _ready(sync: MapLayerSynchronizer) -> None:
    sync.container_attached(800, 600)
    sync.surface_ready()
    sync.style_ready()


async def _created(surface: FakeSurface) -> MapLayerSynchronizer:
    sync = MapLayerSynchronizer(surface, config=_config())
    _ready(sync)
    sync.set_view(_view())
    assert sync.creation_task is not None
    await sync.creation_task
    assert sync.state == LayerState.LAYERS_CREATED
    return sync


def test_transitions_are_forward_only_except_reset() -> None:
    assert can_transition(LayerState.UNINITIALIZED, LayerState.CONTAINER_READY)
    assert not can_transition(LayerState.UNINITIALIZED, LayerState.STYLE_READY)
    assert not can_transition(LayerState.LAYERS_CREATED, LayerState.DATA_READY)
    assert can_transition(LayerState.LAYERS_CREATED, LayerState.UNINITIALIZED)


@pytest.mark.asyncio
async def test_lifecycle_reaches_data_ready_then_creates_layers_once() -> None:
    surface = FakeSurface()
    sync = MapLayerSynchronizer(surface, config=_config())

    sync.container_attached(800, 600)
    assert sync.state == LayerState.CONTAINER_READY
    sync.surface_ready()
    assert sync.state == LayerState.SURFACE_LOADED
    sync.style_ready()
    assert sync.state == LayerState.STYLE_READY
    sync.set_view(_view())
    assert sync.state == LayerState.DATA_READY

    assert sync.creation_task is not None
    await sync.creation_task

    assert sync.state == LayerState.LAYERS_CREATED
    assert set(surface.layers) == {RADIUS_LAYER_ID, POINTS_LAYER_ID}
    assert set(surface.sources) == {RADIUS_SOURCE_ID, POINTS_SOURCE_ID}
    ring = surface.sources[RADIUS_SOURCE_ID]["geometry"]["coordinates"][0]
    assert len(ring) == 65
    feature_ids = [feature["id"] for feature in surface.sources[POINTS_SOURCE_ID]["features"]]
    assert feature_ids == ["a", "b"]


@pytest.mark.asyncio
async def test_view_before_style_waits_for_style() -> None:
    surface = FakeSurface()
    sync = MapLayerSynchronizer(surface, config=_config())

    sync.set_view(_view())
    sync.container_attached(800, 600)
    sync.surface_ready()
    assert sync.state == LayerState.SURFACE_LOADED
    assert surface.layers == {}

    sync.style_ready()
    assert sync.state == LayerState.DATA_READY


@pytest.mark.asyncio
async def test_early_style_signal_is_buffered() -> None:
    sync = MapLayerSynchronizer(FakeSurface(), config=_config())

    sync.style_ready()
    sync.container_attached(800, 600)
    assert sync.state == LayerState.CONTAINER_READY

    sync.surface_ready()
    assert sync.state == LayerState.STYLE_READY


@pytest.mark.asyncio
async def test_early_surface_signal_is_buffered() -> None:
    sync = MapLayerSynchronizer(FakeSurface(), config=_config())

    sync.surface_ready()
    assert sync.state == LayerState.UNINITIALIZED

    sync.container_attached(800, 600)
    assert sync.state == LayerState.SURFACE_LOADED
    sync.style_ready()
    assert sync.state == LayerState.STYLE_READY


@pytest.mark.asyncio
async def test_zero_sized_container_is_rechecked_with_backoff() -> None:
    surface = FakeSurface(size=(0.0, 0.0))
    sync = MapLayerSynchronizer(surface, config=_config())

    sync.container_attached(0, 0)
    assert sync.state == LayerState.UNINITIALIZED

    surface.size = (640.0, 480.0)
    await asyncio.sleep(0.05)

    assert sync.state == LayerState.CONTAINER_READY


@pytest.mark.asyncio
async def test_signals_during_container_backoff_are_held() -> None:
    surface = FakeSurface(size=(0.0, 0.0))
    sync = MapLayerSynchronizer(surface, config=_config())
    sync.set_view(_view())

    sync.container_attached(0, 0)
    sync.surface_ready()
    sync.style_ready()
    assert sync.state == LayerState.UNINITIALIZED

    surface.size = (640.0, 480.0)
    await asyncio.sleep(0.05)

    assert sync.state in (LayerState.DATA_READY, LayerState.LAYERS_CREATED)
    assert sync.creation_task is not None
    await sync.creation_task
    assert sync.state == LayerState.LAYERS_CREATED


@pytest.mark.asyncio
async def test_two_immediate_creation_calls_create_each_layer_once() -> None:
    surface = FakeSurface()
    sync = MapLayerSynchronizer(surface, config=EngineConfig(layer_debounce=10.0))
    _ready(sync)
    sync.set_view(_view())

    results = await asyncio.gather(sync.create_layers(), sync.create_layers())

    assert sorted(results) == [False, True]
    assert surface.add_layer_calls == 2
    assert set(surface.layers) == {RADIUS_LAYER_ID, POINTS_LAYER_ID}

    # The pending debounced attempt is a no-op once layers exist.
    assert await sync.create_layers() is False
    sync.reset()


@pytest.mark.asyncio
async def test_rapid_views_before_creation_are_debounced() -> None:
    surface = FakeSurface()
    sync = MapLayerSynchronizer(surface, config=EngineConfig(layer_debounce=0.01))
    _ready(sync)

    sync.set_view(_view(radius=5))
    first = sync.creation_task
    sync.set_view(_view(radius=10, revision=2))
    second = sync.creation_task

    assert first is not second
    assert second is not None
    await second
    assert first is not None and first.cancelled()
    assert surface.add_layer_calls == 2
    assert surface.sources[RADIUS_SOURCE_ID]["properties"]["radius_miles"] == 10


@pytest.mark.asyncio
async def test_later_views_update_sources_in_place() -> None:
    surface = FakeSurface()
    sync = await _created(surface)

    sync.set_view(_view(radius=10, revision=2))
    assert surface.updates == [POINTS_SOURCE_ID]

    sync.set_view(_view(radius=15, revision=3))
    assert surface.updates == [POINTS_SOURCE_ID, POINTS_SOURCE_ID, RADIUS_SOURCE_ID]
    assert surface.sources[RADIUS_SOURCE_ID]["properties"]["radius_miles"] == 15
    assert surface.add_layer_calls == 2
    assert sync.state == LayerState.LAYERS_CREATED


@pytest.mark.asyncio
async def test_new_center_resets_layers() -> None:
    surface = FakeSurface()
    sync = await _created(surface)
    session = sync.session

    moved = Coordinate(latitude=40.7128, longitude=-74.006)
    sync.set_view(_view(center=moved, revision=2))

    assert sync.session == session + 1
    assert surface.layers == {}
    assert surface.sources == {}
    assert surface.handlers == {}
    assert sync.view is not None and sync.view.center == moved

    # The surface does not fire its lifecycle signals again for a new center.
    assert sync.state == LayerState.DATA_READY
    assert sync.creation_task is not None
    await sync.creation_task
    assert sync.state == LayerState.LAYERS_CREATED
    assert set(surface.layers) == {RADIUS_LAYER_ID, POINTS_LAYER_ID}


@pytest.mark.asyncio
async def test_new_center_remeasures_a_collapsed_container() -> None:
    surface = FakeSurface()
    sync = await _created(surface)

    surface.size = (0.0, 0.0)
    sync.set_view(_view(center=Coordinate(latitude=40.7128, longitude=-74.006), revision=2))
    assert sync.state == LayerState.UNINITIALIZED

    surface.size = (800.0, 600.0)
    await asyncio.sleep(0.05)

    assert sync.state in (LayerState.DATA_READY, LayerState.LAYERS_CREATED)
    assert sync.creation_task is not None
    await sync.creation_task
    assert sync.state == LayerState.LAYERS_CREATED


@pytest.mark.asyncio
async def test_reset_forgets_lifecycle_signals() -> None:
    surface = FakeSurface()
    sync = await _created(surface)

    sync.reset()
    sync.set_view(_view(revision=2))
    assert sync.state == LayerState.UNINITIALIZED
    assert sync.creation_task is None

    _ready(sync)
    assert sync.state == LayerState.DATA_READY


@pytest.mark.asyncio
async def test_reset_cancels_pending_creation() -> None:
    surface = FakeSurface()
    sync = MapLayerSynchronizer(surface, config=EngineConfig(layer_debounce=10.0))
    _ready(sync)
    sync.set_view(_view())
    pending = sync.creation_task

    sync.reset()
    await asyncio.sleep(0)

    assert pending is not None and pending.cancelled()
    assert sync.state == LayerState.UNINITIALIZED
    assert surface.layers == {}


@pytest.mark.asyncio
async def test_only_one_popup_is_open_at_a_time() -> None:
    surface = FakeSurface()
    sync = await _created(surface)

    surface.fire("click", "a")
    surface.fire("click", "b")

    assert len(surface.popups) == 1
    popup = next(iter(surface.popups.values()))
    assert popup.entity_id == "b"
    assert popup.attributes["distance"] == "4.84 miles"
    assert sync.popup == popup


@pytest.mark.asyncio
async def test_hover_toggles_cursor_and_transient_popup() -> None:
    surface = FakeSurface()
    sync = await _created(surface)

    surface.fire("mouseenter", "a")
    assert surface.cursor == "pointer"
    assert sync.popup is not None and sync.popup.entity_id == "a"

    surface.fire("mouseleave")
    assert surface.cursor == ""
    assert surface.popups == {}


@pytest.mark.asyncio
async def test_hover_does_not_replace_clicked_popup() -> None:
    surface = FakeSurface()
    sync = await _created(surface)

    surface.fire("click", "a")
    surface.fire("mouseenter", "b")
    surface.fire("mouseleave")

    assert sync.popup is not None and sync.popup.entity_id == "a"
    assert len(surface.popups) == 1


@pytest.mark.asyncio
async def test_popup_closes_when_entity_leaves_the_view() -> None:
    surface = FakeSurface()
    sync = await _created(surface)
    sync.select_entity("b")

    smaller = _view(radius=3, revision=2).model_copy(
        update={"entities": {key: value for key, value in _view().entities.items() if key != "b"}}
    )
    sync.set_view(smaller)

    assert sync.popup is None
    assert surface.popups == {}


def test_popup_lists_identifiers_per_system() -> None:
    entity = _entity("a", CENTER.latitude, 1.0).model_copy(
        update={"identifiers": {IdentifierSystem.NPI: ("1000", "1111"), IdentifierSystem.CCN: ("260001",)}}
    )

    popup = Popup.for_entity(entity)

    assert popup.attributes["npi"] == "1000, 1111"
    assert popup.attributes["ccn"] == "260001"
    assert "ccn" not in Popup.for_entity(_entity("b", CENTER.latitude, 1.0)).attributes
