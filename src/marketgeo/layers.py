"""Map layer synchronizer.

Gates creation of the radius and point layers until the map container,
the rendering surface, its style and a market view are all available,
creates them exactly once, and afterwards pushes data-only updates into
the existing sources so the map does not flicker.

Lifecycle signals come from the rendering surface through
:meth:`MapLayerSynchronizer.container_attached`,
:meth:`MapLayerSynchronizer.surface_ready` and
:meth:`MapLayerSynchronizer.style_ready`. Signals may arrive in any order;
one that arrives early is held until the state machine can apply it. A
renderer fires them once per surface, so after a center change the
synchronizer replays the ones it has already received. Scheduling methods
need a running event loop.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from typing import Any, Protocol

from marketgeo._constants import POINTS_LAYER_ID, POINTS_SOURCE_ID, RADIUS_LAYER_ID, RADIUS_SOURCE_ID
from marketgeo.config import EngineConfig
from marketgeo.exceptions import LayerStateError
from marketgeo.geo import entity_features, radius_feature
from marketgeo.models.layers import LayerState, Popup, can_transition
from marketgeo.models.market import MarketEntity, MarketView, TagType

_logger = logging.getLogger(__name__)

EventHandler = Callable[[Mapping[str, Any]], None]


class MapSurface(Protocol):
    """Rendering surface operations used by the synchronizer."""

    def container_size(self) -> tuple[float, float]:
        ...

    def add_source(self, source_id: str, data: dict[str, Any]) -> None:
        ...

    def update_source_data(self, source_id: str, data: dict[str, Any]) -> None:
        ...

    def has_source(self, source_id: str) -> bool:
        ...

    def remove_source(self, source_id: str) -> None:
        ...

    def add_layer(self, spec: dict[str, Any]) -> None:
        ...

    def has_layer(self, layer_id: str) -> bool:
        ...

    def remove_layer(self, layer_id: str) -> None:
        ...

    def on(self, event: str, layer_id: str, handler: EventHandler) -> Callable[[], None]:
        """Subscribe to *event* on *layer_id*; returns an unsubscribe callable."""
        ...

    def open_popup(self, popup: Popup) -> Any:
        ...

    def close_popup(self, handle: Any) -> None:
        ...

    def set_cursor(self, cursor: str) -> None:
        ...


def radius_layer_spec() -> dict[str, Any]:
    return {
        "id": RADIUS_LAYER_ID,
        "type": "fill",
        "source": RADIUS_SOURCE_ID,
        "paint": {
            "fill-color": "rgba(0, 123, 255, 0.1)",
            "fill-opacity": 0.3,
            "fill-outline-color": "rgba(0, 123, 255, 0.3)",
        },
    }


def points_layer_spec() -> dict[str, Any]:
    return {
        "id": POINTS_LAYER_ID,
        "type": "circle",
        "source": POINTS_SOURCE_ID,
        "paint": {
            "circle-radius": ["case", ["boolean", ["get", "has_identifiers"], False], 6, 4],
            "circle-color": [
                "match",
                ["get", "tag"],
                TagType.PARTNER.value,
                "#4caf50",
                TagType.COMPETITOR.value,
                "#f44336",
                TagType.NONE.value,
                "#2196f3",
                "#9c27b0",
            ],
            "circle-stroke-color": "#ffffff",
            "circle-stroke-width": 2,
            "circle-opacity": 0.8,
        },
    }


class MapLayerSynchronizer:
    """Keep one map session's layers in sync with the latest market view.

    Parameters
    ----------
    surface
        The rendering surface.
    config
        Supplies the creation debounce and container backoff settings.
    """

    def __init__(self, surface: MapSurface, *, config: EngineConfig | None = None) -> None:
        self._surface = surface
        self._config = config or EngineConfig()
        self._state = LayerState.UNINITIALIZED
        self._session = 0
        self._view: MarketView | None = None
        self._rendered_radius: float | None = None
        # Signals received from the surface; kept across center changes.
        self._container_seen = False
        self._surface_seen = False
        self._style_seen = False
        self._lock = asyncio.Lock()
        self._create_task: asyncio.Task[None] | None = None
        self._container_task: asyncio.Task[None] | None = None
        self._unsubscribers: list[Callable[[], None]] = []
        self._popup: Popup | None = None
        self._popup_handle: Any = None
        self._popup_from_hover = False

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> LayerState:
        return self._state

    @property
    def session(self) -> int:
        return self._session

    @property
    def view(self) -> MarketView | None:
        return self._view

    @property
    def popup(self) -> Popup | None:
        return self._popup

    @property
    def creation_task(self) -> asyncio.Task[None] | None:
        """The pending debounced layer creation, if any."""
        return self._create_task

    def _transition(self, target: LayerState) -> None:
        if not can_transition(self._state, target):
            raise LayerStateError(f"illegal layer transition {self._state} -> {target}")
        _logger.debug("Map layers %s -> %s (session=%d)", self._state, target, self._session)
        self._state = target

    # ------------------------------------------------------------------
    # Surface lifecycle signals
    # ------------------------------------------------------------------

    def container_attached(self, width: float, height: float) -> None:
        """The map container element exists with the given layout size.

        A zero-sized container is re-measured with exponential backoff
        until it has a size or the attempts run out.
        """
        if self._state != LayerState.UNINITIALIZED:
            return
        self._container_seen = True
        if width > 0 and height > 0:
            self._container_ready()
            return
        if self._container_task is None or self._container_task.done():
            self._container_task = asyncio.get_running_loop().create_task(self._await_container(self._session))

    async def _await_container(self, session: int) -> None:
        delay = self._config.container_backoff
        for _attempt in range(self._config.container_attempts):
            await asyncio.sleep(delay)
            if session != self._session or self._state != LayerState.UNINITIALIZED:
                return
            width, height = self._surface.container_size()
            if width > 0 and height > 0:
                self._container_ready()
                return
            delay *= 2
        _logger.warning("Map container still has no size after %d checks", self._config.container_attempts)

    def _container_ready(self) -> None:
        self._transition(LayerState.CONTAINER_READY)
        self._advance()

    def surface_ready(self) -> None:
        """The renderer finished loading.

        Held until the container is ready, e.g. while a zero-sized
        container is still being re-measured.
        """
        self._surface_seen = True
        self._advance()

    def style_ready(self) -> None:
        """The renderer finished loading its style; held until the surface is loaded."""
        self._style_seen = True
        self._advance()

    def _advance(self) -> None:
        if self._state == LayerState.CONTAINER_READY and self._surface_seen:
            self._transition(LayerState.SURFACE_LOADED)
        if self._state == LayerState.SURFACE_LOADED and self._style_seen:
            self._transition(LayerState.STYLE_READY)
        self._maybe_data_ready()

    # ------------------------------------------------------------------
    # Data
    # ------------------------------------------------------------------

    def set_view(self, view: MarketView) -> None:
        """Accept a new market view snapshot.

        A view with a different center tears the layers down and starts a
        new session on the same surface. Before layers exist the view only
        feeds the pending creation; afterwards the existing sources are
        updated in place.
        """
        current = self._view
        if current is not None and current.center.cache_key() != view.center.cache_key():
            _logger.debug("Map center changed; recreating layers")
            self._restart()
        self._view = view

        if self._state == LayerState.STYLE_READY:
            self._maybe_data_ready()
        elif self._state == LayerState.DATA_READY:
            self.schedule_layer_creation()
        elif self._state == LayerState.LAYERS_CREATED:
            self._update_sources(view)

    def _maybe_data_ready(self) -> None:
        if self._state == LayerState.STYLE_READY and self._view is not None:
            self._transition(LayerState.DATA_READY)
            self.schedule_layer_creation()

    def _update_sources(self, view: MarketView) -> None:
        self._surface.update_source_data(POINTS_SOURCE_ID, entity_features(view))
        if self._rendered_radius != view.radius_miles:
            self._surface.update_source_data(RADIUS_SOURCE_ID, radius_feature(view.center, view.radius_miles))
            self._rendered_radius = view.radius_miles
        if self._popup is not None:
            entity = view.get(self._popup.entity_id)
            if entity is None:
                self.close_popup()
            else:
                self._show_popup(entity, from_hover=self._popup_from_hover)

    # ------------------------------------------------------------------
    # Layer creation
    # ------------------------------------------------------------------

    def schedule_layer_creation(self) -> asyncio.Task[None] | None:
        """Debounce layer creation; a newer trigger replaces a pending one."""
        if self._state != LayerState.DATA_READY:
            return None
        if self._create_task is not None and not self._create_task.done():
            self._create_task.cancel()
        self._create_task = asyncio.get_running_loop().create_task(self._debounced_create(self._session))
        return self._create_task

    async def _debounced_create(self, session: int) -> None:
        await asyncio.sleep(self._config.layer_debounce)
        try:
            await self.create_layers(session=session)
        except Exception:
            _logger.error("Adding map layers failed", exc_info=True)

    async def create_layers(self, *, session: int | None = None) -> bool:
        """Create the radius and point layers once.

        Returns ``True`` only for the call that created them. Calls for a
        superseded session, before data is ready, or after creation are
        no-ops.
        """
        target_session = self._session if session is None else session
        async with self._lock:
            if target_session != self._session:
                _logger.debug("Skipping layer creation for stale session=%d", target_session)
                return False
            if self._state != LayerState.DATA_READY or self._view is None:
                return False

            view = self._view
            if not self._surface.has_source(RADIUS_SOURCE_ID):
                self._surface.add_source(RADIUS_SOURCE_ID, radius_feature(view.center, view.radius_miles))
            if not self._surface.has_layer(RADIUS_LAYER_ID):
                self._surface.add_layer(radius_layer_spec())
            if not self._surface.has_source(POINTS_SOURCE_ID):
                self._surface.add_source(POINTS_SOURCE_ID, entity_features(view))
            if not self._surface.has_layer(POINTS_LAYER_ID):
                self._surface.add_layer(points_layer_spec())
            self._rendered_radius = view.radius_miles

            self._unsubscribers = [
                self._surface.on("click", POINTS_LAYER_ID, self._on_click),
                self._surface.on("mouseenter", POINTS_LAYER_ID, self._on_hover),
                self._surface.on("mouseleave", POINTS_LAYER_ID, self._on_leave),
            ]
            self._transition(LayerState.LAYERS_CREATED)
            return True

    # ------------------------------------------------------------------
    # Interaction
    # ------------------------------------------------------------------

    def _event_entity(self, event: Mapping[str, Any]) -> MarketEntity | None:
        if self._view is None:
            return None
        features = event.get("features") or []
        if not features:
            return None
        feature = features[0]
        properties = feature.get("properties") or {}
        entity_id = properties.get("id", feature.get("id"))
        if entity_id is None:
            return None
        return self._view.get(str(entity_id))

    def _on_click(self, event: Mapping[str, Any]) -> None:
        entity = self._event_entity(event)
        if entity is not None:
            self._show_popup(entity, from_hover=False)

    def _on_hover(self, event: Mapping[str, Any]) -> None:
        self._surface.set_cursor("pointer")
        entity = self._event_entity(event)
        # A pinned (clicked) popup is not replaced by hovering.
        if entity is not None and (self._popup is None or self._popup_from_hover):
            self._show_popup(entity, from_hover=True)

    def _on_leave(self, _event: Mapping[str, Any]) -> None:
        self._surface.set_cursor("")
        if self._popup_from_hover:
            self.close_popup()

    def select_entity(self, entity_id: str) -> MarketEntity | None:
        """Show the popup for *entity_id*, e.g. when a table row is selected."""
        if self._view is None:
            return None
        entity = self._view.get(entity_id)
        if entity is not None:
            self._show_popup(entity, from_hover=False)
        return entity

    def _show_popup(self, entity: MarketEntity, *, from_hover: bool) -> None:
        self.close_popup()
        popup = Popup.for_entity(entity)
        self._popup_handle = self._surface.open_popup(popup)
        self._popup = popup
        self._popup_from_hover = from_hover

    def close_popup(self) -> None:
        if self._popup is None:
            return
        self._surface.close_popup(self._popup_handle)
        self._popup = None
        self._popup_handle = None
        self._popup_from_hover = False

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def reset(self) -> None:
        """Tear down all layers and return to ``uninitialized``.

        Lifecycle signals received so far are forgotten; the surface has to
        send them again.
        """
        self._teardown()
        self._container_seen = False
        self._surface_seen = False
        self._style_seen = False

    def _restart(self) -> None:
        self._teardown()
        if self._container_seen:
            width, height = self._surface.container_size()
            self.container_attached(width, height)

    def _teardown(self) -> None:
        self._session += 1
        for task in (self._create_task, self._container_task):
            if task is not None and not task.done():
                task.cancel()
        self._create_task = None
        self._container_task = None

        self.close_popup()
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

        for layer_id in (POINTS_LAYER_ID, RADIUS_LAYER_ID):
            if self._surface.has_layer(layer_id):
                self._surface.remove_layer(layer_id)
        for source_id in (POINTS_SOURCE_ID, RADIUS_SOURCE_ID):
            if self._surface.has_source(source_id):
                self._surface.remove_source(source_id)

        self._view = None
        self._rendered_radius = None
        self._transition(LayerState.UNINITIALIZED)
