"""High-level async facade for the market geospatial engine."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

import aiohttp

from marketgeo._transport import HttpIdentifierTransport, HttpLatencyCheck
from marketgeo.config import EngineConfig
from marketgeo.exceptions import MarketGeoError, MarketValidationError
from marketgeo.identifiers import IdentifierCrossReference
from marketgeo.layers import MapLayerSynchronizer, MapSurface
from marketgeo.market import CenterInput, MarketResolutionService, ViewListener
from marketgeo.models.market import IdentifierSystem, MarketEntity, MarketView, TagValue
from marketgeo.models.organization import Coordinate
from marketgeo.persistence import IdentifierSource, MarketStore
from marketgeo.prefetch import LatencyCheck, PredictivePrefetcher
from marketgeo.prefilter import BoundingBoxPrefilter
from marketgeo.state.store import TagOverlayStore

_logger = logging.getLogger(__name__)


class MarketEngine:
    """Async engine wiring prefilter, identifiers, tags, views, map and prefetch.

    Usage::

        async with MarketEngine(store) as engine:
            view = await engine.update((38.6592, -90.358), 10, tag_scope="market-1")
            await engine.set_tag("market-1", view.ordered()[0].id, "partner")

    While open, and unless prefetching is disabled, the engine measures
    network latency and warms the common markets once, then re-measures
    latency every ``config.latency_interval`` seconds.

    Parameters
    ----------
    store
        Persistence for organizations, tags and (by default) identifiers.
    config
        Engine configuration; defaults to :meth:`EngineConfig.from_env`.
    session
        Optional externally owned ``aiohttp.ClientSession``.
    use_http
        Route identifier lookups and latency checks through
        ``config.base_url`` instead of the store.
    latency_check
        Explicit latency check; takes precedence over the HTTP check.
    clock
        Monotonic clock shared by every cache.
    """

    def __init__(
        self,
        store: MarketStore,
        config: EngineConfig | None = None,
        *,
        session: aiohttp.ClientSession | None = None,
        use_http: bool = False,
        latency_check: LatencyCheck | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._config = config or EngineConfig.from_env()
        self._external_session = session is not None
        self._http_session = session
        self._use_http = use_http
        self._latency_check = latency_check
        self._clock = clock
        self._service: MarketResolutionService | None = None
        self._tags: TagOverlayStore | None = None
        self._identifiers: dict[IdentifierSystem, IdentifierCrossReference] = {}
        self._prefetcher: PredictivePrefetcher | None = None
        self._surfaces: list[tuple[MapLayerSynchronizer, Callable[[], None]]] = []
        self._monitor_task: asyncio.Task[None] | None = None
        self._background: set[asyncio.Task[None]] = set()

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> MarketEngine:
        identifier_source: IdentifierSource = self._store
        latency_check = self._latency_check
        if self._use_http:
            if self._http_session is None:
                self._http_session = aiohttp.ClientSession()
            identifier_source = HttpIdentifierTransport(self._config, self._http_session)
            if latency_check is None:
                latency_check = HttpLatencyCheck(self._config, self._http_session)

        self._identifiers = {
            system: IdentifierCrossReference(
                identifier_source,
                system=system,
                ttl=self._config.identifier_ttl,
                retry_delay=self._config.retry_delay,
                clock=self._clock,
            )
            for system in IdentifierSystem
        }
        self._tags = TagOverlayStore(self._store)
        self._service = MarketResolutionService(
            BoundingBoxPrefilter(self._store, margin_degrees=self._config.bounding_box_margin),
            list(self._identifiers.values()),
            self._tags,
            config=self._config,
            clock=self._clock,
        )
        self._prefetcher = PredictivePrefetcher(
            self._prefetch_market,
            latency_check=latency_check,
            config=self._config,
            clock=self._clock,
        )
        if self._config.prefetch_enabled:
            self._monitor_task = asyncio.get_running_loop().create_task(self._monitor_network(self._prefetcher))
        return self

    async def __aexit__(self, *exc: Any) -> None:
        pending = [task for task in (self._monitor_task, *self._background) if task is not None]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._monitor_task = None
        self._background.clear()

        for synchronizer, unsubscribe in self._surfaces:
            unsubscribe()
            synchronizer.reset()
        self._surfaces.clear()
        if self._prefetcher is not None:
            self._prefetcher.close()
            self._prefetcher = None
        if self._service is not None:
            self._service.close()
            self._service = None
        if not self._external_session and self._http_session is not None:
            await self._http_session.close()
            self._http_session = None
        self._tags = None
        self._identifiers = {}

    def _require_service(self) -> MarketResolutionService:
        if self._service is None:
            raise MarketGeoError("Engine not initialized. Use 'async with MarketEngine(...) as engine:'")
        return self._service

    def _require_tags(self) -> TagOverlayStore:
        if self._tags is None:
            raise MarketGeoError("Engine not initialized. Use 'async with MarketEngine(...) as engine:'")
        return self._tags

    def _require_prefetcher(self) -> PredictivePrefetcher:
        if self._prefetcher is None:
            raise MarketGeoError("Engine not initialized. Use 'async with MarketEngine(...) as engine:'")
        return self._prefetcher

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def current_view(self) -> MarketView | None:
        return self._service.current_view if self._service is not None else None

    @property
    def service(self) -> MarketResolutionService:
        return self._require_service()

    @property
    def tags(self) -> TagOverlayStore:
        return self._require_tags()

    @property
    def prefetcher(self) -> PredictivePrefetcher:
        return self._require_prefetcher()

    @property
    def identifiers(self) -> dict[IdentifierSystem, IdentifierCrossReference]:
        """The cross-reference cache for each identifier system."""
        self._require_service()
        return dict(self._identifiers)

    def subscribe(self, listener: ViewListener) -> Callable[[], None]:
        return self._require_service().subscribe(listener)

    # ------------------------------------------------------------------
    # Background work
    # ------------------------------------------------------------------

    def _spawn(self, coro: Awaitable[None]) -> asyncio.Task[None]:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _monitor_network(self, prefetcher: PredictivePrefetcher) -> None:
        await prefetcher.measure_latency()
        prefetcher.warm_cache()
        interval = self._config.latency_interval
        if interval <= 0:
            return
        while True:
            await asyncio.sleep(interval)
            await prefetcher.measure_latency()

    async def drain(self) -> None:
        """Wait for background refreshes and prefetches scheduled so far."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        if self._prefetcher is not None:
            await self._prefetcher.drain()

    # ------------------------------------------------------------------
    # Markets
    # ------------------------------------------------------------------

    async def resolve(
        self,
        center: CenterInput,
        radius_miles: float,
        tag_scope: str | None = None,
        *,
        center_id: str | None = None,
    ) -> MarketView:
        """Resolve a market view without publishing it."""
        return await self._require_service().resolve(center, radius_miles, tag_scope, center_id=center_id)

    async def update(
        self,
        center: CenterInput,
        radius_miles: float,
        tag_scope: str | None = None,
        *,
        center_id: str | None = None,
    ) -> MarketView | None:
        """Resolve and publish, superseding in-flight work.

        Returns ``None`` when a newer update replaced this one. A published
        view triggers a background prefetch of the likeliest next entities.
        """
        view = await self._require_service().update(center, radius_miles, tag_scope, center_id=center_id)
        if view is not None:
            self._prefetch_after(view)
        return view

    def _prefetch_after(self, view: MarketView) -> None:
        if self._prefetcher is not None:
            self._prefetcher.prefetch(self._prefetcher.predict_next(view))

    def _require_view(self) -> MarketView:
        view = self.current_view
        if view is None:
            raise MarketValidationError("No market has been resolved yet")
        return view

    async def set_radius(self, radius_miles: float) -> MarketView | None:
        """Re-resolve the current market at *radius_miles*; candidates are reused."""
        view = self._require_view()
        return await self.update(view.center, radius_miles, view.tag_scope, center_id=view.center_id)

    async def set_center(self, center: CenterInput, *, center_id: str | None = None) -> MarketView | None:
        """Move the current market to *center*, keeping radius and tag scope."""
        view = self._require_view()
        return await self.update(center, view.radius_miles, view.tag_scope, center_id=center_id)

    async def open_entity(self, entity_id: str, *, session_duration: float = 0.0) -> MarketView | None:
        """Re-center the market on an entity from the current view.

        A matching prefetched view is published immediately and refreshed
        in the background; otherwise the market is resolved as usual.
        """
        view = self._require_view()
        entity = view.get(entity_id)
        if entity is None:
            raise MarketValidationError(f"Entity {entity_id!r} is not part of the current market")

        prefetcher = self._require_prefetcher()
        prefetcher.track_usage(entity_id, view.radius_miles, session_duration)
        prefetched = prefetcher.get_prefetched(entity_id)
        if isinstance(prefetched, MarketView) and _matches(prefetched, entity, view):
            _logger.debug("Opening entity=%s from prefetched view", entity_id)
            adopted = self._require_service().adopt(prefetched, center_id=entity_id)
            self._prefetch_after(adopted)
            self._spawn(self._refresh(entity.coordinate, view.radius_miles, view.tag_scope, entity_id))
            return adopted
        return await self.update(entity.coordinate, view.radius_miles, view.tag_scope, center_id=entity_id)

    async def _refresh(
        self,
        center: Coordinate,
        radius_miles: float,
        tag_scope: str | None,
        center_id: str,
    ) -> None:
        try:
            await self.update(center, radius_miles, tag_scope, center_id=center_id)
        except MarketGeoError as exc:
            _logger.warning("Background refresh for entity=%s failed: %s", center_id, exc)

    async def _prefetch_market(self, center: Coordinate, radius_miles: float) -> MarketView:
        view = self.current_view
        scope = view.tag_scope if view is not None else None
        return await self._require_service().resolve(center, radius_miles, scope)

    async def measure_latency(self) -> float | None:
        return await self._require_prefetcher().measure_latency()

    def warm_cache(self) -> None:
        """Schedule background warming of the common markets."""
        self._require_prefetcher().warm_cache()

    # ------------------------------------------------------------------
    # Tags
    # ------------------------------------------------------------------

    async def set_tag(self, scope: str, entity_id: str, tag: TagValue) -> None:
        await self._require_tags().set_tag(scope, entity_id, tag)

    async def clear_tag(self, scope: str, entity_id: str) -> None:
        await self._require_tags().clear_tag(scope, entity_id)

    async def list_tags(self, scope: str) -> dict[str, TagValue]:
        return await self._require_tags().list_tags(scope)

    # ------------------------------------------------------------------
    # Map
    # ------------------------------------------------------------------

    def attach_surface(self, surface: MapSurface) -> MapLayerSynchronizer:
        """Bind a map surface to the published views.

        The returned synchronizer still needs the surface lifecycle
        signals (``container_attached``, ``surface_ready``, ``style_ready``).
        """
        service = self._require_service()
        synchronizer = MapLayerSynchronizer(surface, config=self._config)
        unsubscribe = service.subscribe(synchronizer.set_view)
        self._surfaces.append((synchronizer, unsubscribe))
        if service.current_view is not None:
            synchronizer.set_view(service.current_view)
        return synchronizer

    def detach_surface(self, synchronizer: MapLayerSynchronizer) -> None:
        for index, (bound, unsubscribe) in enumerate(self._surfaces):
            if bound is synchronizer:
                unsubscribe()
                synchronizer.reset()
                del self._surfaces[index]
                return


def _matches(prefetched: MarketView, entity: MarketEntity, view: MarketView) -> bool:
    """Whether *prefetched* is the market *view* would resolve around *entity*."""
    return (
        prefetched.center.cache_key() == entity.coordinate.cache_key()
        and prefetched.radius_miles == view.radius_miles
        and prefetched.tag_scope == view.tag_scope
    )
