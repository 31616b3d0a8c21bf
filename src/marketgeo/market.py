"""Market resolution service.

Orchestrates prefilter → radius filter → sort by distance → identifier
cross-reference → tag overlay into one :class:`MarketView`.

Resolutions triggered through :meth:`MarketResolutionService.update` are
superseding: every call bumps a generation counter and cancels the
previous in-flight resolution, and a result whose generation is no longer
current is dropped silently instead of being published.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from collections import Counter
from collections.abc import Callable, Iterable, Sequence
from typing import Any

from marketgeo._cache import TtlCache
from marketgeo.config import EngineConfig
from marketgeo.exceptions import LookupFailedError, StaleResultError
from marketgeo.geo import distance_miles
from marketgeo.identifiers import IdentifierCrossReference, IdentifierMap
from marketgeo.models.market import IdentifierSystem, MarketEntity, MarketView, TagType, TagValue, ViewIssue
from marketgeo.models.organization import Coordinate, Organization
from marketgeo.models.requests import ResolveRequest
from marketgeo.prefilter import BoundingBoxPrefilter
from marketgeo.state.events import TagChange
from marketgeo.state.store import TagOverlayStore

_logger = logging.getLogger(__name__)

ViewListener = Callable[[MarketView], None]
CenterInput = Coordinate | tuple[float, float]


def rank_candidates(
    center: Coordinate,
    candidates: Iterable[Organization],
    radius_miles: float,
) -> list[tuple[Organization, float]]:
    """Candidates within *radius_miles*, ascending by distance.

    ``sorted`` is stable, so ties keep their input order.
    """
    within: list[tuple[Organization, float]] = []
    for organization in candidates:
        distance = distance_miles(center, organization.coordinate)
        if distance <= radius_miles:
            within.append((organization, distance))
    return sorted(within, key=lambda pair: pair[1])


def filter_entities(
    view: MarketView,
    *,
    search: str | None = None,
    types: Iterable[str] | None = None,
) -> list[MarketEntity]:
    """Client-side filter over a resolved view; never touches the network.

    *search* matches case-insensitively against name, network, city and
    street. *types* keeps only the given organization types.
    """
    needle = search.strip().lower() if search else ""
    wanted = {t.lower() for t in types} if types else None

    results: list[MarketEntity] = []
    for entity in view.ordered():
        if wanted is not None and entity.type.lower() not in wanted:
            continue
        if needle:
            haystack = " ".join(
                part for part in (entity.name, entity.network, entity.city, entity.street) if part
            ).lower()
            if needle not in haystack:
                continue
        results.append(entity)
    return results


def type_counts(view: MarketView) -> dict[str, int]:
    """Entity count per organization type, most common first."""
    return dict(Counter(entity.type for entity in view.ordered()).most_common())


class MarketResolutionService:
    """Resolve and publish market views.

    The service owns the candidate cache and the current view; other
    components only ever receive immutable snapshots.

    Parameters
    ----------
    prefilter
        Bounding-box candidate source.
    identifiers
        Identifier cross-reference cache, or one cache per identifier
        system. All of them are queried concurrently for every resolution.
    tags
        Tag overlay store. Tag changes for the current scope produce a
        new superseding view without any network call.
    config
        Engine configuration (radius limit, candidate TTL, box margin).
    clock
        Monotonic clock for the candidate cache.
    """

    def __init__(
        self,
        prefilter: BoundingBoxPrefilter,
        identifiers: IdentifierCrossReference | Sequence[IdentifierCrossReference],
        tags: TagOverlayStore,
        *,
        config: EngineConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config or EngineConfig()
        self._prefilter = prefilter
        if isinstance(identifiers, IdentifierCrossReference):
            identifiers = (identifiers,)
        self._identifiers = tuple(identifiers)
        self._tags = tags
        self._candidates: TtlCache[tuple[float, float], list[Organization]] = TtlCache(
            self._config.candidate_ttl,
            clock=clock,
            name="candidates",
        )
        self._generation = 0
        self._revisions = itertools.count(1)
        self._task: asyncio.Task[MarketView] | None = None
        self._view: MarketView | None = None
        self._listeners: list[ViewListener] = []
        self._unsubscribe_tags = tags.subscribe(self._on_tag_change)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def current_view(self) -> MarketView | None:
        return self._view

    @property
    def generation(self) -> int:
        return self._generation

    def subscribe(self, listener: ViewListener) -> Callable[[], None]:
        """Register *listener* for every published view; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def close(self) -> None:
        """Cancel in-flight work and detach from the tag store."""
        self._generation += 1
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
        self._unsubscribe_tags()
        self._listeners.clear()

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def _request(
        self,
        center: CenterInput,
        radius_miles: float,
        tag_scope: str | None,
        center_id: str | None,
    ) -> ResolveRequest:
        return ResolveRequest.build(
            max_radius_miles=self._config.max_radius_miles,
            center=center,
            radius_miles=radius_miles,
            tag_scope=tag_scope,
            center_id=center_id,
        )

    async def candidates(self, center: Coordinate) -> list[Organization]:
        """Bounding-box candidates for *center*, read once per distinct center.

        Radius changes reuse the cached set; concurrent callers for the
        same center share one store read.
        """
        return await self._candidates.get_or_fetch(
            center.cache_key(),
            lambda: self._prefilter.prefilter(center, self._config.bounding_box_margin),
        )

    def refresh_candidates(self, center: CenterInput) -> None:
        """Drop the cached candidate set for *center*."""
        request = self._request(center, 1.0, None, None)
        self._candidates.invalidate(request.center.cache_key())

    async def resolve(
        self,
        center: CenterInput,
        radius_miles: float,
        tag_scope: str | None = None,
        *,
        center_id: str | None = None,
    ) -> MarketView:
        """Resolve one market view without publishing it.

        Raises
        ------
        MarketValidationError
            Bad radius or center; raised before any network call.
        PrefilterFailedError
            No candidates could be obtained.
        """
        request = self._request(center, radius_miles, tag_scope, center_id)
        return await self._resolve(request, generation=None)

    async def update(
        self,
        center: CenterInput,
        radius_miles: float,
        tag_scope: str | None = None,
        *,
        center_id: str | None = None,
    ) -> MarketView | None:
        """Resolve and publish, superseding any in-flight resolution.

        Returns the published view, or ``None`` when this request was
        superseded before it finished.
        """
        request = self._request(center, radius_miles, tag_scope, center_id)

        self._generation += 1
        generation = self._generation
        previous = self._task
        if previous is not None and not previous.done():
            _logger.debug("Cancelling superseded resolution; new generation=%d", generation)
            previous.cancel()

        task = asyncio.create_task(self._resolve(request, generation=generation))
        self._task = task
        try:
            view = await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            caller_cancelled = current is not None and current.cancelling() > 0
            if caller_cancelled or generation == self._generation:
                raise
            _logger.debug("Resolution generation=%d superseded while in flight", generation)
            return None
        except StaleResultError as exc:
            _logger.debug("Dropping stale resolution: %s", exc)
            return None
        finally:
            if self._task is task:
                self._task = None

        if generation != self._generation:
            _logger.debug("Dropping stale view generation=%d current=%d", generation, self._generation)
            return None

        self._publish(self._overlay_local_tags(view))
        return self._view

    def adopt(self, view: MarketView, *, center_id: str | None = None) -> MarketView:
        """Publish a view resolved ahead of time, e.g. by the prefetcher.

        Supersedes in-flight resolutions like :meth:`update` does. Tag
        writes made since *view* was resolved are applied before publishing.
        """
        self._generation += 1
        if self._task is not None and not self._task.done():
            _logger.debug("Cancelling in-flight resolution for adopted view; generation=%d", self._generation)
            self._task.cancel()
        adopted = view.model_copy(update={"center_id": center_id, "revision": next(self._revisions)})
        published = self._overlay_local_tags(adopted)
        self._publish(published)
        return published

    def _check_current(self, generation: int | None) -> None:
        if generation is not None and generation != self._generation:
            raise StaleResultError(generation, self._generation)

    async def _resolve(self, request: ResolveRequest, *, generation: int | None) -> MarketView:
        candidates = await self.candidates(request.center)
        self._check_current(generation)

        ranked = rank_candidates(request.center, candidates, request.radius_miles)
        ids = [organization.id for organization, _distance in ranked]

        issues: list[ViewIssue] = []
        identifiers: dict[IdentifierSystem, IdentifierMap] = {}
        tags: dict[str, TagValue] = {}
        if ids:
            *lookups, (tags, tags_ok) = await asyncio.gather(
                *(xref.lookup(ids) for xref in self._identifiers),
                self._read_tags(request.tag_scope),
            )
            self._check_current(generation)
            identifiers = {xref.system: lookup.identifiers for xref, lookup in zip(self._identifiers, lookups)}
            if not all(lookup.ok for lookup in lookups):
                issues.append(ViewIssue.IDENTIFIERS)
            if not tags_ok:
                issues.append(ViewIssue.TAGS)

        entities = {
            organization.id: MarketEntity.from_organization(
                organization,
                distance_miles=distance,
                identifiers={system: found.get(organization.id, ()) for system, found in identifiers.items()},
                tag=tags.get(organization.id, TagType.NONE),
            )
            for organization, distance in ranked
        }
        _logger.debug(
            "Resolved market center=%s radius=%.1f candidates=%d entities=%d issues=%s",
            request.center.cache_key(),
            request.radius_miles,
            len(candidates),
            len(entities),
            [issue.value for issue in issues],
        )
        return MarketView(
            center=request.center,
            radius_miles=request.radius_miles,
            center_id=request.center_id,
            tag_scope=request.tag_scope,
            entities=entities,
            revision=next(self._revisions),
            issues=tuple(issues),
        )

    async def _read_tags(self, scope: str | None) -> tuple[dict[str, TagValue], bool]:
        if scope is None:
            return {}, True
        try:
            return await self._tags.list_tags(scope), True
        except LookupFailedError as exc:
            _logger.warning("Tag lookup failed for scope=%s: %s", scope, exc)
            return {}, False

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    def _overlay_local_tags(self, view: MarketView) -> MarketView:
        """Apply tag writes issued after this view's tag read."""
        if view.tag_scope is None or ViewIssue.TAGS in view.issues:
            return view
        local = self._tags.peek_tags(view.tag_scope)
        drift = {
            entity_id: local.get(entity_id, TagType.NONE)
            for entity_id, entity in view.entities.items()
            if entity.tag != local.get(entity_id, TagType.NONE)
        }
        if not drift:
            return view
        return view.with_tags(drift, revision=next(self._revisions))

    def _publish(self, view: MarketView) -> None:
        self._view = view
        for listener in list(self._listeners):
            try:
                listener(view)
            except Exception:
                _logger.debug("View listener failed for revision=%d", view.revision, exc_info=True)

    def _on_tag_change(self, change: TagChange) -> None:
        view = self._view
        if view is None or view.tag_scope != change.scope:
            return
        entity = view.get(change.entity_id)
        if entity is None or entity.tag == change.tag:
            return
        _logger.debug("Tag %s for entity=%s (%s)", change.tag, change.entity_id, change.source)
        self._publish(view.with_tags({change.entity_id: change.tag}, revision=next(self._revisions)))


def describe(view: MarketView) -> dict[str, Any]:
    """Compact summary used by scripts and debug logging."""
    return {
        "center": view.center.cache_key(),
        "radius_miles": view.radius_miles,
        "entities": len(view.entities),
        "tagged": len(view.tags()),
        "issues": [issue.value for issue in view.issues],
        "revision": view.revision,
    }
