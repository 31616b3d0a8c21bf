"""Predictive prefetch cache.

Speculatively loads market data for the entities a user is likely to open
next and for a few common markets. Everything here is best-effort: work
runs in background tasks, failures are logged and dropped, and nothing is
attempted when the measured latency says the network is slow.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from marketgeo._cache import TtlCache
from marketgeo._constants import COMMON_PATTERNS
from marketgeo.config import EngineConfig
from marketgeo.exceptions import LookupFailedError
from marketgeo.models.market import MarketView
from marketgeo.models.organization import Coordinate

_logger = logging.getLogger(__name__)

Fetcher = Callable[[Coordinate, float], Awaitable[Any]]
LatencyCheck = Callable[[], Awaitable[float]]


@dataclass(frozen=True, slots=True)
class Prediction:
    """An entity the user is expected to open next."""

    entity_id: str
    center: Coordinate
    radius_miles: float


@dataclass(slots=True)
class UsageProfile:
    viewed: set[str] = field(default_factory=set)
    common_radius: float = 10.0
    average_session: float = 0.0


class PredictivePrefetcher:
    """Background prefetching keyed by entity id.

    Parameters
    ----------
    fetcher
        ``await fetcher(center, radius_miles)`` loads the data to stash.
    latency_check
        Optional ``await check()`` returning round-trip latency in ms.
    config
        Supplies the TTL, latency threshold and per-round limit.
    clock
        Monotonic clock for the prefetch TTL.
    """

    def __init__(
        self,
        fetcher: Fetcher,
        *,
        latency_check: LatencyCheck | None = None,
        config: EngineConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config or EngineConfig()
        self._fetcher = fetcher
        self._check = latency_check
        self._prefetched: TtlCache[str, Any] = TtlCache(self._config.prefetch_ttl, clock=clock, name="prefetch")
        self._warmed: TtlCache[tuple[float, float, float], Any] = TtlCache(
            self._config.prefetch_ttl, clock=clock, name="warm"
        )
        self._usage = UsageProfile()
        self._latency_ms: float | None = None
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def latency_ms(self) -> float | None:
        """Last measured latency, ``None`` until measured."""
        return self._latency_ms

    @property
    def usage(self) -> UsageProfile:
        return self._usage

    # ------------------------------------------------------------------
    # Usage tracking
    # ------------------------------------------------------------------

    def track_usage(self, entity_id: str, radius_miles: float, session_duration: float) -> None:
        """Record that *entity_id* was viewed at *radius_miles*."""
        self._usage.viewed.add(entity_id)
        self._usage.common_radius = radius_miles
        self._usage.average_session = (self._usage.average_session + session_duration) / 2

    def predict_next(self, view: MarketView, limit: int | None = None) -> list[Prediction]:
        """Closest entities in *view* that were not viewed or prefetched yet."""
        limit = self._config.prefetch_concurrency if limit is None else limit
        predictions: list[Prediction] = []
        for entity in view.ordered():
            if len(predictions) >= limit:
                break
            if entity.id == view.center_id or entity.id in self._usage.viewed:
                continue
            if entity.id in self._prefetched:
                continue
            predictions.append(Prediction(entity.id, entity.coordinate, self._usage.common_radius))
        return predictions

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_prefetched(self, entity_id: str) -> Any | None:
        """Return and consume prefetched data for *entity_id*."""
        data = self._prefetched.pop(entity_id)
        if data is not None:
            _logger.debug("Using prefetched data for entity=%s", entity_id)
        return data

    def get_warmed(self, center: Coordinate, radius_miles: float) -> Any | None:
        return self._warmed.get((*center.cache_key(), float(radius_miles)))

    # ------------------------------------------------------------------
    # Background work
    # ------------------------------------------------------------------

    async def measure_latency(self) -> float | None:
        """Time one request; keeps the previous value when that fails."""
        if self._check is None:
            return self._latency_ms
        try:
            latency = await self._check()
        except LookupFailedError as exc:
            _logger.warning("Could not measure latency: %s", exc)
            return self._latency_ms
        self._latency_ms = latency
        _logger.debug("Measured latency %.0f ms", latency)
        return latency

    def _should_skip(self) -> bool:
        if not self._config.prefetch_enabled:
            return True
        latency = self._latency_ms
        if latency is not None and latency > self._config.prefetch_latency_threshold_ms:
            _logger.debug("Skipping prefetch; latency %.0f ms above threshold", latency)
            return True
        return False

    def _spawn(self, coro: Awaitable[None]) -> asyncio.Task[None]:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def prefetch(self, predictions: Iterable[Prediction]) -> asyncio.Task[None] | None:
        """Schedule a prefetch round; returns the task or ``None`` when skipped."""
        batch = list(predictions)[: self._config.prefetch_concurrency]
        if not batch or self._should_skip():
            return None
        _logger.debug("Prefetching %d predicted entities", len(batch))
        return self._spawn(self._run_prefetch(batch))

    async def _run_prefetch(self, batch: list[Prediction]) -> None:
        results = await asyncio.gather(
            *(self._fetcher(prediction.center, prediction.radius_miles) for prediction in batch),
            return_exceptions=True,
        )
        for prediction, result in zip(batch, results):
            if isinstance(result, BaseException):
                _logger.debug("Prefetch failed for entity=%s", prediction.entity_id, exc_info=result)
                continue
            self._prefetched.set(prediction.entity_id, result)

    def warm_cache(
        self,
        patterns: Iterable[tuple[float, float, float]] = COMMON_PATTERNS,
    ) -> asyncio.Task[None] | None:
        """Schedule loading of common ``(lat, lon, radius)`` markets."""
        batch = list(patterns)
        if not batch or self._should_skip():
            return None
        return self._spawn(self._run_warm(batch))

    async def _run_warm(self, patterns: list[tuple[float, float, float]]) -> None:
        for lat, lon, radius in patterns:
            center = Coordinate(latitude=lat, longitude=lon)
            try:
                data = await self._fetcher(center, radius)
            except Exception:
                _logger.debug("Cache warming failed for pattern=%s", (lat, lon, radius), exc_info=True)
                continue
            self._warmed.set((*center.cache_key(), float(radius)), data)

    async def drain(self) -> None:
        """Wait for every scheduled background task."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        self._prefetched.clear()
        self._warmed.clear()
