"""Time-bounded cache with in-flight request coalescing."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Hashable
from dataclasses import dataclass, field
from typing import Generic, TypeVar

_logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


@dataclass(slots=True)
class CacheEntry(Generic[K, V]):
    """A cached value and the monotonic time it was stored."""

    key: K
    value: V
    inserted_at: float
    last_access: float = field(default=0.0)

    def is_valid(self, now: float, ttl: float) -> bool:
        return now - self.inserted_at < ttl


class TtlCache(Generic[K, V]):
    """Keyed cache whose entries expire *ttl* seconds after insertion.

    Expired entries are treated as absent and evicted lazily on the next
    lookup. When ``max_size`` is reached the least recently accessed entry
    is evicted.

    :meth:`get_or_fetch` additionally coalesces concurrent misses for the
    same key: the first caller runs the fetch, later callers await the
    same pending future.
    """

    def __init__(
        self,
        ttl: float,
        *,
        max_size: int = 1000,
        clock: Callable[[], float] = time.monotonic,
        name: str = "cache",
    ) -> None:
        if ttl <= 0:
            raise ValueError(f"ttl must be positive, got {ttl}")
        self._ttl = ttl
        self._max_size = max_size
        self._clock = clock
        self._name = name
        self._entries: dict[K, CacheEntry[K, V]] = {}
        self._inflight: dict[K, asyncio.Future[V]] = {}
        self._tasks: set[asyncio.Task[None]] = set()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return self.get(key) is not None  # type: ignore[arg-type]

    def get(self, key: K) -> V | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        now = self._clock()
        if not entry.is_valid(now, self._ttl):
            del self._entries[key]
            _logger.debug("%s: expired key=%s", self._name, key)
            return None
        entry.last_access = now
        return entry.value

    def set(self, key: K, value: V) -> None:
        if key not in self._entries and len(self._entries) >= self._max_size:
            self._evict_oldest()
        now = self._clock()
        self._entries[key] = CacheEntry(key=key, value=value, inserted_at=now, last_access=now)

    def pop(self, key: K) -> V | None:
        """Remove and return a valid entry (consume-on-read)."""
        value = self.get(key)
        if value is not None:
            del self._entries[key]
        return value

    def invalidate(self, key: K) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def is_inflight(self, key: K) -> bool:
        return key in self._inflight

    def _evict_oldest(self) -> None:
        if not self._entries:
            return
        oldest = min(self._entries.values(), key=lambda entry: entry.last_access)
        _logger.debug("%s: evicting least recently used key=%s", self._name, oldest.key)
        del self._entries[oldest.key]

    async def get_or_fetch(self, key: K, fetch: Callable[[], Awaitable[V]]) -> V:
        """Return the cached value for *key* or fetch it exactly once.

        A failing fetch propagates to every waiter and caches nothing.
        Cancelling one waiter never cancels the shared fetch.
        """
        cached = self.get(key)
        if cached is not None:
            _logger.debug("%s: hit key=%s", self._name, key)
            return cached

        pending = self._inflight.get(key)
        if pending is not None:
            _logger.debug("%s: joining in-flight fetch key=%s", self._name, key)
            return await asyncio.shield(pending)

        _logger.debug("%s: miss key=%s", self._name, key)
        loop = asyncio.get_running_loop()
        future: asyncio.Future[V] = loop.create_future()
        self._inflight[key] = future
        task = loop.create_task(self._run_fetch(key, fetch, future))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return await asyncio.shield(future)

    async def _run_fetch(self, key: K, fetch: Callable[[], Awaitable[V]], future: asyncio.Future[V]) -> None:
        try:
            value = await fetch()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as exc:
            future.set_exception(exc)
            # Every waiter may have gone away; mark the exception retrieved.
            future.exception()
        else:
            self.set(key, value)
            future.set_result(value)
        finally:
            self._inflight.pop(key, None)
