from __future__ import annotations

import asyncio

import pytest

from marketgeo._cache import TtlCache
from marketgeo.exceptions import LookupFailedError


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_entry_expires_after_ttl() -> None:
    clock = _Clock()
    cache: TtlCache[str, int] = TtlCache(300, clock=clock)
    cache.set("k", 1)

    clock.now += 299.9
    assert cache.get("k") == 1

    clock.now += 0.1
    assert cache.get("k") is None
    assert len(cache) == 0


def test_least_recently_used_entry_is_evicted() -> None:
    clock = _Clock()
    cache: TtlCache[str, int] = TtlCache(300, max_size=2, clock=clock)
    cache.set("a", 1)
    clock.now += 1
    cache.set("b", 2)
    clock.now += 1
    assert cache.get("a") == 1

    clock.now += 1
    cache.set("c", 3)

    assert "a" in cache
    assert "b" not in cache
    assert "c" in cache


def test_pop_consumes_entry() -> None:
    cache: TtlCache[str, str] = TtlCache(60)
    cache.set("k", "v")
    assert cache.pop("k") == "v"
    assert cache.pop("k") is None


def test_non_positive_ttl_rejected() -> None:
    with pytest.raises(ValueError):
        TtlCache(0)


@pytest.mark.asyncio
async def test_concurrent_misses_share_one_fetch() -> None:
    cache: TtlCache[str, str] = TtlCache(60)
    gate = asyncio.Event()
    calls = 0

    async def fetch() -> str:
        nonlocal calls
        calls += 1
        await gate.wait()
        return "value"

    first = asyncio.create_task(cache.get_or_fetch("k", fetch))
    second = asyncio.create_task(cache.get_or_fetch("k", fetch))
    await asyncio.sleep(0)
    assert cache.is_inflight("k")

    gate.set()
    assert await first == "value"
    assert await second == "value"
    assert calls == 1
    assert not cache.is_inflight("k")

    # Served from cache now.
    assert await cache.get_or_fetch("k", fetch) == "value"
    assert calls == 1


@pytest.mark.asyncio
async def test_cancelled_waiter_does_not_cancel_shared_fetch() -> None:
    cache: TtlCache[str, str] = TtlCache(60)
    gate = asyncio.Event()

    async def fetch() -> str:
        await gate.wait()
        return "value"

    first = asyncio.create_task(cache.get_or_fetch("k", fetch))
    second = asyncio.create_task(cache.get_or_fetch("k", fetch))
    await asyncio.sleep(0)

    first.cancel()
    gate.set()

    assert await second == "value"
    with pytest.raises(asyncio.CancelledError):
        await first
    assert cache.get("k") == "value"


@pytest.mark.asyncio
async def test_failed_fetch_reaches_every_waiter_and_caches_nothing() -> None:
    cache: TtlCache[str, str] = TtlCache(60)
    gate = asyncio.Event()

    async def fetch() -> str:
        await gate.wait()
        raise LookupFailedError("boom")

    first = asyncio.create_task(cache.get_or_fetch("k", fetch))
    second = asyncio.create_task(cache.get_or_fetch("k", fetch))
    await asyncio.sleep(0)
    gate.set()

    results = await asyncio.gather(first, second, return_exceptions=True)

    assert all(isinstance(result, LookupFailedError) for result in results)
    assert cache.get("k") is None
    assert not cache.is_inflight("k")
