from __future__ import annotations

from dataclasses import dataclass, field

import pytest

from marketgeo.config import EngineConfig
from marketgeo.exceptions import LookupFailedError
from marketgeo.models import Coordinate, MarketEntity, MarketView
from marketgeo.prefetch import Prediction, PredictivePrefetcher

CENTER = Coordinate(latitude=38.6592, longitude=-90.358)


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


@dataclass
class _FakeFetcher:
    fail_for: set[tuple[float, float]] = field(default_factory=set)
    calls: list[tuple[Coordinate, float]] = field(default_factory=list)

    async def __call__(self, center: Coordinate, radius_miles: float) -> dict[str, object]:
        self.calls.append((center, radius_miles))
        if center.cache_key() in self.fail_for:
            raise LookupFailedError("prefetch backend down")
        return {"center": center.cache_key(), "radius": radius_miles}


def _view() -> MarketView:
    entities = {}
    for index, entity_id in enumerate(["center", "near", "mid", "far"]):
        entities[entity_id] = MarketEntity.model_validate(
            {
                "dhc": entity_id,
                "lat": CENTER.latitude + index * 0.05,
                "lon": CENTER.longitude,
                "distance_miles": index * 3.45,
            }
        )
    return MarketView(center=CENTER, radius_miles=10, center_id="center", entities=entities)


def _timed(latency: float):
    async def measured() -> float:
        return latency

    return measured


def test_predict_next_skips_center_and_viewed_entities() -> None:
    prefetcher = PredictivePrefetcher(_FakeFetcher())
    prefetcher.track_usage("near", 15, 30.0)

    predictions = prefetcher.predict_next(_view())

    assert [prediction.entity_id for prediction in predictions] == ["mid", "far"]
    assert all(prediction.radius_miles == 15 for prediction in predictions)


def test_track_usage_keeps_a_running_session_average() -> None:
    prefetcher = PredictivePrefetcher(_FakeFetcher())

    prefetcher.track_usage("a", 10, 40.0)
    prefetcher.track_usage("b", 25, 20.0)

    assert prefetcher.usage.viewed == {"a", "b"}
    assert prefetcher.usage.common_radius == 25
    assert prefetcher.usage.average_session == pytest.approx(20.0)


@pytest.mark.asyncio
async def test_prefetched_data_is_consumed_on_read() -> None:
    fetcher = _FakeFetcher()
    prefetcher = PredictivePrefetcher(fetcher)

    task = prefetcher.prefetch(prefetcher.predict_next(_view()))
    assert task is not None
    await task

    assert prefetcher.get_prefetched("near") == {"center": (38.7092, -90.358), "radius": 10.0}
    assert prefetcher.get_prefetched("near") is None
    assert prefetcher.get_prefetched("mid") is not None


@pytest.mark.asyncio
async def test_prefetch_round_is_capped() -> None:
    fetcher = _FakeFetcher()
    prefetcher = PredictivePrefetcher(fetcher, config=EngineConfig(prefetch_concurrency=2))
    predictions = [Prediction(str(index), CENTER, 10) for index in range(5)]

    task = prefetcher.prefetch(predictions)
    assert task is not None
    await task

    assert len(fetcher.calls) == 2


@pytest.mark.asyncio
async def test_prefetched_data_expires() -> None:
    clock = _Clock()
    prefetcher = PredictivePrefetcher(_FakeFetcher(), clock=clock)

    task = prefetcher.prefetch([Prediction("near", CENTER, 10)])
    assert task is not None
    await task
    clock.now += 301

    assert prefetcher.get_prefetched("near") is None


@pytest.mark.asyncio
async def test_slow_network_skips_prefetching() -> None:
    fetcher = _FakeFetcher()
    prefetcher = PredictivePrefetcher(fetcher, latency_check=_timed(2500.0))

    assert await prefetcher.measure_latency() == 2500.0
    assert prefetcher.prefetch(prefetcher.predict_next(_view())) is None
    assert prefetcher.warm_cache() is None
    assert fetcher.calls == []


@pytest.mark.asyncio
async def test_disabled_prefetch_does_nothing() -> None:
    fetcher = _FakeFetcher()
    prefetcher = PredictivePrefetcher(fetcher, config=EngineConfig(prefetch_enabled=False))

    assert prefetcher.prefetch([Prediction("near", CENTER, 10)]) is None
    assert fetcher.calls == []


@pytest.mark.asyncio
async def test_failed_prefetch_never_raises() -> None:
    near = Coordinate(latitude=38.7, longitude=-90.3)
    fetcher = _FakeFetcher(fail_for={near.cache_key()})
    prefetcher = PredictivePrefetcher(fetcher)

    task = prefetcher.prefetch([Prediction("near", near, 10), Prediction("mid", CENTER, 10)])
    assert task is not None
    await task
    await prefetcher.drain()

    assert prefetcher.get_prefetched("near") is None
    assert prefetcher.get_prefetched("mid") is not None


@pytest.mark.asyncio
async def test_warm_cache_loads_common_markets() -> None:
    fetcher = _FakeFetcher()
    prefetcher = PredictivePrefetcher(fetcher)

    task = prefetcher.warm_cache()
    assert task is not None
    await task

    assert len(fetcher.calls) == 3
    assert prefetcher.get_warmed(CENTER, 10) == {"center": (38.6592, -90.358), "radius": 10.0}


@pytest.mark.asyncio
async def test_failed_measurement_keeps_previous_latency() -> None:
    async def failing_check() -> float:
        raise LookupFailedError("network unreachable")

    prefetcher = PredictivePrefetcher(_FakeFetcher(), latency_check=failing_check)

    assert await prefetcher.measure_latency() is None
    assert prefetcher.latency_ms is None
