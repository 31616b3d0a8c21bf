"""Persistence boundary used by the engine.

The engine only reads organizations and identifier rows and reads/writes
tag rows. :class:`InMemoryMarketStore` is a reference implementation for
tests, scripts and demos; production callers supply their own store.
"""

from __future__ import annotations

import asyncio
import copy
from collections.abc import Iterable, Mapping, Sequence
from typing import Any, Protocol

from marketgeo._normalize import safe_str
from marketgeo.models.market import IdentifierSystem


class IdentifierSource(Protocol):
    """Batched identifier lookup.

    Rows carry the organization id in ``dhc`` and the identifier in the
    column named after *system* (``npi`` or ``ccn``).
    """

    async def query_by_ids(
        self,
        ids: Sequence[str],
        system: IdentifierSystem = IdentifierSystem.NPI,
    ) -> list[dict[str, Any]]:
        ...


class MarketStore(IdentifierSource, Protocol):
    """Structural persistence interface.

    Having a protocol here makes it easy to pass test doubles while keeping
    production stores (SQL, warehouse, REST) outside the library.
    """

    async def query_box(
        self,
        lat_min: float,
        lat_max: float,
        lon_min: float,
        lon_max: float,
    ) -> list[dict[str, Any]]:
        ...

    async def read_tags(self, scope: str) -> dict[str, str]:
        ...

    async def write_tag(self, scope: str, entity_id: str, tag: str) -> None:
        ...

    async def delete_tag(self, scope: str, entity_id: str) -> None:
        ...


def _row_coordinate(row: Mapping[str, Any]) -> tuple[float, float] | None:
    lat = row.get("latitude", row.get("lat"))
    lon = row.get("longitude", row.get("lon", row.get("lng")))
    try:
        return float(lat), float(lon)
    except (TypeError, ValueError):
        return None


class InMemoryMarketStore:
    """Dict-backed :class:`MarketStore`.

    Rows are returned as deep copies so callers can never mutate stored
    state. ``latency`` adds an artificial await to every call, which is
    handy for exercising overlapping requests.
    """

    def __init__(
        self,
        organizations: Iterable[Mapping[str, Any]] = (),
        identifiers: Iterable[Mapping[str, Any]] = (),
        *,
        latency: float = 0.0,
    ) -> None:
        self._organizations: list[dict[str, Any]] = [dict(row) for row in organizations]
        self._identifiers: list[dict[str, Any]] = [dict(row) for row in identifiers]
        self._tags: dict[str, dict[str, str]] = {}
        self._latency = latency

    async def _pause(self) -> None:
        if self._latency > 0:
            await asyncio.sleep(self._latency)
        else:
            await asyncio.sleep(0)

    def add_identifier(
        self,
        entity_id: str,
        identifier: str,
        *,
        system: IdentifierSystem = IdentifierSystem.NPI,
        is_primary: bool = False,
    ) -> None:
        self._identifiers.append({"dhc": entity_id, system.value: identifier, "is_primary": is_primary})

    async def query_box(
        self,
        lat_min: float,
        lat_max: float,
        lon_min: float,
        lon_max: float,
    ) -> list[dict[str, Any]]:
        await self._pause()
        rows: list[dict[str, Any]] = []
        for row in self._organizations:
            coordinate = _row_coordinate(row)
            if coordinate is None:
                continue
            lat, lon = coordinate
            if lat_min <= lat <= lat_max and lon_min <= lon <= lon_max:
                rows.append(copy.deepcopy(row))
        return rows

    async def query_by_ids(
        self,
        ids: Sequence[str],
        system: IdentifierSystem = IdentifierSystem.NPI,
    ) -> list[dict[str, Any]]:
        await self._pause()
        wanted = {str(entity_id) for entity_id in ids}
        column = IdentifierSystem(system).value
        return [
            copy.deepcopy(row)
            for row in self._identifiers
            if str(row.get("dhc")) in wanted and safe_str(row.get(column)) is not None
        ]

    async def read_tags(self, scope: str) -> dict[str, str]:
        await self._pause()
        return dict(self._tags.get(scope, {}))

    async def write_tag(self, scope: str, entity_id: str, tag: str) -> None:
        await self._pause()
        self._tags.setdefault(scope, {})[entity_id] = tag

    async def delete_tag(self, scope: str, entity_id: str) -> None:
        await self._pause()
        scoped = self._tags.get(scope)
        if scoped is not None:
            scoped.pop(entity_id, None)
