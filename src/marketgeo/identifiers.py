"""Identifier cross-reference cache.

Maps organization ids to external (claims/billing) identifiers through one
batched lookup per distinct id set. Each instance covers one identifier
system (NPI or CCN). Results are cached for a bounded lifetime and
concurrent identical lookups share a single request.

Enrichment is best-effort: a lookup that still fails after one retry yields
empty identifier lists instead of an exception.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any

from pydantic import AliasChoices, Field, ValidationError, field_validator

from marketgeo._cache import TtlCache
from marketgeo._normalize import identifier_set_key, normalize_ids, safe_str
from marketgeo.exceptions import LookupFailedError
from marketgeo.models._base import MarketBaseModel
from marketgeo.models.market import IdentifierSystem
from marketgeo.persistence import IdentifierSource

_logger = logging.getLogger(__name__)

IdentifierMap = dict[str, tuple[str, ...]]


class IdentifierRecord(MarketBaseModel):
    """One ``organization id → external identifier`` row."""

    entity_id: str = Field(..., validation_alias=AliasChoices("entity_id", "dhc"))
    identifier: str = ""
    is_primary: bool = False

    @field_validator("entity_id", "identifier", mode="before")
    @classmethod
    def _coerce_str(cls, value: Any) -> str:
        return safe_str(value) or ""

    @field_validator("is_primary", mode="before")
    @classmethod
    def _coerce_primary(cls, value: Any) -> bool:
        if isinstance(value, str):
            return value.strip().lower() in {"1", "true", "yes"}
        return bool(value)

    @classmethod
    def from_row(cls, row: dict[str, Any], system: IdentifierSystem) -> IdentifierRecord:
        """Read the identifier from the column named after *system*.

        CCN rows also carry the NPI they were joined through, so the column
        has to be picked explicitly.
        """
        return cls.model_validate({**row, "identifier": row.get(IdentifierSystem(system).value)})


def group_identifiers(
    rows: Iterable[dict[str, Any]],
    system: IdentifierSystem = IdentifierSystem.NPI,
) -> IdentifierMap:
    """Group rows per organization, de-duplicated, primary identifiers first.

    Within each group the first-seen order is kept otherwise.
    """
    merged: dict[str, dict[str, bool]] = {}
    for row in rows:
        try:
            record = IdentifierRecord.from_row(row, system)
        except ValidationError:
            continue
        if not record.entity_id or not record.identifier:
            continue
        seen = merged.setdefault(record.entity_id, {})
        seen[record.identifier] = seen.get(record.identifier, False) or record.is_primary

    grouped: IdentifierMap = {}
    for entity_id, identifiers in merged.items():
        ordered = sorted(identifiers.items(), key=lambda item: not item[1])
        grouped[entity_id] = tuple(identifier for identifier, _primary in ordered)
    return grouped


@dataclass(frozen=True, slots=True)
class IdentifierLookup:
    """Outcome of one cross-reference call."""

    identifiers: IdentifierMap = field(default_factory=dict)
    ok: bool = True


class IdentifierCrossReference:
    """Cached, coalescing front for an :class:`IdentifierSource`.

    Parameters
    ----------
    source
        Batched identifier lookup (HTTP transport or store).
    system
        Identifier system this instance resolves.
    ttl
        Seconds a completed lookup is reused.
    retry_delay
        Fixed delay before the single automatic retry.
    clock
        Monotonic clock; injectable for tests.
    """

    def __init__(
        self,
        source: IdentifierSource,
        *,
        system: IdentifierSystem = IdentifierSystem.NPI,
        ttl: float = 5 * 60,
        retry_delay: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._source = source
        self._system = IdentifierSystem(system)
        self._retry_delay = retry_delay
        self._cache: TtlCache[str, IdentifierMap] = TtlCache(ttl, clock=clock, name=f"identifiers:{self._system}")
        self.last_error: LookupFailedError | None = None

    @property
    def system(self) -> IdentifierSystem:
        return self._system

    @staticmethod
    def cache_key(ids: Iterable[Any]) -> str:
        return identifier_set_key(ids)

    async def resolve(self, ids: Iterable[Any]) -> IdentifierMap:
        """Return ``id → identifiers`` for every id in *ids*.

        Ids without identifiers map to an empty tuple. On lookup failure
        every id maps to an empty tuple.
        """
        return (await self.lookup(ids)).identifiers

    async def lookup(self, ids: Iterable[Any]) -> IdentifierLookup:
        """Like :meth:`resolve` but also reports whether the lookup succeeded."""
        id_list = normalize_ids(ids)
        if not id_list:
            return IdentifierLookup()

        key = ",".join(id_list)
        try:
            found = await self._cache.get_or_fetch(key, lambda: self._fetch(id_list))
        except LookupFailedError as exc:
            self.last_error = exc
            _logger.warning("%s lookup failed for %d ids: %s", self._system.name, len(id_list), exc)
            return IdentifierLookup(identifiers={entity_id: () for entity_id in id_list}, ok=False)

        return IdentifierLookup(identifiers={entity_id: found.get(entity_id, ()) for entity_id in id_list})

    def invalidate(self, ids: Iterable[Any]) -> None:
        self._cache.invalidate(self.cache_key(ids))

    async def _fetch(self, id_list: Sequence[str]) -> IdentifierMap:
        """One batched request, retried once after a fixed delay."""
        last_exc: Exception | None = None
        for attempt in (1, 2):
            try:
                rows = await self._source.query_by_ids(list(id_list), self._system)
            except Exception as exc:
                last_exc = exc
                if attempt == 1:
                    _logger.debug("%s lookup attempt=%d failed; retrying", self._system.name, attempt, exc_info=True)
                    await asyncio.sleep(self._retry_delay)
                continue
            grouped = group_identifiers(rows, self._system)
            _logger.debug("%s lookup resolved %d of %d ids", self._system.name, len(grouped), len(id_list))
            return grouped

        if isinstance(last_exc, LookupFailedError):
            raise last_exc
        raise LookupFailedError(f"{self._system.name} lookup failed: {last_exc}") from last_exc
