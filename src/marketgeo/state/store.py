"""Tag overlay store.

This is the only component allowed to write tag rows. Reads and writes go
to the persistence store; local writes are applied optimistically so
consumers see them immediately, then reconciled on the next
:meth:`TagOverlayStore.list_tags`.
"""

from __future__ import annotations

import itertools
import logging
from collections.abc import Callable
from dataclasses import dataclass

from pydantic import ValidationError

from marketgeo.exceptions import LookupFailedError, MarketValidationError, TagWriteError
from marketgeo.models.market import TagType, TagValue, normalize_tag
from marketgeo.models.requests import TagRequest
from marketgeo.persistence import MarketStore
from marketgeo.state.events import TagChange, TagChangeSource
from marketgeo.state.policy import is_latest_write, reconcile_tags

_logger = logging.getLogger(__name__)

TagListener = Callable[[TagChange], None]


@dataclass(slots=True)
class _PendingWrite:
    seq: int
    tag: TagValue


class TagOverlayStore:
    """Upsert/clear/list user tags keyed by ``(scope, entity_id)``.

    At most one tag exists per pair: :meth:`set_tag` is an upsert and
    :meth:`clear_tag` removes the row entirely. Concurrent writes to the
    same pair are last-write-wins.
    """

    def __init__(self, store: MarketStore) -> None:
        self._store = store
        self._local: dict[str, dict[str, TagValue]] = {}
        self._pending: dict[tuple[str, str], _PendingWrite] = {}
        # Sequence number of the newest write started per key, acknowledged or not.
        self._last_write: dict[tuple[str, str], int] = {}
        self._seq = itertools.count(1)
        self._listeners: list[TagListener] = []

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, listener: TagListener) -> Callable[[], None]:
        """Register *listener* for every tag change; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _notify(self, change: TagChange) -> None:
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception:
                _logger.debug("Tag listener failed for %s", change, exc_info=True)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def peek_tags(self, scope: str) -> dict[str, TagValue]:
        """Local view for *scope* including optimistic writes; no store read."""
        return dict(self._local.get(scope, {}))

    async def list_tags(self, scope: str) -> dict[str, TagValue]:
        """Read tags for *scope* from the store and reconcile the local view.

        Local writes started after the read began keep their local value;
        the snapshot may predate them.

        Raises
        ------
        LookupFailedError
            The store read failed; the local view is left untouched.
        """
        started = next(self._seq)
        try:
            rows = await self._store.read_tags(scope)
        except Exception as exc:
            raise LookupFailedError(f"Reading tags for scope {scope!r} failed: {exc}") from exc

        server = {str(entity_id): normalize_tag(tag) for entity_id, tag in rows.items()}
        local = self._local.get(scope, {})
        newer = {
            entity_id: local.get(entity_id, TagType.NONE)
            for (write_scope, entity_id), seq in self._last_write.items()
            if write_scope == scope and seq > started
        }
        pending = {
            entity_id: write.tag for (pending_scope, entity_id), write in self._pending.items() if pending_scope == scope
        }
        merged = reconcile_tags(server, {**newer, **pending})
        self._local[scope] = merged
        return dict(merged)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def set_tag(self, scope: str, entity_id: str, tag: TagValue) -> None:
        """Upsert the tag for ``(scope, entity_id)``.

        Setting :attr:`TagType.NONE` is the same as :meth:`clear_tag`.
        """
        request = self._validate(scope, entity_id)
        await self._write(request.scope, request.entity_id, normalize_tag(tag))

    async def clear_tag(self, scope: str, entity_id: str) -> None:
        """Remove the tag row for ``(scope, entity_id)``."""
        request = self._validate(scope, entity_id)
        await self._write(request.scope, request.entity_id, TagType.NONE)

    @staticmethod
    def _validate(scope: str, entity_id: str) -> TagRequest:
        try:
            return TagRequest(scope=scope, entity_id=entity_id)
        except ValidationError as exc:
            raise MarketValidationError(str(exc)) from exc

    def _apply_local(self, scope: str, entity_id: str, tag: TagValue) -> None:
        scoped = self._local.setdefault(scope, {})
        if tag == TagType.NONE:
            scoped.pop(entity_id, None)
        else:
            scoped[entity_id] = tag

    async def _write(self, scope: str, entity_id: str, tag: TagValue) -> None:
        key = (scope, entity_id)
        previous = self._local.get(scope, {}).get(entity_id, TagType.NONE)
        seq = next(self._seq)
        self._pending[key] = _PendingWrite(seq=seq, tag=tag)
        self._last_write[key] = seq

        self._apply_local(scope, entity_id, tag)
        self._notify(TagChange(scope=scope, entity_id=entity_id, tag=tag, source=TagChangeSource.OPTIMISTIC))

        try:
            if tag == TagType.NONE:
                await self._store.delete_tag(scope, entity_id)
            else:
                await self._store.write_tag(scope, entity_id, str(tag))
        except Exception as exc:
            latest = self._pending.get(key)
            if is_latest_write(seq, latest.seq if latest else None):
                del self._pending[key]
                self._apply_local(scope, entity_id, previous)
                self._notify(
                    TagChange(scope=scope, entity_id=entity_id, tag=previous, source=TagChangeSource.REVERTED)
                )
            _logger.warning("Tag write failed scope=%s entity=%s: %s", scope, entity_id, exc)
            raise TagWriteError(
                f"Writing tag for {entity_id!r} failed: {exc}",
                scope=scope,
                entity_id=entity_id,
            ) from exc

        latest = self._pending.get(key)
        if is_latest_write(seq, latest.seq if latest else None):
            del self._pending[key]
            self._notify(TagChange(scope=scope, entity_id=entity_id, tag=tag, source=TagChangeSource.PERSISTED))
