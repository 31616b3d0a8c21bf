"""Deterministic tag reconciliation policy.

Writes are last-write-wins with no optimistic locking. A local write that
has not been acknowledged yet always wins over a server snapshot read
while it was in flight; everything else comes from the server.
"""

from __future__ import annotations

from collections.abc import Mapping

from marketgeo.models.market import TagType, TagValue


def reconcile_tags(
    server: Mapping[str, TagValue],
    pending: Mapping[str, TagValue],
) -> dict[str, TagValue]:
    """Merge a server snapshot with unacknowledged local writes.

    A pending :attr:`TagType.NONE` is a pending delete. The result never
    contains untagged entries: absence is the untagged state.
    """
    merged = {entity_id: tag for entity_id, tag in server.items() if tag != TagType.NONE}
    for entity_id, tag in pending.items():
        if tag == TagType.NONE:
            merged.pop(entity_id, None)
        else:
            merged[entity_id] = tag
    return merged


def is_latest_write(write_seq: int, latest_seq: int | None) -> bool:
    """Whether a completing write is still the newest for its key."""
    return latest_seq is not None and write_seq == latest_seq
