"""Tag overlay state.

This package is the single source of truth for user classification tags:
optimistic local writes, persisted rows and reconciliation between them.
"""

from marketgeo.state.events import TagChange, TagChangeSource
from marketgeo.state.store import TagOverlayStore

__all__ = ["TagChange", "TagChangeSource", "TagOverlayStore"]
