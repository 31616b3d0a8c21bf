"""Custom exception hierarchy for marketgeo."""

from __future__ import annotations


class MarketGeoError(Exception):
    """Base exception for all marketgeo errors."""


class MarketConfigError(MarketGeoError):
    """Invalid or missing configuration."""


class MarketValidationError(MarketGeoError, ValueError):
    """Bad radius or coordinates, rejected before any network call."""


class PrefilterFailedError(MarketGeoError):
    """The bounding-box candidate query against the store failed.

    This is the only failure that aborts a market resolution: without
    candidates there is nothing to show.
    """


class LookupFailedError(MarketGeoError):
    """Network or store failure during a lookup (identifiers, tags, latency checks)."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        endpoint: str = "",
    ) -> None:
        self.status_code = status_code
        self.endpoint = endpoint
        super().__init__(message)


class StaleResultError(MarketGeoError):
    """A resolution was superseded by a newer request.

    Raised internally to unwind a stale pipeline; callers of the public
    API never see it.
    """

    def __init__(self, generation: int, current: int) -> None:
        self.generation = generation
        self.current = current
        super().__init__(f"generation {generation} superseded by {current}")


class TagWriteError(MarketGeoError):
    """Persisting a tag change failed; the optimistic value was rolled back."""

    def __init__(self, message: str, *, scope: str = "", entity_id: str = "") -> None:
        self.scope = scope
        self.entity_id = entity_id
        super().__init__(message)


class LayerStateError(MarketGeoError):
    """Illegal map layer state transition."""
