"""Bounding-box candidate prefilter."""

from __future__ import annotations

import logging

from pydantic import ValidationError

from marketgeo._constants import DEFAULT_MARGIN_DEGREES
from marketgeo.exceptions import PrefilterFailedError
from marketgeo.geo import BoundingBox
from marketgeo.models.organization import Coordinate, Organization
from marketgeo.persistence import MarketStore

_logger = logging.getLogger(__name__)


class BoundingBoxPrefilter:
    """Fetch an over-inclusive candidate set with one box query.

    The box is deliberately generous relative to any radius so the store
    query stays index-friendly; exact distance filtering is the caller's
    job. No retry happens at this layer.
    """

    def __init__(self, store: MarketStore, *, margin_degrees: float = DEFAULT_MARGIN_DEGREES) -> None:
        self._store = store
        self._margin_degrees = margin_degrees

    async def prefilter(self, center: Coordinate, margin_degrees: float | None = None) -> list[Organization]:
        """Return every organization whose coordinate lies in the box around *center*.

        Raises
        ------
        PrefilterFailedError
            The store query failed.
        """
        box = BoundingBox.around(center, margin_degrees if margin_degrees is not None else self._margin_degrees)
        try:
            rows = await self._store.query_box(box.lat_min, box.lat_max, box.lon_min, box.lon_max)
        except Exception as exc:
            raise PrefilterFailedError(f"Candidate query failed for {box}: {exc}") from exc

        organizations: list[Organization] = []
        seen: set[str] = set()
        skipped = 0
        for row in rows:
            try:
                organization = Organization.model_validate(row)
            except ValidationError:
                skipped += 1
                continue
            # Keep the first row per id; the warehouse can hold duplicates.
            if organization.id in seen:
                continue
            seen.add(organization.id)
            organizations.append(organization)

        if skipped:
            _logger.debug("Skipped %d candidate rows without a usable id or location", skipped)
        _logger.debug("Prefilter box=%s returned %d candidates", box, len(organizations))
        return organizations
