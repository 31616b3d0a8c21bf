"""Geodesy and GeoJSON helpers.

All radius filtering goes through :func:`distance_miles`; keep the formula
and Earth radius fixed so results stay reproducible.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any

from marketgeo._constants import (
    CIRCLE_SEGMENTS,
    DEFAULT_MARGIN_DEGREES,
    EARTH_RADIUS_MILES,
    METERS_PER_DEGREE,
    METERS_PER_MILE,
)
from marketgeo.models.market import MarketView
from marketgeo.models.organization import Coordinate


def distance_miles(a: Coordinate, b: Coordinate) -> float:
    """Great-circle distance between *a* and *b* in miles (haversine)."""
    lat1 = math.radians(a.latitude)
    lat2 = math.radians(b.latitude)
    d_lat = lat2 - lat1
    d_lon = math.radians(b.longitude - a.longitude)

    h = math.sin(d_lat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(d_lon / 2) ** 2
    # Rounding can push h a hair past 1 for antipodal points.
    h = min(1.0, max(0.0, h))
    return 2 * EARTH_RADIUS_MILES * math.asin(math.sqrt(h))


@dataclass(frozen=True, slots=True)
class BoundingBox:
    lat_min: float
    lat_max: float
    lon_min: float
    lon_max: float

    @classmethod
    def around(cls, center: Coordinate, margin_degrees: float = DEFAULT_MARGIN_DEGREES) -> BoundingBox:
        """Box of +/- *margin_degrees* around *center*, clamped to valid ranges.

        The box is not wrapped across the antimeridian; callers near it get
        a truncated box.
        """
        if margin_degrees <= 0:
            raise ValueError(f"margin_degrees must be positive, got {margin_degrees}")
        return cls(
            lat_min=max(-90.0, center.latitude - margin_degrees),
            lat_max=min(90.0, center.latitude + margin_degrees),
            lon_min=max(-180.0, center.longitude - margin_degrees),
            lon_max=min(180.0, center.longitude + margin_degrees),
        )

    def contains(self, point: Coordinate) -> bool:
        return self.lat_min <= point.latitude <= self.lat_max and self.lon_min <= point.longitude <= self.lon_max


def circle_ring(center: Coordinate, radius_miles: float, segments: int = CIRCLE_SEGMENTS) -> list[list[float]]:
    """Closed ring of ``segments + 1`` ``[lon, lat]`` positions around *center*."""
    radius_m = radius_miles * METERS_PER_MILE
    lat_step = radius_m / METERS_PER_DEGREE
    # cos(lat) reaches zero at the poles.
    cos_lat = max(math.cos(math.radians(center.latitude)), 1e-9)
    lon_step = radius_m / (METERS_PER_DEGREE * cos_lat)
    ring: list[list[float]] = []
    for i in range(segments + 1):
        angle = (i / segments) * 2 * math.pi
        ring.append(
            [
                center.longitude + lon_step * math.sin(angle),
                center.latitude + lat_step * math.cos(angle),
            ]
        )
    # Force exact closure despite float error at 2*pi.
    ring[-1] = list(ring[0])
    return ring


def radius_feature(center: Coordinate, radius_miles: float) -> dict[str, Any]:
    return {
        "type": "Feature",
        "geometry": {"type": "Polygon", "coordinates": [circle_ring(center, radius_miles)]},
        "properties": {"radius_miles": radius_miles},
    }


def entity_features(view: MarketView) -> dict[str, Any]:
    """Point FeatureCollection for every entity except the center one."""
    features: list[dict[str, Any]] = []
    for entity in view.ordered():
        if view.center_id is not None and entity.id == view.center_id:
            continue
        features.append(
            {
                "type": "Feature",
                "id": entity.id,
                "geometry": {"type": "Point", "coordinates": entity.coordinate.as_lon_lat()},
                "properties": {
                    "id": entity.id,
                    "name": entity.name,
                    "type": entity.type,
                    "network": entity.network,
                    "distance": entity.distance_miles,
                    "tag": str(entity.tag),
                    "has_identifiers": entity.has_identifiers,
                },
            }
        )
    return {"type": "FeatureCollection", "features": features}
