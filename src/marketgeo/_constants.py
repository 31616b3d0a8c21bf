"""Internal constants shared across the library."""

EARTH_RADIUS_MILES = 3958.8
METERS_PER_MILE = 1609.34
# Equirectangular approximation used for drawing the radius polygon.
METERS_PER_DEGREE = 111320.0

DEFAULT_MARGIN_DEGREES = 2.0
CIRCLE_SEGMENTS = 64

# Batched identifier lookup route per identifier system.
IDENTIFIER_ENDPOINTS = {
    "npi": "/api/related-npis",
    "ccn": "/api/related-ccns",
}
LATENCY_CHECK_ENDPOINT = "/api/nearby-providers"

# ------------------------------------------------------------------
# Map source / layer ids
# ------------------------------------------------------------------

RADIUS_SOURCE_ID = "radius-circle"
RADIUS_LAYER_ID = "radius-circle-fill"
POINTS_SOURCE_ID = "providers"
POINTS_LAYER_ID = "providers"

# Common markets warmed by the prefetcher (St. Louis, New York, Los Angeles).
COMMON_PATTERNS: tuple[tuple[float, float, float], ...] = (
    (38.6592, -90.358, 10.0),
    (40.7128, -74.0060, 10.0),
    (34.0522, -118.2437, 10.0),
)
