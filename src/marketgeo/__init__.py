"""marketgeo - Async geospatial market engine for healthcare market analysis."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("marketgeo")
except PackageNotFoundError:
    __version__ = "0+local"
from marketgeo.client import MarketEngine
from marketgeo.config import EngineConfig
from marketgeo.exceptions import (
    LayerStateError,
    LookupFailedError,
    MarketConfigError,
    MarketGeoError,
    MarketValidationError,
    PrefilterFailedError,
    StaleResultError,
    TagWriteError,
)
from marketgeo.geo import BoundingBox, distance_miles
from marketgeo.identifiers import IdentifierCrossReference
from marketgeo.layers import MapLayerSynchronizer, MapSurface
from marketgeo.market import MarketResolutionService, filter_entities, type_counts
from marketgeo.models import (
    Coordinate,
    IdentifierSystem,
    LayerState,
    MarketEntity,
    MarketView,
    Organization,
    Popup,
    TagType,
    TagValue,
    ViewIssue,
)
from marketgeo.persistence import InMemoryMarketStore, MarketStore
from marketgeo.prefetch import PredictivePrefetcher, Prediction
from marketgeo.prefilter import BoundingBoxPrefilter
from marketgeo.state import TagChange, TagChangeSource, TagOverlayStore

__all__ = [
    "__version__",
    "BoundingBox",
    "BoundingBoxPrefilter",
    "Coordinate",
    "EngineConfig",
    "IdentifierCrossReference",
    "IdentifierSystem",
    "InMemoryMarketStore",
    "LayerState",
    "LayerStateError",
    "LookupFailedError",
    "MapLayerSynchronizer",
    "MapSurface",
    "MarketConfigError",
    "MarketEngine",
    "MarketEntity",
    "MarketGeoError",
    "MarketResolutionService",
    "MarketStore",
    "MarketValidationError",
    "MarketView",
    "Organization",
    "Popup",
    "Prediction",
    "PredictivePrefetcher",
    "PrefilterFailedError",
    "StaleResultError",
    "TagChange",
    "TagChangeSource",
    "TagOverlayStore",
    "TagType",
    "TagValue",
    "TagWriteError",
    "ViewIssue",
    "distance_miles",
    "filter_entities",
    "type_counts",
]
