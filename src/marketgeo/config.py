"""Engine configuration for marketgeo."""

from __future__ import annotations

import dataclasses
import os
from typing import Any

from marketgeo._constants import DEFAULT_MARGIN_DEGREES
from marketgeo.exceptions import MarketConfigError


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


@dataclasses.dataclass(frozen=True)
class EngineConfig:
    """Engine configuration.

    Parameters
    ----------
    base_url : str
        Base URL of the API that serves identifier lookups and the
        latency check.
    identifier_ttl : float
        Seconds a batched identifier lookup stays cached.
    candidate_ttl : float
        Seconds a bounding-box candidate set stays cached per center.
    prefetch_ttl : float
        Seconds a speculative prefetch result stays usable.
    bounding_box_margin : float
        Half-width of the prefilter box, in degrees of latitude/longitude.
    max_radius_miles : float
        Largest radius accepted by the resolution service.
    retry_delay : float
        Fixed delay before the single automatic retry of a failed lookup.
    request_timeout : float
        Total timeout for one HTTP request, in seconds.
    layer_debounce : float
        Debounce window for map layer creation, in seconds.
    container_backoff : float
        Initial delay between map container size re-checks; doubles on
        every attempt.
    container_attempts : int
        Number of container size re-checks before giving up.
    prefetch_enabled : bool
        Enable background speculative prefetching.
    prefetch_latency_threshold_ms : float
        Prefetching is skipped when the measured latency exceeds this.
    prefetch_concurrency : int
        Maximum predictions prefetched per round.
    latency_interval : float
        Seconds between background latency re-measurements while an
        engine is open; ``0`` measures once at startup only.
    """

    base_url: str = "http://localhost:5000"
    identifier_ttl: float = 5 * 60
    candidate_ttl: float = 10 * 60
    prefetch_ttl: float = 5 * 60
    bounding_box_margin: float = DEFAULT_MARGIN_DEGREES
    max_radius_miles: float = 100.0
    retry_delay: float = 0.5
    request_timeout: float = 30.0
    layer_debounce: float = 0.3
    container_backoff: float = 0.1
    container_attempts: int = 6
    prefetch_enabled: bool = True
    prefetch_latency_threshold_ms: float = 2000.0
    prefetch_concurrency: int = 2
    latency_interval: float = 5 * 60

    def __post_init__(self) -> None:
        for name in ("identifier_ttl", "candidate_ttl", "prefetch_ttl", "bounding_box_margin", "max_radius_miles"):
            if getattr(self, name) <= 0:
                raise MarketConfigError(f"{name} must be positive, got {getattr(self, name)}")
        for name in ("retry_delay", "layer_debounce", "container_backoff", "latency_interval"):
            if getattr(self, name) < 0:
                raise MarketConfigError(f"{name} must not be negative, got {getattr(self, name)}")
        if self.container_attempts < 0:
            raise MarketConfigError("container_attempts must not be negative")
        if self.prefetch_concurrency < 1:
            raise MarketConfigError("prefetch_concurrency must be at least 1")

    @classmethod
    def from_env(cls, **overrides: Any) -> EngineConfig:
        """Create configuration from environment variables.

        Reads optional ``MARKETGEO_*`` variables. Explicit keyword
        arguments override environment values.

        Parameters
        ----------
        **overrides
            Explicit field values that take precedence over env vars.

        Returns
        -------
        EngineConfig
            Populated configuration.
        """
        env = os.environ

        _ENV_FLOAT_MAP = {
            "MARKETGEO_IDENTIFIER_TTL": "identifier_ttl",
            "MARKETGEO_CANDIDATE_TTL": "candidate_ttl",
            "MARKETGEO_PREFETCH_TTL": "prefetch_ttl",
            "MARKETGEO_BOUNDING_BOX_MARGIN": "bounding_box_margin",
            "MARKETGEO_MAX_RADIUS_MILES": "max_radius_miles",
            "MARKETGEO_RETRY_DELAY": "retry_delay",
            "MARKETGEO_REQUEST_TIMEOUT": "request_timeout",
            "MARKETGEO_LAYER_DEBOUNCE": "layer_debounce",
            "MARKETGEO_CONTAINER_BACKOFF": "container_backoff",
            "MARKETGEO_PREFETCH_LATENCY_THRESHOLD_MS": "prefetch_latency_threshold_ms",
            "MARKETGEO_LATENCY_INTERVAL": "latency_interval",
        }
        _ENV_INT_MAP = {
            "MARKETGEO_CONTAINER_ATTEMPTS": "container_attempts",
            "MARKETGEO_PREFETCH_CONCURRENCY": "prefetch_concurrency",
        }

        config_kwargs: dict[str, Any] = {}
        base_url = env.get("MARKETGEO_BASE_URL")
        if base_url is not None:
            config_kwargs["base_url"] = base_url.rstrip("/")

        for env_key, field_name in _ENV_FLOAT_MAP.items():
            val = env.get(env_key)
            if val is not None and field_name not in overrides:
                try:
                    config_kwargs[field_name] = float(val)
                except ValueError as exc:
                    raise MarketConfigError(f"{env_key} must be a number, got {val!r}") from exc

        for env_key, field_name in _ENV_INT_MAP.items():
            val = env.get(env_key)
            if val is not None and field_name not in overrides:
                try:
                    config_kwargs[field_name] = int(val)
                except ValueError as exc:
                    raise MarketConfigError(f"{env_key} must be an integer, got {val!r}") from exc

        if "prefetch_enabled" not in overrides:
            config_kwargs["prefetch_enabled"] = _env_bool(env.get("MARKETGEO_PREFETCH_ENABLED"), True)

        config_kwargs.update(overrides)

        return cls(**config_kwargs)
