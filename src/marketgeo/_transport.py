"""HTTP transport for identifier lookups and latency probing."""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Sequence
from typing import Any

import aiohttp

from marketgeo._constants import IDENTIFIER_ENDPOINTS, LATENCY_CHECK_ENDPOINT
from marketgeo.config import EngineConfig
from marketgeo.exceptions import LookupFailedError
from marketgeo.models.market import IdentifierSystem

_logger = logging.getLogger(__name__)


class HttpIdentifierTransport:
    """Identifier source backed by the ``related-npis`` and ``related-ccns`` API routes.

    Implements :class:`marketgeo.persistence.IdentifierSource`.
    """

    def __init__(self, config: EngineConfig, http_session: aiohttp.ClientSession) -> None:
        self._config = config
        self._http = http_session
        self._timeout = aiohttp.ClientTimeout(total=config.request_timeout)

    async def query_by_ids(
        self,
        ids: Sequence[str],
        system: IdentifierSystem = IdentifierSystem.NPI,
    ) -> list[dict[str, Any]]:
        """POST ``{"dhc_ids": [...]}`` to the route for *system* and return the ``data`` rows."""
        endpoint = IDENTIFIER_ENDPOINTS[IdentifierSystem(system)]
        url = f"{self._config.base_url}{endpoint}"
        body = json.dumps({"dhc_ids": list(ids)})

        _logger.debug("POST %s ids=%d", url, len(ids))

        try:
            async with self._http.post(
                url,
                data=body,
                headers={"content-type": "application/json"},
                timeout=self._timeout,
            ) as resp:
                text = await resp.text()
                if resp.status != 200:
                    raise LookupFailedError(
                        f"HTTP {resp.status} from {endpoint}: {text[:200]}",
                        status_code=resp.status,
                        endpoint=endpoint,
                    )
        except LookupFailedError:
            raise
        except (aiohttp.ClientError, TimeoutError) as exc:
            raise LookupFailedError(
                f"Request to {endpoint} failed: {exc}",
                endpoint=endpoint,
            ) from exc

        try:
            body_json = json.loads(text)
        except json.JSONDecodeError as exc:
            raise LookupFailedError(
                f"Invalid JSON from {endpoint}: {text[:200]}",
                endpoint=endpoint,
            ) from exc

        if not isinstance(body_json, dict) or not body_json.get("success"):
            message = body_json.get("error") if isinstance(body_json, dict) else None
            raise LookupFailedError(
                f"Lookup rejected by {endpoint}: {message or 'unknown error'}",
                endpoint=endpoint,
            )

        rows = body_json.get("data")
        if not isinstance(rows, list):
            raise LookupFailedError(f"Missing 'data' list from {endpoint}", endpoint=endpoint)
        return [row for row in rows if isinstance(row, dict)]


class HttpLatencyCheck:
    """Measure round-trip latency with a cheap HEAD request."""

    def __init__(self, config: EngineConfig, http_session: aiohttp.ClientSession) -> None:
        self._config = config
        self._http = http_session
        self._timeout = aiohttp.ClientTimeout(total=config.request_timeout)

    async def __call__(self) -> float:
        """Return the latency in milliseconds."""
        url = f"{self._config.base_url}{LATENCY_CHECK_ENDPOINT}"
        started = time.perf_counter()
        try:
            async with self._http.head(url, timeout=self._timeout) as resp:
                resp.release()
        except (aiohttp.ClientError, TimeoutError) as exc:
            raise LookupFailedError(
                f"Latency check failed: {exc}",
                endpoint=LATENCY_CHECK_ENDPOINT,
            ) from exc
        return (time.perf_counter() - started) * 1000.0
