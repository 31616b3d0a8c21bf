from __future__ import annotations

import contextlib
import json
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

import aiohttp
import pytest

from marketgeo._transport import HttpIdentifierTransport, HttpLatencyCheck
from marketgeo.config import EngineConfig
from marketgeo.exceptions import LookupFailedError
from marketgeo.models import IdentifierSystem


@dataclass
class _FakeResponse:
    status: int
    body: str

    async def text(self) -> str:
        return self.body

    def release(self) -> None:
        return None


@dataclass
class _FakeHttpSession:
    """Stands in for ``aiohttp.ClientSession`` with canned responses."""

    response: _FakeResponse | None = None
    error: Exception | None = None
    requests: list[tuple[str, str, dict[str, Any]]] = field(default_factory=list)

    @contextlib.asynccontextmanager
    async def _request(self, method: str, url: str, **kwargs: Any) -> AsyncIterator[_FakeResponse]:
        self.requests.append((method, url, kwargs))
        if self.error is not None:
            raise self.error
        assert self.response is not None
        yield self.response

    def post(self, url: str, **kwargs: Any) -> Any:
        return self._request("POST", url, **kwargs)

    def head(self, url: str, **kwargs: Any) -> Any:
        return self._request("HEAD", url, **kwargs)


def _transport(session: _FakeHttpSession) -> HttpIdentifierTransport:
    return HttpIdentifierTransport(EngineConfig(base_url="https://api.example.com"), session)  # type: ignore[arg-type]


@pytest.mark.asyncio
async def test_posts_id_batch_and_returns_rows() -> None:
    rows = [{"dhc": "1", "npi": "1000", "is_primary": True}]
    session = _FakeHttpSession(response=_FakeResponse(200, json.dumps({"success": True, "data": rows})))

    result = await _transport(session).query_by_ids(["1", "2"])

    assert result == rows
    method, url, kwargs = session.requests[0]
    assert (method, url) == ("POST", "https://api.example.com/api/related-npis")
    assert json.loads(kwargs["data"]) == {"dhc_ids": ["1", "2"]}


@pytest.mark.asyncio
async def test_ccn_lookups_use_the_ccn_route() -> None:
    rows = [{"dhc": "1", "npi": "1000", "ccn": "260001"}]
    session = _FakeHttpSession(response=_FakeResponse(200, json.dumps({"success": True, "data": rows})))

    result = await _transport(session).query_by_ids(["1"], IdentifierSystem.CCN)

    assert result == rows
    assert session.requests[0][1] == "https://api.example.com/api/related-ccns"


@pytest.mark.asyncio
async def test_http_error_carries_status_and_endpoint() -> None:
    session = _FakeHttpSession(response=_FakeResponse(502, "bad gateway"))

    with pytest.raises(LookupFailedError) as exc_info:
        await _transport(session).query_by_ids(["1"])

    assert exc_info.value.status_code == 502
    assert exc_info.value.endpoint == "/api/related-npis"


@pytest.mark.asyncio
async def test_unsuccessful_envelope_is_a_lookup_failure() -> None:
    session = _FakeHttpSession(response=_FakeResponse(200, json.dumps({"success": False, "error": "no ids"})))

    with pytest.raises(LookupFailedError, match="no ids"):
        await _transport(session).query_by_ids(["1"])


@pytest.mark.asyncio
async def test_invalid_json_is_a_lookup_failure() -> None:
    session = _FakeHttpSession(response=_FakeResponse(200, "<html>"))

    with pytest.raises(LookupFailedError):
        await _transport(session).query_by_ids(["1"])


@pytest.mark.asyncio
async def test_client_errors_are_wrapped() -> None:
    session = _FakeHttpSession(error=aiohttp.ClientConnectionError("refused"))

    with pytest.raises(LookupFailedError) as exc_info:
        await _transport(session).query_by_ids(["1"])

    assert isinstance(exc_info.value.__cause__, aiohttp.ClientConnectionError)


@pytest.mark.asyncio
async def test_latency_check_times_a_head_request() -> None:
    session = _FakeHttpSession(response=_FakeResponse(200, ""))
    check = HttpLatencyCheck(EngineConfig(), session)  # type: ignore[arg-type]

    latency = await check()

    assert latency >= 0
    assert session.requests[0][0] == "HEAD"


@pytest.mark.asyncio
async def test_latency_check_failure_is_wrapped() -> None:
    session = _FakeHttpSession(error=TimeoutError())
    check = HttpLatencyCheck(EngineConfig(), session)  # type: ignore[arg-type]

    with pytest.raises(LookupFailedError):
        await check()
