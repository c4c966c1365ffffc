"""Tests for the httpx-based fetcher using a mock transport."""

from __future__ import annotations

import asyncio

import httpx
import pytest

from feed_ingest.config import FetchConfig
from feed_ingest.errors import FetchStatusError, ResourceExhaustedError
from feed_ingest.fetch.fetcher import HttpFetcher


def _fetch(handler, url: str, cfg: FetchConfig | None = None, **kwargs):
    async def _run():
        async with HttpFetcher(cfg, transport=httpx.MockTransport(handler)) as fetcher:
            return await fetcher.fetch(url, **kwargs)

    return asyncio.run(_run())


def test_successful_fetch_returns_text_and_final_url():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/old":
            return httpx.Response(301, headers={"Location": "https://example.com/new"})
        return httpx.Response(200, text="<html>hello</html>", headers={"Content-Type": "text/html"})

    result = _fetch(handler, "https://example.com/old")

    assert result.status_code == 200
    assert result.text == "<html>hello</html>"
    assert result.final_url == "https://example.com/new"
    assert result.url == "https://example.com/old"
    assert result.content_type.startswith("text/html")


def test_non_success_status_raises_with_code():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="busy")

    with pytest.raises(FetchStatusError) as excinfo:
        _fetch(handler, "https://example.com/busy")

    assert excinfo.value.status_code == 503


def test_oversized_response_is_a_resource_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"x" * 2048)

    with pytest.raises(ResourceExhaustedError):
        _fetch(handler, "https://example.com/big", cfg=FetchConfig(max_bytes=1024))


def test_user_agent_override_is_sent():
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.headers["User-Agent"])
        return httpx.Response(200, text="ok")

    _fetch(handler, "https://example.com/a", user_agent="feed-ingest-test/1.0")
    _fetch(handler, "https://example.com/b", cfg=FetchConfig(user_agent="default-agent"))

    assert seen == ["feed-ingest-test/1.0", "default-agent"]


def test_transport_errors_propagate_unchanged():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(httpx.ConnectError):
        _fetch(handler, "https://example.com/down")


def test_undeclared_oversized_body_stops_reading_early():
    sent: list[int] = []

    async def body():
        for index in range(10):
            sent.append(index)
            yield b"x" * 512

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=body())

    with pytest.raises(ResourceExhaustedError):
        _fetch(handler, "https://example.com/stream", cfg=FetchConfig(max_bytes=1024))

    assert len(sent) < 10
