"""
HTTP content fetching.

Fetching is a single attempt per call: retries, backoff and classification
of failures belong to the recovery engine. Non-success responses are raised
as FetchStatusError; httpx transport and timeout exceptions propagate
unchanged so the classifier can see them.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
import logging

import httpx

from ..config import FetchConfig
from ..errors import ContentParseError, FetchStatusError, ResourceExhaustedError


logger = logging.getLogger(__name__)


@dataclass
class FetchResult:
    """Result of a successful HTTP fetch.

    Attributes:
        url: The URL that was requested
        final_url: The URL after redirects
        status_code: HTTP status code
        text: The decoded response body
        content_type: The response Content-Type header, if any
    """
    url: str
    final_url: str
    status_code: int
    text: str
    content_type: str | None = None


class Fetcher(ABC):
    """Interface for page fetchers used by the orchestrator."""

    @abstractmethod
    async def fetch(self, url: str, timeout: float | None = None, user_agent: str | None = None) -> FetchResult:
        """Fetch a URL once.

        Args:
            url: The URL to fetch
            timeout: Per-request timeout in seconds (None uses the default)
            user_agent: Optional User-Agent override

        Returns:
            FetchResult on a 2xx response

        Raises:
            FetchStatusError: On a non-2xx response
            httpx.TimeoutException: When the request times out
            httpx.TransportError: On connection-level failures
        """
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


class HttpFetcher(Fetcher):
    """httpx-based fetcher sharing one AsyncClient across requests."""

    def __init__(self, cfg: FetchConfig | None = None, transport: httpx.AsyncBaseTransport | None = None):
        self.cfg = cfg or FetchConfig()
        self._client = httpx.AsyncClient(
            timeout=self.cfg.timeout_seconds,
            headers={"User-Agent": self.cfg.user_agent},
            follow_redirects=True,
            trust_env=self.cfg.trust_env,
            transport=transport,
        )

    async def fetch(self, url: str, timeout: float | None = None, user_agent: str | None = None) -> FetchResult:
        headers = {"User-Agent": user_agent} if user_agent else None
        async with self._client.stream(
            "GET",
            url,
            headers=headers,
            timeout=timeout if timeout is not None else self.cfg.timeout_seconds,
        ) as resp:
            if not 200 <= resp.status_code < 300:
                raise FetchStatusError(url, resp.status_code)
            content = await self._read_limited(url, resp)
            try:
                text = content.decode(resp.encoding or "utf-8", errors="replace")
            except LookupError as exc:
                raise ContentParseError(f"Cannot decode response for {url}: {exc}") from exc
            return FetchResult(
                url=url,
                final_url=str(resp.url),
                status_code=resp.status_code,
                text=text,
                content_type=resp.headers.get("content-type"),
            )

    async def _read_limited(self, url: str, resp: httpx.Response) -> bytes:
        """Read the body, giving up as soon as it exceeds `max_bytes`."""
        limit = self.cfg.max_bytes
        declared = resp.headers.get("content-length", "")
        if declared.isdigit() and int(declared) > limit:
            raise ResourceExhaustedError(f"Response for {url} declares {declared} bytes (limit {limit})")
        chunks: list[bytes] = []
        size = 0
        async for chunk in resp.aiter_bytes():
            size += len(chunk)
            if size > limit:
                raise ResourceExhaustedError(f"Response for {url} exceeds {limit} bytes")
            chunks.append(chunk)
        return b"".join(chunks)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "HttpFetcher":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

