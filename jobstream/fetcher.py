"""Downloads posting pages for URL-only ingestion."""
from __future__ import annotations

import logging
from typing import Protocol

import httpx

from jobstream.config import PipelineSettings, settings as app_settings
from jobstream.errors import ErrorKind, FetchError

logger = logging.getLogger(__name__)


class PageFetcher(Protocol):
    async def fetch(self, url: str) -> str: ...


class HttpPageFetcher:
    """GETs a posting page and returns its body as text."""

    def __init__(
        self,
        config: PipelineSettings | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config or app_settings.pipeline
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(self.config.fetch_timeout_seconds),
            transport=transport,
            follow_redirects=True,
            headers={
                "User-Agent": self.config.fetch_user_agent,
                "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
                "Accept-Language": "en-US,en;q=0.5",
            },
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def fetch(self, url: str) -> str:
        """Download one page.

        Raises:
            FetchError: NotFound for 404/410 and other client errors, Timeout,
                RateLimited for 429, UpstreamUnavailable for 5xx and network errors
        """
        try:
            response = await self._client.get(url)
        except httpx.TimeoutException as e:
            raise FetchError(ErrorKind.TIMEOUT, f"timed out fetching {url}") from e
        except httpx.TransportError as e:
            raise FetchError(ErrorKind.UPSTREAM_UNAVAILABLE, f"could not reach {url}: {e}") from e

        code = response.status_code
        if code == 429:
            raise FetchError(ErrorKind.RATE_LIMITED, f"{url} is rate limiting (HTTP 429)")
        if code == 408:
            raise FetchError(ErrorKind.TIMEOUT, f"{url} timed out (HTTP 408)")
        if code >= 500:
            raise FetchError(ErrorKind.UPSTREAM_UNAVAILABLE, f"{url} failed (HTTP {code})")
        if code >= 400:
            raise FetchError(ErrorKind.NOT_FOUND, f"{url} is not available (HTTP {code})")

        logger.debug(f"Fetched {len(response.content)} bytes from {url}")
        return response.text
