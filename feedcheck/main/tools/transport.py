"""Outbound HTTP capability.

Everything that touches the network goes through a ``Transport`` so the
validator, relay client and discovery engine can be tested with an in-memory
fake.  ``HttpxTransport`` is the real implementation: one shared
``httpx.AsyncClient`` with redirects followed, and every request wrapped in
``asyncio.wait_for`` so a timeout cancels the request instead of abandoning it.
Non-2xx responses are returned, not raised; callers classify the status.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional

import httpx

from feedcheck.main.tools.errors import FetchError, FetchTimeoutError

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "feedcheck/0.1 (+feed validation)"
FEED_ACCEPT = "application/rss+xml, application/atom+xml, application/rdf+xml, application/xml;q=0.9, text/xml;q=0.9, */*;q=0.8"
HTML_ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"


@dataclass
class FetchResponse:
    status_code: int
    text: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


class Transport:
    """Abstract fetch capability: ``fetch(url, timeout=..., headers=...)``."""

    async def fetch(
        self,
        url: str,
        *,
        timeout: float,
        headers: Optional[Mapping[str, str]] = None,
    ) -> FetchResponse:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


class HttpxTransport(Transport):
    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        user_agent: str = DEFAULT_USER_AGENT,
    ):
        self._client = client
        self._owns_client = client is None
        self.user_agent = user_agent

    def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create the shared async HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                follow_redirects=True,
                headers={"User-Agent": self.user_agent, "Accept": FEED_ACCEPT},
            )
        return self._client

    async def fetch(
        self,
        url: str,
        *,
        timeout: float,
        headers: Optional[Mapping[str, str]] = None,
    ) -> FetchResponse:
        client = self._get_http_client()
        try:
            # wait_for cancels the in-flight request when the deadline passes.
            resp = await asyncio.wait_for(
                client.get(url, headers=dict(headers or {}), timeout=timeout),
                timeout=timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            raise FetchTimeoutError(f"Request to {url} timed out after {timeout:.1f}s") from exc
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise FetchError(f"Network error fetching {url}: {exc}") from exc

        logger.debug("GET %s -> %d", url, resp.status_code)
        return FetchResponse(
            status_code=resp.status_code,
            text=resp.text,
            url=str(resp.url),
            headers=dict(resp.headers),
        )

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
