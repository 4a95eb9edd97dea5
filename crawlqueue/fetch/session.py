"""Factories for httpx-backed crawl sessions."""
from __future__ import annotations

import contextlib
from typing import Any, AsyncIterator, Optional

import httpx


class CrawlSession:
    """Issues one outbound call per ``send``; the seam tests replace."""

    def __init__(self, client: Optional[httpx.AsyncClient]) -> None:
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("No crawl session available")
        return self._client

    def build_request(self, method: str, url: str, **kwargs: Any) -> httpx.Request:
        """Build a request carrying the session's default headers and timeout."""
        return self.client.build_request(method, url, **kwargs)

    async def send(self, request: httpx.Request) -> httpx.Response:
        """Send a request and return the fully read response."""
        return await self.client.send(request)


@contextlib.asynccontextmanager
async def create_crawl_session(
    *,
    user_agent: str,
    timeout: float,
    max_connections: int,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> AsyncIterator[CrawlSession]:
    """Yield a configured `CrawlSession` for the duration of the context."""
    headers = {"User-Agent": user_agent}
    limits = httpx.Limits(max_connections=max_connections, max_keepalive_connections=max_connections)
    async with httpx.AsyncClient(
        headers=headers,
        limits=limits,
        timeout=timeout,
        transport=transport,
    ) as client:
        yield CrawlSession(client)
