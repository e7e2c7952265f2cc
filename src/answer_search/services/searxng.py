"""Async SearXNG HTTP client: web, image and video search."""

from __future__ import annotations

from types import TracebackType
from typing import Any, Optional, Sequence

import httpx
import structlog

from answer_search.models import SearchBackendResponse, WebResult

logger = structlog.get_logger(__name__)

# Timeout settings for SearXNG requests (seconds).
_TIMEOUT = httpx.Timeout(connect=5.0, read=20.0, write=5.0, pool=5.0)

_IMAGE_ENGINES = ("bing images", "google images")
_VIDEO_ENGINES = ("youtube",)


class SearXNGClient:
    """Async HTTP client for a SearXNG instance; satisfies ``SearchBackend``.

    Designed to be used as an async context manager::

        async with SearXNGClient(base_url) as client:
            response = await client.search(query, max_results=20)

    Args:
        base_url:  Base URL of the instance, e.g. ``"http://localhost:8888"``.
        transport: Optional httpx transport (tests pass ``httpx.MockTransport``).
    """

    def __init__(self, base_url: str, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self._base_url = base_url.rstrip("/")
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "SearXNGClient":
        self._client = httpx.AsyncClient(
            base_url=self._base_url, timeout=_TIMEOUT, transport=self._transport
        )
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("SearXNGClient must be used as an async context manager.")
        return self._client

    async def ping(self) -> bool:
        """Perform a lightweight GET / to verify the instance is reachable.

        Raises:
            httpx.HTTPError: If the request fails.
        """
        resp = await self._http.get("/", timeout=5.0)
        resp.raise_for_status()
        return True

    async def raw_search(
        self,
        query: str,
        categories: Sequence[str] = ("general",),
        engines: Sequence[str] = (),
    ) -> list[dict[str, Any]]:
        """Fetch the raw ``results`` list for *query*.

        Raises:
            httpx.HTTPError: On network or HTTP errors.
        """
        params: dict[str, str] = {
            "q": query,
            "categories": ",".join(categories),
            "format": "json",
        }
        if engines:
            params["engines"] = ",".join(engines)

        logger.debug("searxng.search", query=query, categories=list(categories))
        resp = await self._http.get("/search", params=params)
        resp.raise_for_status()

        results: list[dict[str, Any]] = resp.json().get("results", [])
        logger.debug("searxng.results_received", count=len(results))
        return results

    async def search(self, query: str, *, max_results: int) -> SearchBackendResponse:
        """Web search returning at most *max_results* hits with a URL."""
        raw = await self.raw_search(query)
        results = [
            WebResult(
                url=item["url"],
                title=str(item.get("title") or ""),
                content=str(item.get("content") or ""),
            )
            for item in raw
            if item.get("url")
        ]
        return SearchBackendResponse(results=results[:max_results])

    async def search_images(self, query: str) -> list[dict[str, Any]]:
        return await self.raw_search(query, categories=("images",), engines=_IMAGE_ENGINES)

    async def search_videos(self, query: str) -> list[dict[str, Any]]:
        return await self.raw_search(query, categories=("videos",), engines=_VIDEO_ENGINES)
