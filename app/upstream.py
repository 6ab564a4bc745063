"""Music API helpers — every call goes through the shared request queue.

Functions:
- search       → SearchResponse (zero tracks is a normal result)
- stream       → StreamResponse with a validated stream URL
- proxy_stats  → ProxyStats of the registry in use

Identical calls that are already in flight share one queued request.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional
from urllib.parse import urlencode

import httpx

from app.config import Settings
from app.http_client import RetryingFetcher
from app.proxy_registry import ProxyRegistry
from app.request_queue import RequestQueue
from core.errors import RequestFailed, UpstreamError
from core.models import ProxyStats, SearchResponse, StreamResponse

logger = logging.getLogger(__name__)


def default_headers(settings: Settings) -> Dict[str, str]:
    """Browser-like headers the upstream expects."""
    return {
        "accept": "*/*",
        "accept-language": "en-GB,en;q=0.7",
        "cache-control": "no-cache",
        "pragma": "no-cache",
        "referer": settings.upstream_referer,
        "user-agent": settings.user_agent,
    }


class UpstreamClient:
    """Consumer of the third-party ``/search`` and ``/stream`` endpoints."""

    def __init__(
        self,
        settings: Settings,
        *,
        queue: RequestQueue,
        fetcher: RetryingFetcher,
        registry: Optional[ProxyRegistry] = None,
    ):
        self._settings = settings
        self._queue = queue
        self._fetcher = fetcher
        self._registry = registry
        self._base_url = settings.upstream_base_url.rstrip("/")
        self._headers = default_headers(settings)
        self._inflight: Dict[str, asyncio.Future] = {}

    @property
    def queue(self) -> RequestQueue:
        return self._queue

    @property
    def settings(self) -> Settings:
        return self._settings

    async def stream_url(self, track_id: str) -> str:
        """Resolver for the audio loader."""
        return (await self.stream(track_id)).url

    def proxy_stats(self) -> ProxyStats:
        if self._registry is None:
            return ProxyStats()
        return self._registry.stats()

    # ------------------------------------------------------------------
    # Single-flight
    # ------------------------------------------------------------------

    async def _coalesce(self, key: str, work: Callable[[], Awaitable]):
        future = self._inflight.get(key)
        if future is None:
            future = self._queue.add(work, label=key)
            self._inflight[key] = future
            future.add_done_callback(lambda _f: self._inflight.pop(key, None))
        # Shield so one impatient caller cannot cancel the shared request.
        return await asyncio.shield(future)

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    async def search(self, query: str, offset: int = 0, type: str = "track") -> SearchResponse:
        params = urlencode({"q": query, "offset": offset, "type": type})
        url = f"{self._base_url}/search?{params}"

        async def _do() -> SearchResponse:
            logger.info("Search request: %r (offset=%d, type=%s)", query, offset, type)
            resp = await self._fetcher.fetch(
                url,
                headers=self._headers,
                max_retries=self._settings.max_retries,
                timeout=self._settings.search_timeout,
                backoff_base=self._settings.search_backoff_base,
            )
            try:
                result = SearchResponse.model_validate(resp.json())
            except ValueError as exc:
                raise UpstreamError(resp.status_code, f"malformed search payload: {exc}") from exc
            logger.info("Search completed: %r — found %d tracks", query, len(result.tracks))
            return result

        return await self._coalesce(f"search:{params}", _do)

    # ------------------------------------------------------------------
    # Stream
    # ------------------------------------------------------------------

    async def stream(self, track_id: str) -> StreamResponse:
        url = f"{self._base_url}/stream?{urlencode({'trackId': track_id})}"

        async def _do() -> StreamResponse:
            logger.info("Stream request: %s", track_id)
            resp = await self._fetcher.fetch(
                url,
                headers=self._headers,
                max_retries=self._settings.max_retries,
                timeout=self._settings.stream_timeout,
                backoff_base=self._settings.stream_backoff_base,
            )
            try:
                data = resp.json()
            except ValueError as exc:
                raise UpstreamError(resp.status_code, f"malformed stream payload: {exc}") from exc
            stream_url = data.get("url") if isinstance(data, dict) else None
            if not stream_url:
                raise UpstreamError(resp.status_code, "No stream URL returned from API")

            await self._validate_stream_url(track_id, stream_url)
            return StreamResponse(url=stream_url, track_id=str(track_id))

        return await self._coalesce(f"stream:{track_id}", _do)

    async def _validate_stream_url(self, track_id: str, stream_url: str) -> bool:
        """HEAD the stream URL; failures are logged, never raised."""
        headers = {
            "Range": "bytes=0-",
            "Accept": "audio/*",
            "User-Agent": self._settings.user_agent,
        }
        try:
            resp = await self._fetcher.fetch(
                stream_url,
                method="HEAD",
                headers=headers,
                max_retries=1,
                timeout=self._settings.validate_timeout,
            )
        except (httpx.HTTPError, RequestFailed) as exc:
            logger.warning("Stream URL check failed for %s: %s", track_id, exc)
            return False
        logger.info("Stream URL validated for %s (%d)", track_id, resp.status_code)
        return True
