"""Construction and lookup of the per-process upstream stack.

The registry, fetcher, queue and client are built once per application
(in the lifespan hook) and stored on ``app.state`` — never as module
globals — so tests can build or override their own.
"""

from __future__ import annotations

from typing import Any, Optional

from fastapi import Request

from app.config import Settings, get_settings
from app.http_client import RetryingFetcher
from app.player import Player
from app.proxy_registry import ProxyRegistry
from app.request_queue import RequestQueue
from app.upstream import UpstreamClient
from core.handover import AudioHandle
from core.playback_queue import PlaybackQueue


def build_upstream(settings: Settings) -> UpstreamClient:
    registry = ProxyRegistry(settings.proxies_abs_path)
    return UpstreamClient(
        settings,
        queue=RequestQueue(),
        fetcher=RetryingFetcher(registry),
        registry=registry,
    )


def build_player(
    upstream: UpstreamClient,
    primary: AudioHandle,
    secondary: AudioHandle,
    playback_queue: Optional[PlaybackQueue] = None,
    **loader_options: Any,
) -> Player:
    """Player whose stream lookups and downloads share *upstream*'s queue."""
    settings = upstream.settings
    loader_options.setdefault("chunk_bytes", settings.initial_chunk_bytes)
    loader_options.setdefault("proactive_switch", settings.proactive_switch)
    return Player(
        primary,
        secondary,
        resolve_stream_url=upstream.stream_url,
        request_queue=upstream.queue,
        playback_queue=playback_queue,
        **loader_options,
    )


def get_upstream(request: Request) -> UpstreamClient:
    """FastAPI dependency returning the application's UpstreamClient."""
    upstream = getattr(request.app.state, "upstream", None)
    if upstream is None:
        # App used without its lifespan (e.g. a bare TestClient).
        upstream = build_upstream(get_settings())
        request.app.state.upstream = upstream
    return upstream
