"""Outbound proxy rotation.

The proxy list is read lazily on first use and kept for the lifetime of the
registry.  Every outbound request picks a proxy uniformly at random; there
is no affinity between requests.  With no usable proxy the request goes out
directly.
"""

from __future__ import annotations

import logging
import random
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field

from core.models import ProxyConfig, ProxyStats
from core.proxies import parse_proxy_lines, proxy_stats

logger = logging.getLogger(__name__)


class TransportOptions(BaseModel):
    """Per-request options for ``httpx.AsyncClient``.

    ``transport`` is the proxy dispatcher; None means a direct connection
    (or whatever *base* transport the caller supplied).
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    headers: Dict[str, str] = Field(default_factory=dict)
    timeout: float = 15.0
    proxy: Optional[ProxyConfig] = None
    transport: Optional[httpx.AsyncBaseTransport] = None

    def client_kwargs(self) -> dict:
        kwargs: dict = {"headers": self.headers, "timeout": httpx.Timeout(self.timeout)}
        if self.transport is not None:
            kwargs["transport"] = self.transport
        return kwargs


class ProxyRegistry:
    """Holds the parsed proxy list and builds proxied transports."""

    def __init__(
        self,
        path: Optional[Path] = None,
        *,
        rng: Optional[random.Random] = None,
    ):
        self._path = path
        self._rng = rng or random.Random()
        self._proxies: List[ProxyConfig] = []
        self._loaded = False

    @classmethod
    def from_lines(cls, lines: Iterable[str], *, rng: Optional[random.Random] = None) -> "ProxyRegistry":
        registry = cls(rng=rng)
        registry._proxies = parse_proxy_lines(lines)
        registry._loaded = True
        return registry

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        self._loaded = True
        if self._path is None:
            return
        try:
            content = self._path.read_text(encoding="utf-8")
        except OSError as exc:
            logger.warning("Proxy list %s not loaded (%s) — using direct requests", self._path, exc)
            return

        self._proxies = parse_proxy_lines(content.splitlines())
        logger.info("Loaded %d valid proxies from %s", len(self._proxies), self._path)
        if self._proxies:
            logger.info("Proxy types: %s", self.stats().by_type)

    @property
    def proxies(self) -> List[ProxyConfig]:
        self._ensure_loaded()
        return list(self._proxies)

    def stats(self) -> ProxyStats:
        self._ensure_loaded()
        return proxy_stats(self._proxies)

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def select_proxy(self) -> Optional[ProxyConfig]:
        self._ensure_loaded()
        if not self._proxies:
            return None
        return self._rng.choice(self._proxies)

    def _make_transport(self, proxy: ProxyConfig) -> Optional[httpx.AsyncBaseTransport]:
        try:
            return httpx.AsyncHTTPTransport(proxy=httpx.Proxy(proxy.url))
        except ValueError as exc:
            # httpx rejects socks4 proxy URLs.
            logger.warning("Cannot build transport for %s: %s", proxy.describe(), exc)
            return None

    def build_transport_options(self, base: Optional[TransportOptions] = None) -> TransportOptions:
        """Return *base* augmented with a randomly chosen proxy transport.

        Falls back to *base* unchanged when no proxy is configured or the
        chosen one cannot be turned into a transport.
        """
        base = base or TransportOptions()
        proxy = self.select_proxy()
        if proxy is None:
            return base

        transport = self._make_transport(proxy)
        if transport is None:
            logger.warning("Proxy unusable, making direct request")
            return base

        logger.debug("Using %s proxy", proxy.describe())
        return base.model_copy(update={"proxy": proxy, "transport": transport})
