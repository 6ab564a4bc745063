"""Resilient upstream HTTP fetch.

Features:
  - Exponential backoff on 5xx and 429
  - Fail fast on other 4xx
  - Transport errors (timeout, DNS, reset) retried on the same schedule
  - Hard per-attempt timeout covering connect, headers and body
  - Random proxy per attempt (falls back to a direct connection)
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

import httpx

from app.proxy_registry import ProxyRegistry, TransportOptions
from core.errors import FatalUpstreamError, RequestFailed, TransientUpstreamError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

DEFAULT_MAX_RETRIES = 3
SEARCH_TIMEOUT = 15.0  # seconds
SEARCH_BACKOFF_BASE = 1.0
STREAM_TIMEOUT = 10.0
STREAM_BACKOFF_BASE = 0.5

Sleep = Callable[[float], Awaitable[None]]


def backoff_delay(attempt: int, base: float) -> float:
    """``2 ** (attempt - 1) * base`` — attempt numbers start at 1."""
    return (2 ** (attempt - 1)) * base


def is_retryable_status(status_code: int) -> bool:
    return status_code >= 500 or status_code == 429


class RetryingFetcher:
    """Wraps one HTTP call with bounded retries.

    Parameters
    ----------
    registry : ProxyRegistry | None
        Source of proxied transports.  None means always direct.
    transport : httpx.AsyncBaseTransport | None
        Base transport used when no proxy applies (tests pass a mock).
    sleep : callable
        Awaitable sleep; replaced in tests to record backoff delays.
    """

    def __init__(
        self,
        registry: Optional[ProxyRegistry] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self._registry = registry
        self._transport = transport
        self._sleep = sleep

    def _options_for_attempt(self, method_headers: dict, timeout: float) -> TransportOptions:
        base = TransportOptions(headers=method_headers, timeout=timeout, transport=self._transport)
        if self._registry is None:
            return base
        return self._registry.build_transport_options(base)

    async def fetch(
        self,
        url: str,
        *,
        method: str = "GET",
        headers: Optional[dict] = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        timeout: float = SEARCH_TIMEOUT,
        backoff_base: float = SEARCH_BACKOFF_BASE,
    ) -> httpx.Response:
        """Issue *method* *url* and return the first non-error response.

        Raises
        ------
        TransientUpstreamError
            5xx / 429 on every attempt.
        FatalUpstreamError
            Any other 4xx (no retry).
        httpx.TransportError
            Network failure on the final attempt.
        """
        max_retries = max(1, max_retries)

        for attempt in range(1, max_retries + 1):
            options = self._options_for_attempt(dict(headers or {}), timeout)
            try:
                async with httpx.AsyncClient(**options.client_kwargs()) as client:
                    try:
                        # httpx timeouts are per phase; this bounds the whole attempt.
                        resp = await asyncio.wait_for(client.request(method, url), timeout=timeout)
                    except asyncio.TimeoutError:
                        raise httpx.TimeoutException(
                            f"{method} {url} exceeded {timeout:.1f}s",
                        ) from None
            except httpx.TransportError as exc:
                if attempt == max_retries:
                    raise
                delay = backoff_delay(attempt, backoff_base)
                logger.warning(
                    "Retrying %s %s in %.2fs (attempt %d/%d) — %s: %s",
                    method, url, delay, attempt, max_retries, type(exc).__name__, exc,
                )
                await self._sleep(delay)
                continue

            # ── Success ─────────────────────────────────────────────
            if resp.status_code < 400:
                return resp

            # ── 5xx / 429 → exponential backoff ─────────────────────
            if is_retryable_status(resp.status_code):
                if attempt == max_retries:
                    raise TransientUpstreamError(
                        resp.status_code,
                        f"{method} {url} failed after {max_retries} attempts",
                    )
                delay = backoff_delay(attempt, backoff_base)
                logger.warning(
                    "Upstream %d on %s %s — retrying in %.2fs (attempt %d/%d)",
                    resp.status_code, method, url, delay, attempt, max_retries,
                )
                await self._sleep(delay)
                continue

            # ── 4xx (other) → fail immediately ──────────────────────
            raise FatalUpstreamError(resp.status_code, f"{method} {url} rejected: {resp.text[:200]}")

        raise RequestFailed(0, f"Max retries ({max_retries}) exceeded for {method} {url}")
