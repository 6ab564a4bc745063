"""Error taxonomy for the upstream and playback layers."""

from __future__ import annotations


class RequestFailed(Exception):
    """An upstream request did not produce a usable response."""

    def __init__(self, status_code: int, detail: str):
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"Upstream request failed ({status_code}): {detail}")


class TransientUpstreamError(RequestFailed):
    """5xx / 429 that kept failing until the retry budget ran out."""


class FatalUpstreamError(RequestFailed):
    """4xx other than 429 — never retried."""


class UpstreamError(RequestFailed):
    """The upstream answered 2xx but the payload is unusable."""


class ConfigParseError(ValueError):
    """A proxy list line could not be parsed."""

    def __init__(self, line: str, reason: str):
        self.line = line
        self.reason = reason
        super().__init__(f"{reason}: {line!r}")


class ChunkFetchError(Exception):
    """The initial byte-range download failed; playback streams directly."""


class HandoverError(Exception):
    """A seamless source switch could not complete."""


class PlaybackError(Exception):
    """A handle reported an error while playing."""
