"""Pydantic models shared across the application."""

from __future__ import annotations

from enum import Enum
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class ProxyType(str, Enum):
    HTTP = "http"
    HTTPS = "https"
    SOCKS4 = "socks4"
    SOCKS5 = "socks5"


DEFAULT_PROXY_PORTS: Dict[ProxyType, int] = {
    ProxyType.HTTP: 8080,
    ProxyType.HTTPS: 8443,
    ProxyType.SOCKS4: 1080,
    ProxyType.SOCKS5: 1080,
}


class ProxyConfig(BaseModel):
    """One outbound proxy endpoint, parsed from the proxy list."""

    model_config = ConfigDict(frozen=True)

    type: ProxyType = ProxyType.HTTP
    host: str
    port: int = Field(gt=0, le=65535)
    username: Optional[str] = None
    password: Optional[str] = None

    @property
    def has_auth(self) -> bool:
        return bool(self.username and self.password)

    @property
    def url(self) -> str:
        """Render as ``type://[user:pass@]host:port``."""
        auth = f"{self.username}:{self.password}@" if self.has_auth else ""
        return f"{self.type.value}://{auth}{self.host}:{self.port}"

    def describe(self) -> str:
        """Log-safe label (never includes the password)."""
        auth = f" (auth: {self.username})" if self.username else " (no auth)"
        return f"{self.type.value.upper()} {self.host}:{self.port}{auth}"


class ProxyStats(BaseModel):
    total: int = 0
    by_type: Dict[str, int] = Field(default_factory=dict)
    with_auth: int = 0
    without_auth: int = 0


# ---------------------------------------------------------------------------
# Tracks (upstream JSON is camelCase)
# ---------------------------------------------------------------------------

class AudioQuality(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    maximum_bit_depth: int = Field(16, alias="maximumBitDepth")
    maximum_sampling_rate: float = Field(44.1, alias="maximumSamplingRate")
    is_hi_res: bool = Field(False, alias="isHiRes")


class TrackImages(BaseModel):
    model_config = ConfigDict(frozen=True)

    small: str = ""
    thumbnail: str = ""
    large: str = ""
    back: Optional[str] = None


class Track(BaseModel):
    """A playable unit returned by the upstream search API.

    Unknown upstream fields are kept so the proxy can pass them through
    untouched.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="allow")

    id: Union[int, str]
    title: str = ""
    artist: str = ""
    album_title: Optional[str] = Field(None, alias="albumTitle")
    duration: int = 0  # seconds
    images: TrackImages = Field(default_factory=TrackImages)
    audio_quality: AudioQuality = Field(default_factory=AudioQuality, alias="audioQuality")

    @property
    def key(self) -> str:
        """String form of ``id``; upstream ids are usually numeric."""
        return str(self.id)

    @property
    def is_high_quality(self) -> bool:
        q = self.audio_quality
        return q.is_hi_res or q.maximum_bit_depth > 16 or q.maximum_sampling_rate > 44.1

    @property
    def quality_badge(self) -> Optional[str]:
        if self.audio_quality.is_hi_res:
            return "Hi-Res"
        if self.audio_quality.maximum_bit_depth == 24:
            return "HD"
        return None

    @property
    def optimal_image(self) -> str:
        return self.images.large or self.images.small or self.images.thumbnail


def format_duration(seconds: float) -> str:
    """``m:ss``; NaN and negatives render as ``0:00``."""
    if seconds != seconds or seconds < 0:
        return "0:00"
    minutes, secs = divmod(int(seconds), 60)
    return f"{minutes}:{secs:02d}"


class SearchResponse(BaseModel):
    model_config = ConfigDict(extra="allow")

    tracks: List[Track] = Field(default_factory=list)


class StreamResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    url: str
    track_id: str = Field(alias="trackId")


# ---------------------------------------------------------------------------
# Player
# ---------------------------------------------------------------------------

class RepeatMode(str, Enum):
    OFF = "off"
    ALL = "all"
    ONE = "one"

    def cycle(self) -> "RepeatMode":
        """off -> all -> one -> off."""
        order = [RepeatMode.OFF, RepeatMode.ALL, RepeatMode.ONE]
        return order[(order.index(self) + 1) % len(order)]


class PlayerState(BaseModel):
    """Session-scoped player snapshot, restored on page load."""

    model_config = ConfigDict(populate_by_name=True)

    volume: float = Field(1.0, ge=0.0, le=1.0)
    is_muted: bool = Field(False, alias="isMuted")
    current_time: float = Field(0.0, ge=0.0, alias="currentTime")
    track_id: Optional[str] = Field(None, alias="trackId")

    def resume_position(self, track_id: Optional[str]) -> float:
        """Stored position, but only for the track it was saved with."""
        if track_id is not None and self.track_id == str(track_id):
            return self.current_time
        return 0.0
