"""Player session — playback queue driving the progressive loader.

The queue decides which track plays; the loader plays it.  When a track
ends the queue advances and the next track is loaded, until the queue
runs out (repeat off) or forever (repeat all / one).
"""

from __future__ import annotations

import logging
from typing import Any, Optional, Sequence

from app.audio_loader import ProgressiveAudioLoader, StreamResolver
from app.request_queue import RequestQueue
from core.handover import AudioHandle
from core.models import Track
from core.playback_queue import PlaybackQueue

logger = logging.getLogger(__name__)


class Player:
    """One listener's player: a ``PlaybackQueue`` and the loader behind it."""

    def __init__(
        self,
        primary: AudioHandle,
        secondary: AudioHandle,
        *,
        resolve_stream_url: StreamResolver,
        request_queue: RequestQueue,
        playback_queue: Optional[PlaybackQueue] = None,
        **loader_options: Any,
    ):
        self.queue = playback_queue or PlaybackQueue()
        self.loader = ProgressiveAudioLoader(
            primary,
            secondary,
            resolve_stream_url=resolve_stream_url,
            queue=request_queue,
            on_track_end=self._on_track_end,
            **loader_options,
        )

    @property
    def current_track(self) -> Optional[Track]:
        return self.queue.current_track

    def to_status_dict(self) -> dict[str, Any]:
        """Serialize for the UI."""
        track = self.current_track
        status = self.loader.to_status_dict()
        status.update(
            {
                "current_index": self.queue.current_index,
                "total_tracks": len(self.queue),
                "is_shuffled": self.queue.is_shuffled,
                "repeat_mode": self.queue.repeat_mode.value,
                "current_title": track.title if track else None,
                "current_artist": track.artist if track else None,
            }
        )
        return status

    # ------------------------------------------------------------------
    # Queue actions
    # ------------------------------------------------------------------

    async def play_tracks(self, tracks: Sequence[Track], start_index: int = 0) -> bool:
        """Replace the queue and start playing at *start_index*."""
        self.queue.set_tracks(tracks, start_index)
        return await self._play(self.queue.current_track)

    async def play_index(self, index: int) -> bool:
        return await self._play(self.queue.set_current_index(index))

    async def next(self) -> Optional[Track]:
        """Advance the queue; None means the queue has finished."""
        track = self.queue.next()
        if track is None:
            logger.info("Playback queue finished")
            return None
        await self._play(track)
        return track

    async def previous(self) -> Optional[Track]:
        track = self.queue.previous()
        if track is not None:
            await self._play(track)
        return track

    async def stop(self) -> None:
        await self.loader.stop()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _play(self, track: Optional[Track]) -> bool:
        if track is None:
            return False
        state = self.loader.state
        if state is not None and state.track_id == track.key:
            # Same track again (repeat one): start it over.
            await self.loader.stop()
        logger.info("Playing %s — %s (%s)", track.artist, track.title, track.key)
        return await self.loader.load(track.key)

    async def _on_track_end(self) -> None:
        await self.next()
