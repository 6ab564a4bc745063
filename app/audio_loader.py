"""Progressive audio loading with a seamless switch to the full file.

Flow for each track:
  1. Resolve the stream URL (through the upstream queue).
  2. Download the first ~8MB with a Range request and start playing it.
  3. Download the whole file in the background, tracking progress.
  4. Hand over from the chunk to the full file near the end of the chunk
     (or when the chunk runs out), crossfading between two handles.

Both downloads go through the same ``RequestQueue`` as upstream calls, so
the full download starts once the chunk download has finished.  Seeking
is only allowed once the full file is on disk.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import httpx

from app.request_queue import RequestQueue
from core.errors import ChunkFetchError, HandoverError, RequestFailed
from core.handover import (
    CROSSFADE_SECONDS,
    CROSSFADE_STEPS,
    PREPARE_TIMEOUT,
    AudioHandle,
    Sleep,
    hard_cut,
    seamless_switch,
    should_handover,
)
from core.models import PlayerState

logger = logging.getLogger(__name__)

INITIAL_CHUNK_BYTES = 8194304
DOWNLOAD_TIMEOUT = 30.0  # seconds between bytes

StreamResolver = Callable[[str], Awaitable[str]]


# ---------------------------------------------------------------------------
# Per-track state
# ---------------------------------------------------------------------------

class AudioSourceState:
    """Sources and download bookkeeping for the current track."""

    __slots__ = (
        "track_id",
        "stream_url",
        "chunk_path",
        "full_path",
        "active_source",
        "is_transitioning",
        "awaiting_full",
        "full_failed",
        "resume_from",
        "download_progress",
        "aborted",
        "downloads",
        "files",
    )

    def __init__(self, track_id: str):
        self.track_id = track_id
        self.stream_url: Optional[str] = None
        self.chunk_path: Optional[Path] = None
        self.full_path: Optional[Path] = None
        self.active_source: Optional[str] = None
        self.is_transitioning = False
        self.awaiting_full = False
        self.full_failed = False
        self.resume_from = 0.0
        self.download_progress = 0
        self.aborted = False
        self.downloads: Set[asyncio.Task] = set()
        self.files: List[Path] = []

    @property
    def chunk_uri(self) -> Optional[str]:
        return self.chunk_path.as_uri() if self.chunk_path else None

    @property
    def full_uri(self) -> Optional[str]:
        return self.full_path.as_uri() if self.full_path else None

    @property
    def playing_chunk(self) -> bool:
        return self.chunk_path is not None and self.active_source == self.chunk_uri

    def best_source(self) -> Optional[str]:
        """Full file, then chunk, then the remote stream URL."""
        return self.full_uri or self.chunk_uri or self.stream_url


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

class ProgressiveAudioLoader:
    """Drives two ``AudioHandle``s for one player instance.

    The owner forwards handle events to ``on_time_update``, ``on_ended``
    and ``on_error``.  Only one track load is in flight at a time; loading
    a new track aborts the previous one and deletes its local files.
    """

    def __init__(
        self,
        primary: AudioHandle,
        secondary: AudioHandle,
        *,
        resolve_stream_url: StreamResolver,
        queue: RequestQueue,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        chunk_bytes: int = INITIAL_CHUNK_BYTES,
        proactive_switch: bool = True,
        download_dir: Optional[Path] = None,
        crossfade_seconds: float = CROSSFADE_SECONDS,
        crossfade_steps: int = CROSSFADE_STEPS,
        prepare_timeout: float = PREPARE_TIMEOUT,
        sleep: Sleep = asyncio.sleep,
        on_change: Optional[Callable[[], None]] = None,
        on_track_end: Optional[Callable[[], Any]] = None,
    ):
        self._active = primary
        self._standby = secondary
        self._resolve = resolve_stream_url
        self._queue = queue
        self._transport = transport
        self._chunk_bytes = chunk_bytes
        self._proactive_switch = proactive_switch
        self._download_dir = download_dir
        self._crossfade_seconds = crossfade_seconds
        self._crossfade_steps = crossfade_steps
        self._prepare_timeout = prepare_timeout
        self._sleep = sleep
        self._on_change = on_change
        self._on_track_end = on_track_end

        self._state: Optional[AudioSourceState] = None
        self._load_task: Optional[asyncio.Task] = None
        self._full_task: Optional[asyncio.Task] = None
        self._saved: Optional[PlayerState] = None

        self.volume = 1.0
        self.is_muted = False
        self.is_playing = False
        self.is_loading = False
        self.is_buffering = False
        self.error: Optional[str] = None

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    @property
    def state(self) -> Optional[AudioSourceState]:
        return self._state

    @property
    def active_handle(self) -> AudioHandle:
        return self._active

    @property
    def download_progress(self) -> int:
        return self._state.download_progress if self._state else 0

    @property
    def can_seek(self) -> bool:
        return self._state is not None and self._state.full_path is not None

    @property
    def position(self) -> float:
        return self._active.position if self._state else 0.0

    def to_status_dict(self) -> Dict[str, Any]:
        """Serialize for the UI."""
        state = self._state
        return {
            "track_id": state.track_id if state else None,
            "is_playing": self.is_playing,
            "is_loading": self.is_loading,
            "is_buffering": self.is_buffering,
            "is_transitioning": state.is_transitioning if state else False,
            "download_progress": self.download_progress,
            "can_seek": self.can_seek,
            "position": self.position,
            "duration": self._active.duration if state else 0.0,
            "volume": self.volume,
            "is_muted": self.is_muted,
            "error": self.error,
        }

    def _notify(self) -> None:
        if self._on_change is not None:
            self._on_change()

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def load(self, track_id: str) -> bool:
        """Load and start playing *track_id*.

        Returns once playback has started (or failed).  Returns False if the
        load was superseded by another ``load``/``stop`` before finishing.
        """
        track_id = str(track_id)
        current = self._state
        if current is not None and current.track_id == track_id and (
            self.is_loading or current.chunk_path is not None
        ):
            logger.debug("Track already loading or loaded: %s", track_id)
            return True

        await self._teardown()
        state = AudioSourceState(track_id)
        self._state = state
        self.is_loading = True
        self.error = None
        self._notify()

        task = asyncio.create_task(self._run_load(state))
        self._load_task = task
        await asyncio.wait([task])
        return not task.cancelled() and self._state is state

    async def _run_load(self, state: AudioSourceState) -> None:
        logger.info("Loading stream URL for track %s", state.track_id)
        try:
            stream_url = await self._resolve(state.track_id)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("Failed to load stream URL for %s: %s", state.track_id, exc)
            self._force_stop("Failed to load stream")
            return
        state.stream_url = stream_url

        # Chunk first, full file second — the queue preserves this order.
        chunk_future = self._queue.add(
            lambda: self._abortable(state, self._download_chunk), label=f"chunk:{state.track_id}"
        )
        full_future = self._queue.add(
            lambda: self._abortable(state, self._download_full), label=f"full:{state.track_id}"
        )
        self._full_task = asyncio.create_task(self._await_full(state, full_future))

        try:
            await chunk_future
            source = state.chunk_uri
            logger.info("Initial chunk ready for %s, starting playback", state.track_id)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            # Any chunk failure is non-fatal.
            logger.warning("Initial chunk failed, falling back to direct streaming: %s", exc)
            source = stream_url

        self.is_loading = False
        await self._start(state, source)

    async def _start(self, state: AudioSourceState, source: str) -> None:
        resume_at = 0.0
        if self._saved is not None:
            resume_at = self._saved.resume_position(state.track_id)
            self._saved = None
        try:
            await self._active.prepare(source)
            state.active_source = source
            self._apply_volume()
            if resume_at > 0:
                self._active.position = resume_at
                logger.info("Resumed %s at %.1fs", state.track_id, resume_at)
            await self._active.play()
            self.is_playing = True
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Auto-play failed, user interaction may be required: %s", exc)
            self.is_playing = False
        self._notify()

        if state.full_path is not None and self._proactive_switch:
            await self._switch(state, state.full_uri)

    async def _await_full(self, state: AudioSourceState, full_future: asyncio.Future) -> None:
        try:
            await full_future
        except asyncio.CancelledError:
            raise
        except (RequestFailed, httpx.HTTPError, OSError) as exc:
            logger.warning("Full download failed, continuing with progressive streaming: %s", exc)
            state.full_failed = True
            if state.awaiting_full:
                await self._continue_streaming(state, state.resume_from)
            return

        logger.info("Full audio file ready for %s", state.track_id)
        state.download_progress = 100
        self._notify()

        if state.awaiting_full:
            await self._switch(state, state.full_uri, position=state.resume_from, resume=True)
        elif self._proactive_switch and state.active_source not in (None, state.full_uri):
            await self._switch(state, state.full_uri)

    async def wait_full_download(self) -> Optional[Path]:
        """Wait for the background download (and any handover it triggers)."""
        state, task = self._state, self._full_task
        if task is not None:
            await asyncio.wait([task])
        return state.full_path if state is not None else None

    # ------------------------------------------------------------------
    # Downloads
    # ------------------------------------------------------------------

    async def _abortable(self, state: AudioSourceState, download: Callable[[AudioSourceState], Awaitable[Path]]) -> Path:
        if state.aborted:
            raise asyncio.CancelledError()
        task = asyncio.ensure_future(download(state))
        state.downloads.add(task)
        try:
            return await task
        finally:
            state.downloads.discard(task)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=self._transport,
            timeout=httpx.Timeout(DOWNLOAD_TIMEOUT),
            follow_redirects=True,
        )

    def _new_file(self, state: AudioSourceState, kind: str) -> Path:
        fd, name = tempfile.mkstemp(
            prefix=f"openspot-{state.track_id}-{kind}-", suffix=".audio", dir=self._download_dir
        )
        os.close(fd)
        path = Path(name)
        state.files.append(path)
        return path

    async def _download_chunk(self, state: AudioSourceState) -> Path:
        headers = {"Range": f"bytes=0-{self._chunk_bytes - 1}", "Accept": "audio/*"}
        async with self._client() as client:
            async with client.stream("GET", state.stream_url, headers=headers) as resp:
                if resp.status_code not in (200, 206):
                    raise ChunkFetchError(f"Failed to download initial chunk: {resp.status_code}")
                path = self._new_file(state, "chunk")
                size = 0
                with path.open("wb") as fh:
                    async for data in resp.aiter_bytes():
                        # A server that ignores Range sends the whole file.
                        data = data[: self._chunk_bytes - size]
                        fh.write(data)
                        size += len(data)
                        if size >= self._chunk_bytes:
                            break
        state.chunk_path = path
        logger.debug("Initial chunk for %s: %d bytes", state.track_id, size)
        return path

    async def _download_full(self, state: AudioSourceState) -> Path:
        path = self._new_file(state, "full")
        async with self._client() as client:
            async with client.stream("GET", state.stream_url, headers={"Accept": "audio/*"}) as resp:
                if resp.status_code not in (200, 206):
                    raise RequestFailed(resp.status_code, "Failed to download full audio")
                total = int(resp.headers.get("Content-Length") or 0)
                loaded = 0
                with path.open("wb") as fh:
                    async for data in resp.aiter_bytes():
                        fh.write(data)
                        loaded += len(data)
                        if total:
                            progress = min(99, round(loaded * 100 / total))
                            if progress != state.download_progress:
                                state.download_progress = progress
                                self._notify()
        state.full_path = path
        return path

    # ------------------------------------------------------------------
    # Handle events
    # ------------------------------------------------------------------

    async def on_time_update(self) -> bool:
        """Hand over to the full file once the chunk is near its end."""
        state = self._state
        if state is None or state.is_transitioning:
            return False
        if not state.playing_chunk or state.full_path is None:
            return False
        if not should_handover(self._active.position, self._active.duration):
            return False

        logger.info(
            "Switching to full audio at %.2fs of %.2fs chunk",
            self._active.position, self._active.duration,
        )
        return await self._switch(state, state.full_uri)

    async def on_ended(self) -> None:
        state = self._state
        if state is not None and state.playing_chunk and not state.is_transitioning:
            position = self._active.position
            if state.full_path is not None:
                logger.info("Initial chunk ended, continuing on the full file")
                await self._switch(state, state.full_uri, position=position, resume=True)
            elif state.full_failed:
                logger.info("Initial chunk ended without a full file, streaming the rest")
                await self._continue_streaming(state, position)
            else:
                logger.info("Initial chunk ended before the full download — waiting")
                state.awaiting_full = True
                state.resume_from = position
                self.is_buffering = True
                self._notify()
            return

        self.is_playing = False
        self._notify()
        if self._on_track_end is not None:
            result = self._on_track_end()
            if inspect.isawaitable(result):
                await result

    async def on_error(self, exc: Optional[BaseException] = None) -> bool:
        """Retry playback from another source, keeping position and intent."""
        state = self._state
        if state is None:
            self._force_stop("Playback failed")
            return False
        if state.is_transitioning:
            logger.debug("Handle error during transition, ignoring: %s", exc)
            return True

        failed = self._active.source
        fallback = next(
            (s for s in (state.full_uri, state.chunk_uri, state.stream_url) if s and s != failed),
            None,
        )
        if fallback is None:
            logger.error("Playback error with no alternative source: %s", exc)
            self._force_stop("Playback failed")
            return False

        logger.warning("Playback error (%s), recovering with %s", exc, fallback)
        was_playing = self.is_playing
        position = self._active.position or 0.0
        try:
            await self._active.prepare(fallback)
            if position > 0:
                self._active.position = position
            if was_playing:
                await self._active.play()
        except asyncio.CancelledError:
            raise
        except Exception as recovery_exc:
            logger.error("Failed to recover from playback error: %s", recovery_exc)
            self._force_stop("Playback failed")
            return False

        state.active_source = fallback
        self._notify()
        return True

    # ------------------------------------------------------------------
    # Handover
    # ------------------------------------------------------------------

    async def _continue_streaming(self, state: AudioSourceState, position: float) -> None:
        """Resume from the remote stream URL when no full file will arrive."""
        if state.stream_url is not None and await self._switch(
            state, state.stream_url, position=position, resume=True
        ):
            return
        state.awaiting_full = False
        self._force_stop("Playback failed")

    async def _switch(
        self,
        state: AudioSourceState,
        source: str,
        *,
        position: Optional[float] = None,
        resume: bool = False,
    ) -> bool:
        if state.is_transitioning:
            logger.debug("Transition already in progress, skipping")
            return False
        if state is not self._state:
            return False

        state.is_transitioning = True
        try:
            try:
                new_active = await seamless_switch(
                    self._active,
                    self._standby,
                    source,
                    position=position,
                    prepare_timeout=self._prepare_timeout,
                    crossfade_seconds=self._crossfade_seconds,
                    crossfade_steps=self._crossfade_steps,
                    sleep=self._sleep,
                )
                self._standby, self._active = self._active, new_active
            except HandoverError as exc:
                logger.warning("Seamless transition failed, falling back to hard cut: %s", exc)
                try:
                    await hard_cut(self._active, source, position=position)
                except asyncio.CancelledError:
                    raise
                except Exception as cut_exc:
                    logger.error("Both seamless and hard-cut transitions failed: %s", cut_exc)
                    return False

            state.active_source = source
            state.awaiting_full = False
            self.is_buffering = False
            if resume and self._active.paused:
                try:
                    await self._active.play()
                    self.is_playing = True
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    logger.warning("Could not resume after handover: %s", exc)
                    self.is_playing = False
            logger.info("Audio transition completed for %s", state.track_id)
            return True
        finally:
            state.is_transitioning = False
            self._notify()

    # ------------------------------------------------------------------
    # Controls
    # ------------------------------------------------------------------

    async def play(self) -> bool:
        state = self._state
        source = state.best_source() if state else None
        if source is None:
            return False
        try:
            if self._active.source is None:
                await self._active.prepare(source)
                state.active_source = source
                self._apply_volume()
            await self._active.play()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("Failed to play audio: %s", exc)
            self.is_playing = False
            self._notify()
            return False
        self.is_playing = True
        self._notify()
        return True

    def pause(self) -> None:
        self._active.pause()
        self.is_playing = False
        self._notify()

    async def toggle_play(self) -> bool:
        if self.is_playing:
            self.pause()
            return False
        return await self.play()

    async def seek(self, position: float) -> bool:
        """Jump to *position*; refused until the full file is available."""
        state = self._state
        if state is None or state.full_path is None:
            logger.debug("Seek refused — full file not ready")
            return False
        position = max(0.0, position)
        if state.active_source != state.full_uri:
            return await self._switch(state, state.full_uri, position=position)
        self._active.position = position
        self._notify()
        return True

    def set_volume(self, volume: float) -> None:
        self.volume = min(1.0, max(0.0, volume))
        self.is_muted = self.volume == 0
        self._apply_volume()
        self._notify()

    def toggle_mute(self) -> bool:
        self.is_muted = not self.is_muted
        self._apply_volume()
        self._notify()
        return self.is_muted

    def _apply_volume(self) -> None:
        self._active.set_volume(0.0 if self.is_muted else self.volume)

    async def stop(self) -> None:
        await self._teardown()
        self._state = None
        self.is_playing = False
        self.is_loading = False
        self.is_buffering = False
        self._notify()

    # ------------------------------------------------------------------
    # Session state
    # ------------------------------------------------------------------

    def snapshot(self) -> PlayerState:
        state = self._state
        return PlayerState(
            volume=self.volume,
            is_muted=self.is_muted,
            current_time=max(0.0, self.position),
            track_id=state.track_id if state else None,
        )

    def restore(self, saved: PlayerState) -> None:
        """Apply a saved state; its position is used when that track loads."""
        self.volume = saved.volume
        self.is_muted = saved.is_muted
        self._saved = saved
        self._apply_volume()
        self._notify()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _force_stop(self, message: str) -> None:
        self.error = message
        self.is_playing = False
        self.is_loading = False
        self.is_buffering = False
        self._notify()

    async def _teardown(self) -> None:
        state = self._state
        if state is None:
            return
        state.aborted = True
        tasks = [t for t in (self._load_task, self._full_task) if t is not None and not t.done()]
        tasks.extend(t for t in state.downloads if not t.done())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._load_task = None
        self._full_task = None

        self._active.pause()
        self._active.release()
        self._standby.release()
        for path in state.files:
            path.unlink(missing_ok=True)
        state.files.clear()
        self.is_playing = False
        logger.debug("Released sources for track %s", state.track_id)
