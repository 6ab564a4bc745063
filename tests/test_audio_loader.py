"""Tests for ProgressiveAudioLoader: chunk playback, handover and cleanup."""

from __future__ import annotations

import asyncio

import httpx
import pytest

from app.audio_loader import ProgressiveAudioLoader
from app.request_queue import RequestQueue
from core.errors import FatalUpstreamError, PlaybackError
from core.models import PlayerState

STREAM_URL = "https://cdn.example/track.flac"
CHUNK = 4096
AUDIO = bytes(range(256)) * 64  # 16 KiB


class FakeHandle:
    """AudioHandle double; durations and positions are set by the test."""

    def __init__(self, name: str, *, fail_prepare: bool = False):
        self.name = name
        self.source = None
        self.volume = 1.0
        self.position = 0.0
        self.duration_value = 20.0
        self.fail_prepare = fail_prepare
        self.prepared: list[str] = []
        self._paused = True

    @property
    def duration(self) -> float:
        return self.duration_value

    @property
    def paused(self) -> bool:
        return self._paused

    async def prepare(self, source):
        if self.fail_prepare:
            raise PlaybackError(f"{self.name} cannot decode {source}")
        self.source = source
        self.position = 0.0
        self.prepared.append(source)

    async def play(self):
        if self.source is None:
            raise PlaybackError("no source")
        self._paused = False

    def pause(self):
        self._paused = True

    def set_volume(self, volume):
        self.volume = volume

    def release(self):
        self.source = None
        self._paused = True


def _transport(
    *,
    full_gate: asyncio.Event | None = None,
    chunk_status: int = 206,
    full_status: int = 200,
    ignore_range: bool = False,
    calls: list | None = None,
):
    async def handler(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append(request.headers.get("range"))
        if "range" in request.headers and not ignore_range:
            if chunk_status != 206:
                return httpx.Response(chunk_status)
            return httpx.Response(206, content=AUDIO[:CHUNK])
        if full_gate is not None and "range" not in request.headers:
            await full_gate.wait()
        if full_status != 200:
            return httpx.Response(full_status)
        return httpx.Response(200, content=AUDIO)

    return httpx.MockTransport(handler)


async def _resolve(track_id: str) -> str:
    return f"{STREAM_URL}?id={track_id}"


async def _no_sleep(_delay):
    return None


def _loader(tmp_path, transport, *, secondary=None, resolve=_resolve, **kwargs) -> ProgressiveAudioLoader:
    # Handover tests drive the time trigger themselves.
    kwargs.setdefault("proactive_switch", False)
    return ProgressiveAudioLoader(
        FakeHandle("primary"),
        secondary or FakeHandle("secondary"),
        resolve_stream_url=resolve,
        queue=RequestQueue(),
        transport=transport,
        chunk_bytes=CHUNK,
        download_dir=tmp_path,
        sleep=_no_sleep,
        **kwargs,
    )


# ------------------------------------------------------------------
# Initial chunk
# ------------------------------------------------------------------

@pytest.mark.asyncio
async def test_plays_chunk_before_full_download(tmp_path):
    gate = asyncio.Event()
    calls: list = []
    loader = _loader(tmp_path, _transport(full_gate=gate, calls=calls))

    assert await loader.load("42") is True

    state = loader.state
    assert state.chunk_path.read_bytes() == AUDIO[:CHUNK]
    assert loader.active_handle.source == state.chunk_uri
    assert loader.is_playing
    assert not loader.is_loading
    assert not loader.can_seek
    assert calls[0] == f"bytes=0-{CHUNK - 1}"

    gate.set()
    full = await loader.wait_full_download()

    assert full.read_bytes() == AUDIO
    assert calls == [f"bytes=0-{CHUNK - 1}", None]
    assert loader.can_seek
    assert loader.download_progress == 100
    # No switch until the chunk nears its end.
    assert loader.active_handle.source == state.chunk_uri


@pytest.mark.asyncio
async def test_seek_refused_until_full_file_ready(tmp_path):
    gate = asyncio.Event()
    loader = _loader(tmp_path, _transport(full_gate=gate))
    await loader.load("1")

    assert await loader.seek(30.0) is False
    assert loader.active_handle.position == 0.0

    gate.set()
    await loader.wait_full_download()

    assert await loader.seek(30.0) is True
    assert loader.active_handle.source == loader.state.full_uri
    assert loader.active_handle.position == 30.0


@pytest.mark.asyncio
async def test_loading_same_track_again_is_a_no_op(tmp_path):
    calls: list = []
    loader = _loader(tmp_path, _transport(calls=calls))
    await loader.load("1")
    await loader.wait_full_download()

    assert await loader.load("1") is True
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_chunk_failure_falls_back_to_stream_url(tmp_path):
    loader = _loader(tmp_path, _transport(chunk_status=500))

    await loader.load("3")

    assert loader.active_handle.source == f"{STREAM_URL}?id=3"
    assert loader.is_playing
    assert loader.error is None

    await loader.wait_full_download()
    assert loader.can_seek
    assert await loader.on_time_update() is False


@pytest.mark.asyncio
async def test_stream_url_failure_stops_playback(tmp_path):
    async def failing(track_id):
        raise FatalUpstreamError(404, "unknown track")

    loader = _loader(tmp_path, _transport(), resolve=failing)

    await loader.load("404")

    assert loader.error == "Failed to load stream"
    assert not loader.is_playing
    assert not loader.is_loading
    assert list(tmp_path.iterdir()) == []


# ------------------------------------------------------------------
# Handover
# ------------------------------------------------------------------

@pytest.mark.asyncio
async def test_hands_over_near_end_of_chunk(tmp_path):
    loader = _loader(tmp_path, _transport())
    await loader.load("7")
    await loader.wait_full_download()

    chunk_handle = loader.active_handle
    chunk_handle.duration_value = 20.0
    chunk_handle.position = 11.0
    assert await loader.on_time_update() is False

    chunk_handle.position = 12.0
    assert await loader.on_time_update() is True

    full_handle = loader.active_handle
    assert full_handle is not chunk_handle
    assert full_handle.source == loader.state.full_uri
    assert full_handle.position == 12.0
    assert not full_handle.paused
    assert full_handle.volume == pytest.approx(1.0)
    assert chunk_handle.source is None
    assert loader.state.is_transitioning is False

    # Already on the full file.
    full_handle.position = 18.0
    assert await loader.on_time_update() is False


@pytest.mark.asyncio
async def test_no_handover_while_transition_in_progress(tmp_path):
    loader = _loader(tmp_path, _transport())
    await loader.load("7")
    await loader.wait_full_download()
    loader.active_handle.position = 15.0

    loader.state.is_transitioning = True
    assert await loader.on_time_update() is False
    assert loader.active_handle.source == loader.state.chunk_uri


@pytest.mark.asyncio
async def test_handover_falls_back_to_hard_cut(tmp_path):
    loader = _loader(tmp_path, _transport(), secondary=FakeHandle("broken", fail_prepare=True))
    await loader.load("8")
    await loader.wait_full_download()

    handle = loader.active_handle
    handle.position = 12.5
    assert await loader.on_time_update() is True

    assert loader.active_handle is handle
    assert handle.source == loader.state.full_uri
    assert handle.position == 12.5
    assert not handle.paused


@pytest.mark.asyncio
async def test_chunk_end_waits_for_full_download(tmp_path):
    gate = asyncio.Event()
    loader = _loader(tmp_path, _transport(full_gate=gate))
    await loader.load("5")

    chunk_handle = loader.active_handle
    chunk_handle.position = 19.5
    chunk_handle.pause()
    await loader.on_ended()

    assert loader.is_buffering
    assert loader.state.awaiting_full

    gate.set()
    await loader.wait_full_download()

    full_handle = loader.active_handle
    assert full_handle.source == loader.state.full_uri
    assert full_handle.position == 19.5
    assert not full_handle.paused
    assert loader.is_playing
    assert not loader.is_buffering
    assert not loader.state.awaiting_full


@pytest.mark.asyncio
async def test_chunk_end_with_full_ready_switches_immediately(tmp_path):
    ended = []
    loader = _loader(tmp_path, _transport(), on_track_end=lambda: ended.append(True))
    await loader.load("6")
    await loader.wait_full_download()

    loader.active_handle.position = 20.0
    loader.active_handle.pause()
    await loader.on_ended()

    assert loader.active_handle.source == loader.state.full_uri
    assert loader.active_handle.position == 20.0
    assert loader.is_playing
    assert ended == []


@pytest.mark.asyncio
async def test_switches_to_full_file_as_soon_as_it_is_ready_by_default(tmp_path):
    loader = ProgressiveAudioLoader(
        FakeHandle("primary"),
        FakeHandle("secondary"),
        resolve_stream_url=_resolve,
        queue=RequestQueue(),
        transport=_transport(),
        chunk_bytes=CHUNK,
        download_dir=tmp_path,
        sleep=_no_sleep,
    )
    await loader.load("9")
    await loader.wait_full_download()

    assert loader.active_handle.source == loader.state.full_uri
    assert loader.active_handle.prepared == [loader.state.full_uri]
    assert loader.is_playing


@pytest.mark.asyncio
async def test_full_download_failure_then_chunk_end_streams_the_rest(tmp_path):
    ended = []
    loader = _loader(tmp_path, _transport(full_status=500), on_track_end=lambda: ended.append(True))
    await loader.load("13")
    assert await loader.wait_full_download() is None
    assert loader.state.full_failed

    chunk_handle = loader.active_handle
    chunk_handle.position = 20.0
    chunk_handle.pause()
    await loader.on_ended()

    handle = loader.active_handle
    assert handle.source == f"{STREAM_URL}?id=13"
    assert handle.position == 20.0
    assert not handle.paused
    assert loader.is_playing
    assert not loader.is_buffering
    assert not loader.state.awaiting_full
    assert ended == []

    # The end of the stream is the end of the track.
    handle.pause()
    await loader.on_ended()
    assert ended == [True]
    assert not loader.is_playing


@pytest.mark.asyncio
async def test_chunk_end_then_full_download_failure_streams_the_rest(tmp_path):
    gate = asyncio.Event()
    loader = _loader(tmp_path, _transport(full_gate=gate, full_status=500))
    await loader.load("14")

    chunk_handle = loader.active_handle
    chunk_handle.position = 20.0
    chunk_handle.pause()
    await loader.on_ended()
    assert loader.is_buffering

    gate.set()
    await loader.wait_full_download()

    handle = loader.active_handle
    assert handle.source == f"{STREAM_URL}?id=14"
    assert handle.position == 20.0
    assert not handle.paused
    assert loader.is_playing
    assert not loader.is_buffering
    assert not loader.state.awaiting_full
    assert loader.error is None


@pytest.mark.asyncio
async def test_chunk_is_capped_when_server_ignores_range(tmp_path):
    loader = _loader(tmp_path, _transport(ignore_range=True))
    await loader.load("15")

    assert loader.state.chunk_path.read_bytes() == AUDIO[:CHUNK]
    assert loader.active_handle.source == loader.state.chunk_uri

    await loader.wait_full_download()
    assert loader.state.full_path.read_bytes() == AUDIO


# ------------------------------------------------------------------
# Track end, errors, track switching
# ------------------------------------------------------------------

@pytest.mark.asyncio
async def test_end_of_full_file_reports_track_end(tmp_path):
    ended = []

    async def on_track_end():
        ended.append(loader.state.track_id)

    loader = _loader(tmp_path, _transport(), on_track_end=on_track_end)
    await loader.load("10")
    await loader.wait_full_download()
    await loader.seek(0.0)

    await loader.on_ended()

    assert ended == ["10"]
    assert not loader.is_playing


@pytest.mark.asyncio
async def test_error_recovers_from_another_source(tmp_path):
    gate = asyncio.Event()
    loader = _loader(tmp_path, _transport(full_gate=gate))
    await loader.load("11")
    loader.active_handle.position = 3.0

    assert await loader.on_error(PlaybackError("decode error")) is True

    assert loader.active_handle.source == f"{STREAM_URL}?id=11"
    assert loader.active_handle.position == 3.0
    assert not loader.active_handle.paused
    assert loader.state.active_source == f"{STREAM_URL}?id=11"

    await loader.stop()


@pytest.mark.asyncio
async def test_error_without_alternative_stops(tmp_path):
    gate = asyncio.Event()
    loader = _loader(tmp_path, _transport(full_gate=gate, chunk_status=500))
    await loader.load("12")

    assert await loader.on_error(PlaybackError("network")) is False

    assert loader.error == "Playback failed"
    assert not loader.is_playing

    await loader.stop()


@pytest.mark.asyncio
async def test_switching_track_aborts_downloads_and_deletes_files(tmp_path):
    gate = asyncio.Event()
    loader = _loader(tmp_path, _transport(full_gate=gate))

    await loader.load("1")
    first = loader.state
    first_files = list(first.files)
    assert first.chunk_path.exists()

    assert await loader.load("2") is True

    assert first.aborted
    assert not any(path.exists() for path in first_files)
    assert loader.state.track_id == "2"
    assert loader.active_handle.source == loader.state.chunk_uri
    assert all(path.name.startswith("openspot-2-") for path in tmp_path.iterdir())

    await loader.stop()
    assert list(tmp_path.iterdir()) == []
    assert loader.state is None


# ------------------------------------------------------------------
# Volume and session state
# ------------------------------------------------------------------

@pytest.mark.asyncio
async def test_volume_and_mute(tmp_path):
    loader = _loader(tmp_path, _transport())
    await loader.load("1")
    await loader.wait_full_download()

    loader.set_volume(0.5)
    assert loader.active_handle.volume == 0.5
    assert loader.toggle_mute() is True
    assert loader.active_handle.volume == 0.0
    assert loader.toggle_mute() is False
    assert loader.active_handle.volume == 0.5


@pytest.mark.asyncio
async def test_restore_resumes_saved_track_position(tmp_path):
    loader = _loader(tmp_path, _transport())
    loader.restore(PlayerState(volume=0.4, current_time=33.0, track_id="3"))

    await loader.load("3")
    await loader.wait_full_download()

    assert loader.active_handle.position == 33.0
    assert loader.active_handle.volume == pytest.approx(0.4)

    snap = loader.snapshot()
    assert snap.track_id == "3"
    assert snap.current_time == 33.0
    assert snap.volume == pytest.approx(0.4)


@pytest.mark.asyncio
async def test_restore_ignores_position_for_other_track(tmp_path):
    loader = _loader(tmp_path, _transport())
    loader.restore(PlayerState(current_time=33.0, track_id="3"))
    await loader.load("4")
    await loader.wait_full_download()
    assert loader.active_handle.position == 0.0


@pytest.mark.asyncio
async def test_toggle_play(tmp_path):
    loader = _loader(tmp_path, _transport())
    await loader.load("1")
    await loader.wait_full_download()

    assert await loader.toggle_play() is False
    assert loader.active_handle.paused
    assert await loader.toggle_play() is True
    assert not loader.active_handle.paused

    status = loader.to_status_dict()
    assert status["track_id"] == "1"
    assert status["can_seek"] is True
    assert status["download_progress"] == 100
