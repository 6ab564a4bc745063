"""Audio handles and the source handover between them.

The player owns two interchangeable ``AudioHandle``s.  One is audible; the
other is used to prepare the next source so it can be crossfaded in without
a gap.  Nothing here knows how audio is decoded.
"""

from __future__ import annotations

import asyncio
import logging
import math
from typing import Awaitable, Callable, Optional, Protocol, runtime_checkable

from core.errors import HandoverError

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]

HANDOVER_SECONDS_REMAINING = 8.0
HANDOVER_FRACTION = 0.8

CROSSFADE_SECONDS = 0.05
CROSSFADE_STEPS = 3
PREPARE_TIMEOUT = 0.8


@runtime_checkable
class AudioHandle(Protocol):
    """A playable source slot (an ``<audio>`` element, a decoder, …)."""

    source: Optional[str]
    volume: float
    position: float

    @property
    def duration(self) -> float: ...

    @property
    def paused(self) -> bool: ...

    async def prepare(self, source: str) -> None:
        """Load *source* until it can start playing; raise on failure."""

    async def play(self) -> None: ...

    def pause(self) -> None: ...

    def set_volume(self, volume: float) -> None: ...

    def release(self) -> None:
        """Stop and drop the current source."""


# ---------------------------------------------------------------------------
# Trigger rule
# ---------------------------------------------------------------------------

def handover_threshold(chunk_duration: float) -> float:
    """Playback position at which the chunk should hand over.

    Either condition alone is enough — *N* seconds left or *80%* played —
    so the threshold is whichever of the two is reached first.
    """
    return min(chunk_duration - HANDOVER_SECONDS_REMAINING, chunk_duration * HANDOVER_FRACTION)


def should_handover(position: float, chunk_duration: float) -> bool:
    if not chunk_duration or math.isnan(chunk_duration) or math.isinf(chunk_duration):
        return False
    if math.isnan(position) or position <= 0:
        return False
    return position >= handover_threshold(chunk_duration)


# ---------------------------------------------------------------------------
# Switching
# ---------------------------------------------------------------------------

async def crossfade(
    outgoing: AudioHandle,
    incoming: AudioHandle,
    target_volume: float,
    *,
    seconds: float = CROSSFADE_SECONDS,
    steps: int = CROSSFADE_STEPS,
    sleep: Sleep = asyncio.sleep,
) -> None:
    """Ramp *outgoing* to silence and *incoming* to *target_volume*."""
    step_delay = seconds / steps
    for i in range(steps + 1):
        progress = i / steps
        outgoing.set_volume(max(0.0, (1 - progress) * target_volume))
        incoming.set_volume(min(1.0, progress * target_volume))
        if i < steps:
            await sleep(step_delay)


async def seamless_switch(
    active: AudioHandle,
    standby: AudioHandle,
    source: str,
    *,
    position: Optional[float] = None,
    prepare_timeout: float = PREPARE_TIMEOUT,
    crossfade_seconds: float = CROSSFADE_SECONDS,
    crossfade_steps: int = CROSSFADE_STEPS,
    sleep: Sleep = asyncio.sleep,
) -> AudioHandle:
    """Move playback from *active* to *standby* playing *source*.

    *position* defaults to where *active* currently is.  Returns the handle
    that is now audible (*standby*); *active* is released.

    Raises
    ------
    HandoverError
        If *standby* could not be prepared or started.  *active* is left
        untouched apart from its volume, which is restored.
    """
    start_at = active.position if position is None else position
    was_playing = not active.paused
    original_volume = active.volume

    logger.debug(
        "Starting seamless switch at %.2fs (playing=%s, volume=%.2f)",
        start_at, was_playing, original_volume,
    )
    try:
        standby.set_volume(0.0)
        await asyncio.wait_for(standby.prepare(source), timeout=prepare_timeout)
        if start_at > 0:
            standby.position = start_at
        if was_playing:
            await standby.play()
            await crossfade(
                active, standby, original_volume,
                seconds=crossfade_seconds, steps=crossfade_steps, sleep=sleep,
            )
        else:
            standby.set_volume(original_volume)
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        standby.release()
        active.set_volume(original_volume)
        raise HandoverError(f"seamless switch to {source!r} failed: {exc}") from exc

    active.release()
    active.set_volume(original_volume)
    return standby


async def hard_cut(
    handle: AudioHandle,
    source: str,
    *,
    position: Optional[float] = None,
) -> AudioHandle:
    """Point *handle* straight at *source*, keeping position and play state."""
    start_at = handle.position if position is None else position
    was_playing = not handle.paused
    if was_playing:
        handle.pause()
    await handle.prepare(source)
    if start_at > 0:
        handle.position = start_at
    if was_playing:
        await handle.play()
    return handle
