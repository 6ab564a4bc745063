"""Playback queue — ordered tracks with shuffle and repeat, no I/O.

``tracks`` keeps the order the user built.  ``_order`` is the play order:
a list of indexes into ``tracks`` that is the identity when shuffle is off
and a permutation when it is on.  ``current_index`` always refers to
``tracks``.
"""

from __future__ import annotations

import logging
import random
from typing import List, Optional, Sequence

from core.models import RepeatMode, Track
from core.shuffle import anchored_order, fresh_order

logger = logging.getLogger(__name__)


class PlaybackQueue:
    """In-memory queue consumed by the player and the UI."""

    def __init__(self, rng: Optional[random.Random] = None):
        self._rng = rng or random.Random()
        self._tracks: List[Track] = []
        self._order: List[int] = []
        self._position = 0  # index into _order
        self.is_shuffled = False
        self.repeat_mode = RepeatMode.OFF

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    @property
    def tracks(self) -> List[Track]:
        return list(self._tracks)

    @property
    def current_index(self) -> int:
        """Index into ``tracks``; -1 when the queue is empty."""
        if not self._tracks:
            return -1
        return self._order[self._position]

    @property
    def current_track(self) -> Optional[Track]:
        if not self._tracks:
            return None
        return self._tracks[self.current_index]

    @property
    def play_order(self) -> List[int]:
        return list(self._order)

    def upcoming(self) -> List[Track]:
        """Tracks that will play after the current one in this pass."""
        return [self._tracks[i] for i in self._order[self._position + 1:]]

    def __len__(self) -> int:
        return len(self._tracks)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def set_tracks(self, tracks: Sequence[Track], start_index: int = 0) -> None:
        """Replace the queue; playback starts at *start_index*."""
        self._tracks = list(tracks)
        if not self._tracks:
            self.clear()
            return
        start = min(max(start_index, 0), len(self._tracks) - 1)
        self._rebuild_order(anchor=start)

    def add(self, track: Track) -> None:
        """Append *track*; it plays after everything already queued."""
        self._tracks.append(track)
        if len(self._tracks) == 1:
            self._order = [0]
            self._position = 0
        else:
            self._order.append(len(self._tracks) - 1)

    def clear(self) -> None:
        self._tracks = []
        self._order = []
        self._position = 0

    def set_current_index(self, index: int) -> Track:
        self._check_index(index)
        self._position = self._order.index(index)
        return self._tracks[index]

    def remove_at(self, index: int) -> Optional[Track]:
        """Remove ``tracks[index]``.

        Removing the playing track moves playback to the next remaining
        track in play order (clamped to the end).  Returns the new current
        track, or None once the queue is empty.
        """
        self._check_index(index)
        if len(self._tracks) == 1:
            self.clear()
            return None

        removed_pos = self._order.index(index)
        del self._tracks[index]
        self._order = [i - 1 if i > index else i for i in self._order if i != index]
        if removed_pos < self._position:
            self._position -= 1
        self._position = min(self._position, len(self._order) - 1)
        return self.current_track

    # ------------------------------------------------------------------
    # Navigation
    # ------------------------------------------------------------------

    def next(self) -> Optional[Track]:
        """Advance and return the track to play, or None when playback stops."""
        if not self._tracks:
            return None

        if self.repeat_mode == RepeatMode.ONE:
            return self.current_track

        if self._position + 1 < len(self._order):
            self._position += 1
            return self.current_track

        # End of the pass.
        if self.is_shuffled:
            self._order = fresh_order(len(self._tracks), self.current_index, self._rng)
            self._position = 0
            logger.debug("Shuffle pass finished — new order generated")
            return self.current_track
        if self.repeat_mode == RepeatMode.ALL:
            self._position = 0
            return self.current_track
        return None

    def previous(self) -> Optional[Track]:
        if not self._tracks:
            return None
        if self._position > 0:
            self._position -= 1
            return self.current_track
        if self.repeat_mode == RepeatMode.ALL:
            self._position = len(self._order) - 1
            return self.current_track
        return None

    def toggle_shuffle(self) -> bool:
        self.is_shuffled = not self.is_shuffled
        if self._tracks:
            self._rebuild_order(anchor=self.current_index)
        return self.is_shuffled

    def toggle_repeat(self) -> RepeatMode:
        self.repeat_mode = self.repeat_mode.cycle()
        return self.repeat_mode

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _rebuild_order(self, anchor: int) -> None:
        if self.is_shuffled:
            self._order = anchored_order(len(self._tracks), anchor, self._rng)
            self._position = 0
        else:
            self._order = list(range(len(self._tracks)))
            self._position = anchor

    def _check_index(self, index: int) -> None:
        if not 0 <= index < len(self._tracks):
            raise IndexError(f"queue index {index} out of range (size {len(self._tracks)})")
