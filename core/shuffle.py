"""Shuffle helpers for the playback queue — pure logic, no I/O.

Provides:
- Fisher–Yates shuffle (unbiased)
- Anchored play orders (current track stays first)
- Fresh orders for a new pass over a shuffled queue
"""

from __future__ import annotations

import random
from typing import List, MutableSequence, Optional, TypeVar

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Fisher–Yates Shuffle
# ---------------------------------------------------------------------------

def fisher_yates_shuffle(
    items: MutableSequence[T],
    rng: Optional[random.Random] = None,
) -> MutableSequence[T]:
    """In-place unbiased Fisher–Yates (Knuth) shuffle.

    Parameters
    ----------
    items:
        Sequence to shuffle.  Will be **mutated** in place.
    rng:
        Optional ``random.Random`` instance for deterministic testing.

    Returns
    -------
    The same sequence (shuffled in place) for convenience.
    """
    rng = rng or random.Random()
    n = len(items)
    for i in range(n - 1, 0, -1):
        j = rng.randint(0, i)
        items[i], items[j] = items[j], items[i]
    return items


# ---------------------------------------------------------------------------
# Play orders
# ---------------------------------------------------------------------------

def anchored_order(
    count: int,
    anchor: Optional[int],
    rng: Optional[random.Random] = None,
) -> List[int]:
    """Random permutation of ``range(count)`` with *anchor* moved to the front.

    Used when shuffle is switched on mid-playback: the playing track keeps
    playing and everything else follows in random order.
    """
    rest = [i for i in range(count) if i != anchor]
    fisher_yates_shuffle(rest, rng=rng)
    if anchor is None or not 0 <= anchor < count:
        return rest
    return [anchor] + rest


def fresh_order(
    count: int,
    avoid_first: Optional[int] = None,
    rng: Optional[random.Random] = None,
) -> List[int]:
    """New random pass over ``range(count)``.

    When there is more than one item, *avoid_first* is never placed first so
    the same track does not play twice in a row across passes.
    """
    order = fisher_yates_shuffle(list(range(count)), rng=rng)
    if count > 1 and order[0] == avoid_first:
        swap = (rng or random.Random()).randint(1, count - 1)
        order[0], order[swap] = order[swap], order[0]
    return list(order)
