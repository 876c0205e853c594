"""Backoff calculation for the retry executor.

Pure functions: the only source of nondeterminism is the random draw,
which callers may replace for tests.
"""

from __future__ import annotations

import random
from collections.abc import Callable

JITTER_FRACTION = 0.25

type RandomSource = Callable[[], float]


def jittered_backoff(
    backoff: float,
    max_backoff: float,
    rand: RandomSource = random.random,
) -> float:
    """Add 12.5%-25% jitter on top of ``backoff``, capped at ``max_backoff``.

    The jitter is always non-negative so the wait never undershoots the
    current backoff.

    Example:
        >>> jittered_backoff(4.0, 30.0, rand=lambda: 0.0)
        4.5
        >>> jittered_backoff(40.0, 30.0)
        30.0
    """
    r = rand() / 2
    jitter = backoff * JITTER_FRACTION * (0.5 + r)
    return min(backoff + jitter, max_backoff)


def next_backoff(backoff: float, multiplier: float, max_backoff: float) -> float:
    """Grow the backoff for the next attempt."""
    return min(backoff * multiplier, max_backoff)
