"""Capped exponential backoff with multiplicative jitter."""

from __future__ import annotations

import random
from collections.abc import Callable


def compute_delay(
    attempt: int,
    base: float,
    cap: float,
    jitter: float = 0.0,
    rand: Callable[[], float] = random.random,
) -> float:
    """Delay before retry number ``attempt`` (0-based).

    The result lies in ``[min(base * 2**attempt, cap), min(base * 2**attempt * (1 + jitter), cap)]``.
    With ``jitter <= 1`` the jittered value never exceeds the next un-jittered
    step, so delays are non-decreasing in ``attempt`` for any random draws.
    """
    if attempt < 0:
        raise ValueError("attempt must be >= 0")
    if not 0.0 <= jitter <= 1.0:
        raise ValueError("jitter must be within [0, 1]")
    # Clamp the exponent so large attempt counts cannot overflow.
    raw = base * (2 ** min(attempt, 64))
    if raw >= cap:
        return cap
    return min(raw * (1.0 + jitter * rand()), cap)

