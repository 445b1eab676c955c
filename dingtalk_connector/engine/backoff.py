"""Reconnect backoff.

Exponential delay with a cap and symmetric jitter:

    base  = min(initial * 2**attempt, max)
    delay = base + uniform(-1, 1) * base * jitter

All values in milliseconds.
"""

import random
from typing import Callable


def compute_reconnect_delay(
    attempt: int,
    initial: int,
    maximum: int,
    jitter: float,
    rand: Callable[[float, float], float] = random.uniform,
) -> float:
    """Delay before reconnect attempt ``attempt`` (zero-based).

    Args:
        attempt: Failed attempts so far.
        initial: First delay (ms).
        maximum: Cap before jitter (ms).
        jitter: Fraction in [0, 1].
        rand: ``uniform(a, b)``; injectable for tests.

    Returns:
        Delay in milliseconds, never negative.
    """
    # 2**attempt 在 attempt 很大时会溢出 float，先夹住指数
    exponent = min(max(attempt, 0), 62)
    base = min(initial * (2 ** exponent), maximum)
    delay = base + rand(-1.0, 1.0) * base * jitter
    return max(0.0, delay)
