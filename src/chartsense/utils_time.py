"""
Time Utilities Module
=====================

Millisecond timestamps used across the capture loop, scheduler and
signal records.
"""

import time
from typing import Callable

# Clock signature accepted by components that need injectable time
Clock = Callable[[], int]


def now_ms() -> int:
    """
    Get current wall-clock timestamp in milliseconds.

    Example:
        >>> ts = now_ms()
        >>> print(ts)  # 1706356800000
    """
    return int(time.time() * 1000)


def ms_to_sec(ts_ms: int) -> float:
    """Convert milliseconds to seconds."""
    return ts_ms / 1000.0


def sec_to_ms(ts_sec: float) -> int:
    """Convert seconds to milliseconds."""
    return int(ts_sec * 1000)


def elapsed_sec(since_ms: int, clock: Clock = now_ms) -> float:
    """
    Seconds elapsed since a millisecond timestamp.

    Args:
        since_ms: Reference timestamp in milliseconds.
        clock: Millisecond clock (defaults to wall clock).

    Returns:
        Elapsed seconds (negative if since_ms lies in the future).
    """
    return ms_to_sec(clock() - since_ms)
