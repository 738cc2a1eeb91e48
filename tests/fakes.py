"""Synthetic frames and fake collaborators shared by the tests."""

import asyncio
import time
from typing import Optional

import numpy as np

from chartsense.frames import Frame
from chartsense.types import (
    CaptureEndedError,
    Direction,
    OracleDecision,
    OracleResult,
)

GREEN = (0, 200, 0)
RED = (220, 0, 0)

# 200x150 frame -> 180x120 crop starting at (10, 15)
SMALL_W, SMALL_H = 200, 150
# 1200x800 frame -> 1080x640 crop starting at (60, 80)
LARGE_W, LARGE_H = 1200, 800


def crop_origin(width: int, height: int) -> tuple[int, int]:
    return int(width * 0.05), int(height * 0.10)


def block_frame(
    center_row: int,
    width: int = LARGE_W,
    height: int = LARGE_H,
    rows: int = 20,
    col_start: int = 400,
    green_cols: int = 90,
    red_cols: int = 10,
) -> np.ndarray:
    """
    Solid candle block centered on a crop row.

    Columns are laid out green first, then red. With an even crop width
    and an even col_start every second column is sampled, so the sampled
    share of green equals green_cols / (green_cols + red_cols).
    """
    pixels = np.zeros((height, width, 3), dtype=np.uint8)
    x0, y0 = crop_origin(width, height)
    top = y0 + center_row - rows // 2
    left = x0 + col_start
    pixels[top:top + rows, left:left + green_cols] = GREEN
    pixels[top:top + rows, left + green_cols:left + green_cols + red_cols] = RED
    return pixels


def diamond_frame(
    center_row: int,
    width: int = SMALL_W,
    height: int = SMALL_H,
    half_height: int = 5,
    peak_samples: int = 12,
    col_start: int = 60,
) -> np.ndarray:
    """
    Green shape whose per-row sampled count peaks at center_row.

    Row center_row + k carries peak_samples - 2|k| sampled pixels.
    """
    pixels = np.zeros((height, width, 3), dtype=np.uint8)
    x0, y0 = crop_origin(width, height)
    for k in range(-half_height, half_height + 1):
        samples = peak_samples - 2 * abs(k)
        row = y0 + center_row + k
        left = x0 + col_start
        pixels[row, left:left + 2 * samples] = GREEN
    return pixels


def diamond_counts(center_row: int, crop_height: int = 120, half_height: int = 5, peak_samples: int = 12) -> np.ndarray:
    counts = np.zeros(crop_height, dtype=np.float64)
    for k in range(-half_height, half_height + 1):
        counts[center_row + k] = peak_samples - 2 * abs(k)
    return counts


def blank_frame(width: int = SMALL_W, height: int = SMALL_H) -> np.ndarray:
    return np.zeros((height, width, 3), dtype=np.uint8)


def make_frame(pixels: np.ndarray, ts_ms: int = 1_000) -> Frame:
    height, width = pixels.shape[:2]
    return Frame(ts_ms=ts_ms, width=width, height=height, pixels=pixels)


def confirm(direction: Direction = Direction.BUY, reasoning: str = "BUY! Support holding.", score: float = 77.0) -> OracleResult:
    return OracleResult(decision=OracleDecision.CONFIRM, direction=direction, reasoning=reasoning, score=score)


def reject(reasoning: str = "WAIT! No confluence.") -> OracleResult:
    return OracleResult(decision=OracleDecision.REJECT, direction=Direction.WAIT, reasoning=reasoning, score=12.0)


class FakeClock:
    def __init__(self, now: int = 1_000_000):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class FakeOracle:
    """Records requests; optionally blocks on a gate or raises."""

    def __init__(self, result: Optional[OracleResult] = None, exc: Optional[Exception] = None, gated: bool = False):
        self.result = result or reject()
        self.exc = exc
        self.calls = []
        self.gate: Optional[asyncio.Event] = asyncio.Event() if gated else None

    async def analyze(self, request):
        self.calls.append(request)
        if self.gate is not None:
            await self.gate.wait()
        if self.exc is not None:
            raise self.exc
        return self.result


class FakeBackend:
    """Speech backend that records texts; can fail or wait for a gate before starting."""

    def __init__(self, fail: bool = False, gated: bool = False):
        self.fail = fail
        self.spoken = []
        self.gate: Optional[asyncio.Event] = asyncio.Event() if gated else None

    async def speak(self, text, personality, on_started):
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise RuntimeError("backend down")
        self.spoken.append(text)
        on_started()
        await asyncio.sleep(0)


class FakeStore:
    """Records writes in arrival order; persist_signal can be slowed down."""

    def __init__(self, fail: bool = False, signal_delay: float = 0.0):
        self.fail = fail
        self.signal_delay = signal_delay
        self.signals = []
        self.outcomes = []
        self.events = []

    def persist_signal(self, signal):
        time.sleep(self.signal_delay)
        if self.fail:
            raise OSError("disk full")
        self.signals.append(signal)
        self.events.append(("signal", signal.id))
        return True

    def record_outcome(self, signal_id, outcome):
        if self.fail:
            raise OSError("disk full")
        self.outcomes.append((signal_id, outcome))
        self.events.append(("outcome", signal_id))
        return True


class FakeSource:
    """Capture source replaying a fixed frame list (or one frame forever)."""

    def __init__(self, frames=None, repeat: Optional[np.ndarray] = None, open_error: Optional[Exception] = None):
        self.frames = list(frames or [])
        self.repeat = repeat
        self.open_error = open_error
        self.opened = False
        self.closed = False
        self._ts = 0

    def open(self):
        if self.open_error is not None:
            raise self.open_error
        self.opened = True

    def grab(self) -> Frame:
        self._ts += 200
        if self.frames:
            return make_frame(self.frames.pop(0), ts_ms=self._ts)
        if self.repeat is not None:
            return make_frame(self.repeat, ts_ms=self._ts)
        raise CaptureEndedError("replay finished")

    def close(self):
        self.closed = True


async def wait_for(predicate, timeout: float = 3.0, interval: float = 0.01) -> bool:
    """Poll predicate on the event loop until it holds or timeout expires."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return predicate()
