"""
Feature Extractor
=================

Turns raw chart frames into FeatureSnapshots using pixel color and
geometry only. There is no market feed: "price" is the weighted centroid
of colored candle pixels, measured in percent of the analysed crop height
with 0 at the top of the chart.

Pipeline per frame:
    1. Crop to the inner 90% x 80% of the frame (drop axes and chrome)
    2. Sample every 2nd pixel, classify bullish / bearish by channel dominance
    3. Guard: fewer than 50 classified pixels -> neutral snapshot
    4. Merge per-row counts into the decayed density map (S/R memory)
    5. Centroid -> smoothed price -> bounded price history
    6. Volatility, slope/trend, acceleration, RSI, dispersion
    7. Support/resistance, force candle, morphology, chart figure

Sign convention:
    Rows grow downward. A NEGATIVE slope means the centroid is moving
    toward row 0, i.e. the price is rising: that is BULLISH.

Usage:
    extractor = FeatureExtractor()

    # On each capture tick
    snapshot = extractor.extract(frame.pixels, frame.width, frame.height)
"""

import logging
import math
from collections import deque
from dataclasses import dataclass, field
from typing import Literal, Optional

import numpy as np

from chartsense.frames import FrameBuffer, as_pixel_array
from chartsense.types import CandleMorphology, ChartFigure, FeatureSnapshot, Trend
from chartsense.utils_time import now_ms

logger = logging.getLogger(__name__)

# Crop (fractions of the frame)
CROP_X_START = 0.05
CROP_X_SPAN = 0.90
CROP_Y_START = 0.10
CROP_Y_SPAN = 0.80

# Pixel classification
SAMPLE_STRIDE = 2
DOMINANCE_RATIO = 1.1
CHANNEL_FLOOR = 150  # dominant channel above this...
CHANNEL_CEILING = 100  # ...while the opposite channel stays below this
MIN_CLASSIFIED_PIXELS = 50

# Rolling state
PRICE_HISTORY_MAXLEN = 600
SLOPE_HISTORY_MAXLEN = 100
PEAK_HISTORY_MAXLEN = 20
DENSITY_DECAY = 0.98
DENSITY_GAIN = 0.02
PRICE_SMOOTHING = 0.15
CENTROID_NOISE_FLOOR = 2

# Price-based thresholds below (slope, std, amplitude, velocity scale,
# zone separation, figure tolerances) are in percent of crop height,
# the unit of _centroid_pct, not in pixel rows.

# Volatility
VOL_WINDOW = 30
VELOCITY_LOOKBACK = 10
AMPLITUDE_REF_PCT = 5.0  # 5% of crop height counts as full amplitude
VELOCITY_SCALE = 800.0
LIQUIDITY_REF_RATIO = 0.005
SPIKE_VELOCITY = 75.0
SPIKE_ACCELERATION = 0.015

# Trend / momentum
SLOPE_PERIOD = 120
SLOPE_MIN_POINTS = 20
TREND_SLOPE_THRESHOLD = 0.0008
ACCEL_LOOKBACK = 15
RSI_PERIOD = 14
STD_WINDOW = 50
STD_MIN_POINTS = 5
CONSOLIDATION_SLOPE = 0.0003
CONSOLIDATION_STD = 5.0

# Support / resistance
ZONE_MIN_STRENGTH = 1.5
ZONE_EDGE_ROWS = 10
ZONE_MIN_SEPARATION_PCT = 5.0
ZONE_MAX_CANDIDATES = 10
ZONES_PER_SIDE = 3

# Force candle
FORCE_ACTIVE_DENSITY = 2
FORCE_MIN_ACTIVE_ROWS = 15
FORCE_BODY_FRACTION = 0.65
FORCE_MIN_BODY_ROWS = 10
FORCE_BODY_RATIO = 0.85
FORCE_DOMINANCE = 0.82
FORCE_MIN_PIXELS = 450

# Candle morphology
MORPH_ACTIVE_DENSITY = 1.5
MORPH_MIN_ACTIVE_ROWS = 6
MORPH_CORE_FRACTION = 0.7
DOJI_CORE_RATIO = 0.2
WICK_CORE_RATIO = 0.4
MORPH_EDGE_FRACTION = 1.0 / 3.0

# Peak tracking / chart figures (percent of crop height)
PEAK_HALF_WINDOW = 5
PEAK_MIN_PROMINENCE = 0.5
HS_HEAD_MARGIN = 2.0
HS_SHOULDER_TOLERANCE = 3.0
DOUBLE_TOLERANCE = 1.5

# Manipulation risk
MANIPULATION_STD = 25.0
MANIPULATION_VOLATILITY = 85.0
RISK_HIGH = 80.0
RISK_LOW = 12.0

FORCE_CANDLE_TAG = "force_candle"

PeakKind = Literal["top", "bottom"]


def _clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


# ============================================================
# Rolling state
# ============================================================

@dataclass
class PriceSmoother:
    """
    Fixed-alpha exponential smoother.

    The first observation seeds the value so the series does not ramp
    in from zero.
    """
    alpha: float = PRICE_SMOOTHING
    value: Optional[float] = None

    def update(self, x: float) -> float:
        if self.value is None:
            self.value = float(x)
        else:
            self.value = self.alpha * float(x) + (1.0 - self.alpha) * self.value
        return self.value


@dataclass(slots=True, frozen=True)
class PricePeak:
    """Turning point of the smoothed price series."""
    y: float  # percent of crop height
    ts_ms: int
    strength: float  # prominence in percent
    kind: PeakKind


@dataclass
class RollingState:
    """
    Long-lived memory of one capture session.

    Owned by exactly one FeatureExtractor and only mutated by extract().
    """
    price_history: deque = field(default_factory=lambda: deque(maxlen=PRICE_HISTORY_MAXLEN))
    slope_history: deque = field(default_factory=lambda: deque(maxlen=SLOPE_HISTORY_MAXLEN))
    peaks: deque = field(default_factory=lambda: deque(maxlen=PEAK_HISTORY_MAXLEN))
    density_map: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=np.float64))
    smoother: PriceSmoother = field(default_factory=PriceSmoother)
    frames_seen: int = 0
    frames_neutral: int = 0

    def ensure_height(self, crop_height: int) -> None:
        """Reset the density map when the crop height changes."""
        if self.density_map.shape[0] != crop_height:
            self.density_map = np.zeros(crop_height, dtype=np.float64)

    @property
    def smoothed_price(self) -> Optional[float]:
        return self.smoother.value


@dataclass(slots=True, frozen=True)
class _Volatility:
    score: float
    noise: float
    is_spike: bool


@dataclass(slots=True, frozen=True)
class _ForceCandle:
    detected: bool
    density_score: float


# ============================================================
# Extractor
# ============================================================

class FeatureExtractor:
    """
    Stateful per-session pixel analyzer.

    extract() is synchronous and bounded (vectorized over the sampled
    crop plus O(history) scalar work), so it is safe to call on every
    capture tick.

    Args:
        state: Optional pre-existing RollingState (a fresh one by default)
    """

    def __init__(self, state: Optional[RollingState] = None) -> None:
        self.state = state or RollingState()

    def reset(self) -> None:
        """Drop all rolling memory (new capture session)."""
        self.state = RollingState()

    def extract(
        self,
        frame_buffer: FrameBuffer,
        width: int,
        height: int,
        ts_ms: Optional[int] = None,
    ) -> FeatureSnapshot:
        """
        Analyse one frame.

        Args:
            frame_buffer: RGB(A) pixel array or flat RGBA bytes
            width: Frame width in pixels
            height: Frame height in pixels
            ts_ms: Capture timestamp (used for peak records)

        Returns:
            FeatureSnapshot for the frame, or FeatureSnapshot.neutral() when
            the frame carries too little colored signal.
        """
        ts_ms = now_ms() if ts_ms is None else ts_ms
        state = self.state
        state.frames_seen += 1

        pixels = as_pixel_array(frame_buffer, width, height)

        sx = int(math.floor(width * CROP_X_START))
        sy = int(math.floor(height * CROP_Y_START))
        sw = int(math.floor(width * CROP_X_SPAN))
        sh = int(math.floor(height * CROP_Y_SPAN))
        if sw <= 0 or sh <= 0:
            state.frames_neutral += 1
            return FeatureSnapshot.neutral()

        state.ensure_height(sh)

        # ----------------------------------------
        # 1. Sample + classify
        # ----------------------------------------
        crop = pixels[sy:sy + sh, sx:sx + sw, :3]
        flat = crop.reshape(-1, 3)[::SAMPLE_STRIDE].astype(np.float32)
        rows = np.arange(0, sw * sh, SAMPLE_STRIDE) // sw

        r, g, b = flat[:, 0], flat[:, 1], flat[:, 2]
        is_bull = ((g > r * DOMINANCE_RATIO) & (g > b * DOMINANCE_RATIO)) | (
            (g > CHANNEL_FLOOR) & (r < CHANNEL_CEILING)
        )
        is_bear = ~is_bull & (
            ((r > g * DOMINANCE_RATIO) & (r > b * DOMINANCE_RATIO))
            | ((r > CHANNEL_FLOOR) & (g < CHANNEL_CEILING))
        )

        total_scanned = int(flat.shape[0])
        bull_pixels = int(np.count_nonzero(is_bull))
        bear_pixels = int(np.count_nonzero(is_bear))
        total_color = bull_pixels + bear_pixels

        if total_color < MIN_CLASSIFIED_PIXELS:
            state.frames_neutral += 1
            return FeatureSnapshot.neutral()

        counts = np.bincount(rows[is_bull | is_bear], minlength=sh).astype(np.float64)

        # ----------------------------------------
        # 2. Long-term density memory
        # ----------------------------------------
        state.density_map = state.density_map * DENSITY_DECAY + counts * DENSITY_GAIN

        # ----------------------------------------
        # 3. Price proxy
        # ----------------------------------------
        raw_price = self._centroid_pct(counts, sh)
        price = state.smoother.update(raw_price)
        state.price_history.append(price)
        history = np.fromiter(state.price_history, dtype=np.float64)
        self._track_peaks(history, ts_ms)

        # ----------------------------------------
        # 4. Volatility / momentum
        # ----------------------------------------
        volatility = self._volatility(history, total_color, total_scanned)

        slope = self._slope(history, SLOPE_PERIOD)
        state.slope_history.append(slope)
        acceleration = self._acceleration()
        rsi = self._rsi(history)
        std_dev = self._std_dev(history)

        if slope < -TREND_SLOPE_THRESHOLD:
            trend = Trend.BULLISH
        elif slope > TREND_SLOPE_THRESHOLD:
            trend = Trend.BEARISH
        else:
            trend = Trend.NEUTRAL

        # ----------------------------------------
        # 5. Structure
        # ----------------------------------------
        support, resistance = self._find_zones(sh, price)
        force = self._detect_force_candle(counts, bull_pixels, bear_pixels, total_color)
        morphology = self._detect_morphology(counts)
        figure = self._detect_chart_figure()

        patterns: list[str] = []
        if morphology is not CandleMorphology.NORMAL:
            patterns.append(morphology.value)
        if figure is not ChartFigure.NONE:
            patterns.append(figure.value)
        if force.detected:
            patterns.append(FORCE_CANDLE_TAG)

        price_row = min(sh - 1, max(0, int(price / 100.0 * sh)))
        manipulation_risk = (
            RISK_HIGH
            if std_dev > MANIPULATION_STD or volatility.score > MANIPULATION_VOLATILITY
            else RISK_LOW
        )

        return FeatureSnapshot(
            bullish_density=_clamp(bull_pixels / total_scanned * 100.0),
            bearish_density=_clamp(bear_pixels / total_scanned * 100.0),
            volatility=_clamp(volatility.score),
            is_consolidated=abs(slope) < CONSOLIDATION_SLOPE and std_dev < CONSOLIDATION_STD,
            spike_detected=volatility.is_spike or abs(acceleration) > SPIKE_ACCELERATION,
            command_candle_detected=force.detected,
            rejection_detected=bool(counts[price_row] < 0.2),
            trend=trend,
            buy_pressure=_clamp(bull_pixels / total_color * 100.0),
            sell_pressure=_clamp(bear_pixels / total_color * 100.0),
            support_zones=tuple(support),
            resistance_zones=tuple(resistance),
            manipulation_risk=manipulation_risk,
            slope=slope,
            acceleration=acceleration,
            rsi=_clamp(rsi),
            std_dev=std_dev,
            flow_integrity=_clamp(100.0 - volatility.noise * 2.0),
            price_logic_score=_clamp(force.density_score * 100.0),
            detected_patterns=tuple(patterns),
            chart_figure=figure,
            candle_morphology=morphology,
        )

    # ========================================
    # Price proxy
    # ========================================

    @staticmethod
    def _centroid_pct(counts: np.ndarray, crop_height: int) -> float:
        """Weighted centroid row of non-noise rows, as % of crop height."""
        mask = counts > CENTROID_NOISE_FLOOR
        weight_sum = counts[mask].sum()
        if weight_sum <= 0:
            return 50.0
        centroid_row = float((np.nonzero(mask)[0] * counts[mask]).sum() / weight_sum)
        return centroid_row / crop_height * 100.0

    def _track_peaks(self, history: np.ndarray, ts_ms: int) -> None:
        """
        Register the sample PEAK_HALF_WINDOW steps back as a turning point
        when it is the strict extreme of the surrounding window.
        """
        span = 2 * PEAK_HALF_WINDOW + 1
        if history.shape[0] < span:
            return

        window = history[-span:]
        center = window[PEAK_HALF_WINDOW]
        others = np.delete(window, PEAK_HALF_WINDOW)
        edge_low = min(window[0], window[-1])
        edge_high = max(window[0], window[-1])

        # Visual top: smallest row value in the window
        if center < others.min() and edge_low - center >= PEAK_MIN_PROMINENCE:
            peak = PricePeak(y=float(center), ts_ms=ts_ms, strength=float(edge_low - center), kind="top")
        elif center > others.max() and center - edge_high >= PEAK_MIN_PROMINENCE:
            peak = PricePeak(y=float(center), ts_ms=ts_ms, strength=float(center - edge_high), kind="bottom")
        else:
            return

        self.state.peaks.append(peak)
        logger.debug(
            "price_peak_recorded",
            extra={"y": round(peak.y, 2), "kind": peak.kind, "strength": round(peak.strength, 2)},
        )

    # ========================================
    # Volatility / momentum
    # ========================================

    @staticmethod
    def _volatility(history: np.ndarray, color_pixels: int, scanned_pixels: int) -> _Volatility:
        """
        Amplitude (60%) + velocity (40%), scaled by a liquidity coefficient.

        Charts with almost no colored pixels (blank or stale) get their
        volatility suppressed.
        """
        if history.shape[0] < VOL_WINDOW:
            return _Volatility(score=0.0, noise=0.0, is_spike=False)

        amplitude = float(np.std(history[-VOL_WINDOW:]))
        velocity = abs(history[-1] - history[-VELOCITY_LOOKBACK]) / VELOCITY_LOOKBACK

        pixel_ratio = color_pixels / scanned_pixels if scanned_pixels else 0.0
        liquidity = min(1.0, pixel_ratio / LIQUIDITY_REF_RATIO)

        norm_amplitude = min(100.0, amplitude / AMPLITUDE_REF_PCT * 100.0)
        norm_velocity = min(100.0, velocity * VELOCITY_SCALE)

        score = (norm_amplitude * 0.6 + norm_velocity * 0.4) * liquidity
        return _Volatility(score=score, noise=amplitude, is_spike=norm_velocity > SPIKE_VELOCITY)

    @staticmethod
    def _slope(history: np.ndarray, period: int) -> float:
        """Ordinary least-squares slope over the last min(len, period) points."""
        n = min(history.shape[0], period)
        if n < SLOPE_MIN_POINTS:
            return 0.0
        y = history[-n:]
        x = np.arange(n, dtype=np.float64)
        den = n * float(np.dot(x, x)) - float(x.sum()) ** 2
        if den == 0:
            return 0.0
        return (n * float(np.dot(x, y)) - float(x.sum()) * float(y.sum())) / den

    def _acceleration(self) -> float:
        slopes = self.state.slope_history
        if len(slopes) < ACCEL_LOOKBACK:
            return 0.0
        return (slopes[-1] - slopes[-ACCEL_LOOKBACK]) / ACCEL_LOOKBACK

    @staticmethod
    def _rsi(history: np.ndarray) -> float:
        """
        RSI(14) on the screen-row series.

        A drop of the row value is a visual rise, so it counts as a gain.
        """
        if history.shape[0] <= RSI_PERIOD:
            return 50.0
        deltas = -np.diff(history[-(RSI_PERIOD + 1):])
        gains = float(deltas[deltas > 0].sum())
        losses = float(-deltas[deltas < 0].sum())
        if losses == 0:
            return 100.0
        return 100.0 - 100.0 / (1.0 + gains / losses)

    @staticmethod
    def _std_dev(history: np.ndarray) -> float:
        n = min(history.shape[0], STD_WINDOW)
        if n < STD_MIN_POINTS:
            return 0.0
        return float(np.std(history[-n:]))

    # ========================================
    # Structure
    # ========================================

    def _find_zones(self, crop_height: int, price_pct: float) -> tuple[list[float], list[float]]:
        """
        Support/resistance from local maxima of the decayed density map.

        Strongest maxima win; any kept level blocks others closer than
        ZONE_MIN_SEPARATION_PCT regardless of side.

        Returns:
            (support, resistance), each at most ZONES_PER_SIDE levels in %.
        """
        density = self.state.density_map
        lo, hi = ZONE_EDGE_ROWS, crop_height - ZONE_EDGE_ROWS
        if hi - lo < 1:
            return [], []

        idx = np.arange(lo, hi)
        values = density[idx]
        is_peak = (
            (values > ZONE_MIN_STRENGTH)
            & (values > density[idx - 1])
            & (values > density[idx + 1])
        )
        peak_rows = idx[is_peak]
        order = np.argsort(-density[peak_rows], kind="stable")

        kept: list[float] = []
        support: list[float] = []
        resistance: list[float] = []
        for row in peak_rows[order]:
            level = float(row) / crop_height * 100.0
            if any(abs(level - z) < ZONE_MIN_SEPARATION_PCT for z in kept):
                continue
            kept.append(level)
            if level < price_pct:
                resistance.append(level)
            else:
                support.append(level)
            if len(kept) >= ZONE_MAX_CANDIDATES:
                break

        return support[:ZONES_PER_SIDE], resistance[:ZONES_PER_SIDE]

    @staticmethod
    def _detect_force_candle(
        counts: np.ndarray,
        bull_pixels: int,
        bear_pixels: int,
        total_color: int,
    ) -> _ForceCandle:
        """Body dominating the active span with one-sided color."""
        active = np.nonzero(counts > FORCE_ACTIVE_DENSITY)[0]
        if active.shape[0] < FORCE_MIN_ACTIVE_ROWS:
            return _ForceCandle(detected=False, density_score=0.0)

        total_height = int(active[-1] - active[0])
        max_density = float(counts.max())
        body = active[counts[active] > max_density * FORCE_BODY_FRACTION]
        if body.shape[0] < FORCE_MIN_BODY_ROWS or total_height <= 0:
            return _ForceCandle(detected=False, density_score=0.0)

        body_ratio = int(body[-1] - body[0]) / total_height
        dominance = max(bull_pixels, bear_pixels) / total_color
        detected = (
            body_ratio > FORCE_BODY_RATIO
            and dominance > FORCE_DOMINANCE
            and total_color > FORCE_MIN_PIXELS
        )
        return _ForceCandle(detected=detected, density_score=body_ratio * dominance)

    @staticmethod
    def _detect_morphology(counts: np.ndarray) -> CandleMorphology:
        active = np.nonzero(counts > MORPH_ACTIVE_DENSITY)[0]
        if active.shape[0] < MORPH_MIN_ACTIVE_ROWS:
            return CandleMorphology.NORMAL

        top, bottom = int(active[0]), int(active[-1])
        span = bottom - top
        core = active[counts[active] > float(counts.max()) * MORPH_CORE_FRACTION]
        if core.shape[0] < 2 or span <= 0:
            return CandleMorphology.NORMAL

        core_top, core_bottom = int(core[0]), int(core[-1])
        core_span = core_bottom - core_top

        if core_span < span * DOJI_CORE_RATIO:
            return CandleMorphology.DOJI
        if core_span < span * WICK_CORE_RATIO:
            if core_top < top + span * MORPH_EDGE_FRACTION:
                return CandleMorphology.SHOOTING_STAR
            if core_bottom > bottom - span * MORPH_EDGE_FRACTION:
                return CandleMorphology.HAMMER
        return CandleMorphology.NORMAL

    def _detect_chart_figure(self) -> ChartFigure:
        """
        Figures from the recorded turning points.

        Peaks are compared within their own kind. "Extremity" flips the
        row axis for tops so that a larger value is always further out.
        """
        peaks = list(self.state.peaks)
        if len(peaks) < 3:
            return ChartFigure.NONE

        kind = peaks[-1].kind
        same = [p for p in peaks if p.kind == kind][-3:]

        def extremity(p: PricePeak) -> float:
            return -p.y if p.kind == "top" else p.y

        if len(same) == 3:
            left, head, right = same
            if (
                extremity(head) > extremity(left) + HS_HEAD_MARGIN
                and extremity(head) > extremity(right) + HS_HEAD_MARGIN
                and abs(left.y - right.y) < HS_SHOULDER_TOLERANCE
            ):
                return ChartFigure.HEAD_SHOULDERS

        if len(same) >= 2 and abs(same[-1].y - same[-2].y) < DOUBLE_TOLERANCE:
            return ChartFigure.DOUBLE_TOP_BOTTOM

        tops = [p for p in peaks if p.kind == "top"][-2:]
        bottoms = [p for p in peaks if p.kind == "bottom"][-2:]
        if len(tops) == 2 and len(bottoms) == 2:
            lower_highs = tops[1].y > tops[0].y
            higher_lows = bottoms[1].y < bottoms[0].y
            if lower_highs and higher_lows:
                return ChartFigure.TRIANGLE

        return ChartFigure.NONE

    def get_stats(self) -> dict:
        """Rolling-state summary for debugging and the /state endpoint."""
        state = self.state
        return {
            "frames_seen": state.frames_seen,
            "frames_neutral": state.frames_neutral,
            "price_history_len": len(state.price_history),
            "slope_history_len": len(state.slope_history),
            "peaks": len(state.peaks),
            "crop_height": int(state.density_map.shape[0]),
            "smoothed_price": round(state.smoothed_price, 3) if state.smoothed_price is not None else None,
        }
