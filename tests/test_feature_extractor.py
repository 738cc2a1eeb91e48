import numpy as np
import pytest

from chartsense.feature_extractor import (
    PRICE_HISTORY_MAXLEN,
    FeatureExtractor,
    PricePeak,
)
from chartsense.types import CandleMorphology, ChartFigure, FeatureSnapshot, Trend

from fakes import SMALL_H, SMALL_W, blank_frame, crop_origin, diamond_counts, diamond_frame


def extract(extractor: FeatureExtractor, pixels: np.ndarray) -> FeatureSnapshot:
    height, width = pixels.shape[:2]
    return extractor.extract(pixels, width, height)


def test_blank_frame_returns_neutral_snapshot():
    extractor = FeatureExtractor()

    snapshot = extract(extractor, blank_frame())

    assert snapshot == FeatureSnapshot.neutral()
    assert len(extractor.state.price_history) == 0
    assert extractor.state.smoothed_price is None


def test_sparse_frame_below_guard_returns_neutral_snapshot():
    pixels = blank_frame()
    x0, y0 = crop_origin(SMALL_W, SMALL_H)
    # 60 columns -> 30 sampled pixels, under the 50 pixel guard
    pixels[y0 + 40, x0 + 20:x0 + 80] = (0, 200, 0)
    extractor = FeatureExtractor()

    snapshot = extract(extractor, pixels)

    assert snapshot == FeatureSnapshot.neutral()
    assert extractor.state.frames_neutral == 1


def test_flat_rgba_bytes_are_accepted():
    rgb = diamond_frame(60)
    rgba = np.concatenate([rgb, np.full(rgb.shape[:2] + (1,), 255, dtype=np.uint8)], axis=2)
    extractor = FeatureExtractor()

    snapshot = extractor.extract(rgba.tobytes(), SMALL_W, SMALL_H)

    assert snapshot.bullish_density > 0
    assert snapshot.buy_pressure == 100.0


def test_price_history_is_bounded():
    extractor = FeatureExtractor()
    frames = [diamond_frame(row) for row in (30, 50, 70, 90)]

    for i in range(PRICE_HISTORY_MAXLEN + 25):
        extract(extractor, frames[i % 4])

    assert len(extractor.state.price_history) == PRICE_HISTORY_MAXLEN


def test_density_map_update_stays_within_bounds():
    extractor = FeatureExtractor()
    rows = [30, 31, 60, 90, 45, 45, 45, 100, 20]

    for row in rows:
        before = extractor.state.density_map.copy()
        extract(extractor, diamond_frame(row))
        after = extractor.state.density_map
        if before.shape != after.shape:
            before = np.zeros_like(after)

        upper = np.maximum(before, diamond_counts(row))
        assert np.all(after >= 0)
        assert np.all(after <= upper + 1e-12)


def test_density_map_resets_when_crop_height_changes():
    extractor = FeatureExtractor()
    extract(extractor, diamond_frame(60))
    assert extractor.state.density_map.shape == (120,)

    extract(extractor, diamond_frame(60, width=200, height=200))

    assert extractor.state.density_map.shape == (160,)


def test_rising_price_is_bullish():
    extractor = FeatureExtractor()
    snapshot = None

    # Rows decreasing = candles moving up the screen
    for row in range(100, 20, -2):
        snapshot = extract(extractor, diamond_frame(row))

    assert snapshot.slope < 0
    assert snapshot.trend is Trend.BULLISH
    assert snapshot.rsi == 100.0
    assert snapshot.is_consolidated is False


def test_falling_price_is_bearish():
    extractor = FeatureExtractor()
    snapshot = None

    for row in range(20, 100, 2):
        snapshot = extract(extractor, diamond_frame(row))

    assert snapshot.slope > 0
    assert snapshot.trend is Trend.BEARISH
    assert snapshot.rsi == 0.0


def test_static_chart_is_consolidated():
    extractor = FeatureExtractor()
    snapshot = None

    for _ in range(40):
        snapshot = extract(extractor, diamond_frame(60))

    assert snapshot.trend is Trend.NEUTRAL
    assert snapshot.slope == 0.0
    assert snapshot.std_dev == 0.0
    assert snapshot.is_consolidated is True
    assert snapshot.manipulation_risk == 12.0
    assert snapshot.flow_integrity == 100.0


def test_zones_capped_and_separated_on_oscillating_chart():
    extractor = FeatureExtractor()
    levels = [20, 45, 70, 95]
    snapshot = None

    for cycle in range(6):
        for level in levels:
            for _ in range(15):
                snapshot = extract(extractor, diamond_frame(level))

    zones = list(snapshot.support_zones) + list(snapshot.resistance_zones)
    assert zones
    assert len(snapshot.support_zones) <= 3
    assert len(snapshot.resistance_zones) <= 3
    for i, a in enumerate(zones):
        for b in zones[i + 1:]:
            assert abs(a - b) >= 5.0


def test_find_zones_keeps_strongest_separated_levels():
    extractor = FeatureExtractor()
    density = np.zeros(200)
    density[50] = 5.0   # 25%  resistance
    density[54] = 4.0   # 27%  too close to 25%
    density[150] = 3.5  # 75%  support
    density[100] = 3.0  # 50%  resistance
    density[30] = 2.0   # 15%  resistance
    density[70] = 1.6   # 35%  resistance, over the per-side cap
    density[120] = 1.0  # under the strength floor
    extractor.state.density_map = density

    support, resistance = extractor._find_zones(200, price_pct=60.0)

    assert support == [75.0]
    assert resistance == [25.0, 50.0, 15.0]


def test_force_candle_on_dominant_solid_body():
    counts = np.zeros(100)
    counts[40:60] = 50
    force = FeatureExtractor._detect_force_candle(counts, bull_pixels=900, bear_pixels=100, total_color=1000)

    assert force.detected is True
    assert force.density_score == 0.9


def test_force_candle_rejected_on_mixed_colors():
    counts = np.zeros(100)
    counts[40:60] = 50
    force = FeatureExtractor._detect_force_candle(counts, bull_pixels=600, bear_pixels=400, total_color=1000)

    assert force.detected is False


def test_force_candle_needs_enough_active_rows():
    counts = np.zeros(100)
    counts[40:50] = 50
    force = FeatureExtractor._detect_force_candle(counts, bull_pixels=500, bear_pixels=0, total_color=500)

    assert force.detected is False
    assert force.density_score == 0.0


def test_morphology_doji():
    counts = np.zeros(60)
    counts[10:31] = 2.0
    counts[19:21] = 10.0

    assert FeatureExtractor._detect_morphology(counts) is CandleMorphology.DOJI


def test_morphology_hammer_and_shooting_star():
    hammer = np.zeros(60)
    hammer[0:21] = 2.0
    hammer[14:20] = 10.0
    assert FeatureExtractor._detect_morphology(hammer) is CandleMorphology.HAMMER

    star = np.zeros(60)
    star[0:21] = 2.0
    star[1:7] = 10.0
    assert FeatureExtractor._detect_morphology(star) is CandleMorphology.SHOOTING_STAR


def test_morphology_normal_body():
    counts = np.zeros(60)
    counts[0:21] = 2.0
    counts[2:19] = 10.0

    assert FeatureExtractor._detect_morphology(counts) is CandleMorphology.NORMAL


def test_peak_tracking_registers_visual_top():
    extractor = FeatureExtractor()
    history = np.array([10, 9, 8, 7, 6, 5, 6, 7, 8, 9, 10], dtype=np.float64)

    extractor._track_peaks(history, ts_ms=123)

    assert list(extractor.state.peaks) == [PricePeak(y=5.0, ts_ms=123, strength=5.0, kind="top")]


def test_peak_tracking_ignores_flat_series():
    extractor = FeatureExtractor()

    extractor._track_peaks(np.full(11, 40.0), ts_ms=1)

    assert len(extractor.state.peaks) == 0


def _with_peaks(*peaks) -> FeatureExtractor:
    extractor = FeatureExtractor()
    for i, (y, kind) in enumerate(peaks):
        extractor.state.peaks.append(PricePeak(y=y, ts_ms=i, strength=1.0, kind=kind))
    return extractor


def test_chart_figure_head_and_shoulders():
    extractor = _with_peaks((30.0, "top"), (20.0, "top"), (30.5, "top"))

    assert extractor._detect_chart_figure() is ChartFigure.HEAD_SHOULDERS


def test_chart_figure_double_top():
    extractor = _with_peaks((40.0, "top"), (30.0, "top"), (30.8, "top"))

    assert extractor._detect_chart_figure() is ChartFigure.DOUBLE_TOP_BOTTOM


def test_chart_figure_triangle():
    extractor = _with_peaks((20.0, "top"), (80.0, "bottom"), (25.0, "top"), (75.0, "bottom"))

    assert extractor._detect_chart_figure() is ChartFigure.TRIANGLE


def test_chart_figure_needs_three_peaks():
    extractor = _with_peaks((30.0, "top"), (30.2, "top"))

    assert extractor._detect_chart_figure() is ChartFigure.NONE


def test_reset_drops_rolling_state():
    extractor = FeatureExtractor()
    for _ in range(5):
        extract(extractor, diamond_frame(60))

    extractor.reset()

    assert len(extractor.state.price_history) == 0
    assert extractor.get_stats()["frames_seen"] == 0


def test_price_proxy_is_percent_of_crop_height():
    counts = diamond_counts(60)

    assert FeatureExtractor._centroid_pct(counts, 120) == pytest.approx(50.0)
    assert FeatureExtractor._centroid_pct(np.zeros(120), 120) == 50.0
    assert FeatureExtractor._centroid_pct(diamond_counts(30), 120) == pytest.approx(25.0)
