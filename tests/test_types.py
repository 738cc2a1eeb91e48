import base64
import io
import json
import logging

import numpy as np
import pytest
from PIL import Image

from chartsense.config import Settings
from chartsense.frames import as_pixel_array, encode_jpeg_b64
from chartsense.logging_setup import JsonFormatter
from chartsense.mode_controller import ModeChange
from chartsense.personality import SKIPPED_PHRASE, outcome_phrase
from chartsense.types import (
    Direction,
    FeatureSnapshot,
    Mode,
    OracleResult,
    Outcome,
    Personality,
    Signal,
    SignalAlreadyResolved,
)


def make_signal() -> Signal:
    return Signal(
        id="SIG-1",
        direction=Direction.SELL,
        confidence=64.0,
        integrity_score=90.0,
        manipulation_risk=12.0,
        created_ms=1,
        features=FeatureSnapshot.neutral(),
        tags=("ultron", "aggressive"),
    )


def test_signal_outcome_is_set_once():
    signal = make_signal()

    resolved = signal.resolved(Outcome.SKIPPED)

    assert signal.outcome is Outcome.PENDING
    assert resolved.outcome is Outcome.SKIPPED
    with pytest.raises(SignalAlreadyResolved):
        resolved.resolved(Outcome.WIN)


def test_neutral_snapshot_serializes():
    data = FeatureSnapshot.neutral().to_dict()

    assert data["trend"] == "neutral"
    assert data["buy_pressure"] == 50.0
    assert data["support_zones"] == []
    assert json.dumps(data)


def test_fallback_result_is_not_actionable():
    result = OracleResult.fallback()

    assert not result.is_actionable
    assert result.direction is Direction.WAIT


def test_outcome_phrases():
    to_safety = ModeChange(previous=Mode.BALANCED, current=Mode.HEURISTIC_SAFETY, reason="loss_streak")
    restored = ModeChange(previous=Mode.HEURISTIC_SAFETY, current=Mode.BALANCED, reason="win_restore")

    assert outcome_phrase(Personality.JARVIS, Outcome.WIN, None) == "Excellent execution, Sir."
    assert outcome_phrase(Personality.ULTRON, Outcome.LOSS, None) == "Unforeseen biological variable."
    assert outcome_phrase(Personality.ULTRON, Outcome.SKIPPED, None) == SKIPPED_PHRASE
    assert "heuristic safety" in outcome_phrase(Personality.JARVIS, Outcome.LOSS, to_safety)
    assert outcome_phrase(Personality.ULTRON, Outcome.WIN, restored) == "Order restored. Reactivating full force."


def test_flat_buffer_size_is_checked():
    with pytest.raises(ValueError):
        as_pixel_array(b"\x00" * 10, 4, 4)

    pixels = as_pixel_array(b"\x00" * 64, 4, 4)
    assert pixels.shape == (4, 4, 4)


def test_jpeg_encoding_round_trips_dimensions():
    pixels = np.zeros((30, 40, 4), dtype=np.uint8)

    encoded = encode_jpeg_b64(pixels, quality=50)

    with Image.open(io.BytesIO(base64.b64decode(encoded))) as image:
        assert image.format == "JPEG"
        assert image.size == (40, 30)


def test_settings_accept_uppercase_enums(monkeypatch):
    monkeypatch.setenv("DEFAULT_MODE", "Conservative")
    monkeypatch.setenv("DEFAULT_PERSONALITY", "ULTRON")
    monkeypatch.setenv("ORACLE_API_KEY", "secret")

    settings = Settings()

    assert settings.DEFAULT_MODE is Mode.CONSERVATIVE
    assert settings.DEFAULT_PERSONALITY is Personality.ULTRON
    assert settings.dump()["oracle_enabled"] is True
    assert "secret" not in json.dumps(settings.dump())


def test_json_formatter_flattens_extra_fields():
    record = logging.LogRecord("chartsense.test", logging.INFO, __file__, 1, "mode_changed", None, None)
    record.previous = Mode.BALANCED
    record.tags = ("jarvis", "balanced")
    record.rows = np.int64(42)

    data = json.loads(JsonFormatter().format(record))

    assert data["message"] == "mode_changed"
    assert data["level"] == "INFO"
    assert data["logger"] == "chartsense.test"
    assert data["previous"] == "balanced"
    assert data["tags"] == ["jarvis", "balanced"]
    assert data["rows"] == 42
