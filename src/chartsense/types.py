"""
Type Definitions Module
=======================

Shared value types for the feature pipeline and the signal lifecycle:
closed enums for every categorical field, the immutable FeatureSnapshot,
the Signal record, oracle request/response records and the domain
exception hierarchy.

Schema version: 1.0
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Optional


# Schema version for serialized snapshots and signal records
SCHEMA_VERSION = "1.0"


# ============================================================
# Enums
# ============================================================

class Trend(str, Enum):
    BULLISH = "bullish"
    BEARISH = "bearish"
    NEUTRAL = "neutral"


class ChartFigure(str, Enum):
    TRIANGLE = "triangle"
    HEAD_SHOULDERS = "head_shoulders"
    DOUBLE_TOP_BOTTOM = "double_top_bottom"
    NONE = "none"


class CandleMorphology(str, Enum):
    HAMMER = "hammer"
    SHOOTING_STAR = "shooting_star"
    DOJI = "doji"
    NORMAL = "normal"


class Direction(str, Enum):
    """Direction proposed by the oracle. WAIT never becomes a Signal."""
    BUY = "buy"
    SELL = "sell"
    WAIT = "wait"


class OracleDecision(str, Enum):
    CONFIRM = "confirm"
    REJECT = "reject"


class Mode(str, Enum):
    """Risk mode; each maps to a fixed threshold tuple."""
    CONSERVATIVE = "conservative"
    BALANCED = "balanced"
    AGGRESSIVE = "aggressive"
    HEURISTIC_SAFETY = "heuristic_safety"


class Personality(str, Enum):
    JARVIS = "jarvis"
    ULTRON = "ultron"


class Outcome(str, Enum):
    """Outcome of a Signal. PENDING until the user resolves it."""
    PENDING = "pending"
    WIN = "win"
    LOSS = "loss"
    SKIPPED = "skipped"


class LogKind(str, Enum):
    INFO = "info"
    SIGNAL = "signal"
    SYSTEM = "system"


class CaptureState(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"
    PERMISSION_DENIED = "permission_denied"
    SOURCE_ENDED = "source_ended"


class LifecycleState(str, Enum):
    IDLE = "idle"
    PENDING_VOICE = "pending_voice"
    AWAITING_OUTCOME = "awaiting_outcome"


# ============================================================
# Feature snapshot
# ============================================================

@dataclass(slots=True, frozen=True)
class FeatureSnapshot:
    """
    Immutable per-frame feature set.

    Price-like values (zones, slope, std_dev) are expressed in percent of
    the analysed crop height, with 0 at the top of the chart. A falling
    value therefore means the price is rising on screen.

    Attributes:
        bullish_density: Bullish pixels as % of sampled pixels
        bearish_density: Bearish pixels as % of sampled pixels
        volatility: 0..100 volatility score (liquidity weighted)
        is_consolidated: Flat slope with low dispersion
        spike_detected: Sudden velocity or acceleration burst
        command_candle_detected: Force candle (body dominates, one color)
        rejection_detected: No pixels at the smoothed price row
        trend: Trend category derived from slope
        buy_pressure: Bullish share of colored pixels (0..100)
        sell_pressure: Bearish share of colored pixels (0..100)
        support_zones: Up to 3 support levels (% of height)
        resistance_zones: Up to 3 resistance levels (% of height)
        manipulation_risk: Coarse risk flag (12 or 80, 0 when neutral)
        slope: OLS slope of the smoothed price
        acceleration: Change of slope over 15 samples
        rsi: RSI(14) of the smoothed price
        std_dev: Dispersion of the last 50 price samples
        flow_integrity: 0..100 cleanliness of the price signal
        price_logic_score: 0..100 force-candle quality
        detected_patterns: Pattern tags
        chart_figure: Detected chart figure
        candle_morphology: Detected candle shape
    """
    bullish_density: float
    bearish_density: float
    volatility: float
    is_consolidated: bool
    spike_detected: bool
    command_candle_detected: bool
    rejection_detected: bool
    trend: Trend
    buy_pressure: float
    sell_pressure: float
    support_zones: tuple[float, ...]
    resistance_zones: tuple[float, ...]
    manipulation_risk: float
    slope: float
    acceleration: float
    rsi: float
    std_dev: float
    flow_integrity: float
    price_logic_score: float
    detected_patterns: tuple[str, ...] = field(default_factory=tuple)
    chart_figure: ChartFigure = ChartFigure.NONE
    candle_morphology: CandleMorphology = CandleMorphology.NORMAL

    @classmethod
    def neutral(cls) -> "FeatureSnapshot":
        """Fixed snapshot returned when a frame carries too little signal."""
        return cls(
            bullish_density=0.0,
            bearish_density=0.0,
            volatility=0.0,
            is_consolidated=True,
            spike_detected=False,
            command_candle_detected=False,
            rejection_detected=False,
            trend=Trend.NEUTRAL,
            buy_pressure=50.0,
            sell_pressure=50.0,
            support_zones=(),
            resistance_zones=(),
            manipulation_risk=0.0,
            slope=0.0,
            acceleration=0.0,
            rsi=50.0,
            std_dev=0.0,
            flow_integrity=0.0,
            price_logic_score=0.0,
            detected_patterns=(),
            chart_figure=ChartFigure.NONE,
            candle_morphology=CandleMorphology.NORMAL,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-friendly dictionary."""
        return {
            "bullish_density": round(self.bullish_density, 3),
            "bearish_density": round(self.bearish_density, 3),
            "volatility": round(self.volatility, 2),
            "is_consolidated": self.is_consolidated,
            "spike_detected": self.spike_detected,
            "command_candle_detected": self.command_candle_detected,
            "rejection_detected": self.rejection_detected,
            "trend": self.trend.value,
            "buy_pressure": round(self.buy_pressure, 2),
            "sell_pressure": round(self.sell_pressure, 2),
            "support_zones": [round(z, 2) for z in self.support_zones],
            "resistance_zones": [round(z, 2) for z in self.resistance_zones],
            "manipulation_risk": self.manipulation_risk,
            "slope": round(self.slope, 6),
            "acceleration": round(self.acceleration, 6),
            "rsi": round(self.rsi, 2),
            "std_dev": round(self.std_dev, 3),
            "flow_integrity": round(self.flow_integrity, 2),
            "price_logic_score": round(self.price_logic_score, 2),
            "detected_patterns": list(self.detected_patterns),
            "chart_figure": self.chart_figure.value,
            "candle_morphology": self.candle_morphology.value,
        }


# ============================================================
# Signal lifecycle records
# ============================================================

@dataclass(slots=True, frozen=True)
class Signal:
    """
    Advisory signal created on oracle confirmation.

    The outcome starts as PENDING and is replaced exactly once through
    resolved(); the record itself is never mutated.
    """
    id: str
    direction: Direction
    confidence: float
    integrity_score: float
    manipulation_risk: float
    created_ms: int
    features: FeatureSnapshot
    tags: tuple[str, ...]
    reasoning: str = ""
    outcome: Outcome = Outcome.PENDING

    @property
    def is_resolved(self) -> bool:
        return self.outcome is not Outcome.PENDING

    def resolved(self, outcome: Outcome) -> "Signal":
        """
        Return a copy carrying the terminal outcome.

        Raises:
            SignalAlreadyResolved: If the outcome was already set.
            ValueError: If outcome is PENDING.
        """
        if self.is_resolved:
            raise SignalAlreadyResolved(f"signal {self.id} already resolved as {self.outcome.value}")
        if outcome is Outcome.PENDING:
            raise ValueError("cannot resolve a signal to PENDING")
        return replace(self, outcome=outcome)

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema_version": SCHEMA_VERSION,
            "id": self.id,
            "direction": self.direction.value,
            "confidence": self.confidence,
            "integrity_score": round(self.integrity_score, 2),
            "manipulation_risk": self.manipulation_risk,
            "created_ms": self.created_ms,
            "tags": list(self.tags),
            "reasoning": self.reasoning,
            "outcome": self.outcome.value,
            "features": self.features.to_dict(),
        }


@dataclass(slots=True, frozen=True)
class LogEntry:
    """Entry of the bounded analysis log shown to the user."""
    id: str
    kind: LogKind
    personality: Personality
    message: str
    ts_ms: int
    signal: Optional[Signal] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "personality": self.personality.value,
            "message": self.message,
            "ts_ms": self.ts_ms,
            "signal": self.signal.to_dict() if self.signal else None,
        }


# ============================================================
# Oracle contract
# ============================================================

@dataclass(slots=True, frozen=True)
class OracleRequest:
    """Everything the oracle sees for one analysis cycle."""
    features: FeatureSnapshot
    frame_b64: str
    personality: Personality
    mode: Mode
    thresholds: dict[str, float]
    ts_ms: int


# Reasoning used whenever the oracle cannot produce a usable answer
ORACLE_FALLBACK_REASONING = "WAIT! Oracle link recovering."


@dataclass(slots=True, frozen=True)
class OracleResult:
    """
    Normalized oracle answer.

    A confirmation always carries BUY or SELL; anything else is
    normalized to REJECT/WAIT before the result leaves the client.
    """
    decision: OracleDecision
    direction: Direction
    reasoning: str
    score: float

    @property
    def is_actionable(self) -> bool:
        return self.decision is OracleDecision.CONFIRM and self.direction is not Direction.WAIT

    @classmethod
    def fallback(cls, reasoning: str = ORACLE_FALLBACK_REASONING) -> "OracleResult":
        return cls(
            decision=OracleDecision.REJECT,
            direction=Direction.WAIT,
            reasoning=reasoning,
            score=0.0,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "decision": self.decision.value,
            "direction": self.direction.value,
            "reasoning": self.reasoning,
            "score": self.score,
        }


# ============================================================
# Exceptions
# ============================================================

class ChartsenseError(Exception):
    """Base error for the service."""
    pass


class CaptureError(ChartsenseError):
    """Capture source failure surfaced to the user."""
    state = CaptureState.SOURCE_ENDED


class CapturePermissionError(CaptureError):
    """Capture was refused (no display access, permission denied)."""
    state = CaptureState.PERMISSION_DENIED


class CaptureEndedError(CaptureError):
    """The capture source stopped producing frames."""
    state = CaptureState.SOURCE_ENDED


class OracleError(ChartsenseError):
    """Oracle transport or payload error. Never escapes the oracle client."""
    pass


class LifecycleError(ChartsenseError):
    """Invalid signal lifecycle transition."""
    pass


class NoPendingSignal(LifecycleError):
    pass


class SignalMismatch(LifecycleError):
    pass


class SignalAlreadyResolved(LifecycleError):
    pass
