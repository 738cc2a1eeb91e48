"""
Adaptive Mode Controller
========================

Risk mode selection driven by signal outcomes.

Rules:
    - LOSS: increment the loss streak. When it reaches 2 and the mode is
      not heuristic_safety, remember the current mode and switch to
      heuristic_safety.
    - WIN: reset the streak; leave heuristic_safety for the remembered mode.
    - SKIPPED: reset the streak only.

The threshold tuple of the current mode travels with every oracle
request as filtering context. The tuples are fixed configuration.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from chartsense.types import Mode, Outcome

logger = logging.getLogger(__name__)

# Absolute caps applied on top of every mode
GLOBAL_MAX_RISK = 98.0
GLOBAL_MIN_INTEGRITY = 5.0

LOSS_STREAK_LIMIT = 2


@dataclass(slots=True, frozen=True)
class ModeThresholds:
    """Filtering context of one mode (probability/risk/integrity in 0..100)."""
    min_probability: float
    max_risk: float
    min_integrity: float

    def capped(self) -> "ModeThresholds":
        """Apply the global ceilings."""
        return ModeThresholds(
            min_probability=self.min_probability,
            max_risk=min(self.max_risk, GLOBAL_MAX_RISK),
            min_integrity=max(self.min_integrity, GLOBAL_MIN_INTEGRITY),
        )

    def to_dict(self) -> dict[str, float]:
        return {
            "min_probability": self.min_probability,
            "max_risk": self.max_risk,
            "min_integrity": self.min_integrity,
        }


MODE_THRESHOLDS: dict[Mode, ModeThresholds] = {
    Mode.CONSERVATIVE: ModeThresholds(min_probability=60, max_risk=85, min_integrity=25),
    Mode.BALANCED: ModeThresholds(min_probability=45, max_risk=92, min_integrity=10),
    Mode.AGGRESSIVE: ModeThresholds(min_probability=25, max_risk=99, min_integrity=0),
    Mode.HEURISTIC_SAFETY: ModeThresholds(min_probability=80, max_risk=50, min_integrity=60),
}


@dataclass(slots=True, frozen=True)
class ModeChange:
    """Automatic mode transition caused by an outcome."""
    previous: Mode
    current: Mode
    reason: str

    def to_dict(self) -> dict[str, str]:
        return {"previous": self.previous.value, "current": self.current.value, "reason": self.reason}


class AdaptiveModeController:
    """
    Loss-streak driven mode switching.

    Args:
        initial_mode: Mode active at startup
    """

    def __init__(self, initial_mode: Mode = Mode.BALANCED):
        self.mode = initial_mode
        self.prior_mode = initial_mode if initial_mode is not Mode.HEURISTIC_SAFETY else Mode.BALANCED
        self.consecutive_losses = 0

        logger.info(
            "mode_controller_initialized",
            extra={"mode": self.mode.value, "prior_mode": self.prior_mode.value},
        )

    def select(self, mode: Mode) -> None:
        """Explicit user selection. A user-picked non-safety mode becomes the restore target."""
        if mode is not Mode.HEURISTIC_SAFETY:
            self.prior_mode = mode
        if mode is not self.mode:
            logger.info("mode_selected", extra={"previous": self.mode.value, "mode": mode.value})
        self.mode = mode

    def on_outcome(self, outcome: Outcome) -> Optional[ModeChange]:
        """
        Feed a resolved outcome.

        Returns:
            ModeChange when the outcome switched the mode, otherwise None.

        Raises:
            ValueError: If outcome is PENDING.
        """
        if outcome is Outcome.PENDING:
            raise ValueError("pending is not a resolved outcome")

        change: Optional[ModeChange] = None

        if outcome is Outcome.LOSS:
            self.consecutive_losses += 1
            if self.consecutive_losses == LOSS_STREAK_LIMIT and self.mode is not Mode.HEURISTIC_SAFETY:
                self.prior_mode = self.mode
                change = ModeChange(previous=self.mode, current=Mode.HEURISTIC_SAFETY, reason="loss_streak")
                self.mode = Mode.HEURISTIC_SAFETY
        elif outcome is Outcome.WIN:
            self.consecutive_losses = 0
            if self.mode is Mode.HEURISTIC_SAFETY:
                change = ModeChange(previous=self.mode, current=self.prior_mode, reason="win_restore")
                self.mode = self.prior_mode
        else:
            self.consecutive_losses = 0

        if change:
            logger.warning("mode_changed", extra=change.to_dict())
        logger.debug(
            "mode_outcome_applied",
            extra={"outcome": outcome.value, "consecutive_losses": self.consecutive_losses, "mode": self.mode.value},
        )
        return change

    def thresholds(self) -> ModeThresholds:
        """Effective thresholds of the current mode, capped by the global ceilings."""
        return MODE_THRESHOLDS[self.mode].capped()

    def get_stats(self) -> dict:
        return {
            "mode": self.mode.value,
            "prior_mode": self.prior_mode.value,
            "consecutive_losses": self.consecutive_losses,
            "thresholds": self.thresholds().to_dict(),
        }
