"""
Signal Lifecycle Controller
===========================

State machine turning oracle decisions into advisory signals.

States:
    IDLE ──confirm──▶ PENDING_VOICE ──voice started──▶ AWAITING_OUTCOME
      ▲                                                      │
      └──────────────────── resolve(win|loss|skipped) ───────┘

Rules:
    - REJECT or WAIT: info entry in the log, reasoning spoken, no Signal
    - CONFIRM: a Signal is built but only surfaced (log entry, resolvable,
      persisted) once the voice announcement has started
    - At most one unresolved signal exists; the scheduler does not fire
      while has_pending is True
    - Every continuation re-checks the session active flag and the
      session generation before it touches the log or the pending signal
    - Store writes run in order: an outcome never reaches the journal
      before its signal

Usage:
    lifecycle = SignalLifecycleController(modes, announcer, store, is_active=lambda: session.active)
    await lifecycle.on_decision(result, features, personality, mode)
    resolution = lifecycle.resolve(signal_id, Outcome.WIN)
"""

import asyncio
import logging
import uuid
from collections import deque
from dataclasses import dataclass
from typing import Callable, Optional

from chartsense.mode_controller import AdaptiveModeController, ModeChange
from chartsense.signal_store import SignalStore
from chartsense.types import (
    FeatureSnapshot,
    LifecycleState,
    LogEntry,
    LogKind,
    Mode,
    NoPendingSignal,
    OracleResult,
    Outcome,
    Personality,
    Signal,
    SignalMismatch,
)
from chartsense.utils_time import Clock, now_ms
from chartsense.voice import VoiceAnnouncer

logger = logging.getLogger(__name__)

DEFAULT_LOG_CAPACITY = 15


# ============================================================
# Analysis log
# ============================================================

class AnalysisLog:
    """
    Bounded newest-first log of analysis results.

    Args:
        capacity: Maximum entries kept; the oldest are dropped
    """

    def __init__(self, capacity: int = DEFAULT_LOG_CAPACITY):
        self.capacity = capacity
        self._entries: deque[LogEntry] = deque(maxlen=capacity)

    def __len__(self) -> int:
        return len(self._entries)

    def append(self, entry: LogEntry) -> None:
        self._entries.appendleft(entry)

    def replace(self, entry: LogEntry) -> bool:
        """Swap the entry with the same id in place. Returns False if it was already evicted."""
        for i, existing in enumerate(self._entries):
            if existing.id == entry.id:
                self._entries[i] = entry
                return True
        return False

    def find_by_signal(self, signal_id: str) -> Optional[LogEntry]:
        for entry in self._entries:
            if entry.signal is not None and entry.signal.id == signal_id:
                return entry
        return None

    def entries(self) -> list[LogEntry]:
        return list(self._entries)

    def to_list(self) -> list[dict]:
        return [e.to_dict() for e in self._entries]


@dataclass(slots=True, frozen=True)
class Resolution:
    """Result of resolving the pending signal."""
    signal: Signal
    mode_change: Optional[ModeChange]

    def to_dict(self) -> dict:
        return {
            "signal": self.signal.to_dict(),
            "mode_change": self.mode_change.to_dict() if self.mode_change else None,
        }


# ============================================================
# Controller
# ============================================================

class SignalLifecycleController:
    """
    Oracle decision -> voice-gated signal -> user outcome.

    Args:
        modes: Mode controller fed with resolved outcomes
        announcer: Voice announcer used for reasoning text
        store: Optional persistence (best-effort)
        log: Analysis log (a fresh one by default)
        is_active: Returns the session active flag
        generation: Returns the session generation (bumped on every start)
        clock: Millisecond clock
    """

    def __init__(
        self,
        modes: AdaptiveModeController,
        announcer: VoiceAnnouncer,
        store: Optional[SignalStore] = None,
        log: Optional[AnalysisLog] = None,
        is_active: Callable[[], bool] = lambda: True,
        generation: Callable[[], int] = lambda: 0,
        clock: Clock = now_ms,
    ):
        self.modes = modes
        self.announcer = announcer
        self.store = store
        self.log = log if log is not None else AnalysisLog()
        self._is_active = is_active
        self._generation = generation
        self._clock = clock

        self.state = LifecycleState.IDLE
        self._pending: Optional[Signal] = None
        self._persist_tasks: set[asyncio.Task] = set()
        self._last_persist: Optional[asyncio.Task] = None

        self._signals_created = 0
        self._signals_surfaced = 0
        self._rejections = 0

        logger.info(
            "signal_lifecycle_initialized",
            extra={"log_capacity": self.log.capacity, "persistence": store is not None},
        )

    @property
    def pending_signal(self) -> Optional[Signal]:
        return self._pending

    @property
    def has_pending(self) -> bool:
        return self.state is not LifecycleState.IDLE

    def _new_entry(
        self,
        kind: LogKind,
        personality: Personality,
        message: str,
        signal: Optional[Signal] = None,
    ) -> LogEntry:
        return LogEntry(
            id=uuid.uuid4().hex[:9],
            kind=kind,
            personality=personality,
            message=message,
            ts_ms=self._clock(),
            signal=signal,
        )

    def add_system_entry(self, personality: Personality, message: str) -> LogEntry:
        """Append a system line (capture errors, mode switches)."""
        entry = self._new_entry(LogKind.SYSTEM, personality, message)
        self.log.append(entry)
        return entry

    async def on_decision(
        self,
        result: OracleResult,
        features: FeatureSnapshot,
        personality: Personality,
        mode: Mode,
    ) -> Optional[Signal]:
        """
        Handle one oracle decision.

        Returns:
            The surfaced Signal, or None (rejection, WAIT, stale result).
        """
        if not self._is_active():
            logger.info("decision_discarded_inactive", extra={"decision": result.decision.value})
            return None
        generation = self._generation()

        if not result.is_actionable:
            self._rejections += 1
            self.log.append(self._new_entry(LogKind.INFO, personality, result.reasoning))
            self.announcer.announce(result.reasoning, personality)
            logger.info(
                "decision_rejected",
                extra={"direction": result.direction.value, "score": result.score, "mode": mode.value},
            )
            return None

        if self.state is not LifecycleState.IDLE:
            logger.warning(
                "decision_ignored_busy",
                extra={"state": self.state.value, "pending_id": self._pending.id if self._pending else None},
            )
            return None

        created_ms = self._clock()
        signal = Signal(
            id=f"SIG-{created_ms}",
            direction=result.direction,
            confidence=result.score,
            integrity_score=features.flow_integrity,
            manipulation_risk=features.manipulation_risk,
            created_ms=created_ms,
            features=features,
            tags=(personality.value, mode.value),
            reasoning=result.reasoning,
        )
        self._pending = signal
        self.state = LifecycleState.PENDING_VOICE
        self._signals_created += 1

        logger.info(
            "signal_created",
            extra={"signal_id": signal.id, "direction": signal.direction.value, "confidence": signal.confidence},
        )

        # Signal reasoning waits for a running line instead of being dropped
        announcement = self.announcer.announce(result.reasoning, personality, wait_if_busy=True)
        await announcement.started

        stale = not self._is_active() or self._generation() != generation
        if stale or self._pending is not signal:
            if self._pending is signal:
                self._pending = None
                self.state = LifecycleState.IDLE
            logger.info("signal_discarded_stale", extra={"signal_id": signal.id})
            return None

        self.state = LifecycleState.AWAITING_OUTCOME
        self.log.append(self._new_entry(LogKind.SIGNAL, personality, result.reasoning, signal))
        self._signals_surfaced += 1
        if self.store is not None:
            self._persist(self.store.persist_signal, signal)

        logger.info(
            "signal_surfaced",
            extra={
                "signal_id": signal.id,
                "direction": signal.direction.value,
                "deduplicated": announcement.deduplicated,
                "dropped": announcement.dropped,
            },
        )
        return signal

    def resolve(self, signal_id: str, outcome: Outcome) -> Resolution:
        """
        Apply the user's outcome to the pending signal.

        Raises:
            NoPendingSignal: If no signal awaits an outcome.
            SignalMismatch: If signal_id is not the pending signal.
            SignalAlreadyResolved: If the signal already carries an outcome.
            ValueError: If outcome is PENDING.
        """
        pending = self._pending
        if self.state is not LifecycleState.AWAITING_OUTCOME or pending is None:
            raise NoPendingSignal(f"no signal awaiting outcome (state={self.state.value})")
        if pending.id != signal_id:
            raise SignalMismatch(f"pending signal is {pending.id}, got {signal_id}")

        resolved = pending.resolved(outcome)

        entry = self.log.find_by_signal(signal_id)
        if entry is not None:
            self.log.replace(LogEntry(
                id=entry.id,
                kind=entry.kind,
                personality=entry.personality,
                message=entry.message,
                ts_ms=entry.ts_ms,
                signal=resolved,
            ))

        self._pending = None
        self.state = LifecycleState.IDLE

        if self.store is not None:
            self._persist(self.store.record_outcome, signal_id, outcome)

        change = self.modes.on_outcome(outcome)

        logger.info(
            "signal_resolved",
            extra={
                "signal_id": signal_id,
                "outcome": outcome.value,
                "mode": self.modes.mode.value,
                "consecutive_losses": self.modes.consecutive_losses,
            },
        )
        return Resolution(signal=resolved, mode_change=change)

    def abandon(self) -> Optional[Signal]:
        """
        Drop a signal still waiting for its voice rendezvous (session stop).

        A signal already awaiting its outcome stays resolvable.
        """
        if self.state is not LifecycleState.PENDING_VOICE:
            return None
        signal, self._pending = self._pending, None
        self.state = LifecycleState.IDLE
        logger.info("signal_abandoned", extra={"signal_id": signal.id if signal else None})
        return signal

    def _persist(self, fn: Callable, *args) -> None:
        """Queue a store call behind the previous one, without waiting for it."""
        task = asyncio.create_task(
            self._write_after(self._last_persist, fn, *args),
            name=f"persist_{fn.__name__}",
        )
        self._last_persist = task
        self._persist_tasks.add(task)
        task.add_done_callback(self._on_persist_done)

    @staticmethod
    async def _write_after(previous: Optional[asyncio.Task], fn: Callable, *args):
        if previous is not None and not previous.done():
            # wait() neither raises the previous error nor cancels it
            await asyncio.wait([previous])
        return await asyncio.to_thread(fn, *args)

    def _on_persist_done(self, task: asyncio.Task) -> None:
        self._persist_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "signal_persist_error",
                extra={"error": str(exc), "error_type": type(exc).__name__, "task": task.get_name()},
            )

    async def drain(self) -> None:
        """Wait for outstanding persistence writes."""
        if self._persist_tasks:
            await asyncio.gather(*list(self._persist_tasks), return_exceptions=True)

    def get_stats(self) -> dict:
        return {
            "state": self.state.value,
            "pending_id": self._pending.id if self._pending else None,
            "signals_created": self._signals_created,
            "signals_surfaced": self._signals_surfaced,
            "rejections": self._rejections,
            "log_size": len(self.log),
        }
