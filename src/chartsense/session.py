"""
Capture Session
===============

Glue between a capture source, the feature extractor, the analysis
scheduler and the signal lifecycle.

Responsibilities:
    - Own the ``active`` flag and the session ``generation``. stop()
      clears the flag synchronously and cancels an in-flight cycle;
      start() bumps the generation. Every oracle/voice continuation
      checks both before touching state, so a result from a previous
      run never lands in a restarted one.
    - Run the capture loop at CAPTURE_FPS, one extract() per tick
    - Surface capture failures as distinct, recoverable states
      (permission_denied / source_ended), retried with start()
    - Route user actions: resolve, mode selection, personality switch

A fresh FeatureExtractor (and RollingState) is created for every
start(), so no rolling memory leaks between sessions.
"""

import asyncio
import logging
from typing import Callable, Optional

from chartsense.analysis_scheduler import AnalysisScheduler
from chartsense.capture import CaptureSource
from chartsense.feature_extractor import FeatureExtractor
from chartsense.frames import Frame
from chartsense.mode_controller import AdaptiveModeController
from chartsense.oracle_client import OracleClient
from chartsense.personality import boot_phrase, outcome_phrase, shutdown_phrase
from chartsense.signal_lifecycle import AnalysisLog, Resolution, SignalLifecycleController
from chartsense.signal_store import SignalStore
from chartsense.types import (
    CaptureError,
    CaptureState,
    FeatureSnapshot,
    LifecycleState,
    Mode,
    Outcome,
    Personality,
)
from chartsense.utils_time import Clock, now_ms
from chartsense.voice import VoiceAnnouncer

logger = logging.getLogger(__name__)

DEFAULT_FPS = 5.0
DEFAULT_FIRST_SCAN_DELAY_SEC = 5.0


class CaptureSession:
    """
    One user-facing analysis session.

    Args:
        source_factory: Builds a new CaptureSource on every start()
        oracle: Oracle client
        announcer: Voice announcer
        store: Optional signal persistence
        modes: Mode controller (a balanced one by default)
        personality: Initial personality
        fps: Capture loop rate
        cooldown_sec: Oracle cooldown
        first_scan_delay_sec: Delay of the first cycle after start()
        jpeg_quality: Quality of frames sent to the oracle
        log_capacity: Analysis log size
        clock: Millisecond clock
    """

    def __init__(
        self,
        source_factory: Callable[[], CaptureSource],
        oracle: OracleClient,
        announcer: VoiceAnnouncer,
        store: Optional[SignalStore] = None,
        modes: Optional[AdaptiveModeController] = None,
        personality: Personality = Personality.JARVIS,
        fps: float = DEFAULT_FPS,
        cooldown_sec: float = 100.0,
        first_scan_delay_sec: float = DEFAULT_FIRST_SCAN_DELAY_SEC,
        jpeg_quality: int = 50,
        log_capacity: int = 15,
        clock: Clock = now_ms,
    ):
        self._source_factory = source_factory
        self.announcer = announcer
        self.store = store
        self.modes = modes or AdaptiveModeController()
        self.personality = personality
        self.fps = fps
        self.first_scan_delay_sec = first_scan_delay_sec
        self._clock = clock

        # Session state
        self.active = False
        self.generation = 0
        self.capture_state = CaptureState.IDLE
        self.last_error: Optional[str] = None
        self.started_ms: Optional[int] = None
        self.frames_processed = 0

        self.extractor: Optional[FeatureExtractor] = None
        self.latest_frame: Optional[Frame] = None
        self.latest_features: Optional[FeatureSnapshot] = None

        self._source: Optional[CaptureSource] = None
        self._task: Optional[asyncio.Task] = None

        self.lifecycle = SignalLifecycleController(
            modes=self.modes,
            announcer=announcer,
            store=store,
            log=AnalysisLog(log_capacity),
            is_active=lambda: self.active,
            generation=lambda: self.generation,
            clock=clock,
        )
        self.scheduler = AnalysisScheduler(
            oracle=oracle,
            lifecycle=self.lifecycle,
            modes=self.modes,
            frame_provider=lambda: self.latest_frame,
            personality_provider=lambda: self.personality,
            is_active=lambda: self.active,
            generation=lambda: self.generation,
            cooldown_sec=cooldown_sec,
            jpeg_quality=jpeg_quality,
            clock=clock,
        )

        logger.info(
            "capture_session_initialized",
            extra={
                "fps": fps,
                "cooldown_sec": cooldown_sec,
                "mode": self.modes.mode.value,
                "personality": personality.value,
            },
        )

    # ========================================
    # Start / stop
    # ========================================

    async def start(self) -> bool:
        """
        Open the capture source and start the capture loop.

        Also the manual retry after a capture failure.

        Returns:
            True if capture is running, False if the source failed
            (see capture_state / last_error).
        """
        if self.active:
            return True

        source = self._source_factory()
        try:
            source.open()
        except CaptureError as e:
            self._fail(e)
            return False

        self._source = source
        self.extractor = FeatureExtractor()
        self.latest_frame = None
        self.latest_features = None
        self.frames_processed = 0
        self.started_ms = self._clock()
        self.last_error = None
        self.capture_state = CaptureState.ACTIVE
        self.generation += 1
        self.active = True

        self.scheduler.prime(self.first_scan_delay_sec)
        self.announcer.announce(boot_phrase(self.personality), self.personality)

        self._task = asyncio.create_task(self._capture_loop(source), name="capture_loop")
        logger.info(
            "capture_started",
            extra={"personality": self.personality.value, "mode": self.modes.mode.value, "generation": self.generation},
        )
        return True

    def stop(self) -> None:
        """User stop. Clears the active flag synchronously."""
        if not self.active:
            return
        self.active = False
        self.capture_state = CaptureState.IDLE

        self.lifecycle.abandon()
        self.scheduler.cancel()
        self.announcer.stop_all()
        self.announcer.announce(shutdown_phrase(self.personality), self.personality)

        if self._task is not None and not self._task.done():
            self._task.cancel()

        logger.info("capture_stopped", extra={"frames_processed": self.frames_processed})

    def _fail(self, error: CaptureError) -> None:
        """Enter an explicit error state; start() is the retry."""
        self.active = False
        self.capture_state = error.state
        self.last_error = str(error)
        self.lifecycle.abandon()
        self.lifecycle.add_system_entry(self.personality, f"Capture error ({error.state.value}): {error}")
        logger.error(
            "capture_error",
            extra={"state": error.state.value, "error": str(error), "error_type": type(error).__name__},
        )

    async def close(self) -> None:
        """Stop capture and wait for the loop and any analysis cycle."""
        self.stop()
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)
        await self.scheduler.close()
        await self.lifecycle.drain()

    # ========================================
    # Capture loop
    # ========================================

    async def _capture_loop(self, source: CaptureSource) -> None:
        interval = 1.0 / self.fps
        loop = asyncio.get_running_loop()
        logger.info("capture_loop_started", extra={"fps": self.fps})

        try:
            while self.active:
                try:
                    tick_start = loop.time()
                    frame = source.grab()
                    if not self.active:
                        break

                    self.process_frame(frame)

                    await asyncio.sleep(max(0.0, interval - (loop.time() - tick_start)))

                except asyncio.CancelledError:
                    break
                except CaptureError as e:
                    self._fail(e)
                    break
                except Exception as e:
                    logger.exception(
                        "capture_loop_error",
                        extra={"error": str(e)},
                    )
                    await asyncio.sleep(interval)
        finally:
            source.close()
            if self._source is source:
                self._source = None

        logger.info("capture_loop_stopped", extra={"frames_processed": self.frames_processed})

    def process_frame(self, frame: Frame) -> FeatureSnapshot:
        """Extract features from one frame and offer them to the scheduler."""
        if self.extractor is None:
            self.extractor = FeatureExtractor()
        snapshot = self.extractor.extract(frame.pixels, frame.width, frame.height, frame.ts_ms)
        self.latest_frame = frame
        self.latest_features = snapshot
        self.frames_processed += 1
        self.scheduler.on_features(snapshot)
        return snapshot

    # ========================================
    # User actions
    # ========================================

    def resolve(self, signal_id: str, outcome: Outcome) -> Resolution:
        """
        Resolve the pending signal and speak the feedback line.

        Raises:
            LifecycleError: On an invalid transition (see SignalLifecycleController.resolve).
        """
        resolution = self.lifecycle.resolve(signal_id, outcome)

        if resolution.mode_change is not None:
            change = resolution.mode_change
            self.lifecycle.add_system_entry(
                self.personality,
                f"Mode {change.previous.value} -> {change.current.value} ({change.reason})",
            )

        phrase = outcome_phrase(self.personality, outcome, resolution.mode_change)
        self.announcer.announce(phrase, self.personality)
        return resolution

    def select_mode(self, mode: Mode) -> None:
        self.modes.select(mode)

    def set_personality(self, personality: Personality) -> None:
        """Switch personality and greet with the new voice."""
        if personality is self.personality:
            return
        self.personality = personality
        self.announcer.announce(boot_phrase(personality), personality)
        logger.info("personality_changed", extra={"personality": personality.value})

    def state_snapshot(self) -> dict:
        pending = self.lifecycle.pending_signal
        return {
            "active": self.active,
            "capture_state": self.capture_state.value,
            "error": self.last_error,
            "lifecycle_state": self.lifecycle.state.value,
            "pending_signal_id": pending.id if pending and self.lifecycle.state is LifecycleState.AWAITING_OUTCOME else None,
            "mode": self.modes.mode.value,
            "prior_mode": self.modes.prior_mode.value,
            "consecutive_losses": self.modes.consecutive_losses,
            "thresholds": self.modes.thresholds().to_dict(),
            "personality": self.personality.value,
            "seconds_until_next_scan": self.scheduler.seconds_until_next() if self.active else None,
            "analysis_in_flight": self.scheduler.in_flight,
            "frames_processed": self.frames_processed,
            "started_ms": self.started_ms,
            "extractor": self.extractor.get_stats() if self.extractor else None,
        }
