"""
Analysis Scheduler
==================

Throttles oracle analysis cycles.

A cycle fires on a FeatureSnapshot only when:
    - the capture session is active
    - the cooldown since the last cycle elapsed (100s by default)
    - no oracle call is in flight
    - no signal is pending in the lifecycle controller

The timestamp is reset when the cycle STARTS, not when the oracle
answers, so a slow or failing oracle never causes request bursts.

Cycle:
    1. Encode the frame captured at trigger time (JPEG base64)
    2. OracleClient.analyze(...) -> OracleResult (errors -> fallback)
    3. Re-check the active flag and the session generation captured at
       trigger time (a stop/start in between makes the result stale)
    4. SignalLifecycleController.on_decision(...)
"""

import asyncio
import logging
from typing import Callable, Optional

from chartsense.frames import Frame, encode_jpeg_b64
from chartsense.mode_controller import AdaptiveModeController
from chartsense.oracle_client import OracleClient
from chartsense.signal_lifecycle import SignalLifecycleController
from chartsense.types import FeatureSnapshot, OracleRequest, OracleResult, Personality
from chartsense.utils_time import Clock, now_ms, sec_to_ms

logger = logging.getLogger(__name__)

DEFAULT_COOLDOWN_SEC = 100.0
DEFAULT_JPEG_QUALITY = 50


class AnalysisScheduler:
    """
    Cooldown + single-flight gate in front of the oracle.

    Args:
        oracle: Oracle client (analyze() must not raise, but errors are
            converted anyway)
        lifecycle: Receives every decision
        modes: Supplies the mode and threshold context
        frame_provider: Returns the most recent captured frame
        personality_provider: Returns the active personality
        is_active: Returns the session active flag
        generation: Returns the session generation (bumped on every start)
        cooldown_sec: Minimum seconds between cycles
        jpeg_quality: Quality of the frame sent to the oracle
        clock: Millisecond clock
    """

    def __init__(
        self,
        oracle: OracleClient,
        lifecycle: SignalLifecycleController,
        modes: AdaptiveModeController,
        frame_provider: Callable[[], Optional[Frame]],
        personality_provider: Callable[[], Personality],
        is_active: Callable[[], bool],
        generation: Callable[[], int] = lambda: 0,
        cooldown_sec: float = DEFAULT_COOLDOWN_SEC,
        jpeg_quality: int = DEFAULT_JPEG_QUALITY,
        clock: Clock = now_ms,
    ):
        self.oracle = oracle
        self.lifecycle = lifecycle
        self.modes = modes
        self._frame_provider = frame_provider
        self._personality_provider = personality_provider
        self._is_active = is_active
        self._generation = generation
        self.cooldown_sec = cooldown_sec
        self.jpeg_quality = jpeg_quality
        self._clock = clock

        self.last_analysis_ms = 0
        self.in_flight = False
        self._task: Optional[asyncio.Task] = None

        # Statistics
        self._cycles = 0
        self._fallbacks = 0
        self._last_result: Optional[OracleResult] = None

        logger.info(
            "analysis_scheduler_initialized",
            extra={"cooldown_sec": cooldown_sec, "jpeg_quality": jpeg_quality},
        )

    @property
    def cooldown_ms(self) -> int:
        return sec_to_ms(self.cooldown_sec)

    def prime(self, first_scan_delay_sec: float) -> None:
        """Arrange for the next cycle to be allowed first_scan_delay_sec from now."""
        delay_ms = min(sec_to_ms(first_scan_delay_sec), self.cooldown_ms)
        self.last_analysis_ms = self._clock() - (self.cooldown_ms - delay_ms)

    def seconds_until_next(self) -> int:
        """Countdown to the next allowed cycle (0 when never primed)."""
        if self.last_analysis_ms <= 0:
            return 0
        remaining_ms = self.cooldown_ms - (self._clock() - self.last_analysis_ms)
        return max(0, remaining_ms // 1000)

    def on_features(self, snapshot: FeatureSnapshot) -> bool:
        """
        Offer a snapshot to the gate.

        Returns:
            True if an analysis cycle was started.
        """
        if not self._is_active() or self.in_flight or self.lifecycle.has_pending:
            return False

        now = self._clock()
        if now - self.last_analysis_ms < self.cooldown_ms:
            return False

        frame = self._frame_provider()
        if frame is None:
            return False

        self.last_analysis_ms = now
        self.in_flight = True
        self._cycles += 1
        self._task = asyncio.create_task(
            self._run_cycle(snapshot, frame, self._generation()),
            name="analysis_cycle",
        )
        return True

    def _is_current(self, generation: int) -> bool:
        return self._is_active() and self._generation() == generation

    async def _run_cycle(self, snapshot: FeatureSnapshot, frame: Frame, generation: int) -> None:
        personality = self._personality_provider()
        mode = self.modes.mode
        try:
            try:
                frame_b64 = await asyncio.to_thread(encode_jpeg_b64, frame.pixels, self.jpeg_quality)
                request = OracleRequest(
                    features=snapshot,
                    frame_b64=frame_b64,
                    personality=personality,
                    mode=mode,
                    thresholds=self.modes.thresholds().to_dict(),
                    ts_ms=self._clock(),
                )
                logger.info(
                    "oracle_request_sent",
                    extra={
                        "mode": mode.value,
                        "personality": personality.value,
                        "trend": snapshot.trend.value,
                        "frame_kb": round(len(frame_b64) / 1024, 1),
                    },
                )
                result = await self.oracle.analyze(request)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("analysis_oracle_error")
                result = OracleResult.fallback()
                self._fallbacks += 1

            self._last_result = result

            if not self._is_current(generation):
                logger.info(
                    "analysis_result_discarded_stale",
                    extra={"decision": result.decision.value, "generation": generation},
                )
                return

            await self.lifecycle.on_decision(result, snapshot, personality, mode)

        except asyncio.CancelledError:
            logger.info("analysis_cycle_cancelled")
            raise
        except Exception:
            logger.exception("analysis_cycle_error")
        finally:
            # A cancelled cycle may unwind after a newer one started
            if self._task is asyncio.current_task():
                self.in_flight = False

    async def wait_idle(self) -> None:
        """Wait for the current cycle (if any) to finish."""
        task = self._task
        if task is not None and not task.done():
            await asyncio.gather(task, return_exceptions=True)

    def cancel(self) -> None:
        """Cancel an in-flight cycle without waiting for it (session stop)."""
        task = self._task
        if task is not None and not task.done():
            task.cancel()
        self.in_flight = False

    async def close(self) -> None:
        """Cancel an in-flight cycle and wait for it to unwind."""
        task = self._task
        self.cancel()
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    def get_stats(self) -> dict:
        return {
            "cooldown_sec": self.cooldown_sec,
            "in_flight": self.in_flight,
            "last_analysis_ms": self.last_analysis_ms,
            "seconds_until_next": self.seconds_until_next(),
            "cycles": self._cycles,
            "fallbacks": self._fallbacks,
            "last_result": self._last_result.to_dict() if self._last_result else None,
        }
