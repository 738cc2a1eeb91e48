import asyncio

from chartsense.analysis_scheduler import AnalysisScheduler
from chartsense.mode_controller import AdaptiveModeController
from chartsense.signal_lifecycle import SignalLifecycleController
from chartsense.types import (
    ORACLE_FALLBACK_REASONING,
    FeatureSnapshot,
    LifecycleState,
    LogKind,
    Mode,
    Personality,
)
from chartsense.voice import VoiceAnnouncer

from fakes import FakeClock, FakeOracle, blank_frame, confirm, make_frame

FEATURES = FeatureSnapshot.neutral()


def make_scheduler(oracle, clock, is_active=lambda: True, frame=True, generation=lambda: 0):
    modes = AdaptiveModeController(Mode.CONSERVATIVE)
    lifecycle = SignalLifecycleController(
        modes=modes,
        announcer=VoiceAnnouncer(enabled=False),
        is_active=is_active,
        generation=generation,
        clock=clock,
    )
    latest = make_frame(blank_frame()) if frame else None
    return AnalysisScheduler(
        oracle=oracle,
        lifecycle=lifecycle,
        modes=modes,
        frame_provider=lambda: latest,
        personality_provider=lambda: Personality.ULTRON,
        is_active=is_active,
        generation=generation,
        cooldown_sec=100,
        clock=clock,
    )


def test_cooldown_allows_one_call_per_window():
    async def scenario():
        clock = FakeClock()
        oracle = FakeOracle()
        scheduler = make_scheduler(oracle, clock)

        assert scheduler.on_features(FEATURES) is True
        await scheduler.wait_idle()
        assert scheduler.on_features(FEATURES) is False

        clock.advance(50_000)
        assert scheduler.on_features(FEATURES) is False
        assert scheduler.seconds_until_next() == 50

        clock.advance(51_000)
        assert scheduler.on_features(FEATURES) is True
        await scheduler.wait_idle()

        assert len(oracle.calls) == 2

    asyncio.run(scenario())


def test_request_carries_mode_context_and_frame():
    async def scenario():
        oracle = FakeOracle()
        scheduler = make_scheduler(oracle, FakeClock())

        scheduler.on_features(FEATURES)
        await scheduler.wait_idle()

        request = oracle.calls[0]
        assert request.mode is Mode.CONSERVATIVE
        assert request.personality is Personality.ULTRON
        assert request.thresholds == {"min_probability": 60, "max_risk": 85, "min_integrity": 25}
        assert request.frame_b64
        assert request.features is FEATURES

    asyncio.run(scenario())


def test_no_second_call_while_in_flight():
    async def scenario():
        clock = FakeClock()
        oracle = FakeOracle(gated=True)
        scheduler = make_scheduler(oracle, clock)

        assert scheduler.on_features(FEATURES) is True
        await asyncio.sleep(0.05)
        clock.advance(200_000)
        assert scheduler.in_flight is True
        assert scheduler.on_features(FEATURES) is False

        oracle.gate.set()
        await scheduler.wait_idle()

        assert scheduler.in_flight is False
        assert len(oracle.calls) == 1

    asyncio.run(scenario())


def test_oracle_exception_becomes_fallback_entry():
    async def scenario():
        scheduler = make_scheduler(FakeOracle(exc=RuntimeError("socket closed")), FakeClock())

        scheduler.on_features(FEATURES)
        await scheduler.wait_idle()

        entries = scheduler.lifecycle.log.entries()
        assert [e.kind for e in entries] == [LogKind.INFO]
        assert entries[0].message == ORACLE_FALLBACK_REASONING
        assert scheduler.get_stats()["fallbacks"] == 1
        assert scheduler.in_flight is False

    asyncio.run(scenario())


def test_pending_signal_blocks_new_cycles():
    async def scenario():
        clock = FakeClock()
        oracle = FakeOracle(result=confirm())
        scheduler = make_scheduler(oracle, clock)

        scheduler.on_features(FEATURES)
        await scheduler.wait_idle()
        assert scheduler.lifecycle.state is LifecycleState.AWAITING_OUTCOME

        clock.advance(500_000)
        assert scheduler.on_features(FEATURES) is False
        assert len(oracle.calls) == 1

    asyncio.run(scenario())


def test_result_after_deactivation_is_discarded():
    async def scenario():
        active = {"value": True}
        oracle = FakeOracle(result=confirm(), gated=True)
        scheduler = make_scheduler(oracle, FakeClock(), is_active=lambda: active["value"])

        scheduler.on_features(FEATURES)
        await asyncio.sleep(0.05)
        active["value"] = False
        oracle.gate.set()
        await scheduler.wait_idle()

        assert len(scheduler.lifecycle.log) == 0
        assert scheduler.lifecycle.pending_signal is None
        assert scheduler.in_flight is False

    asyncio.run(scenario())


def test_inactive_or_frameless_gate_stays_closed():
    async def scenario():
        inactive = make_scheduler(FakeOracle(), FakeClock(), is_active=lambda: False)
        frameless = make_scheduler(FakeOracle(), FakeClock(), frame=False)

        assert inactive.on_features(FEATURES) is False
        assert frameless.on_features(FEATURES) is False
        assert frameless.last_analysis_ms == 0

    asyncio.run(scenario())


def test_prime_sets_first_scan_delay():
    async def scenario():
        clock = FakeClock()
        scheduler = make_scheduler(FakeOracle(), clock)
        assert scheduler.seconds_until_next() == 0

        scheduler.prime(5)

        assert scheduler.seconds_until_next() == 5
        assert scheduler.on_features(FEATURES) is False
        clock.advance(5_000)
        assert scheduler.seconds_until_next() == 0
        assert scheduler.on_features(FEATURES) is True
        await scheduler.wait_idle()

    asyncio.run(scenario())


def test_result_from_previous_generation_is_discarded():
    async def scenario():
        generation = {"value": 1}
        oracle = FakeOracle(result=confirm(), gated=True)
        scheduler = make_scheduler(oracle, FakeClock(), generation=lambda: generation["value"])

        scheduler.on_features(FEATURES)
        await asyncio.sleep(0.05)
        generation["value"] = 2
        oracle.gate.set()
        await scheduler.wait_idle()

        assert len(scheduler.lifecycle.log) == 0
        assert scheduler.lifecycle.state is LifecycleState.IDLE
        assert scheduler.in_flight is False

    asyncio.run(scenario())


def test_cancel_clears_in_flight_cycle():
    async def scenario():
        clock = FakeClock()
        oracle = FakeOracle(result=confirm(), gated=True)
        scheduler = make_scheduler(oracle, clock)

        scheduler.on_features(FEATURES)
        await asyncio.sleep(0.05)
        scheduler.cancel()
        await scheduler.wait_idle()

        assert scheduler.in_flight is False
        assert scheduler.lifecycle.pending_signal is None
        clock.advance(100_000)
        assert scheduler.on_features(FEATURES) is True
        oracle.gate.set()
        await scheduler.wait_idle()
        assert scheduler.lifecycle.state is LifecycleState.AWAITING_OUTCOME

    asyncio.run(scenario())
