import asyncio
import wave

from chartsense.types import Personality
from chartsense.voice import GeminiTtsBackend, VoiceAnnouncer

from fakes import FakeBackend


def test_same_text_is_not_spoken_twice():
    async def scenario():
        backend = FakeBackend()
        announcer = VoiceAnnouncer(primary=backend)

        first = announcer.announce("BUY! Support holding.", Personality.JARVIS)
        await first.finished
        second = announcer.announce("BUY! Support holding.", Personality.JARVIS)

        assert second.deduplicated is True
        assert second.started.done()
        assert backend.spoken == ["BUY! Support holding."]
        assert first.backend == "FakeBackend"

    asyncio.run(scenario())


def test_request_while_busy_is_dropped():
    async def scenario():
        backend = FakeBackend(gated=True)
        announcer = VoiceAnnouncer(primary=backend)

        first = announcer.announce("first line", Personality.JARVIS)
        await asyncio.sleep(0)
        second = announcer.announce("second line", Personality.JARVIS)

        assert second.dropped is True
        assert second.started.done()
        assert not first.started.done()

        backend.gate.set()
        await first.finished
        assert backend.spoken == ["first line"]
        assert announcer.busy is False

    asyncio.run(scenario())


def test_waiting_request_is_spoken_after_running_line():
    async def scenario():
        backend = FakeBackend(gated=True)
        announcer = VoiceAnnouncer(primary=backend)

        first = announcer.announce("boot phrase", Personality.JARVIS)
        await asyncio.sleep(0)
        second = announcer.announce("BUY! Support holding.", Personality.JARVIS, wait_if_busy=True)
        await asyncio.sleep(0.01)

        assert second.dropped is False
        assert not second.started.done()

        backend.gate.set()
        await first.finished
        await asyncio.wait_for(second.finished, timeout=1.0)

        assert backend.spoken == ["boot phrase", "BUY! Support holding."]
        assert second.spoken is True
        assert announcer.busy is False
        assert announcer.get_stats()["queued"] == 1

    asyncio.run(scenario())


def test_stop_all_releases_queued_requests():
    async def scenario():
        backend = FakeBackend(gated=True)
        announcer = VoiceAnnouncer(primary=backend)

        announcer.announce("boot phrase", Personality.JARVIS)
        await asyncio.sleep(0)
        queued = announcer.announce("SELL! Breakdown.", Personality.ULTRON, wait_if_busy=True)

        announcer.stop_all()

        assert queued.dropped is True
        assert queued.started.done()
        backend.gate.set()
        await asyncio.sleep(0.01)
        assert backend.spoken == ["boot phrase"]
        assert announcer.busy is False

    asyncio.run(scenario())


def test_fallback_used_when_primary_fails():
    async def scenario():
        primary = FakeBackend(fail=True)
        fallback = FakeBackend()
        announcer = VoiceAnnouncer(primary=primary, fallback=fallback)

        ann = announcer.announce("Technical divergence detected.", Personality.JARVIS)
        await ann.finished

        assert fallback.spoken == ["Technical divergence detected."]
        assert ann.backend == "FakeBackend"
        assert announcer.get_stats()["fallbacks"] == 1

    asyncio.run(scenario())


def test_started_resolves_when_every_backend_fails():
    async def scenario():
        announcer = VoiceAnnouncer(primary=FakeBackend(fail=True), fallback=FakeBackend(fail=True))

        ann = announcer.announce("SELL! Resistance rejected.", Personality.ULTRON)
        await asyncio.wait_for(ann.started, timeout=1.0)
        await ann.finished

        assert ann.spoken is False
        assert announcer.busy is False

    asyncio.run(scenario())


def test_disabled_announcer_resolves_immediately():
    async def scenario():
        backend = FakeBackend()
        announcer = VoiceAnnouncer(primary=backend, enabled=False)

        ann = announcer.announce("Systems online.", Personality.JARVIS)

        assert ann.started.done()
        assert ann.finished.done()
        assert backend.spoken == []
        assert announcer.last_text == "Systems online."

    asyncio.run(scenario())


def test_stop_all_clears_dedup_memory():
    async def scenario():
        backend = FakeBackend()
        announcer = VoiceAnnouncer(primary=backend)

        await announcer.announce("Deactivating protocols.", Personality.JARVIS).finished
        announcer.stop_all()
        again = announcer.announce("Deactivating protocols.", Personality.JARVIS)
        await again.finished

        assert again.deduplicated is False
        assert backend.spoken == ["Deactivating protocols.", "Deactivating protocols."]

    asyncio.run(scenario())


def test_gemini_backend_without_key_falls_back():
    async def scenario():
        fallback = FakeBackend()
        announcer = VoiceAnnouncer(primary=GeminiTtsBackend(api_key=""), fallback=fallback)

        ann = announcer.announce("Ending domination.", Personality.ULTRON)
        await ann.finished
        await announcer.close()

        assert fallback.spoken == ["Ending domination."]

    asyncio.run(scenario())


def test_write_wav_uses_mono_16bit_24khz(tmp_path):
    path = tmp_path / "line.wav"
    pcm = b"\x00\x01" * 2400

    GeminiTtsBackend.write_wav(pcm, str(path))

    with wave.open(str(path), "rb") as wav:
        assert wav.getnchannels() == 1
        assert wav.getsampwidth() == 2
        assert wav.getframerate() == 24000
        assert wav.getnframes() == 2400
