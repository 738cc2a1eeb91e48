"""
Voice Announcer
===============

Speaks oracle reasoning and feedback lines.

Contract:
    announce(text, personality) returns an Announcement right away. Its
    ``started`` future resolves when audio begins (or when speaking is
    impossible), ``finished`` when playback is over. ``started`` ALWAYS
    resolves: the signal lifecycle waits on it before surfacing a signal.

    - The same text is never spoken twice in a row (dedup on last text);
      a duplicate resolves immediately with ``deduplicated=True``.
    - One announcement at a time. A request while busy resolves
      immediately with ``dropped=True``, unless it is made with
      ``wait_if_busy=True`` (signal reasoning): then it is queued and
      spoken right after the running line.

Backends:
    - GeminiTtsBackend: remote TTS (aiohttp) -> WAV file -> player command
    - Pyttsx3Backend: local engine in a worker thread (fallback)

Usage:
    announcer = VoiceAnnouncer(primary=GeminiTtsBackend(api_key), fallback=Pyttsx3Backend())
    ann = announcer.announce("BUY! Support holding.", Personality.JARVIS)
    await ann.started
"""

import asyncio
import base64
import logging
import os
import shlex
import tempfile
import wave
from collections import deque
from typing import Callable, Optional, Protocol

import aiohttp
import orjson
import pyttsx3

from chartsense.personality import SPEAKING_STYLES
from chartsense.types import Personality

logger = logging.getLogger(__name__)

TTS_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
TTS_MODEL = "gemini-2.5-flash-preview-tts"
TTS_TIMEOUT = 30  # seconds
TTS_SAMPLE_RATE = 24000
TTS_SAMPLE_WIDTH = 2  # 16-bit PCM
TTS_CHANNELS = 1

DEFAULT_VOICES: dict[Personality, str] = {
    Personality.JARVIS: "Kore",
    Personality.ULTRON: "Charon",
}

# pyttsx3 rate/pitch stand-ins for the two personalities
LOCAL_RATES: dict[Personality, int] = {
    Personality.JARVIS: 180,
    Personality.ULTRON: 140,
}


class SpeechBackend(Protocol):
    """Speaks text; calls on_started once audio begins."""

    async def speak(self, text: str, personality: Personality, on_started: Callable[[], None]) -> None:
        ...


class Announcement:
    """
    Rendezvous for one speak request.

    Attributes:
        started: Future resolved when audio begins (always resolves)
        finished: Future resolved when playback is over (always resolves)
        deduplicated: Text equal to the last spoken text, nothing played
        dropped: Another announcement was in flight, nothing played
    """

    def __init__(self, text: str, personality: Personality):
        loop = asyncio.get_running_loop()
        self.text = text
        self.personality = personality
        self.started: asyncio.Future = loop.create_future()
        self.finished: asyncio.Future = loop.create_future()
        self.deduplicated = False
        self.dropped = False
        self.backend: Optional[str] = None

    def mark_started(self) -> None:
        if not self.started.done():
            self.started.set_result(None)

    def mark_finished(self) -> None:
        self.mark_started()
        if not self.finished.done():
            self.finished.set_result(None)

    @property
    def spoken(self) -> bool:
        return self.backend is not None


# ============================================================
# Backends
# ============================================================

class GeminiTtsBackend:
    """
    Remote TTS through the Gemini generateContent audio modality.

    The returned 24 kHz 16-bit mono PCM is written to a temporary WAV
    file and played with an external player command.

    Args:
        api_key: Gemini API key
        model: TTS model
        voices: Prebuilt voice per personality
        player_cmd: Player command line; the WAV path is appended
        base_url: REST base URL
        timeout: Synthesis timeout in seconds
    """

    def __init__(
        self,
        api_key: str,
        model: str = TTS_MODEL,
        voices: Optional[dict[Personality, str]] = None,
        player_cmd: str = "aplay -q",
        base_url: str = TTS_BASE_URL,
        timeout: float = TTS_TIMEOUT,
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._voices = voices or dict(DEFAULT_VOICES)
        self._player = shlex.split(player_cmd)
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout),
                headers={"Content-Type": "application/json"},
            )
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    async def synthesize(self, text: str, personality: Personality) -> bytes:
        """
        Fetch raw PCM for text.

        Raises:
            RuntimeError: If the key is missing or the response has no audio.
            aiohttp.ClientError: On transport failures.
        """
        if not self._api_key:
            raise RuntimeError("tts api key not configured")

        body = {
            "contents": [{"parts": [{"text": f"{SPEAKING_STYLES[personality]} Text to read: {text}"}]}],
            "generationConfig": {
                "responseModalities": ["AUDIO"],
                "speechConfig": {
                    "voiceConfig": {"prebuiltVoiceConfig": {"voiceName": self._voices[personality]}},
                },
            },
        }
        session = await self._ensure_session()
        url = f"{self._base_url}/models/{self._model}:generateContent"
        async with session.post(url, params={"key": self._api_key}, data=orjson.dumps(body)) as response:
            if response.status != 200:
                text_body = await response.text()
                raise RuntimeError(f"tts error {response.status}: {text_body[:200]}")
            payload = await response.json(content_type=None)

        try:
            data = payload["candidates"][0]["content"]["parts"][0]["inlineData"]["data"]
        except (KeyError, IndexError, TypeError):
            raise RuntimeError("tts response without audio")
        return base64.b64decode(data)

    @staticmethod
    def write_wav(pcm: bytes, path: str) -> None:
        with wave.open(path, "wb") as wav:
            wav.setnchannels(TTS_CHANNELS)
            wav.setsampwidth(TTS_SAMPLE_WIDTH)
            wav.setframerate(TTS_SAMPLE_RATE)
            wav.writeframes(pcm)

    async def speak(self, text: str, personality: Personality, on_started: Callable[[], None]) -> None:
        pcm = await self.synthesize(text, personality)

        fd, path = tempfile.mkstemp(prefix="chartsense_tts_", suffix=".wav")
        os.close(fd)
        try:
            self.write_wav(pcm, path)
            proc = await asyncio.create_subprocess_exec(
                *self._player, path,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
            on_started()
            returncode = await proc.wait()
            if returncode != 0:
                raise RuntimeError(f"player exited with {returncode}")
        finally:
            try:
                os.remove(path)
            except OSError:
                pass


class Pyttsx3Backend:
    """Local offline speech through pyttsx3, run in a worker thread."""

    def __init__(self, rates: Optional[dict[Personality, int]] = None) -> None:
        self._rates = rates or dict(LOCAL_RATES)

    def _say(self, text: str, personality: Personality) -> None:
        engine = pyttsx3.init()
        engine.setProperty("rate", self._rates[personality])
        engine.say(text)
        engine.runAndWait()
        engine.stop()

    async def speak(self, text: str, personality: Personality, on_started: Callable[[], None]) -> None:
        on_started()
        await asyncio.to_thread(self._say, text, personality)


# ============================================================
# Announcer
# ============================================================

class VoiceAnnouncer:
    """
    Single-flight, deduplicating speech front end.

    Args:
        primary: Preferred backend (None: go straight to the fallback)
        fallback: Backend used when the primary fails
        enabled: When False every announcement resolves immediately
    """

    def __init__(
        self,
        primary: Optional[SpeechBackend] = None,
        fallback: Optional[SpeechBackend] = None,
        enabled: bool = True,
    ) -> None:
        self._primary = primary
        self._fallback = fallback
        self.enabled = enabled

        self.last_text = ""
        self.busy = False
        self._tasks: set[asyncio.Task] = set()
        self._queue: deque[Announcement] = deque()

        self._spoken = 0
        self._deduplicated = 0
        self._dropped = 0
        self._queued = 0
        self._fallbacks = 0

        logger.info(
            "voice_announcer_initialized",
            extra={
                "enabled": enabled,
                "primary": type(primary).__name__ if primary else None,
                "fallback": type(fallback).__name__ if fallback else None,
            },
        )

    def announce(self, text: str, personality: Personality, wait_if_busy: bool = False) -> Announcement:
        """
        Request speech of text. Must be called from the event loop.

        Args:
            text: Line to speak
            personality: Voice to use
            wait_if_busy: Queue behind a running line instead of dropping

        Returns:
            Announcement whose futures resolve as playback progresses.
        """
        ann = Announcement(text, personality)

        if not text or text == self.last_text:
            ann.deduplicated = True
            self._deduplicated += 1
            ann.mark_finished()
            return ann

        if self.busy:
            if wait_if_busy:
                self.last_text = text
                self._queue.append(ann)
                self._queued += 1
                logger.debug("voice_queued_busy", extra={"chars": len(text), "queue": len(self._queue)})
                return ann
            ann.dropped = True
            self._dropped += 1
            logger.debug("voice_dropped_busy", extra={"chars": len(text)})
            ann.mark_finished()
            return ann

        if not self.enabled:
            self.last_text = text
            ann.mark_finished()
            return ann

        self.last_text = text
        self._start(ann)
        return ann

    def _start(self, ann: Announcement) -> None:
        self.busy = True
        task = asyncio.create_task(self._run(ann), name="voice_announce")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, ann: Announcement) -> None:
        try:
            if self._primary is not None:
                try:
                    await self._primary.speak(ann.text, ann.personality, ann.mark_started)
                    ann.backend = type(self._primary).__name__
                    self._spoken += 1
                    return
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.warning(
                        "voice_primary_failed",
                        extra={"error": str(e), "error_type": type(e).__name__},
                    )
                    ann.mark_started()

            if self._fallback is not None:
                self._fallbacks += 1
                try:
                    await self._fallback.speak(ann.text, ann.personality, ann.mark_started)
                    ann.backend = type(self._fallback).__name__
                    self._spoken += 1
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.warning(
                        "voice_fallback_failed",
                        extra={"error": str(e), "error_type": type(e).__name__},
                    )
        finally:
            ann.mark_finished()
            if self._queue:
                self._start(self._queue.popleft())
            else:
                self.busy = False

    def _drop_queued(self) -> None:
        while self._queue:
            ann = self._queue.popleft()
            ann.dropped = True
            ann.mark_finished()

    def stop_all(self) -> None:
        """
        Drop queued lines and forget the last spoken text so the next
        line is never deduplicated.
        """
        self._drop_queued()
        self.last_text = ""

    async def close(self) -> None:
        """Cancel in-flight announcements and release backend sessions."""
        self._drop_queued()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        for backend in (self._primary, self._fallback):
            close = getattr(backend, "close", None)
            if close is not None:
                await close()

    def get_stats(self) -> dict:
        return {
            "enabled": self.enabled,
            "busy": self.busy,
            "spoken": self._spoken,
            "deduplicated": self._deduplicated,
            "dropped": self._dropped,
            "queued": self._queued,
            "fallbacks": self._fallbacks,
        }
