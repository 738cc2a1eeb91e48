"""
Main Entry Point
================

Wires the capture source, oracle, voice, persistence and the capture
session, then serves the HTTP control API until SIGINT/SIGTERM.

Usage:
    python -m chartsense

    # or, after installation
    chartsense

Capture does not start by itself: POST /control/capture/start (or the
dashboard) starts it, and the same call retries after a capture error.
"""

import asyncio
import logging
import signal
import sys

import uvicorn

from chartsense import __schema_version__, __version__
from chartsense.capture import CaptureSource, ImageDirCaptureSource, MssCaptureSource
from chartsense.config import settings
from chartsense.http_api import create_app
from chartsense.logging_setup import setup_logging
from chartsense.mode_controller import AdaptiveModeController
from chartsense.oracle_client import OracleClient
from chartsense.session import CaptureSession
from chartsense.signal_store import SignalStore
from chartsense.types import Personality
from chartsense.voice import GeminiTtsBackend, Pyttsx3Backend, VoiceAnnouncer

logger = logging.getLogger(__name__)

STATE_LOG_INTERVAL_SEC = 60.0


def build_source() -> CaptureSource:
    """Capture source selected by CAPTURE_SOURCE."""
    if settings.CAPTURE_SOURCE == "images":
        return ImageDirCaptureSource(settings.CAPTURE_IMAGE_DIR)
    return MssCaptureSource(monitor=settings.CAPTURE_MONITOR)


def build_announcer() -> VoiceAnnouncer:
    primary = None
    if settings.ORACLE_API_KEY:
        primary = GeminiTtsBackend(
            api_key=settings.ORACLE_API_KEY,
            model=settings.TTS_MODEL,
            voices={
                Personality.JARVIS: settings.VOICE_JARVIS,
                Personality.ULTRON: settings.VOICE_ULTRON,
            },
            player_cmd=settings.VOICE_PLAYER_CMD,
            base_url=settings.ORACLE_BASE_URL,
        )
    return VoiceAnnouncer(
        primary=primary,
        fallback=Pyttsx3Backend(),
        enabled=settings.VOICE_ENABLED,
    )


async def state_logger_loop(
    session: CaptureSession,
    shutdown_event: asyncio.Event,
) -> None:
    """
    Periodically log the session state.
    """
    logger.info("state_logger_started")

    while not shutdown_event.is_set():
        try:
            await asyncio.sleep(STATE_LOG_INTERVAL_SEC)

            if shutdown_event.is_set():
                break

            snapshot = session.state_snapshot()
            snapshot.pop("extractor", None)
            logger.info("session_state", extra=snapshot)

        except asyncio.CancelledError:
            break
        except Exception as e:
            logger.exception(
                "state_logger_error",
                extra={"error": str(e)},
            )

    logger.info("state_logger_stopped")


async def run_http_server(
    app,
    host: str,
    port: int,
) -> None:
    """Run uvicorn HTTP server."""
    config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_level="warning",
        access_log=False,
    )
    server = uvicorn.Server(config)

    logger.info(
        "http_server_starting",
        extra={"host": host, "port": port},
    )

    try:
        await server.serve()
    except asyncio.CancelledError:
        logger.info("http_server_cancelled")

    logger.info("http_server_stopped")


async def main() -> None:
    """Main async entry point."""
    logger.info(
        "chartsense_starting",
        extra={
            "version": __version__,
            "schema_version": __schema_version__,
        },
    )

    logger.info(
        "config_loaded",
        extra={"config": settings.dump()},
    )

    shutdown_event = asyncio.Event()

    oracle = OracleClient(
        api_key=settings.ORACLE_API_KEY,
        model=settings.ORACLE_MODEL,
        base_url=settings.ORACLE_BASE_URL,
        timeout=settings.ORACLE_TIMEOUT_SEC,
        temperature=settings.ORACLE_TEMPERATURE,
    )
    announcer = build_announcer()
    store = SignalStore(output_dir=settings.STORAGE_DIR)

    session = CaptureSession(
        source_factory=build_source,
        oracle=oracle,
        announcer=announcer,
        store=store,
        modes=AdaptiveModeController(initial_mode=settings.DEFAULT_MODE),
        personality=settings.DEFAULT_PERSONALITY,
        fps=settings.CAPTURE_FPS,
        cooldown_sec=settings.ANALYSIS_COOLDOWN_SEC,
        first_scan_delay_sec=settings.FIRST_SCAN_DELAY_SEC,
        jpeg_quality=settings.JPEG_QUALITY,
        log_capacity=settings.LOG_CAPACITY,
    )

    app = create_app(session, store)

    # Setup signal handlers
    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("shutdown_signal", extra={"signal": sig.name})
        shutdown_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    # Create tasks
    http_task = asyncio.create_task(
        run_http_server(app, settings.HTTP_HOST, settings.HTTP_PORT),
        name="http_server",
    )
    # uvicorn may consume SIGINT itself; its exit ends the service too
    http_task.add_done_callback(lambda _: shutdown_event.set())
    state_logger_task = asyncio.create_task(
        state_logger_loop(session, shutdown_event),
        name="state_logger",
    )

    logger.info("chartsense_started")

    await shutdown_event.wait()

    # Graceful shutdown
    logger.info("shutdown_started")

    # 1. Stop capture and any analysis cycle
    await session.close()

    # 2. Cancel service tasks
    all_tasks = [http_task, state_logger_task]
    for task in all_tasks:
        task.cancel()
    results = await asyncio.gather(*all_tasks, return_exceptions=True)

    for task, result in zip(all_tasks, results):
        if isinstance(result, Exception) and not isinstance(result, asyncio.CancelledError):
            logger.warning(
                "shutdown_task_error",
                extra={"task": task.get_name(), "error": str(result)},
            )

    # 3. Close network clients
    await announcer.close()
    await oracle.close()

    logger.info(
        "shutdown_complete",
        extra={
            "frames_processed": session.frames_processed,
            "lifecycle": session.lifecycle.get_stats(),
            "oracle": oracle.get_stats(),
            "store": store.get_stats(),
        },
    )


def run() -> None:
    """Synchronous entry point."""
    setup_logging(settings.LOG_LEVEL)

    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("chartsense_interrupted")
    except asyncio.CancelledError:
        logger.info("chartsense_cancelled")
    except Exception as e:
        logger.exception(
            "chartsense_crashed",
            extra={"error": str(e)},
        )
        sys.exit(1)


if __name__ == "__main__":
    run()
