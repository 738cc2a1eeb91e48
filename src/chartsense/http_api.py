"""
HTTP API Module
===============

FastAPI application exposing session state and user controls.

Endpoints:
    GET  /health                   - Simple health check
    GET  /state                    - Capture/lifecycle state, mode, personality, countdown
    GET  /latest/features          - Most recent FeatureSnapshot
    GET  /log                      - Analysis log (newest first)
    GET  /stats                    - Win-rate summary and recent signal history
    POST /signals/{id}/resolve     - Resolve the pending signal (win | loss | skipped)
    POST /control/mode             - Select risk mode
    POST /control/personality      - Select personality
    POST /control/capture/start    - Start capture (also the retry after a capture error)
    POST /control/capture/stop     - Stop capture
"""

import logging
from typing import Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from chartsense import __version__
from chartsense.session import CaptureSession
from chartsense.signal_store import SignalStore
from chartsense.types import LifecycleError, Mode, Outcome, Personality
from chartsense.utils_time import now_ms

logger = logging.getLogger(__name__)


# Request models
class ResolveRequest(BaseModel):
    """Request body for resolving a signal."""
    outcome: str


class ModeRequest(BaseModel):
    """Request body for selecting the risk mode."""
    mode: str


class PersonalityRequest(BaseModel):
    """Request body for selecting the personality."""
    personality: str


def _parse_enum(enum_cls, raw: str, field: str, exclude: tuple = ()):
    try:
        value = enum_cls(raw.strip().lower())
    except ValueError:
        value = None
    if value is None or value in exclude:
        valid = [m.value for m in enum_cls if m not in exclude]
        raise HTTPException(status_code=400, detail=f"Invalid {field}: {raw}. Must be one of {valid}")
    return value


def create_app(
    session: CaptureSession,
    store: Optional[SignalStore] = None,
) -> FastAPI:
    """
    Create FastAPI application bound to a capture session.

    Args:
        session: The capture session driven by the API
        store: Optional signal store for /stats

    Returns:
        Configured FastAPI application
    """
    app = FastAPI(
        title="chartsense",
        description="Pixel-based chart analysis with oracle-confirmed advisory signals",
        version=__version__,
        docs_url="/docs",
        redoc_url=None,
    )

    @app.get("/health")
    async def health() -> JSONResponse:
        """
        Health check endpoint.

        Returns:
            {"ok": true}
        """
        return JSONResponse({"ok": True})

    @app.get("/state")
    async def state() -> JSONResponse:
        """Session snapshot used by the dashboard."""
        data = session.state_snapshot()
        data["server_time_ms"] = now_ms()
        data["scheduler"] = session.scheduler.get_stats()
        data["voice"] = session.announcer.get_stats()
        return JSONResponse(data)

    @app.get("/latest/features")
    async def latest_features() -> JSONResponse:
        """
        Most recent feature snapshot.

        Returns:
            {"ts_ms": ..., "features": {...}} or features=null before the first frame
        """
        features = session.latest_features
        frame = session.latest_frame
        return JSONResponse({
            "ts_ms": frame.ts_ms if frame else None,
            "features": features.to_dict() if features else None,
        })

    @app.get("/log")
    async def analysis_log() -> JSONResponse:
        return JSONResponse({"entries": session.lifecycle.log.to_list()})

    @app.get("/stats")
    async def stats(limit: int = 20) -> JSONResponse:
        """Win-rate summary plus the most recent signals."""
        if store is None:
            return JSONResponse({"enabled": False, "summary": None, "history": []})
        return JSONResponse({
            "enabled": True,
            "summary": store.stats(),
            "history": store.history(limit=max(0, min(limit, 200))),
        })

    @app.post("/signals/{signal_id}/resolve")
    async def resolve_signal(signal_id: str, request: ResolveRequest) -> JSONResponse:
        """
        Resolve the pending signal.

        Body:
            {"outcome": "win"} | {"outcome": "loss"} | {"outcome": "skipped"}

        Raises:
            400 on an unknown outcome, 409 when the signal is not the pending one
        """
        outcome = _parse_enum(Outcome, request.outcome, "outcome", exclude=(Outcome.PENDING,))
        try:
            resolution = session.resolve(signal_id, outcome)
        except LifecycleError as e:
            raise HTTPException(status_code=409, detail=str(e))

        logger.info(
            "signal_resolved_via_api",
            extra={"signal_id": signal_id, "outcome": outcome.value},
        )
        data = resolution.to_dict()
        data["mode"] = session.modes.mode.value
        return JSONResponse(data)

    @app.post("/control/mode")
    async def set_mode(request: ModeRequest) -> JSONResponse:
        """
        Select the risk mode.

        Body:
            {"mode": "conservative" | "balanced" | "aggressive" | "heuristic_safety"}
        """
        mode = _parse_enum(Mode, request.mode, "mode")
        session.select_mode(mode)
        logger.info("mode_set_via_api", extra={"mode": mode.value})
        return JSONResponse(session.modes.get_stats())

    @app.post("/control/personality")
    async def set_personality(request: PersonalityRequest) -> JSONResponse:
        personality = _parse_enum(Personality, request.personality, "personality")
        session.set_personality(personality)
        logger.info("personality_set_via_api", extra={"personality": personality.value})
        return JSONResponse({"personality": session.personality.value})

    @app.post("/control/capture/start")
    async def capture_start() -> JSONResponse:
        """
        Start capture, or retry after permission_denied / source_ended.

        Returns:
            {"ok": bool, "capture_state": ..., "error": ...}
        """
        ok = await session.start()
        return JSONResponse({
            "ok": ok,
            "capture_state": session.capture_state.value,
            "error": session.last_error,
        })

    @app.post("/control/capture/stop")
    async def capture_stop() -> JSONResponse:
        session.stop()
        return JSONResponse({"ok": True, "capture_state": session.capture_state.value})

    return app
