from fastapi.testclient import TestClient

from chartsense.http_api import create_app
from chartsense.session import CaptureSession
from chartsense.signal_store import SignalStore
from chartsense.types import CaptureEndedError, Mode
from chartsense.voice import VoiceAnnouncer

from fakes import FakeOracle, FakeSource


def make_client(store=None, source=None):
    session = CaptureSession(
        source_factory=lambda: source or FakeSource(open_error=CaptureEndedError("no frames")),
        oracle=FakeOracle(),
        announcer=VoiceAnnouncer(enabled=False),
    )
    return TestClient(create_app(session, store=store)), session


def test_health():
    client, _ = make_client()

    resp = client.get("/health")

    assert resp.status_code == 200
    assert resp.json() == {"ok": True}


def test_state_and_features_before_capture():
    client, _ = make_client()

    state = client.get("/state").json()
    features = client.get("/latest/features").json()

    assert state["capture_state"] == "idle"
    assert state["mode"] == "balanced"
    assert "server_time_ms" in state
    assert state["voice"]["enabled"] is False
    assert features == {"ts_ms": None, "features": None}
    assert client.get("/log").json() == {"entries": []}


def test_mode_selection():
    client, session = make_client()

    resp = client.post("/control/mode", json={"mode": "Aggressive"})

    assert resp.status_code == 200
    assert resp.json()["thresholds"]["max_risk"] == 98.0
    assert session.modes.mode is Mode.AGGRESSIVE


def test_invalid_mode_is_rejected():
    client, session = make_client()

    resp = client.post("/control/mode", json={"mode": "yolo"})

    assert resp.status_code == 400
    assert session.modes.mode is Mode.BALANCED


def test_personality_selection():
    client, _ = make_client()

    assert client.post("/control/personality", json={"personality": "ultron"}).json() == {"personality": "ultron"}
    assert client.post("/control/personality", json={"personality": "hal"}).status_code == 400


def test_resolve_without_pending_signal_conflicts():
    client, _ = make_client()

    resp = client.post("/signals/SIG-1/resolve", json={"outcome": "win"})

    assert resp.status_code == 409


def test_resolve_rejects_unknown_or_pending_outcome():
    client, _ = make_client()

    assert client.post("/signals/SIG-1/resolve", json={"outcome": "draw"}).status_code == 400
    assert client.post("/signals/SIG-1/resolve", json={"outcome": "pending"}).status_code == 400


def test_capture_start_failure_reports_state():
    client, _ = make_client()

    resp = client.post("/control/capture/start")

    assert resp.status_code == 200
    assert resp.json() == {"ok": False, "capture_state": "source_ended", "error": "no frames"}
    entries = client.get("/log").json()["entries"]
    assert entries[0]["kind"] == "system"


def test_capture_stop_when_idle():
    client, _ = make_client()

    resp = client.post("/control/capture/stop")

    assert resp.json() == {"ok": True, "capture_state": "idle"}


def test_stats_with_and_without_store(tmp_path):
    client, _ = make_client()
    assert client.get("/stats").json() == {"enabled": False, "summary": None, "history": []}

    client, _ = make_client(store=SignalStore(output_dir=str(tmp_path)))
    data = client.get("/stats").json()

    assert data["enabled"] is True
    assert data["summary"]["total"] == 0
    assert data["history"] == []
