"""
Tests for the HTTP surface: violation ingestion and monitor session endpoints
"""

import time

import pytest
from fastapi.testclient import TestClient

from conftest import CaptureFactory, FakeClassifier
from formproctor import main
from formproctor.api.ingestion import store
from formproctor.config import Settings
from formproctor.main import app
from formproctor.monitoring.camera import CameraSession
from formproctor.monitoring.rules import TAB_SWITCH_MESSAGE
from formproctor.monitoring.session import MonitorSession

VIOLATION = {
    "type": "phone_detected",
    "timestamp": "2026-10-19T12:00:00Z",
    "message": "⚠ Cell Phone detected — prohibited items are not allowed",
    "confidence": 0.82,
}


@pytest.fixture
def client():
    store.clear()
    with TestClient(app) as test_client:
        yield test_client
    store.clear()


@pytest.fixture
def fake_sessions(monkeypatch):
    """Monitor sessions backed by a fake camera and classifier."""
    config = Settings(INGESTION_URL="")
    factories = []

    def build(request, session_id):
        factory = CaptureFactory(opened=request.camera_index != 99)
        factories.append(factory)
        return MonitorSession(
            form_id=request.form_id,
            session_id=session_id,
            camera=CameraSession(capture_factory=factory),
            classifier=FakeClassifier(),
            config=config,
        )

    monkeypatch.setattr(main, "build_session", build)
    return factories


def wait_until_loaded(client, session_id, timeout=3.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        state = client.get(f"/sessions/{session_id}").json()
        if state["model_status"] != "loading" and state["camera_status"] != "idle":
            return state
        time.sleep(0.02)
    raise AssertionError("session did not finish loading")


class TestIngestion:

    def test_ingest_violation(self, client):
        response = client.post("/api/proctoring", json={"formId": "form-1", "violation": VIOLATION})

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["totalViolations"] == 1
        assert body["message"]

    def test_running_total_per_form(self, client):
        client.post("/api/proctoring", json={"formId": "form-1", "violation": VIOLATION})
        client.post("/api/proctoring", json={"formId": "form-2", "violation": VIOLATION})
        response = client.post("/api/proctoring", json={"formId": "form-1", "violation": VIOLATION})

        assert response.json()["totalViolations"] == 2

    def test_confidence_is_optional(self, client):
        violation = {k: v for k, v in VIOLATION.items() if k != "confidence"}
        violation["type"] = "tab_switch"

        response = client.post("/api/proctoring", json={"formId": "form-1", "violation": violation})

        assert response.status_code == 200

    @pytest.mark.parametrize("payload", [
        {"violation": VIOLATION},
        {"formId": "form-1"},
        {"formId": "", "violation": VIOLATION},
        {},
    ])
    def test_missing_required_fields(self, client, payload):
        response = client.post("/api/proctoring", json=payload)

        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert "Missing" in body["message"]
        assert store.count("form-1") == 0

    def test_unknown_violation_type(self, client):
        violation = dict(VIOLATION, type="looking_away")

        response = client.post("/api/proctoring", json={"formId": "form-1", "violation": violation})

        assert response.status_code == 400
        assert response.json()["success"] is False
        assert store.count("form-1") == 0

    def test_confidence_out_of_range(self, client):
        violation = dict(VIOLATION, confidence=1.5)

        response = client.post("/api/proctoring", json={"formId": "form-1", "violation": violation})

        assert response.status_code == 400

    def test_invalid_json(self, client):
        response = client.post(
            "/api/proctoring",
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 400
        assert response.json()["success"] is False

    def test_list_violations(self, client):
        client.post("/api/proctoring", json={"formId": "form-1", "violation": VIOLATION})

        response = client.get("/api/proctoring", params={"formId": "form-1"})

        body = response.json()
        assert body["success"] is True
        assert body["formId"] == "form-1"
        assert body["totalViolations"] == 1
        assert body["violations"][0]["type"] == "phone_detected"
        assert body["violations"][0]["confidence"] == 0.82

    def test_list_unknown_form(self, client):
        body = client.get("/api/proctoring", params={"formId": "nobody"}).json()
        assert body["violations"] == []
        assert body["totalViolations"] == 0

    def test_list_requires_form_id(self, client):
        response = client.get("/api/proctoring")

        assert response.status_code == 400
        assert response.json() == {"success": False, "message": "Missing required query parameter: formId"}


class TestMonitoringEndpoints:

    def test_session_lifecycle(self, client, fake_sessions):
        response = client.post("/start-monitoring", json={"form_id": "form-1", "session_id": "s-1"})
        assert response.json()["status"] == "started"

        state = wait_until_loaded(client, "s-1")
        assert state["status"] == "active"
        assert state["violation_count"] == 0

        again = client.post("/start-monitoring", json={"form_id": "form-1", "session_id": "s-1"})
        assert again.json()["status"] == "already_started"

        stopped = client.post("/stop-monitoring", json={"session_id": "s-1"})
        assert stopped.json()["status"] == "stopped"
        assert fake_sessions[0].captures[0].released

        missing = client.post("/stop-monitoring", json={"session_id": "s-1"})
        assert missing.json()["status"] == "not_found"

    def test_generated_session_id(self, client, fake_sessions):
        response = client.post("/start-monitoring", json={"form_id": "form-1"})

        session_id = response.json()["session_id"]
        assert session_id.startswith("MON_")
        client.post("/stop-monitoring", json={"session_id": session_id})

    def test_degraded_session_counts_tab_switches(self, client, fake_sessions):
        client.post("/start-monitoring", json={"form_id": "form-1", "session_id": "s-2", "camera_index": 99})
        state = wait_until_loaded(client, "s-2")
        assert state["status"] == "degraded"
        assert state["camera_status"] == "error"
        assert state["error_message"]

        first = client.post("/sessions/s-2/visibility", json={"hidden": True}).json()
        second = client.post("/sessions/s-2/visibility", json={"hidden": True}).json()
        client.post("/sessions/s-2/visibility", json={"hidden": False})

        assert first["counted"] is True
        assert second["tab_switch_count"] == 2
        assert second["reported_tab_switches"] == 1

        state = client.get("/sessions/s-2").json()
        assert state["current_alert"] == TAB_SWITCH_MESSAGE
        assert state["violation_count"] == 1

        violations = client.get("/violations/s-2").json()
        assert violations["total_violations"] == 1
        assert violations["violations"][0]["type"] == "tab_switch"

        client.post("/stop-monitoring", json={"session_id": "s-2"})

    def test_alert_dismiss_and_minimize(self, client, fake_sessions):
        client.post("/start-monitoring", json={"form_id": "form-1", "session_id": "s-3"})
        wait_until_loaded(client, "s-3")
        client.post("/sessions/s-3/visibility", json={"hidden": True})

        assert client.post("/sessions/s-3/alert/dismiss").json()["current_alert"] is None
        assert client.post("/sessions/s-3/minimize").json()["minimized"] is True

        state = client.get("/sessions/s-3").json()
        assert state["minimized"] is True
        assert state["status"] == "active"
        assert state["violation_count"] == 1

        client.post("/stop-monitoring", json={"session_id": "s-3"})

    def test_unknown_backend_rejected(self, client):
        response = client.post("/start-monitoring", json={"form_id": "form-1", "backend": "yolo"})
        assert response.status_code == 400

    def test_unknown_session(self, client):
        assert client.get("/sessions/nope").status_code == 404
        assert client.post("/sessions/nope/visibility", json={"hidden": True}).status_code == 404
        assert client.get("/violations/nope").status_code == 404

    def test_websocket_pushes_violations(self, client, fake_sessions):
        client.post("/start-monitoring", json={"form_id": "form-1", "session_id": "s-4"})
        wait_until_loaded(client, "s-4")

        with client.websocket_connect("/ws/s-4") as websocket:
            assert websocket.receive_json()["type"] == "connected"

            websocket.send_json({"type": "visibility", "hidden": True})
            messages = [websocket.receive_json(), websocket.receive_json()]

        by_type = {m["type"]: m for m in messages}
        assert set(by_type) == {"violation", "state"}
        assert by_type["violation"]["violation"]["type"] == "tab_switch"
        assert by_type["state"]["state"]["tab_switch_count"] == 1

        client.post("/stop-monitoring", json={"session_id": "s-4"})

    def test_websocket_plain_text_keepalive(self, client, fake_sessions):
        client.post("/start-monitoring", json={"form_id": "form-1", "session_id": "s-5"})
        wait_until_loaded(client, "s-5")

        with client.websocket_connect("/ws/s-5") as websocket:
            assert websocket.receive_json()["type"] == "connected"

            websocket.send_text("ping")
            assert websocket.receive_json() == {"type": "pong", "data": "ping"}

            # the socket still handles visibility events afterwards
            websocket.send_json({"type": "visibility", "hidden": True})
            messages = [websocket.receive_json(), websocket.receive_json()]

        assert {m["type"] for m in messages} == {"violation", "state"}
        client.post("/stop-monitoring", json={"session_id": "s-5"})

    def test_websocket_visibility_is_validated(self, client, fake_sessions):
        client.post("/start-monitoring", json={"form_id": "form-1", "session_id": "s-6"})
        wait_until_loaded(client, "s-6")

        with client.websocket_connect("/ws/s-6") as websocket:
            assert websocket.receive_json()["type"] == "connected"

            websocket.send_json({"type": "visibility", "hidden": "false"})
            visible = websocket.receive_json()

            websocket.send_json({"type": "visibility", "hidden": "maybe"})
            invalid = websocket.receive_json()

        assert visible["type"] == "state"
        assert visible["state"]["tab_switch_count"] == 0
        assert invalid["type"] == "error"
        assert invalid["message"]

        state = client.get("/sessions/s-6").json()
        assert state["tab_switch_count"] == 0
        assert state["violation_count"] == 0
        client.post("/stop-monitoring", json={"session_id": "s-6"})

    def test_health(self, client):
        body = client.get("/health").json()
        assert body["status"] == "healthy"
        assert "active_sessions" in body
