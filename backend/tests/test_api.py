"""HTTP API tests against an orchestrator with a fake process facility."""

import pytest
from fastapi.testclient import TestClient

from main import app


@pytest.fixture
def client(orchestrator):
    # Lifespan is skipped; the test orchestrator stands in for the real one
    app.state.orchestrator = orchestrator
    yield TestClient(app)
    del app.state.orchestrator


@pytest.fixture
def session_payload():
    return {
        "name": "Evening loop",
        "source": "loop:loop.mp4",
        "platform": "twitch",
        "stream_key": "live_123",
    }


def create_session(client, payload):
    response = client.post("/api/sessions", json=payload)
    assert response.status_code == 201, response.text
    return response.json()


class TestSessionEndpoints:
    def test_create_and_fetch(self, client, session_payload):
        created = create_session(client, session_payload)
        assert created["status"] == "idle"
        assert created["destination"] == "rtmp://live.twitch.tv/app/live_123"

        fetched = client.get(f"/api/sessions/{created['id']}").json()
        assert fetched["name"] == "Evening loop"
        assert [s["id"] for s in client.get("/api/sessions").json()] == [created["id"]]

    def test_invalid_source_is_400(self, client, session_payload):
        session_payload["source"] = "../../etc/passwd"
        response = client.post("/api/sessions", json=session_payload)
        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "ConfigurationError"

    def test_blank_name_is_422(self, client, session_payload):
        session_payload["name"] = "   "
        assert client.post("/api/sessions", json=session_payload).status_code == 422

    def test_unknown_session_is_404(self, client):
        response = client.get("/api/sessions/nope")
        assert response.status_code == 404
        assert response.json()["detail"]["details"] == {"session_id": "nope"}
        assert client.post("/api/sessions/nope/start").status_code == 404

    def test_start_stop_cycle(self, client, facility, session_payload):
        session_id = create_session(client, session_payload)["id"]

        started = client.post(f"/api/sessions/{session_id}/start").json()
        assert started["changed"] is True
        assert started["session"]["status"] == "running"
        assert started["handle"]["status"] == "running"

        again = client.post(f"/api/sessions/{session_id}/start").json()
        assert again["changed"] is False
        assert again["handle"]["instance_name"] == started["handle"]["instance_name"]
        assert len(facility.starts()) == 1

        listed = client.get("/api/sessions", params={"status": "running"}).json()
        assert [s["id"] for s in listed] == [session_id]

        stopped = client.post(f"/api/sessions/{session_id}/stop").json()
        assert stopped["changed"] is True
        assert stopped["session"]["status"] == "idle"
        assert client.post(f"/api/sessions/{session_id}/stop").json()["changed"] is False

    def test_failed_start_then_reset(self, client, facility, session_payload):
        session_id = create_session(client, session_payload)["id"]
        facility.fail_start = True

        response = client.post(f"/api/sessions/{session_id}/start")
        assert response.status_code == 502
        assert response.json()["detail"]["error"] == "ProcessStartError"

        facility.fail_start = False
        conflict = client.post(f"/api/sessions/{session_id}/start")
        assert conflict.status_code == 409
        assert conflict.json()["detail"]["details"]["current"] == "failed"

        reset = client.post(f"/api/sessions/{session_id}/reset").json()
        assert reset["changed"] is True
        assert reset["session"]["status"] == "idle"

    def test_delete_session_removes_schedules(self, client, facility, session_payload):
        session_id = create_session(client, session_payload)["id"]
        client.post("/api/schedules", json={"session_id": session_id, "kind": "daily", "time_spec": "20:00"})
        client.post(f"/api/sessions/{session_id}/start")

        response = client.delete(f"/api/sessions/{session_id}")

        assert response.status_code == 200
        assert response.json() == {"deleted": session_id, "schedules_removed": 1}
        assert len(facility.stops()) == 1
        assert client.get(f"/api/sessions/{session_id}").status_code == 404
        assert client.get("/api/schedules").json() == []


class TestScheduleEndpoints:
    def test_schedule_lifecycle(self, client, session_payload):
        session_id = create_session(client, session_payload)["id"]

        created = client.post("/api/schedules", json={
            "session_id": session_id,
            "kind": "daily",
            "action": "start",
            "time_spec": "21:00",
            "timezone": "Asia/Bangkok",
        })
        assert created.status_code == 201
        schedule = created.json()
        assert schedule["enabled"] is True
        assert schedule["next_fire_at"] is not None

        assert [s["id"] for s in client.get(f"/api/sessions/{session_id}/schedules").json()] == [schedule["id"]]
        assert [s["id"] for s in client.get("/api/schedules", params={"session_id": session_id}).json()] == [schedule["id"]]

        paused = client.patch(f"/api/schedules/{schedule['id']}", json={"enabled": False}).json()
        assert paused["enabled"] is False
        assert paused["disabled_reason"] == "paused"
        assert paused["next_fire_at"] is None

        assert client.delete(f"/api/schedules/{schedule['id']}").status_code == 204
        assert client.get(f"/api/schedules/{schedule['id']}").status_code == 404

    @pytest.mark.parametrize("body,error", [
        ({"kind": "one_time", "time_spec": "2001-01-01T00:00:00Z"}, "ScheduleValidationError"),
        ({"kind": "daily", "time_spec": "25:61"}, "ScheduleValidationError"),
        ({"kind": "daily", "time_spec": "09:00", "timezone": "Atlantis/Capital"}, "TimezoneError"),
    ])
    def test_invalid_rules_are_400(self, client, session_payload, body, error):
        session_id = create_session(client, session_payload)["id"]
        response = client.post("/api/schedules", json={"session_id": session_id, **body})
        assert response.status_code == 400
        assert response.json()["detail"]["error"] == error

    def test_unknown_kind_is_422(self, client, session_payload):
        session_id = create_session(client, session_payload)["id"]
        response = client.post("/api/schedules", json={"session_id": session_id, "kind": "weekly", "time_spec": "09:00"})
        assert response.status_code == 422

    def test_schedule_for_missing_session_is_404(self, client):
        response = client.post("/api/schedules", json={"session_id": "ghost", "kind": "daily", "time_spec": "09:00"})
        assert response.status_code == 404


class TestSystemEndpoints:
    def test_health(self, client):
        assert client.get("/api/health").json() == {"status": "ok"}

    def test_system_status(self, client, session_payload):
        create_session(client, session_payload)
        status = client.get("/api/system/status").json()
        assert status["sessions_by_status"] == {"idle": 1}
        assert status["scheduler_running"] is False
        assert status["enabled_schedules"] == 0
        assert status["last_reconcile"] is None
        assert status["process_backend"] == "local"

    def test_websocket_ping(self, client, orchestrator):
        with client.websocket_connect("/api/ws") as ws:
            assert ws.receive_json()["type"] == "connection"
            ws.send_json({"type": "ping"})
            assert ws.receive_json() == {"type": "pong"}
