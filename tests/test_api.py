"""
test_api.py — HTTP tests for the emergency router.

The service dependency is overridden with an in-memory engine so no
database, Redis or gateway is needed. The client is used without a
``with`` block, so the application lifespan never runs.

Run with:
    pytest tests/test_api.py -v
"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from hosla.app.emergency.service import EmergencyService, get_emergency_service
from hosla.app.emergency.store import InMemoryAlertStore
from hosla.app.emergency.trust_circle import InMemoryTrustCircleDirectory, TrustCircleMember
from hosla.app.main import app
from tests.conftest import FakeClock, RecordingChannel


def _headers(user_id: str) -> dict:
    return {"X-User-ID": user_id}


@pytest.fixture
def channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture
def client(channel, test_settings):
    directory = InMemoryTrustCircleDirectory()
    directory.add_member("asha", TrustCircleMember(member_id="ravi"))
    directory.add_member("asha", TrustCircleMember(member_id="kiran"))
    service = EmergencyService(
        InMemoryAlertStore(), directory, channel, settings=test_settings, clock=FakeClock(),
    )
    app.dependency_overrides[get_emergency_service] = lambda: service
    yield TestClient(app)
    app.dependency_overrides.clear()


def _raise(client, user_id="asha", kind="need_help", **body):
    return client.post(
        "/api/v1/emergency/alert", json={"type": kind, **body}, headers=_headers(user_id),
    )


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Creating Alerts
# ═══════════════════════════════════════════════════════════════════════════

class TestCreateEndpoint:

    def test_requires_caller_identity(self, client):
        response = client.post("/api/v1/emergency/alert", json={"type": "need_help"})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "UNAUTHENTICATED"

    def test_created(self, client, channel):
        response = _raise(
            client, message="Fell near the door",
            location={"latitude": 19.07, "longitude": 72.87, "city": "Mumbai"},
        )
        assert response.status_code == 201
        body = response.json()
        assert body["priority"] == "medium"
        assert body["contacts_notified"] == 2
        assert len(channel.calls) == 2

    def test_invalid_kind(self, client):
        response = _raise(client, kind="sos")
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "INVALID_KIND"

    def test_malformed_body(self, client):
        response = client.post(
            "/api/v1/emergency/alert",
            json={"type": "need_help", "location": {"latitude": 123}},
            headers=_headers("asha"),
        )
        assert response.status_code == 422
        error = response.json()["error"]
        assert error["code"] == "VALIDATION_ERROR"
        assert error["details"]["errors"][0]["field"] == "location.latitude"

    def test_no_contacts(self, client):
        response = _raise(client, user_id="loner")
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "NO_EMERGENCY_CONTACTS"
        assert error["details"]["alert_id"]

    def test_rate_limited(self, client):
        for _ in range(3):
            assert _raise(client).status_code == 201
        response = _raise(client)
        assert response.status_code == 429
        assert response.headers["Retry-After"] == "300"
        assert response.json()["error"]["details"]["retry_after_seconds"] == 300

    def test_test_alert(self, client, channel):
        response = client.post("/api/v1/emergency/test-alert", headers=_headers("asha"))
        assert response.status_code == 201
        assert channel.calls == []


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Lifecycle
# ═══════════════════════════════════════════════════════════════════════════

class TestLifecycleEndpoints:

    def test_respond_then_resolve(self, client):
        alert_id = _raise(client).json()["alert_id"]

        response = client.post(
            f"/api/v1/emergency/alerts/{alert_id}/respond",
            json={"message": "On my way", "response_type": "visit"},
            headers=_headers("ravi"),
        )
        assert response.status_code == 200
        assert response.json()["response_count"] == 1

        response = client.post(
            f"/api/v1/emergency/alerts/{alert_id}/resolve",
            json={"note": "Ravi is here"},
            headers=_headers("asha"),
        )
        assert response.status_code == 200
        assert response.json()["status"] == "resolved"

        again = client.post(
            f"/api/v1/emergency/alerts/{alert_id}/resolve", headers=_headers("asha"),
        )
        assert again.status_code == 409

    def test_outsider_cannot_respond(self, client):
        alert_id = _raise(client).json()["alert_id"]
        response = client.post(
            f"/api/v1/emergency/alerts/{alert_id}/respond",
            json={"message": "hi"},
            headers=_headers("stranger"),
        )
        assert response.status_code == 403

    def test_only_originator_cancels(self, client):
        alert_id = _raise(client).json()["alert_id"]
        response = client.post(
            f"/api/v1/emergency/alerts/{alert_id}/cancel", headers=_headers("ravi"),
        )
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "NOT_ORIGINATOR"

    def test_unknown_alert(self, client):
        response = client.get("/api/v1/emergency/alerts/nope", headers=_headers("asha"))
        assert response.status_code == 404


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Queries
# ═══════════════════════════════════════════════════════════════════════════

class TestQueryEndpoints:

    def test_circle_alerts(self, client):
        alert_id = _raise(client).json()["alert_id"]
        response = client.get("/api/v1/emergency/alerts", headers=_headers("ravi"))
        assert response.status_code == 200
        body = response.json()
        assert body["count"] == 1
        alert = body["alerts"][0]
        assert alert["alert_id"] == alert_id
        assert alert["can_respond"] is True
        assert alert["has_responded"] is False
        assert alert["response_count"] == 0

    def test_bad_status_filter(self, client):
        response = client.get(
            "/api/v1/emergency/alerts", params={"status": "bogus"}, headers=_headers("ravi"),
        )
        assert response.status_code == 422

    def test_my_alerts(self, client):
        _raise(client)
        response = client.get("/api/v1/emergency/my-alerts", headers=_headers("asha"))
        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 1
        assert body["page"] == 1
        assert len(body["alerts"]) == 1

    def test_stats(self, client):
        _raise(client)
        response = client.get(
            "/api/v1/emergency/stats", params={"period": 7}, headers=_headers("asha"),
        )
        assert response.status_code == 200
        assert response.json()["summary"]["active_alerts"] == 1
