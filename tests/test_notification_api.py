"""API tests for the notification endpoints."""

from __future__ import annotations

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from taskflow.notifications.engine import NotificationEngine
from taskflow.notifications.models import ChannelKind
from taskflow.notifications.store import NotificationStore
from taskflow.notifications.transports import InAppTransport, MockTransport, TransportRegistry
from taskflow.web.app import create_app
from tests.conftest import T0, make_settings


@pytest.fixture
def client(tmp_path, clock) -> TestClient:
    engine = NotificationEngine(
        NotificationStore(),
        transports=TransportRegistry([InAppTransport(), MockTransport(ChannelKind.PUSH)]),
        settings=make_settings(tmp_path),
        clock=clock,
    )
    return TestClient(create_app(engine=engine))


def _schedule(client: TestClient, **overrides) -> dict:
    payload = {
        "user_id": "u1",
        "title": "Write report",
        "scheduled_for": T0.isoformat(),
        "channels": ["in_app"],
    }
    payload.update(overrides)
    resp = client.post("/api/notifications", json=payload)
    assert resp.status_code == 201, resp.text
    return resp.json()


class TestHealth:
    def test_health(self, client: TestClient) -> None:
        resp = client.get("/api/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["service"] == "taskflow-notifications"
        assert data["healthy"] is True
        assert data["details"]["store"] == "NotificationStore"
        assert data["details"]["channels"] == ["in_app", "push"]


class TestScheduleAPI:
    def test_schedule(self, client: TestClient) -> None:
        data = _schedule(client, max_retries=5)
        assert data["status"] == "scheduled"
        assert data["retry"]["max_retries"] == 5
        assert data["retry"]["retry_interval_seconds"] == 300
        assert data["channels"][0]["channel"] == "in_app"
        assert "lease_owner" not in data

    def test_schedule_applies_default_channels(self, client: TestClient) -> None:
        data = _schedule(client, channels=None, priority="high")
        assert [c["channel"] for c in data["channels"]] == ["push", "in_app"]

    def test_schedule_missing_user(self, client: TestClient) -> None:
        resp = client.post("/api/notifications", json={"scheduled_for": T0.isoformat()})
        assert resp.status_code == 422

    def test_schedule_duplicate_channels(self, client: TestClient) -> None:
        resp = client.post(
            "/api/notifications",
            json={"user_id": "u1", "scheduled_for": T0.isoformat(), "channels": ["push", "push"]},
        )
        assert resp.status_code == 422

    def test_get_and_list(self, client: TestClient) -> None:
        created = _schedule(client)
        _schedule(client, user_id="u2")
        assert client.get(f"/api/notifications/{created['id']}").json()["id"] == created["id"]
        assert len(client.get("/api/notifications?user_id=u1").json()) == 1
        assert len(client.get("/api/notifications").json()) == 2
        assert client.get("/api/notifications?status=delivered").json() == []

    def test_get_not_found(self, client: TestClient) -> None:
        assert client.get("/api/notifications/missing").status_code == 404


class TestCancelAPI:
    def test_cancel(self, client: TestClient) -> None:
        created = _schedule(client)
        resp = client.post(f"/api/notifications/{created['id']}/cancel")
        assert resp.status_code == 200
        assert resp.json()["status"] == "cancelled"
        assert resp.json()["cancel_pending"] is False
        again = client.post(f"/api/notifications/{created['id']}/cancel")
        assert again.status_code == 409

    def test_cancel_with_reason(self, client: TestClient) -> None:
        created = _schedule(client)
        resp = client.post(
            f"/api/notifications/{created['id']}/cancel", params={"reason": "task deleted"}
        )
        assert resp.json()["status_reason"] == "task deleted"

    def test_cancel_not_found(self, client: TestClient) -> None:
        assert client.post("/api/notifications/missing/cancel").status_code == 404


class TestDeliveryAPI:
    def test_process_then_interact(self, client: TestClient) -> None:
        created = _schedule(client)
        report = client.post("/api/admin/notifications/process").json()
        assert report["processed"] == 1
        assert report["outcomes"] == {"delivered": 1}

        url = f"/api/notifications/{created['id']}/interactions"
        bad_snooze = client.post(url, json={"type": "snoozed", "snooze_minutes": 0})
        assert bad_snooze.status_code == 422

        opened = client.post(url, json={"type": "opened"}).json()
        assert opened["changed"] is True
        assert opened["event"] == "opened"
        assert opened["notification"]["status"] == "read"

        repeat = client.post(url, json={"type": "opened"}).json()
        assert repeat["changed"] is False

    def test_interaction_before_delivery(self, client: TestClient) -> None:
        created = _schedule(client, scheduled_for=(T0 + timedelta(hours=1)).isoformat())
        resp = client.post(
            f"/api/notifications/{created['id']}/interactions", json={"type": "opened"}
        )
        assert resp.status_code == 409

    def test_interaction_not_found(self, client: TestClient) -> None:
        resp = client.post("/api/notifications/missing/interactions", json={"type": "opened"})
        assert resp.status_code == 404

    def test_delivery_creates_next_occurrence(self, client: TestClient) -> None:
        created = _schedule(client, recurring={"pattern": "daily"})
        client.post("/api/admin/notifications/process")
        listed = client.get("/api/notifications?user_id=u1").json()
        assert len(listed) == 2
        successor = [n for n in listed if n["id"] != created["id"]][0]
        assert successor["recurring"]["current_occurrence"] == 2


class TestCleanupAPI:
    def test_cleanup(self, client: TestClient, clock) -> None:
        created = _schedule(client)
        client.post(f"/api/notifications/{created['id']}/cancel")
        clock.advance(days=31)
        resp = client.post("/api/admin/notifications/cleanup")
        assert resp.json() == {"purged": 1, "days": 30}

    def test_cleanup_negative_days(self, client: TestClient) -> None:
        resp = client.post("/api/admin/notifications/cleanup?days=-1")
        assert resp.status_code == 422


class TestUnavailable:
    def test_engine_missing(self, client: TestClient) -> None:
        client.app.state.notification_engine = None
        assert client.get("/api/notifications/x").status_code == 503
