"""Testes das rotas HTTP (checagem de acesso, trust, alertas e health).

O motor real é trocado por um motor em memória via ``dependency_overrides``.
Setup e asserções assíncronas rodam no loop do próprio cliente (``client.run``).
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import pytest

from policy_engine.api.deps import get_engine
from policy_engine.config import get_settings
from policy_engine.tests.factories import (
    DEVICE,
    GROUP,
    IP,
    USER,
    alert_rule,
    assignment,
    build_engine,
    permission,
    publish_score,
    role,
    role_permission,
    violation,
)
from policy_engine.tests.http_test_client import make_sync_asgi_client

READ = permission("users", "read")


def _check_payload(**overrides) -> dict:
    payload = {
        "principal_id": USER,
        "device_id": DEVICE,
        "ip_address": IP,
        "group_id": GROUP,
        "resource": "users",
        "action": "read",
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def engine():
    engine, _ = build_engine(
        permissions=[READ],
        roles=[role("viewer")],
        role_permissions=[role_permission("viewer", READ.id)],
        assignments=[assignment("viewer")],
        rules=[alert_rule()],
    )
    return engine


@pytest.fixture
def client(engine):
    import policy_engine.main as app_module

    app_module.app.dependency_overrides[get_engine] = lambda: engine
    client = make_sync_asgi_client(app_module.app)
    yield client
    client.close()
    app_module.app.dependency_overrides.clear()


def _publish(client, engine, score: float):
    return client.run(publish_score(engine, score, now=datetime.now(timezone.utc)))


class TestAccessCheck:
    def test_allow_with_fresh_trust(self, client, engine):
        _publish(client, engine, 80.0)

        resp = client.post("/api/v1/access/check", json=_check_payload(request_id="req-allow"))

        assert resp.status_code == 200
        body = resp.json()
        assert body["decision"] == "allow"
        assert body["matched_permission_id"] == READ.id
        assert body["request_id"] == "req-allow"
        assert 79.0 < body["trust_score"] <= 80.0

    def test_missing_trust_denies(self, client):
        resp = client.post("/api/v1/access/check", json=_check_payload())

        assert resp.status_code == 200
        assert resp.json()["decision"] == "deny"
        assert resp.json()["reason"] == "insufficient trust"

    def test_unknown_permission_denies(self, client, engine):
        _publish(client, engine, 80.0)

        resp = client.post("/api/v1/access/check", json=_check_payload(action="delete"))

        assert resp.json()["decision"] == "deny"
        assert resp.json()["reason"] == "insufficient permission"

    def test_high_risk_denial_raises_alert(self, client, engine):
        _publish(client, engine, 80.0)

        resp = client.post("/api/v1/access/check", json=_check_payload(action="delete"))
        client.run(engine.drain())

        assert resp.json()["decision"] == "deny"
        [alert] = client.run(engine.stores.alerts.list_alerts())
        assert alert.alert_type == "high_risk_denied"
        assert alert.severity == "high"

    def test_request_id_header_feeds_audit(self, client, engine):
        _publish(client, engine, 80.0)

        resp = client.post(
            "/api/v1/access/check",
            json=_check_payload(),
            headers={"X-Request-Id": "req-header"},
        )

        assert resp.headers["X-Request-Id"] == "req-header"
        assert resp.json()["request_id"] == "req-header"
        events = client.run(engine.audit.list_events(request_id="req-header"))
        assert [event.event_type for event in events] == ["access_check"]

    def test_invalid_resource_is_rejected(self, client):
        resp = client.post("/api/v1/access/check", json=_check_payload(resource="users:read"))

        assert resp.status_code == 422


class TestTrustRoutes:
    def test_submit_event_is_accepted(self, client):
        resp = client.post(
            "/api/v1/trust/events",
            json={"user_id": USER, "device_id": DEVICE, "ip_address": IP},
        )

        assert resp.status_code == 202
        assert resp.json()["status"] == "scheduled"

    @pytest.mark.parametrize("occurred_at", ["2030-01-01T00:00:00Z", "2026-03-02T14:00:00"])
    def test_future_or_naive_event_time_is_rejected(self, client, engine, occurred_at):
        resp = client.post(
            "/api/v1/trust/events",
            json={"user_id": USER, "device_id": DEVICE, "ip_address": IP, "occurred_at": occurred_at},
        )
        client.run(engine.drain())

        assert resp.status_code == 422
        assert client.run(engine.trust.current_score(USER, DEVICE, IP)) is None

    def test_missing_score_returns_404(self, client):
        resp = client.get(f"/api/v1/trust/scores/{USER}", params={"device_id": DEVICE, "ip_address": IP})

        assert resp.status_code == 404

    def test_current_score(self, client, engine):
        _publish(client, engine, 80.0)

        resp = client.get(f"/api/v1/trust/scores/{USER}", params={"device_id": DEVICE, "ip_address": IP})

        assert resp.status_code == 200
        body = resp.json()
        assert body["snapshot"]["score"] == 80.0
        assert body["is_stale"] is False
        assert body["required_authentication"]["strength"] == "two_factor"


class TestAlertRoutes:
    def _create_alert(self, client, engine):
        [alert] = client.run(engine.correlator.on_violation(violation()))
        return alert

    def test_acknowledge_and_resolve(self, client, engine):
        alert = self._create_alert(client, engine)

        ack = client.post(f"/api/v1/alerts/{alert.id}/acknowledge", json={"acknowledged_by": "analyst-1"})
        resolved = client.post(
            f"/api/v1/alerts/{alert.id}/resolve",
            json={"resolved_by": "analyst-1", "resolution": "false positive"},
        )

        assert ack.status_code == 200
        assert ack.json()["status"] == "acknowledged"
        assert resolved.status_code == 200
        assert resolved.json()["status"] == "resolved"

    def test_resolve_without_acknowledge_conflicts(self, client, engine):
        alert = self._create_alert(client, engine)

        resp = client.post(
            f"/api/v1/alerts/{alert.id}/resolve",
            json={"resolved_by": "analyst-1", "resolution": "skip"},
        )

        assert resp.status_code == 409

    def test_unknown_alert_returns_404(self, client):
        resp = client.post("/api/v1/alerts/missing/acknowledge", json={"acknowledged_by": "analyst-1"})

        assert resp.status_code == 404
        assert resp.json()["detail"] == "alert not found"


class TestHealth:
    def test_health_with_memory_backends(self, client):
        resp = client.get("/health")

        assert resp.status_code == 200
        assert resp.json()["status"] == "healthy"
        assert resp.json()["dependencies"] == {"catalog": {"status": "connected", "permissions": 1}}

    def test_ready_reports_postgres_and_redis(self, client):
        with patch.object(get_settings(), "store_backend", "postgres"), \
             patch.object(get_settings(), "alert_throttle_backend", "redis"), \
             patch("policy_engine.api.health.check_postgres", AsyncMock(return_value={"status": "connected"})), \
             patch("policy_engine.api.health.check_redis", AsyncMock(return_value={"status": "connected"})):
            resp = client.get("/health/ready")

        assert resp.status_code == 200
        assert resp.json()["status"] == "ready"
        assert set(resp.json()["dependencies"]) == {"postgres", "redis", "catalog"}

    def test_ready_returns_503_when_dependency_down(self, client):
        with patch.object(get_settings(), "store_backend", "postgres"), \
             patch(
                 "policy_engine.api.health.check_postgres",
                 AsyncMock(return_value={"status": "disconnected", "error": "refused"}),
             ):
            resp = client.get("/health/ready")

        assert resp.status_code == 503
        assert resp.json()["detail"]["status"] == "unready"
        assert resp.json()["detail"]["dependencies"]["postgres"]["error"] == "refused"

    def test_ready_fails_when_catalog_times_out(self, client, engine):
        async def _slow_snapshot():
            await asyncio.sleep(1)

        with patch.object(engine.catalog, "snapshot", _slow_snapshot), \
             patch.object(engine.settings, "lookup_timeout_seconds", 0.05):
            resp = client.get("/health/ready")

        assert resp.status_code == 503
        assert resp.json()["detail"]["dependencies"]["catalog"]["status"] == "disconnected"

    def test_live(self, client):
        resp = client.get("/health/live")

        assert resp.status_code == 200
        assert resp.json()["status"] == "alive"

    def test_metrics_exposes_decisions(self, client, engine):
        _publish(client, engine, 80.0)
        client.post("/api/v1/access/check", json=_check_payload())

        resp = client.get("/metrics")

        assert resp.status_code == 200
        assert "access_decisions_total" in resp.text
        assert "http_requests_total" in resp.text

    def test_metrics_label_denials_by_reason(self, client):
        client.post("/api/v1/access/check", json=_check_payload())

        resp = client.get("/metrics")

        assert 'access_denials_total{reason="insufficient trust"}' in resp.text
