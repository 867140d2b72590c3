"""Testes do correlacionador de alertas.

Cobertura:
  TestCorrelation  — dedup no cooldown, teto horário, condições e severidade
  TestTransitions  — new → acknowledged → resolved e transições inválidas
  TestAutoResolve  — varredura de alertas vencidos pelo TTL
"""
from __future__ import annotations

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest

from policy_engine.core.errors import AlertNotFound, ConcurrencyConflict, InvalidAlertTransition
from policy_engine.services.alert_correlator import AlertCorrelator
from policy_engine.services.alert_sinks import InMemoryAlertSink
from policy_engine.services.alert_throttle import InMemoryAlertThrottle
from policy_engine.services.audit_service import AuditService
from policy_engine.stores.memory import InMemoryAlertStore, InMemoryAuditStore
from policy_engine.tests.factories import NOW, USER, alert_rule, make_settings, violation


def _correlator(*rules, sinks=None, **settings):
    store = InMemoryAlertStore(list(rules))
    audit_store = InMemoryAuditStore()
    sink = InMemoryAlertSink()
    correlator = AlertCorrelator(
        store,
        throttle=InMemoryAlertThrottle(),
        sinks=sinks if sinks is not None else {"log": sink},
        audit_service=AuditService(audit_store),
        settings=make_settings(**settings),
    )
    return correlator, store, sink, audit_store


class TestCorrelation:
    @pytest.mark.asyncio
    async def test_ten_violations_in_cooldown_create_one_alert(self):
        correlator, store, sink, _ = _correlator(alert_rule(cooldown_period=timedelta(minutes=10)))

        for index in range(10):
            await correlator.on_violation(violation(detected_at=NOW + timedelta(seconds=index)))

        alerts = await store.list_alerts()
        assert len(alerts) == 1
        assert alerts[0].occurrence_count == 10
        assert len(alerts[0].violation_ids) == 10
        assert alerts[0].last_seen_at == NOW + timedelta(seconds=9)
        assert [event.event_type for event in sink.events] == ["created"] + ["updated"] * 9

    @pytest.mark.asyncio
    async def test_concurrent_violations_are_serialized(self):
        correlator, store, _, _ = _correlator(alert_rule(cooldown_period=timedelta(minutes=10)))

        await asyncio.gather(*(correlator.on_violation(violation()) for _ in range(10)))

        alerts = await store.list_alerts()
        assert len(alerts) == 1
        assert alerts[0].occurrence_count == 10

    @pytest.mark.asyncio
    async def test_new_alert_after_cooldown(self):
        correlator, store, _, _ = _correlator(alert_rule(cooldown_period=timedelta(minutes=5)))

        await correlator.on_violation(violation())
        await correlator.on_violation(violation(detected_at=NOW + timedelta(minutes=6)))

        assert len(await store.list_alerts()) == 2

    @pytest.mark.asyncio
    async def test_subjects_are_tracked_separately(self):
        correlator, store, _, _ = _correlator(alert_rule())

        await correlator.on_violation(violation(user_id="user-a"))
        await correlator.on_violation(violation(user_id="user-b"))
        await correlator.on_violation(violation(user_id="user-a", resource="reports"))

        assert len(await store.list_alerts()) == 3

    @pytest.mark.asyncio
    async def test_hourly_cap_throttles_new_alerts(self):
        correlator, store, _, _ = _correlator(alert_rule(max_alerts_per_hour=2))

        for index in range(4):
            await correlator.on_violation(violation(user_id=f"user-{index}"))

        assert len(await store.list_alerts()) == 2

    @pytest.mark.asyncio
    async def test_throttled_subject_stays_quiet_during_cooldown(self):
        correlator, store, _, _ = _correlator(alert_rule(max_alerts_per_hour=1))
        await correlator.on_violation(violation(user_id="first"))

        assert await correlator.on_violation(violation(user_id="second")) == []
        assert await correlator.on_violation(violation(user_id="second")) == []
        assert len(await store.list_alerts()) == 1

    @pytest.mark.asyncio
    async def test_per_subject_state_does_not_accumulate(self):
        correlator, _, _, _ = _correlator(
            alert_rule(cooldown_period=timedelta(minutes=5), max_alerts_per_hour=10_000)
        )

        for index in range(2000):
            await correlator.on_violation(
                violation(user_id=f"user-{index}", detected_at=NOW + timedelta(minutes=index))
            )

        assert len(correlator._locks) == 0
        assert len(correlator._throttle) <= 6

    @pytest.mark.asyncio
    async def test_rule_conditions_and_category_filter(self):
        correlator, store, _, _ = _correlator(
            alert_rule("critical-only", conditions='{"op": "eq", "attribute": "severity", "value": "critical"}'),
            alert_rule("device-rule", category="device"),
        )

        assert await correlator.on_violation(violation(severity="medium")) == []
        created = await correlator.on_violation(violation(severity="critical"))

        assert [alert.rule_id for alert in created] == ["critical-only"]
        assert created[0].severity == "critical"

    @pytest.mark.asyncio
    async def test_alert_severity_is_the_highest(self):
        correlator, _, _, _ = _correlator(alert_rule(severity="high"))

        created = await correlator.on_violation(violation(severity="low", violation_type="high_risk_denied"))

        assert created[0].severity == "high"
        assert created[0].title == "rule-1: high_risk_denied"
        assert created[0].user_id == USER

    @pytest.mark.asyncio
    async def test_sink_failure_keeps_alert(self):
        failing = AsyncMock()
        failing.emit.side_effect = RuntimeError("webhook down")
        correlator, store, _, _ = _correlator(alert_rule(), sinks={"log": failing})

        created = await correlator.on_violation(violation())

        assert len(created) == 1
        assert len(await store.list_alerts()) == 1

    @pytest.mark.asyncio
    async def test_notification_channels_select_sinks(self):
        log_sink = InMemoryAlertSink()
        webhook_sink = InMemoryAlertSink()
        correlator, _, _, _ = _correlator(
            alert_rule(notification_channels=["webhook"]),
            sinks={"log": log_sink, "webhook": webhook_sink},
        )

        await correlator.on_violation(violation())

        assert log_sink.events == []
        assert [event.event_type for event in webhook_sink.events] == ["created"]


class TestTransitions:
    @pytest.mark.asyncio
    async def test_acknowledge_then_resolve(self):
        correlator, _, sink, audit_store = _correlator(alert_rule())
        [alert] = await correlator.on_violation(violation())

        acknowledged = await correlator.acknowledge(alert.id, "analyst-1", notes="looking")
        resolved = await correlator.resolve(alert.id, "analyst-1", "false positive")

        assert acknowledged.status == "acknowledged"
        assert acknowledged.acknowledged_by == "analyst-1"
        assert resolved.status == "resolved"
        assert resolved.resolution == "false positive"
        assert resolved.version == 3
        assert [event.event_type for event in sink.events] == ["created", "acknowledged", "resolved"]
        events = await audit_store.list_events(user_id="analyst-1")
        assert sorted(event.action for event in events) == ["acknowledged", "resolved"]

    @pytest.mark.asyncio
    async def test_invalid_transitions(self):
        correlator, _, _, _ = _correlator(alert_rule())
        [alert] = await correlator.on_violation(violation())

        with pytest.raises(InvalidAlertTransition):
            await correlator.resolve(alert.id, "analyst-1", "skip ack")

        await correlator.acknowledge(alert.id, "analyst-1")
        with pytest.raises(InvalidAlertTransition):
            await correlator.acknowledge(alert.id, "analyst-1")

    @pytest.mark.asyncio
    async def test_unknown_alert(self):
        correlator, _, _, _ = _correlator()

        with pytest.raises(AlertNotFound):
            await correlator.acknowledge("missing", "analyst-1")

    @pytest.mark.asyncio
    async def test_cooldown_outlives_resolved_alert(self):
        correlator, store, _, _ = _correlator(alert_rule(cooldown_period=timedelta(minutes=10)))
        [alert] = await correlator.on_violation(violation())
        await correlator.acknowledge(alert.id, "analyst-1")
        await correlator.resolve(alert.id, "analyst-1", "handled")

        assert await correlator.on_violation(violation(detected_at=NOW + timedelta(minutes=1))) == []
        assert len(await store.list_alerts()) == 1


class TestAutoResolve:
    @pytest.mark.asyncio
    async def test_sweep_resolves_expired_alerts(self):
        correlator, store, _, audit_store = _correlator(alert_rule(), alert_auto_resolve_hours=24)
        [old] = await correlator.on_violation(violation(user_id="old", detected_at=NOW - timedelta(hours=30)))
        [fresh] = await correlator.on_violation(violation(user_id="fresh", detected_at=NOW - timedelta(hours=1)))
        [acked] = await correlator.on_violation(violation(user_id="acked", detected_at=NOW - timedelta(hours=48)))
        await correlator.acknowledge(acked.id, "analyst-1")

        assert await correlator.auto_resolve_expired(now=NOW) == 2

        assert (await store.get_alert(old.id)).status == "resolved"
        assert (await store.get_alert(old.id)).resolution == "auto-resolved after TTL"
        assert (await store.get_alert(acked.id)).status == "resolved"
        assert (await store.get_alert(fresh.id)).status == "new"
        system_events = [e for e in await audit_store.list_events() if e.new_values.get("by") == "system"]
        assert len(system_events) == 2
        assert all(event.user_id is None for event in system_events)

    @pytest.mark.asyncio
    async def test_sweep_is_idempotent(self):
        correlator, _, _, _ = _correlator(alert_rule())
        await correlator.on_violation(violation(detected_at=NOW - timedelta(hours=30)))

        assert await correlator.auto_resolve_expired(now=NOW) == 1
        assert await correlator.auto_resolve_expired(now=NOW) == 0

    @pytest.mark.asyncio
    async def test_sweep_skips_alert_updated_concurrently(self):
        correlator, store, _, _ = _correlator(alert_rule())
        [raced] = await correlator.on_violation(violation(user_id="raced", detected_at=NOW - timedelta(hours=30)))
        [other] = await correlator.on_violation(violation(user_id="other", detected_at=NOW - timedelta(hours=30)))
        update_alert = store.update_alert

        async def _conflict_on_first(alert, expected_version):
            if alert.id == raced.id:
                raise ConcurrencyConflict("versão do alerta divergente", alert_id=alert.id)
            return await update_alert(alert, expected_version)

        with patch.object(store, "update_alert", _conflict_on_first):
            assert await correlator.auto_resolve_expired(now=NOW) == 1

        assert (await store.get_alert(raced.id)).status == "new"
        assert (await store.get_alert(other.id)).status == "resolved"
