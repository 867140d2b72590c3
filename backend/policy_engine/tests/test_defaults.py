"""Testes da semeadura de políticas e regras de alerta padrão.

Cobertura:
  TestSeeding       — conjunto padrão, idempotência, stores já populados
  TestSeededEngine  — motor recém-criado aplica trust mínimo e gera alertas
"""
from __future__ import annotations

from datetime import timedelta
from unittest.mock import patch

import pytest

from policy_engine.services.defaults import DEFAULT_ALERT_RULES, DEFAULT_POLICIES, seed_defaults
from policy_engine.services.engine import memory_stores
from policy_engine.tests.factories import (
    DEVICE,
    GROUP,
    IP,
    NOW,
    USER,
    alert_rule,
    assignment,
    build_engine,
    permission,
    policy,
    publish_score,
    role,
    role_permission,
)

READ = permission("users", "read")


class TestSeeding:
    @pytest.mark.asyncio
    async def test_empty_stores_get_the_default_set(self):
        stores = memory_stores()

        assert await seed_defaults(stores) == {"policies": 4, "alert_rules": 4}

        policies = {p.id: p for p in await stores.policies.list_policies(None)}
        assert policies["default-device-trust"].minimum_trust_score == 70.0
        assert policies["default-network-access"].minimum_trust_score == 60.0
        assert policies["default-behavior-analysis"].is_enforced is False
        assert policies["default-authentication-strength"].minimum_trust_score == 80.0
        [low_trust] = await stores.alerts.list_rules("access_control", None)
        assert low_trust.cooldown_period == timedelta(minutes=10)
        assert low_trust.max_alerts_per_hour == 5

    @pytest.mark.asyncio
    async def test_seeding_twice_creates_nothing_new(self):
        stores = memory_stores()
        await seed_defaults(stores)

        assert await seed_defaults(stores) == {"policies": 0, "alert_rules": 0}
        assert await stores.policies.count_policies() == len(DEFAULT_POLICIES)
        assert await stores.alerts.count_rules() == len(DEFAULT_ALERT_RULES)

    @pytest.mark.asyncio
    async def test_existing_policies_are_kept_as_is(self):
        stores = memory_stores()
        await stores.policies.save_policy(policy("custom", minimum=40))

        seeded = await seed_defaults(stores)

        assert seeded == {"policies": 0, "alert_rules": 4}
        assert [p.id for p in await stores.policies.list_policies(None)] == ["custom"]


class TestSeededEngine:
    def _engine(self):
        engine, sink = build_engine(
            permissions=[READ],
            roles=[role("viewer")],
            role_permissions=[role_permission("viewer", READ.id)],
            assignments=[assignment("viewer")],
        )
        return engine, sink

    @pytest.mark.asyncio
    async def test_device_policy_denies_low_trust_and_raises_alert(self):
        engine, _ = self._engine()
        await seed_defaults(engine.stores)
        await publish_score(engine, 65.0)

        decision = await engine.evaluator.evaluate(USER, DEVICE, IP, GROUP, "users", "read", NOW)
        await engine.drain()

        assert decision.kind == "deny"
        assert decision.reason == "insufficient trust"
        assert decision.policy_id == "default-device-trust"
        [alert] = await engine.stores.alerts.list_alerts()
        assert alert.rule_id == "default-device-compliance"
        assert alert.severity == "high"

    @pytest.mark.asyncio
    async def test_high_trust_is_allowed(self):
        engine, _ = self._engine()
        await seed_defaults(engine.stores)
        await publish_score(engine, 95.0)

        decision = await engine.evaluator.evaluate(USER, DEVICE, IP, GROUP, "users", "read", NOW)

        assert decision.kind == "allow"

    @pytest.mark.asyncio
    async def test_app_startup_seeds_the_engine(self):
        import policy_engine.main as app_module

        engine, _ = build_engine(rules=[alert_rule("existing")])

        with patch.object(app_module, "get_policy_engine", return_value=engine):
            async with app_module.lifespan(app_module.app):
                assert await engine.stores.policies.count_policies() == 4

        assert await engine.stores.alerts.count_rules() == 1
