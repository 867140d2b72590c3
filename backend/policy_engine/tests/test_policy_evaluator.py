"""Testes da avaliação de acesso zero trust.

Cobertura:
  TestRbacStage        — deny explícito, janelas de validade, erros de hierarquia
  TestTrustAndPolicies — score mínimo, condições, escopo, prioridade, Conditional
  TestFailClosed       — timeout, dependência fora do ar, score vencido, auditoria
  TestViolations       — violações persistidas e correlacionadas em background
"""
from __future__ import annotations

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest

from policy_engine.schemas.access import AccessCheckRequest
from policy_engine.services.policy_evaluator import remediation_steps
from policy_engine.tests.factories import (
    DEVICE,
    GROUP,
    IP,
    NOW,
    USER,
    alert_rule,
    assignment,
    build_engine,
    make_settings,
    permission,
    policy,
    publish_score,
    role,
    role_permission,
    trust_snapshot,
    user_permission,
)

READ = permission("users", "read")
ADMIN_DELETE = permission("admin", "delete")
EXPORT = permission("reports", "export")
CATALOG = (READ, ADMIN_DELETE, EXPORT)

VIEWER = dict(
    roles=[role("viewer")],
    role_permissions=[role_permission("viewer", READ.id)],
    assignments=[assignment("viewer")],
)


def _engine(**kwargs):
    kwargs.setdefault("permissions", CATALOG)
    return build_engine(**kwargs)


async def _evaluate(engine, resource="users", action="read", now=NOW, **kwargs):
    return await engine.evaluator.evaluate(USER, DEVICE, IP, GROUP, resource, action, now, **kwargs)


class TestRbacStage:
    @pytest.mark.asyncio
    async def test_allow_with_role_grant_and_trust(self):
        engine, _ = _engine(**VIEWER, policies=[policy("baseline", minimum=50)])
        await publish_score(engine, 90.0)

        decision = await _evaluate(engine)

        assert decision.kind == "allow"
        assert decision.reason == "access granted"
        assert decision.matched_permission_id == READ.id
        assert decision.trust_score == 90.0

    @pytest.mark.asyncio
    async def test_user_deny_beats_role_hierarchy(self):
        engine, _ = _engine(
            roles=[role("role-a", priority=10), role("role-b", parent="role-a", priority=5)],
            role_permissions=[role_permission("role-a", READ.id)],
            assignments=[assignment("role-a"), assignment("role-b")],
            user_permissions=[user_permission(permission_id=READ.id, type="deny")],
        )
        await publish_score(engine, 95.0)

        decision = await _evaluate(engine)

        assert decision.kind == "deny"
        assert decision.reason == "insufficient permission"

    @pytest.mark.asyncio
    async def test_no_grant_is_denied(self):
        engine, _ = _engine()
        await publish_score(engine, 95.0)

        decision = await _evaluate(engine, "reports", "export")

        assert decision.kind == "deny"
        assert decision.reason == "insufficient permission"

    @pytest.mark.asyncio
    async def test_future_grant_is_pure_function_of_now(self):
        starts = NOW + timedelta(hours=1)
        engine, _ = _engine(user_permissions=[user_permission(permission_id=READ.id, valid_from=starts)])
        await publish_score(engine, 90.0, validity=timedelta(hours=2))

        before = await _evaluate(engine, now=starts - timedelta(seconds=1))
        after = await _evaluate(engine, now=starts)

        assert before.kind == "deny"
        assert before.reason == "insufficient permission"
        assert after.kind == "allow"

    @pytest.mark.asyncio
    async def test_hierarchy_cycle_fails_closed(self):
        engine, _ = _engine(
            roles=[role("loop-a", parent="loop-b"), role("loop-b", parent="loop-a")],
            role_permissions=[role_permission("loop-a", READ.id)],
            assignments=[assignment("loop-a")],
        )
        await publish_score(engine, 95.0)

        decision = await _evaluate(engine)

        assert decision.kind == "deny"
        assert decision.reason == "authorization data inconsistent"

    @pytest.mark.asyncio
    async def test_assignment_to_missing_role_is_denied(self):
        engine, _ = _engine(assignments=[assignment("ghost")])
        await publish_score(engine, 95.0)

        decision = await _evaluate(engine)

        assert decision.kind == "deny"
        assert decision.reason == "insufficient permission"


class TestTrustAndPolicies:
    @pytest.mark.asyncio
    async def test_wildcard_allow_below_policy_minimum(self):
        engine, _ = _engine(
            user_permissions=[user_permission(pattern="users:*", priority=5)],
            policies=[policy("high-trust", minimum=70)],
        )
        await publish_score(engine, 60.0)

        decision = await _evaluate(engine)

        assert decision.kind == "deny"
        assert decision.reason == "insufficient trust"
        assert decision.policy_id == "high-trust"
        assert decision.matched_permission_id == READ.id
        assert decision.trust_score == 60.0

    @pytest.mark.asyncio
    async def test_unmet_conditions_are_a_policy_violation(self):
        engine, _ = _engine(
            **VIEWER,
            policies=[
                policy(
                    "office-network",
                    minimum=10,
                    conditions='{"op": "ip_range", "allowed": ["192.168.0.0/16"]}',
                )
            ],
        )
        await publish_score(engine, 90.0)

        decision = await _evaluate(engine)

        assert decision.kind == "deny"
        assert decision.reason == "policy violation"
        assert decision.policy_id == "office-network"

    @pytest.mark.asyncio
    async def test_claims_reach_policy_conditions(self):
        engine, _ = _engine(
            **VIEWER,
            policies=[policy("mfa", minimum=10, conditions='{"op": "has_claim", "claim": "amr", "value": "mfa"}')],
        )
        await publish_score(engine, 90.0)

        denied = await _evaluate(engine, claims={"amr": ["pwd"]})
        allowed = await _evaluate(engine, claims={"amr": ["pwd", "mfa"]})

        assert denied.reason == "policy violation"
        assert allowed.kind == "allow"

    @pytest.mark.asyncio
    async def test_out_of_scope_policies_are_skipped(self):
        engine, _ = _engine(
            **VIEWER,
            policies=[
                policy("reports-only", minimum=99, resource_pattern="reports:*"),
                policy("other-group", minimum=99, group_id="group-2"),
                policy("finance-only", minimum=99, rules='{"op": "eq", "attribute": "claims.department", "value": "finance"}'),
                policy("disabled", minimum=99, is_active=False),
            ],
        )
        await publish_score(engine, 80.0)

        decision = await _evaluate(engine, claims={"department": "sales"})

        assert decision.kind == "allow"

    @pytest.mark.asyncio
    async def test_unreadable_scope_counts_as_applicable(self):
        engine, _ = _engine(**VIEWER, policies=[policy("broken-scope", minimum=99, rules="{oops")])
        await publish_score(engine, 80.0)

        decision = await _evaluate(engine)

        assert decision.kind == "deny"
        assert decision.policy_id == "broken-scope"

    @pytest.mark.asyncio
    async def test_highest_priority_enforced_policy_wins(self):
        engine, _ = _engine(
            **VIEWER,
            policies=[
                policy("trust-gate", minimum=95, priority=100),
                policy("network-gate", minimum=10, priority=200, conditions='{"op": "ip_range", "allowed": ["192.168.0.0/16"]}'),
            ],
        )
        await publish_score(engine, 80.0)

        decision = await _evaluate(engine)

        assert decision.policy_id == "network-gate"
        assert decision.reason == "policy violation"

    @pytest.mark.asyncio
    async def test_monitor_mode_policy_yields_conditional(self):
        engine, _ = _engine(**VIEWER, policies=[policy("step-up", minimum=80, is_enforced=False)])
        await publish_score(
            engine,
            60.0,
            sub_scores={"device": 40.0, "network": 85.0, "behavior": 85.0, "authentication": 70.0, "location": 85.0},
        )

        decision = await _evaluate(engine)

        assert decision.kind == "conditional"
        assert decision.policy_id == "step-up"
        assert decision.steps == [
            "use a managed and compliant device",
            "re-authenticate with multi-factor authentication",
        ]

    @pytest.mark.asyncio
    async def test_enforced_failure_beats_advisory(self):
        engine, _ = _engine(
            **VIEWER,
            policies=[
                policy("advisory", minimum=80, is_enforced=False, priority=500),
                policy("blocking", minimum=70, priority=10),
            ],
        )
        await publish_score(engine, 60.0)

        decision = await _evaluate(engine)

        assert decision.kind == "deny"
        assert decision.policy_id == "blocking"

    def test_remediation_steps_without_snapshot(self):
        assert remediation_steps(None, 80, []) == ["re-authenticate to refresh the trust score"]

    def test_remediation_steps_for_failed_conditions(self):
        snapshot = trust_snapshot(90.0)

        steps = remediation_steps(snapshot, 50, [policy("geo-fence")])

        assert steps == ["satisfy the conditions of policy 'geo-fence'"]


class TestFailClosed:
    @pytest.mark.asyncio
    async def test_corrupt_catalog_row_does_not_block_other_permissions(self):
        orphan = permission("x", "read", id="orphan", parent_id="ghost")
        engine, _ = _engine(permissions=(READ, orphan), **VIEWER)
        await publish_score(engine, 95.0)

        decision = await _evaluate(engine)

        assert decision.kind == "allow"
        assert decision.matched_permission_id == READ.id

    @pytest.mark.asyncio
    async def test_invalid_high_risk_pattern_is_skipped(self):
        engine, _ = _engine(settings=make_settings(high_risk_permission_patterns=["admin::", "*:delete"]))
        await publish_score(engine, 95.0)

        decision = await _evaluate(engine, "admin", "delete")
        await engine.drain()

        assert decision.reason == "insufficient permission"
        [recorded] = await engine.stores.violations.list_violations()
        assert recorded.violation_type == "high_risk_denied"

    @pytest.mark.asyncio
    async def test_missing_trust_score_denies(self):
        engine, _ = _engine(**VIEWER)

        decision = await _evaluate(engine)

        assert decision.kind == "deny"
        assert decision.reason == "insufficient trust"
        assert decision.trust_score == 0.0

    @pytest.mark.asyncio
    async def test_expired_trust_score_denies_without_policies(self):
        engine, _ = _engine(**VIEWER)
        await publish_score(engine, 95.0, validity=timedelta(minutes=5))

        decision = await _evaluate(engine, now=NOW + timedelta(minutes=6))

        assert decision.kind == "deny"
        assert decision.reason == "insufficient trust"

    @pytest.mark.asyncio
    async def test_lookup_timeout_denies(self):
        engine, _ = _engine(settings=make_settings(lookup_timeout_seconds=0.05), **VIEWER)
        await publish_score(engine, 95.0)

        async def _slow(group_id):
            await asyncio.sleep(1)
            return []

        with patch.object(engine.stores.policies, "list_policies", _slow):
            decision = await _evaluate(engine)

        assert decision.kind == "deny"
        assert decision.reason == "authorization dependency unavailable"

    @pytest.mark.asyncio
    async def test_store_failure_denies(self):
        engine, _ = _engine(**VIEWER)
        await publish_score(engine, 95.0)

        with patch.object(
            engine.stores.trust_scores,
            "latest",
            AsyncMock(side_effect=ConnectionError("connection refused")),
        ):
            decision = await _evaluate(engine)

        assert decision.kind == "deny"
        assert decision.reason == "authorization dependency unavailable"

    @pytest.mark.asyncio
    async def test_audit_failure_turns_allow_into_deny(self):
        engine, _ = _engine(**VIEWER)
        await publish_score(engine, 95.0)

        with patch.object(
            engine.audit,
            "record_access_check",
            AsyncMock(side_effect=OSError("audit sink unavailable")),
        ):
            decision = await _evaluate(engine)

        assert decision.kind == "deny"
        assert decision.reason == "authorization dependency unavailable"

    @pytest.mark.asyncio
    async def test_every_decision_is_audited_once_per_request(self):
        engine, _ = _engine(**VIEWER)
        await publish_score(engine, 95.0)

        await _evaluate(engine, request_id="req-42")
        await _evaluate(engine, request_id="req-42")

        events = await engine.audit.list_events(request_id="req-42")
        assert len(events) == 1
        assert events[0].event_type == "access_check"
        assert events[0].entity_id == "users:read"
        assert events[0].new_values["kind"] == "allow"


class TestViolations:
    @pytest.mark.asyncio
    async def test_policy_violation_is_persisted_and_alerted(self):
        engine, sink = _engine(
            user_permissions=[user_permission(pattern="users:*", priority=5)],
            policies=[policy("high-trust", minimum=70, severity="high")],
            rules=[alert_rule()],
        )
        await publish_score(engine, 60.0)

        await _evaluate(engine, request_id="req-7")
        await engine.drain()

        violations = await engine.stores.violations.list_violations(USER)
        assert [v.violation_type for v in violations] == ["insufficient_trust"]
        assert violations[0].security_policy_id == "high-trust"
        assert violations[0].request_id == "req-7"
        alerts = await engine.stores.alerts.list_alerts()
        assert len(alerts) == 1
        assert alerts[0].severity == "high"
        assert alerts[0].correlation_id == "req-7"
        assert [event.event_type for event in sink.events] == ["created"]

    @pytest.mark.asyncio
    async def test_high_risk_denial_raises_violation(self):
        engine, _ = _engine(rules=[alert_rule()])
        await publish_score(engine, 95.0)

        decision = await _evaluate(engine, "admin", "delete")
        await engine.drain()

        assert decision.reason == "insufficient permission"
        violations = await engine.stores.violations.list_violations(USER)
        assert [v.violation_type for v in violations] == ["high_risk_denied"]
        assert violations[0].severity == "high"

    @pytest.mark.asyncio
    async def test_correlator_failure_does_not_change_decision(self):
        engine, _ = _engine(
            **VIEWER,
            policies=[policy("high-trust", minimum=70)],
        )
        await publish_score(engine, 60.0)

        with patch.object(engine.correlator, "on_violation", AsyncMock(side_effect=RuntimeError("boom"))):
            decision = await _evaluate(engine)
            await engine.drain()

        assert decision.reason == "insufficient trust"
        assert len(await engine.stores.violations.list_violations()) == 1


class TestCheckAccess:
    @pytest.mark.asyncio
    async def test_check_access_returns_response_with_request_id(self):
        engine, _ = _engine(**VIEWER)
        await publish_score(engine, 90.0, now=NOW)

        with patch("policy_engine.services.policy_evaluator._utcnow", return_value=NOW):
            response = await engine.evaluator.check_access(
                AccessCheckRequest(
                    principal_id=USER,
                    device_id=DEVICE,
                    ip_address=IP,
                    group_id=GROUP,
                    resource="users",
                    action="read",
                    request_id="req-api",
                )
            )

        assert response.decision == "allow"
        assert response.request_id == "req-api"
        assert response.matched_permission_id == READ.id
