"""Fábricas de objetos de domínio e de um motor em memória para os testes."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from policy_engine.config import Settings
from policy_engine.schemas.alerts import AlertRule
from policy_engine.schemas.permissions import (
    Permission,
    Role,
    RoleAssignment,
    RolePermission,
    UserPermission,
)
from policy_engine.schemas.policy import PolicyViolation, SecurityPolicy
from policy_engine.schemas.trust import TrustScore, TrustScoreHistory
from policy_engine.services.alert_sinks import InMemoryAlertSink
from policy_engine.services.engine import PolicyEngine, build_policy_engine, memory_stores
from policy_engine.services.trust_score_engine import trust_level_for
from policy_engine.stores.memory import (
    InMemoryAlertStore,
    InMemoryPermissionStore,
    InMemoryPolicyStore,
    InMemoryRoleStore,
    InMemoryUserPermissionStore,
)

# Segunda-feira, 14:00 UTC
NOW = datetime(2026, 3, 2, 14, 0, tzinfo=timezone.utc)

USER = "user-1"
DEVICE = "device-1"
IP = "10.0.0.5"
GROUP = "group-1"


def make_settings(**overrides) -> Settings:
    values = {
        "environment": "test",
        "store_backend": "memory",
        "alert_throttle_backend": "memory",
        "alert_webhook_url": None,
    }
    values.update(overrides)
    return Settings(**values)


def permission(
    resource: str,
    action: str,
    *,
    id: Optional[str] = None,
    pattern: Optional[str] = None,
    **fields,
) -> Permission:
    """Permissão concreta, ou wildcard quando ``pattern`` é informado."""
    return Permission(
        id=id or f"perm-{resource}-{action}".replace("*", "any"),
        name=f"{resource} {action}",
        resource=resource,
        action=action,
        is_wildcard=pattern is not None,
        wildcard_pattern=pattern,
        **fields,
    )


def role(id: str, *, parent: Optional[str] = None, **fields) -> Role:
    return Role(id=id, name=id.title(), parent_role_id=parent, **fields)


def role_permission(role_id: str, permission_id: str, **fields) -> RolePermission:
    return RolePermission(role_id=role_id, permission_id=permission_id, **fields)


def user_permission(
    *,
    id: Optional[str] = None,
    user_id: str = USER,
    permission_id: Optional[str] = None,
    pattern: Optional[str] = None,
    type: str = "allow",
    **fields,
) -> UserPermission:
    return UserPermission(
        id=id or str(uuid.uuid4()),
        user_id=user_id,
        permission_id=permission_id,
        permission_pattern=pattern,
        type=type,
        **fields,
    )


def assignment(role_id: str, *, user_id: str = USER, group_id: Optional[str] = GROUP, **fields) -> RoleAssignment:
    return RoleAssignment(user_id=user_id, role_id=role_id, group_id=group_id, **fields)


def policy(id: str, *, minimum: float = 50.0, **fields) -> SecurityPolicy:
    return SecurityPolicy(id=id, name=id, minimum_trust_score=minimum, **fields)


def alert_rule(id: str = "rule-1", **fields) -> AlertRule:
    fields.setdefault("category", "access_control")
    return AlertRule(id=id, name=id, **fields)


def violation(
    *,
    user_id: str = USER,
    resource: str = "users",
    action: str = "read",
    group_id: Optional[str] = GROUP,
    detected_at: datetime = NOW,
    **fields,
) -> PolicyViolation:
    fields.setdefault("violation_type", "insufficient_trust")
    return PolicyViolation(
        id=str(uuid.uuid4()),
        user_id=user_id,
        resource=resource,
        action=action,
        group_id=group_id,
        detected_at=detected_at,
        **fields,
    )


def trust_snapshot(
    score: float,
    *,
    now: datetime = NOW,
    user_id: str = USER,
    device_id: str = DEVICE,
    ip_address: str = IP,
    validity: timedelta = timedelta(minutes=15),
    sub_scores: Optional[dict[str, float]] = None,
) -> TrustScore:
    parts = {name: score for name in ("device", "network", "behavior", "authentication", "location")}
    parts.update(sub_scores or {})
    return TrustScore(
        id=str(uuid.uuid4()),
        user_id=user_id,
        device_id=device_id,
        ip_address=ip_address,
        score=score,
        trust_level=trust_level_for(score),
        device_score=parts["device"],
        network_score=parts["network"],
        behavior_score=parts["behavior"],
        authentication_score=parts["authentication"],
        location_score=parts["location"],
        calculated_at=now,
        valid_until=now + validity,
    )


async def publish_score(engine: PolicyEngine, score: float, **kwargs) -> TrustScore:
    """Publica um snapshot direto no store, sem passar pelo cálculo."""
    snapshot = trust_snapshot(score, **kwargs)
    history = TrustScoreHistory(
        id=str(uuid.uuid4()),
        trust_score_id=snapshot.id,
        user_id=snapshot.user_id,
        device_id=snapshot.device_id,
        ip_address=snapshot.ip_address,
        previous_score=0.0,
        new_score=snapshot.score,
        change_reason="seed",
        changed_at=snapshot.calculated_at,
    )
    await engine.stores.trust_scores.append(snapshot, history)
    return snapshot


def build_engine(
    *,
    settings: Optional[Settings] = None,
    permissions: Iterable[Permission] = (),
    roles: Iterable[Role] = (),
    role_permissions: Iterable[RolePermission] = (),
    user_permissions: Iterable[UserPermission] = (),
    assignments: Iterable[RoleAssignment] = (),
    policies: Iterable[SecurityPolicy] = (),
    rules: Iterable[AlertRule] = (),
) -> tuple[PolicyEngine, InMemoryAlertSink]:
    """Motor completo sobre stores em memória já populados."""
    stores = memory_stores()
    stores.permissions = InMemoryPermissionStore(list(permissions))
    stores.roles = InMemoryRoleStore(list(roles), list(role_permissions))
    stores.user_permissions = InMemoryUserPermissionStore(list(user_permissions))
    stores.policies = InMemoryPolicyStore(list(policies))
    stores.alerts = InMemoryAlertStore(list(rules))
    for item in assignments:
        stores.identity.assign_role(item)

    sink = InMemoryAlertSink()
    engine = build_policy_engine(
        settings or make_settings(),
        stores=stores,
        sinks={"log": sink},
    )
    return engine, sink
