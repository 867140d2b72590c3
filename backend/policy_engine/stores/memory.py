"""Implementações em memória dos stores do motor.

Usadas no backend ``memory`` (desenvolvimento, testes e deploys de
instância única). A interface de cada classe é a mesma dos stores SQL em
``policy_engine.stores.sql``; os serviços dependem só dos métodos.
"""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime
from typing import Optional

from policy_engine.core.errors import ConcurrencyConflict, DuplicateGrant
from policy_engine.schemas.alerts import AlertRule, SecurityAlert
from policy_engine.schemas.audit import AuditEvent
from policy_engine.schemas.permissions import (
    Permission,
    Role,
    RoleAssignment,
    RolePermission,
    UserPermission,
)
from policy_engine.schemas.policy import PolicyViolation, SecurityPolicy
from policy_engine.schemas.trust import TrustScore, TrustScoreHistory, TrustSignals


def _group_matches(owner_group: Optional[str], group_id: Optional[str]) -> bool:
    return owner_group is None or owner_group == group_id


class InMemoryPermissionStore:
    def __init__(self, permissions: list[Permission] | None = None) -> None:
        self._permissions: dict[str, Permission] = {}
        for permission in permissions or []:
            self._permissions[permission.id] = permission

    async def list_permissions(self) -> list[Permission]:
        return list(self._permissions.values())

    async def get_permission(self, permission_id: str) -> Permission | None:
        return self._permissions.get(permission_id)

    async def save_permission(self, permission: Permission) -> Permission:
        self._permissions[permission.id] = permission
        return permission


class InMemoryRoleStore:
    def __init__(
        self,
        roles: list[Role] | None = None,
        role_permissions: list[RolePermission] | None = None,
    ) -> None:
        self._roles: dict[str, Role] = {role.id: role for role in roles or []}
        self._grants: dict[tuple[str, str, Optional[str]], RolePermission] = {}
        for grant in role_permissions or []:
            self._grants[grant.grant_key] = grant

    async def get_role(self, role_id: str) -> Role | None:
        return self._roles.get(role_id)

    async def list_roles(self, group_id: str | None = None) -> list[Role]:
        return [role for role in self._roles.values() if _group_matches(role.group_id, group_id)]

    async def list_child_roles(self, role_id: str) -> list[Role]:
        return [role for role in self._roles.values() if role.parent_role_id == role_id]

    async def save_role(self, role: Role, expected_version: int | None = None) -> Role:
        current = self._roles.get(role.id)
        if current is not None:
            if expected_version is not None and current.version != expected_version:
                raise ConcurrencyConflict(
                    "versão do papel divergente",
                    role_id=role.id,
                    expected=expected_version,
                    actual=current.version,
                )
            role = role.model_copy(update={"version": current.version + 1})
        self._roles[role.id] = role
        return role

    async def list_role_permissions(self, role_id: str) -> list[RolePermission]:
        return [grant for key, grant in self._grants.items() if key[0] == role_id]

    async def add_role_permission(self, grant: RolePermission) -> RolePermission:
        if grant.grant_key in self._grants:
            raise DuplicateGrant(
                "permissão já concedida ao papel neste grupo",
                role_id=grant.role_id,
                permission_id=grant.permission_id,
                group_id=grant.group_id,
            )
        self._grants[grant.grant_key] = grant
        return grant

    async def remove_role_permission(
        self,
        role_id: str,
        permission_id: str,
        group_id: str | None = None,
    ) -> bool:
        return self._grants.pop((role_id, permission_id, group_id), None) is not None


class InMemoryUserPermissionStore:
    def __init__(self, grants: list[UserPermission] | None = None) -> None:
        self._grants: dict[str, UserPermission] = {grant.id: grant for grant in grants or []}

    async def list_user_permissions(self, user_id: str) -> list[UserPermission]:
        return [grant for grant in self._grants.values() if grant.user_id == user_id]

    async def get_user_permission(self, grant_id: str) -> UserPermission | None:
        return self._grants.get(grant_id)

    async def add_user_permission(self, grant: UserPermission) -> UserPermission:
        if grant.id in self._grants:
            raise DuplicateGrant("grant de usuário já existe", grant_id=grant.id)
        self._grants[grant.id] = grant
        return grant

    async def update_user_permission(
        self,
        grant: UserPermission,
        expected_version: int,
    ) -> UserPermission:
        current = self._grants.get(grant.id)
        if current is None or current.version != expected_version:
            raise ConcurrencyConflict(
                "versão do grant divergente",
                grant_id=grant.id,
                expected=expected_version,
                actual=current.version if current else None,
            )
        updated = grant.model_copy(update={"version": expected_version + 1})
        self._grants[grant.id] = updated
        return updated


class InMemoryIdentityProvider:
    """Provedor de identidade/dispositivos: papéis por grupo e sinais de confiança."""

    def __init__(self) -> None:
        self._assignments: dict[str, list[RoleAssignment]] = defaultdict(list)
        self._signals: dict[tuple[str, str, str], TrustSignals] = {}
        self._device_signals: dict[str, TrustSignals] = {}

    def assign_role(self, assignment: RoleAssignment) -> None:
        self._assignments[assignment.user_id].append(assignment)

    def set_signals(
        self,
        user_id: str,
        device_id: str,
        ip_address: str | None,
        signals: TrustSignals,
    ) -> None:
        if ip_address is None:
            self._device_signals[device_id] = signals
        else:
            self._signals[(user_id, device_id, ip_address)] = signals

    async def list_role_assignments(self, user_id: str, group_id: str | None) -> list[RoleAssignment]:
        return [
            assignment
            for assignment in self._assignments.get(user_id, [])
            if assignment.group_id == group_id
        ]

    async def get_trust_signals(self, user_id: str, device_id: str, ip_address: str) -> TrustSignals:
        base = self._device_signals.get(device_id, TrustSignals())
        return base.merged_with(self._signals.get((user_id, device_id, ip_address)))


class InMemoryTrustScoreStore:
    def __init__(self) -> None:
        self._latest: dict[tuple[str, str, str], TrustScore] = {}
        self._scores: list[TrustScore] = []
        self._history: list[TrustScoreHistory] = []

    async def latest(self, user_id: str, device_id: str, ip_address: str) -> TrustScore | None:
        return self._latest.get((user_id, device_id, ip_address))

    async def append(self, score: TrustScore, history: TrustScoreHistory) -> None:
        previous = self._latest.get(score.key)
        if previous is not None:
            index = self._scores.index(previous)
            self._scores[index] = previous.model_copy(update={"is_active": False})
        self._scores.append(score)
        self._history.append(history)
        # Publica o snapshot só depois de registrar o histórico.
        self._latest[score.key] = score

    async def list_history(
        self,
        user_id: str,
        device_id: str | None = None,
        ip_address: str | None = None,
    ) -> list[TrustScoreHistory]:
        return [
            entry
            for entry in self._history
            if entry.user_id == user_id
            and (device_id is None or entry.device_id == device_id)
            and (ip_address is None or entry.ip_address == ip_address)
        ]

    async def purge_history(self, before: datetime) -> int:
        kept = [entry for entry in self._history if entry.changed_at >= before]
        removed = len(self._history) - len(kept)
        self._history = kept
        return removed


class InMemoryPolicyStore:
    def __init__(self, policies: list[SecurityPolicy] | None = None) -> None:
        self._policies: dict[str, SecurityPolicy] = {policy.id: policy for policy in policies or []}

    async def list_policies(self, group_id: str | None) -> list[SecurityPolicy]:
        return [
            policy
            for policy in self._policies.values()
            if policy.is_active and _group_matches(policy.group_id, group_id)
        ]

    async def count_policies(self) -> int:
        return len(self._policies)

    async def save_policy(self, policy: SecurityPolicy) -> SecurityPolicy:
        self._policies[policy.id] = policy
        return policy


class InMemoryViolationStore:
    def __init__(self) -> None:
        self._violations: list[PolicyViolation] = []

    async def add_violation(self, violation: PolicyViolation) -> PolicyViolation:
        self._violations.append(violation)
        return violation

    async def list_violations(self, user_id: str | None = None) -> list[PolicyViolation]:
        return [v for v in self._violations if user_id is None or v.user_id == user_id]


class InMemoryAlertStore:
    def __init__(self, rules: list[AlertRule] | None = None) -> None:
        self._rules: dict[str, AlertRule] = {rule.id: rule for rule in rules or []}
        self._alerts: dict[str, SecurityAlert] = {}

    async def list_rules(self, category: str, group_id: str | None) -> list[AlertRule]:
        return [
            rule
            for rule in self._rules.values()
            if rule.is_active and rule.category == category and _group_matches(rule.group_id, group_id)
        ]

    async def count_rules(self) -> int:
        return len(self._rules)

    async def save_rule(self, rule: AlertRule) -> AlertRule:
        self._rules[rule.id] = rule
        return rule

    async def add_alert(self, alert: SecurityAlert) -> SecurityAlert:
        self._alerts[alert.id] = alert
        return alert

    async def get_alert(self, alert_id: str) -> SecurityAlert | None:
        return self._alerts.get(alert_id)

    async def update_alert(self, alert: SecurityAlert, expected_version: int) -> SecurityAlert:
        current = self._alerts.get(alert.id)
        if current is None or current.version != expected_version:
            raise ConcurrencyConflict("versão do alerta divergente", alert_id=alert.id)
        updated = alert.model_copy(update={"version": expected_version + 1})
        self._alerts[alert.id] = updated
        return updated

    async def latest_open_alert(
        self,
        rule_id: str,
        user_id: str | None,
        resource: str | None,
    ) -> SecurityAlert | None:
        candidates = [
            alert
            for alert in self._alerts.values()
            if alert.rule_id == rule_id
            and alert.user_id == user_id
            and alert.resource == resource
            and alert.status != "resolved"
        ]
        return max(candidates, key=lambda alert: alert.created_at, default=None)

    async def list_unresolved_alerts(self, created_before: datetime) -> list[SecurityAlert]:
        return [
            alert
            for alert in self._alerts.values()
            if alert.status != "resolved" and alert.created_at < created_before
        ]

    async def list_alerts(self) -> list[SecurityAlert]:
        return sorted(self._alerts.values(), key=lambda alert: alert.created_at)


class InMemoryAuditStore:
    """Sink de auditoria append-only, idempotente por request/evento/entidade."""

    def __init__(self) -> None:
        self._events: dict[tuple[str, str, str], AuditEvent] = {}

    async def add_event(self, event: AuditEvent) -> bool:
        key = (event.request_id, event.event_type, event.entity_id)
        if key in self._events:
            return False
        self._events[key] = event
        return True

    async def list_events(
        self,
        *,
        request_id: str | None = None,
        user_id: str | None = None,
    ) -> list[AuditEvent]:
        return [
            event
            for event in self._events.values()
            if (request_id is None or event.request_id == request_id)
            and (user_id is None or event.user_id == user_id)
        ]

    async def purge_before(self, cutoff: datetime) -> int:
        expired = [key for key, event in self._events.items() if event.timestamp < cutoff]
        for key in expired:
            del self._events[key]
        return len(expired)
