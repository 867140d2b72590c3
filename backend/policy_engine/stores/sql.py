"""Stores SQLAlchemy (PostgreSQL) do motor.

Mesma interface dos stores de ``policy_engine.stores.memory``. Cada método
abre a própria sessão via ``session_factory``; atualizações versionadas
usam ``UPDATE ... WHERE version = :expected`` e falham com
``ConcurrencyConflict`` quando nenhuma linha é afetada.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel
from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import IntegrityError

from policy_engine.core.errors import ConcurrencyConflict, DuplicateGrant
from policy_engine.db.base import AsyncSessionLocal
from policy_engine.db.models import (
    AlertRuleModel,
    AuditEventModel,
    PermissionModel,
    PolicyViolationModel,
    RoleAssignmentModel,
    RoleModel,
    RolePermissionModel,
    SecurityAlertModel,
    SecurityPolicyModel,
    TrustScoreHistoryModel,
    TrustScoreModel,
    TrustSignalModel,
    UserPermissionModel,
)
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


def to_row(model, schema: BaseModel, *, exclude: set[str] | None = None) -> dict[str, Any]:
    """Valores do schema restritos às colunas do modelo ORM."""
    columns = {column.name for column in model.__table__.columns}
    data = schema.model_dump(mode="python")
    return {key: value for key, value in data.items() if key in columns and key not in (exclude or set())}


def from_row(schema, row):
    return schema.model_validate({column.name: getattr(row, column.name) for column in row.__table__.columns})


def _group_clause(column, group_id: Optional[str]):
    """Registros globais (grupo nulo) ou do grupo pedido."""
    if group_id is None:
        return column.is_(None)
    return or_(column.is_(None), column == group_id)


class _SqlStore:
    def __init__(self, session_factory=None) -> None:
        self._session_factory = session_factory or AsyncSessionLocal


class SqlPermissionStore(_SqlStore):
    async def list_permissions(self) -> list[Permission]:
        async with self._session_factory() as db:
            result = await db.execute(select(PermissionModel))
            return [from_row(Permission, row) for row in result.scalars().all()]

    async def get_permission(self, permission_id: str) -> Permission | None:
        async with self._session_factory() as db:
            row = await db.get(PermissionModel, permission_id)
            return from_row(Permission, row) if row is not None else None

    async def save_permission(self, permission: Permission) -> Permission:
        values = to_row(PermissionModel, permission)
        statement = pg_insert(PermissionModel).values(**values)
        statement = statement.on_conflict_do_update(
            index_elements=[PermissionModel.id],
            set_={key: value for key, value in values.items() if key not in {"id", "created_at"}},
        )
        async with self._session_factory() as db:
            await db.execute(statement)
            await db.commit()
        return permission


class SqlRoleStore(_SqlStore):
    async def get_role(self, role_id: str) -> Role | None:
        async with self._session_factory() as db:
            row = await db.get(RoleModel, role_id)
            return from_row(Role, row) if row is not None else None

    async def list_roles(self, group_id: str | None = None) -> list[Role]:
        async with self._session_factory() as db:
            result = await db.execute(select(RoleModel).where(_group_clause(RoleModel.group_id, group_id)))
            return [from_row(Role, row) for row in result.scalars().all()]

    async def list_child_roles(self, role_id: str) -> list[Role]:
        async with self._session_factory() as db:
            result = await db.execute(select(RoleModel).where(RoleModel.parent_role_id == role_id))
            return [from_row(Role, row) for row in result.scalars().all()]

    async def save_role(self, role: Role, expected_version: int | None = None) -> Role:
        async with self._session_factory() as db:
            current = await db.get(RoleModel, role.id)
            if current is None:
                db.add(RoleModel(**to_row(RoleModel, role)))
                await db.commit()
                return role

            version = expected_version if expected_version is not None else current.version
            values = to_row(RoleModel, role, exclude={"id", "version", "created_at"})
            result = await db.execute(
                update(RoleModel)
                .where(RoleModel.id == role.id, RoleModel.version == version)
                .values(**values, version=version + 1)
            )
            if result.rowcount != 1:
                await db.rollback()
                raise ConcurrencyConflict(
                    "versão do papel divergente",
                    role_id=role.id,
                    expected=version,
                )
            await db.commit()
            return role.model_copy(update={"version": version + 1})

    async def list_role_permissions(self, role_id: str) -> list[RolePermission]:
        async with self._session_factory() as db:
            result = await db.execute(select(RolePermissionModel).where(RolePermissionModel.role_id == role_id))
            return [from_row(RolePermission, row) for row in result.scalars().all()]

    async def add_role_permission(self, grant: RolePermission) -> RolePermission:
        async with self._session_factory() as db:
            db.add(RolePermissionModel(**to_row(RolePermissionModel, grant)))
            try:
                await db.commit()
            except IntegrityError as exc:
                await db.rollback()
                raise DuplicateGrant(
                    "permissão já concedida ao papel neste grupo",
                    role_id=grant.role_id,
                    permission_id=grant.permission_id,
                    group_id=grant.group_id,
                ) from exc
        return grant

    async def remove_role_permission(
        self,
        role_id: str,
        permission_id: str,
        group_id: str | None = None,
    ) -> bool:
        group_filter = (
            RolePermissionModel.group_id.is_(None)
            if group_id is None
            else RolePermissionModel.group_id == group_id
        )
        async with self._session_factory() as db:
            result = await db.execute(
                delete(RolePermissionModel).where(
                    RolePermissionModel.role_id == role_id,
                    RolePermissionModel.permission_id == permission_id,
                    group_filter,
                )
            )
            await db.commit()
            return result.rowcount > 0


class SqlUserPermissionStore(_SqlStore):
    async def list_user_permissions(self, user_id: str) -> list[UserPermission]:
        async with self._session_factory() as db:
            result = await db.execute(select(UserPermissionModel).where(UserPermissionModel.user_id == user_id))
            return [from_row(UserPermission, row) for row in result.scalars().all()]

    async def get_user_permission(self, grant_id: str) -> UserPermission | None:
        async with self._session_factory() as db:
            row = await db.get(UserPermissionModel, grant_id)
            return from_row(UserPermission, row) if row is not None else None

    async def add_user_permission(self, grant: UserPermission) -> UserPermission:
        async with self._session_factory() as db:
            db.add(UserPermissionModel(**to_row(UserPermissionModel, grant)))
            try:
                await db.commit()
            except IntegrityError as exc:
                await db.rollback()
                raise DuplicateGrant("grant de usuário já existe", grant_id=grant.id) from exc
        return grant

    async def update_user_permission(self, grant: UserPermission, expected_version: int) -> UserPermission:
        values = to_row(UserPermissionModel, grant, exclude={"id", "version"})
        async with self._session_factory() as db:
            result = await db.execute(
                update(UserPermissionModel)
                .where(UserPermissionModel.id == grant.id, UserPermissionModel.version == expected_version)
                .values(**values, version=expected_version + 1)
            )
            if result.rowcount != 1:
                await db.rollback()
                raise ConcurrencyConflict(
                    "versão do grant divergente",
                    grant_id=grant.id,
                    expected=expected_version,
                )
            await db.commit()
        return grant.model_copy(update={"version": expected_version + 1})


class SqlIdentityProvider(_SqlStore):
    """Atribuições de papéis e sinais de confiança persistidos."""

    async def list_role_assignments(self, user_id: str, group_id: str | None) -> list[RoleAssignment]:
        group_filter = (
            RoleAssignmentModel.group_id.is_(None)
            if group_id is None
            else RoleAssignmentModel.group_id == group_id
        )
        async with self._session_factory() as db:
            result = await db.execute(
                select(RoleAssignmentModel).where(RoleAssignmentModel.user_id == user_id, group_filter)
            )
            return [from_row(RoleAssignment, row) for row in result.scalars().all()]

    async def get_trust_signals(self, user_id: str, device_id: str, ip_address: str) -> TrustSignals:
        async with self._session_factory() as db:
            result = await db.execute(
                select(TrustSignalModel).where(
                    TrustSignalModel.device_id == device_id,
                    or_(
                        TrustSignalModel.ip_address.is_(None),
                        (TrustSignalModel.ip_address == ip_address) & (TrustSignalModel.user_id == user_id),
                    ),
                )
            )
            rows = result.scalars().all()

        # Sinais do dispositivo primeiro; os da tupla completa prevalecem.
        signals = TrustSignals()
        for row in sorted(rows, key=lambda row: row.ip_address is not None):
            signals = signals.merged_with(TrustSignals.model_validate(row.signals or {}))
        return signals


class SqlTrustScoreStore(_SqlStore):
    async def latest(self, user_id: str, device_id: str, ip_address: str) -> TrustScore | None:
        async with self._session_factory() as db:
            result = await db.execute(
                select(TrustScoreModel)
                .where(
                    TrustScoreModel.user_id == user_id,
                    TrustScoreModel.device_id == device_id,
                    TrustScoreModel.ip_address == ip_address,
                    TrustScoreModel.is_active.is_(True),
                )
                .order_by(TrustScoreModel.calculated_at.desc())
                .limit(1)
            )
            row = result.scalars().first()
            return from_row(TrustScore, row) if row is not None else None

    async def append(self, score: TrustScore, history: TrustScoreHistory) -> None:
        """Desativa o snapshot anterior e grava o novo com o histórico numa transação."""
        async with self._session_factory() as db:
            await db.execute(
                update(TrustScoreModel)
                .where(
                    TrustScoreModel.user_id == score.user_id,
                    TrustScoreModel.device_id == score.device_id,
                    TrustScoreModel.ip_address == score.ip_address,
                    TrustScoreModel.is_active.is_(True),
                )
                .values(is_active=False)
            )
            db.add(TrustScoreModel(**to_row(TrustScoreModel, score)))
            db.add(TrustScoreHistoryModel(**to_row(TrustScoreHistoryModel, history)))
            await db.commit()

    async def list_history(
        self,
        user_id: str,
        device_id: str | None = None,
        ip_address: str | None = None,
    ) -> list[TrustScoreHistory]:
        statement = select(TrustScoreHistoryModel).where(TrustScoreHistoryModel.user_id == user_id)
        if device_id is not None:
            statement = statement.where(TrustScoreHistoryModel.device_id == device_id)
        if ip_address is not None:
            statement = statement.where(TrustScoreHistoryModel.ip_address == ip_address)
        async with self._session_factory() as db:
            result = await db.execute(statement.order_by(TrustScoreHistoryModel.changed_at))
            return [from_row(TrustScoreHistory, row) for row in result.scalars().all()]

    async def purge_history(self, before: datetime) -> int:
        async with self._session_factory() as db:
            result = await db.execute(
                delete(TrustScoreHistoryModel).where(TrustScoreHistoryModel.changed_at < before)
            )
            await db.commit()
            return result.rowcount or 0


class SqlPolicyStore(_SqlStore):
    async def list_policies(self, group_id: str | None) -> list[SecurityPolicy]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(SecurityPolicyModel).where(
                    SecurityPolicyModel.is_active.is_(True),
                    _group_clause(SecurityPolicyModel.group_id, group_id),
                )
            )
            return [from_row(SecurityPolicy, row) for row in result.scalars().all()]

    async def count_policies(self) -> int:
        async with self._session_factory() as db:
            result = await db.execute(select(func.count()).select_from(SecurityPolicyModel))
            return int(result.scalar_one())

    async def save_policy(self, policy: SecurityPolicy) -> SecurityPolicy:
        async with self._session_factory() as db:
            await db.merge(SecurityPolicyModel(**to_row(SecurityPolicyModel, policy)))
            await db.commit()
        return policy


class SqlViolationStore(_SqlStore):
    async def add_violation(self, violation: PolicyViolation) -> PolicyViolation:
        async with self._session_factory() as db:
            db.add(PolicyViolationModel(**to_row(PolicyViolationModel, violation)))
            await db.commit()
        return violation

    async def list_violations(self, user_id: str | None = None) -> list[PolicyViolation]:
        statement = select(PolicyViolationModel)
        if user_id is not None:
            statement = statement.where(PolicyViolationModel.user_id == user_id)
        async with self._session_factory() as db:
            result = await db.execute(statement.order_by(PolicyViolationModel.detected_at))
            return [from_row(PolicyViolation, row) for row in result.scalars().all()]


class SqlAlertStore(_SqlStore):
    async def list_rules(self, category: str, group_id: str | None) -> list[AlertRule]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(AlertRuleModel).where(
                    AlertRuleModel.is_active.is_(True),
                    AlertRuleModel.category == category,
                    _group_clause(AlertRuleModel.group_id, group_id),
                )
            )
            return [from_row(AlertRule, row) for row in result.scalars().all()]

    async def count_rules(self) -> int:
        async with self._session_factory() as db:
            result = await db.execute(select(func.count()).select_from(AlertRuleModel))
            return int(result.scalar_one())

    async def save_rule(self, rule: AlertRule) -> AlertRule:
        async with self._session_factory() as db:
            await db.merge(AlertRuleModel(**to_row(AlertRuleModel, rule)))
            await db.commit()
        return rule

    async def add_alert(self, alert: SecurityAlert) -> SecurityAlert:
        async with self._session_factory() as db:
            db.add(SecurityAlertModel(**to_row(SecurityAlertModel, alert)))
            await db.commit()
        return alert

    async def get_alert(self, alert_id: str) -> SecurityAlert | None:
        async with self._session_factory() as db:
            row = await db.get(SecurityAlertModel, alert_id)
            return from_row(SecurityAlert, row) if row is not None else None

    async def update_alert(self, alert: SecurityAlert, expected_version: int) -> SecurityAlert:
        values = to_row(SecurityAlertModel, alert, exclude={"id", "version"})
        async with self._session_factory() as db:
            result = await db.execute(
                update(SecurityAlertModel)
                .where(SecurityAlertModel.id == alert.id, SecurityAlertModel.version == expected_version)
                .values(**values, version=expected_version + 1)
            )
            if result.rowcount != 1:
                await db.rollback()
                raise ConcurrencyConflict("versão do alerta divergente", alert_id=alert.id)
            await db.commit()
        return alert.model_copy(update={"version": expected_version + 1})

    async def latest_open_alert(
        self,
        rule_id: str,
        user_id: str | None,
        resource: str | None,
    ) -> SecurityAlert | None:
        async with self._session_factory() as db:
            result = await db.execute(
                select(SecurityAlertModel)
                .where(
                    SecurityAlertModel.rule_id == rule_id,
                    SecurityAlertModel.user_id.is_(None) if user_id is None else SecurityAlertModel.user_id == user_id,
                    SecurityAlertModel.resource.is_(None) if resource is None else SecurityAlertModel.resource == resource,
                    SecurityAlertModel.status != "resolved",
                )
                .order_by(SecurityAlertModel.created_at.desc())
                .limit(1)
            )
            row = result.scalars().first()
            return from_row(SecurityAlert, row) if row is not None else None

    async def list_unresolved_alerts(self, created_before: datetime) -> list[SecurityAlert]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(SecurityAlertModel).where(
                    SecurityAlertModel.status != "resolved",
                    SecurityAlertModel.created_at < created_before,
                )
            )
            return [from_row(SecurityAlert, row) for row in result.scalars().all()]

    async def list_alerts(self) -> list[SecurityAlert]:
        async with self._session_factory() as db:
            result = await db.execute(select(SecurityAlertModel).order_by(SecurityAlertModel.created_at))
            return [from_row(SecurityAlert, row) for row in result.scalars().all()]


class SqlAuditStore(_SqlStore):
    """Insert idempotente por ``(request_id, event_type, entity_id)``."""

    async def add_event(self, event: AuditEvent) -> bool:
        statement = (
            pg_insert(AuditEventModel)
            .values(**to_row(AuditEventModel, event))
            .on_conflict_do_nothing(index_elements=["request_id", "event_type", "entity_id"])
        )
        async with self._session_factory() as db:
            result = await db.execute(statement)
            await db.commit()
            return result.rowcount == 1

    async def list_events(
        self,
        *,
        request_id: str | None = None,
        user_id: str | None = None,
    ) -> list[AuditEvent]:
        statement = select(AuditEventModel)
        if request_id is not None:
            statement = statement.where(AuditEventModel.request_id == request_id)
        if user_id is not None:
            statement = statement.where(AuditEventModel.user_id == user_id)
        async with self._session_factory() as db:
            result = await db.execute(statement.order_by(AuditEventModel.timestamp))
            return [from_row(AuditEvent, row) for row in result.scalars().all()]

    async def purge_before(self, cutoff: datetime) -> int:
        async with self._session_factory() as db:
            result = await db.execute(delete(AuditEventModel).where(AuditEventModel.timestamp < cutoff))
            await db.commit()
            return result.rowcount or 0
