"""
Merge de permissões de papéis com overrides explícitos por usuário.

Precedência (maior primeiro):
  1. ``UserPermission`` deny ativo: veto incondicional;
  2. ``UserPermission`` allow ativo;
  3. permissões derivadas dos papéis ativos do usuário no grupo;
  4. padrão: deny.

Janelas são semiabertas: um grant vale em ``[valid_from, expires_at)``.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict

from policy_engine.config import get_settings
from policy_engine.core.cache import PartitionedTTLCache
from policy_engine.core.conditions import ConditionContext, ConditionEvaluator
from policy_engine.core.errors import (
    ExpiredGrant,
    GroupMismatch,
    InvalidPattern,
    PermissionNotFound,
    PolicyEngineError,
)
from policy_engine.core.logging import get_logger
from policy_engine.schemas.permissions import (
    GrantSource,
    GrantType,
    Permission,
    RoleAssignment,
    UserPermission,
)
from policy_engine.services.permission_catalog import (
    PermissionCatalog,
    compile_pattern,
    precedence_key,
    request_key,
)
from policy_engine.services.role_hierarchy import RoleHierarchyResolver

logger = get_logger(__name__)

_SOURCE_RANK: dict[str, int] = {"user_deny": 0, "user_allow": 1, "role": 2}


def _in_window(now: datetime, start: Optional[datetime], end: Optional[datetime]) -> Optional[str]:
    """``None`` quando ``now`` está em ``[start, end)``; senão o tipo de aviso."""
    if start is not None and now < start:
        return "not_yet_valid"
    if end is not None and now >= end:
        return "expired_grant"
    return None


class GrantDecision(BaseModel):
    """Entrada do ``DecisionSet``: uma permissão (ou padrão) com seu efeito."""

    model_config = ConfigDict(frozen=True)

    effect: GrantType
    source: GrantSource
    permission: Optional[Permission] = None
    pattern: Optional[str] = None
    grant_id: Optional[str] = None
    role_id: Optional[str] = None
    priority: int = 0

    def applies_to(self, catalog: PermissionCatalog, resource: str, action: str) -> bool:
        if self.pattern is not None:
            return compile_pattern(self.pattern).match(request_key(resource, action)) is not None
        return self.permission is not None and catalog.matches((resource, action), self.permission)

    def order(self) -> tuple:
        permission_order = precedence_key(self.permission) if self.permission else (0, True, 0)
        return (_SOURCE_RANK[self.source], -self.priority, permission_order[:3])


class DecisionSet:
    """Resultado de ``effective_grants``: efeitos por permissão + avisos informativos."""

    def __init__(
        self,
        entries: list[GrantDecision],
        catalog: PermissionCatalog,
        permissions: tuple[Permission, ...] = (),
        notices: list[PolicyEngineError] | None = None,
    ) -> None:
        self.entries = sorted(entries, key=lambda entry: entry.order())
        self.notices = list(notices or [])
        self._catalog = catalog
        self.effects = self._build_effects(permissions)

    def _build_effects(self, permissions: tuple[Permission, ...]) -> dict[str, GrantType]:
        """Mapa permissão → allow/deny; entradas de maior precedência sobrescrevem."""
        effects: dict[str, GrantType] = {}
        for entry in reversed(self.entries):
            if entry.permission is not None:
                effects[entry.permission.id] = entry.effect
                continue
            for permission in permissions:
                if compile_pattern(entry.pattern).match(permission.match_pattern):
                    effects[permission.id] = entry.effect
        return effects

    def decide(self, resource: str, action: str) -> Optional[GrantDecision]:
        """Entrada vencedora para o pedido; ``None`` significa deny padrão."""
        for entry in self.entries:
            if entry.applies_to(self._catalog, resource, action):
                return entry
        return None

    def effect_for(self, permission_id: str) -> GrantType:
        return self.effects.get(permission_id, "deny")

    def has_notice(self, kind: type[PolicyEngineError]) -> bool:
        return any(isinstance(notice, kind) for notice in self.notices)


class GrantStore:
    """Calcula grants efetivos e aplica mutações com concorrência otimista."""

    def __init__(
        self,
        store,
        identity_provider,
        catalog: PermissionCatalog,
        resolver: RoleHierarchyResolver,
        *,
        cache: PartitionedTTLCache | None = None,
        condition_evaluator: ConditionEvaluator | None = None,
        audit_service=None,
    ) -> None:
        settings = get_settings()
        self._store = store
        self._identity = identity_provider
        self._catalog = catalog
        self._resolver = resolver
        self._conditions = condition_evaluator or ConditionEvaluator()
        self._audit = audit_service
        self._cache = cache or PartitionedTTLCache(
            "grant",
            settings.grant_cache_ttl_seconds,
            max_entries=settings.cache_max_entries,
        )

    async def _load_user(
        self,
        user_id: str,
        group_id: Optional[str],
    ) -> tuple[tuple[UserPermission, ...], tuple[RoleAssignment, ...]]:
        async def _load():
            grants = await self._store.list_user_permissions(user_id)
            assignments = await self._identity.list_role_assignments(user_id, group_id)
            return tuple(grants), tuple(assignments)

        return await self._cache.get_or_load(("user", user_id, group_id), None, _load)

    async def effective_grants(
        self,
        user_id: str,
        group_id: Optional[str],
        now: datetime,
        context: ConditionContext | None = None,
    ) -> DecisionSet:
        """Monta o ``DecisionSet`` do usuário no grupo para o instante ``now``."""
        context = context or ConditionContext(user_id=user_id, group_id=group_id, now=now)
        user_grants, assignments = await self._load_user(user_id, group_id)
        snapshot = await self._catalog.snapshot()
        entries: list[GrantDecision] = []
        notices: list[PolicyEngineError] = []

        for grant in user_grants:
            if not grant.is_active:
                continue
            if grant.group_id is not None and grant.group_id != group_id:
                notices.append(GroupMismatch(grant_id=grant.id, grant_group=grant.group_id, group_id=group_id))
                continue
            window = _in_window(now, grant.valid_from, grant.expires_at)
            if window is not None:
                notices.append(ExpiredGrant(grant_id=grant.id, kind=window))
                continue
            satisfied = self._conditions.evaluate(grant.conditions, context)
            # Condição ilegível nunca concede acesso, mas mantém um deny de pé.
            if satisfied is False or (satisfied is None and grant.type == "allow"):
                logger.info("user_grant_condition_unmet", grant_id=grant.id, type=grant.type)
                continue
            entries.extend(await self._user_entries(grant, notices))

        for assignment in assignments:
            if not assignment.is_active or _in_window(now, None, assignment.expires_at):
                continue
            role = await self._resolver.get_role(assignment.role_id)
            if role.group_id is not None and role.group_id != group_id:
                notices.append(GroupMismatch(role_id=role.id, role_group=role.group_id, group_id=group_id))
                continue
            for effective in await self._resolver.effective_permissions(role.id, group_id):
                window = _in_window(now, effective.valid_from, effective.valid_until)
                if window is not None:
                    notices.append(
                        ExpiredGrant(role_id=effective.role_id, permission_id=effective.permission.id, kind=window)
                    )
                    continue
                if not self._conditions.is_satisfied(effective.conditions, context):
                    continue
                entries.append(
                    GrantDecision(
                        effect="allow",
                        source="role",
                        permission=effective.permission,
                        role_id=effective.role_id,
                        priority=effective.permission.priority,
                    )
                )

        if notices:
            logger.info(
                "grant_notices",
                user_id=user_id,
                notices=[notice.code for notice in notices],
            )
        return DecisionSet(entries, self._catalog, snapshot.permissions, notices)

    async def _user_entries(
        self,
        grant: UserPermission,
        notices: list[PolicyEngineError],
    ) -> list[GrantDecision]:
        source = "user_deny" if grant.type == "deny" else "user_allow"
        if grant.permission_pattern is not None:
            try:
                compile_pattern(grant.permission_pattern)
            except InvalidPattern as exc:
                logger.error("user_grant_invalid_pattern", **exc.to_log(grant_id=grant.id))
                if grant.type == "deny":
                    # Deny ilegível vira veto total: nunca abre acesso.
                    return [GrantDecision(effect="deny", source=source, pattern="**", grant_id=grant.id)]
                return []
            return [
                GrantDecision(
                    effect=grant.type,
                    source=source,
                    pattern=grant.permission_pattern.strip().lower(),
                    grant_id=grant.id,
                    priority=grant.priority,
                )
            ]

        try:
            permission = await self._catalog.get(grant.permission_id)
        except PermissionNotFound as exc:
            notices.append(exc)
            return []
        targets = (permission, *await self._catalog.expand(permission.id))
        return [
            GrantDecision(
                effect=grant.type,
                source=source,
                permission=target,
                grant_id=grant.id,
                priority=grant.priority,
            )
            for target in targets
        ]

    # ── Mutações ───────────────────────────────────────────────────────────

    def invalidate_user(self, user_id: str, group_id: Optional[str] = None, *, all_groups: bool = False) -> int:
        if all_groups:
            return self._cache.invalidate_prefix("user", user_id)
        return self._cache.invalidate(("user", user_id, group_id))

    async def grant_user_permission(
        self,
        grant: UserPermission,
        *,
        actor_id: Optional[str] = None,
    ) -> UserPermission:
        """Cria grant/deny explícito; valida alvo e invalida só a partição do usuário."""
        if grant.permission_pattern is not None:
            compile_pattern(grant.permission_pattern)
        else:
            await self._catalog.get(grant.permission_id)

        saved = await self._store.add_user_permission(grant)
        self.invalidate_user(saved.user_id, saved.group_id, all_groups=saved.group_id is None)
        if self._audit is not None:
            await self._audit.record_change(
                event_type="permission_granted",
                entity_type="user_permission",
                entity_id=saved.id,
                action=saved.type,
                user_id=actor_id,
                group_id=saved.group_id,
                new_values=saved.model_dump(mode="json"),
            )
        return saved

    async def revoke_user_permission(
        self,
        grant_id: str,
        expected_version: int,
        *,
        actor_id: Optional[str] = None,
    ) -> UserPermission:
        """Desativa um grant; ``ConcurrencyConflict`` se a versão mudou."""
        current = await self._store.get_user_permission(grant_id)
        if current is None:
            raise PermissionNotFound("grant de usuário não encontrado", grant_id=grant_id)

        revoked = await self._store.update_user_permission(
            current.model_copy(update={"is_active": False}),
            expected_version=expected_version,
        )
        self.invalidate_user(revoked.user_id, revoked.group_id, all_groups=revoked.group_id is None)
        if self._audit is not None:
            await self._audit.record_change(
                event_type="permission_revoked",
                entity_type="user_permission",
                entity_id=grant_id,
                action="revoke",
                user_id=actor_id,
                group_id=revoked.group_id,
                old_values=current.model_dump(mode="json"),
                new_values=revoked.model_dump(mode="json"),
            )
        return revoked
