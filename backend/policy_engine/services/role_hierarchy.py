"""
Resolução de papéis hierárquicos em permissões efetivas.

A hierarquia é um arena de papéis indexados por id com links explícitos
para o pai. Toda travessia é iterativa e guarda os ids visitados: um ciclo
persistido gera ``CycleDetected`` em vez de recursão infinita. Os campos
denormalizados ``hierarchy_level``/``hierarchy_path`` são recalculados nas
escritas e nunca usados para decidir acesso.
"""

from __future__ import annotations

from collections import defaultdict
from typing import Optional

from policy_engine.config import get_settings
from policy_engine.core.cache import PartitionedTTLCache
from policy_engine.core.errors import (
    CycleDetected,
    GroupMismatch,
    InvalidHierarchy,
    RoleNotFound,
)
from policy_engine.core.logging import get_logger
from policy_engine.schemas.permissions import (
    MAX_HIERARCHY_LEVEL,
    EffectiveGrant,
    PermissionConflict,
    Role,
    RoleInheritance,
    RolePermission,
)
from policy_engine.services.permission_catalog import PermissionCatalog, precedence_key

logger = get_logger(__name__)


def _grant_order(grant: EffectiveGrant) -> tuple:
    return (-grant.role_priority, grant.depth, precedence_key(grant.permission))


class RoleHierarchyResolver:
    """Expande papéis em permissões efetivas com cache por ``(role_id, group_id)``."""

    def __init__(
        self,
        store,
        catalog: PermissionCatalog,
        cache: PartitionedTTLCache | None = None,
        audit_service=None,
    ) -> None:
        settings = get_settings()
        self._store = store
        self._catalog = catalog
        self._audit = audit_service
        self._cache = cache or PartitionedTTLCache(
            "role",
            settings.role_cache_ttl_seconds,
            max_entries=settings.cache_max_entries,
        )

    async def get_role(self, role_id: str) -> Role:
        role = await self._store.get_role(role_id)
        if role is None:
            raise RoleNotFound("papel não encontrado", role_id=role_id)
        return role

    # ── Leitura ────────────────────────────────────────────────────────────

    async def ancestor_chain(self, role_id: str) -> list[Role]:
        """Papel e ancestrais dos quais herda, do próprio papel até a raiz efetiva.

        A subida continua enquanto o papel *filho* tem ``inherit_permissions``.
        """
        current = await self.get_role(role_id)
        chain: list[Role] = []
        visited: set[str] = set()
        while True:
            if current.id in visited:
                raise CycleDetected(
                    "ciclo na hierarquia de papéis",
                    role_id=role_id,
                    repeated_id=current.id,
                )
            visited.add(current.id)
            chain.append(current)

            if not current.inherit_permissions or current.parent_role_id is None:
                break
            parent = await self._store.get_role(current.parent_role_id)
            if parent is None:
                logger.warning("role_parent_missing", role_id=current.id, parent_id=current.parent_role_id)
                break
            if not parent.is_active:
                break
            current = parent
        return chain

    async def effective_permissions(
        self,
        role_id: str,
        group_id: Optional[str] = None,
    ) -> tuple[EffectiveGrant, ...]:
        """Permissões efetivas do papel no grupo, ordenadas por prioridade (desc)."""

        async def _load() -> tuple[EffectiveGrant, ...]:
            return await self._compute_effective(role_id, group_id)

        return await self._cache.get_or_load(("role", role_id, group_id), None, _load)

    async def _compute_effective(
        self,
        role_id: str,
        group_id: Optional[str],
    ) -> tuple[EffectiveGrant, ...]:
        chain = await self.ancestor_chain(role_id)
        if not chain[0].is_active:
            return ()

        snapshot = await self._catalog.snapshot()
        grants: list[EffectiveGrant] = []
        for depth, role in enumerate(chain):
            for role_permission in await self._store.list_role_permissions(role.id):
                if not role_permission.is_active:
                    continue
                if role_permission.group_id is not None and role_permission.group_id != group_id:
                    continue
                permission = snapshot.by_id.get(role_permission.permission_id)
                if permission is None or not permission.is_active:
                    logger.warning(
                        "role_permission_dangling",
                        role_id=role.id,
                        permission_id=role_permission.permission_id,
                    )
                    continue

                grant = EffectiveGrant(
                    permission=permission,
                    role_id=role.id,
                    requested_role_id=role_id,
                    role_priority=role.priority,
                    depth=depth,
                    group_id=role_permission.group_id,
                    granted_at=role_permission.granted_at,
                    valid_from=role_permission.valid_from,
                    valid_until=role_permission.valid_until,
                    conditions=role_permission.conditions,
                )
                grants.append(grant)
                for child in await self._catalog.expand(permission.id):
                    grants.append(
                        grant.model_copy(
                            update={"permission": child, "inherited_from_permission": permission.id}
                        )
                    )

        grants.sort(key=_grant_order)
        return tuple(grants)

    async def descendants(self, role_id: str) -> list[Role]:
        """Subárvore abaixo do papel (busca em largura, ignora arestas repetidas)."""
        found: list[Role] = []
        visited = {role_id}
        pending = [role_id]
        while pending:
            current = pending.pop(0)
            for child in await self._store.list_child_roles(current):
                if child.id in visited:
                    logger.error("role_hierarchy_cycle_in_subtree", role_id=role_id, repeated_id=child.id)
                    continue
                visited.add(child.id)
                found.append(child)
                pending.append(child.id)
        return found

    async def inheritance_chain(self, role_id: str) -> list[RoleInheritance]:
        chain = await self.ancestor_chain(role_id)
        links: list[RoleInheritance] = []
        for depth, role in enumerate(chain):
            grants = await self._store.list_role_permissions(role.id)
            links.append(
                RoleInheritance(
                    role_id=role.id,
                    role_name=role.name,
                    hierarchy_level=role.hierarchy_level,
                    depth=depth,
                    permission_ids=sorted({g.permission_id for g in grants if g.is_active}),
                )
            )
        return links

    async def permission_conflicts(self, role_id: str) -> list[PermissionConflict]:
        """Permissões concedidas em mais de um papel da cadeia de herança."""
        holders: dict[str, list[str]] = defaultdict(list)
        for link in await self.inheritance_chain(role_id):
            for permission_id in link.permission_ids:
                holders[permission_id].append(link.role_id)
        return [
            PermissionConflict(permission_id=permission_id, role_ids=role_ids)
            for permission_id, role_ids in sorted(holders.items())
            if len(role_ids) > 1
        ]

    async def can_manage(self, manager_role_id: str, target_role_id: str) -> bool:
        """Nível menor gerencia nível maior; no mesmo nível, prioridade maior vence."""
        manager = await self.get_role(manager_role_id)
        target = await self.get_role(target_role_id)
        if target.is_system_role and not manager.is_system_role:
            return False
        if manager.hierarchy_level != target.hierarchy_level:
            return manager.hierarchy_level < target.hierarchy_level
        return manager.priority > target.priority

    # ── Escrita (preserva invariantes e invalida a subárvore) ─────────────

    async def invalidate_subtree(self, role_id: str) -> int:
        role_ids = [role_id, *(role.id for role in await self.descendants(role_id))]
        return sum(self._cache.invalidate_prefix("role", rid) for rid in role_ids)

    async def _lineage_ids(self, role: Role) -> list[str]:
        """Ids da raiz até ``role`` seguindo todos os links de pai."""
        ids = [role.id]
        visited = {role.id}
        current = role
        while current.parent_role_id is not None:
            if current.parent_role_id in visited:
                raise CycleDetected("ciclo na hierarquia de papéis", role_id=role.id)
            current = await self.get_role(current.parent_role_id)
            visited.add(current.id)
            ids.append(current.id)
        ids.reverse()
        return ids

    async def set_parent(
        self,
        role_id: str,
        parent_role_id: Optional[str],
        *,
        actor_id: Optional[str] = None,
    ) -> Role:
        """Move um papel na hierarquia, recalculando nível e caminho da subárvore."""
        role = await self.get_role(role_id)
        if parent_role_id == role_id:
            raise InvalidHierarchy("papel não pode ser pai de si mesmo", role_id=role_id)

        subtree = await self.descendants(role_id)
        if parent_role_id is None:
            base_path: list[str] = []
        else:
            parent = await self.get_role(parent_role_id)
            if parent.id in {child.id for child in subtree}:
                raise InvalidHierarchy(
                    "pai não pode ser descendente do papel",
                    role_id=role_id,
                    parent_role_id=parent_role_id,
                )
            if parent.group_id is not None and parent.group_id != role.group_id:
                raise InvalidHierarchy("pai pertence a outro grupo", role_id=role_id)
            base_path = await self._lineage_ids(parent)

        level = len(base_path)
        depths = await self._subtree_depths(role_id)
        if level + max(depths.values(), default=0) > MAX_HIERARCHY_LEVEL:
            raise InvalidHierarchy(
                f"hierarquia excede {MAX_HIERARCHY_LEVEL} níveis",
                role_id=role_id,
            )

        updated = await self._store.save_role(
            role.model_copy(
                update={
                    "parent_role_id": parent_role_id,
                    "hierarchy_level": level,
                    "hierarchy_path": "/".join([*base_path, role.id]),
                }
            ),
            expected_version=role.version,
        )
        await self._rebuild_subtree(updated)
        await self.invalidate_subtree(role_id)

        if self._audit is not None:
            await self._audit.record_change(
                event_type="role_hierarchy_changed",
                entity_type="role",
                entity_id=role_id,
                action="set_parent",
                user_id=actor_id,
                group_id=role.group_id,
                old_values={"parent_role_id": role.parent_role_id, "hierarchy_level": role.hierarchy_level},
                new_values={"parent_role_id": parent_role_id, "hierarchy_level": level},
            )
        logger.info("role_parent_changed", role_id=role_id, parent_role_id=parent_role_id, level=level)
        return updated

    async def _subtree_depths(self, role_id: str) -> dict[str, int]:
        depths = {role_id: 0}
        pending = [role_id]
        while pending:
            current = pending.pop(0)
            for child in await self._store.list_child_roles(current):
                if child.id in depths:
                    continue
                depths[child.id] = depths[current] + 1
                pending.append(child.id)
        return depths

    async def _rebuild_subtree(self, root: Role) -> None:
        visited = {root.id}
        pending = [root]
        while pending:
            parent = pending.pop(0)
            for child in await self._store.list_child_roles(parent.id):
                if child.id in visited:
                    continue
                visited.add(child.id)
                level = parent.hierarchy_level + 1
                path = f"{parent.hierarchy_path}/{child.id}"
                if child.hierarchy_level != level or child.hierarchy_path != path:
                    child = await self._store.save_role(
                        child.model_copy(update={"hierarchy_level": level, "hierarchy_path": path}),
                        expected_version=child.version,
                    )
                pending.append(child)

    async def add_role_permission(
        self,
        grant: RolePermission,
        *,
        actor_id: Optional[str] = None,
    ) -> RolePermission:
        """Concede permissão ao papel; ``(role_id, permission_id, group_id)`` é único."""
        role = await self.get_role(grant.role_id)
        await self._catalog.get(grant.permission_id)
        if role.group_id is not None and grant.group_id not in (None, role.group_id):
            raise GroupMismatch(
                "grant em grupo diferente do papel",
                role_id=role.id,
                group_id=grant.group_id,
            )

        saved = await self._store.add_role_permission(grant)
        await self.invalidate_subtree(role.id)
        if self._audit is not None:
            await self._audit.record_change(
                event_type="role_permission_changed",
                entity_type="role_permission",
                entity_id=f"{grant.role_id}:{grant.permission_id}",
                action="grant",
                user_id=actor_id,
                group_id=grant.group_id,
                new_values=saved.model_dump(mode="json"),
            )
        return saved

    async def remove_role_permission(
        self,
        role_id: str,
        permission_id: str,
        group_id: Optional[str] = None,
        *,
        actor_id: Optional[str] = None,
    ) -> bool:
        removed = await self._store.remove_role_permission(role_id, permission_id, group_id)
        if not removed:
            return False

        await self.invalidate_subtree(role_id)
        if self._audit is not None:
            await self._audit.record_change(
                event_type="role_permission_changed",
                entity_type="role_permission",
                entity_id=f"{role_id}:{permission_id}",
                action="revoke",
                user_id=actor_id,
                group_id=group_id,
                old_values={"role_id": role_id, "permission_id": permission_id, "group_id": group_id},
            )
        return True
