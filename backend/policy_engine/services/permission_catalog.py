"""
Catálogo canônico de permissões: hierarquia, padrões wildcard e desempate.

Padrões usam glob por segmento sobre ``resource:action`` (``:`` e ``.`` separam
segmentos). ``*`` casa dentro de um segmento; ``**`` só é aceito como último
segmento e casa um ou mais segmentos restantes. O matching ignora caixa.

Quando várias permissões casam o mesmo pedido a ordem é determinística:
prioridade (desc), não-wildcard antes de wildcard, ``level`` (desc),
ordem de criação e, por fim, id.
"""

from __future__ import annotations

import re
from collections import defaultdict
from functools import lru_cache
from typing import Optional

from policy_engine.config import get_settings
from policy_engine.core.cache import PartitionedTTLCache
from policy_engine.core.errors import CycleDetected, InvalidPattern, PermissionNotFound
from policy_engine.core.logging import get_logger
from policy_engine.schemas.permissions import Permission

logger = get_logger(__name__)

_SEGMENT_CHARS = re.compile(r"^[a-z0-9_\-*]+$")
_SEPARATOR_SPLIT = re.compile(r"([:.])")
_SINGLE_SEGMENT = "[^:.]*"
_MULTI_SEGMENT = "[^:.]+(?:[:.][^:.]+)*"

_CATALOG_PARTITION = ("catalog",)


@lru_cache(maxsize=4096)
def compile_pattern(pattern: str) -> re.Pattern[str]:
    """Compila um padrão glob em regex ancorada; ``InvalidPattern`` se inválido."""
    normalized = (pattern or "").strip().lower()
    if not normalized:
        raise InvalidPattern("padrão vazio", pattern=pattern)

    parts = _SEPARATOR_SPLIT.split(normalized)
    segments, separators = parts[0::2], parts[1::2]
    regex: list[str] = []
    for index, segment in enumerate(segments):
        is_last = index == len(segments) - 1
        if not segment:
            raise InvalidPattern("segmento vazio", pattern=pattern)
        if segment == "**":
            if not is_last:
                raise InvalidPattern("'**' só é permitido no último segmento", pattern=pattern)
            regex.append(_MULTI_SEGMENT)
        else:
            if "**" in segment or not _SEGMENT_CHARS.match(segment):
                raise InvalidPattern("segmento inválido", pattern=pattern, segment=segment)
            regex.append("".join(_SINGLE_SEGMENT if ch == "*" else re.escape(ch) for ch in segment))
        if not is_last:
            regex.append(re.escape(separators[index]))

    return re.compile("^" + "".join(regex) + "$")


def request_key(resource: str, action: str) -> str:
    return f"{resource}:{action}".strip().lower()


def pattern_matches(pattern: str, resource: str, action: str) -> bool:
    return compile_pattern(pattern).match(request_key(resource, action)) is not None


def precedence_key(permission: Permission) -> tuple:
    return (
        -permission.priority,
        permission.is_wildcard,
        -permission.level,
        permission.created_at,
        permission.id,
    )


def _looks_like_pattern(value: str) -> bool:
    return ":" in value or "*" in value


def _lineage(permission: Permission, by_id: dict[str, Permission]) -> list[str]:
    """Ids da raiz até ``permission``, com guarda de ciclo iterativa."""
    chain = [permission.id]
    seen = {permission.id}
    current = permission
    while current.parent_id is not None:
        if current.parent_id in seen:
            raise CycleDetected(
                "ciclo na hierarquia de permissões",
                permission_id=permission.id,
                repeated_id=current.parent_id,
            )
        parent = by_id.get(current.parent_id)
        if parent is None:
            raise PermissionNotFound(
                "permissão pai inexistente",
                permission_id=current.id,
                parent_id=current.parent_id,
            )
        seen.add(parent.id)
        chain.append(parent.id)
        current = parent
    chain.reverse()
    return chain


class CatalogSnapshot:
    """Visão imutável e validada do catálogo, ordenada por precedência."""

    def __init__(self, permissions: list[Permission]) -> None:
        ordered = sorted(permissions, key=precedence_key)
        self.permissions: tuple[Permission, ...] = tuple(ordered)
        self.by_id: dict[str, Permission] = {permission.id: permission for permission in ordered}
        self._by_key: dict[str, list[Permission]] = defaultdict(list)
        self._wildcards: list[Permission] = []
        self._children: dict[str, list[Permission]] = defaultdict(list)
        for permission in ordered:
            if permission.parent_id is not None:
                self._children[permission.parent_id].append(permission)
            if not permission.is_active:
                continue
            if permission.is_wildcard:
                self._wildcards.append(permission)
            else:
                self._by_key[permission.key].append(permission)

    @classmethod
    def build(cls, permissions: list[Permission]) -> "CatalogSnapshot":
        """Recalcula ``path``/``level`` e descarta permissões corrompidas."""
        by_id = {permission.id: permission for permission in permissions}
        valid: list[Permission] = []
        for permission in permissions:
            try:
                if permission.is_wildcard:
                    compile_pattern(permission.match_pattern)
                lineage = _lineage(permission, by_id)
            except (CycleDetected, InvalidPattern, PermissionNotFound) as exc:
                logger.error("permission_catalog_entry_rejected", **exc.to_log(permission_id=permission.id))
                continue

            path = "/".join(lineage)
            level = len(lineage) - 1
            if permission.path != path or permission.level != level:
                logger.warning(
                    "permission_path_recomputed",
                    permission_id=permission.id,
                    stored_path=permission.path,
                    path=path,
                )
                permission = permission.model_copy(update={"path": path, "level": level})
            valid.append(permission)
        return cls(valid)

    def match(self, resource: str, action: str) -> tuple[Permission, ...]:
        key = request_key(resource, action)
        candidates = list(self._by_key.get(key, []))
        candidates.extend(
            permission
            for permission in self._wildcards
            if compile_pattern(permission.match_pattern).match(key)
        )
        return tuple(sorted(candidates, key=precedence_key))

    def children(self, permission_id: str) -> list[Permission]:
        return list(self._children.get(permission_id, []))


class PermissionCatalog:
    """Registro canônico de permissões com cache de leitura injetado."""

    def __init__(self, store, cache: PartitionedTTLCache | None = None) -> None:
        settings = get_settings()
        self._store = store
        self._cache = cache or PartitionedTTLCache(
            "catalog",
            settings.catalog_cache_ttl_seconds,
            max_entries=settings.cache_max_entries,
        )

    async def snapshot(self) -> CatalogSnapshot:
        return await self._cache.get_or_load(_CATALOG_PARTITION, None, self._load)

    async def _load(self) -> CatalogSnapshot:
        permissions = await self._store.list_permissions()
        return CatalogSnapshot.build(permissions)

    def invalidate(self) -> None:
        self._cache.invalidate(_CATALOG_PARTITION)

    async def get(self, permission_id: str) -> Permission:
        """Busca direta por id; ``PermissionNotFound`` quando ausente."""
        snapshot = await self.snapshot()
        permission = snapshot.by_id.get(permission_id)
        if permission is None:
            raise PermissionNotFound("permissão não encontrada", permission_id=permission_id)
        return permission

    async def resolve(self, pattern_or_id: str) -> tuple[Permission, ...]:
        """Permissões ativas designadas por um id ou por um padrão, em ordem de precedência."""
        if not _looks_like_pattern(pattern_or_id):
            permission = await self.get(pattern_or_id)
            return (permission,) if permission.is_active else ()

        compiled = compile_pattern(pattern_or_id)
        snapshot = await self.snapshot()
        return tuple(
            permission
            for permission in snapshot.permissions
            if permission.is_active and compiled.match(permission.match_pattern)
        )

    def matches(self, requested: tuple[str, str], candidate: Permission) -> bool:
        """Indica se ``candidate`` cobre o pedido ``(resource, action)``."""
        if not candidate.is_active:
            return False
        resource, action = requested
        if not candidate.is_wildcard:
            return candidate.key == request_key(resource, action)
        try:
            return pattern_matches(candidate.match_pattern, resource, action)
        except InvalidPattern:
            return False

    async def match_request(self, resource: str, action: str) -> tuple[Permission, ...]:
        snapshot = await self.snapshot()
        return snapshot.match(resource, action)

    async def best_match(self, resource: str, action: str) -> Optional[Permission]:
        matched = await self.match_request(resource, action)
        return matched[0] if matched else None

    async def expand(self, permission_id: str) -> tuple[Permission, ...]:
        """Descendentes alcançados por herança (``inherits_from_parent`` ou implícitos)."""
        snapshot = await self.snapshot()
        if permission_id not in snapshot.by_id:
            raise PermissionNotFound("permissão não encontrada", permission_id=permission_id)

        expanded: list[Permission] = []
        visited = {permission_id}
        pending = [permission_id]
        while pending:
            current = pending.pop()
            for child in snapshot.children(current):
                if child.id in visited:
                    continue
                visited.add(child.id)
                if child.is_active and (child.inherits_from_parent or child.is_implicit):
                    expanded.append(child)
                    pending.append(child.id)
        return tuple(sorted(expanded, key=precedence_key))

    async def register(self, permission: Permission) -> Permission:
        """Valida e persiste uma permissão, recalculando ``path``/``level`` da subárvore."""
        if permission.parent_id == permission.id:
            raise CycleDetected("permissão não pode ser pai de si mesma", permission_id=permission.id)
        if permission.is_wildcard:
            compile_pattern(permission.match_pattern)
        elif (
            not permission.resource.strip()
            or not permission.action.strip()
            or ":" in permission.resource
            or ":" in permission.action
        ):
            raise InvalidPattern("resource/action inválidos", permission_id=permission.id)

        by_id = {item.id: item for item in await self._store.list_permissions()}
        by_id[permission.id] = permission
        lineage = _lineage(permission, by_id)
        saved = await self._store.save_permission(
            permission.model_copy(update={"path": "/".join(lineage), "level": len(lineage) - 1})
        )
        by_id[saved.id] = saved

        # Reconstrói caminhos dos descendentes (iterativo, com guarda de visitados).
        visited = {saved.id}
        pending = [saved]
        while pending:
            parent = pending.pop()
            for child in [item for item in by_id.values() if item.parent_id == parent.id]:
                if child.id in visited:
                    continue
                visited.add(child.id)
                rebuilt = child.model_copy(
                    update={"path": f"{parent.path}/{child.id}", "level": parent.level + 1}
                )
                if rebuilt != child:
                    rebuilt = await self._store.save_permission(rebuilt)
                    by_id[rebuilt.id] = rebuilt
                pending.append(rebuilt)

        self.invalidate()
        logger.info("permission_registered", permission_id=saved.id, path=saved.path)
        return saved
