"""
Schemas do catálogo de permissões, papéis e grants.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

GrantType = Literal["allow", "deny"]
GrantSource = Literal["user_deny", "user_allow", "role"]
GrantNoticeKind = Literal["expired_grant", "not_yet_valid", "group_mismatch", "permission_not_found"]

MAX_HIERARCHY_LEVEL = 10


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Permission(BaseModel):
    """Nó ``(resource, action)`` do catálogo hierárquico de permissões."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Identificador da permissão")
    name: str = Field(..., description="Nome legível")
    resource: str = Field(..., description="Recurso protegido (ex.: users)")
    action: str = Field(..., description="Ação sobre o recurso (ex.: read)")
    service_id: Optional[str] = Field(None, description="Serviço dono da permissão")
    parent_id: Optional[str] = Field(None, description="Permissão pai na hierarquia")
    path: str = Field("", description="Cadeia de ids ancestrais separada por '/'")
    level: int = Field(0, ge=0, description="Profundidade na hierarquia")
    priority: int = Field(0, description="Prioridade no desempate de matches")
    is_wildcard: bool = False
    wildcard_pattern: Optional[str] = Field(
        None,
        description="Padrão glob sobre resource:action (ex.: users:*)",
    )
    inherits_from_parent: bool = True
    is_implicit: bool = False
    is_active: bool = True
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def key(self) -> str:
        """Chave canônica ``resource:action`` em minúsculas."""
        return f"{self.resource}:{self.action}".lower()

    @property
    def match_pattern(self) -> str:
        """Padrão usado no matching (o próprio key quando não é wildcard)."""
        if self.is_wildcard:
            return (self.wildcard_pattern or self.key).lower()
        return self.key


class Role(BaseModel):
    """Papel hierárquico, global (``group_id`` nulo) ou de um grupo."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: Optional[str] = None
    group_id: Optional[str] = None
    parent_role_id: Optional[str] = None
    hierarchy_level: int = Field(0, ge=0, le=MAX_HIERARCHY_LEVEL)
    hierarchy_path: str = ""
    inherit_permissions: bool = True
    priority: int = 0
    is_system_role: bool = False
    is_active: bool = True
    version: int = Field(1, ge=1, description="Token de concorrência otimista")
    created_at: datetime = Field(default_factory=_utcnow)


class RolePermission(BaseModel):
    """Associação ``(role_id, permission_id, group_id)`` com janela e condições."""

    model_config = ConfigDict(frozen=True)

    role_id: str
    permission_id: str
    group_id: Optional[str] = None
    granted_at: datetime = Field(default_factory=_utcnow)
    granted_by: Optional[str] = None
    conditions: Optional[str] = Field(None, description="Expressão JSON de condição")
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    is_active: bool = True

    @property
    def grant_key(self) -> tuple[str, str, Optional[str]]:
        return (self.role_id, self.permission_id, self.group_id)


class UserPermission(BaseModel):
    """Grant/deny explícito por usuário, por id de permissão ou padrão wildcard."""

    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    permission_id: Optional[str] = None
    permission_pattern: Optional[str] = None
    type: GrantType = "allow"
    group_id: Optional[str] = None
    conditions: Optional[str] = None
    reason: Optional[str] = None
    granted_by: Optional[str] = None
    granted_at: datetime = Field(default_factory=_utcnow)
    valid_from: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    priority: int = 0
    is_active: bool = True
    version: int = Field(1, ge=1)

    @model_validator(mode="after")
    def _exactly_one_target(self) -> "UserPermission":
        if (self.permission_id is None) == (self.permission_pattern is None):
            raise ValueError("informe permission_id ou permission_pattern (exatamente um)")
        return self

    @property
    def is_wildcard(self) -> bool:
        return self.permission_pattern is not None


class RoleAssignment(BaseModel):
    """Atribuição ativa de papel a um usuário dentro de um grupo."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    role_id: str
    group_id: Optional[str] = None
    assigned_at: datetime = Field(default_factory=_utcnow)
    expires_at: Optional[datetime] = None
    is_active: bool = True


class EffectiveGrant(BaseModel):
    """Permissão efetiva de um papel, com metadados do grant que a originou."""

    model_config = ConfigDict(frozen=True)

    permission: Permission
    role_id: str = Field(..., description="Papel que concedeu diretamente")
    requested_role_id: str = Field(..., description="Papel expandido")
    role_priority: int = 0
    depth: int = Field(0, ge=0, description="Distância do papel expandido até o concedente")
    inherited_from_permission: Optional[str] = Field(
        None,
        description="Permissão pai quando obtida por expansão da hierarquia de permissões",
    )
    group_id: Optional[str] = None
    granted_at: Optional[datetime] = None
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    conditions: Optional[str] = None


class RoleInheritance(BaseModel):
    """Elo da cadeia de herança de um papel."""

    role_id: str
    role_name: str
    hierarchy_level: int
    depth: int
    permission_ids: list[str] = Field(default_factory=list)


class PermissionConflict(BaseModel):
    """Mesma permissão concedida em mais de um nível da cadeia."""

    permission_id: str
    role_ids: list[str]
    conflict_type: Literal["duplicate"] = "duplicate"
    severity: Literal["low", "medium", "high"] = "medium"
