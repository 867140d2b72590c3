"""
Schemas de eventos de auditoria (append-only).
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from policy_engine.schemas.policy import Severity

AuditEventType = Literal[
    "access_check",
    "permission_granted",
    "permission_revoked",
    "role_hierarchy_changed",
    "role_permission_changed",
    "alert_status_changed",
]
AuditCategory = Literal["authorization", "administration", "alerting"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuditEvent(BaseModel):
    """Evento imutável, chaveado por ``request_id`` para replay idempotente."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="ID do evento")
    request_id: str = Field(..., description="Chave de idempotência / correlação")
    event_type: AuditEventType
    category: AuditCategory = "authorization"
    entity_type: str = Field(..., description="Tipo da entidade alvo")
    entity_id: str = Field(..., description="Entidade alvo (ex.: users:read)")
    action: str
    description: str = ""
    user_id: Optional[str] = None
    group_id: Optional[str] = None
    device_id: Optional[str] = None
    ip_address: Optional[str] = None
    old_values: Dict[str, Any] = Field(default_factory=dict)
    new_values: Dict[str, Any] = Field(default_factory=dict)
    context: Dict[str, Any] = Field(default_factory=dict)
    severity: Severity = "low"
    is_security_event: bool = False
    is_successful: bool = True
    duration_ms: Optional[float] = None
    source: str = "policy_engine"
    timestamp: datetime = Field(default_factory=_utcnow)
