"""
Schemas de regras de alerta e alertas de segurança.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from policy_engine.schemas.policy import Category, Severity

AlertStatus = Literal["new", "acknowledged", "resolved"]
AlertAction = Literal["notify", "escalate", "require_mfa", "block_user"]
NotificationChannel = Literal["log", "webhook", "email"]
AlertEventType = Literal["created", "updated", "acknowledged", "resolved"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AlertRule(BaseModel):
    """Regra de correlação violação → alerta."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: Optional[str] = None
    category: Category
    group_id: Optional[str] = None
    conditions: Optional[str] = Field(None, description="Expressão sobre a violação")
    severity: Severity = "medium"
    actions: List[AlertAction] = Field(default_factory=lambda: ["notify"])
    notification_channels: List[NotificationChannel] = Field(default_factory=lambda: ["log"])
    cooldown_period: timedelta = timedelta(minutes=5)
    max_alerts_per_hour: int = Field(10, ge=1)
    priority: int = 100
    is_active: bool = True


class SecurityAlert(BaseModel):
    """Alerta com máquina de estados ``new → acknowledged → resolved``."""

    model_config = ConfigDict(frozen=True)

    id: str
    rule_id: str
    rule_name: str
    alert_type: str
    title: str
    description: str = ""
    category: Category
    severity: Severity
    status: AlertStatus = "new"
    user_id: Optional[str] = None
    device_id: Optional[str] = None
    ip_address: Optional[str] = None
    group_id: Optional[str] = None
    resource: Optional[str] = None
    violation_ids: List[str] = Field(default_factory=list)
    occurrence_count: int = 1
    correlation_id: Optional[str] = None
    confidence_score: float = Field(1.0, ge=0.0, le=1.0)
    created_at: datetime = Field(default_factory=_utcnow)
    last_seen_at: datetime = Field(default_factory=_utcnow)
    acknowledged_at: Optional[datetime] = None
    acknowledged_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolution: Optional[str] = None
    version: int = 1


class AlertEvent(BaseModel):
    """Evento emitido para o sink de alertas (camadas de notificação/UI)."""

    event_type: AlertEventType
    alert: SecurityAlert
    occurred_at: datetime = Field(default_factory=_utcnow)
