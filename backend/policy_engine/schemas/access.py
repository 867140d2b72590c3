"""
Schemas da API de checagem de acesso e das ações de operador.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from policy_engine.schemas.policy import DecisionKind


class AccessCheckRequest(BaseModel):
    """Pedido de decisão de acesso vindo de um serviço upstream."""

    principal_id: str = Field(..., min_length=1, description="Usuário que pede acesso")
    device_id: str = Field(..., min_length=1, description="Dispositivo de origem")
    ip_address: str = Field(..., min_length=1, description="IP de origem")
    group_id: Optional[str] = Field(None, description="Grupo/tenant do pedido")
    resource: str = Field(..., min_length=1, description="Recurso (ex.: users)")
    action: str = Field(..., min_length=1, description="Ação (ex.: read)")
    request_id: Optional[str] = Field(None, description="Chave de idempotência da auditoria")
    claims: Dict[str, Any] = Field(default_factory=dict, description="Claims do token")
    attributes: Dict[str, Any] = Field(default_factory=dict, description="Atributos do recurso")

    @field_validator("resource", "action")
    @classmethod
    def _no_separator(cls, value: str) -> str:
        value = value.strip()
        if ":" in value:
            raise ValueError("resource/action não podem conter ':'")
        return value


class AccessCheckResponse(BaseModel):
    decision: DecisionKind
    reason: str
    matched_permission_id: Optional[str] = None
    trust_score: float = 0.0
    policy_id: Optional[str] = None
    steps: List[str] = Field(default_factory=list)
    request_id: str


class AlertAcknowledgeRequest(BaseModel):
    acknowledged_by: str = Field(..., min_length=1)
    notes: Optional[str] = None


class AlertResolveRequest(BaseModel):
    resolved_by: str = Field(..., min_length=1)
    resolution: str = Field(..., min_length=1)
