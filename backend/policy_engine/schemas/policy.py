"""
Schemas de políticas de segurança, violações e decisões de acesso.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

Category = Literal[
    "access_control",
    "authentication",
    "device",
    "network",
    "data_protection",
    "compliance",
    "threat",
]
Severity = Literal["low", "medium", "high", "critical"]
PolicyType = Literal["access", "authentication", "device", "network", "data", "session"]
ViolationType = Literal["insufficient_trust", "conditions_not_met", "high_risk_denied"]
DecisionKind = Literal["allow", "deny", "conditional"]

SEVERITY_RANK: dict[str, int] = {"low": 1, "medium": 2, "high": 3, "critical": 4}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SecurityPolicy(BaseModel):
    """Política de zero trust aplicada após a decisão de RBAC.

    ``resource_pattern`` e ``rules`` delimitam a quem a política se aplica;
    ``conditions`` e ``minimum_trust_score`` são as exigências verificadas.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: Optional[str] = None
    policy_type: PolicyType = "access"
    category: Category = "access_control"
    group_id: Optional[str] = Field(None, description="Grupo dono; nulo = global")
    resource_pattern: Optional[str] = Field(
        None,
        description="Padrão glob sobre resource:action; nulo = todos",
    )
    rules: Optional[str] = Field(None, description="Expressão de escopo")
    conditions: Optional[str] = Field(None, description="Expressão exigida")
    minimum_trust_score: float = Field(50.0, ge=0.0, le=100.0)
    severity: Severity = "medium"
    is_active: bool = True
    is_enforced: bool = True
    priority: int = 100
    created_at: datetime = Field(default_factory=_utcnow)


class PolicyViolation(BaseModel):
    """Registro imutável de uma checagem de política que falhou."""

    model_config = ConfigDict(frozen=True)

    id: str
    security_policy_id: Optional[str] = None
    user_id: str
    device_id: Optional[str] = None
    ip_address: Optional[str] = None
    group_id: Optional[str] = None
    resource: str
    action: str
    violation_type: ViolationType
    category: Category = "access_control"
    severity: Severity = "medium"
    description: str = ""
    trust_score: float = 0.0
    violation_data: Dict[str, Any] = Field(default_factory=dict)
    request_id: Optional[str] = None
    status: Literal["open", "closed"] = "open"
    detected_at: datetime = Field(default_factory=_utcnow)


class Decision(BaseModel):
    """Resultado de uma avaliação de acesso."""

    model_config = ConfigDict(frozen=True)

    kind: DecisionKind
    reason: str
    matched_permission_id: Optional[str] = None
    trust_score: float = 0.0
    policy_id: Optional[str] = None
    steps: List[str] = Field(default_factory=list)

    @property
    def allowed(self) -> bool:
        return self.kind == "allow"

    @classmethod
    def allow(cls, **kwargs: Any) -> "Decision":
        return cls(kind="allow", reason="access granted", **kwargs)

    @classmethod
    def deny(cls, reason: str, **kwargs: Any) -> "Decision":
        return cls(kind="deny", reason=reason, **kwargs)

    @classmethod
    def conditional(cls, steps: List[str], **kwargs: Any) -> "Decision":
        return cls(kind="conditional", reason="remediation required", steps=steps, **kwargs)
