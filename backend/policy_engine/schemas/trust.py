"""
Schemas de trust score (zero trust) e dos sinais que o alimentam.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field, field_validator

TrustLevel = Literal["none", "low", "medium", "high", "maximum"]
TrustFactorType = Literal["device", "network", "behavior", "authentication", "location"]
NetworkType = Literal["corporate", "home", "public", "mobile", "unknown"]
MfaMethod = Literal["none", "sms", "email", "totp", "push", "webauthn", "biometric"]
TrustEventType = Literal["authentication", "device_activity", "behavior", "invalidation"]
AuthenticationStrength = Literal["basic", "two_factor", "multi_factor", "enhanced", "maximum"]


# Tolerância para relógios de origem adiantados.
EVENT_CLOCK_SKEW = timedelta(minutes=5)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Sinais de entrada ──────────────────────────────────────────────────────


class DeviceTrust(BaseModel):
    """Atributos do dispositivo fornecidos pelo provedor de identidade/dispositivos."""

    device_id: str
    user_id: Optional[str] = None
    is_trusted: bool = False
    is_managed: bool = False
    is_compliant: bool = False
    is_jailbroken: bool = False
    certificate_fingerprint: Optional[str] = None
    last_seen: Optional[datetime] = None


class NetworkContext(BaseModel):
    ip_address: Optional[str] = None
    network_type: NetworkType = "unknown"
    is_vpn: bool = False
    is_tor: bool = False
    is_known_malicious: bool = False
    country: Optional[str] = None


class BehaviorSignals(BaseModel):
    is_anomalous_pattern: bool = False
    # Score de comportamento calculado externamente (0 = ausente).
    behavior_score: float = Field(0.0, ge=0.0, le=100.0)


class AuthenticationContext(BaseModel):
    mfa_enabled: bool = False
    mfa_method: MfaMethod = "none"
    authenticated_at: Optional[datetime] = None


class LocationSignals(BaseModel):
    country: Optional[str] = None
    known_countries: List[str] = Field(default_factory=list)
    impossible_travel: bool = False


class TrustSignals(BaseModel):
    """Conjunto de sinais; ``None`` significa sinal indisponível."""

    device: Optional[DeviceTrust] = None
    network: Optional[NetworkContext] = None
    behavior: Optional[BehaviorSignals] = None
    authentication: Optional[AuthenticationContext] = None
    location: Optional[LocationSignals] = None

    def merged_with(self, override: "TrustSignals | None") -> "TrustSignals":
        """Sinais de ``override`` prevalecem sobre os atuais."""
        if override is None:
            return self
        return TrustSignals(
            device=override.device or self.device,
            network=override.network or self.network,
            behavior=override.behavior or self.behavior,
            authentication=override.authentication or self.authentication,
            location=override.location or self.location,
        )


class TrustEvent(BaseModel):
    """Evento que dispara recálculo do trust score de uma tupla."""

    user_id: str = Field(..., description="Usuário")
    device_id: str = Field(..., description="Dispositivo")
    ip_address: str = Field(..., description="IP de origem")
    event_type: TrustEventType = "authentication"
    reason: Optional[str] = Field(None, description="Motivo registrado no histórico")
    occurred_at: AwareDatetime = Field(default_factory=_utcnow, description="Quando o evento ocorreu na origem")
    signals: Optional[TrustSignals] = None
    data: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("occurred_at")
    @classmethod
    def _not_in_future(cls, value: datetime) -> datetime:
        if value > _utcnow() + EVENT_CLOCK_SKEW:
            raise ValueError("occurred_at is in the future")
        return value


# ── Snapshots ──────────────────────────────────────────────────────────────


class TrustFactor(BaseModel):
    name: str
    type: TrustFactorType
    weight: float
    score: float
    description: str = ""


class TrustScore(BaseModel):
    """Snapshot imutável; um recálculo gera uma nova linha."""

    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    device_id: str
    ip_address: str
    score: float = Field(..., ge=0.0, le=100.0)
    trust_level: TrustLevel
    device_score: float = Field(..., ge=0.0, le=100.0)
    network_score: float = Field(..., ge=0.0, le=100.0)
    behavior_score: float = Field(..., ge=0.0, le=100.0)
    authentication_score: float = Field(..., ge=0.0, le=100.0)
    location_score: float = Field(..., ge=0.0, le=100.0)
    factors: List[TrustFactor] = Field(default_factory=list)
    risks: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)
    calculated_at: datetime
    valid_until: datetime
    is_active: bool = True

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.user_id, self.device_id, self.ip_address)

    def sub_scores(self) -> dict[str, float]:
        return {
            "device": self.device_score,
            "network": self.network_score,
            "behavior": self.behavior_score,
            "authentication": self.authentication_score,
            "location": self.location_score,
        }


class TrustScoreHistory(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    trust_score_id: str
    user_id: str
    device_id: str
    ip_address: str
    previous_score: float
    new_score: float
    change_reason: str
    event_data: Dict[str, Any] = Field(default_factory=dict)
    changed_at: datetime

    @property
    def delta(self) -> float:
        return round(self.new_score - self.previous_score, 2)


class AuthenticationRequirement(BaseModel):
    """Exigência de autenticação derivada do nível de confiança."""

    trust_level: TrustLevel
    strength: AuthenticationStrength
    required_methods: List[str]
    session_timeout_minutes: int
    restrictions: List[str] = Field(default_factory=list)
