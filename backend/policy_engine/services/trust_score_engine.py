"""
Trust score composto por tupla ``(user_id, device_id, ip_address)``.

O score é a soma ponderada de cinco sub-scores (dispositivo, rede,
comportamento, autenticação e localização), cada um limitado a [0, 100].
Cada recálculo grava um novo snapshot e uma entrada de histórico; leitores
sempre veem o último snapshot publicado, sem esperar recálculos em curso.

Entre recálculos o score decai com meia-vida configurável e, depois de
``valid_until``, vale 0.
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from policy_engine.config import Settings, get_settings
from policy_engine.core.locks import KeyedLocks
from policy_engine.core.logging import get_logger
from policy_engine.core.metrics import record_trust_recompute
from policy_engine.schemas.trust import (
    AuthenticationContext,
    AuthenticationRequirement,
    BehaviorSignals,
    DeviceTrust,
    LocationSignals,
    NetworkContext,
    TrustEvent,
    TrustFactor,
    TrustLevel,
    TrustScore,
    TrustScoreHistory,
    TrustSignals,
)

logger = get_logger(__name__)

_LEVEL_THRESHOLDS: tuple[tuple[float, TrustLevel], ...] = (
    (90.0, "maximum"),
    (75.0, "high"),
    (50.0, "medium"),
    (25.0, "low"),
)

_VALIDITY: dict[str, timedelta] = {
    "maximum": timedelta(hours=1),
    "high": timedelta(minutes=30),
    "medium": timedelta(minutes=15),
    "low": timedelta(minutes=5),
    "none": timedelta(minutes=1),
}

_REQUIREMENTS: dict[str, AuthenticationRequirement] = {
    "maximum": AuthenticationRequirement(
        trust_level="maximum",
        strength="basic",
        required_methods=["password"],
        session_timeout_minutes=480,
    ),
    "high": AuthenticationRequirement(
        trust_level="high",
        strength="two_factor",
        required_methods=["password", "totp"],
        session_timeout_minutes=360,
    ),
    "medium": AuthenticationRequirement(
        trust_level="medium",
        strength="multi_factor",
        required_methods=["password", "totp", "sms"],
        session_timeout_minutes=240,
        restrictions=["require_periodic_reauth"],
    ),
    "low": AuthenticationRequirement(
        trust_level="low",
        strength="enhanced",
        required_methods=["password", "totp", "biometric", "device_certificate"],
        session_timeout_minutes=120,
        restrictions=["require_periodic_reauth", "limited_access"],
    ),
    "none": AuthenticationRequirement(
        trust_level="none",
        strength="maximum",
        required_methods=["password", "totp", "biometric", "device_certificate", "administrator_approval"],
        session_timeout_minutes=60,
        restrictions=["require_periodic_reauth", "limited_access", "monitor_all_actions"],
    ),
}

_STRONG_MFA = {"totp", "push", "webauthn", "biometric"}
_WEAK_MFA = {"sms", "email"}
_DEVICE_STALE_AFTER = timedelta(days=30)
_AUTH_STALE_AFTER = timedelta(hours=12)


def clamp_score(value: float) -> float:
    return round(max(0.0, min(100.0, float(value))), 2)


def trust_level_for(score: float) -> TrustLevel:
    for threshold, level in _LEVEL_THRESHOLDS:
        if score >= threshold:
            return level
    return "none"


def required_authentication(level: TrustLevel) -> AuthenticationRequirement:
    """Exigência de autenticação para o nível de confiança."""
    return _REQUIREMENTS[level]


# ── Sub-scores ─────────────────────────────────────────────────────────────
# Cada função devolve (score, riscos, recomendações).

SubScore = tuple[float, list[str], list[str]]


def score_device(device: Optional[DeviceTrust], now: datetime) -> SubScore:
    if device is None:
        return 0.0, ["Unknown device"], ["Register the device with device management"]
    if device.is_jailbroken:
        return 0.0, ["Jailbroken or rooted device"], ["Use a device that has not been jailbroken"]

    score, risks, recommendations = 50.0, [], []
    if device.is_trusted:
        score += 30
    else:
        risks.append("Untrusted device")
    if device.is_managed:
        score += 20
    else:
        risks.append("Unmanaged device")
        recommendations.append("Enroll the device in device management")
    if device.is_compliant:
        score += 20
    else:
        risks.append("Non-compliant device")
        recommendations.append("Bring the device into compliance")
    if device.certificate_fingerprint:
        score += 10
    else:
        risks.append("No device certificate")
    if device.last_seen is not None and now - device.last_seen > _DEVICE_STALE_AFTER:
        score -= 15
        risks.append("Device not seen recently")
    return clamp_score(score), risks, recommendations


def score_network(network: Optional[NetworkContext]) -> SubScore:
    if network is None:
        return 0.0, ["Unknown network"], ["Connect from a recognized network"]
    if network.is_known_malicious:
        return 0.0, ["Known malicious IP"], ["Connect from a trusted network"]
    if network.is_tor:
        return 20.0, ["Tor exit node"], ["Disconnect from Tor"]

    score, risks, recommendations = 70.0, [], []
    if network.is_vpn:
        score -= 15
        risks.append("VPN connection")
    if network.network_type == "corporate":
        score += 20
    elif network.network_type == "public":
        score -= 25
        risks.append("Public network")
        recommendations.append("Avoid public networks for sensitive operations")
    return clamp_score(score), risks, recommendations


def score_behavior(behavior: Optional[BehaviorSignals]) -> SubScore:
    if behavior is None:
        return 50.0, ["No behavioral baseline"], []
    if behavior.behavior_score > 0:
        score = behavior.behavior_score
    else:
        score = 75.0
    risks: list[str] = []
    recommendations: list[str] = []
    if behavior.is_anomalous_pattern:
        if behavior.behavior_score <= 0:
            score -= 30
        risks.append("Anomalous behavior pattern")
        recommendations.append("Verify recent account activity")
    return clamp_score(score), risks, recommendations


def score_authentication(auth: Optional[AuthenticationContext], now: datetime) -> SubScore:
    if auth is None:
        return 0.0, ["No authentication context"], ["Re-authenticate"]

    score, risks, recommendations = 60.0, [], []
    if auth.mfa_enabled and auth.mfa_method in _STRONG_MFA:
        score += 30
    elif auth.mfa_enabled and auth.mfa_method in _WEAK_MFA:
        score += 15
        risks.append("Weak MFA method")
        recommendations.append("Switch to an authenticator app or security key")
    else:
        risks.append("MFA not enabled")
        recommendations.append("Enable multi-factor authentication")

    if auth.authenticated_at is None:
        score -= 20
        risks.append("Authentication time unknown")
        recommendations.append("Re-authenticate")
    elif now - auth.authenticated_at > _AUTH_STALE_AFTER:
        score -= 20
        risks.append("Stale authentication")
        recommendations.append("Re-authenticate")
    return clamp_score(score), risks, recommendations


def score_location(location: Optional[LocationSignals], suspicious: set[str]) -> SubScore:
    if location is None:
        return 50.0, ["Unknown location"], []

    score, risks, recommendations = 80.0, [], []
    country = (location.country or "unknown").upper()
    if country in suspicious:
        score -= 40
        risks.append("Suspicious location")
    elif location.known_countries and country not in {c.upper() for c in location.known_countries}:
        score -= 20
        risks.append("Unfamiliar country")
    if location.impossible_travel:
        score -= 50
        risks.append("Impossible travel detected")
        recommendations.append("Confirm the sign-in location")
    return clamp_score(score), risks, recommendations


def _dedupe(items: list[str]) -> list[str]:
    return list(dict.fromkeys(items))


class TrustScoreEngine:
    """Calcula, publica e expõe trust scores com recálculo assíncrono."""

    def __init__(
        self,
        store,
        identity_provider,
        *,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._store = store
        self._identity = identity_provider
        self._locks = KeyedLocks()
        self._tasks: set[asyncio.Task] = set()
        self.weights = self.settings.trust_weights
        self._suspicious = set(self.settings.trust_suspicious_countries)

    # ── Leitura ────────────────────────────────────────────────────────────

    async def current_score(self, user_id: str, device_id: str, ip_address: str) -> Optional[TrustScore]:
        """Último snapshot publicado (pode estar vencido; ver ``effective_score``)."""
        return await self._store.latest(user_id, device_id, ip_address)

    @staticmethod
    def is_stale(snapshot: Optional[TrustScore], now: datetime) -> bool:
        return snapshot is None or now > snapshot.valid_until

    def effective_score(self, snapshot: Optional[TrustScore], now: datetime) -> float:
        """Score aplicável em ``now``: 0 quando ausente ou vencido, com decaimento."""
        if self.is_stale(snapshot, now):
            return 0.0
        half_life = float(self.settings.trust_score_half_life_minutes or 0)
        elapsed_minutes = (now - snapshot.calculated_at).total_seconds() / 60
        if half_life <= 0 or elapsed_minutes <= 0:
            return snapshot.score
        return clamp_score(snapshot.score * 0.5 ** (elapsed_minutes / half_life))

    async def history(self, user_id: str, device_id: str | None = None, ip_address: str | None = None):
        return await self._store.list_history(user_id, device_id, ip_address)

    # ── Cálculo ────────────────────────────────────────────────────────────

    def calculate(
        self,
        user_id: str,
        device_id: str,
        ip_address: str,
        signals: TrustSignals,
        now: datetime,
    ) -> TrustScore:
        """Cálculo puro de um snapshot a partir dos sinais."""
        parts = {
            "device": score_device(signals.device, now),
            "network": score_network(signals.network),
            "behavior": score_behavior(signals.behavior),
            "authentication": score_authentication(signals.authentication, now),
            "location": score_location(signals.location, self._suspicious),
        }
        total = clamp_score(sum(self.weights[name] * part[0] for name, part in parts.items()))
        level = trust_level_for(total)

        factors = [
            TrustFactor(
                name=f"{name}_trust",
                type=name,
                weight=self.weights[name],
                score=part[0],
                description="; ".join(part[1]) or "no risks detected",
            )
            for name, part in parts.items()
        ]
        return TrustScore(
            id=str(uuid.uuid4()),
            user_id=user_id,
            device_id=device_id,
            ip_address=ip_address,
            score=total,
            trust_level=level,
            device_score=parts["device"][0],
            network_score=parts["network"][0],
            behavior_score=parts["behavior"][0],
            authentication_score=parts["authentication"][0],
            location_score=parts["location"][0],
            factors=factors,
            risks=_dedupe([risk for part in parts.values() for risk in part[1]]),
            recommendations=_dedupe([rec for part in parts.values() for rec in part[2]]),
            calculated_at=now,
            valid_until=now + _VALIDITY[level],
        )

    async def recompute(self, event: TrustEvent, now: datetime | None = None) -> TrustScore:
        """Recalcula e publica um novo snapshot; serializado por tupla.

        Validade e decaimento partem do relógio do servidor (``now``), nunca de
        ``event.occurred_at``, que só vai para o histórico.
        """
        key = (event.user_id, event.device_id, event.ip_address)
        async with self._locks.hold(key):
            baseline = await self._identity.get_trust_signals(*key)
            signals = baseline.merged_with(event.signals)
            now = now or self._clock()
            previous = await self._store.latest(*key)
            snapshot = self.calculate(*key, signals=signals, now=now)
            history = TrustScoreHistory(
                id=str(uuid.uuid4()),
                trust_score_id=snapshot.id,
                user_id=event.user_id,
                device_id=event.device_id,
                ip_address=event.ip_address,
                previous_score=previous.score if previous is not None else 0.0,
                new_score=snapshot.score,
                change_reason=event.reason or event.event_type,
                event_data={
                    "event_type": event.event_type,
                    "occurred_at": event.occurred_at.isoformat(),
                    **event.data,
                },
                changed_at=now,
            )
            await self._store.append(snapshot, history)

        record_trust_recompute(snapshot.trust_level)
        logger.info(
            "trust_score_recomputed",
            user_id=event.user_id,
            device_id=event.device_id,
            score=snapshot.score,
            level=snapshot.trust_level,
            delta=history.delta,
            reason=history.change_reason,
        )
        return snapshot

    def schedule_recompute(self, event: TrustEvent) -> asyncio.Task:
        """Dispara recálculo em background, fora do caminho de decisão."""
        task = asyncio.create_task(self.recompute(event))
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def invalidate(
        self,
        user_id: str,
        device_id: str,
        ip_address: str,
        reason: str = "explicit invalidation",
    ) -> asyncio.Task:
        return self.schedule_recompute(
            TrustEvent(
                user_id=user_id,
                device_id=device_id,
                ip_address=ip_address,
                event_type="invalidation",
                reason=reason,
            )
        )

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("trust_recompute_failed", error=str(exc), error_type=type(exc).__name__)

    async def drain(self) -> None:
        """Aguarda recálculos pendentes (shutdown e testes)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def purge_history(self, now: datetime | None = None) -> int:
        retention_days = int(self.settings.trust_history_retention_days or 0)
        if retention_days <= 0:
            return 0
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=retention_days)
        return await self._store.purge_history(cutoff)
