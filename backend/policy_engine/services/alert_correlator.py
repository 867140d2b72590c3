"""
Correlação de violações de política em alertas de segurança.

Para cada violação, as regras ativas da categoria (ordenadas por prioridade)
são testadas. Uma regra que casa aplica, nesta ordem:

1. deduplicação por ``(rule_id, user_id, resource)`` dentro do cooldown:
   a violação incrementa o alerta aberto em vez de criar outro;
2. teto de ``max_alerts_per_hour`` por regra;
3. criação do ``SecurityAlert`` e publicação nos canais da regra.

O trecho check-then-write é serializado por chave ``(rule_id, subject)``.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from policy_engine.config import Settings, get_settings
from policy_engine.core.conditions import ConditionContext, ConditionEvaluator
from policy_engine.core.errors import AlertNotFound, ConcurrencyConflict, InvalidAlertTransition
from policy_engine.core.locks import KeyedLocks
from policy_engine.core.logging import get_logger
from policy_engine.core.metrics import record_alert_outcome
from policy_engine.schemas.alerts import AlertEvent, AlertRule, AlertStatus, SecurityAlert
from policy_engine.schemas.policy import SEVERITY_RANK, PolicyViolation
from policy_engine.services.alert_sinks import LoggingAlertSink
from policy_engine.services.alert_throttle import InMemoryAlertThrottle

logger = get_logger(__name__)

_TRANSITIONS: dict[str, set[str]] = {
    "new": {"acknowledged"},
    "acknowledged": {"resolved"},
    "resolved": set(),
}

SYSTEM_ACTOR = "system"


def _violation_context(violation: PolicyViolation) -> ConditionContext:
    return ConditionContext(
        user_id=violation.user_id,
        group_id=violation.group_id,
        resource=violation.resource,
        action=violation.action,
        ip_address=violation.ip_address,
        device_id=violation.device_id,
        now=violation.detected_at,
        attributes={
            **violation.violation_data,
            "violation_type": violation.violation_type,
            "severity": violation.severity,
            "trust_score": violation.trust_score,
            "policy_id": violation.security_policy_id,
        },
    )


class AlertCorrelator:
    """Transforma violações em ``SecurityAlert`` com cooldown, dedup e teto horário."""

    def __init__(
        self,
        store,
        *,
        throttle=None,
        sinks: dict | None = None,
        condition_evaluator: ConditionEvaluator | None = None,
        audit_service=None,
        settings: Settings | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._store = store
        self._throttle = throttle or InMemoryAlertThrottle()
        self._sinks = sinks if sinks is not None else {"log": LoggingAlertSink()}
        self._conditions = condition_evaluator or ConditionEvaluator()
        self._audit = audit_service
        self._locks = KeyedLocks()

    async def on_violation(self, violation: PolicyViolation) -> list[SecurityAlert]:
        """Correlaciona uma violação; devolve os alertas criados ou atualizados."""
        rules = await self._store.list_rules(violation.category, violation.group_id)
        context = _violation_context(violation)
        matched = [
            rule
            for rule in sorted(rules, key=lambda rule: (-rule.priority, rule.id))
            if self._conditions.is_satisfied(rule.conditions, context)
        ]
        if not matched:
            record_alert_outcome("unmatched")
            return []

        alerts: list[SecurityAlert] = []
        for rule in matched:
            alert = await self._correlate(rule, violation)
            if alert is not None:
                alerts.append(alert)
        return alerts

    async def _correlate(self, rule: AlertRule, violation: PolicyViolation) -> Optional[SecurityAlert]:
        key = f"{rule.id}|{violation.user_id}|{violation.resource}"
        now = violation.detected_at

        async with self._locks.hold(key):
            if not await self._throttle.acquire_cooldown(key, now, rule.cooldown_period):
                return await self._deduplicate(rule, violation)

            used = await self._throttle.increment_hourly(rule.id, now)
            if used > rule.max_alerts_per_hour:
                record_alert_outcome("throttled")
                logger.warning(
                    "alert_rate_limited",
                    rule_id=rule.id,
                    used=used,
                    limit=rule.max_alerts_per_hour,
                )
                return None

            alert = await self._store.add_alert(self._build_alert(rule, violation))

        record_alert_outcome("created")
        logger.info("security_alert_created", alert_id=alert.id, rule_id=rule.id, severity=alert.severity)
        await self._emit("created", alert, rule.notification_channels)
        return alert

    async def _deduplicate(self, rule: AlertRule, violation: PolicyViolation) -> Optional[SecurityAlert]:
        existing = await self._store.latest_open_alert(rule.id, violation.user_id, violation.resource)
        if existing is None:
            # Cooldown ativo sem alerta aberto: o anterior foi barrado pelo teto.
            record_alert_outcome("throttled")
            return None

        updated = await self._store.update_alert(
            existing.model_copy(
                update={
                    "occurrence_count": existing.occurrence_count + 1,
                    "last_seen_at": max(existing.last_seen_at, violation.detected_at),
                    "violation_ids": [*existing.violation_ids, violation.id],
                }
            ),
            expected_version=existing.version,
        )
        record_alert_outcome("deduplicated")
        await self._emit("updated", updated, rule.notification_channels)
        return updated

    @staticmethod
    def _build_alert(rule: AlertRule, violation: PolicyViolation) -> SecurityAlert:
        severity = max(rule.severity, violation.severity, key=lambda value: SEVERITY_RANK[value])
        return SecurityAlert(
            id=str(uuid.uuid4()),
            rule_id=rule.id,
            rule_name=rule.name,
            alert_type=violation.violation_type,
            title=f"{rule.name}: {violation.violation_type}",
            description=violation.description,
            category=rule.category,
            severity=severity,
            user_id=violation.user_id,
            device_id=violation.device_id,
            ip_address=violation.ip_address,
            group_id=violation.group_id,
            resource=violation.resource,
            violation_ids=[violation.id],
            correlation_id=violation.request_id,
            created_at=violation.detected_at,
            last_seen_at=violation.detected_at,
        )

    async def _emit(self, event_type: str, alert: SecurityAlert, channels: list[str] | None = None) -> None:
        event = AlertEvent(event_type=event_type, alert=alert)
        for channel, sink in self._sinks.items():
            if channels is not None and channel not in channels:
                continue
            try:
                await sink.emit(event)
            except Exception as exc:
                # Alerta já persistido; falha de entrega não desfaz a correlação.
                logger.error(
                    "alert_sink_failed",
                    channel=channel,
                    alert_id=alert.id,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )

    # ── Ações de operador e varredura ─────────────────────────────────────

    async def acknowledge(self, alert_id: str, acknowledged_by: str, notes: str | None = None) -> SecurityAlert:
        now = datetime.now(timezone.utc)
        return await self._transition(
            alert_id,
            "acknowledged",
            acknowledged_by,
            {"acknowledged_at": now, "acknowledged_by": acknowledged_by, "resolution": notes},
        )

    async def resolve(self, alert_id: str, resolved_by: str, resolution: str) -> SecurityAlert:
        now = datetime.now(timezone.utc)
        return await self._transition(
            alert_id,
            "resolved",
            resolved_by,
            {"resolved_at": now, "resolved_by": resolved_by, "resolution": resolution},
        )

    async def _transition(
        self,
        alert_id: str,
        target: AlertStatus,
        actor: str,
        updates: dict,
        *,
        allow_skip: bool = False,
    ) -> SecurityAlert:
        current = await self._store.get_alert(alert_id)
        if current is None:
            raise AlertNotFound("alerta não encontrado", alert_id=alert_id)

        allowed = _TRANSITIONS[current.status]
        if target not in allowed and not (allow_skip and current.status != "resolved"):
            raise InvalidAlertTransition(
                "transição de status inválida",
                alert_id=alert_id,
                current=current.status,
                target=target,
            )

        updated = await self._store.update_alert(
            current.model_copy(update={"status": target, **updates}),
            expected_version=current.version,
        )
        if self._audit is not None:
            await self._audit.record_change(
                event_type="alert_status_changed",
                entity_type="security_alert",
                entity_id=alert_id,
                action=target,
                user_id=None if actor == SYSTEM_ACTOR else actor,
                group_id=current.group_id,
                old_values={"status": current.status},
                new_values={"status": target, "by": actor},
            )
        await self._emit(target, updated)
        return updated

    async def auto_resolve_expired(self, now: datetime | None = None) -> int:
        """Resolve alertas não resolvidos mais antigos que o TTL configurado."""
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(hours=self.settings.alert_auto_resolve_hours)
        resolved = 0
        for alert in await self._store.list_unresolved_alerts(cutoff):
            try:
                await self._transition(
                    alert.id,
                    "resolved",
                    SYSTEM_ACTOR,
                    {
                        "resolved_at": now,
                        "resolved_by": SYSTEM_ACTOR,
                        "resolution": "auto-resolved after TTL",
                    },
                    allow_skip=True,
                )
            except (ConcurrencyConflict, InvalidAlertTransition) as exc:
                logger.info("alert_auto_resolve_skipped", **exc.to_log(alert_id=alert.id))
                continue
            resolved += 1
        if resolved:
            logger.info("alerts_auto_resolved", total=resolved, cutoff=cutoff.isoformat())
        return resolved
