"""
Serviço de auditoria das decisões de acesso e das mutações administrativas.

Eventos são append-only e chaveados por ``request_id``: regravar o mesmo
evento (replay, retry do chamador) não duplica o registro.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
import uuid

from policy_engine.config import get_settings
from policy_engine.core.logging import current_request_id, get_logger
from policy_engine.schemas.audit import AuditEvent
from policy_engine.schemas.policy import Decision

logger = get_logger(__name__)

_DECISION_SEVERITY = {"allow": "low", "conditional": "medium", "deny": "high"}


class AuditService:
    """Persistência de eventos de auditoria no sink configurado."""

    def __init__(self, store) -> None:
        self.settings = get_settings()
        self._store = store

    async def record_access_check(
        self,
        *,
        request_id: str,
        user_id: str,
        group_id: Optional[str],
        device_id: Optional[str],
        ip_address: Optional[str],
        resource: str,
        action: str,
        decision: Decision,
        duration_ms: Optional[float] = None,
    ) -> AuditEvent:
        """Registra uma checagem de acesso; falhas do sink propagam ao chamador."""
        event = AuditEvent(
            id=str(uuid.uuid4()),
            request_id=request_id,
            event_type="access_check",
            category="authorization",
            entity_type="resource",
            entity_id=f"{resource}:{action}",
            action="evaluate",
            description=f"{decision.kind}: {decision.reason}",
            user_id=user_id,
            group_id=group_id,
            device_id=device_id,
            ip_address=ip_address,
            new_values=decision.model_dump(mode="json"),
            severity=_DECISION_SEVERITY[decision.kind],
            is_security_event=decision.kind != "allow",
            is_successful=decision.allowed,
            duration_ms=round(duration_ms, 3) if duration_ms is not None else None,
        )
        await self._write(event)
        return event

    async def record_change(
        self,
        *,
        event_type: str,
        entity_type: str,
        entity_id: str,
        action: str,
        user_id: Optional[str] = None,
        group_id: Optional[str] = None,
        old_values: Optional[Dict[str, Any]] = None,
        new_values: Optional[Dict[str, Any]] = None,
        description: str = "",
        request_id: Optional[str] = None,
    ) -> AuditEvent:
        """Registra mutação administrativa com snapshots antes/depois."""
        event = AuditEvent(
            id=str(uuid.uuid4()),
            request_id=request_id or current_request_id() or str(uuid.uuid4()),
            event_type=event_type,
            category="alerting" if event_type == "alert_status_changed" else "administration",
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            description=description,
            user_id=user_id,
            group_id=group_id,
            old_values=old_values or {},
            new_values=new_values or {},
            severity="medium",
            is_security_event=True,
        )
        await self._write(event)
        return event

    async def _write(self, event: AuditEvent) -> None:
        created = await self._store.add_event(event)
        if not created:
            logger.info(
                "audit_event_replayed",
                request_id=event.request_id,
                event_type=event.event_type,
                entity_id=event.entity_id,
            )

    async def list_events(self, *, request_id: str | None = None, user_id: str | None = None):
        return await self._store.list_events(request_id=request_id, user_id=user_id)

    async def purge_expired(self, now: datetime | None = None) -> int:
        """Remove eventos vencidos pela retenção configurada."""
        retention_days = int(self.settings.audit_event_retention_days or 0)
        if retention_days <= 0:
            return 0

        cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=retention_days)
        return await self._store.purge_before(cutoff)
