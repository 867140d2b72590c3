"""Tarefas de manutenção e rotina operacional."""

from __future__ import annotations

import asyncio

from policy_engine.core.logging import bind_request_context, get_logger
from policy_engine.core.metrics import record_celery_task
from policy_engine.services.engine import get_policy_engine
from policy_engine.tasks.celery_app import celery_app

logger = get_logger(__name__)


@celery_app.task(bind=True, name="policy_engine.tasks.maintenance.auto_resolve_security_alerts")
def auto_resolve_security_alerts(self) -> int:
    """Resolve alertas abertos há mais tempo que ``alert_auto_resolve_hours``.

    Retorna a quantidade de alertas resolvidos.
    """
    engine = get_policy_engine()
    with bind_request_context(task_id=self.request.id):
        resolved = asyncio.run(engine.correlator.auto_resolve_expired())
        logger.info("maintenance.auto_resolve_security_alerts", resolved=resolved)
    record_celery_task("auto_resolve_security_alerts", "success")
    return resolved


@celery_app.task(bind=True, name="policy_engine.tasks.maintenance.purge_expired_audit_events")
def purge_expired_audit_events(self) -> int:
    """Remove eventos de auditoria fora da retenção."""
    engine = get_policy_engine()
    with bind_request_context(task_id=self.request.id):
        deleted = asyncio.run(engine.audit.purge_expired())
        logger.info("maintenance.purge_expired_audit_events", deleted=deleted)
    record_celery_task("purge_expired_audit_events", "success")
    return deleted


@celery_app.task(bind=True, name="policy_engine.tasks.maintenance.purge_trust_score_history")
def purge_trust_score_history(self) -> int:
    engine = get_policy_engine()
    with bind_request_context(task_id=self.request.id):
        deleted = asyncio.run(engine.trust.purge_history())
        logger.info("maintenance.purge_trust_score_history", deleted=deleted)
    record_celery_task("purge_trust_score_history", "success")
    return deleted
