"""Entrega de eventos de alerta em webhook, com retentativas."""

from __future__ import annotations

import asyncio

import httpx

from policy_engine.config import get_settings
from policy_engine.core.logging import bind_request_context, get_logger
from policy_engine.core.metrics import record_celery_task
from policy_engine.schemas.alerts import AlertEvent
from policy_engine.services.alert_sinks import WebhookAlertSink
from policy_engine.tasks.celery_app import celery_app

logger = get_logger(__name__)


@celery_app.task(
    bind=True,
    name="policy_engine.tasks.alerts.deliver_alert_event",
    max_retries=5,
)
def deliver_alert_event(self, payload: dict) -> bool:
    """POST do evento no webhook configurado; False quando não há webhook."""
    settings = get_settings()
    if not settings.alert_webhook_url:
        logger.warning("alert_webhook_not_configured")
        return False

    event = AlertEvent.model_validate(payload)
    sink = WebhookAlertSink(settings.alert_webhook_url, settings.alert_webhook_timeout_seconds)
    with bind_request_context(task_id=self.request.id):
        try:
            asyncio.run(sink.emit(event))
        except httpx.HTTPError as exc:
            countdown = 60 * (2**self.request.retries)
            logger.error(
                "alert_webhook_failed",
                alert_id=event.alert.id,
                event_type=event.event_type,
                error=str(exc),
                retry_in=countdown,
            )
            record_celery_task("deliver_alert_event", "retry")
            raise self.retry(exc=exc, countdown=countdown)

        logger.info("alert_webhook_delivered", alert_id=event.alert.id, event_type=event.event_type)
    record_celery_task("deliver_alert_event", "success")
    return True
