"""Destinos dos eventos de alerta (criação/atualização/transições).

O consumo (notificação, UI) é externo; aqui só publicamos o evento no
canal configurado na regra.
"""

from __future__ import annotations

import httpx

from policy_engine.core.logging import get_logger
from policy_engine.schemas.alerts import AlertEvent

logger = get_logger(__name__)


class InMemoryAlertSink:
    def __init__(self) -> None:
        self.events: list[AlertEvent] = []

    async def emit(self, event: AlertEvent) -> None:
        self.events.append(event)


class LoggingAlertSink:
    """Publica o evento como log estruturado (coletado pelo pipeline de logs)."""

    async def emit(self, event: AlertEvent) -> None:
        alert = event.alert
        logger.warning(
            "security_alert_event",
            event_type=event.event_type,
            alert_id=alert.id,
            rule_id=alert.rule_id,
            severity=alert.severity,
            status=alert.status,
            alert_user_id=alert.user_id,
            resource=alert.resource,
            occurrences=alert.occurrence_count,
        )


class WebhookAlertSink:
    """POST síncrono do evento em um webhook."""

    def __init__(self, url: str, timeout: float = 8.0) -> None:
        self.url = url
        self.timeout = timeout

    async def emit(self, event: AlertEvent) -> None:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(self.url, json=event.model_dump(mode="json"))
            response.raise_for_status()


class QueuedWebhookAlertSink:
    """Enfileira a entrega do webhook no Celery (com retentativas)."""

    async def emit(self, event: AlertEvent) -> None:
        from policy_engine.tasks.alerts import deliver_alert_event

        deliver_alert_event.delay(event.model_dump(mode="json"))
