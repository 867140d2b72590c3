"""Recálculo de trust score a partir de eventos recebidos pelo broker."""

from __future__ import annotations

import asyncio

from policy_engine.core.logging import bind_request_context, get_logger
from policy_engine.core.metrics import record_celery_task
from policy_engine.schemas.trust import TrustEvent
from policy_engine.services.engine import get_policy_engine
from policy_engine.tasks.celery_app import celery_app

logger = get_logger(__name__)


@celery_app.task(bind=True, name="policy_engine.tasks.trust.recompute_trust_score")
def recompute_trust_score(self, event_payload: dict) -> dict:
    """Recalcula e publica o snapshot da tupla do evento.

    Retorna ``{"score", "trust_level", "valid_until"}``.
    """
    event = TrustEvent.model_validate(event_payload)
    engine = get_policy_engine()
    with bind_request_context(task_id=self.request.id, user_id=event.user_id):
        snapshot = asyncio.run(engine.trust.recompute(event))
        logger.info("trust.recompute_trust_score", score=snapshot.score, level=snapshot.trust_level)
    record_celery_task("recompute_trust_score", "success")
    return {
        "score": snapshot.score,
        "trust_level": snapshot.trust_level,
        "valid_until": snapshot.valid_until.isoformat(),
    }
