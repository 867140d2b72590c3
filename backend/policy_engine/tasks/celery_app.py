"""
App Celery do motor: entrega de alertas (fila ``alerts``), recálculo de
trust e rotinas de retenção (fila padrão).

    celery -A policy_engine.tasks.celery_app.celery_app worker \\
        --loglevel=info -Q alerts,celery -c 2

    celery -A policy_engine.tasks.celery_app.celery_app beat
"""
from __future__ import annotations

from celery import Celery
from celery.schedules import crontab

from policy_engine.config import get_settings

settings = get_settings()

celery_app = Celery(
    "policy_engine",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=[
        "policy_engine.tasks.maintenance",
        "policy_engine.tasks.alerts",
        "policy_engine.tasks.trust",
    ],
)

celery_app.conf.update(
    # Serialização
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    # Timezone
    timezone="UTC",
    enable_utc=True,
    # Confiabilidade
    task_track_started=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_soft_time_limit=120,
    task_time_limit=180,
    # Roteamento de filas
    task_routes={
        "policy_engine.tasks.alerts.*": {"queue": "alerts"},
    },
    task_default_retry_delay=60,
    task_max_retries=3,
)

celery_app.conf.beat_schedule = {
    "auto-resolve-security-alerts": {
        "task": "policy_engine.tasks.maintenance.auto_resolve_security_alerts",
        "schedule": crontab(minute="*/15"),
    },
    "purge-expired-audit-events": {
        "task": "policy_engine.tasks.maintenance.purge_expired_audit_events",
        "schedule": crontab(hour=3, minute=0),
    },
    "purge-trust-score-history": {
        "task": "policy_engine.tasks.maintenance.purge_trust_score_history",
        "schedule": crontab(hour=3, minute=30),
    },
}
