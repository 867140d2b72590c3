"""Configuração global do pytest para os testes unitários do motor.

Os testes rodam sempre com os stores e o throttle em memória: nenhum teste
unitário abre conexão com Postgres ou Redis. Os testes dos stores SQL usam
sessões ``AsyncMock`` no lugar de um banco real.
"""
from __future__ import annotations

import os


def _set_env_defaults() -> None:
    """Seta variáveis de ambiente mínimas para que pydantic Settings não falhe."""
    defaults = {
        "ENVIRONMENT": "test",
        "DEBUG": "false",
        "STORE_BACKEND": "memory",
        "ALERT_THROTTLE_BACKEND": "memory",
        "POSTGRES_POOL_SIZE": "1",
        "POSTGRES_MAX_OVERFLOW": "0",
        "ALERT_WEBHOOK_URL": "",
        # Celery: sem broker Redis real nos testes unitários
        "CELERY_BROKER_URL": "redis://localhost:6379/1",
        "CELERY_RESULT_BACKEND": "redis://localhost:6379/2",
    }
    for key, val in defaults.items():
        os.environ.setdefault(key, val)


def _configure_celery_eager() -> None:
    """Executa tasks inline (``.delay()`` roda no próprio processo, sem broker)."""
    from policy_engine.tasks.celery_app import celery_app

    celery_app.conf.update(
        task_always_eager=True,
        task_eager_propagates=True,
        result_backend="cache+memory://",
        broker_url="memory://",
    )


# ---------------------------------------------------------------------------
# Executa antes de qualquer import de módulo do motor
# ---------------------------------------------------------------------------
_set_env_defaults()
_configure_celery_eager()
