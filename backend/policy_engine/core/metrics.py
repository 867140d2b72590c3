"""Métricas Prometheus do motor.

Registry próprio (não o global do processo) para que ``/metrics`` exponha só
séries do serviço. Com ``metrics_enabled=False`` os ``record_*`` viram no-op.
"""

from __future__ import annotations

from functools import wraps
from typing import Callable, TypeVar

from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest

from policy_engine.config import get_settings

CONTENT_TYPE = "text/plain; version=0.0.4"

F = TypeVar("F", bound=Callable[..., None])

REGISTRY = CollectorRegistry()

HTTP_REQUESTS = Counter(
    "http_requests_total",
    "Requisições HTTP por rota e status",
    ["method", "path", "status"],
    registry=REGISTRY,
)
HTTP_LATENCY = Histogram(
    "http_request_duration_seconds",
    "Latência das requisições HTTP",
    ["method", "path"],
    registry=REGISTRY,
    buckets=(0.005, 0.01, 0.05, 0.1, 0.5, 1, 3),
)
ACCESS_DECISIONS = Counter(
    "access_decisions_total",
    "Decisões de acesso emitidas",
    ["decision"],
    registry=REGISTRY,
)
ACCESS_DENIALS = Counter(
    "access_denials_total",
    "Negações por motivo",
    ["reason"],
    registry=REGISTRY,
)
ACCESS_LATENCY = Histogram(
    "access_decision_duration_seconds",
    "Latência de avaliação de acesso",
    ["decision"],
    registry=REGISTRY,
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.5, 1),
)
CACHE_LOOKUPS = Counter(
    "policy_cache_requests_total",
    "Consultas aos caches do caminho de decisão",
    ["cache", "result"],
    registry=REGISTRY,
)
ALERT_OUTCOMES = Counter(
    "security_alerts_total",
    "Violações processadas pelo correlacionador",
    ["outcome"],
    registry=REGISTRY,
)
TRUST_RECOMPUTES = Counter(
    "trust_recomputes_total",
    "Recálculos de trust score por nível resultante",
    ["level"],
    registry=REGISTRY,
)
CELERY_TASKS = Counter(
    "celery_tasks_total",
    "Execuções de tarefas Celery",
    ["task", "status"],
    registry=REGISTRY,
)


def is_enabled() -> bool:
    return bool(get_settings().metrics_enabled)


def _when_enabled(func: F) -> F:
    @wraps(func)
    def wrapper(*args, **kwargs) -> None:
        if is_enabled():
            func(*args, **kwargs)

    return wrapper  # type: ignore[return-value]


@_when_enabled
def record_http_request(method: str, path: str, status: int, duration_seconds: float) -> None:
    method = method.upper()
    HTTP_REQUESTS.labels(method=method, path=path, status=str(status)).inc()
    HTTP_LATENCY.labels(method=method, path=path).observe(duration_seconds)


@_when_enabled
def record_access_decision(decision: str, duration_seconds: float, reason: str | None = None) -> None:
    ACCESS_DECISIONS.labels(decision=decision).inc()
    ACCESS_LATENCY.labels(decision=decision).observe(duration_seconds)
    if decision == "deny" and reason:
        ACCESS_DENIALS.labels(reason=reason).inc()


@_when_enabled
def record_cache_request(cache: str, hit: bool) -> None:
    CACHE_LOOKUPS.labels(cache=cache, result="hit" if hit else "miss").inc()


@_when_enabled
def record_alert_outcome(outcome: str) -> None:
    """outcome: created | deduplicated | throttled | unmatched."""
    ALERT_OUTCOMES.labels(outcome=outcome).inc()


@_when_enabled
def record_trust_recompute(level: str) -> None:
    TRUST_RECOMPUTES.labels(level=level).inc()


@_when_enabled
def record_celery_task(task: str, status: str) -> None:
    CELERY_TASKS.labels(task=task, status=status).inc()


def get_metrics_payload() -> bytes:
    """Snapshot no formato texto do Prometheus (vazio se desabilitado)."""
    if not is_enabled():
        return b""
    return generate_latest(REGISTRY)
