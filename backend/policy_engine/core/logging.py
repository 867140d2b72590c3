"""Logging estruturado (structlog) do motor de decisão.

Campos de correlação (request, grupo, principal, task Celery) vivem em
contextvars e entram em todo evento emitido dentro de ``bind_request_context``.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any

import structlog

from policy_engine.config import get_settings

_CONTEXT_FIELDS = ("request_id", "group_id", "user_id", "task_id")
_CONTEXT: dict[str, ContextVar[str | None]] = {
    field: ContextVar(f"policy_engine_{field}", default=None) for field in _CONTEXT_FIELDS
}

# Chaves nunca gravadas em claro, mesmo quando vêm em ``context`` de auditoria.
_MASKED_KEYS = frozenset({"password", "token", "secret", "authorization", "api_key"})
_MASK = "***"

_DEV_ENVIRONMENTS = frozenset({"development", "dev", "local", "test"})


def _wants_json(settings) -> bool:
    return not settings.debug and settings.environment.lower() not in _DEV_ENVIRONMENTS


@contextmanager
def bind_request_context(
    *,
    request_id: str | None = None,
    group_id: str | None = None,
    user_id: str | None = None,
    task_id: str | None = None,
) -> Iterator[None]:
    """Vincula campos de correlação ao contexto; valores ``None`` não sobrescrevem."""
    bound = {"request_id": request_id, "group_id": group_id, "user_id": user_id, "task_id": task_id}
    tokens = [
        (_CONTEXT[field], _CONTEXT[field].set(str(value)))
        for field, value in bound.items()
        if value is not None
    ]
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


def current_request_id() -> str | None:
    return _CONTEXT["request_id"].get()


def inject_request_context(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Processor: copia o contexto ativo para o evento sem sobrescrever campos explícitos."""
    for field, var in _CONTEXT.items():
        value = var.get()
        if value is not None:
            event_dict.setdefault(field, value)
    return event_dict


def _mask(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {
            key: _MASK if str(key).lower() in _MASKED_KEYS else _mask(item)
            for key, item in value.items()
        }
    return value


def mask_secrets(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Processor: mascara credenciais no topo do evento e em dicts aninhados."""
    return _mask(event_dict)


def configure_structlog() -> None:
    settings = get_settings()
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    logging.basicConfig(level=level, format="%(message)s", force=True)

    renderer: Any
    if _wants_json(settings):
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.add_log_level,
            inject_request_context,
            mask_secrets,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> Any:
    return structlog.get_logger(name)
