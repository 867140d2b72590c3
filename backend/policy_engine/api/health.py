"""
Health checks e exposição de métricas do motor.

A readiness só checa o que os backends configurados usam: Postgres com
``store_backend=postgres``, Redis com ``alert_throttle_backend=redis``. O
catálogo de permissões é sempre checado, com o mesmo timeout das consultas
do caminho de decisão.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any

import redis.asyncio as aioredis
from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import PlainTextResponse
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from policy_engine.api.deps import get_engine
from policy_engine.config import get_settings
from policy_engine.core.errors import PolicyEngineError
from policy_engine.core.logging import get_logger
from policy_engine.core.metrics import CONTENT_TYPE, get_metrics_payload, is_enabled
from policy_engine.services.engine import PolicyEngine

logger = get_logger(__name__)

router = APIRouter(tags=["Health"])

DependencyCheck = dict[str, Any]


def _summary(state: str) -> dict[str, Any]:
    settings = get_settings()
    return {
        "status": state,
        "app": settings.app_name,
        "version": settings.app_version,
        "environment": settings.environment,
        "store_backend": settings.store_backend,
        "timestamp_utc": datetime.now(timezone.utc).isoformat(),
    }


async def check_postgres() -> DependencyCheck:
    from policy_engine.db.base import engine

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except (OSError, SQLAlchemyError) as exc:
        return {"status": "disconnected", "error": str(exc)}
    return {"status": "connected"}


async def check_redis() -> DependencyCheck:
    client = aioredis.from_url(get_settings().redis_url)
    try:
        pong = await client.ping()
    except (OSError, RedisError) as exc:
        return {"status": "disconnected", "error": str(exc)}
    finally:
        await client.aclose()
    if pong is not True:
        return {"status": "disconnected", "error": f"ping={pong!r}"}
    return {"status": "connected"}


async def check_catalog(engine: PolicyEngine) -> DependencyCheck:
    timeout = engine.settings.lookup_timeout_seconds
    try:
        snapshot = await asyncio.wait_for(engine.catalog.snapshot(), timeout=timeout)
    except asyncio.TimeoutError:
        return {"status": "disconnected", "error": f"timeout after {timeout}s"}
    except (PolicyEngineError, OSError, SQLAlchemyError) as exc:
        return {"status": "disconnected", "error": str(exc)}
    return {"status": "connected", "permissions": len(snapshot.permissions)}


async def collect_checks(engine: PolicyEngine) -> dict[str, DependencyCheck]:
    settings = get_settings()
    checks: dict[str, DependencyCheck] = {}
    if settings.store_backend == "postgres":
        checks["postgres"] = await check_postgres()
    if settings.alert_throttle_backend == "redis":
        checks["redis"] = await check_redis()
    checks["catalog"] = await check_catalog(engine)
    return checks


@router.get("/health")
async def health(engine: PolicyEngine = Depends(get_engine)) -> dict[str, Any]:
    """Resumo consolidado; sempre 200."""
    payload = _summary("healthy")
    payload["dependencies"] = await collect_checks(engine)
    return payload


@router.get("/health/ready")
async def ready(engine: PolicyEngine = Depends(get_engine)) -> dict[str, Any]:
    """Readiness para orquestradores: 503 se alguma dependência estiver fora."""
    checks = await collect_checks(engine)
    down = sorted(name for name, check in checks.items() if check.get("status") != "connected")
    if down:
        logger.warning("readiness_failed", dependencies=down)
        payload = _summary("unready")
        payload["dependencies"] = checks
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=payload)

    payload = _summary("ready")
    payload["dependencies"] = checks
    return payload


@router.get("/health/live")
async def live() -> dict[str, Any]:
    return _summary("alive")


@router.get("/metrics", include_in_schema=False)
async def metrics() -> PlainTextResponse:
    if not is_enabled():
        return PlainTextResponse("metrics_disabled 0\n")
    return PlainTextResponse(get_metrics_payload().decode("utf-8"), media_type=CONTENT_TYPE)
