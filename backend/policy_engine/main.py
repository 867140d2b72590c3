"""
Aplicação FastAPI do motor de decisão de acesso.

Rotas de decisão, trust e alertas em ``/api/v1``; health checks e
``/metrics`` na raiz.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from time import perf_counter
from uuid import uuid4

from fastapi import APIRouter, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from policy_engine.api import health
from policy_engine.api.v1 import access, alerts, trust
from policy_engine.config import get_settings
from policy_engine.core.logging import bind_request_context, configure_structlog, get_logger
from policy_engine.core.metrics import is_enabled, record_http_request
from policy_engine.services.defaults import seed_defaults
from policy_engine.services.engine import get_policy_engine

settings = get_settings()
configure_structlog()
logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-Id"
GROUP_HEADER = "X-Group-Id"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: cria tabelas ausentes (postgres com ``db_create_tables``), monta o motor e semeia
    políticas/regras padrão em stores vazios.
    Shutdown: drena violações e recálculos pendentes e fecha o throttle.
    """
    logger.info(
        "app_startup_started",
        environment=settings.environment,
        store_backend=settings.store_backend,
        alert_throttle_backend=settings.alert_throttle_backend,
    )
    if settings.store_backend == "postgres" and settings.db_create_tables:
        from policy_engine.db.base import init_models

        await init_models()
        logger.info("db_models_ready")

    engine = get_policy_engine()
    if settings.seed_defaults:
        seeded = await seed_defaults(engine.stores)
        logger.info("default_policies_ready", **seeded)
    try:
        yield
    finally:
        await engine.aclose()
        logger.info("app_shutdown")


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Request id e grupo nos logs, duração nos headers e nas métricas HTTP."""

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid4())
        group_id = request.headers.get(GROUP_HEADER)
        started = perf_counter()

        with bind_request_context(request_id=request_id, group_id=group_id):
            response = await call_next(request)
            elapsed = perf_counter() - started
            logger.info(
                "http_request_complete",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round(elapsed * 1000, 2),
            )

        response.headers[REQUEST_ID_HEADER] = request_id
        response.headers["X-Request-Duration-Ms"] = f"{elapsed * 1000:.2f}"
        if is_enabled() and request.url.path != "/metrics":
            # Template da rota, para não explodir a cardinalidade com ids.
            route = request.scope.get("route")
            record_http_request(
                method=request.method,
                path=getattr(route, "path", request.url.path),
                status=response.status_code,
                duration_seconds=elapsed,
            )
        return response


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Motor de resolução de permissões e políticas zero trust",
    openapi_tags=[
        {"name": "Access", "description": "Checagem de acesso."},
        {"name": "Trust", "description": "Eventos e snapshots de trust score."},
        {"name": "Alerts", "description": "Ações de operador sobre alertas."},
        {"name": "Health", "description": "Liveness, readiness e dependências."},
    ],
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestContextMiddleware)

api_router = APIRouter(prefix="/api/v1")
for module in (access, trust, alerts):
    api_router.include_router(module.router)

app.include_router(api_router)
app.include_router(health.router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "policy_engine.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )
