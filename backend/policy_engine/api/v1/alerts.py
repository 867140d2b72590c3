"""
Ações de operador sobre alertas de segurança.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from policy_engine.api.deps import get_alert_correlator, http_error
from policy_engine.core.errors import PolicyEngineError
from policy_engine.schemas.access import AlertAcknowledgeRequest, AlertResolveRequest
from policy_engine.schemas.alerts import SecurityAlert
from policy_engine.services.alert_correlator import AlertCorrelator

router = APIRouter(
    prefix="/alerts",
    tags=["Alerts"],
)


@router.post(
    "/{alert_id}/acknowledge",
    response_model=SecurityAlert,
    summary="Reconhecer alerta (new → acknowledged)",
)
async def acknowledge_alert(
    alert_id: str,
    payload: AlertAcknowledgeRequest,
    correlator: AlertCorrelator = Depends(get_alert_correlator),
) -> SecurityAlert:
    try:
        return await correlator.acknowledge(alert_id, payload.acknowledged_by, payload.notes)
    except PolicyEngineError as exc:
        raise http_error(exc) from exc


@router.post(
    "/{alert_id}/resolve",
    response_model=SecurityAlert,
    summary="Resolver alerta (acknowledged → resolved)",
)
async def resolve_alert(
    alert_id: str,
    payload: AlertResolveRequest,
    correlator: AlertCorrelator = Depends(get_alert_correlator),
) -> SecurityAlert:
    try:
        return await correlator.resolve(alert_id, payload.resolved_by, payload.resolution)
    except PolicyEngineError as exc:
        raise http_error(exc) from exc
