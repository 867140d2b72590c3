"""
Endpoints de trust score: ingestão de eventos e consulta de snapshots.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel

from policy_engine.api.deps import get_trust_engine
from policy_engine.schemas.trust import AuthenticationRequirement, TrustEvent, TrustScore
from policy_engine.services.trust_score_engine import (
    TrustScoreEngine,
    required_authentication,
    trust_level_for,
)

router = APIRouter(
    prefix="/trust",
    tags=["Trust"],
)


class TrustEventAccepted(BaseModel):
    status: str = "scheduled"
    user_id: str
    device_id: str
    ip_address: str


class TrustScoreResponse(BaseModel):
    snapshot: TrustScore
    effective_score: float
    is_stale: bool
    required_authentication: AuthenticationRequirement


@router.post(
    "/events",
    response_model=TrustEventAccepted,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Registrar evento de autenticação/dispositivo",
)
async def submit_trust_event(
    event: TrustEvent,
    trust_engine: TrustScoreEngine = Depends(get_trust_engine),
) -> TrustEventAccepted:
    """Agenda o recálculo fora do caminho da requisição."""
    trust_engine.schedule_recompute(event)
    return TrustEventAccepted(user_id=event.user_id, device_id=event.device_id, ip_address=event.ip_address)


@router.get(
    "/scores/{user_id}",
    response_model=TrustScoreResponse,
    summary="Consultar trust score atual da tupla",
)
async def get_trust_score(
    user_id: str,
    device_id: str = Query(..., min_length=1),
    ip_address: str = Query(..., min_length=1),
    trust_engine: TrustScoreEngine = Depends(get_trust_engine),
) -> TrustScoreResponse:
    snapshot: Optional[TrustScore] = await trust_engine.current_score(user_id, device_id, ip_address)
    if snapshot is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="trust score not found")

    now = datetime.now(timezone.utc)
    effective = trust_engine.effective_score(snapshot, now)
    return TrustScoreResponse(
        snapshot=snapshot,
        effective_score=effective,
        is_stale=trust_engine.is_stale(snapshot, now),
        required_authentication=required_authentication(trust_level_for(effective)),
    )
