"""
Endpoint de checagem de acesso consumido pelos serviços upstream.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from policy_engine.api.deps import get_policy_evaluator
from policy_engine.schemas.access import AccessCheckRequest, AccessCheckResponse
from policy_engine.services.policy_evaluator import PolicyEvaluator

router = APIRouter(
    prefix="/access",
    tags=["Access"],
)


@router.post(
    "/check",
    response_model=AccessCheckResponse,
    summary="Avaliar pedido de acesso",
    description="""
    Combina grants (papéis + overrides do usuário), trust score e políticas
    de segurança do grupo. Sempre responde 200 com `allow`, `deny` ou
    `conditional`; falhas internas resultam em `deny`.
    """,
)
async def check_access(
    payload: AccessCheckRequest,
    evaluator: PolicyEvaluator = Depends(get_policy_evaluator),
) -> AccessCheckResponse:
    return await evaluator.check_access(payload)
