"""
Dependencies para endpoints FastAPI.

Funções reutilizáveis para injeção do motor e de seus serviços.
"""
from __future__ import annotations

from fastapi import Depends, HTTPException, status

from policy_engine.core.errors import (
    AlertNotFound,
    ConcurrencyConflict,
    DuplicateGrant,
    InvalidAlertTransition,
    PermissionNotFound,
    PolicyEngineError,
    RoleNotFound,
)
from policy_engine.services.alert_correlator import AlertCorrelator
from policy_engine.services.engine import PolicyEngine, get_policy_engine
from policy_engine.services.policy_evaluator import PolicyEvaluator
from policy_engine.services.trust_score_engine import TrustScoreEngine

_STATUS_BY_ERROR: tuple[tuple[type[PolicyEngineError], int], ...] = (
    (AlertNotFound, status.HTTP_404_NOT_FOUND),
    (PermissionNotFound, status.HTTP_404_NOT_FOUND),
    (RoleNotFound, status.HTTP_404_NOT_FOUND),
    (InvalidAlertTransition, status.HTTP_409_CONFLICT),
    (ConcurrencyConflict, status.HTTP_409_CONFLICT),
    (DuplicateGrant, status.HTTP_409_CONFLICT),
)


def get_engine() -> PolicyEngine:
    return get_policy_engine()


def get_policy_evaluator(engine: PolicyEngine = Depends(get_engine)) -> PolicyEvaluator:
    return engine.evaluator


def get_trust_engine(engine: PolicyEngine = Depends(get_engine)) -> TrustScoreEngine:
    return engine.trust


def get_alert_correlator(engine: PolicyEngine = Depends(get_engine)) -> AlertCorrelator:
    return engine.correlator


def http_error(exc: PolicyEngineError) -> HTTPException:
    """Converte erro do motor em HTTPException expondo só o ``reason``."""
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=exc.reason)
    return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=exc.reason)
