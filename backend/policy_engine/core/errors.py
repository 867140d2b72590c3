"""Taxonomia de erros do motor de autorização.

Cada erro carrega um ``reason`` legível que pode atravessar a fronteira da API.
Detalhes internos ficam em ``details`` e vão apenas para os logs.
"""

from __future__ import annotations

from typing import Any


class PolicyEngineError(Exception):
    """Erro base do motor de autorização."""

    code = "policy_engine_error"
    reason = "access denied"
    # Falhas operacionais indicam corrupção de dados ou degradação de infraestrutura.
    operational = False

    def __init__(self, message: str | None = None, **details: Any) -> None:
        super().__init__(message or self.reason)
        self.details = details

    def to_log(self, **fields: Any) -> dict[str, Any]:
        """Campos de log do erro; ``fields`` do chamador prevalecem sobre ``details``."""
        return {"error_code": self.code, "error": str(self), **self.details, **fields}


# ── Catálogo e hierarquia ──────────────────────────────────────────────────


class InvalidPattern(PolicyEngineError):
    code = "invalid_pattern"
    reason = "invalid permission pattern"


class CycleDetected(PolicyEngineError):
    code = "cycle_detected"
    reason = "authorization data inconsistent"
    operational = True


class PermissionNotFound(PolicyEngineError):
    code = "permission_not_found"
    reason = "permission not found"


class RoleNotFound(PolicyEngineError):
    code = "role_not_found"
    reason = "role not found"


class InvalidHierarchy(PolicyEngineError):
    code = "invalid_hierarchy"
    reason = "invalid role hierarchy"


# ── Grants ─────────────────────────────────────────────────────────────────


class ExpiredGrant(PolicyEngineError):
    """Informativo: grant existe mas está fora da janela de validade."""

    code = "expired_grant"
    reason = "grant outside its validity window"


class GroupMismatch(PolicyEngineError):
    code = "group_mismatch"
    reason = "grant does not belong to the requested group"


class DuplicateGrant(PolicyEngineError):
    code = "duplicate_grant"
    reason = "grant already exists"


class ConcurrencyConflict(PolicyEngineError):
    code = "concurrency_conflict"
    reason = "resource was modified concurrently"


class ConditionEvaluationFailed(PolicyEngineError):
    code = "condition_evaluation_failed"
    reason = "condition could not be evaluated"


# ── Políticas e trust ──────────────────────────────────────────────────────


class InsufficientTrust(PolicyEngineError):
    code = "insufficient_trust"
    reason = "insufficient trust"


class PolicyViolated(PolicyEngineError):
    code = "policy_violation"
    reason = "policy violation"


class LookupTimeout(PolicyEngineError):
    code = "timeout"
    reason = "authorization dependency unavailable"
    operational = True


class DependencyUnavailable(PolicyEngineError):
    code = "dependency_unavailable"
    reason = "authorization dependency unavailable"
    operational = True


# ── Alertas ────────────────────────────────────────────────────────────────


class AlertNotFound(PolicyEngineError):
    code = "alert_not_found"
    reason = "alert not found"


class InvalidAlertTransition(PolicyEngineError):
    code = "invalid_alert_transition"
    reason = "alert status transition not allowed"
