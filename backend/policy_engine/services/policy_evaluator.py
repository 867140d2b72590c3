"""
Avaliação de acesso zero trust: RBAC + trust score + políticas de segurança.

Fluxo de ``evaluate``:

(a) decisão do ``GrantStore`` para ``(resource, action)``; sem allow o
    resultado é ``Deny("insufficient permission")``;
(b) com allow, busca as ``SecurityPolicy`` do grupo e o trust score atual.
    Score abaixo do mínimo (ou condição não atendida) de uma política
    *enforced* gera ``Deny`` e uma ``PolicyViolation``;
(c) política violada mas não enforced gera ``Conditional`` com os passos
    de remediação;
(d) caso contrário, ``Allow``.

Nenhuma falha escapa: timeout, ciclo na hierarquia, dependência fora do ar
ou falha ao gravar a auditoria resolvem para ``Deny``. Score ausente ou
vencido vale 0 e também nega.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Optional

from policy_engine.config import Settings, get_settings
from policy_engine.core.conditions import ConditionContext, ConditionEvaluator
from policy_engine.core.errors import (
    DependencyUnavailable,
    InsufficientTrust,
    InvalidPattern,
    LookupTimeout,
    PolicyEngineError,
    PolicyViolated,
)
from policy_engine.core.logging import bind_request_context, current_request_id, get_logger
from policy_engine.core.metrics import record_access_decision
from policy_engine.schemas.access import AccessCheckRequest, AccessCheckResponse
from policy_engine.schemas.policy import Decision, PolicyViolation, SecurityPolicy, ViolationType
from policy_engine.schemas.trust import TrustScore
from policy_engine.services.permission_catalog import PermissionCatalog, pattern_matches

logger = get_logger(__name__)

INSUFFICIENT_PERMISSION = "insufficient permission"

_REMEDIATION: dict[str, str] = {
    "authentication": "re-authenticate with multi-factor authentication",
    "device": "use a managed and compliant device",
    "network": "connect from a trusted network",
    "location": "confirm the sign-in location",
    "behavior": "verify recent account activity",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def remediation_steps(
    snapshot: Optional[TrustScore],
    minimum_score: float,
    failed_conditions: list[SecurityPolicy],
) -> list[str]:
    """Passos de remediação a partir dos sub-scores mais fracos."""
    if snapshot is None:
        return ["re-authenticate to refresh the trust score"]

    steps = [
        _REMEDIATION[name]
        for name, value in sorted(snapshot.sub_scores().items(), key=lambda item: item[1])
        if value < minimum_score
    ]
    steps.extend(f"satisfy the conditions of policy '{policy.name}'" for policy in failed_conditions)
    return list(dict.fromkeys(steps)) or [_REMEDIATION["authentication"]]


class _PolicyOutcome:
    """Resultado da checagem de uma política aplicável."""

    __slots__ = ("policy", "violation_type")

    def __init__(self, policy: SecurityPolicy, violation_type: ViolationType) -> None:
        self.policy = policy
        self.violation_type = violation_type

    @property
    def reason(self) -> str:
        if self.violation_type == "insufficient_trust":
            return InsufficientTrust.reason
        return PolicyViolated.reason


class PolicyEvaluator:
    """Orquestra grants, trust score e políticas em uma decisão final."""

    def __init__(
        self,
        grant_store,
        trust_engine,
        policy_store,
        violation_store,
        audit_service,
        *,
        catalog: PermissionCatalog,
        correlator=None,
        condition_evaluator: ConditionEvaluator | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._grants = grant_store
        self._trust = trust_engine
        self._policies = policy_store
        self._violations = violation_store
        self._audit = audit_service
        self._catalog = catalog
        self._correlator = correlator
        self._conditions = condition_evaluator or ConditionEvaluator()
        self._timeout = self.settings.lookup_timeout_seconds
        self._tasks: set[asyncio.Task] = set()

    async def check_access(self, request: AccessCheckRequest) -> AccessCheckResponse:
        """Ponto de entrada da API de checagem de acesso."""
        request_id = request.request_id or current_request_id() or str(uuid.uuid4())
        decision = await self.evaluate(
            request.principal_id,
            request.device_id,
            request.ip_address,
            request.group_id,
            request.resource,
            request.action,
            request_id=request_id,
            claims=request.claims,
            attributes=request.attributes,
        )
        return AccessCheckResponse(
            decision=decision.kind,
            reason=decision.reason,
            matched_permission_id=decision.matched_permission_id,
            trust_score=decision.trust_score,
            policy_id=decision.policy_id,
            steps=decision.steps,
            request_id=request_id,
        )

    async def evaluate(
        self,
        principal_id: str,
        device_id: str,
        ip_address: str,
        group_id: Optional[str],
        resource: str,
        action: str,
        now: datetime | None = None,
        *,
        request_id: str | None = None,
        claims: dict[str, Any] | None = None,
        attributes: dict[str, Any] | None = None,
    ) -> Decision:
        """Decide o acesso; nunca levanta erro do motor (cancelamento propaga)."""
        now = now or _utcnow()
        request_id = request_id or current_request_id() or str(uuid.uuid4())
        started = time.perf_counter()
        violations: list[PolicyViolation] = []

        with bind_request_context(request_id=request_id, group_id=group_id, user_id=principal_id):
            context = ConditionContext(
                user_id=principal_id,
                group_id=group_id,
                resource=resource,
                action=action,
                ip_address=ip_address,
                device_id=device_id,
                now=now,
                claims=claims or {},
                attributes=attributes or {},
            )
            try:
                decision = await self._decide(context, request_id, violations)
            except PolicyEngineError as exc:
                if exc.operational:
                    logger.error("access_evaluation_fault", **exc.to_log(resource=resource, action=action))
                    decision = Decision.deny(exc.reason)
                else:
                    logger.info("access_evaluation_denied", **exc.to_log(resource=resource, action=action))
                    decision = Decision.deny(INSUFFICIENT_PERMISSION)
            except Exception:
                logger.exception("access_evaluation_failed", resource=resource, action=action)
                decision = Decision.deny(DependencyUnavailable.reason)

            duration = time.perf_counter() - started
            try:
                await self._audit.record_access_check(
                    request_id=request_id,
                    user_id=principal_id,
                    group_id=group_id,
                    device_id=device_id,
                    ip_address=ip_address,
                    resource=resource,
                    action=action,
                    decision=decision,
                    duration_ms=duration * 1000,
                )
            except Exception as exc:
                # Decisão sem auditoria durável não pode liberar acesso.
                logger.error("audit_write_failed", error=str(exc), error_type=type(exc).__name__)
                decision = Decision.deny(DependencyUnavailable.reason, trust_score=decision.trust_score)

            record_access_decision(decision.kind, duration, decision.reason)
            logger.info(
                "access_evaluated",
                resource=resource,
                action=action,
                decision=decision.kind,
                reason=decision.reason,
                policy_id=decision.policy_id,
                trust_score=decision.trust_score,
                duration_ms=round(duration * 1000, 3),
            )
            for violation in violations:
                self._forward(violation)
        return decision

    # ── Etapas ─────────────────────────────────────────────────────────────

    async def _lookup(self, dependency: str, awaitable: Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            raise LookupTimeout(
                "consulta excedeu o timeout",
                dependency=dependency,
                timeout_seconds=self._timeout,
            ) from exc
        except PolicyEngineError:
            raise
        except Exception as exc:
            raise DependencyUnavailable(
                "dependência indisponível",
                dependency=dependency,
                cause=type(exc).__name__,
                detail=str(exc),
            ) from exc

    async def _decide(
        self,
        context: ConditionContext,
        request_id: str,
        violations: list[PolicyViolation],
    ) -> Decision:
        resource, action = context.resource, context.action
        grants = await self._lookup(
            "grants",
            self._grants.effective_grants(context.user_id, context.group_id, context.now, context),
        )
        winner = grants.decide(resource, action)
        if winner is None or winner.effect == "deny":
            if self._is_high_risk(resource, action):
                violations.append(self._high_risk_violation(context, request_id))
            return Decision.deny(
                INSUFFICIENT_PERMISSION,
                matched_permission_id=winner.permission.id if winner and winner.permission else None,
            )

        matched_permission_id = winner.permission.id if winner.permission is not None else None
        if matched_permission_id is None:
            best = await self._lookup("catalog", self._catalog.best_match(resource, action))
            matched_permission_id = best.id if best is not None else None

        policies = await self._lookup("policies", self._policies.list_policies(context.group_id))
        snapshot = await self._lookup(
            "trust",
            self._trust.current_score(context.user_id, context.device_id, context.ip_address),
        )
        stale = self._trust.is_stale(snapshot, context.now)
        score = self._trust.effective_score(snapshot, context.now)

        blocking: list[_PolicyOutcome] = []
        advisory: list[_PolicyOutcome] = []
        applicable = sorted(
            (policy for policy in policies if self._applies(policy, context)),
            key=lambda policy: (-policy.priority, policy.id),
        )
        for policy in applicable:
            outcome = self._check_policy(policy, score, context)
            if outcome is None:
                continue
            violations.append(self._policy_violation(outcome, score, snapshot, context, request_id))
            (blocking if policy.is_enforced else advisory).append(outcome)

        if blocking:
            first = blocking[0]
            return Decision.deny(
                first.reason,
                matched_permission_id=matched_permission_id,
                trust_score=score,
                policy_id=first.policy.id,
            )
        if stale:
            logger.warning(
                "trust_score_stale",
                device_id=context.device_id,
                missing=snapshot is None,
            )
            return Decision.deny(
                InsufficientTrust.reason,
                matched_permission_id=matched_permission_id,
                trust_score=0.0,
            )
        if advisory:
            minimum = max(outcome.policy.minimum_trust_score for outcome in advisory)
            failed_conditions = [o.policy for o in advisory if o.violation_type == "conditions_not_met"]
            return Decision.conditional(
                remediation_steps(snapshot, minimum, failed_conditions),
                matched_permission_id=matched_permission_id,
                trust_score=score,
                policy_id=advisory[0].policy.id,
            )
        return Decision.allow(matched_permission_id=matched_permission_id, trust_score=score)

    def _applies(self, policy: SecurityPolicy, context: ConditionContext) -> bool:
        """Escopo da política; escopo ilegível conta como aplicável."""
        if policy.resource_pattern:
            try:
                if not pattern_matches(policy.resource_pattern, context.resource, context.action):
                    return False
            except InvalidPattern as exc:
                logger.warning("policy_scope_invalid", **exc.to_log(policy_id=policy.id))
        scoped = self._conditions.evaluate(policy.rules, context)
        if scoped is None:
            logger.warning("policy_rules_unparseable", policy_id=policy.id)
            return True
        return scoped

    def _check_policy(
        self,
        policy: SecurityPolicy,
        score: float,
        context: ConditionContext,
    ) -> Optional[_PolicyOutcome]:
        if score < policy.minimum_trust_score:
            return _PolicyOutcome(policy, "insufficient_trust")
        if not self._conditions.is_satisfied(policy.conditions, context):
            return _PolicyOutcome(policy, "conditions_not_met")
        return None

    def _is_high_risk(self, resource: str, action: str) -> bool:
        for pattern in self.settings.high_risk_permission_patterns:
            try:
                if pattern_matches(pattern, resource, action):
                    return True
            except InvalidPattern as exc:
                logger.warning("high_risk_pattern_invalid", **exc.to_log(pattern=pattern))
        return False

    # ── Violações ──────────────────────────────────────────────────────────

    @staticmethod
    def _policy_violation(
        outcome: _PolicyOutcome,
        score: float,
        snapshot: Optional[TrustScore],
        context: ConditionContext,
        request_id: str,
    ) -> PolicyViolation:
        policy = outcome.policy
        return PolicyViolation(
            id=str(uuid.uuid4()),
            security_policy_id=policy.id,
            user_id=context.user_id,
            device_id=context.device_id,
            ip_address=context.ip_address,
            group_id=context.group_id,
            resource=context.resource,
            action=context.action,
            violation_type=outcome.violation_type,
            category=policy.category,
            severity=policy.severity,
            description=f"policy '{policy.name}' not satisfied ({outcome.violation_type})",
            trust_score=score,
            violation_data={
                "policy_name": policy.name,
                "minimum_trust_score": policy.minimum_trust_score,
                "enforced": policy.is_enforced,
                "trust_level": snapshot.trust_level if snapshot is not None else "none",
            },
            request_id=request_id,
            detected_at=context.now,
        )

    @staticmethod
    def _high_risk_violation(context: ConditionContext, request_id: str) -> PolicyViolation:
        return PolicyViolation(
            id=str(uuid.uuid4()),
            user_id=context.user_id,
            device_id=context.device_id,
            ip_address=context.ip_address,
            group_id=context.group_id,
            resource=context.resource,
            action=context.action,
            violation_type="high_risk_denied",
            category="access_control",
            severity="high",
            description=f"denied high-risk request {context.resource}:{context.action}",
            request_id=request_id,
            detected_at=context.now,
        )

    def _forward(self, violation: PolicyViolation) -> None:
        task = asyncio.create_task(self._publish(violation))
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    async def _publish(self, violation: PolicyViolation) -> None:
        await self._violations.add_violation(violation)
        if self._correlator is not None:
            await self._correlator.on_violation(violation)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("violation_forward_failed", error=str(exc), error_type=type(exc).__name__)

    async def drain(self) -> None:
        """Aguarda o encaminhamento de violações pendentes."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
