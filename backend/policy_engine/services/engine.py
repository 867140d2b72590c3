"""
Montagem do motor: stores, caches, serviços e sinks conforme ``Settings``.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Optional

from policy_engine.config import Settings, get_settings
from policy_engine.core.conditions import ConditionEvaluator
from policy_engine.core.logging import get_logger
from policy_engine.services.alert_correlator import AlertCorrelator
from policy_engine.services.alert_sinks import LoggingAlertSink, QueuedWebhookAlertSink
from policy_engine.services.alert_throttle import InMemoryAlertThrottle, RedisAlertThrottle
from policy_engine.services.audit_service import AuditService
from policy_engine.services.grant_store import GrantStore
from policy_engine.services.permission_catalog import PermissionCatalog
from policy_engine.services.policy_evaluator import PolicyEvaluator
from policy_engine.services.role_hierarchy import RoleHierarchyResolver
from policy_engine.services.trust_score_engine import TrustScoreEngine

logger = get_logger(__name__)


@dataclass
class Stores:
    permissions: Any
    roles: Any
    user_permissions: Any
    identity: Any
    trust_scores: Any
    policies: Any
    violations: Any
    alerts: Any
    audit: Any


@dataclass
class PolicyEngine:
    """Serviços do motor já conectados entre si."""

    settings: Settings
    stores: Stores
    catalog: PermissionCatalog
    roles: RoleHierarchyResolver
    grants: GrantStore
    trust: TrustScoreEngine
    audit: AuditService
    correlator: AlertCorrelator
    evaluator: PolicyEvaluator
    throttle: Any = None

    async def drain(self) -> None:
        """Aguarda trabalho em background (violações e recálculos de trust)."""
        await self.evaluator.drain()
        await self.trust.drain()

    async def aclose(self) -> None:
        await self.drain()
        if isinstance(self.throttle, RedisAlertThrottle):
            await self.throttle.aclose()


def memory_stores() -> Stores:
    from policy_engine.stores.memory import (
        InMemoryAlertStore,
        InMemoryAuditStore,
        InMemoryIdentityProvider,
        InMemoryPermissionStore,
        InMemoryPolicyStore,
        InMemoryRoleStore,
        InMemoryTrustScoreStore,
        InMemoryUserPermissionStore,
        InMemoryViolationStore,
    )

    return Stores(
        permissions=InMemoryPermissionStore(),
        roles=InMemoryRoleStore(),
        user_permissions=InMemoryUserPermissionStore(),
        identity=InMemoryIdentityProvider(),
        trust_scores=InMemoryTrustScoreStore(),
        policies=InMemoryPolicyStore(),
        violations=InMemoryViolationStore(),
        alerts=InMemoryAlertStore(),
        audit=InMemoryAuditStore(),
    )


def sql_stores(session_factory=None) -> Stores:
    from policy_engine.stores.sql import (
        SqlAlertStore,
        SqlAuditStore,
        SqlIdentityProvider,
        SqlPermissionStore,
        SqlPolicyStore,
        SqlRoleStore,
        SqlTrustScoreStore,
        SqlUserPermissionStore,
        SqlViolationStore,
    )

    return Stores(
        permissions=SqlPermissionStore(session_factory),
        roles=SqlRoleStore(session_factory),
        user_permissions=SqlUserPermissionStore(session_factory),
        identity=SqlIdentityProvider(session_factory),
        trust_scores=SqlTrustScoreStore(session_factory),
        policies=SqlPolicyStore(session_factory),
        violations=SqlViolationStore(session_factory),
        alerts=SqlAlertStore(session_factory),
        audit=SqlAuditStore(session_factory),
    )


def _alert_sinks(settings: Settings) -> dict:
    sinks: dict = {"log": LoggingAlertSink()}
    if settings.alert_webhook_url:
        sinks["webhook"] = QueuedWebhookAlertSink()
    return sinks


def build_policy_engine(
    settings: Settings | None = None,
    *,
    stores: Optional[Stores] = None,
    throttle=None,
    sinks: dict | None = None,
) -> PolicyEngine:
    """Constrói o motor completo; ``stores``/``throttle``/``sinks`` podem ser injetados."""
    settings = settings or get_settings()
    if stores is None:
        stores = sql_stores() if settings.store_backend == "postgres" else memory_stores()
    if throttle is None:
        throttle = (
            RedisAlertThrottle(settings.redis_url)
            if settings.alert_throttle_backend == "redis"
            else InMemoryAlertThrottle()
        )

    conditions = ConditionEvaluator()
    audit = AuditService(stores.audit)
    catalog = PermissionCatalog(stores.permissions)
    roles = RoleHierarchyResolver(stores.roles, catalog, audit_service=audit)
    grants = GrantStore(
        stores.user_permissions,
        stores.identity,
        catalog,
        roles,
        condition_evaluator=conditions,
        audit_service=audit,
    )
    trust = TrustScoreEngine(stores.trust_scores, stores.identity, settings=settings)
    correlator = AlertCorrelator(
        stores.alerts,
        throttle=throttle,
        sinks=sinks if sinks is not None else _alert_sinks(settings),
        condition_evaluator=conditions,
        audit_service=audit,
        settings=settings,
    )
    evaluator = PolicyEvaluator(
        grants,
        trust,
        stores.policies,
        stores.violations,
        audit,
        catalog=catalog,
        correlator=correlator,
        condition_evaluator=conditions,
        settings=settings,
    )
    logger.info(
        "policy_engine_built",
        store_backend=settings.store_backend,
        alert_throttle_backend=settings.alert_throttle_backend,
    )
    return PolicyEngine(
        settings=settings,
        stores=stores,
        catalog=catalog,
        roles=roles,
        grants=grants,
        trust=trust,
        audit=audit,
        correlator=correlator,
        evaluator=evaluator,
        throttle=throttle,
    )


@lru_cache()
def get_policy_engine() -> PolicyEngine:
    """Instância única do motor por processo."""
    return build_policy_engine()
