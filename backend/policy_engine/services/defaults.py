"""
Políticas de segurança e regras de alerta padrão.

Semeadas na subida do serviço quando o store ainda não tem nenhuma: uma
instalação nova já aplica trust mínimo e correlaciona violações. Se já
existir qualquer política (ou regra), o conjunto correspondente é mantido
como está, inclusive padrões editados por operadores.
"""

from __future__ import annotations

from datetime import timedelta

from policy_engine.core.logging import get_logger
from policy_engine.schemas.alerts import AlertRule
from policy_engine.schemas.policy import SecurityPolicy

logger = get_logger(__name__)

DEFAULT_POLICIES: tuple[SecurityPolicy, ...] = (
    SecurityPolicy(
        id="default-device-trust",
        name="Device Trust Policy",
        description="Minimum trust score required for device access",
        policy_type="device",
        category="device",
        minimum_trust_score=70.0,
        severity="high",
        priority=100,
    ),
    SecurityPolicy(
        id="default-network-access",
        name="Network Access Policy",
        description="Network-based access control policy",
        policy_type="network",
        category="network",
        minimum_trust_score=60.0,
        severity="medium",
        priority=200,
    ),
    # Só monitora: falha vira Conditional, não Deny.
    SecurityPolicy(
        id="default-behavior-analysis",
        name="Behavioral Analysis Policy",
        description="User behavior monitoring and anomaly detection",
        policy_type="session",
        category="threat",
        minimum_trust_score=50.0,
        severity="medium",
        is_enforced=False,
        priority=300,
    ),
    SecurityPolicy(
        id="default-authentication-strength",
        name="Authentication Strength Policy",
        description="Multi-factor authentication requirements for privileged access",
        policy_type="authentication",
        category="authentication",
        resource_pattern="admin:**",
        minimum_trust_score=80.0,
        severity="high",
        priority=50,
    ),
)

DEFAULT_ALERT_RULES: tuple[AlertRule, ...] = (
    AlertRule(
        id="default-low-trust-score",
        name="Low Trust Score Alert",
        description="Alert when access is denied on high-risk permissions",
        category="access_control",
        severity="high",
        notification_channels=["log", "webhook"],
        cooldown_period=timedelta(minutes=10),
        max_alerts_per_hour=5,
        priority=100,
    ),
    AlertRule(
        id="default-failed-authentication",
        name="Multiple Failed Logins",
        description="Alert on repeated authentication policy failures",
        category="authentication",
        severity="medium",
        cooldown_period=timedelta(minutes=15),
        max_alerts_per_hour=10,
        priority=200,
    ),
    AlertRule(
        id="default-unusual-location",
        name="Unusual Location Access",
        description="Alert on behavior or location anomalies",
        category="threat",
        severity="medium",
        actions=["notify", "require_mfa"],
        cooldown_period=timedelta(hours=6),
        max_alerts_per_hour=3,
        priority=300,
    ),
    AlertRule(
        id="default-device-compliance",
        name="Device Compliance Violation",
        description="Alert when device trust requirements are not met",
        category="device",
        severity="high",
        notification_channels=["log", "webhook"],
        cooldown_period=timedelta(hours=1),
        max_alerts_per_hour=2,
        priority=50,
    ),
)


async def seed_security_policies(policy_store) -> int:
    existing = await policy_store.count_policies()
    if existing:
        logger.info("security_policies_seed_skipped", existing=existing)
        return 0
    for policy in DEFAULT_POLICIES:
        await policy_store.save_policy(policy)
    logger.info("security_policies_seeded", total=len(DEFAULT_POLICIES))
    return len(DEFAULT_POLICIES)


async def seed_alert_rules(alert_store) -> int:
    existing = await alert_store.count_rules()
    if existing:
        logger.info("alert_rules_seed_skipped", existing=existing)
        return 0
    for rule in DEFAULT_ALERT_RULES:
        await alert_store.save_rule(rule)
    logger.info("alert_rules_seeded", total=len(DEFAULT_ALERT_RULES))
    return len(DEFAULT_ALERT_RULES)


async def seed_defaults(stores) -> dict[str, int]:
    """Semeia políticas e regras padrão; retorna quantas foram criadas de cada."""
    return {
        "policies": await seed_security_policies(stores.policies),
        "alert_rules": await seed_alert_rules(stores.alerts),
    }
