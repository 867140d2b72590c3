"""
Regras de correlação e alertas de segurança.
"""

from __future__ import annotations

from sqlalchemy import Boolean, Column, DateTime, Float, Index, Integer, Interval, String, Text
from sqlalchemy.dialects.postgresql import JSONB

from policy_engine.db.base import Base


class AlertRuleModel(Base):
    __tablename__ = "alert_rules"

    id = Column(String(100), primary_key=True)
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    category = Column(String(30), nullable=False)
    group_id = Column(String(100), nullable=True)
    conditions = Column(Text, nullable=True)
    severity = Column(String(20), nullable=False, default="medium")
    actions = Column(JSONB, default=list, nullable=False)
    notification_channels = Column(JSONB, default=list, nullable=False)
    cooldown_period = Column(Interval, nullable=False)
    max_alerts_per_hour = Column(Integer, nullable=False, default=10)
    priority = Column(Integer, nullable=False, default=100)
    is_active = Column(Boolean, nullable=False, default=True)

    __table_args__ = (
        Index("ix_alert_rules_category_active", "category", "is_active"),
    )


class SecurityAlertModel(Base):
    """Alerta com status ``new → acknowledged → resolved`` e token de versão."""

    __tablename__ = "security_alerts"

    id = Column(String(100), primary_key=True)
    rule_id = Column(String(100), nullable=False)
    rule_name = Column(String(200), nullable=False)
    alert_type = Column(String(50), nullable=False)
    title = Column(String(300), nullable=False)
    description = Column(Text, nullable=False, default="")
    category = Column(String(30), nullable=False)
    severity = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False, default="new")
    user_id = Column(String(100), nullable=True)
    device_id = Column(String(100), nullable=True)
    ip_address = Column(String(45), nullable=True)
    group_id = Column(String(100), nullable=True)
    resource = Column(String(200), nullable=True)
    violation_ids = Column(JSONB, default=list, nullable=False)
    occurrence_count = Column(Integer, nullable=False, default=1)
    correlation_id = Column(String(100), nullable=True)
    confidence_score = Column(Float, nullable=False, default=1.0)
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)
    last_seen_at = Column(DateTime(timezone=True), nullable=False)
    acknowledged_at = Column(DateTime(timezone=True), nullable=True)
    acknowledged_by = Column(String(100), nullable=True)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
    resolved_by = Column(String(100), nullable=True)
    resolution = Column(Text, nullable=True)
    version = Column(Integer, nullable=False, default=1)

    __table_args__ = (
        Index("ix_security_alerts_dedup", "rule_id", "user_id", "resource", "status"),
    )
