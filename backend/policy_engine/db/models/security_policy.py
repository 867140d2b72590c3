"""
Políticas de segurança por grupo e violações registradas.
"""

from __future__ import annotations

from sqlalchemy import Boolean, Column, DateTime, Float, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func

from policy_engine.db.base import Base


class SecurityPolicyModel(Base):
    __tablename__ = "security_policies"

    id = Column(String(100), primary_key=True)
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    policy_type = Column(String(30), nullable=False, default="access")
    category = Column(String(30), nullable=False, default="access_control")
    group_id = Column(String(100), nullable=True, index=True)
    resource_pattern = Column(String(200), nullable=True)
    rules = Column(Text, nullable=True)
    conditions = Column(Text, nullable=True)
    minimum_trust_score = Column(Float, nullable=False, default=50.0)
    severity = Column(String(20), nullable=False, default="medium")
    is_active = Column(Boolean, nullable=False, default=True)
    is_enforced = Column(Boolean, nullable=False, default=True)
    priority = Column(Integer, nullable=False, default=100)
    created_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )


class PolicyViolationModel(Base):
    """Registro imutável de uma checagem de política que falhou."""

    __tablename__ = "policy_violations"

    id = Column(String(100), primary_key=True)
    security_policy_id = Column(String(100), nullable=True, index=True)
    user_id = Column(String(100), nullable=False)
    device_id = Column(String(100), nullable=True)
    ip_address = Column(String(45), nullable=True)
    group_id = Column(String(100), nullable=True)
    resource = Column(String(200), nullable=False)
    action = Column(String(100), nullable=False)
    violation_type = Column(String(30), nullable=False)
    category = Column(String(30), nullable=False)
    severity = Column(String(20), nullable=False)
    description = Column(Text, nullable=False, default="")
    trust_score = Column(Float, nullable=False, default=0.0)
    violation_data = Column(JSONB, default=dict, nullable=False)
    request_id = Column(String(100), nullable=True)
    status = Column(String(10), nullable=False, default="open")
    detected_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_policy_violations_user_detected", "user_id", "detected_at"),
    )
