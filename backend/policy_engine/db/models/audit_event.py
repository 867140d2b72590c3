"""
Registro imutável de eventos de auditoria.
"""

from __future__ import annotations

from sqlalchemy import Boolean, Column, DateTime, Float, Index, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func

from policy_engine.db.base import Base


class AuditEventModel(Base):
    """Append-only; único por ``(request_id, event_type, entity_id)``."""

    __tablename__ = "audit_events"

    id = Column(String(100), primary_key=True)
    request_id = Column(String(100), nullable=False)
    event_type = Column(String(40), nullable=False)
    category = Column(String(30), nullable=False)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(String(200), nullable=False)
    action = Column(String(80), nullable=False)
    description = Column(Text, nullable=False, default="")
    user_id = Column(String(100), nullable=True, index=True)
    group_id = Column(String(100), nullable=True)
    device_id = Column(String(100), nullable=True)
    ip_address = Column(String(45), nullable=True)
    old_values = Column(JSONB, default=dict, nullable=False)
    new_values = Column(JSONB, default=dict, nullable=False)
    context = Column(JSONB, default=dict, nullable=False)
    severity = Column(String(20), nullable=False, default="low")
    is_security_event = Column(Boolean, nullable=False, default=False)
    is_successful = Column(Boolean, nullable=False, default=True)
    duration_ms = Column(Float, nullable=True)
    source = Column(String(50), nullable=False, default="policy_engine")
    timestamp = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
        index=True,
    )

    __table_args__ = (
        Index(
            "uq_audit_events_idempotency",
            "request_id",
            "event_type",
            "entity_id",
            unique=True,
        ),
    )
