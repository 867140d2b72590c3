"""
Snapshots de trust score, histórico de transições e sinais de identidade.
"""

from __future__ import annotations

from sqlalchemy import Boolean, Column, DateTime, Float, Index, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func

from policy_engine.db.base import Base


class TrustScoreModel(Base):
    """Snapshot imutável; o anterior da tupla é marcado ``is_active = false``."""

    __tablename__ = "trust_scores"

    id = Column(String(100), primary_key=True)
    user_id = Column(String(100), nullable=False)
    device_id = Column(String(100), nullable=False)
    ip_address = Column(String(45), nullable=False)
    score = Column(Float, nullable=False)
    trust_level = Column(String(20), nullable=False)
    device_score = Column(Float, nullable=False)
    network_score = Column(Float, nullable=False)
    behavior_score = Column(Float, nullable=False)
    authentication_score = Column(Float, nullable=False)
    location_score = Column(Float, nullable=False)
    factors = Column(JSONB, default=list, nullable=False)
    risks = Column(JSONB, default=list, nullable=False)
    recommendations = Column(JSONB, default=list, nullable=False)
    calculated_at = Column(DateTime(timezone=True), nullable=False)
    valid_until = Column(DateTime(timezone=True), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)

    __table_args__ = (
        Index("ix_trust_scores_tuple_active", "user_id", "device_id", "ip_address", "is_active"),
    )


class TrustScoreHistoryModel(Base):
    __tablename__ = "trust_score_history"

    id = Column(String(100), primary_key=True)
    trust_score_id = Column(String(100), nullable=False)
    user_id = Column(String(100), nullable=False, index=True)
    device_id = Column(String(100), nullable=False)
    ip_address = Column(String(45), nullable=False)
    previous_score = Column(Float, nullable=False)
    new_score = Column(Float, nullable=False)
    change_reason = Column(Text, nullable=False)
    event_data = Column(JSONB, default=dict, nullable=False)
    changed_at = Column(DateTime(timezone=True), nullable=False, index=True)


class TrustSignalModel(Base):
    """Sinais do provedor de identidade/dispositivos (``ip_address`` nulo = do dispositivo)."""

    __tablename__ = "trust_signals"

    id = Column(String(100), primary_key=True)
    user_id = Column(String(100), nullable=True)
    device_id = Column(String(100), nullable=False, index=True)
    ip_address = Column(String(45), nullable=True)
    signals = Column(JSONB, default=dict, nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )
