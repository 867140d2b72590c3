"""
Grants e denies explícitos por usuário.
"""

from __future__ import annotations

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.sql import func

from policy_engine.db.base import Base


class UserPermissionModel(Base):
    """Override por usuário (id de permissão ou padrão wildcard)."""

    __tablename__ = "user_permissions"

    id = Column(String(100), primary_key=True)
    user_id = Column(String(100), nullable=False, index=True)
    permission_id = Column(
        String(100),
        ForeignKey("permissions.id", ondelete="CASCADE"),
        nullable=True,
    )
    permission_pattern = Column(String(200), nullable=True)
    type = Column(String(10), nullable=False, default="allow")
    group_id = Column(String(100), nullable=True)
    conditions = Column(Text, nullable=True)
    reason = Column(Text, nullable=True)
    granted_by = Column(String(100), nullable=True)
    granted_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    valid_from = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    priority = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    version = Column(Integer, nullable=False, default=1)
