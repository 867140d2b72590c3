"""
Catálogo hierárquico de permissões.
"""

from __future__ import annotations

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.sql import func

from policy_engine.db.base import Base


class PermissionModel(Base):
    """Nó ``(resource, action)`` com link explícito para o pai."""

    __tablename__ = "permissions"

    id = Column(String(100), primary_key=True)
    name = Column(String(200), nullable=False)
    resource = Column(String(100), nullable=False)
    action = Column(String(100), nullable=False)
    service_id = Column(String(100), nullable=True)
    parent_id = Column(
        String(100),
        ForeignKey("permissions.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    path = Column(String(1000), nullable=False, default="")
    level = Column(Integer, nullable=False, default=0)
    priority = Column(Integer, nullable=False, default=0)
    is_wildcard = Column(Boolean, nullable=False, default=False)
    wildcard_pattern = Column(String(200), nullable=True)
    inherits_from_parent = Column(Boolean, nullable=False, default=True)
    is_implicit = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        Index("ix_permissions_resource_action", "resource", "action"),
    )
