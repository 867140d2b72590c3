"""
Papéis hierárquicos, suas permissões e atribuições a usuários.
"""

from __future__ import annotations

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.sql import func

from policy_engine.db.base import Base


class RoleModel(Base):
    __tablename__ = "roles"

    id = Column(String(100), primary_key=True)
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    group_id = Column(String(100), nullable=True, index=True)
    parent_role_id = Column(
        String(100),
        ForeignKey("roles.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    hierarchy_level = Column(Integer, nullable=False, default=0)
    hierarchy_path = Column(String(1000), nullable=False, default="")
    inherit_permissions = Column(Boolean, nullable=False, default=True)
    priority = Column(Integer, nullable=False, default=0)
    is_system_role = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )


class RolePermissionModel(Base):
    """Grant de permissão a papel; único por ``(role_id, permission_id, group_id)``."""

    __tablename__ = "role_permissions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    role_id = Column(
        String(100),
        ForeignKey("roles.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    permission_id = Column(
        String(100),
        ForeignKey("permissions.id", ondelete="CASCADE"),
        nullable=False,
    )
    group_id = Column(String(100), nullable=True)
    granted_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    granted_by = Column(String(100), nullable=True)
    conditions = Column(Text, nullable=True)
    valid_from = Column(DateTime(timezone=True), nullable=True)
    valid_until = Column(DateTime(timezone=True), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    __table_args__ = (
        Index(
            "uq_role_permissions_grant",
            "role_id",
            "permission_id",
            "group_id",
            unique=True,
            postgresql_nulls_not_distinct=True,
        ),
    )


class RoleAssignmentModel(Base):
    __tablename__ = "role_assignments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(100), nullable=False)
    role_id = Column(
        String(100),
        ForeignKey("roles.id", ondelete="CASCADE"),
        nullable=False,
    )
    group_id = Column(String(100), nullable=True)
    assigned_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    expires_at = Column(DateTime(timezone=True), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    __table_args__ = (
        Index("ix_role_assignments_user_group", "user_id", "group_id"),
    )
