"""Create catalog, role, grant, trust, policy, alert and audit tables."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision: str = "5e1f0a2b3c4d"
down_revision: str | None = None
branch_labels = None
depends_on = None


def _created_at(name: str = "created_at") -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False)


def _jsonb(name: str) -> sa.Column:
    return sa.Column(name, postgresql.JSONB(astext_type=sa.Text()), nullable=False)


def upgrade() -> None:
    op.create_table(
        "permissions",
        sa.Column("id", sa.String(length=100), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("resource", sa.String(length=100), nullable=False),
        sa.Column("action", sa.String(length=100), nullable=False),
        sa.Column("service_id", sa.String(length=100), nullable=True),
        sa.Column("parent_id", sa.String(length=100), nullable=True),
        sa.Column("path", sa.String(length=1000), nullable=False),
        sa.Column("level", sa.Integer(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("is_wildcard", sa.Boolean(), nullable=False),
        sa.Column("wildcard_pattern", sa.String(length=200), nullable=True),
        sa.Column("inherits_from_parent", sa.Boolean(), nullable=False),
        sa.Column("is_implicit", sa.Boolean(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        _created_at(),
        sa.PrimaryKeyConstraint("id", name="pk_permissions"),
        sa.ForeignKeyConstraint(["parent_id"], ["permissions.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_permissions_parent_id", "permissions", ["parent_id"])
    op.create_index("ix_permissions_resource_action", "permissions", ["resource", "action"])

    op.create_table(
        "roles",
        sa.Column("id", sa.String(length=100), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("group_id", sa.String(length=100), nullable=True),
        sa.Column("parent_role_id", sa.String(length=100), nullable=True),
        sa.Column("hierarchy_level", sa.Integer(), nullable=False),
        sa.Column("hierarchy_path", sa.String(length=1000), nullable=False),
        sa.Column("inherit_permissions", sa.Boolean(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("is_system_role", sa.Boolean(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        _created_at(),
        sa.PrimaryKeyConstraint("id", name="pk_roles"),
        sa.ForeignKeyConstraint(["parent_role_id"], ["roles.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_roles_group_id", "roles", ["group_id"])
    op.create_index("ix_roles_parent_role_id", "roles", ["parent_role_id"])

    op.create_table(
        "role_permissions",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("role_id", sa.String(length=100), nullable=False),
        sa.Column("permission_id", sa.String(length=100), nullable=False),
        sa.Column("group_id", sa.String(length=100), nullable=True),
        _created_at("granted_at"),
        sa.Column("granted_by", sa.String(length=100), nullable=True),
        sa.Column("conditions", sa.Text(), nullable=True),
        sa.Column("valid_from", sa.DateTime(timezone=True), nullable=True),
        sa.Column("valid_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk_role_permissions"),
        sa.ForeignKeyConstraint(["role_id"], ["roles.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["permission_id"], ["permissions.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_role_permissions_role_id", "role_permissions", ["role_id"])
    # Grant global (group_id nulo) também é único.
    op.create_index(
        "uq_role_permissions_grant",
        "role_permissions",
        ["role_id", "permission_id", "group_id"],
        unique=True,
        postgresql_nulls_not_distinct=True,
    )

    op.create_table(
        "role_assignments",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.String(length=100), nullable=False),
        sa.Column("role_id", sa.String(length=100), nullable=False),
        sa.Column("group_id", sa.String(length=100), nullable=True),
        _created_at("assigned_at"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk_role_assignments"),
        sa.ForeignKeyConstraint(["role_id"], ["roles.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_role_assignments_user_group", "role_assignments", ["user_id", "group_id"])

    op.create_table(
        "user_permissions",
        sa.Column("id", sa.String(length=100), nullable=False),
        sa.Column("user_id", sa.String(length=100), nullable=False),
        sa.Column("permission_id", sa.String(length=100), nullable=True),
        sa.Column("permission_pattern", sa.String(length=200), nullable=True),
        sa.Column("type", sa.String(length=10), nullable=False),
        sa.Column("group_id", sa.String(length=100), nullable=True),
        sa.Column("conditions", sa.Text(), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("granted_by", sa.String(length=100), nullable=True),
        _created_at("granted_at"),
        sa.Column("valid_from", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk_user_permissions"),
        sa.ForeignKeyConstraint(["permission_id"], ["permissions.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_user_permissions_user_id", "user_permissions", ["user_id"])

    op.create_table(
        "trust_scores",
        sa.Column("id", sa.String(length=100), nullable=False),
        sa.Column("user_id", sa.String(length=100), nullable=False),
        sa.Column("device_id", sa.String(length=100), nullable=False),
        sa.Column("ip_address", sa.String(length=45), nullable=False),
        sa.Column("score", sa.Float(), nullable=False),
        sa.Column("trust_level", sa.String(length=20), nullable=False),
        sa.Column("device_score", sa.Float(), nullable=False),
        sa.Column("network_score", sa.Float(), nullable=False),
        sa.Column("behavior_score", sa.Float(), nullable=False),
        sa.Column("authentication_score", sa.Float(), nullable=False),
        sa.Column("location_score", sa.Float(), nullable=False),
        _jsonb("factors"),
        _jsonb("risks"),
        _jsonb("recommendations"),
        sa.Column("calculated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("valid_until", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk_trust_scores"),
    )
    op.create_index(
        "ix_trust_scores_tuple_active",
        "trust_scores",
        ["user_id", "device_id", "ip_address", "is_active"],
    )

    op.create_table(
        "trust_score_history",
        sa.Column("id", sa.String(length=100), nullable=False),
        sa.Column("trust_score_id", sa.String(length=100), nullable=False),
        sa.Column("user_id", sa.String(length=100), nullable=False),
        sa.Column("device_id", sa.String(length=100), nullable=False),
        sa.Column("ip_address", sa.String(length=45), nullable=False),
        sa.Column("previous_score", sa.Float(), nullable=False),
        sa.Column("new_score", sa.Float(), nullable=False),
        sa.Column("change_reason", sa.Text(), nullable=False),
        _jsonb("event_data"),
        sa.Column("changed_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk_trust_score_history"),
    )
    op.create_index("ix_trust_score_history_user_id", "trust_score_history", ["user_id"])
    op.create_index("ix_trust_score_history_changed_at", "trust_score_history", ["changed_at"])

    op.create_table(
        "trust_signals",
        sa.Column("id", sa.String(length=100), nullable=False),
        sa.Column("user_id", sa.String(length=100), nullable=True),
        sa.Column("device_id", sa.String(length=100), nullable=False),
        sa.Column("ip_address", sa.String(length=45), nullable=True),
        _jsonb("signals"),
        _created_at("updated_at"),
        sa.PrimaryKeyConstraint("id", name="pk_trust_signals"),
    )
    op.create_index("ix_trust_signals_device_id", "trust_signals", ["device_id"])

    op.create_table(
        "security_policies",
        sa.Column("id", sa.String(length=100), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("policy_type", sa.String(length=30), nullable=False),
        sa.Column("category", sa.String(length=30), nullable=False),
        sa.Column("group_id", sa.String(length=100), nullable=True),
        sa.Column("resource_pattern", sa.String(length=200), nullable=True),
        sa.Column("rules", sa.Text(), nullable=True),
        sa.Column("conditions", sa.Text(), nullable=True),
        sa.Column("minimum_trust_score", sa.Float(), nullable=False),
        sa.Column("severity", sa.String(length=20), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("is_enforced", sa.Boolean(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False),
        _created_at(),
        sa.PrimaryKeyConstraint("id", name="pk_security_policies"),
    )
    op.create_index("ix_security_policies_group_id", "security_policies", ["group_id"])

    op.create_table(
        "policy_violations",
        sa.Column("id", sa.String(length=100), nullable=False),
        sa.Column("security_policy_id", sa.String(length=100), nullable=True),
        sa.Column("user_id", sa.String(length=100), nullable=False),
        sa.Column("device_id", sa.String(length=100), nullable=True),
        sa.Column("ip_address", sa.String(length=45), nullable=True),
        sa.Column("group_id", sa.String(length=100), nullable=True),
        sa.Column("resource", sa.String(length=200), nullable=False),
        sa.Column("action", sa.String(length=100), nullable=False),
        sa.Column("violation_type", sa.String(length=30), nullable=False),
        sa.Column("category", sa.String(length=30), nullable=False),
        sa.Column("severity", sa.String(length=20), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("trust_score", sa.Float(), nullable=False),
        _jsonb("violation_data"),
        sa.Column("request_id", sa.String(length=100), nullable=True),
        sa.Column("status", sa.String(length=10), nullable=False),
        sa.Column("detected_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk_policy_violations"),
    )
    op.create_index("ix_policy_violations_security_policy_id", "policy_violations", ["security_policy_id"])
    op.create_index("ix_policy_violations_user_detected", "policy_violations", ["user_id", "detected_at"])

    op.create_table(
        "alert_rules",
        sa.Column("id", sa.String(length=100), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("category", sa.String(length=30), nullable=False),
        sa.Column("group_id", sa.String(length=100), nullable=True),
        sa.Column("conditions", sa.Text(), nullable=True),
        sa.Column("severity", sa.String(length=20), nullable=False),
        _jsonb("actions"),
        _jsonb("notification_channels"),
        sa.Column("cooldown_period", sa.Interval(), nullable=False),
        sa.Column("max_alerts_per_hour", sa.Integer(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk_alert_rules"),
    )
    op.create_index("ix_alert_rules_category_active", "alert_rules", ["category", "is_active"])

    op.create_table(
        "security_alerts",
        sa.Column("id", sa.String(length=100), nullable=False),
        sa.Column("rule_id", sa.String(length=100), nullable=False),
        sa.Column("rule_name", sa.String(length=200), nullable=False),
        sa.Column("alert_type", sa.String(length=50), nullable=False),
        sa.Column("title", sa.String(length=300), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("category", sa.String(length=30), nullable=False),
        sa.Column("severity", sa.String(length=20), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("user_id", sa.String(length=100), nullable=True),
        sa.Column("device_id", sa.String(length=100), nullable=True),
        sa.Column("ip_address", sa.String(length=45), nullable=True),
        sa.Column("group_id", sa.String(length=100), nullable=True),
        sa.Column("resource", sa.String(length=200), nullable=True),
        _jsonb("violation_ids"),
        sa.Column("occurrence_count", sa.Integer(), nullable=False),
        sa.Column("correlation_id", sa.String(length=100), nullable=True),
        sa.Column("confidence_score", sa.Float(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("acknowledged_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("acknowledged_by", sa.String(length=100), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_by", sa.String(length=100), nullable=True),
        sa.Column("resolution", sa.Text(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk_security_alerts"),
    )
    op.create_index("ix_security_alerts_created_at", "security_alerts", ["created_at"])
    op.create_index(
        "ix_security_alerts_dedup",
        "security_alerts",
        ["rule_id", "user_id", "resource", "status"],
    )

    op.create_table(
        "audit_events",
        sa.Column("id", sa.String(length=100), nullable=False),
        sa.Column("request_id", sa.String(length=100), nullable=False),
        sa.Column("event_type", sa.String(length=40), nullable=False),
        sa.Column("category", sa.String(length=30), nullable=False),
        sa.Column("entity_type", sa.String(length=50), nullable=False),
        sa.Column("entity_id", sa.String(length=200), nullable=False),
        sa.Column("action", sa.String(length=80), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("user_id", sa.String(length=100), nullable=True),
        sa.Column("group_id", sa.String(length=100), nullable=True),
        sa.Column("device_id", sa.String(length=100), nullable=True),
        sa.Column("ip_address", sa.String(length=45), nullable=True),
        _jsonb("old_values"),
        _jsonb("new_values"),
        _jsonb("context"),
        sa.Column("severity", sa.String(length=20), nullable=False),
        sa.Column("is_security_event", sa.Boolean(), nullable=False),
        sa.Column("is_successful", sa.Boolean(), nullable=False),
        sa.Column("duration_ms", sa.Float(), nullable=True),
        sa.Column("source", sa.String(length=50), nullable=False),
        _created_at("timestamp"),
        sa.PrimaryKeyConstraint("id", name="pk_audit_events"),
    )
    op.create_index("ix_audit_events_user_id", "audit_events", ["user_id"])
    op.create_index("ix_audit_events_timestamp", "audit_events", ["timestamp"])
    op.create_index(
        "uq_audit_events_idempotency",
        "audit_events",
        ["request_id", "event_type", "entity_id"],
        unique=True,
    )


def downgrade() -> None:
    op.drop_table("audit_events")
    op.drop_table("security_alerts")
    op.drop_table("alert_rules")
    op.drop_table("policy_violations")
    op.drop_table("security_policies")
    op.drop_table("trust_signals")
    op.drop_table("trust_score_history")
    op.drop_table("trust_scores")
    op.drop_table("user_permissions")
    op.drop_table("role_assignments")
    op.drop_table("role_permissions")
    op.drop_table("roles")
    op.drop_table("permissions")
