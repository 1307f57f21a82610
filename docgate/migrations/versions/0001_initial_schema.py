"""Initial schema: action policies, approvals, alerts

Revision ID: 0001
Revises:
Create Date: 2026-10-19

Tables added:
- action_policies: Per-action authorization policies
- approval_rules: Configured approval ladders
- approval_instances: Approval workflows (one open per target)
- approval_steps: Approvers per step order
- alert_settings / alerts: Escalation configuration and alert history
- projects / period_locks: Read by policy guards
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


OPEN_STATUS_WHERE = sa.text("status IN ('pending_qa', 'pending_exec')")


def upgrade() -> None:
    """Create all docgate tables."""

    # --- action_policies ---
    op.create_table(
        "action_policies",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("flow_type", sa.String(50), nullable=False),
        sa.Column("action_key", sa.String(100), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("subjects", sa.JSON(), nullable=True),
        sa.Column("state_constraints", sa.JSON(), nullable=True),
        sa.Column("guards", sa.JSON(), nullable=True),
        sa.Column("require_reason", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id", name="pk_action_policies"),
    )
    op.create_index("ix_action_policies_flow_action", "action_policies", ["flow_type", "action_key"])

    # --- approval_rules ---
    op.create_table(
        "approval_rules",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("flow_type", sa.String(50), nullable=False),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("conditions", sa.JSON(), nullable=True),
        sa.Column("steps", sa.JSON(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("effective_from", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id", name="pk_approval_rules"),
    )
    op.create_index("ix_approval_rules_flow_type", "approval_rules", ["flow_type"])

    # --- approval_instances ---
    op.create_table(
        "approval_instances",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("flow_type", sa.String(50), nullable=False),
        sa.Column("target_table", sa.String(100), nullable=False),
        sa.Column("target_id", sa.String(100), nullable=False),
        sa.Column("project_id", sa.String(36), nullable=True),
        sa.Column("status", sa.String(50), nullable=False, server_default="pending_qa"),
        sa.Column("current_step", sa.Integer(), nullable=True),
        sa.Column("rule_id", sa.String(36), nullable=True),
        sa.Column("stage_policy", sa.JSON(), nullable=True),
        sa.Column("created_by", sa.String(100), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id", name="pk_approval_instances"),
        sa.ForeignKeyConstraint(
            ["rule_id"], ["approval_rules.id"],
            name="fk_approval_instances_rule_id", ondelete="SET NULL",
        ),
    )
    op.create_index("ix_approval_instances_project_id", "approval_instances", ["project_id"])
    op.create_index("ix_approval_instances_status", "approval_instances", ["status"])
    op.create_index("ix_approval_instances_created_at", "approval_instances", ["created_at"])
    op.create_index("ix_approval_instances_target", "approval_instances", ["target_table", "target_id"])
    # At most one open instance per target
    op.create_index(
        "uq_approval_instances_open_target",
        "approval_instances",
        ["flow_type", "target_table", "target_id"],
        unique=True,
        postgresql_where=OPEN_STATUS_WHERE,
        sqlite_where=OPEN_STATUS_WHERE,
    )

    # --- approval_steps ---
    op.create_table(
        "approval_steps",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("instance_id", sa.String(36), nullable=False),
        sa.Column("step_order", sa.Integer(), nullable=False),
        sa.Column("approver_group_id", sa.String(100), nullable=True),
        sa.Column("approver_user_id", sa.String(100), nullable=True),
        sa.Column("status", sa.String(50), nullable=False, server_default="pending_qa"),
        sa.Column("acted_by", sa.String(100), nullable=True),
        sa.Column("acted_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id", name="pk_approval_steps"),
        sa.ForeignKeyConstraint(
            ["instance_id"], ["approval_instances.id"],
            name="fk_approval_steps_instance_id", ondelete="CASCADE",
        ),
        sa.CheckConstraint(
            "(approver_group_id IS NULL) <> (approver_user_id IS NULL)",
            name="ck_approval_steps_single_approver",
        ),
    )
    op.create_index("ix_approval_steps_instance_id", "approval_steps", ["instance_id"])
    op.create_index("ix_approval_steps_status", "approval_steps", ["status"])
    op.create_index("ix_approval_steps_created_at", "approval_steps", ["created_at"])

    # --- alert_settings ---
    op.create_table(
        "alert_settings",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("type", sa.String(50), nullable=False),
        sa.Column("is_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("threshold", sa.Numeric(12, 2), nullable=True),
        sa.Column("scope_project_id", sa.String(36), nullable=True),
        sa.Column("recipients", sa.JSON(), nullable=True),
        sa.Column("channels", sa.JSON(), nullable=True),
        sa.Column("remind_after_hours", sa.Integer(), nullable=True),
        sa.Column("remind_max_count", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id", name="pk_alert_settings"),
    )
    op.create_index("ix_alert_settings_type", "alert_settings", ["type"])

    # --- alerts ---
    op.create_table(
        "alerts",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("setting_id", sa.String(36), nullable=False),
        sa.Column("target_ref", sa.String(255), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="open"),
        sa.Column("metric", sa.Float(), nullable=True),
        sa.Column("threshold", sa.Float(), nullable=True),
        sa.Column("sent_channels", sa.JSON(), nullable=False),
        sa.Column("sent_result", sa.JSON(), nullable=False),
        sa.Column("reminder_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("triggered_at", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("last_notified_at", sa.DateTime(), nullable=True),
        sa.Column("closed_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_alerts"),
        sa.ForeignKeyConstraint(
            ["setting_id"], ["alert_settings.id"],
            name="fk_alerts_setting_id", ondelete="CASCADE",
        ),
    )
    op.create_index("ix_alerts_setting_status", "alerts", ["setting_id", "status"])
    op.create_index("ix_alerts_target_ref", "alerts", ["target_ref"])

    # --- projects ---
    op.create_table(
        "projects",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("code", sa.String(50), nullable=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("status", sa.String(30), nullable=False, server_default="active"),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id", name="pk_projects"),
        sa.UniqueConstraint("code", name="uq_projects_code"),
    )

    # --- period_locks ---
    op.create_table(
        "period_locks",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("period", sa.String(7), nullable=False),
        sa.Column("scope", sa.String(20), nullable=False, server_default="global"),
        sa.Column("project_id", sa.String(36), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id", name="pk_period_locks"),
    )
    op.create_index("ix_period_locks_period_scope", "period_locks", ["period", "scope"])


def downgrade() -> None:
    """Drop all docgate tables."""
    op.drop_table("period_locks")
    op.drop_table("projects")
    op.drop_table("alerts")
    op.drop_table("alert_settings")
    op.drop_table("approval_steps")
    op.drop_table("approval_instances")
    op.drop_table("approval_rules")
    op.drop_table("action_policies")
