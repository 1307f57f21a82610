"""Seed default action policies

Revision ID: 0002
Revises: 0001
Create Date: 2026-10-19

Creates the default submit/edit policies for each seeded flow type.
"""
from typing import Sequence, Union
import json
import uuid

from alembic import op
import sqlalchemy as sa

from docgate.db.seed import DEFAULT_ACTION_POLICIES

# revision identifiers, used by Alembic.
revision: str = "0002"
down_revision: Union[str, Sequence[str], None] = "0001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _json(value):
    return json.dumps(value) if value is not None else None


def upgrade() -> None:
    """Insert default policies that do not exist yet."""
    connection = op.get_bind()

    for policy in DEFAULT_ACTION_POLICIES:
        existing = connection.execute(
            sa.text("""
                SELECT id FROM action_policies
                WHERE flow_type = :flow_type AND action_key = :action_key AND priority = :priority
            """),
            {
                "flow_type": policy["flow_type"],
                "action_key": policy["action_key"],
                "priority": policy["priority"],
            }
        ).fetchone()

        if existing:
            continue

        connection.execute(
            sa.text("""
                INSERT INTO action_policies
                    (id, flow_type, action_key, priority, is_enabled,
                     subjects, state_constraints, guards, require_reason)
                VALUES
                    (:id, :flow_type, :action_key, :priority, true,
                     :subjects, :state_constraints, :guards, :require_reason)
            """),
            {
                "id": str(uuid.uuid4()),
                "flow_type": policy["flow_type"],
                "action_key": policy["action_key"],
                "priority": policy["priority"],
                "subjects": _json(policy.get("subjects")),
                "state_constraints": _json(policy.get("state_constraints")),
                "guards": _json(policy.get("guards")),
                "require_reason": policy["require_reason"],
            }
        )


def downgrade() -> None:
    """Remove seeded default policies."""
    connection = op.get_bind()

    for policy in DEFAULT_ACTION_POLICIES:
        connection.execute(
            sa.text("""
                DELETE FROM action_policies
                WHERE flow_type = :flow_type AND action_key = :action_key AND priority = :priority
            """),
            {
                "flow_type": policy["flow_type"],
                "action_key": policy["action_key"],
                "priority": policy["priority"],
            }
        )
