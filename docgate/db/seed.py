"""Default action policies.

Seeded by migration 0002 and by ``seed_action_policies`` for fresh
databases. Seeding is idempotent: a policy is inserted only when no
policy with the same flow type, action and priority exists.
"""

import logging
from typing import Any, Dict, List

from sqlalchemy.orm import Session

from docgate.db.models import ActionPolicy

logger = logging.getLogger(__name__)


SEEDED_FLOW_TYPES = [
    "estimate",
    "invoice",
    "expense",
    "leave",
    "purchase_order",
    "vendor_invoice",
]


def _policies_for(flow_type: str) -> List[Dict[str, Any]]:
    return [
        # Submit from draft/rejected while no approval is running
        {
            "flow_type": flow_type,
            "action_key": "submit",
            "priority": 100,
            "state_constraints": {"status_in": ["draft", "rejected"]},
            "guards": [{"type": "approval_open"}],
            "require_reason": False,
        },
        # Admin override, justified
        {
            "flow_type": flow_type,
            "action_key": "submit",
            "priority": 10,
            "subjects": {"roles": ["admin"]},
            "require_reason": True,
        },
        # Edit outside locked periods and closed projects
        {
            "flow_type": flow_type,
            "action_key": "edit",
            "priority": 100,
            "state_constraints": {"status_in": ["draft", "rejected"]},
            "guards": [{"type": "period_lock"}, {"type": "project_closed"}],
            "require_reason": False,
        },
        {
            "flow_type": flow_type,
            "action_key": "edit",
            "priority": 10,
            "subjects": {"roles": ["admin"]},
            "require_reason": True,
        },
    ]


DEFAULT_ACTION_POLICIES: List[Dict[str, Any]] = [
    policy for flow_type in SEEDED_FLOW_TYPES for policy in _policies_for(flow_type)
]


def seed_action_policies(db: Session) -> int:
    """
    Insert missing default action policies.

    Returns:
        Number of policies inserted
    """
    inserted = 0
    for data in DEFAULT_ACTION_POLICIES:
        existing = db.query(ActionPolicy).filter(
            ActionPolicy.flow_type == data["flow_type"],
            ActionPolicy.action_key == data["action_key"],
            ActionPolicy.priority == data["priority"],
        ).first()
        if existing:
            continue
        db.add(ActionPolicy(**data))
        inserted += 1

    db.commit()
    logger.info(f"Seeded {inserted} default action policies")
    return inserted
