import uuid
from datetime import datetime
from sqlalchemy import Column, String, DateTime, JSON, Boolean, Integer, Index

from docgate.db.base import Base


class ActionPolicy(Base):
    """
    A declarative rule gating one action on one flow type.

    Candidates for a (flow_type, action_key) pair are evaluated by
    descending priority; the first one whose subjects, state constraints
    and guards all pass decides the outcome.
    """
    __tablename__ = "action_policies"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    flow_type = Column(String(50), nullable=False)
    action_key = Column(String(100), nullable=False)
    priority = Column(Integer, nullable=False, default=0)
    is_enabled = Column(Boolean, nullable=False, default=True)

    # Filters (null = matches anything)
    subjects = Column(JSON, nullable=True)  # {roles, group_ids, user_ids}
    state_constraints = Column(JSON, nullable=True)  # {status_in, status_not_in}
    guards = Column(JSON, nullable=True)  # [{type, params}]

    require_reason = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_action_policies_flow_action", "flow_type", "action_key"),
    )

    def __repr__(self) -> str:
        return f"<ActionPolicy {self.flow_type}:{self.action_key} p={self.priority}>"
