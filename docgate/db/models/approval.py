"""Approval workflow database models.

Stores approval rules, open and closed approval instances, and the
per-approver steps that make up each instance.
"""

import uuid
from datetime import datetime
from sqlalchemy import (
    Column, String, DateTime, JSON, ForeignKey, Boolean, Integer,
    Index, CheckConstraint, text,
)
from sqlalchemy.orm import relationship

from docgate.db.base import Base


# Kept in sync with docgate.core.approval.states.PENDING_STATUSES
OPEN_INSTANCE_WHERE = text("status IN ('pending_qa', 'pending_exec')")


class ApprovalRule(Base):
    """
    Administratively configured step ladder for a flow type.

    ``conditions`` restricts when the rule applies (amount range, flow
    flags, ...); ``steps`` is either a list of step declarations or a
    ``{"stages": [...]}`` mapping.
    """
    __tablename__ = "approval_rules"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    flow_type = Column(String(50), nullable=False, index=True)
    name = Column(String(255), nullable=True)
    conditions = Column(JSON, nullable=True)
    steps = Column(JSON, nullable=False, default=list)
    is_active = Column(Boolean, nullable=False, default=True)
    effective_from = Column(DateTime, nullable=False, default=datetime.utcnow)
    created_at = Column(DateTime, default=datetime.utcnow)

    def __repr__(self) -> str:
        return f"<ApprovalRule {self.flow_type} {self.name or self.id}>"


class ApprovalInstance(Base):
    """
    One approval workflow for a target document.

    At most one instance per (flow_type, target_table, target_id) may be
    open at a time; the partial unique index enforces it.
    """
    __tablename__ = "approval_instances"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    flow_type = Column(String(50), nullable=False)
    target_table = Column(String(100), nullable=False)
    target_id = Column(String(100), nullable=False)
    project_id = Column(String(36), nullable=True, index=True)

    status = Column(String(50), nullable=False, default="pending_qa", index=True)
    current_step = Column(Integer, nullable=True)

    rule_id = Column(String(36), ForeignKey("approval_rules.id", ondelete="SET NULL"), nullable=True)
    stage_policy = Column(JSON, nullable=True)  # {step_order: {mode, quorum}}

    created_by = Column(String(100), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    steps = relationship(
        "ApprovalStep",
        back_populates="instance",
        cascade="all, delete-orphan",
        order_by="ApprovalStep.step_order",
    )
    rule = relationship("ApprovalRule")

    __table_args__ = (
        Index(
            "uq_approval_instances_open_target",
            "flow_type", "target_table", "target_id",
            unique=True,
            postgresql_where=OPEN_INSTANCE_WHERE,
            sqlite_where=OPEN_INSTANCE_WHERE,
        ),
        Index("ix_approval_instances_target", "target_table", "target_id"),
    )

    def __repr__(self) -> str:
        return f"<ApprovalInstance {self.flow_type} {self.target_table}/{self.target_id} [{self.status}]>"


class ApprovalStep(Base):
    """
    One required approver (user or group) at a step order.

    Rows sharing a step order are parallel approvers.
    """
    __tablename__ = "approval_steps"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    instance_id = Column(String(36), ForeignKey("approval_instances.id", ondelete="CASCADE"), nullable=False, index=True)
    step_order = Column(Integer, nullable=False)

    approver_group_id = Column(String(100), nullable=True)
    approver_user_id = Column(String(100), nullable=True)

    status = Column(String(50), nullable=False, default="pending_qa", index=True)
    acted_by = Column(String(100), nullable=True)
    acted_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)

    instance = relationship("ApprovalInstance", back_populates="steps")

    __table_args__ = (
        CheckConstraint(
            "(approver_group_id IS NULL) <> (approver_user_id IS NULL)",
            name="ck_approval_steps_single_approver",
        ),
    )

    def __repr__(self) -> str:
        approver = self.approver_group_id or self.approver_user_id
        return f"<ApprovalStep #{self.step_order} {approver} [{self.status}]>"
