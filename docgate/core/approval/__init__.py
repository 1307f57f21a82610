"""Approval workflow module for docgate.

Plans approval step ladders and manages approval instances.
"""

from .states import DocStatus, FlowType, ApprovalAction, CompletionMode, PENDING_STATUSES
from .planner import (
    PlannedStep,
    StepPlan,
    extract_amount,
    match_approval_steps,
    matches_rule_condition,
    normalize_rule_steps,
    normalize_rule_steps_with_policy,
)
from .service import (
    ApprovalService,
    ApprovalError,
    ApprovalConflictError,
    ApprovalPlanError,
    ApprovalNotFoundError,
    ApprovalActionError,
)

__all__ = [
    "DocStatus",
    "FlowType",
    "ApprovalAction",
    "CompletionMode",
    "PENDING_STATUSES",
    "PlannedStep",
    "StepPlan",
    "extract_amount",
    "match_approval_steps",
    "matches_rule_condition",
    "normalize_rule_steps",
    "normalize_rule_steps_with_policy",
    "ApprovalService",
    "ApprovalError",
    "ApprovalConflictError",
    "ApprovalPlanError",
    "ApprovalNotFoundError",
    "ApprovalActionError",
]
