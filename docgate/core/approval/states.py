"""Document and approval statuses.

Status flow of a document under approval:

    ┌────────┐  submit   ┌────────────┐  exec stage   ┌──────────────┐
    │ DRAFT  │──────────►│ PENDING_QA │──────────────►│ PENDING_EXEC │
    └────────┘           └─────┬──────┘               └──────┬───────┘
                               │                             │
                        ┌──────┴──────┐               ┌──────┴──────┐
                        │             │               │             │
                   ┌────▼─────┐ ┌─────▼────┐     ┌────▼─────┐ ┌─────▼────┐
                   │ APPROVED │ │ REJECTED │     │ APPROVED │ │ REJECTED │
                   └──────────┘ └──────────┘     └──────────┘ └──────────┘

Approval instances and approval steps share the same vocabulary; an
instance is *open* while its status is one of PENDING_STATUSES.
"""

from enum import Enum
from typing import Dict, Iterable, Optional, Set


class DocStatus(str, Enum):
    """Statuses shared by documents, approval instances and approval steps."""

    DRAFT = "draft"
    PENDING_QA = "pending_qa"        # Awaiting management-level approval
    PENDING_EXEC = "pending_exec"    # Awaiting executive approval
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"          # Step no longer needed (stage completed)

    # Post-approval document states
    SENT = "sent"
    PAID = "paid"
    RECEIVED = "received"
    ACKNOWLEDGED = "acknowledged"


class FlowType(str, Enum):
    """Business document categories gated by policies and approvals."""

    ESTIMATE = "estimate"
    INVOICE = "invoice"
    EXPENSE = "expense"
    LEAVE = "leave"
    TIME = "time"
    PURCHASE_ORDER = "purchase_order"
    VENDOR_INVOICE = "vendor_invoice"
    VENDOR_QUOTE = "vendor_quote"


class ApprovalAction(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


# Instance/step statuses that still await action
PENDING_STATUSES: Set[DocStatus] = {
    DocStatus.PENDING_QA,
    DocStatus.PENDING_EXEC,
}

# Instance statuses after which no further action is possible
TERMINAL_STATUSES: Set[DocStatus] = {
    DocStatus.APPROVED,
    DocStatus.REJECTED,
    DocStatus.CANCELLED,
}

PENDING_STATUS_VALUES = sorted(s.value for s in PENDING_STATUSES)

EXEC_GROUP_ID = "exec"


def is_open(status: str) -> bool:
    """Check if an instance status means the workflow is still open."""
    return status in PENDING_STATUS_VALUES


def resolve_pending_status(
    steps: Iterable,
    step_order: Optional[int],
    exec_group_id: str = EXEC_GROUP_ID,
) -> DocStatus:
    """
    Pending status for the given step order.

    ``pending_exec`` when any step at that order is assigned to the
    executive group, ``pending_qa`` otherwise.
    """
    if not step_order:
        return DocStatus.PENDING_QA
    for step in steps:
        if step.step_order == step_order and step.approver_group_id == exec_group_id:
            return DocStatus.PENDING_EXEC
    return DocStatus.PENDING_QA


# Step completion modes for staged rules
class CompletionMode(str, Enum):
    ALL = "all"        # Every approver at the order must approve
    ANY = "any"        # One approval completes the order
    QUORUM = "quorum"  # ``quorum`` approvals complete the order


def required_approvals(stage_policy: Optional[Dict], step_order: int, approver_count: int) -> int:
    """Number of approvals needed to complete a step order."""
    policy = (stage_policy or {}).get(str(step_order)) or (stage_policy or {}).get(step_order)
    if not policy:
        return approver_count
    mode = policy.get("mode", CompletionMode.ALL.value)
    if mode == CompletionMode.ANY.value:
        return 1
    if mode == CompletionMode.QUORUM.value:
        return min(int(policy.get("quorum") or approver_count), approver_count)
    return approver_count
