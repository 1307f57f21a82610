"""Guard registry for action policies.

A guard is a named precondition, declared on a policy as
``{"type": ..., "params": {...}}``. The set of guard types is closed:
a type the engine does not implement, or a malformed declaration, is a
configuration defect and denies fail-safe instead of being skipped.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from docgate.core.approval.states import PENDING_STATUS_VALUES
from docgate.db.models import ApprovalInstance, PeriodLock, Project
from .rules import normalize_string, normalize_string_list, pick

logger = logging.getLogger(__name__)


DEFAULT_EDITABLE_DAYS = 14


class GuardType(str, Enum):
    """Guard types the engine implements."""

    APPROVAL_OPEN = "approval_open"      # No open approval for the target
    PROJECT_CLOSED = "project_closed"    # None of the state's projects is closed
    PERIOD_LOCK = "period_lock"          # Accounting period not locked
    EDITABLE_DAYS = "editable_days"      # Work date within the edit window


class GuardFailureReason(str, Enum):
    # Predicate failures (policy does not match)
    TARGET_REQUIRED = "target_required"
    APPROVAL_IN_PROGRESS = "approval_in_progress"
    PROJECT_IS_CLOSED = "project_is_closed"
    PERIOD_LOCKED = "period_locked"
    EDIT_WINDOW_EXPIRED = "edit_window_expired"

    # Configuration defects (fail-safe deny)
    UNKNOWN_GUARD_TYPE = "unknown_guard_type"
    INVALID_SCHEMA = "invalid_schema"
    INVALID_ITEM = "invalid_item"
    TYPE_REQUIRED = "type_required"


CONFIG_DEFECT_REASONS = {
    GuardFailureReason.UNKNOWN_GUARD_TYPE,
    GuardFailureReason.INVALID_SCHEMA,
    GuardFailureReason.INVALID_ITEM,
    GuardFailureReason.TYPE_REQUIRED,
}


@dataclass
class GuardFailure:
    """Why a guard did not pass."""
    type: str
    reason: GuardFailureReason
    details: Optional[Dict[str, Any]] = None

    @property
    def is_config_defect(self) -> bool:
        return self.reason in CONFIG_DEFECT_REASONS

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"type": self.type, "reason": self.reason.value}
        if self.details:
            data["details"] = self.details
        return data


@dataclass
class GuardContext:
    """Inputs available to guard predicates."""
    db: Session
    flow_type: str
    target_table: Optional[str] = None
    target_id: Optional[str] = None
    state: Optional[Mapping[str, Any]] = None
    now: datetime = field(default_factory=datetime.utcnow)
    editable_days_default: int = DEFAULT_EDITABLE_DAYS


@dataclass
class GuardEvaluation:
    """Outcome of evaluating a policy's guard list."""
    ok: bool
    failures: List[GuardFailure] = field(default_factory=list)

    @property
    def fail_safe(self) -> bool:
        """True when the guard list itself is invalid."""
        return any(f.is_config_defect for f in self.failures)


def _state_list(state: Optional[Mapping], single: Tuple[str, ...], multi: Tuple[str, ...]) -> List[str]:
    values = normalize_string_list(pick(state, *multi))
    one = normalize_string(pick(state, *single))
    if one and one not in values:
        values.insert(0, one)
    return values


def _check_approval_open(ctx: GuardContext, params: Mapping) -> Optional[GuardFailure]:
    target_table = normalize_string(ctx.target_table)
    target_id = normalize_string(ctx.target_id)
    if not target_table or not target_id:
        return GuardFailure(GuardType.APPROVAL_OPEN.value, GuardFailureReason.TARGET_REQUIRED)

    open_instance = ctx.db.query(ApprovalInstance).filter(
        and_(
            ApprovalInstance.flow_type == ctx.flow_type,
            ApprovalInstance.target_table == target_table,
            ApprovalInstance.target_id == target_id,
            ApprovalInstance.status.in_(PENDING_STATUS_VALUES),
        )
    ).first()
    if open_instance:
        return GuardFailure(
            GuardType.APPROVAL_OPEN.value,
            GuardFailureReason.APPROVAL_IN_PROGRESS,
            details={"approval_instance_id": open_instance.id, "status": open_instance.status},
        )
    return None


def _check_project_closed(ctx: GuardContext, params: Mapping) -> Optional[GuardFailure]:
    project_ids = _state_list(ctx.state, ("project_id", "projectId"), ("project_ids", "projectIds"))
    if not project_ids:
        return None

    closed = ctx.db.query(Project).filter(
        Project.id.in_(project_ids),
        Project.status == "closed",
    ).first()
    if closed:
        return GuardFailure(
            GuardType.PROJECT_CLOSED.value,
            GuardFailureReason.PROJECT_IS_CLOSED,
            details={"project_id": closed.id},
        )
    return None


def _check_period_lock(ctx: GuardContext, params: Mapping) -> Optional[GuardFailure]:
    period_keys = _state_list(ctx.state, ("period_key", "periodKey"), ("period_keys", "periodKeys"))
    if not period_keys:
        return None
    project_ids = _state_list(ctx.state, ("project_id", "projectId"), ("project_ids", "projectIds"))

    scope_filter = PeriodLock.scope == "global"
    if project_ids:
        scope_filter = or_(
            scope_filter,
            and_(PeriodLock.scope == "project", PeriodLock.project_id.in_(project_ids)),
        )

    lock = ctx.db.query(PeriodLock).filter(
        PeriodLock.period.in_(period_keys),
        scope_filter,
    ).order_by(PeriodLock.period).first()
    if lock:
        return GuardFailure(
            GuardType.PERIOD_LOCK.value,
            GuardFailureReason.PERIOD_LOCKED,
            details={"period": lock.period, "scope": lock.scope, "project_id": lock.project_id},
        )
    return None


def _parse_date(value: Any) -> Optional[date]:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value.strip():
        try:
            return datetime.fromisoformat(value.strip().replace("Z", "+00:00")).date()
        except ValueError:
            return None
    return None


def _check_editable_days(ctx: GuardContext, params: Mapping) -> Optional[GuardFailure]:
    work_date = _parse_date(pick(ctx.state, "work_date", "workDate"))
    if work_date is None:
        return None

    days = params.get("days")
    if not isinstance(days, int) or isinstance(days, bool) or days < 0:
        days = ctx.editable_days_default

    age_days = (ctx.now.date() - work_date).days
    if age_days > days:
        return GuardFailure(
            GuardType.EDITABLE_DAYS.value,
            GuardFailureReason.EDIT_WINDOW_EXPIRED,
            details={"work_date": work_date.isoformat(), "days": days},
        )
    return None


GUARD_CHECKS = {
    GuardType.APPROVAL_OPEN: _check_approval_open,
    GuardType.PROJECT_CLOSED: _check_project_closed,
    GuardType.PERIOD_LOCK: _check_period_lock,
    GuardType.EDITABLE_DAYS: _check_editable_days,
}


def _parse_guard_item(item: Any) -> Tuple[Optional[Tuple[GuardType, Mapping]], Optional[GuardFailure]]:
    if not isinstance(item, Mapping):
        return None, GuardFailure("guard", GuardFailureReason.INVALID_ITEM)
    guard_type = normalize_string(item.get("type"))
    if not guard_type:
        return None, GuardFailure("guard", GuardFailureReason.TYPE_REQUIRED)
    try:
        known = GuardType(guard_type)
    except ValueError:
        return None, GuardFailure(guard_type, GuardFailureReason.UNKNOWN_GUARD_TYPE)
    params = item.get("params")
    return (known, params if isinstance(params, Mapping) else {}), None


def parse_guards(guards: Any) -> Tuple[List[Tuple[GuardType, Mapping]], List[GuardFailure]]:
    """
    Validate a guard list without evaluating it.

    Returns:
        Tuple of (parsed guards, configuration defects)
    """
    if guards is None:
        return [], []
    if not isinstance(guards, list):
        return [], [GuardFailure("guards", GuardFailureReason.INVALID_SCHEMA)]

    parsed = []
    defects = []
    for item in guards:
        guard, defect = _parse_guard_item(item)
        if defect is not None:
            defects.append(defect)
        else:
            parsed.append(guard)
    return parsed, defects


def evaluate_guards(guards: Any, ctx: GuardContext) -> GuardEvaluation:
    """
    Evaluate a policy's guards in declaration order.

    Evaluation stops at the first failing guard. A malformed or unknown
    guard is only reported once the walk reaches it, so a known guard
    failing earlier in the list means the policy simply does not match.
    """
    if guards is None:
        return GuardEvaluation(ok=True)
    if not isinstance(guards, list):
        return GuardEvaluation(ok=False, failures=[GuardFailure("guards", GuardFailureReason.INVALID_SCHEMA)])

    for item in guards:
        guard, defect = _parse_guard_item(item)
        if defect is not None:
            return GuardEvaluation(ok=False, failures=[defect])
        guard_type, params = guard
        failure = GUARD_CHECKS[guard_type](ctx, params)
        if failure is not None:
            logger.debug(f"Guard {guard_type.value} failed: {failure.reason.value}")
            return GuardEvaluation(ok=False, failures=[failure])
    return GuardEvaluation(ok=True)
