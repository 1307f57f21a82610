"""Approval step planning.

Pure functions that turn a document's state into the ordered ladder of
approval steps it needs. Steps sharing a ``step_order`` are parallel
approvers; the workflow only advances past an order once it is complete.
"""

import logging
import math
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Mapping, Optional, Set

from docgate.core.workflow_config import LadderConfig, get_workflow_config
from .states import CompletionMode

logger = logging.getLogger(__name__)


@dataclass
class PlannedStep:
    """One approver slot in a planned ladder."""
    approver_group_id: Optional[str] = None
    approver_user_id: Optional[str] = None
    step_order: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class StepPlan:
    """A ladder plus its per-order completion policy."""
    steps: List[PlannedStep]
    stage_policy: Dict[int, Dict[str, Any]] = field(default_factory=dict)
    rule_id: Optional[str] = None

    @property
    def first_order(self) -> Optional[int]:
        return min((s.step_order for s in self.steps), default=None)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "steps": [s.to_dict() for s in self.steps],
            "stage_policy": {str(k): v for k, v in self.stage_policy.items()},
        }


def _pick(mapping: Optional[Mapping], *keys: str) -> Any:
    """First non-None value among ``keys`` (snake_case and camelCase aliases)."""
    if not mapping:
        return None
    for key in keys:
        value = mapping.get(key)
        if value is not None:
            return value
    return None


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def extract_amount(payload: Optional[Mapping]) -> float:
    """Document amount used for threshold checks; 0 when missing or invalid."""
    raw = _pick(payload, "total_amount", "totalAmount", "amount")
    if raw is None or raw == "":
        return 0.0
    try:
        amount = float(raw)
    except (TypeError, ValueError):
        return 0.0
    return amount if math.isfinite(amount) else 0.0


def normalize_flow_flags(flow_flags: Any) -> Optional[Set[str]]:
    """
    Flow types a condition applies to.

    Accepts a ``{flow_type: bool}`` mapping (only explicit True entries
    count) or a list of flow types. Returns None when no restriction
    is configured.
    """
    if not flow_flags:
        return None
    if isinstance(flow_flags, (list, tuple, set)):
        flags = {str(f) for f in flow_flags if f}
    elif isinstance(flow_flags, Mapping):
        flags = {str(key) for key, enabled in flow_flags.items() if enabled is True}
        # An explicit mapping that enables nothing still restricts
        return flags
    else:
        return None
    return flags or None


def matches_rule_condition(
    flow_type: str,
    payload: Optional[Mapping],
    conditions: Optional[Mapping] = None,
) -> bool:
    """
    Check if a rule's conditions hold for a document.

    Amount bounds are inclusive. ``flow_flags`` must explicitly mark the
    flow type as True; a missing entry means the rule does not apply.
    """
    if not conditions:
        return True
    payload = payload or {}

    amount = extract_amount(payload)
    amount_min = _pick(conditions, "amount_min", "amountMin", "min_amount", "minAmount")
    amount_max = _pick(conditions, "amount_max", "amountMax", "max_amount", "maxAmount")
    if amount_min is not None and amount < float(amount_min):
        return False
    if amount_max is not None and amount > float(amount_max):
        return False

    expected_recurring = _pick(conditions, "is_recurring", "isRecurring")
    if expected_recurring is not None:
        recurring = bool(_pick(payload, "recurring", "is_recurring", "isRecurring"))
        if recurring != bool(expected_recurring):
            return False

    for snake, camel in (
        ("project_type", "projectType"),
        ("customer_id", "customerId"),
        ("org_unit_id", "orgUnitId"),
    ):
        expected = _pick(conditions, snake, camel)
        if expected and _pick(payload, snake, camel) != expected:
            return False

    flow_flags = normalize_flow_flags(
        _pick(conditions, "flow_flags", "flowFlags", "applies_to", "appliesTo")
    )
    if flow_flags is not None and flow_type not in flow_flags:
        return False
    return True


def normalize_rule_steps(raw: Any) -> Optional[List[PlannedStep]]:
    """
    Resolve step orders for a list of step declarations.

    - When any step declares an explicit ``step_order`` it is kept; the
      remaining steps take their 1-based position in the list.
    - Otherwise, when any step declares a ``parallel_key``, steps sharing
      a key share an order, numbered by first appearance of each key.
      Steps without a key get an order of their own.
    - Otherwise steps are sequential in list order.

    Entries naming neither or both of group/user approver are dropped.
    Returns None when no valid step remains.
    """
    if not isinstance(raw, list):
        return None

    entries = []
    for item in raw:
        if not isinstance(item, Mapping):
            continue
        group_id = _pick(item, "approver_group_id", "approverGroupId")
        user_id = _pick(item, "approver_user_id", "approverUserId")
        if not group_id and not user_id:
            continue
        if group_id and user_id:
            logger.warning(f"Dropping approval step naming both group {group_id} and user {user_id}")
            continue
        entries.append({
            "approver_group_id": group_id or None,
            "approver_user_id": user_id or None,
            "step_order": _pick(item, "step_order", "stepOrder"),
            "parallel_key": _pick(item, "parallel_key", "parallelKey"),
        })

    if not entries:
        return None

    if any(_is_int(e["step_order"]) for e in entries):
        return [
            PlannedStep(
                approver_group_id=e["approver_group_id"],
                approver_user_id=e["approver_user_id"],
                step_order=e["step_order"] if _is_int(e["step_order"]) else idx + 1,
            )
            for idx, e in enumerate(entries)
        ]

    if any(e["parallel_key"] for e in entries):
        order_map: Dict[str, int] = {}
        steps = []
        for idx, e in enumerate(entries):
            key = e["parallel_key"] or f"__seq_{idx}"
            if key not in order_map:
                order_map[key] = len(order_map) + 1
            steps.append(PlannedStep(
                approver_group_id=e["approver_group_id"],
                approver_user_id=e["approver_user_id"],
                step_order=order_map[key],
            ))
        return steps

    return [
        PlannedStep(
            approver_group_id=e["approver_group_id"],
            approver_user_id=e["approver_user_id"],
            step_order=idx + 1,
        )
        for idx, e in enumerate(entries)
    ]


def _parse_stages(stages: Any) -> Optional[StepPlan]:
    if not isinstance(stages, list) or not stages:
        return None

    steps: List[PlannedStep] = []
    stage_policy: Dict[int, Dict[str, Any]] = {}

    for idx, stage in enumerate(stages):
        if not isinstance(stage, Mapping):
            return None
        order = stage.get("order", idx + 1)
        if not _is_int(order) or order < 1 or order in stage_policy:
            return None

        approvers = stage.get("approvers")
        if not isinstance(approvers, list) or not approvers:
            return None
        for approver in approvers:
            if not isinstance(approver, Mapping) or not approver.get("id"):
                return None
            if approver.get("type") == "group":
                steps.append(PlannedStep(approver_group_id=str(approver["id"]), step_order=order))
            elif approver.get("type") == "user":
                steps.append(PlannedStep(approver_user_id=str(approver["id"]), step_order=order))
            else:
                return None

        completion = stage.get("completion") or {}
        mode = completion.get("mode", CompletionMode.ALL.value)
        if mode not in {m.value for m in CompletionMode}:
            return None
        policy: Dict[str, Any] = {"mode": mode}
        if mode == CompletionMode.QUORUM.value:
            quorum = completion.get("quorum")
            if not _is_int(quorum) or quorum < 1 or quorum > len(approvers):
                return None
            policy["quorum"] = quorum
        stage_policy[order] = policy

    return StepPlan(steps=steps, stage_policy=stage_policy)


def normalize_rule_steps_with_policy(raw: Any) -> Optional[StepPlan]:
    """
    Normalize either a plain step list or a ``{"stages": [...]}`` mapping.

    Staged input carries a completion policy per order (``all``, ``any``
    or ``quorum``). Duplicate orders, empty stages, unknown approver types
    and unsatisfiable quorums invalidate the whole declaration (None).
    """
    if isinstance(raw, Mapping) and "stages" in raw:
        return _parse_stages(raw.get("stages"))
    steps = normalize_rule_steps(raw)
    if steps is None:
        return None
    return StepPlan(steps=steps)


def match_approval_steps(
    flow_type: str,
    payload: Optional[Mapping],
    conditions: Optional[Mapping] = None,
    ladder: Optional[LadderConfig] = None,
) -> List[PlannedStep]:
    """
    Built-in management/executive ladder.

    Management approval is always required. Executive approval is added
    once the amount reaches the exec threshold. Recurring documents skip
    the exec step below the recurring threshold, which defaults to the
    exec threshold and is configured per flow type.

    Without an explicit ``ladder`` the configured ladder for ``flow_type``
    is used.
    """
    ladder = ladder or get_workflow_config().ladder_for(flow_type)
    payload = payload or {}
    conditions = conditions or {}
    amount = extract_amount(payload)

    is_recurring = _pick(conditions, "is_recurring", "isRecurring")
    if is_recurring is None:
        is_recurring = bool(_pick(payload, "recurring", "is_recurring", "isRecurring"))

    exec_threshold = _pick(conditions, "exec_threshold", "execThreshold")
    if exec_threshold is None:
        exec_threshold = ladder.exec_threshold
        recurring_threshold = ladder.effective_recurring_threshold
    else:
        exec_threshold = float(exec_threshold)
        recurring_threshold = exec_threshold

    small_under = _pick(conditions, "skip_under", "skipUnder", "skip_small_under", "skipSmallUnder")
    small_under = ladder.small_under if small_under is None else float(small_under)

    mgmt_only = [PlannedStep(approver_group_id=ladder.mgmt_group, step_order=1)]
    if 0 < amount < small_under:
        return mgmt_only
    if is_recurring and amount < recurring_threshold:
        return mgmt_only

    steps = list(mgmt_only)
    if amount >= exec_threshold:
        steps.append(PlannedStep(approver_group_id=ladder.exec_group, step_order=2))
    return steps
