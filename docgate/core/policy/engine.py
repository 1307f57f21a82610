"""Action policy engine for docgate.

Decides whether an actor may perform an action (``submit``, ``edit``,
``cancel`` ...) on a business document right now. Candidate policies
for a (flow type, action) pair are walked in a fixed order and the
first one whose subjects, state constraints and guards all pass decides
the outcome.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence

from sqlalchemy.orm import Session

from docgate.db.models import ActionPolicy
from .guards import GuardContext, GuardFailure, evaluate_guards, DEFAULT_EDITABLE_DAYS
from .rules import Actor, matches_state_constraints, matches_subjects, normalize_string

logger = logging.getLogger(__name__)


class PolicyReason(str, Enum):
    """Denial reasons. Denial is an expected outcome, not an exception."""

    NO_MATCHING_POLICY = "no_matching_policy"      # Fail-closed default
    REASON_REQUIRED = "reason_required"            # Resubmit with a reason
    GUARD_FAILED = "guard_failed"                  # Policy configuration defect


@dataclass
class PolicyResult:
    """
    Result of evaluating the action policies for one request.
    """
    allowed: bool
    reason: Optional[PolicyReason] = None
    matched_policy_id: Optional[str] = None
    require_reason: bool = False
    guard_failures: List[GuardFailure] = field(default_factory=list)
    # False only when no policy is configured for the action at all
    policy_applied: bool = True

    def to_dict(self) -> Dict[str, Any]:
        """Convert result to dictionary for API responses and audit."""
        return {
            "allowed": self.allowed,
            "reason": self.reason.value if self.reason else None,
            "matched_policy_id": self.matched_policy_id,
            "require_reason": self.require_reason,
            "guard_failures": [f.to_dict() for f in self.guard_failures],
            "policy_applied": self.policy_applied,
        }


class ActionPolicyError(Exception):
    """Base class for policy enforcement errors."""

    code = "ACTION_POLICY_ERROR"

    def __init__(self, message: str, result: PolicyResult):
        super().__init__(message)
        self.result = result


class ReasonRequiredError(ActionPolicyError):
    """Raised when the matched policy requires a reason and none was given."""

    code = "REASON_REQUIRED"


class ActionPolicyDeniedError(ActionPolicyError):
    """Raised when a configured policy denies the action."""

    code = "ACTION_POLICY_DENIED"

    @property
    def details(self) -> Dict[str, Any]:
        return {
            "reason": self.result.reason.value if self.result.reason else None,
            "matched_policy_id": self.result.matched_policy_id,
            "guard_failures": [f.to_dict() for f in self.result.guard_failures],
        }


class ActionPolicyEngine:
    """
    Evaluates action policies against an actor and a document state.

    Outcomes:
    - allowed: first matching policy, reason given if it requires one
    - reason_required: first matching policy needs a reason; terminal
    - guard_failed: a policy with matching subjects/state declares a guard
      the engine cannot interpret; fail-safe, terminal
    - no_matching_policy: nothing matched; fail-closed
    """

    def __init__(self, db: Session, editable_days_default: int = DEFAULT_EDITABLE_DAYS):
        """
        Initialize the engine.

        Args:
            db: Database session for loading policies and evaluating guards
            editable_days_default: Edit window used by ``editable_days``
                guards without a ``days`` param
        """
        self.db = db
        self.editable_days_default = editable_days_default

    def load_policies(self, flow_type: str, action_key: str) -> List[ActionPolicy]:
        """Enabled candidates in evaluation order."""
        return self.db.query(ActionPolicy).filter(
            ActionPolicy.flow_type == flow_type,
            ActionPolicy.action_key == action_key,
            ActionPolicy.is_enabled == True,
        ).order_by(
            ActionPolicy.priority.desc(),
            ActionPolicy.created_at.desc(),
            ActionPolicy.id.asc(),
        ).all()

    def evaluate(
        self,
        flow_type: str,
        action_key: str,
        actor: Actor,
        state: Optional[Mapping[str, Any]] = None,
        target_table: Optional[str] = None,
        target_id: Optional[str] = None,
        reason_text: Optional[str] = None,
        *,
        policies: Optional[Sequence[Any]] = None,
        now: Optional[datetime] = None,
    ) -> PolicyResult:
        """
        Evaluate the policies for an action.

        Args:
            flow_type: Document category (estimate, invoice, ...)
            action_key: Operation being gated (submit, edit, ...)
            actor: The caller
            state: Current persisted state of the target document
            target_table: Target document table, for guards
            target_id: Target document id, for guards
            reason_text: Free-text justification supplied by the caller
            policies: Pre-ordered candidates; loaded from the database when None
            now: Evaluation time for time-based guards

        Returns:
            PolicyResult with the decision
        """
        action_key = normalize_string(action_key) or ""
        reason_text = normalize_string(reason_text)
        if policies is None:
            policies = self.load_policies(flow_type, action_key)

        ctx = GuardContext(
            db=self.db,
            flow_type=flow_type,
            target_table=target_table,
            target_id=target_id,
            state=state,
            now=now or datetime.utcnow(),
            editable_days_default=self.editable_days_default,
        )

        skipped_failures: List[GuardFailure] = []

        for policy in policies:
            if not matches_subjects(policy.subjects, actor):
                continue
            if not matches_state_constraints(policy.state_constraints, state):
                continue

            guard_result = evaluate_guards(policy.guards, ctx)
            if guard_result.fail_safe:
                logger.error(
                    f"Action policy {policy.id} ({flow_type}:{action_key}) has invalid guards: "
                    f"{[f.to_dict() for f in guard_result.failures]}"
                )
                return PolicyResult(
                    allowed=False,
                    reason=PolicyReason.GUARD_FAILED,
                    matched_policy_id=policy.id,
                    guard_failures=guard_result.failures,
                )
            if not guard_result.ok:
                skipped_failures.extend(guard_result.failures)
                continue

            require_reason = bool(policy.require_reason)
            if require_reason and not reason_text:
                return PolicyResult(
                    allowed=False,
                    reason=PolicyReason.REASON_REQUIRED,
                    matched_policy_id=policy.id,
                    require_reason=True,
                )

            return PolicyResult(
                allowed=True,
                matched_policy_id=policy.id,
                require_reason=require_reason,
            )

        return PolicyResult(
            allowed=False,
            reason=PolicyReason.NO_MATCHING_POLICY,
            guard_failures=skipped_failures,
        )

    def evaluate_with_fallback(
        self,
        flow_type: str,
        action_key: str,
        actor: Actor,
        state: Optional[Mapping[str, Any]] = None,
        target_table: Optional[str] = None,
        target_id: Optional[str] = None,
        reason_text: Optional[str] = None,
        *,
        policies: Optional[Sequence[Any]] = None,
        now: Optional[datetime] = None,
    ) -> PolicyResult:
        """
        Evaluate, letting callers proceed when nothing is configured.

        ``policy_applied`` is False (and ``allowed`` True) only when there
        is no enabled policy for the action; the caller then applies its
        own default authorization.
        """
        if policies is None:
            policies = self.load_policies(flow_type, normalize_string(action_key) or "")
        if not policies:
            return PolicyResult(allowed=True, policy_applied=False)

        return self.evaluate(
            flow_type,
            action_key,
            actor,
            state=state,
            target_table=target_table,
            target_id=target_id,
            reason_text=reason_text,
            policies=policies,
            now=now,
        )

    def enforce(
        self,
        flow_type: str,
        action_key: str,
        actor: Actor,
        state: Optional[Mapping[str, Any]] = None,
        target_table: Optional[str] = None,
        target_id: Optional[str] = None,
        reason_text: Optional[str] = None,
        *,
        policies: Optional[Sequence[Any]] = None,
        now: Optional[datetime] = None,
    ) -> PolicyResult:
        """
        Evaluate with fallback and raise when the action is denied.

        Raises:
            ReasonRequiredError: The matched policy needs a reason
            ActionPolicyDeniedError: Any other denial
        """
        result = self.evaluate_with_fallback(
            flow_type,
            action_key,
            actor,
            state=state,
            target_table=target_table,
            target_id=target_id,
            reason_text=reason_text,
            policies=policies,
            now=now,
        )

        if result.allowed:
            if result.policy_applied and result.require_reason:
                logger.info(
                    f"Action policy override {flow_type}:{action_key} on {target_table}/{target_id} "
                    f"by {actor.user_id} (policy {result.matched_policy_id}): {reason_text}"
                )
            return result

        if result.reason == PolicyReason.REASON_REQUIRED:
            raise ReasonRequiredError(
                f"A reason is required to {action_key} this {flow_type}", result
            )

        reason = result.reason.value if result.reason else None
        logger.info(
            f"Action policy denied {flow_type}:{action_key} on {target_table}/{target_id} "
            f"for {actor.user_id}: {reason}"
        )
        raise ActionPolicyDeniedError(
            f"Action {action_key} on {flow_type} denied by policy", result
        )


def evaluate_action_policy(db: Session, flow_type: str, action_key: str, actor: Actor, **kwargs) -> PolicyResult:
    """Evaluate action policies with a one-off engine."""
    return ActionPolicyEngine(db).evaluate(flow_type, action_key, actor, **kwargs)


def evaluate_action_policy_with_fallback(
    db: Session, flow_type: str, action_key: str, actor: Actor, **kwargs
) -> PolicyResult:
    """Evaluate with fallback using a one-off engine."""
    return ActionPolicyEngine(db).evaluate_with_fallback(flow_type, action_key, actor, **kwargs)
