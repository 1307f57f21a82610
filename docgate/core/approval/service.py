"""Approval service for managing document approval workflows.

Creates approval instances atomically with the document status change
that puts the document under approval, and records approver actions.
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from docgate.core.policy.rules import Actor
from docgate.core.workflow_config import WorkflowConfig, get_workflow_config
from docgate.db.models import ApprovalInstance, ApprovalRule, ApprovalStep
from .planner import (
    StepPlan,
    match_approval_steps,
    matches_rule_condition,
    normalize_rule_steps_with_policy,
)
from .states import (
    ApprovalAction,
    DocStatus,
    PENDING_STATUS_VALUES,
    is_open,
    required_approvals,
    resolve_pending_status,
)

logger = logging.getLogger(__name__)


class ApprovalError(Exception):
    """Base class for approval workflow errors."""


class ApprovalConflictError(ApprovalError):
    """Raised when the target already has an open approval instance."""

    def __init__(self, flow_type: str, target_table: str, target_id: str):
        super().__init__(
            f"An approval is already in progress for {flow_type} {target_table}/{target_id}"
        )
        self.flow_type = flow_type
        self.target_table = target_table
        self.target_id = target_id


class ApprovalPlanError(ApprovalError):
    """Raised when no approval step could be planned."""


class ApprovalNotFoundError(ApprovalError):
    """Raised when an approval instance does not exist."""

    def __init__(self, instance_id: str):
        super().__init__(f"Approval instance {instance_id} not found")
        self.instance_id = instance_id


class ApprovalActionError(ApprovalError):
    """Raised when an approve/reject action is not possible."""


class ApprovalService:
    """
    High-level service for document approvals.

    Handles:
    - Planning the step ladder (configured rules or the built-in ladder)
    - Opening an instance together with the document status change
    - Recording approve/reject actions and advancing the ladder
    """

    def __init__(self, db: Session, workflow_config: Optional[WorkflowConfig] = None):
        """
        Initialize the approval service.

        Args:
            db: Database session
            workflow_config: Ladder thresholds; loaded from settings when None
        """
        self.db = db
        self.workflow_config = workflow_config or get_workflow_config()

    @contextmanager
    def _transaction(self):
        """Commit on success, roll back on any failure."""
        try:
            yield
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

    # ---------------------------------------------------------------
    # Planning
    # ---------------------------------------------------------------

    def select_rule(
        self,
        flow_type: str,
        payload: Optional[Mapping[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> Optional[StepPlan]:
        """
        Plan from the newest active rule that applies to the document.

        Rules whose steps do not normalize are skipped with a warning.
        """
        now = now or datetime.utcnow()
        rules = self.db.query(ApprovalRule).filter(
            ApprovalRule.flow_type == flow_type,
            ApprovalRule.is_active == True,
            ApprovalRule.effective_from <= now,
        ).order_by(
            ApprovalRule.effective_from.desc(),
            ApprovalRule.created_at.desc(),
        ).all()

        for rule in rules:
            if not matches_rule_condition(flow_type, payload, rule.conditions):
                continue
            plan = normalize_rule_steps_with_policy(rule.steps)
            if plan is None or not plan.steps:
                logger.warning(f"Approval rule {rule.id} has no usable steps, skipping")
                continue
            plan.rule_id = rule.id
            return plan
        return None

    def plan_steps(
        self,
        flow_type: str,
        payload: Optional[Mapping[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> StepPlan:
        """Dry-run: the steps a submission would create right now."""
        plan = self.select_rule(flow_type, payload, now)
        if plan is not None:
            return plan
        ladder = self.workflow_config.ladder_for(flow_type)
        return StepPlan(steps=match_approval_steps(flow_type, payload, ladder=ladder))

    # ---------------------------------------------------------------
    # Submission
    # ---------------------------------------------------------------

    def submit_approval_with_update(
        self,
        flow_type: str,
        target_table: str,
        target_id: str,
        update: Callable[[Session], Any],
        payload: Optional[Mapping[str, Any]] = None,
        created_by: Optional[str] = None,
        project_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Open an approval instance and apply the document update atomically.

        Args:
            flow_type: Document category
            target_table: Table of the document under approval
            target_id: Id of the document under approval
            update: Callback flipping the document's status; runs in the
                same transaction and its return value is passed through
            payload: Document state used for planning (amount, flags, ...)
            created_by: Submitting user id
            project_id: Owning project, used to scope escalations

        Returns:
            ``{"updated": <update() result>, "approval": ApprovalInstance}``

        Raises:
            ApprovalPlanError: No step could be planned
            ApprovalConflictError: The target already has an open instance
        """
        plan = self.plan_steps(flow_type, payload, now)
        first_order = plan.first_order
        if first_order is None:
            raise ApprovalPlanError(f"No approval steps planned for {flow_type}")

        exec_group = self.workflow_config.ladder_for(flow_type).exec_group
        if project_id is None and payload:
            project_id = payload.get("project_id") or payload.get("projectId")

        with self._transaction():
            instance = ApprovalInstance(
                flow_type=flow_type,
                target_table=target_table,
                target_id=str(target_id),
                project_id=project_id,
                status=resolve_pending_status(plan.steps, first_order, exec_group).value,
                current_step=first_order,
                rule_id=plan.rule_id,
                stage_policy={str(k): v for k, v in plan.stage_policy.items()} or None,
                created_by=created_by,
            )
            for planned in plan.steps:
                instance.steps.append(ApprovalStep(
                    step_order=planned.step_order,
                    approver_group_id=planned.approver_group_id,
                    approver_user_id=planned.approver_user_id,
                    status=resolve_pending_status(plan.steps, planned.step_order, exec_group).value,
                ))
            self.db.add(instance)
            try:
                self.db.flush()
            except IntegrityError as e:
                raise ApprovalConflictError(flow_type, target_table, str(target_id)) from e

            updated = update(self.db)

        logger.info(
            f"Opened approval {instance.id} for {flow_type} {target_table}/{target_id} "
            f"({len(plan.steps)} steps, rule {plan.rule_id})"
        )
        return {"updated": updated, "approval": instance}

    # ---------------------------------------------------------------
    # Queries
    # ---------------------------------------------------------------

    def get_instance(self, instance_id: str) -> ApprovalInstance:
        instance = self.db.query(ApprovalInstance).filter(
            ApprovalInstance.id == instance_id
        ).first()
        if not instance:
            raise ApprovalNotFoundError(instance_id)
        return instance

    def get_open_instance(
        self,
        flow_type: str,
        target_table: str,
        target_id: str,
    ) -> Optional[ApprovalInstance]:
        return self.db.query(ApprovalInstance).filter(
            ApprovalInstance.flow_type == flow_type,
            ApprovalInstance.target_table == target_table,
            ApprovalInstance.target_id == str(target_id),
            ApprovalInstance.status.in_(PENDING_STATUS_VALUES),
        ).first()

    # ---------------------------------------------------------------
    # Actions
    # ---------------------------------------------------------------

    @staticmethod
    def _is_approver(step: ApprovalStep, actor: Actor) -> bool:
        if step.approver_user_id:
            return step.approver_user_id == actor.user_id
        return step.approver_group_id in actor.all_group_ids

    def act(
        self,
        instance_id: str,
        actor: Actor,
        action: ApprovalAction,
        now: Optional[datetime] = None,
    ) -> ApprovalInstance:
        """
        Approve or reject the actor's step at the current order.

        An order completes once it has the approvals its stage policy
        requires (all approvers by default). Leftover parallel steps are
        then cancelled and the instance advances to the next order, or is
        approved when none remains. A rejection rejects the instance once
        the order can no longer collect enough approvals.

        Raises:
            ApprovalNotFoundError: Unknown instance
            ApprovalActionError: Instance closed or actor has no pending step
        """
        action = ApprovalAction(action)
        now = now or datetime.utcnow()

        with self._transaction():
            instance = self.db.query(ApprovalInstance).filter(
                ApprovalInstance.id == instance_id
            ).with_for_update().first()
            if not instance:
                raise ApprovalNotFoundError(instance_id)
            if not is_open(instance.status):
                raise ApprovalActionError(f"Approval {instance_id} is already {instance.status}")

            current = [s for s in instance.steps if s.step_order == instance.current_step]
            step = next(
                (s for s in current if s.status in PENDING_STATUS_VALUES and self._is_approver(s, actor)),
                None,
            )
            if step is None:
                raise ApprovalActionError(
                    f"User {actor.user_id} has no pending step at order {instance.current_step}"
                )

            step.status = (DocStatus.APPROVED if action == ApprovalAction.APPROVE else DocStatus.REJECTED).value
            step.acted_by = actor.user_id
            step.acted_at = now

            needed = required_approvals(instance.stage_policy, instance.current_step, len(current))
            approved = sum(1 for s in current if s.status == DocStatus.APPROVED.value)
            pending = sum(1 for s in current if s.status in PENDING_STATUS_VALUES)

            if approved >= needed:
                self._cancel_pending(current)
                self._advance(instance)
            elif approved + pending < needed:
                self._cancel_pending(instance.steps)
                instance.status = DocStatus.REJECTED.value

            self.db.flush()

        logger.info(
            f"User {actor.user_id} {action.value} approval {instance.id} "
            f"step {step.step_order} -> {instance.status}"
        )
        return instance

    @staticmethod
    def _cancel_pending(steps: List[ApprovalStep]) -> None:
        for s in steps:
            if s.status in PENDING_STATUS_VALUES:
                s.status = DocStatus.CANCELLED.value

    def _advance(self, instance: ApprovalInstance) -> None:
        later_orders = sorted({
            s.step_order for s in instance.steps if s.step_order > instance.current_step
        })
        if not later_orders:
            instance.status = DocStatus.APPROVED.value
            return
        exec_group = self.workflow_config.ladder_for(instance.flow_type).exec_group
        instance.current_step = later_orders[0]
        instance.status = resolve_pending_status(instance.steps, later_orders[0], exec_group).value
