"""Approval workflow API endpoints."""

from typing import Any, Dict, List, Optional
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from docgate.api.deps import get_db, get_current_actor, require_admin
from docgate.core.approval import (
    ApprovalAction,
    ApprovalActionError,
    ApprovalNotFoundError,
    ApprovalService,
)
from docgate.core.policy.rules import Actor
from docgate.services.escalation import run_approval_escalations

router = APIRouter(prefix="/approvals", tags=["approvals"])


# Schemas
class PreviewRequest(BaseModel):
    flow_type: str
    payload: Dict[str, Any] = Field(default_factory=dict)


class PlannedStepResponse(BaseModel):
    approver_group_id: Optional[str] = None
    approver_user_id: Optional[str] = None
    step_order: int


class PreviewResponse(BaseModel):
    rule_id: Optional[str] = None
    steps: List[PlannedStepResponse]
    stage_policy: Dict[str, Any] = Field(default_factory=dict)


class ApprovalStepResponse(BaseModel):
    id: str
    step_order: int
    approver_group_id: Optional[str]
    approver_user_id: Optional[str]
    status: str
    acted_by: Optional[str]
    acted_at: Optional[datetime]
    created_at: datetime

    class Config:
        from_attributes = True


class ApprovalInstanceResponse(BaseModel):
    id: str
    flow_type: str
    target_table: str
    target_id: str
    project_id: Optional[str]
    status: str
    current_step: Optional[int]
    rule_id: Optional[str]
    stage_policy: Optional[Dict[str, Any]]
    created_by: Optional[str]
    created_at: datetime
    steps: List[ApprovalStepResponse] = []

    class Config:
        from_attributes = True


class EscalationRunResponse(BaseModel):
    settings: int
    skipped: int
    overdue: int
    closed: int
    failed: int


# Endpoints
@router.post("/preview", response_model=PreviewResponse)
async def preview_approval(
    body: PreviewRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """Dry-run: which approvals would this document need right now."""
    plan = ApprovalService(db).plan_steps(body.flow_type, body.payload)
    return PreviewResponse(**plan.to_dict())


@router.post("/escalations/run", response_model=EscalationRunResponse)
def run_escalations(
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_admin),
):
    """Run the escalation scan now (normally run by the scheduler)."""
    # Sync endpoint: alert delivery runs its own event loop
    return EscalationRunResponse(**run_approval_escalations(db))


@router.get("/{instance_id}", response_model=ApprovalInstanceResponse)
async def get_approval(
    instance_id: str,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """Get an approval instance with its steps."""
    try:
        instance = ApprovalService(db).get_instance(instance_id)
    except ApprovalNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return ApprovalInstanceResponse.model_validate(instance)


def _act(db: Session, instance_id: str, actor: Actor, action: ApprovalAction):
    try:
        instance = ApprovalService(db).act(instance_id, actor, action)
    except ApprovalNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ApprovalActionError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return ApprovalInstanceResponse.model_validate(instance)


@router.post("/{instance_id}/approve", response_model=ApprovalInstanceResponse)
async def approve(
    instance_id: str,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """Approve the caller's step at the current step order."""
    return _act(db, instance_id, actor, ApprovalAction.APPROVE)


@router.post("/{instance_id}/reject", response_model=ApprovalInstanceResponse)
async def reject(
    instance_id: str,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """Reject the caller's step at the current step order."""
    return _act(db, instance_id, actor, ApprovalAction.REJECT)
