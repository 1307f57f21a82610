"""Action policy API endpoints (administrators only)."""

from typing import Any, Dict, List, Optional
from datetime import datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from docgate.api.deps import get_db, require_admin
from docgate.core.policy import ActionPolicyEngine
from docgate.core.policy.rules import Actor
from docgate.core.config import get_settings

router = APIRouter(prefix="/action-policies", tags=["action-policies"])
settings = get_settings()


# Schemas
class ActionPolicyResponse(BaseModel):
    id: str
    flow_type: str
    action_key: str
    priority: int
    is_enabled: bool
    subjects: Optional[Dict[str, Any]]
    state_constraints: Optional[Dict[str, Any]]
    guards: Optional[Any]
    require_reason: bool
    created_at: datetime

    class Config:
        from_attributes = True


class ActorInput(BaseModel):
    user_id: Optional[str] = None
    roles: List[str] = Field(default_factory=list)
    group_ids: List[str] = Field(default_factory=list)
    group_account_ids: List[str] = Field(default_factory=list)


class EvaluateRequest(BaseModel):
    flow_type: str
    action_key: str
    actor: Optional[ActorInput] = None  # Defaults to the caller
    state: Optional[Dict[str, Any]] = None
    target_table: Optional[str] = None
    target_id: Optional[str] = None
    reason_text: Optional[str] = None
    with_fallback: bool = False


class GuardFailureResponse(BaseModel):
    type: str
    reason: str
    details: Optional[Dict[str, Any]] = None


class EvaluateResponse(BaseModel):
    allowed: bool
    reason: Optional[str] = None
    matched_policy_id: Optional[str] = None
    require_reason: bool = False
    guard_failures: List[GuardFailureResponse] = []
    policy_applied: bool = True


# Endpoints
@router.get("", response_model=List[ActionPolicyResponse])
async def list_action_policies(
    flow_type: str = Query(...),
    action_key: str = Query(...),
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_admin),
):
    """Enabled policies for an action, in evaluation order."""
    engine = ActionPolicyEngine(db, editable_days_default=settings.editable_days_default)
    return [ActionPolicyResponse.model_validate(p) for p in engine.load_policies(flow_type, action_key)]


@router.post("/evaluate", response_model=EvaluateResponse)
async def evaluate_action_policy(
    body: EvaluateRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_admin),
):
    """Diagnostic evaluation of the policies for an action."""
    subject = Actor(**body.actor.model_dump()) if body.actor else actor
    engine = ActionPolicyEngine(db, editable_days_default=settings.editable_days_default)
    evaluate = engine.evaluate_with_fallback if body.with_fallback else engine.evaluate
    result = evaluate(
        body.flow_type,
        body.action_key,
        subject,
        state=body.state,
        target_table=body.target_table,
        target_id=body.target_id,
        reason_text=body.reason_text,
    )
    return EvaluateResponse(**result.to_dict())
