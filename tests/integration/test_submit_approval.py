"""Integration tests for the document approval workflow.

Tests end-to-end flows:
1. Policy check → submission → approval instance with steps
2. Atomic submission (document update and instance creation)
3. One open approval per target
4. Approve/reject through the ladder, including staged rules
"""

from datetime import datetime

import pytest

from docgate.core.approval import (
    ApprovalAction,
    ApprovalActionError,
    ApprovalConflictError,
    ApprovalNotFoundError,
    ApprovalPlanError,
    ApprovalService,
    StepPlan,
)
from docgate.core.policy import ActionPolicyEngine, PolicyReason, ReasonRequiredError
from docgate.core.policy.rules import Actor
from docgate.db.models import ActionPolicy, ApprovalInstance
from docgate.db.seed import DEFAULT_ACTION_POLICIES, seed_action_policies

from tests.factories import create_approval_rule, create_project


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture()
def service(db_session, workflow_config):
    return ApprovalService(db_session, workflow_config=workflow_config)


@pytest.fixture()
def document(db_session):
    """A committed project standing in for the document under approval."""
    project = create_project(db_session, status="draft")
    db_session.commit()
    return project


def mark_pending(document, calls=None):
    def _update(db):
        if calls is not None:
            calls.append(document.id)
        document.status = "pending"
        db.flush()
        return {"id": document.id, "status": document.status}
    return _update


def submit(service, document, amount=1000, **kwargs):
    payload = kwargs.pop("payload", {"total_amount": amount})
    return service.submit_approval_with_update(
        "estimate", "projects", document.id, mark_pending(document), payload=payload, **kwargs
    )


# ---------------------------------------------------------------------------
# Submission
# ---------------------------------------------------------------------------

class TestSubmission:
    """Test opening approval instances."""

    def test_small_amount_opens_mgmt_step(self, db_session, service, document):
        result = submit(service, document, amount=1000, created_by="user-1")

        instance = result["approval"]
        assert result["updated"] == {"id": document.id, "status": "pending"}
        assert instance.status == "pending_qa"
        assert instance.current_step == 1
        assert instance.created_by == "user-1"
        assert instance.rule_id is None
        assert [(s.step_order, s.approver_group_id, s.status) for s in instance.steps] == [
            (1, "mgmt", "pending_qa"),
        ]

    def test_large_amount_adds_exec_step(self, service, document):
        instance = submit(service, document, amount=100000)["approval"]

        assert [(s.step_order, s.approver_group_id, s.status) for s in instance.steps] == [
            (1, "mgmt", "pending_qa"),
            (2, "exec", "pending_exec"),
        ]
        assert instance.status == "pending_qa"

    def test_project_id_from_payload(self, service, document):
        instance = submit(service, document, payload={"total_amount": 10, "projectId": "prj-9"})["approval"]
        assert instance.project_id == "prj-9"

    def test_update_failure_leaves_no_instance(self, db_session, service, document):
        """Test the instance is rolled back when the document update fails."""
        def broken_update(db):
            document.status = "pending"
            raise RuntimeError("document row locked")

        with pytest.raises(RuntimeError):
            service.submit_approval_with_update(
                "estimate", "projects", document.id, broken_update, payload={"total_amount": 10}
            )

        assert db_session.query(ApprovalInstance).count() == 0
        db_session.refresh(document)
        assert document.status == "draft"

    def test_second_open_submission_conflicts(self, db_session, service, document):
        """Test a target cannot have two open approvals."""
        submit(service, document)
        calls = []

        with pytest.raises(ApprovalConflictError) as exc_info:
            service.submit_approval_with_update(
                "estimate", "projects", document.id, mark_pending(document, calls)
            )

        assert exc_info.value.target_id == document.id
        assert calls == []
        assert db_session.query(ApprovalInstance).count() == 1

    def test_resubmission_after_close(self, db_session, service, document):
        first = submit(service, document)["approval"]
        first.status = "rejected"
        db_session.commit()

        second = submit(service, document)["approval"]

        assert second.id != first.id
        assert db_session.query(ApprovalInstance).count() == 2

    def test_same_target_other_flow_type_allowed(self, db_session, service, document):
        submit(service, document)

        service.submit_approval_with_update(
            "invoice", "projects", document.id, mark_pending(document), payload={"total_amount": 10}
        )

        assert db_session.query(ApprovalInstance).count() == 2

    def test_empty_plan_rejected(self, db_session, service, document, monkeypatch):
        monkeypatch.setattr(service, "plan_steps", lambda *args, **kwargs: StepPlan(steps=[]))

        with pytest.raises(ApprovalPlanError):
            submit(service, document)

        assert db_session.query(ApprovalInstance).count() == 0


# ---------------------------------------------------------------------------
# Rule selection
# ---------------------------------------------------------------------------

class TestRuleSelection:
    """Test configured rules take precedence over the built-in ladder."""

    def test_matching_rule_is_used(self, db_session, service, document):
        rule = create_approval_rule(
            db_session,
            conditions={"amount_min": 1000},
            steps=[{"approver_user_id": "cfo"}],
        )

        instance = submit(service, document, amount=5000)["approval"]

        assert instance.rule_id == rule.id
        assert [(s.approver_user_id, s.approver_group_id) for s in instance.steps] == [("cfo", None)]

    def test_non_matching_rule_falls_back_to_ladder(self, db_session, service):
        create_approval_rule(db_session, conditions={"amount_min": 1000}, steps=[{"approver_user_id": "cfo"}])

        plan = service.plan_steps("estimate", {"total_amount": 500})

        assert plan.rule_id is None
        assert [s.approver_group_id for s in plan.steps] == ["mgmt"]

    def test_newest_effective_rule_wins(self, db_session, service):
        create_approval_rule(db_session, effective_from=datetime(2021, 1, 1), steps=[{"approver_user_id": "old"}])
        newer = create_approval_rule(
            db_session, effective_from=datetime(2024, 1, 1), steps=[{"approver_user_id": "new"}]
        )
        create_approval_rule(db_session, effective_from=datetime(2999, 1, 1), steps=[{"approver_user_id": "future"}])
        create_approval_rule(db_session, is_active=False, steps=[{"approver_user_id": "inactive"}])

        plan = service.plan_steps("estimate", {"total_amount": 10})

        assert plan.rule_id == newer.id
        assert plan.steps[0].approver_user_id == "new"

    def test_unusable_rule_skipped(self, db_session, service, caplog):
        usable = create_approval_rule(
            db_session, effective_from=datetime(2021, 1, 1), steps=[{"approver_user_id": "ok"}]
        )
        broken = create_approval_rule(db_session, effective_from=datetime(2024, 1, 1), steps=[{}])

        plan = service.plan_steps("estimate", {"total_amount": 10})

        assert plan.rule_id == usable.id
        assert broken.id in caplog.text

    def test_rule_for_other_flow_ignored(self, db_session, service):
        create_approval_rule(db_session, flow_type="invoice", steps=[{"approver_user_id": "x"}])

        assert service.plan_steps("estimate", {"total_amount": 10}).rule_id is None

    def test_exec_only_rule_starts_pending_exec(self, db_session, service, document):
        create_approval_rule(db_session, steps=[{"approver_group_id": "exec"}])

        instance = submit(service, document)["approval"]

        assert instance.status == "pending_exec"

    def test_staged_rule_stores_completion_policy(self, db_session, service, document):
        create_approval_rule(db_session, steps={
            "stages": [
                {
                    "order": 1,
                    "approvers": [{"type": "user", "id": "a"}, {"type": "user", "id": "b"}],
                    "completion": {"mode": "any"},
                },
            ]
        })

        instance = submit(service, document)["approval"]

        assert instance.stage_policy == {"1": {"mode": "any"}}
        assert [s.approver_user_id for s in instance.steps] == ["a", "b"]


# ---------------------------------------------------------------------------
# Approver actions
# ---------------------------------------------------------------------------

class TestApproverActions:
    """Test approve/reject progression."""

    def test_full_ladder_approval(self, service, document, manager, executive):
        instance = submit(service, document, amount=150000)["approval"]

        instance = service.act(instance.id, manager, ApprovalAction.APPROVE)
        assert instance.status == "pending_exec"
        assert instance.current_step == 2

        instance = service.act(instance.id, executive, "approve")
        assert instance.status == "approved"
        assert all(s.status == "approved" for s in instance.steps)
        assert instance.steps[1].acted_by == "exec-1"

    def test_rejection_cancels_remaining_steps(self, service, document, manager):
        instance = submit(service, document, amount=150000)["approval"]

        instance = service.act(instance.id, manager, ApprovalAction.REJECT)

        assert instance.status == "rejected"
        assert [s.status for s in instance.steps] == ["rejected", "cancelled"]

    def test_group_account_ids_count_as_groups(self, service, document):
        instance = submit(service, document)["approval"]
        accountant = Actor(user_id="acc-1", group_account_ids=["mgmt"])

        assert service.act(instance.id, accountant, ApprovalAction.APPROVE).status == "approved"

    def test_non_approver_cannot_act(self, service, document, submitter, executive):
        instance = submit(service, document, amount=150000)["approval"]

        with pytest.raises(ApprovalActionError):
            service.act(instance.id, submitter, ApprovalAction.APPROVE)
        # Exec step is not current yet
        with pytest.raises(ApprovalActionError):
            service.act(instance.id, executive, ApprovalAction.APPROVE)

    def test_closed_instance_cannot_act(self, service, document, manager):
        instance = submit(service, document)["approval"]
        service.act(instance.id, manager, ApprovalAction.APPROVE)

        with pytest.raises(ApprovalActionError):
            service.act(instance.id, manager, ApprovalAction.REJECT)

    def test_unknown_instance(self, service, manager):
        with pytest.raises(ApprovalNotFoundError):
            service.act("missing", manager, ApprovalAction.APPROVE)


class TestStagedCompletion:
    """Test all/any/quorum completion of parallel steps."""

    def _submit_stage(self, db_session, service, document, completion, approvers=("a", "b", "c")):
        create_approval_rule(db_session, steps={
            "stages": [
                {
                    "order": 1,
                    "approvers": [{"type": "user", "id": a} for a in approvers],
                    "completion": completion,
                },
                {"order": 2, "approvers": [{"type": "group", "id": "exec"}]},
            ]
        })
        return submit(service, document)["approval"]

    def test_all_requires_every_approver(self, db_session, service, document):
        instance = self._submit_stage(db_session, service, document, {"mode": "all"}, approvers=("a", "b"))

        instance = service.act(instance.id, Actor(user_id="a"), ApprovalAction.APPROVE)
        assert instance.current_step == 1

        instance = service.act(instance.id, Actor(user_id="b"), ApprovalAction.APPROVE)
        assert instance.current_step == 2
        assert instance.status == "pending_exec"

    def test_all_rejects_on_single_rejection(self, db_session, service, document):
        instance = self._submit_stage(db_session, service, document, {"mode": "all"}, approvers=("a", "b"))

        instance = service.act(instance.id, Actor(user_id="a"), ApprovalAction.REJECT)

        assert instance.status == "rejected"

    def test_any_completes_on_first_approval(self, db_session, service, document):
        instance = self._submit_stage(db_session, service, document, {"mode": "any"})

        instance = service.act(instance.id, Actor(user_id="b"), ApprovalAction.APPROVE)

        assert instance.current_step == 2
        order_one = [s.status for s in instance.steps if s.step_order == 1]
        assert sorted(order_one) == ["approved", "cancelled", "cancelled"]

    def test_any_survives_partial_rejection(self, db_session, service, document):
        instance = self._submit_stage(db_session, service, document, {"mode": "any"})

        instance = service.act(instance.id, Actor(user_id="a"), ApprovalAction.REJECT)
        assert instance.status == "pending_qa"

        instance = service.act(instance.id, Actor(user_id="c"), ApprovalAction.APPROVE)
        assert instance.current_step == 2

    def test_quorum(self, db_session, service, document):
        instance = self._submit_stage(db_session, service, document, {"mode": "quorum", "quorum": 2})

        instance = service.act(instance.id, Actor(user_id="a"), ApprovalAction.APPROVE)
        instance = service.act(instance.id, Actor(user_id="b"), ApprovalAction.REJECT)
        assert instance.current_step == 1
        assert instance.status == "pending_qa"

        instance = service.act(instance.id, Actor(user_id="c"), ApprovalAction.APPROVE)
        assert instance.current_step == 2

    def test_quorum_unreachable_rejects(self, db_session, service, document):
        instance = self._submit_stage(db_session, service, document, {"mode": "quorum", "quorum": 2})

        service.act(instance.id, Actor(user_id="a"), ApprovalAction.REJECT)
        instance = service.act(instance.id, Actor(user_id="b"), ApprovalAction.REJECT)

        assert instance.status == "rejected"
        assert all(s.status != "pending_qa" for s in instance.steps)


# ---------------------------------------------------------------------------
# Seeded policies + submission
# ---------------------------------------------------------------------------

class TestSeededPolicies:
    """Test the default policy set gating submission."""

    def test_seed_is_idempotent(self, db_session):
        assert seed_action_policies(db_session) == len(DEFAULT_ACTION_POLICIES)
        assert seed_action_policies(db_session) == 0
        assert db_session.query(ActionPolicy).count() == len(DEFAULT_ACTION_POLICIES)

    def test_submit_flow(self, db_session, service, document, submitter, admin):
        """Test policy check before submission and the admin override after."""
        seed_action_policies(db_session)
        engine = ActionPolicyEngine(db_session)
        state = {"status": "draft"}

        allowed = engine.enforce(
            "estimate", "submit", submitter, state=state,
            target_table="projects", target_id=document.id,
        )
        assert allowed.allowed is True
        submit(service, document)

        blocked = engine.evaluate(
            "estimate", "submit", submitter, state=state,
            target_table="projects", target_id=document.id,
        )
        assert blocked.reason == PolicyReason.NO_MATCHING_POLICY
        assert blocked.guard_failures[0].reason.value == "approval_in_progress"

        with pytest.raises(ReasonRequiredError):
            engine.enforce(
                "estimate", "submit", admin, state=state,
                target_table="projects", target_id=document.id,
            )

        override = engine.enforce(
            "estimate", "submit", admin, state=state,
            target_table="projects", target_id=document.id,
            reason_text="customer escalation",
        )
        assert override.allowed is True
