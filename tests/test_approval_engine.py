from __future__ import annotations

import pytest
from sqlalchemy import event, select

from socialflow.approvals.engine import lock_instance, resubmit_post, review_assignment, submit_for_approval
from socialflow.approvals.states import ReviewOutcome
from socialflow.approvals.workflows import StepSpec, update_workflow
from socialflow.core.errors import AlreadyInApproval, ConflictError, ForbiddenError, NotFoundError, ValidationError
from socialflow.storage.models import ApprovalAssignment, ApprovalInstance
from tests.factories import build_team


def _pending(instance: ApprovalInstance) -> list[ApprovalAssignment]:
    return [
        assignment
        for assignment in instance.assignments
        if assignment.status == "pending"
    ]


def test_two_step_workflow_rejected_at_second_step(team) -> None:
    manager = team.add("manager")
    client = team.add("client_reviewer")
    workflow = team.workflow(
        StepSpec(name="Internal", order=1, role="manager"),
        StepSpec(name="Client", order=2, role="client_reviewer"),
    )
    post = team.post()

    instance = submit_for_approval(team.session, post_id=post.id, acting_user_id=team.owner_user_id)
    assert instance.workflow_id == workflow.id
    assert instance.status == "in_progress"
    assert instance.current_step_order == 1
    assert post.status == "draft"
    first = _pending(instance)
    assert len(first) == 1
    assert first[0].assigned_user_id is None

    result = review_assignment(
        team.session,
        assignment_id=first[0].id,
        acting_user_id=manager.user_id,
        approve=True,
    )
    assert result.outcome == ReviewOutcome.MOVED_TO_NEXT_STEP
    assert result.current_step_order == 2
    assert first[0].assigned_user_id == manager.user_id

    second = _pending(instance)
    assert [assignment.step_order for assignment in second] == [2]
    result = review_assignment(
        team.session,
        assignment_id=second[0].id,
        acting_user_id=client.user_id,
        approve=False,
        feedback="Tone is off",
    )

    assert result.outcome == ReviewOutcome.REJECTED
    assert instance.status == "rejected"
    assert instance.active_post_id is None
    assert post.status == "draft"
    assert len(instance.assignments) == 2
    assert second[0].feedback == "Tone is off"


def test_fan_out_step_waits_for_every_holder(team) -> None:
    reviewers = [team.add("internal_reviewer") for _ in range(2)]
    team.workflow(StepSpec(name="Everyone", order=1, role="internal_reviewer", require_all_users_in_role=True))
    post = team.post()

    instance = submit_for_approval(team.session, post_id=post.id, acting_user_id=team.owner_user_id)
    assignments = _pending(instance)
    assert sorted(assignment.assigned_user_id for assignment in assignments) == sorted(
        reviewer.user_id for reviewer in reviewers
    )

    by_user = {assignment.assigned_user_id: assignment for assignment in assignments}
    first = review_assignment(
        team.session,
        assignment_id=by_user[reviewers[0].user_id].id,
        acting_user_id=reviewers[0].user_id,
        approve=True,
    )
    assert first.outcome == ReviewOutcome.WAITING_FOR_OTHERS
    assert instance.status == "in_progress"

    second = review_assignment(
        team.session,
        assignment_id=by_user[reviewers[1].user_id].id,
        acting_user_id=reviewers[1].user_id,
        approve=True,
    )
    assert second.outcome == ReviewOutcome.APPROVED
    assert instance.status == "approved"
    assert instance.current_step_order is None
    assert instance.active_post_id is None
    assert post.status == "scheduled"


def test_fan_out_rejection_cancels_pending_siblings(team) -> None:
    reviewers = [team.add("internal_reviewer") for _ in range(3)]
    team.workflow(StepSpec(name="Everyone", order=1, role="internal_reviewer", require_all_users_in_role=True))
    post = team.post()
    instance = submit_for_approval(team.session, post_id=post.id, acting_user_id=team.owner_user_id)
    by_user = {assignment.assigned_user_id: assignment for assignment in instance.assignments}

    result = review_assignment(
        team.session,
        assignment_id=by_user[reviewers[0].user_id].id,
        acting_user_id=reviewers[0].user_id,
        approve=False,
    )

    assert result.outcome == ReviewOutcome.REJECTED
    statuses = sorted(assignment.status for assignment in instance.assignments)
    assert statuses == ["cancelled", "cancelled", "rejected"]

    with pytest.raises(ConflictError) as exc_info:
        review_assignment(
            team.session,
            assignment_id=by_user[reviewers[1].user_id].id,
            acting_user_id=reviewers[1].user_id,
            approve=True,
        )
    assert exc_info.value.code == "assignment_already_resolved"


def test_fan_out_without_holders_fails_and_persists_nothing(team) -> None:
    team.workflow(StepSpec(name="Analysts", order=1, role="analyst", require_all_users_in_role=True))
    post = team.post()

    with pytest.raises(ValidationError) as exc_info:
        submit_for_approval(team.session, post_id=post.id, acting_user_id=team.owner_user_id)

    assert exc_info.value.code == "no_reviewers_for_step"
    assert team.session.scalars(select(ApprovalInstance)).all() == []


def test_specific_assignee_step(team) -> None:
    reviewer = team.add("supervisor")
    other = team.add("supervisor")
    team.workflow(StepSpec(name="Named", order=1, role="supervisor", assigned_user_id=reviewer.user_id))
    post = team.post()
    instance = submit_for_approval(team.session, post_id=post.id, acting_user_id=team.owner_user_id)
    assignment = instance.assignments[0]
    assert assignment.assigned_user_id == reviewer.user_id

    with pytest.raises(ForbiddenError) as exc_info:
        review_assignment(team.session, assignment_id=assignment.id, acting_user_id=other.user_id, approve=True)
    assert exc_info.value.code == "review_forbidden"

    result = review_assignment(team.session, assignment_id=assignment.id, acting_user_id=reviewer.user_id, approve=True)
    assert result.outcome == ReviewOutcome.APPROVED


def test_second_submission_while_active_is_refused(team) -> None:
    team.workflow(StepSpec(name="Internal", order=1, role="manager"))
    post = team.post()
    submit_for_approval(team.session, post_id=post.id, acting_user_id=team.owner_user_id)

    with pytest.raises(AlreadyInApproval) as exc_info:
        submit_for_approval(team.session, post_id=post.id, acting_user_id=team.owner_user_id)
    assert exc_info.value.code == "already_in_approval"


def test_published_posts_cannot_be_submitted(team) -> None:
    team.workflow(StepSpec(name="Internal", order=1, role="manager"))
    post = team.post()
    post.status = "published"
    team.session.commit()

    with pytest.raises(ConflictError) as exc_info:
        submit_for_approval(team.session, post_id=post.id, acting_user_id=team.owner_user_id)
    assert exc_info.value.code == "post_not_submittable"


def test_review_requires_step_role_and_membership(team) -> None:
    team.workflow(StepSpec(name="Client", order=1, role="client_reviewer"))
    creator = team.add("content_creator")
    post = team.post()
    instance = submit_for_approval(team.session, post_id=post.id, acting_user_id=team.owner_user_id)
    assignment = instance.assignments[0]

    with pytest.raises(ForbiddenError) as exc_info:
        review_assignment(team.session, assignment_id=assignment.id, acting_user_id=creator.user_id, approve=True)
    assert exc_info.value.code == "review_forbidden"
    assert exc_info.value.details["required_role"] == "client_reviewer"

    outsider = build_team(team.session, name="globex", owner_email="owner@globex.io")
    with pytest.raises(ForbiddenError) as exc_info:
        review_assignment(
            team.session,
            assignment_id=assignment.id,
            acting_user_id=outsider.owner_user_id,
            approve=True,
        )
    assert exc_info.value.code == "review_forbidden"
    assert assignment.status == "pending"
    assert assignment.assigned_user_id is None


def test_resubmit_restarts_at_rejecting_step_in_new_round(team) -> None:
    manager = team.add("manager")
    client = team.add("client_reviewer")
    team.workflow(
        StepSpec(name="Internal", order=1, role="manager"),
        StepSpec(name="Client", order=2, role="client_reviewer"),
    )
    post = team.post()
    instance = submit_for_approval(team.session, post_id=post.id, acting_user_id=team.owner_user_id)
    review_assignment(team.session, assignment_id=_pending(instance)[0].id, acting_user_id=manager.user_id, approve=True)
    review_assignment(team.session, assignment_id=_pending(instance)[0].id, acting_user_id=client.user_id, approve=False)

    reopened = resubmit_post(team.session, post_id=post.id, acting_user_id=team.owner_user_id)

    assert reopened.id == instance.id
    assert reopened.status == "in_progress"
    assert reopened.review_round == 2
    assert reopened.current_step_order == 2
    assert reopened.active_post_id == post.id
    pending = _pending(reopened)
    assert [(assignment.step_order, assignment.review_round) for assignment in pending] == [(2, 2)]

    with pytest.raises(AlreadyInApproval):
        resubmit_post(team.session, post_id=post.id, acting_user_id=team.owner_user_id)

    result = review_assignment(team.session, assignment_id=pending[0].id, acting_user_id=client.user_id, approve=True)
    assert result.outcome == ReviewOutcome.APPROVED
    assert post.status == "scheduled"


def test_resubmit_requires_a_rejection(team) -> None:
    post = team.post()
    with pytest.raises(ConflictError) as exc_info:
        resubmit_post(team.session, post_id=post.id, acting_user_id=team.owner_user_id)
    assert exc_info.value.code == "not_rejected"


def test_workflow_steps_are_frozen_while_in_use(team) -> None:
    manager = team.add("manager")
    workflow = team.workflow(StepSpec(name="Internal", order=1, role="manager"))
    post = team.post()
    instance = submit_for_approval(team.session, post_id=post.id, acting_user_id=team.owner_user_id)
    replacement = [StepSpec(name="Supervisor", order=1, role="supervisor")]

    with pytest.raises(ConflictError) as exc_info:
        update_workflow(
            team.session,
            team_id=team.team_id,
            acting_user_id=team.owner_user_id,
            workflow_id=workflow.id,
            steps=replacement,
        )
    assert exc_info.value.code == "workflow_in_use"

    assignment = instance.assignments[0]
    review_assignment(team.session, assignment_id=assignment.id, acting_user_id=manager.user_id, approve=False)

    updated = update_workflow(
        team.session,
        team_id=team.team_id,
        acting_user_id=team.owner_user_id,
        workflow_id=workflow.id,
        steps=replacement,
    )
    assert [step.role for step in updated.steps] == ["supervisor"]
    team.session.expire_all()
    refreshed = team.session.get(ApprovalAssignment, assignment.id)
    assert refreshed.step_id is None
    assert refreshed.step_role == "manager"


def test_submission_racing_a_committed_instance_is_refused(team, session_factory) -> None:
    team.workflow(StepSpec(name="Internal", order=1, role="manager"))
    post = team.post()
    competing: list[str] = []

    def submit_elsewhere_after_active_check(state):
        frozen = state.invoke_statement().freeze()
        if not competing and "approval_instances.active_post_id" in str(state.statement):
            other = session_factory()
            try:
                instance = submit_for_approval(other, post_id=post.id, acting_user_id=team.owner_user_id)
                competing.append(instance.id)
            finally:
                other.close()
        return frozen()

    event.listen(team.session, "do_orm_execute", submit_elsewhere_after_active_check)
    try:
        with pytest.raises(AlreadyInApproval) as exc_info:
            submit_for_approval(team.session, post_id=post.id, acting_user_id=team.owner_user_id)
    finally:
        event.remove(team.session, "do_orm_execute", submit_elsewhere_after_active_check)

    assert exc_info.value.code == "already_in_approval"
    fresh = session_factory()
    try:
        instances = fresh.scalars(select(ApprovalInstance).where(ApprovalInstance.post_id == post.id)).all()
    finally:
        fresh.close()
    assert [instance.id for instance in instances] == competing


def test_verdict_from_a_stale_session_is_refused(team, session_factory) -> None:
    reviewers = [team.add("internal_reviewer") for _ in range(2)]
    team.workflow(StepSpec(name="Everyone", order=1, role="internal_reviewer", require_all_users_in_role=True))
    post = team.post()
    instance = submit_for_approval(team.session, post_id=post.id, acting_user_id=team.owner_user_id)
    target = next(a for a in instance.assignments if a.assigned_user_id == reviewers[0].user_id)

    other = session_factory()
    try:
        stale = other.get(ApprovalAssignment, target.id)
        assert stale.status == "pending"

        result = review_assignment(
            team.session,
            assignment_id=target.id,
            acting_user_id=reviewers[0].user_id,
            approve=True,
        )
        assert result.outcome == ReviewOutcome.WAITING_FOR_OTHERS

        with pytest.raises(ConflictError) as exc_info:
            review_assignment(
                other,
                assignment_id=target.id,
                acting_user_id=reviewers[0].user_id,
                approve=False,
                feedback="Second thoughts",
            )
        assert exc_info.value.code == "assignment_already_resolved"
    finally:
        other.close()

    team.session.refresh(target)
    assert target.status == "approved"
    assert target.feedback is None
    assert instance.status == "in_progress"


def test_locking_an_unknown_instance_is_not_found(team) -> None:
    with pytest.raises(NotFoundError) as exc_info:
        lock_instance(team.session, "missing-instance")

    assert exc_info.value.code == "instance_not_found"
    team.session.rollback()
