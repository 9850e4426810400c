"""Approval workflow engine.

``ApprovalStateMachine`` owns every status change of an instance. Submit,
review (member or review link) and resubmit all go through it, and every
public operation here runs in a single transaction with the instance row
locked.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from socialflow.approvals.states import (
    ApprovalEvent,
    ApprovalStatus,
    AssignmentStatus,
    IllegalTransition,
    ReviewOutcome,
    StepProgress,
    is_terminal,
    next_status,
    next_step_order,
    step_progress,
)
from socialflow.core.errors import (
    AlreadyInApproval,
    ConflictError,
    EmptyWorkflow,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from socialflow.core.logger import get_logger
from socialflow.core.metrics import record_approval_transition
from socialflow.notifications.outbox import enqueue_approval_decision, enqueue_approval_requested
from socialflow.permissions.resolver import get_membership, require_active_membership
from socialflow.posts.states import (
    POST_STATUS_AWAITING_SCHEDULE,
    POST_STATUS_DRAFT,
    POST_STATUS_SCHEDULABLE,
    SUBMITTABLE_POST_STATUSES,
)
from socialflow.storage.db import transaction
from socialflow.storage.models import (
    ApprovalAssignment,
    ApprovalInstance,
    ApprovalStep,
    ApprovalWorkflow,
    Membership,
    Post,
)
from socialflow.teams.service import active_role_holders


logger = get_logger("socialflow.approvals.engine")


@dataclass(frozen=True)
class ReviewResult:
    outcome: ReviewOutcome
    assignment_id: str
    instance_id: str
    instance_status: str
    current_step_order: Optional[int]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ApprovalStateMachine:
    """Transitions for one instance. Mutates ORM state but never commits."""

    def __init__(self, session: Session, instance: ApprovalInstance) -> None:
        self.session = session
        self.instance = instance
        self.workflow: ApprovalWorkflow = instance.workflow
        self.post: Post = instance.post

    @property
    def team_id(self) -> str:
        return self.workflow.team_id

    @property
    def steps(self) -> list[ApprovalStep]:
        return sorted(self.workflow.steps, key=lambda step: step.order)

    def _step_at(self, order: int) -> ApprovalStep:
        for step in self.steps:
            if step.order == order:
                return step
        raise ConflictError(
            "Current step no longer exists in the workflow",
            code="step_missing",
            details={"instance_id": self.instance.id, "step_order": order},
        )

    def fire(self, event: ApprovalEvent) -> ApprovalStatus:
        try:
            target = next_status(self.instance.status, event)
        except IllegalTransition as exc:
            raise ConflictError(
                str(exc),
                code="illegal_transition",
                details={"instance_id": self.instance.id, "status": exc.status.value, "event": exc.event.value},
            ) from exc

        self.instance.status = target.value
        self.instance.active_post_id = None if is_terminal(target) else self.instance.post_id
        self.instance.updated_at = _utcnow()
        return target

    def current_assignments(self) -> list[ApprovalAssignment]:
        return [
            assignment
            for assignment in self.instance.assignments
            if assignment.review_round == self.instance.review_round
            and assignment.step_order == self.instance.current_step_order
        ]

    def materialize_step(self, step: ApprovalStep) -> list[ApprovalAssignment]:
        """Create the assignments of ``step``.

        Precedence: a specific assignee, then one assignment per active role
        holder when the step requires all of them, then a single open
        assignment any role holder may claim.
        """

        holders: list[Membership] = []
        if step.assigned_user_id is not None:
            assignees: list[Optional[str]] = [step.assigned_user_id]
        elif step.require_all_users_in_role:
            holders = active_role_holders(self.session, team_id=self.team_id, role=step.role)
            if not holders:
                raise ValidationError(
                    "No active members hold the role required by this step",
                    code="no_reviewers_for_step",
                    details={"step": step.name, "role": step.role},
                )
            assignees = [member.user_id for member in holders]
        else:
            holders = active_role_holders(self.session, team_id=self.team_id, role=step.role)
            assignees = [None]

        created = []
        for user_id in assignees:
            assignment = ApprovalAssignment(
                step_id=step.id,
                step_order=step.order,
                step_name=step.name,
                step_role=step.role,
                review_round=self.instance.review_round,
                assigned_user_id=user_id,
                status=AssignmentStatus.PENDING.value,
            )
            self.instance.assignments.append(assignment)
            created.append(assignment)

        enqueue_approval_requested(
            self.session,
            team_id=self.team_id,
            post=self.post,
            assignments=created,
            role_holders={step.role: holders},
        )
        return created

    def start(self) -> list[ApprovalAssignment]:
        first = self.steps[0]
        self.fire(ApprovalEvent.SUBMIT)
        self.instance.current_step_order = first.order
        self.post.status = POST_STATUS_AWAITING_SCHEDULE
        return self.materialize_step(first)

    def advance(self, *, feedback: Optional[str] = None) -> ReviewOutcome:
        """Apply the verdicts of the current step to the instance."""

        current = self.current_assignments()
        progress = step_progress(assignment.status for assignment in current)

        if progress == StepProgress.REJECTED:
            now = _utcnow()
            for assignment in current:
                if assignment.status == AssignmentStatus.PENDING.value:
                    assignment.status = AssignmentStatus.CANCELLED.value
                    assignment.completed_at = now
            self.fire(ApprovalEvent.REJECT)
            self.post.status = POST_STATUS_DRAFT
            enqueue_approval_decision(
                self.session,
                team_id=self.team_id,
                post=self.post,
                instance=self.instance,
                approved=False,
                feedback=feedback,
            )
            return ReviewOutcome.REJECTED

        if progress == StepProgress.WAITING:
            return ReviewOutcome.WAITING_FOR_OTHERS

        following = next_step_order((step.order for step in self.steps), self.instance.current_step_order)
        if following is None:
            self.fire(ApprovalEvent.COMPLETE)
            self.instance.current_step_order = None
            self.post.status = POST_STATUS_SCHEDULABLE
            enqueue_approval_decision(
                self.session,
                team_id=self.team_id,
                post=self.post,
                instance=self.instance,
                approved=True,
            )
            return ReviewOutcome.APPROVED

        self.fire(ApprovalEvent.ADVANCE)
        self.instance.current_step_order = following
        self.materialize_step(self._step_at(following))
        return ReviewOutcome.MOVED_TO_NEXT_STEP

    def reopen(self) -> ApprovalStep:
        """Restart a rejected instance at the earliest step that rejected it."""

        steps = self.steps
        if not steps:
            raise EmptyWorkflow(self.workflow.id)

        rejected_orders = [
            assignment.step_order
            for assignment in self.instance.assignments
            if assignment.review_round == self.instance.review_round
            and assignment.status == AssignmentStatus.REJECTED.value
        ]
        target_order = min(rejected_orders) if rejected_orders else steps[0].order
        target = next((step for step in steps if step.order >= target_order), steps[0])

        self.fire(ApprovalEvent.RESUBMIT)
        self.instance.review_round += 1
        self.instance.current_step_order = target.order
        self.post.status = POST_STATUS_AWAITING_SCHEDULE
        self.materialize_step(target)
        return target


def lock_instance(session: Session, instance_id: str) -> ApprovalInstance:
    instance = session.scalar(
        select(ApprovalInstance)
        .where(ApprovalInstance.id == instance_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    if instance is None:
        raise NotFoundError("Approval instance not found", code="instance_not_found")
    return instance


def _flush_instance(session: Session, instance: ApprovalInstance) -> None:
    try:
        session.flush()
    except StaleDataError as exc:
        raise ConflictError(
            "Approval instance was changed by a concurrent review",
            code="concurrent_review",
            details={"instance_id": instance.id},
        ) from exc


def _resolve_workflow(session: Session, *, team_id: str, workflow_id: Optional[str]) -> ApprovalWorkflow:
    if workflow_id is None:
        workflow = session.scalar(
            select(ApprovalWorkflow)
            .where(ApprovalWorkflow.team_id == team_id, ApprovalWorkflow.is_active.is_(True))
            .order_by(ApprovalWorkflow.created_at, ApprovalWorkflow.id)
            .limit(1)
        )
        if workflow is None:
            raise NotFoundError("Team has no active approval workflow", code="workflow_not_found")
        return workflow

    workflow = session.get(ApprovalWorkflow, workflow_id)
    if workflow is None or workflow.team_id != team_id:
        raise NotFoundError("Workflow not found", code="workflow_not_found", details={"workflow_id": workflow_id})
    if not workflow.is_active:
        raise ValidationError("Workflow is not active", code="workflow_inactive", details={"workflow_id": workflow_id})
    return workflow


def submit_for_approval(
    session: Session,
    *,
    post_id: str,
    acting_user_id: str,
    workflow_id: Optional[str] = None,
) -> ApprovalInstance:
    with transaction(session):
        post = session.get(Post, post_id)
        if post is None:
            raise NotFoundError("Post not found", code="post_not_found", details={"post_id": post_id})
        require_active_membership(session, user_id=acting_user_id, team_id=post.team_id)

        workflow = _resolve_workflow(session, team_id=post.team_id, workflow_id=workflow_id)
        if not workflow.steps:
            raise EmptyWorkflow(workflow.id)

        active = session.scalar(select(ApprovalInstance.id).where(ApprovalInstance.active_post_id == post.id))
        if active is not None:
            raise AlreadyInApproval(post.id)
        if post.status not in SUBMITTABLE_POST_STATUSES:
            raise ConflictError(
                "Post cannot be submitted in its current status",
                code="post_not_submittable",
                details={"post_id": post.id, "status": post.status},
            )

        instance = ApprovalInstance(
            post_id=post.id,
            workflow_id=workflow.id,
            post=post,
            workflow=workflow,
            status=ApprovalStatus.PENDING.value,
            review_round=1,
        )
        session.add(instance)
        ApprovalStateMachine(session, instance).start()
        try:
            session.flush()
        except IntegrityError as exc:
            raise AlreadyInApproval(post.id) from exc

    record_approval_transition(team_id=workflow.team_id, outcome="submitted")
    logger.info(
        "approval_submitted",
        team_id=workflow.team_id,
        post_id=post.id,
        instance_id=instance.id,
        workflow_id=workflow.id,
        current_step_order=instance.current_step_order,
        assignments=len(instance.assignments),
    )
    return instance


def _ensure_reviewable(assignment: ApprovalAssignment, instance: ApprovalInstance) -> None:
    if (
        assignment.status != AssignmentStatus.PENDING.value
        or instance.status != ApprovalStatus.IN_PROGRESS.value
        or assignment.review_round != instance.review_round
        or assignment.step_order != instance.current_step_order
    ):
        raise ConflictError(
            "Assignment has already been resolved",
            code="assignment_already_resolved",
            details={"assignment_id": assignment.id, "status": assignment.status},
        )


def _authorize_reviewer(assignment: ApprovalAssignment, membership: Optional[Membership], user_id: str) -> None:
    if membership is None or not membership.is_active:
        raise ForbiddenError("Not allowed to review this assignment", code="review_forbidden")
    if assignment.assigned_user_id is not None:
        if assignment.assigned_user_id != user_id:
            raise ForbiddenError("Assignment belongs to another reviewer", code="review_forbidden")
        return
    if not membership.holds_role(assignment.step_role):
        raise ForbiddenError(
            "Reviewer does not hold the role required by this step",
            code="review_forbidden",
            details={"required_role": assignment.step_role},
        )


def record_verdict(
    session: Session,
    *,
    instance: ApprovalInstance,
    assignment: ApprovalAssignment,
    approve: bool,
    feedback: Optional[str],
    reviewer_label: Optional[str] = None,
) -> ReviewResult:
    """Record one verdict and advance. Caller holds the transaction and the lock."""

    _ensure_reviewable(assignment, instance)
    assignment.status = (AssignmentStatus.APPROVED if approve else AssignmentStatus.REJECTED).value
    assignment.feedback = feedback
    assignment.completed_at = _utcnow()
    if reviewer_label is not None:
        assignment.reviewer_label = reviewer_label

    outcome = ApprovalStateMachine(session, instance).advance(feedback=feedback)
    # Every review bumps the instance version, even while waiting for siblings.
    instance.updated_at = _utcnow()
    _flush_instance(session, instance)
    return ReviewResult(
        outcome=outcome,
        assignment_id=assignment.id,
        instance_id=instance.id,
        instance_status=instance.status,
        current_step_order=instance.current_step_order,
    )


def log_review(instance: ApprovalInstance, result: ReviewResult, *, reviewer: str) -> None:
    team_id = instance.workflow.team_id
    record_approval_transition(team_id=team_id, outcome=result.outcome.value)
    logger.info(
        "assignment_reviewed",
        team_id=team_id,
        post_id=instance.post_id,
        instance_id=instance.id,
        assignment_id=result.assignment_id,
        outcome=result.outcome.value,
        current_step_order=result.current_step_order,
        reviewer=reviewer,
    )


def review_assignment(
    session: Session,
    *,
    assignment_id: str,
    acting_user_id: str,
    approve: bool,
    feedback: Optional[str] = None,
) -> ReviewResult:
    with transaction(session):
        assignment = session.get(ApprovalAssignment, assignment_id)
        if assignment is None:
            raise NotFoundError(
                "Assignment not found",
                code="assignment_not_found",
                details={"assignment_id": assignment_id},
            )
        instance = lock_instance(session, assignment.instance_id)
        # Re-read under the lock so a verdict committed since the first load is seen.
        session.refresh(assignment)
        _ensure_reviewable(assignment, instance)
        membership = get_membership(session, user_id=acting_user_id, team_id=instance.workflow.team_id)
        _authorize_reviewer(assignment, membership, acting_user_id)

        if assignment.assigned_user_id is None:
            assignment.assigned_user_id = acting_user_id

        result = record_verdict(
            session,
            instance=instance,
            assignment=assignment,
            approve=approve,
            feedback=feedback,
        )

    log_review(instance, result, reviewer=acting_user_id)
    return result


def resubmit_post(session: Session, *, post_id: str, acting_user_id: str) -> ApprovalInstance:
    with transaction(session):
        post = session.get(Post, post_id)
        if post is None:
            raise NotFoundError("Post not found", code="post_not_found", details={"post_id": post_id})
        require_active_membership(session, user_id=acting_user_id, team_id=post.team_id)

        latest_id = session.scalar(
            select(ApprovalInstance.id)
            .where(ApprovalInstance.post_id == post.id)
            .order_by(ApprovalInstance.created_at.desc(), ApprovalInstance.id.desc())
            .limit(1)
        )
        if latest_id is None:
            raise ConflictError("Post has no rejected approval", code="not_rejected", details={"post_id": post.id})
        instance = lock_instance(session, latest_id)
        if instance.status != ApprovalStatus.REJECTED.value:
            if instance.active_post_id is not None:
                raise AlreadyInApproval(post.id)
            raise ConflictError("Post has no rejected approval", code="not_rejected", details={"post_id": post.id})

        target = ApprovalStateMachine(session, instance).reopen()
        try:
            _flush_instance(session, instance)
        except IntegrityError as exc:
            raise AlreadyInApproval(post.id) from exc

    record_approval_transition(team_id=post.team_id, outcome="resubmitted")
    logger.info(
        "approval_resubmitted",
        team_id=post.team_id,
        post_id=post.id,
        instance_id=instance.id,
        current_step_order=target.order,
        review_round=instance.review_round,
    )
    return instance
