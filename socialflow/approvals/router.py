"""Approval workflow and review API routes."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from socialflow.approvals.engine import ReviewResult, resubmit_post, review_assignment, submit_for_approval
from socialflow.approvals.queries import get_assigned_requests, get_assignment, get_my_requests
from socialflow.approvals.review_links import generate_review_link, submit_review_link, verify_review_link
from socialflow.approvals.workflows import (
    StepSpec,
    create_workflow,
    get_workflow,
    list_users_by_role,
    list_workflows,
    update_workflow,
)
from socialflow.auth.dependencies import require_auth_context
from socialflow.auth.jwt import AuthContext
from socialflow.operations.stuck_approvals import find_stuck_assignments
from socialflow.permissions.catalog import TEAM_MANAGE
from socialflow.permissions.resolver import require_permission
from socialflow.schemas.approvals import (
    AssignmentResponse,
    InstanceResponse,
    ResubmitRequest,
    ReviewLinkDetailsResponse,
    ReviewLinkRequest,
    ReviewLinkResponse,
    ReviewLinkSubmitRequest,
    ReviewLinkVerifyRequest,
    ReviewRequest,
    ReviewResponse,
    RoleMemberResponse,
    StepRequest,
    StepResponse,
    StuckAssignmentResponse,
    SubmitRequest,
    WorkflowCreateRequest,
    WorkflowResponse,
    WorkflowUpdateRequest,
)
from socialflow.storage.db import get_session
from socialflow.storage.models import ApprovalAssignment, ApprovalInstance, ApprovalWorkflow
from socialflow.storage.tenant import set_team_context


workflows_router = APIRouter(prefix="/approval-workflows", tags=["approval-workflows"])
router = APIRouter(prefix="/approvals", tags=["approvals"])


def _step_specs(steps: list[StepRequest]) -> list[StepSpec]:
    return [
        StepSpec(
            name=step.name,
            order=step.order,
            role=step.role,
            assigned_user_id=step.assigned_user_id,
            require_all_users_in_role=step.require_all_users_in_role,
        )
        for step in steps
    ]


def _workflow_response(workflow: ApprovalWorkflow) -> WorkflowResponse:
    return WorkflowResponse(
        id=workflow.id,
        team_id=workflow.team_id,
        name=workflow.name,
        description=workflow.description,
        is_active=workflow.is_active,
        steps=[
            StepResponse(
                id=step.id,
                name=step.name,
                order=step.order,
                role=step.role,
                assigned_user_id=step.assigned_user_id,
                require_all_users_in_role=step.require_all_users_in_role,
            )
            for step in sorted(workflow.steps, key=lambda item: item.order)
        ],
    )


def _assignment_response(assignment: ApprovalAssignment) -> AssignmentResponse:
    return AssignmentResponse(
        id=assignment.id,
        instance_id=assignment.instance_id,
        post_id=assignment.instance.post_id,
        step_order=assignment.step_order,
        step_name=assignment.step_name,
        step_role=assignment.step_role,
        review_round=assignment.review_round,
        assigned_user_id=assignment.assigned_user_id,
        status=assignment.status,
        feedback=assignment.feedback,
        reviewer_label=assignment.reviewer_label,
        completed_at=assignment.completed_at.isoformat() if assignment.completed_at else None,
    )


def _instance_response(instance: ApprovalInstance) -> InstanceResponse:
    return InstanceResponse(
        id=instance.id,
        post_id=instance.post_id,
        workflow_id=instance.workflow_id,
        status=instance.status,
        current_step_order=instance.current_step_order,
        review_round=instance.review_round,
        assignments=[_assignment_response(assignment) for assignment in instance.assignments],
    )


def _review_response(result: ReviewResult) -> ReviewResponse:
    return ReviewResponse(
        status=result.outcome.value,
        assignment_id=result.assignment_id,
        instance_id=result.instance_id,
        instance_status=result.instance_status,
        current_step_order=result.current_step_order,
    )


@workflows_router.post("", response_model=WorkflowResponse, status_code=201)
def post_workflow(
    payload: WorkflowCreateRequest,
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> WorkflowResponse:
    set_team_context(session, auth.team_id)
    workflow = create_workflow(
        session,
        team_id=auth.team_id,
        acting_user_id=auth.user_id,
        name=payload.name,
        description=payload.description,
        steps=_step_specs(payload.steps),
    )
    return _workflow_response(workflow)


@workflows_router.get("", response_model=list[WorkflowResponse])
def get_workflows(
    active_only: bool = Query(default=False),
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> list[WorkflowResponse]:
    set_team_context(session, auth.team_id)
    workflows = list_workflows(session, team_id=auth.team_id, acting_user_id=auth.user_id, active_only=active_only)
    return [_workflow_response(workflow) for workflow in workflows]


@workflows_router.get("/roles/{role}/members", response_model=list[RoleMemberResponse])
def get_role_members(
    role: str,
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> list[RoleMemberResponse]:
    set_team_context(session, auth.team_id)
    members = list_users_by_role(session, team_id=auth.team_id, acting_user_id=auth.user_id, role=role)
    return [
        RoleMemberResponse(
            membership_id=member.id,
            user_id=member.user_id,
            email=member.user.email,
            name=member.user.display_name,
        )
        for member in members
    ]


@workflows_router.get("/{workflow_id}", response_model=WorkflowResponse)
def get_workflow_detail(
    workflow_id: str,
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> WorkflowResponse:
    set_team_context(session, auth.team_id)
    workflow = get_workflow(session, team_id=auth.team_id, acting_user_id=auth.user_id, workflow_id=workflow_id)
    return _workflow_response(workflow)


@workflows_router.patch("/{workflow_id}", response_model=WorkflowResponse)
def patch_workflow(
    workflow_id: str,
    payload: WorkflowUpdateRequest,
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> WorkflowResponse:
    set_team_context(session, auth.team_id)
    workflow = update_workflow(
        session,
        team_id=auth.team_id,
        acting_user_id=auth.user_id,
        workflow_id=workflow_id,
        name=payload.name,
        description=payload.description,
        is_active=payload.is_active,
        steps=_step_specs(payload.steps) if payload.steps is not None else None,
    )
    return _workflow_response(workflow)


@router.post("/submit", response_model=InstanceResponse, status_code=201)
def post_submit(
    payload: SubmitRequest,
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> InstanceResponse:
    set_team_context(session, auth.team_id)
    instance = submit_for_approval(
        session,
        post_id=payload.post_id,
        acting_user_id=auth.user_id,
        workflow_id=payload.workflow_id,
    )
    return _instance_response(instance)


@router.post("/resubmit", response_model=InstanceResponse)
def post_resubmit(
    payload: ResubmitRequest,
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> InstanceResponse:
    set_team_context(session, auth.team_id)
    instance = resubmit_post(session, post_id=payload.post_id, acting_user_id=auth.user_id)
    return _instance_response(instance)


@router.get("/assigned", response_model=list[AssignmentResponse])
def get_assigned(
    status: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> list[AssignmentResponse]:
    set_team_context(session, auth.team_id)
    assignments = get_assigned_requests(session, team_id=auth.team_id, acting_user_id=auth.user_id, status=status)
    return [_assignment_response(assignment) for assignment in assignments]


@router.get("/mine", response_model=list[InstanceResponse])
def get_mine(
    status: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> list[InstanceResponse]:
    set_team_context(session, auth.team_id)
    instances = get_my_requests(session, team_id=auth.team_id, acting_user_id=auth.user_id, status=status)
    return [_instance_response(instance) for instance in instances]


@router.get("/stuck", response_model=list[StuckAssignmentResponse])
def get_stuck(
    older_than_hours: Optional[int] = Query(default=None, ge=1),
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> list[StuckAssignmentResponse]:
    set_team_context(session, auth.team_id)
    require_permission(session, user_id=auth.user_id, team_id=auth.team_id, code=TEAM_MANAGE)
    stuck = find_stuck_assignments(session, team_id=auth.team_id, older_than_hours=older_than_hours)
    return [
        StuckAssignmentResponse(
            assignment_id=item.assignment_id,
            instance_id=item.instance_id,
            post_id=item.post_id,
            step_order=item.step_order,
            step_role=item.step_role,
            assigned_user_id=item.assigned_user_id,
            waiting_hours=item.waiting_hours,
        )
        for item in stuck
    ]


@router.get("/assignments/{assignment_id}", response_model=AssignmentResponse)
def get_assignment_detail(
    assignment_id: str,
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> AssignmentResponse:
    set_team_context(session, auth.team_id)
    return _assignment_response(get_assignment(session, assignment_id=assignment_id, acting_user_id=auth.user_id))


@router.post("/assignments/{assignment_id}/review", response_model=ReviewResponse)
def post_review(
    assignment_id: str,
    payload: ReviewRequest,
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> ReviewResponse:
    set_team_context(session, auth.team_id)
    result = review_assignment(
        session,
        assignment_id=assignment_id,
        acting_user_id=auth.user_id,
        approve=payload.approve,
        feedback=payload.feedback,
    )
    return _review_response(result)


@router.post("/review-links", response_model=ReviewLinkResponse, status_code=201)
def post_review_link(
    payload: ReviewLinkRequest,
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> ReviewLinkResponse:
    set_team_context(session, auth.team_id)
    issued = generate_review_link(
        session,
        assignment_id=payload.assignment_id,
        acting_user_id=auth.user_id,
        reviewer_email=payload.reviewer_email,
        expires_in_hours=payload.expires_in_hours,
    )
    return ReviewLinkResponse(
        assignment_id=issued.assignment_id,
        reviewer_email=issued.reviewer_email,
        url=issued.url,
        token=issued.token,
        expires_at=issued.expires_at.isoformat(),
    )


@router.post("/review-links/verify", response_model=ReviewLinkDetailsResponse)
def post_review_link_verify(
    payload: ReviewLinkVerifyRequest,
    session: Session = Depends(get_session),
) -> ReviewLinkDetailsResponse:
    view = verify_review_link(session, token=payload.token)
    return ReviewLinkDetailsResponse(
        assignment_id=view.assignment_id,
        post_id=view.post_id,
        post_content=view.post_content,
        step_name=view.step_name,
        step_role=view.step_role,
        reviewer_email=view.reviewer_email,
        expires_at=view.expires_at.isoformat(),
    )


@router.post("/review-links/submit", response_model=ReviewResponse)
def post_review_link_submit(
    payload: ReviewLinkSubmitRequest,
    session: Session = Depends(get_session),
) -> ReviewResponse:
    result = submit_review_link(
        session,
        token=payload.token,
        approve=payload.approve,
        feedback=payload.feedback,
        reviewer_name=payload.reviewer_name,
    )
    return _review_response(result)
