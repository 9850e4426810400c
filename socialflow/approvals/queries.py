"""Read-only approval queries scoped to the caller's team."""

from __future__ import annotations

from typing import Optional

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session

from socialflow.approvals.states import ApprovalStatus, AssignmentStatus
from socialflow.core.errors import ForbiddenError, NotFoundError, ValidationError
from socialflow.permissions.resolver import get_membership, require_active_membership
from socialflow.storage.models import ApprovalAssignment, ApprovalInstance, ApprovalWorkflow, Post


def _parse_status(enum_type, value: Optional[str]):
    if value is None:
        return None
    try:
        return enum_type(str(value).strip().lower())
    except ValueError as exc:
        raise ValidationError(f"Unknown status filter: {value}", code="invalid_status_filter") from exc


def get_assigned_requests(
    session: Session,
    *,
    team_id: str,
    acting_user_id: str,
    status: Optional[str] = None,
) -> list[ApprovalAssignment]:
    """Assignments the caller may act on.

    Covers assignments addressed to the caller and open assignments of steps
    whose role the caller holds.
    """

    membership = require_active_membership(session, user_id=acting_user_id, team_id=team_id)
    parsed = _parse_status(AssignmentStatus, status)

    reachable = ApprovalAssignment.assigned_user_id == acting_user_id
    if membership.role is not None:
        reachable = or_(
            reachable,
            and_(ApprovalAssignment.assigned_user_id.is_(None), ApprovalAssignment.step_role == membership.role),
        )

    statement = (
        select(ApprovalAssignment)
        .join(ApprovalInstance, ApprovalInstance.id == ApprovalAssignment.instance_id)
        .join(ApprovalWorkflow, ApprovalWorkflow.id == ApprovalInstance.workflow_id)
        .where(ApprovalWorkflow.team_id == team_id, reachable)
        .order_by(ApprovalAssignment.created_at.desc(), ApprovalAssignment.id)
    )
    if parsed is not None:
        statement = statement.where(ApprovalAssignment.status == parsed.value)
    return list(session.scalars(statement).all())


def get_my_requests(
    session: Session,
    *,
    team_id: str,
    acting_user_id: str,
    status: Optional[str] = None,
) -> list[ApprovalInstance]:
    require_active_membership(session, user_id=acting_user_id, team_id=team_id)
    parsed = _parse_status(ApprovalStatus, status)

    statement = (
        select(ApprovalInstance)
        .join(Post, Post.id == ApprovalInstance.post_id)
        .where(Post.team_id == team_id, Post.author_user_id == acting_user_id)
        .order_by(ApprovalInstance.created_at.desc(), ApprovalInstance.id)
    )
    if parsed is not None:
        statement = statement.where(ApprovalInstance.status == parsed.value)
    return list(session.scalars(statement).all())


def get_assignment(session: Session, *, assignment_id: str, acting_user_id: str) -> ApprovalAssignment:
    assignment = session.get(ApprovalAssignment, assignment_id)
    if assignment is None:
        raise NotFoundError("Assignment not found", code="assignment_not_found")

    team_id = assignment.instance.workflow.team_id
    membership = get_membership(session, user_id=acting_user_id, team_id=team_id)
    allowed = membership is not None and membership.is_active and (
        assignment.assigned_user_id == acting_user_id
        or (assignment.assigned_user_id is None and membership.holds_role(assignment.step_role))
    )
    if not allowed:
        raise ForbiddenError("Not allowed to view this assignment", code="assignment_access_denied")
    return assignment
