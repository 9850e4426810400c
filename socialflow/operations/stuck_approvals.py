"""Report of approval assignments waiting longer than a threshold."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from socialflow.approvals.states import ApprovalStatus, AssignmentStatus
from socialflow.core.config import get_settings
from socialflow.core.logger import get_logger
from socialflow.storage.models import ApprovalAssignment, ApprovalInstance, ApprovalWorkflow


logger = get_logger("socialflow.operations.stuck_approvals")


@dataclass(frozen=True)
class StuckAssignment:
    assignment_id: str
    instance_id: str
    post_id: str
    team_id: str
    step_order: int
    step_role: str
    assigned_user_id: Optional[str]
    waiting_hours: float


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def find_stuck_assignments(
    session: Session,
    *,
    team_id: Optional[str] = None,
    older_than_hours: Optional[int] = None,
    now: Optional[datetime] = None,
) -> list[StuckAssignment]:
    """List pending assignments of in-progress instances older than the threshold.

    Read-only: the report never changes any approval state.
    """

    threshold_hours = older_than_hours or get_settings().stuck_approval_threshold_hours
    reference = now or datetime.now(timezone.utc)
    cutoff = reference - timedelta(hours=threshold_hours)

    statement = (
        select(ApprovalAssignment, ApprovalInstance, ApprovalWorkflow.team_id)
        .join(ApprovalInstance, ApprovalInstance.id == ApprovalAssignment.instance_id)
        .join(ApprovalWorkflow, ApprovalWorkflow.id == ApprovalInstance.workflow_id)
        .where(
            ApprovalAssignment.status == AssignmentStatus.PENDING.value,
            ApprovalInstance.status == ApprovalStatus.IN_PROGRESS.value,
            ApprovalAssignment.created_at < cutoff,
        )
        .order_by(ApprovalAssignment.created_at, ApprovalAssignment.id)
    )
    if team_id is not None:
        statement = statement.where(ApprovalWorkflow.team_id == team_id)

    report = [
        StuckAssignment(
            assignment_id=assignment.id,
            instance_id=instance.id,
            post_id=instance.post_id,
            team_id=row_team_id,
            step_order=assignment.step_order,
            step_role=assignment.step_role,
            assigned_user_id=assignment.assigned_user_id,
            waiting_hours=round((reference - _as_utc(assignment.created_at)).total_seconds() / 3600, 2),
        )
        for assignment, instance, row_team_id in session.execute(statement).all()
    ]
    logger.info("stuck_approvals_scanned", team_id=team_id, threshold_hours=threshold_hours, found=len(report))
    return report
