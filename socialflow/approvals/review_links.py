"""One-time review links for reviewers outside the team."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from socialflow.approvals.engine import ReviewResult, log_review, lock_instance, record_verdict
from socialflow.approvals.states import ApprovalStatus, AssignmentStatus
from socialflow.core.config import get_settings
from socialflow.core.errors import ConflictError, NotFoundError, ValidationError
from socialflow.core.logger import get_logger
from socialflow.permissions.catalog import TEAM_MANAGE
from socialflow.permissions.resolver import require_permission
from socialflow.storage.db import transaction
from socialflow.storage.models import ApprovalAssignment, ReviewLink
from socialflow.storage.security import generate_one_time_token, hash_token


logger = get_logger("socialflow.approvals.review_links")


@dataclass(frozen=True)
class IssuedReviewLink:
    assignment_id: str
    reviewer_email: str
    token: str
    url: str
    expires_at: datetime


@dataclass(frozen=True)
class ReviewLinkView:
    assignment_id: str
    post_id: str
    post_content: str
    step_name: str
    step_role: str
    reviewer_email: str
    expires_at: datetime


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _invalid_link() -> NotFoundError:
    return NotFoundError("Invalid or expired review link", code="invalid_review_link")


def generate_review_link(
    session: Session,
    *,
    assignment_id: str,
    acting_user_id: str,
    reviewer_email: str,
    expires_in_hours: Optional[int] = None,
) -> IssuedReviewLink:
    settings = get_settings()
    ttl_hours = expires_in_hours if expires_in_hours is not None else settings.review_link_ttl_hours
    if ttl_hours <= 0 or ttl_hours > settings.review_link_max_ttl_hours:
        raise ValidationError(
            "Review link lifetime is out of range",
            code="invalid_review_link_ttl",
            details={"max_hours": settings.review_link_max_ttl_hours},
        )

    assignment = session.get(ApprovalAssignment, assignment_id)
    if assignment is None:
        raise NotFoundError("Assignment not found", code="assignment_not_found")
    instance = assignment.instance
    require_permission(session, user_id=acting_user_id, team_id=instance.workflow.team_id, code=TEAM_MANAGE)
    if assignment.status != AssignmentStatus.PENDING.value or instance.status != ApprovalStatus.IN_PROGRESS.value:
        raise ConflictError(
            "Assignment has already been resolved",
            code="assignment_already_resolved",
            details={"assignment_id": assignment.id},
        )

    token, token_hash = generate_one_time_token()
    expires_at = datetime.now(timezone.utc) + timedelta(hours=ttl_hours)
    with transaction(session):
        session.add(
            ReviewLink(
                assignment_id=assignment.id,
                token_hash=token_hash,
                reviewer_email=reviewer_email.strip().lower(),
                created_by_user_id=acting_user_id,
                expires_at=expires_at,
            )
        )

    logger.info(
        "review_link_generated",
        team_id=instance.workflow.team_id,
        assignment_id=assignment.id,
        expires_at=expires_at.isoformat(),
    )
    return IssuedReviewLink(
        assignment_id=assignment.id,
        reviewer_email=reviewer_email.strip().lower(),
        token=token,
        url=f"{settings.app_public_base_url.rstrip('/')}/approvals?token={token}",
        expires_at=expires_at,
    )


def _usable_link(session: Session, token: str, *, lock: bool = False) -> ReviewLink:
    statement = select(ReviewLink).where(ReviewLink.token_hash == hash_token(token))
    if lock:
        statement = statement.with_for_update()
    link = session.scalar(statement)
    if link is None or link.used_at is not None:
        raise _invalid_link()
    if _as_utc(link.expires_at) <= datetime.now(timezone.utc):
        raise _invalid_link()
    return link


def verify_review_link(session: Session, *, token: str) -> ReviewLinkView:
    link = _usable_link(session, token)
    assignment = link.assignment
    post = assignment.instance.post
    return ReviewLinkView(
        assignment_id=assignment.id,
        post_id=post.id,
        post_content=post.content,
        step_name=assignment.step_name,
        step_role=assignment.step_role,
        reviewer_email=link.reviewer_email,
        expires_at=_as_utc(link.expires_at),
    )


def submit_review_link(
    session: Session,
    *,
    token: str,
    approve: bool,
    feedback: Optional[str] = None,
    reviewer_name: Optional[str] = None,
) -> ReviewResult:
    with transaction(session):
        link = _usable_link(session, token, lock=True)
        assignment = link.assignment
        instance = lock_instance(session, assignment.instance_id)
        session.refresh(assignment)
        link.used_at = datetime.now(timezone.utc)
        label = (reviewer_name or "").strip() or link.reviewer_email
        result = record_verdict(
            session,
            instance=instance,
            assignment=assignment,
            approve=approve,
            feedback=feedback,
            reviewer_label=label,
        )

    log_review(instance, result, reviewer=f"external:{link.reviewer_email}")
    return result
