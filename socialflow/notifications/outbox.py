"""Transactional outbox writers.

Rows are added to the caller's session and committed together with the state
change that produced them; delivery happens later in the dispatcher.
"""

from __future__ import annotations

import json
from typing import Any, Dict, Iterable, Optional

from sqlalchemy.orm import Session

from socialflow.storage.models import (
    ApprovalAssignment,
    ApprovalInstance,
    Invitation,
    Membership,
    NotificationOutbox,
    Post,
)


OUTBOX_STATUS_PENDING = "pending"
OUTBOX_STATUS_SENT = "sent"
OUTBOX_STATUS_FAILED = "failed"

KIND_APPROVAL_REQUESTED = "approval_requested"
KIND_APPROVAL_APPROVED = "approval_approved"
KIND_APPROVAL_REJECTED = "approval_rejected"
KIND_TEAM_INVITATION = "team_invitation"


def enqueue_notification(
    session: Session,
    *,
    kind: str,
    team_id: Optional[str],
    payload: Dict[str, Any],
    recipient_user_id: Optional[str] = None,
    recipient_email: Optional[str] = None,
) -> NotificationOutbox:
    if recipient_user_id is None and recipient_email is None:
        raise ValueError("Notification needs a recipient user or email")
    row = NotificationOutbox(
        kind=kind,
        team_id=team_id,
        recipient_user_id=recipient_user_id,
        recipient_email=recipient_email,
        payload_json=json.dumps(payload, sort_keys=True),
        status=OUTBOX_STATUS_PENDING,
        attempts=0,
    )
    session.add(row)
    return row


def enqueue_approval_requested(
    session: Session,
    *,
    team_id: str,
    post: Post,
    assignments: Iterable[ApprovalAssignment],
    role_holders: Dict[str, list[Membership]],
) -> int:
    """Queue one notification per assignee, or per role holder for open assignments."""

    recipients: set[str] = set()
    for assignment in assignments:
        if assignment.assigned_user_id is not None:
            recipients.add(assignment.assigned_user_id)
        else:
            recipients.update(member.user_id for member in role_holders.get(assignment.step_role, []))

    for user_id in sorted(recipients):
        enqueue_notification(
            session,
            kind=KIND_APPROVAL_REQUESTED,
            team_id=team_id,
            recipient_user_id=user_id,
            payload={"post_id": post.id, "excerpt": post.content[:140]},
        )
    return len(recipients)


def enqueue_approval_decision(
    session: Session,
    *,
    team_id: str,
    post: Post,
    instance: ApprovalInstance,
    approved: bool,
    feedback: Optional[str] = None,
) -> NotificationOutbox:
    return enqueue_notification(
        session,
        kind=KIND_APPROVAL_APPROVED if approved else KIND_APPROVAL_REJECTED,
        team_id=team_id,
        recipient_user_id=post.author_user_id,
        payload={
            "post_id": post.id,
            "instance_id": instance.id,
            "feedback": feedback,
        },
    )


def enqueue_team_invitation(
    session: Session,
    *,
    invitation: Invitation,
    team_name: str,
    accept_url: str,
) -> NotificationOutbox:
    return enqueue_notification(
        session,
        kind=KIND_TEAM_INVITATION,
        team_id=invitation.team_id,
        recipient_email=invitation.email,
        payload={
            "invitation_id": invitation.id,
            "team_name": team_name,
            "role": invitation.role,
            "accept_url": accept_url,
        },
    )
