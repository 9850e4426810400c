"""Team invitations: issue, list, accept, reject, cancel.

An invitation targets an email address and a built-in role. Issuing one
queues an email through the notification outbox in the same transaction; the
emailed link carries a one-time token that lets someone without an account
register straight into the team. Existing accounts accept while signed in.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from socialflow.core.config import get_settings
from socialflow.core.errors import ConflictError, ForbiddenError, NotFoundError, UnauthorizedError, ValidationError
from socialflow.core.logger import get_logger
from socialflow.notifications.outbox import enqueue_team_invitation
from socialflow.permissions.catalog import ORG_MEMBERS_INVITE
from socialflow.permissions.resolver import require_permission
from socialflow.permissions.roles import OWNER_ROLE, BuiltinRole, InvitationStatus, MemberStatus, parse_role
from socialflow.storage.db import transaction
from socialflow.storage.models import Invitation, Membership, Team, User
from socialflow.storage.security import generate_one_time_token, hash_token
from socialflow.teams.service import create_user, find_membership_id, find_user_by_email


logger = get_logger("socialflow.teams.invitations")


@dataclass(frozen=True)
class IssuedInvitation:
    invitation: Invitation
    token: str
    accept_url: str


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _normalize_email(email: str) -> str:
    return email.strip().lower()


def _is_expired(invitation: Invitation, now: datetime) -> bool:
    return _as_utc(invitation.expires_at) <= now


def _close(invitation: Invitation, status: InvitationStatus, now: datetime) -> None:
    invitation.status = status.value
    invitation.pending_email = None
    invitation.responded_at = now


def _lock_invitation(session: Session, *, invitation_id: str) -> Invitation:
    invitation = session.scalar(
        select(Invitation)
        .where(Invitation.id == invitation_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    if invitation is None:
        raise NotFoundError("Invitation not found", code="invitation_not_found")
    return invitation


def _ensure_open(invitation: Invitation, now: datetime) -> None:
    if not invitation.is_pending:
        raise ConflictError(
            "Invitation has already been processed",
            code="invitation_processed",
            details={"invitation_id": invitation.id, "status": invitation.status},
        )
    if _is_expired(invitation, now):
        raise ConflictError(
            "Invitation has expired",
            code="invitation_expired",
            details={"invitation_id": invitation.id},
        )


def _load_for_invitee(session: Session, *, invitation_id: str, user_id: str) -> tuple[Invitation, User]:
    user = session.get(User, user_id)
    if user is None or not user.is_active:
        raise UnauthorizedError("Authentication required")
    invitation = _lock_invitation(session, invitation_id=invitation_id)
    if invitation.email != _normalize_email(user.email):
        raise ForbiddenError("This invitation is addressed to someone else", code="invitation_not_for_user")
    _ensure_open(invitation, _utcnow())
    return invitation, user


def _join(session: Session, invitation: Invitation, user: User) -> Membership:
    membership = Membership(team_id=invitation.team_id, user_id=user.id, status=MemberStatus.ACTIVE.value)
    membership.assign_basis(BuiltinRole(role=parse_role(invitation.role)))
    session.add(membership)
    _close(invitation, InvitationStatus.ACCEPTED, _utcnow())
    try:
        session.flush()
    except IntegrityError as exc:
        raise ConflictError("User is already a member of this team", code="member_exists") from exc
    return membership


def invite_member(
    session: Session,
    *,
    team_id: str,
    acting_user_id: str,
    email: str,
    role: str,
) -> IssuedInvitation:
    require_permission(session, user_id=acting_user_id, team_id=team_id, code=ORG_MEMBERS_INVITE)
    try:
        parsed = parse_role(role)
    except ValueError as exc:
        raise ValidationError(str(exc), code="unknown_role") from exc
    if parsed == OWNER_ROLE:
        raise ValidationError("Owners cannot be invited", code="invalid_invitation_role")

    settings = get_settings()
    address = _normalize_email(email)
    now = _utcnow()

    with transaction(session):
        team = session.get(Team, team_id)
        if team is None:
            raise NotFoundError("Team not found", code="team_not_found")

        user = find_user_by_email(session, address)
        if user is not None and find_membership_id(session, team_id=team_id, user_id=user.id) is not None:
            raise ConflictError("User is already a member of this team", code="member_exists")

        pending = session.scalar(
            select(Invitation).where(Invitation.team_id == team_id, Invitation.pending_email == address)
        )
        if pending is not None:
            if not _is_expired(pending, now):
                raise ConflictError(
                    "Invitation already exists",
                    code="invitation_exists",
                    details={"invitation_id": pending.id},
                )
            _close(pending, InvitationStatus.EXPIRED, now)
            session.flush()

        token, token_hash = generate_one_time_token()
        invitation = Invitation(
            team_id=team_id,
            email=address,
            role=parsed.value,
            status=InvitationStatus.PENDING.value,
            pending_email=address,
            token_hash=token_hash,
            invited_by_user_id=acting_user_id,
            expires_at=now + timedelta(hours=settings.invitation_ttl_hours),
        )
        session.add(invitation)
        try:
            session.flush()
        except IntegrityError as exc:
            raise ConflictError("Invitation already exists", code="invitation_exists") from exc

        accept_url = f"{settings.app_public_base_url.rstrip('/')}/invitations/{token}"
        enqueue_team_invitation(session, invitation=invitation, team_name=team.name, accept_url=accept_url)

    logger.info(
        "invitation_created",
        team_id=team_id,
        invitation_id=invitation.id,
        role=invitation.role,
        invited_by_user_id=acting_user_id,
    )
    return IssuedInvitation(invitation=invitation, token=token, accept_url=accept_url)


def list_team_invitations(
    session: Session,
    *,
    team_id: str,
    acting_user_id: str,
    include_processed: bool = False,
) -> list[Invitation]:
    require_permission(session, user_id=acting_user_id, team_id=team_id, code=ORG_MEMBERS_INVITE)
    statement = select(Invitation).where(Invitation.team_id == team_id)
    if not include_processed:
        statement = statement.where(Invitation.status == InvitationStatus.PENDING.value)
    return list(session.scalars(statement.order_by(Invitation.created_at.desc(), Invitation.id)).all())


def list_my_invitations(session: Session, *, user_id: str) -> list[Invitation]:
    """Open invitations addressed to the user's email, across all teams."""

    user = session.get(User, user_id)
    if user is None:
        raise UnauthorizedError("Authentication required")
    now = _utcnow()
    invitations = session.scalars(
        select(Invitation)
        .where(
            Invitation.email == _normalize_email(user.email),
            Invitation.status == InvitationStatus.PENDING.value,
        )
        .order_by(Invitation.created_at.desc(), Invitation.id)
    ).all()
    return [invitation for invitation in invitations if not _is_expired(invitation, now)]


def accept_invitation(session: Session, *, invitation_id: str, user_id: str) -> Membership:
    with transaction(session):
        invitation, user = _load_for_invitee(session, invitation_id=invitation_id, user_id=user_id)
        existing_id = find_membership_id(session, team_id=invitation.team_id, user_id=user.id)
        if existing_id is not None:
            # Joined some other way meanwhile; the invitation is simply used up.
            _close(invitation, InvitationStatus.ACCEPTED, _utcnow())
            membership = session.get(Membership, existing_id)
        else:
            membership = _join(session, invitation, user)

    logger.info(
        "invitation_accepted",
        team_id=invitation.team_id,
        invitation_id=invitation.id,
        user_id=user.id,
        membership_id=membership.id,
    )
    return membership


def reject_invitation(session: Session, *, invitation_id: str, user_id: str) -> Invitation:
    with transaction(session):
        invitation, user = _load_for_invitee(session, invitation_id=invitation_id, user_id=user_id)
        _close(invitation, InvitationStatus.REJECTED, _utcnow())

    logger.info("invitation_rejected", team_id=invitation.team_id, invitation_id=invitation.id, user_id=user.id)
    return invitation


def cancel_invitation(session: Session, *, team_id: str, acting_user_id: str, invitation_id: str) -> Invitation:
    require_permission(session, user_id=acting_user_id, team_id=team_id, code=ORG_MEMBERS_INVITE)
    with transaction(session):
        invitation = _lock_invitation(session, invitation_id=invitation_id)
        if invitation.team_id != team_id:
            raise NotFoundError("Invitation not found", code="invitation_not_found")
        if not invitation.is_pending:
            raise ConflictError(
                "Invitation has already been processed",
                code="invitation_processed",
                details={"invitation_id": invitation.id, "status": invitation.status},
            )
        _close(invitation, InvitationStatus.CANCELLED, _utcnow())

    logger.info("invitation_cancelled", team_id=team_id, invitation_id=invitation.id, acting_user_id=acting_user_id)
    return invitation


def register_with_invitation(
    session: Session,
    *,
    token: str,
    password: str,
    name: Optional[str] = None,
) -> tuple[Invitation, Membership]:
    """Create the invitee's account from an emailed token and join the team."""

    with transaction(session):
        invitation_id = session.scalar(select(Invitation.id).where(Invitation.token_hash == hash_token(token)))
        if invitation_id is None:
            raise NotFoundError("Invalid or expired invitation", code="invalid_invitation")
        invitation = _lock_invitation(session, invitation_id=invitation_id)
        if not invitation.is_pending or _is_expired(invitation, _utcnow()):
            raise NotFoundError("Invalid or expired invitation", code="invalid_invitation")
        if find_user_by_email(session, invitation.email) is not None:
            raise ConflictError(
                "An account already exists for this email; sign in to accept the invitation",
                code="account_exists",
            )
        user = create_user(session, email=invitation.email, password=password, name=name)
        membership = _join(session, invitation, user)

    logger.info(
        "invitation_registered",
        team_id=invitation.team_id,
        invitation_id=invitation.id,
        user_id=user.id,
        membership_id=membership.id,
    )
    return invitation, membership
