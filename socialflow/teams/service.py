"""Team and membership application services."""

from __future__ import annotations

from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from socialflow.core.errors import ConflictError, ForbiddenError, NotFoundError, UnauthorizedError, ValidationError
from socialflow.core.logger import get_logger
from socialflow.permissions.catalog import ORG_MEMBERS_INVITE, TEAM_MANAGE
from socialflow.permissions.resolver import require_active_membership, require_permission
from socialflow.permissions.roles import (
    OWNER_ROLE,
    AuthorizationBasis,
    BuiltinRole,
    CustomRoleBasis,
    MemberStatus,
    Role,
    parse_role,
)
from socialflow.storage.db import transaction
from socialflow.storage.models import CustomRole, Membership, Team, User
from socialflow.storage.security import hash_password, verify_password


logger = get_logger("socialflow.teams")


def membership_role_label(membership: Membership) -> str:
    if membership.custom_role_id is not None:
        return f"custom:{membership.custom_role_id}"
    return str(membership.role)


def find_user_by_email(session: Session, email: str) -> Optional[User]:
    return session.scalar(select(User).where(func.lower(User.email) == email.strip().lower()))


def create_user(session: Session, *, email: str, password: Optional[str], name: Optional[str]) -> User:
    if not password:
        raise ValidationError("A password is required to create a new user", code="password_required")
    user = User(email=email, name=name, password_hash=hash_password(password))
    session.add(user)
    session.flush()
    return user


def find_membership_id(session: Session, *, team_id: str, user_id: str) -> Optional[str]:
    return session.scalar(select(Membership.id).where(Membership.team_id == team_id, Membership.user_id == user_id))


def create_team_with_owner(
    session: Session,
    *,
    team_name: str,
    owner_email: str,
    owner_password: str,
    owner_name: Optional[str] = None,
) -> tuple[Team, User, Membership]:
    with transaction(session):
        existing_team = session.scalar(select(Team).where(Team.name == team_name))
        if existing_team is not None:
            raise ConflictError("Team name already exists", code="team_exists", details={"name": team_name})

        # An existing account may found another team, but only by proving it owns the login.
        user = find_user_by_email(session, owner_email)
        if user is None:
            user = create_user(session, email=owner_email, password=owner_password, name=owner_name)
        elif not verify_password(owner_password, user.password_hash):
            raise UnauthorizedError("Invalid credentials", code="invalid_credentials")
        team = Team(name=team_name)
        session.add(team)
        session.flush()

        membership = Membership(team_id=team.id, user_id=user.id, status=MemberStatus.ACTIVE.value)
        membership.assign_basis(BuiltinRole(role=OWNER_ROLE))
        session.add(membership)

    logger.info("team_created", team_id=team.id, owner_user_id=user.id)
    return team, user, membership


def add_member(
    session: Session,
    *,
    team_id: str,
    acting_user_id: str,
    email: str,
    password: Optional[str] = None,
    name: Optional[str] = None,
    role: Optional[str] = None,
    custom_role_id: Optional[str] = None,
) -> tuple[User, Membership]:
    """Add ``email`` to the team, creating the account when none exists.

    An existing account is attached as-is; ``password`` and ``name`` only
    apply to a newly created user and are never checked against an existing
    one.
    """

    acting = require_permission(session, user_id=acting_user_id, team_id=team_id, code=ORG_MEMBERS_INVITE)

    if (role is None) == (custom_role_id is None):
        raise ValidationError("Provide exactly one of role or custom_role_id", code="invalid_member_role")

    basis: AuthorizationBasis
    if custom_role_id is not None:
        custom_role = session.get(CustomRole, custom_role_id)
        if custom_role is None or custom_role.team_id != team_id:
            raise NotFoundError("Custom role not found", code="custom_role_not_found")
        basis = CustomRoleBasis(custom_role_id=custom_role.id)
    else:
        try:
            parsed = parse_role(role)
        except ValueError as exc:
            raise ValidationError(str(exc), code="unknown_role") from exc
        if parsed == OWNER_ROLE and not acting.holds_role(OWNER_ROLE):
            raise ForbiddenError("Only an owner can add another owner", code="owner_required")
        basis = BuiltinRole(role=parsed)

    with transaction(session):
        user = find_user_by_email(session, email)
        if user is None:
            user = create_user(session, email=email, password=password, name=name)
        elif find_membership_id(session, team_id=team_id, user_id=user.id) is not None:
            raise ConflictError("User is already a member of this team", code="member_exists")

        membership = Membership(team_id=team_id, user_id=user.id, status=MemberStatus.ACTIVE.value)
        membership.assign_basis(basis)
        session.add(membership)

    logger.info(
        "team_member_added",
        team_id=team_id,
        user_id=user.id,
        role=membership_role_label(membership),
    )
    return user, membership


def set_member_status(
    session: Session,
    *,
    team_id: str,
    acting_user_id: str,
    membership_id: str,
    status: str,
) -> Membership:
    require_permission(session, user_id=acting_user_id, team_id=team_id, code=TEAM_MANAGE)
    try:
        target_status = MemberStatus(status)
    except ValueError as exc:
        raise ValidationError(f"Unknown member status: {status}", code="invalid_member_status") from exc

    with transaction(session):
        membership = session.get(Membership, membership_id)
        if membership is None or membership.team_id != team_id:
            raise NotFoundError("Membership not found in this team", code="membership_not_found")
        if membership.holds_role(OWNER_ROLE) and target_status != MemberStatus.ACTIVE:
            raise ConflictError("Owners cannot be deactivated", code="owner_status_locked")
        membership.status = target_status.value

    logger.info("team_member_status_changed", team_id=team_id, membership_id=membership_id, status=target_status.value)
    return membership


def list_members(session: Session, *, team_id: str, acting_user_id: str) -> list[Membership]:
    require_active_membership(session, user_id=acting_user_id, team_id=team_id)
    return list(
        session.scalars(
            select(Membership).where(Membership.team_id == team_id).order_by(Membership.created_at, Membership.id)
        ).all()
    )


def authenticate_team_user(
    session: Session,
    *,
    email: str,
    password: str,
    team_id: str,
) -> tuple[User, Membership]:
    user = session.scalar(select(User).where(User.email == email, User.is_active.is_(True)))
    if user is None or not verify_password(password, user.password_hash):
        raise UnauthorizedError("Invalid credentials", code="invalid_credentials")

    membership = session.scalar(
        select(Membership).where(Membership.user_id == user.id, Membership.team_id == team_id)
    )
    if membership is None or not membership.is_active:
        raise ForbiddenError("User is not an active member of this team", code="team_access_denied")

    return user, membership


def get_team_for_member(session: Session, *, team_id: str, user_id: str) -> tuple[Team, Membership]:
    team = session.get(Team, team_id)
    if team is None:
        raise NotFoundError("Team not found", code="team_not_found")
    membership = require_active_membership(session, user_id=user_id, team_id=team_id)
    return team, membership


def active_role_holders(session: Session, *, team_id: str, role: str | Role) -> list[Membership]:
    """Active memberships whose built-in role is ``role``, oldest first."""

    return list(
        session.scalars(
            select(Membership)
            .where(
                Membership.team_id == team_id,
                Membership.role == Role(role).value,
                Membership.status == MemberStatus.ACTIVE.value,
            )
            .order_by(Membership.created_at, Membership.id)
        ).all()
    )
