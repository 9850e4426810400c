"""Effective permission resolution for a (user, team) pair."""

from __future__ import annotations

from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from socialflow.core.errors import ForbiddenError, NotAMember
from socialflow.permissions.catalog import list_catalog_codes
from socialflow.permissions.role_defaults import get_role_default_codes
from socialflow.permissions.roles import BuiltinRole, CustomRoleBasis, OWNER_ROLE
from socialflow.storage.models import (
    CustomRolePermission,
    Membership,
    MembershipDeny,
    MembershipGrant,
    Permission,
)


def get_membership(session: Session, *, user_id: str, team_id: str) -> Optional[Membership]:
    return session.scalar(
        select(Membership).where(Membership.user_id == user_id, Membership.team_id == team_id)
    )


def require_membership(session: Session, *, user_id: str, team_id: str) -> Membership:
    membership = get_membership(session, user_id=user_id, team_id=team_id)
    if membership is None:
        raise NotAMember(user_id=user_id, team_id=team_id)
    return membership


def require_active_membership(session: Session, *, user_id: str, team_id: str) -> Membership:
    """Membership gate for team-scoped reads; any failure is a forbidden outcome."""

    membership = get_membership(session, user_id=user_id, team_id=team_id)
    if membership is None or not membership.is_active:
        raise ForbiddenError(
            "Not allowed to access this team",
            code="team_access_denied",
            details={"team_id": team_id},
        )
    return membership


def _override_codes(session: Session, model, membership_id: str) -> set[str]:
    return set(
        session.scalars(
            select(Permission.code)
            .join(model, model.permission_id == Permission.id)
            .where(model.membership_id == membership_id)
        ).all()
    )


def resolve_membership_permissions(session: Session, membership: Membership) -> frozenset[str]:
    if not membership.is_active:
        return frozenset()

    basis = membership.basis
    if isinstance(basis, BuiltinRole) and basis.role == OWNER_ROLE:
        return list_catalog_codes(session)

    if isinstance(basis, CustomRoleBasis):
        base = set(
            session.scalars(
                select(Permission.code)
                .join(CustomRolePermission, CustomRolePermission.permission_id == Permission.id)
                .where(CustomRolePermission.custom_role_id == basis.custom_role_id)
            ).all()
        )
    else:
        base = set(get_role_default_codes(session, basis.role))

    # Deny is applied last so it removes role defaults and grants alike.
    effective = base | _override_codes(session, MembershipGrant, membership.id)
    effective -= _override_codes(session, MembershipDeny, membership.id)
    return frozenset(effective)


def resolve_effective_permissions(session: Session, user_id: str, team_id: str) -> frozenset[str]:
    membership = require_membership(session, user_id=user_id, team_id=team_id)
    return resolve_membership_permissions(session, membership)


def can(session: Session, user_id: str, team_id: str, code: str) -> bool:
    membership = get_membership(session, user_id=user_id, team_id=team_id)
    if membership is None:
        return False
    return code in resolve_membership_permissions(session, membership)


def require_permission(session: Session, *, user_id: str, team_id: str, code: str) -> Membership:
    """Return the caller's membership or raise naming the missing permission."""

    membership = require_membership(session, user_id=user_id, team_id=team_id)
    if code not in resolve_membership_permissions(session, membership):
        raise ForbiddenError(
            f"Missing permission {code}",
            code="permission_denied",
            details={"permission": code, "team_id": team_id},
        )
    return membership


def require_any_permission(session: Session, *, user_id: str, team_id: str, codes: tuple[str, ...]) -> Membership:
    membership = require_membership(session, user_id=user_id, team_id=team_id)
    effective = resolve_membership_permissions(session, membership)
    if not effective.intersection(codes):
        raise ForbiddenError(
            f"Missing one of permissions {', '.join(codes)}",
            code="permission_denied",
            details={"permissions": list(codes), "team_id": team_id},
        )
    return membership
