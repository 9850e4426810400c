"""Per-membership grant/deny overrides."""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from socialflow.core.errors import NotFoundError, PermissionNotFound
from socialflow.core.logger import get_logger
from socialflow.core.metrics import record_permission_override
from socialflow.permissions.catalog import PERMISSIONS_MANAGE
from socialflow.permissions.resolver import require_permission
from socialflow.storage.db import transaction
from socialflow.storage.models import Membership, MembershipDeny, MembershipGrant, Permission


logger = get_logger("socialflow.permissions.overrides")

OVERRIDE_GRANTED = "granted"
OVERRIDE_DENIED = "denied"
OVERRIDE_NONE = "none"

_EVENTS = {
    OVERRIDE_GRANTED: "permission_override_granted",
    OVERRIDE_DENIED: "permission_override_denied",
    OVERRIDE_NONE: "permission_override_revoked",
}


@dataclass(frozen=True)
class OverrideRecord:
    membership_id: str
    permission: str
    state: str


@dataclass(frozen=True)
class MemberOverrides:
    membership_id: str
    grants: tuple[str, ...]
    denies: tuple[str, ...]


def _get_permission(session: Session, code: str) -> Permission:
    permission = session.scalar(select(Permission).where(Permission.code == code))
    if permission is None:
        raise PermissionNotFound(code)
    return permission


def _get_membership(session: Session, membership_id: str) -> Membership:
    membership = session.get(Membership, membership_id)
    if membership is None:
        raise NotFoundError("Membership not found", code="membership_not_found", details={"membership_id": membership_id})
    return membership


def _delete_pair(session: Session, model, membership_id: str, permission_id: str) -> None:
    session.execute(
        delete(model).where(model.membership_id == membership_id, model.permission_id == permission_id)
    )


def _insert_if_absent(session: Session, model, membership_id: str, permission_id: str) -> bool:
    existing = session.scalar(
        select(model.id).where(model.membership_id == membership_id, model.permission_id == permission_id)
    )
    if existing is not None:
        return False
    session.add(model(membership_id=membership_id, permission_id=permission_id))
    return True


def _apply(session: Session, *, membership_id: str, code: str, state: str) -> OverrideRecord:
    with transaction(session):
        membership = _get_membership(session, membership_id)
        permission = _get_permission(session, code)
        changed = False
        if state == OVERRIDE_GRANTED:
            _delete_pair(session, MembershipDeny, membership.id, permission.id)
            changed = _insert_if_absent(session, MembershipGrant, membership.id, permission.id)
        elif state == OVERRIDE_DENIED:
            _delete_pair(session, MembershipGrant, membership.id, permission.id)
            changed = _insert_if_absent(session, MembershipDeny, membership.id, permission.id)
        else:
            _delete_pair(session, MembershipGrant, membership.id, permission.id)
            _delete_pair(session, MembershipDeny, membership.id, permission.id)

    record_permission_override(action=state)
    logger.info(
        _EVENTS[state],
        membership_id=membership_id,
        team_id=membership.team_id,
        permission=code,
        changed=changed,
    )
    return OverrideRecord(membership_id=membership_id, permission=code, state=state)


def grant_permission_to_member(session: Session, *, membership_id: str, code: str) -> OverrideRecord:
    return _apply(session, membership_id=membership_id, code=code, state=OVERRIDE_GRANTED)


def deny_permission_to_member(session: Session, *, membership_id: str, code: str) -> OverrideRecord:
    return _apply(session, membership_id=membership_id, code=code, state=OVERRIDE_DENIED)


def revoke_permission_override(session: Session, *, membership_id: str, code: str) -> OverrideRecord:
    return _apply(session, membership_id=membership_id, code=code, state=OVERRIDE_NONE)


def _authorize(session: Session, *, team_id: str, membership_id: str, acting_user_id: str) -> None:
    require_permission(session, user_id=acting_user_id, team_id=team_id, code=PERMISSIONS_MANAGE)
    target = session.get(Membership, membership_id)
    if target is None or target.team_id != team_id:
        raise NotFoundError(
            "Membership not found in this team",
            code="membership_not_found",
            details={"membership_id": membership_id, "team_id": team_id},
        )


def grant_permission(
    session: Session,
    *,
    team_id: str,
    membership_id: str,
    code: str,
    acting_user_id: str,
) -> OverrideRecord:
    _authorize(session, team_id=team_id, membership_id=membership_id, acting_user_id=acting_user_id)
    return grant_permission_to_member(session, membership_id=membership_id, code=code)


def deny_permission(
    session: Session,
    *,
    team_id: str,
    membership_id: str,
    code: str,
    acting_user_id: str,
) -> OverrideRecord:
    _authorize(session, team_id=team_id, membership_id=membership_id, acting_user_id=acting_user_id)
    return deny_permission_to_member(session, membership_id=membership_id, code=code)


def revoke_override(
    session: Session,
    *,
    team_id: str,
    membership_id: str,
    code: str,
    acting_user_id: str,
) -> OverrideRecord:
    _authorize(session, team_id=team_id, membership_id=membership_id, acting_user_id=acting_user_id)
    return revoke_permission_override(session, membership_id=membership_id, code=code)


def get_member_overrides(session: Session, membership_id: str) -> MemberOverrides:
    _get_membership(session, membership_id)
    grants = session.scalars(
        select(Permission.code)
        .join(MembershipGrant, MembershipGrant.permission_id == Permission.id)
        .where(MembershipGrant.membership_id == membership_id)
        .order_by(Permission.code)
    ).all()
    denies = session.scalars(
        select(Permission.code)
        .join(MembershipDeny, MembershipDeny.permission_id == Permission.id)
        .where(MembershipDeny.membership_id == membership_id)
        .order_by(Permission.code)
    ).all()
    return MemberOverrides(membership_id=membership_id, grants=tuple(grants), denies=tuple(denies))
