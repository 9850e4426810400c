"""Team-scoped custom roles and membership role assignment."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from socialflow.core.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from socialflow.core.logger import get_logger
from socialflow.permissions.catalog import TEAM_MANAGE, get_permissions_by_code
from socialflow.permissions.resolver import require_active_membership, require_permission
from socialflow.permissions.roles import (
    DEFAULT_FALLBACK_ROLE,
    OWNER_ROLE,
    BuiltinRole,
    CustomRoleBasis,
    Role,
    parse_role,
)
from socialflow.storage.db import transaction
from socialflow.storage.models import CustomRole, CustomRolePermission, Membership


logger = get_logger("socialflow.permissions.custom_roles")


@dataclass(frozen=True)
class CustomRoleDeletion:
    custom_role_id: str
    fallback_role: str
    reassigned: int


def _normalize_name(name: str) -> str:
    normalized = "_".join(str(name or "").strip().lower().split())
    if not normalized:
        raise ValidationError("Custom role name is required", code="invalid_role_name")
    return normalized


def _parse_builtin(role: str | Role) -> Role:
    try:
        return parse_role(role)
    except ValueError as exc:
        raise ValidationError(str(exc), code="unknown_role", details={"role": str(role)}) from exc


def _resolve_permission_links(session: Session, codes: Iterable[str]) -> list:
    wanted = sorted(set(codes))
    permissions = get_permissions_by_code(session, wanted)
    unknown = [code for code in wanted if code not in permissions]
    if unknown:
        raise ValidationError("Unknown permission codes", code="unknown_permission", details={"permissions": unknown})
    return [permissions[code] for code in wanted]


def _get_team_custom_role(session: Session, *, team_id: str, custom_role_id: str) -> CustomRole:
    custom_role = session.get(CustomRole, custom_role_id)
    if custom_role is None or custom_role.team_id != team_id:
        raise NotFoundError(
            "Custom role not found",
            code="custom_role_not_found",
            details={"custom_role_id": custom_role_id},
        )
    return custom_role


def _get_team_membership(session: Session, *, team_id: str, membership_id: str) -> Membership:
    membership = session.get(Membership, membership_id)
    if membership is None or membership.team_id != team_id:
        raise NotFoundError(
            "Membership not found in this team",
            code="membership_not_found",
            details={"membership_id": membership_id, "team_id": team_id},
        )
    return membership


def list_custom_roles(session: Session, *, team_id: str, acting_user_id: str) -> list[CustomRole]:
    require_active_membership(session, user_id=acting_user_id, team_id=team_id)
    return list(
        session.scalars(select(CustomRole).where(CustomRole.team_id == team_id).order_by(CustomRole.name)).all()
    )


def create_custom_role(
    session: Session,
    *,
    team_id: str,
    acting_user_id: str,
    name: str,
    display_name: str,
    description: Optional[str] = None,
    permission_codes: Iterable[str] = (),
) -> CustomRole:
    require_permission(session, user_id=acting_user_id, team_id=team_id, code=TEAM_MANAGE)
    normalized = _normalize_name(name)

    with transaction(session):
        duplicate = session.scalar(
            select(CustomRole.id).where(CustomRole.team_id == team_id, CustomRole.name == normalized)
        )
        if duplicate is not None:
            raise ConflictError(
                "A role with this name already exists",
                code="custom_role_exists",
                details={"name": normalized},
            )

        permissions = _resolve_permission_links(session, permission_codes)
        custom_role = CustomRole(
            team_id=team_id,
            name=normalized,
            display_name=display_name.strip() or normalized,
            description=description,
        )
        custom_role.permissions = [CustomRolePermission(permission=permission) for permission in permissions]
        session.add(custom_role)

    logger.info(
        "custom_role_created",
        team_id=team_id,
        custom_role_id=custom_role.id,
        permissions=custom_role.permission_codes,
    )
    return custom_role


def update_custom_role(
    session: Session,
    *,
    team_id: str,
    acting_user_id: str,
    custom_role_id: str,
    display_name: Optional[str] = None,
    description: Optional[str] = None,
    permission_codes: Optional[Iterable[str]] = None,
) -> CustomRole:
    require_permission(session, user_id=acting_user_id, team_id=team_id, code=TEAM_MANAGE)

    with transaction(session):
        custom_role = _get_team_custom_role(session, team_id=team_id, custom_role_id=custom_role_id)
        if display_name is not None:
            custom_role.display_name = display_name.strip() or custom_role.name
        if description is not None:
            custom_role.description = description
        if permission_codes is not None:
            permissions = _resolve_permission_links(session, permission_codes)
            custom_role.permissions.clear()
            session.flush()
            custom_role.permissions.extend(CustomRolePermission(permission=permission) for permission in permissions)
        custom_role.updated_at = datetime.now(timezone.utc)

    logger.info("custom_role_updated", team_id=team_id, custom_role_id=custom_role_id)
    return custom_role


def delete_custom_role(
    session: Session,
    *,
    team_id: str,
    acting_user_id: str,
    custom_role_id: str,
    fallback_role: str | Role = DEFAULT_FALLBACK_ROLE,
) -> CustomRoleDeletion:
    """Delete a custom role, moving its members to ``fallback_role``.

    Reassignment and deletion share one transaction, so no membership is
    ever left pointing at a missing role.
    """

    require_permission(session, user_id=acting_user_id, team_id=team_id, code=TEAM_MANAGE)
    fallback = _parse_builtin(fallback_role)
    if fallback == OWNER_ROLE:
        raise ValidationError(
            "The owner role cannot be used as a fallback",
            code="invalid_fallback_role",
            details={"fallback_role": fallback.value},
        )

    with transaction(session):
        custom_role = _get_team_custom_role(session, team_id=team_id, custom_role_id=custom_role_id)
        result = session.execute(
            update(Membership)
            .where(Membership.team_id == team_id, Membership.custom_role_id == custom_role.id)
            .values(role=fallback.value, custom_role_id=None)
            .execution_options(synchronize_session="fetch")
        )
        reassigned = int(result.rowcount or 0)
        session.delete(custom_role)

    logger.info(
        "custom_role_deleted",
        team_id=team_id,
        custom_role_id=custom_role_id,
        fallback_role=fallback.value,
        reassigned=reassigned,
    )
    return CustomRoleDeletion(custom_role_id=custom_role_id, fallback_role=fallback.value, reassigned=reassigned)


def _count_owners(session: Session, team_id: str) -> int:
    return int(
        session.scalar(
            select(func.count(Membership.id)).where(
                Membership.team_id == team_id,
                Membership.role == OWNER_ROLE.value,
            )
        )
        or 0
    )


def _guard_owner_change(session: Session, *, team_id: str, acting_user_id: str, membership: Membership, target: Role) -> None:
    if target == OWNER_ROLE or membership.holds_role(OWNER_ROLE):
        acting = require_active_membership(session, user_id=acting_user_id, team_id=team_id)
        if not acting.holds_role(OWNER_ROLE):
            raise ForbiddenError("Only an owner can change owner assignments", code="owner_required")
    if membership.holds_role(OWNER_ROLE) and target != OWNER_ROLE and _count_owners(session, team_id) <= 1:
        raise ConflictError("A team must keep at least one owner", code="last_owner")


def assign_builtin_role(
    session: Session,
    *,
    team_id: str,
    acting_user_id: str,
    membership_id: str,
    role: str | Role,
) -> Membership:
    require_permission(session, user_id=acting_user_id, team_id=team_id, code=TEAM_MANAGE)
    target = _parse_builtin(role)

    with transaction(session):
        membership = _get_team_membership(session, team_id=team_id, membership_id=membership_id)
        _guard_owner_change(
            session,
            team_id=team_id,
            acting_user_id=acting_user_id,
            membership=membership,
            target=target,
        )
        membership.assign_basis(BuiltinRole(role=target))

    logger.info("membership_role_assigned", team_id=team_id, membership_id=membership_id, role=target.value)
    return membership


def assign_custom_role(
    session: Session,
    *,
    team_id: str,
    acting_user_id: str,
    membership_id: str,
    custom_role_id: str,
) -> Membership:
    require_permission(session, user_id=acting_user_id, team_id=team_id, code=TEAM_MANAGE)

    with transaction(session):
        membership = _get_team_membership(session, team_id=team_id, membership_id=membership_id)
        custom_role = _get_team_custom_role(session, team_id=team_id, custom_role_id=custom_role_id)
        if membership.holds_role(OWNER_ROLE):
            _guard_owner_change(
                session,
                team_id=team_id,
                acting_user_id=acting_user_id,
                membership=membership,
                target=DEFAULT_FALLBACK_ROLE,
            )
        membership.assign_basis(CustomRoleBasis(custom_role_id=custom_role.id))

    logger.info(
        "membership_custom_role_assigned",
        team_id=team_id,
        membership_id=membership_id,
        custom_role_id=custom_role_id,
    )
    return membership
