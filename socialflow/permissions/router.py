"""Permission, custom role and role-default API routes."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from socialflow.auth.dependencies import require_auth_context
from socialflow.auth.jwt import AuthContext
from socialflow.core.errors import NotFoundError, ValidationError
from socialflow.permissions.custom_roles import (
    assign_builtin_role,
    assign_custom_role,
    create_custom_role,
    delete_custom_role,
    list_custom_roles,
    update_custom_role,
)
from socialflow.permissions.overrides import (
    OverrideRecord,
    deny_permission,
    get_member_overrides,
    grant_permission,
    revoke_override,
)
from socialflow.permissions.resolver import can, require_active_membership, resolve_effective_permissions
from socialflow.permissions.role_admin import RoleDefaultsService
from socialflow.permissions.roles import DEFAULT_FALLBACK_ROLE
from socialflow.schemas.permissions import (
    CustomRoleCreateRequest,
    CustomRoleDeleteResponse,
    CustomRoleResponse,
    CustomRoleUpdateRequest,
    EffectivePermissionsResponse,
    MemberOverridesResponse,
    OverrideRequest,
    OverrideResponse,
    PermissionCheckResponse,
    RoleAssignmentRequest,
    RoleDefaultsAuditResponse,
    RoleDefaultsRequest,
    RoleDefaultsResponse,
)
from socialflow.schemas.teams import MemberResponse
from socialflow.storage.db import get_session
from socialflow.storage.models import CustomRole, Membership
from socialflow.storage.tenant import set_team_context


router = APIRouter(prefix="/permissions", tags=["permissions"])
custom_roles_router = APIRouter(prefix="/custom-roles", tags=["custom-roles"])
role_defaults_router = APIRouter(prefix="/role-permissions", tags=["role-permissions"])


def _override_response(record: OverrideRecord) -> OverrideResponse:
    return OverrideResponse(membership_id=record.membership_id, permission=record.permission, state=record.state)


def _custom_role_response(custom_role: CustomRole) -> CustomRoleResponse:
    return CustomRoleResponse(
        id=custom_role.id,
        name=custom_role.name,
        display_name=custom_role.display_name,
        description=custom_role.description,
        permissions=custom_role.permission_codes,
    )


@router.get("/me", response_model=EffectivePermissionsResponse)
def get_my_permissions(
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> EffectivePermissionsResponse:
    set_team_context(session, auth.team_id)
    permissions = resolve_effective_permissions(session, auth.user_id, auth.team_id)
    return EffectivePermissionsResponse(user_id=auth.user_id, team_id=auth.team_id, permissions=sorted(permissions))


@router.get("/check", response_model=PermissionCheckResponse)
def check_permission(
    code: str = Query(min_length=1, max_length=80),
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> PermissionCheckResponse:
    set_team_context(session, auth.team_id)
    return PermissionCheckResponse(permission=code, allowed=can(session, auth.user_id, auth.team_id, code))


@router.get("/members/{membership_id}/overrides", response_model=MemberOverridesResponse)
def get_overrides(
    membership_id: str,
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> MemberOverridesResponse:
    set_team_context(session, auth.team_id)
    require_active_membership(session, user_id=auth.user_id, team_id=auth.team_id)
    target = session.get(Membership, membership_id)
    if target is None or target.team_id != auth.team_id:
        raise NotFoundError("Membership not found in this team", code="membership_not_found")
    overrides = get_member_overrides(session, membership_id)
    return MemberOverridesResponse(
        membership_id=overrides.membership_id,
        grants=list(overrides.grants),
        denies=list(overrides.denies),
    )


@router.post("/grant", response_model=OverrideResponse)
def grant(
    payload: OverrideRequest,
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> OverrideResponse:
    set_team_context(session, auth.team_id)
    record = grant_permission(
        session,
        team_id=auth.team_id,
        membership_id=payload.membership_id,
        code=payload.permission,
        acting_user_id=auth.user_id,
    )
    return _override_response(record)


@router.post("/deny", response_model=OverrideResponse)
def deny(
    payload: OverrideRequest,
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> OverrideResponse:
    set_team_context(session, auth.team_id)
    record = deny_permission(
        session,
        team_id=auth.team_id,
        membership_id=payload.membership_id,
        code=payload.permission,
        acting_user_id=auth.user_id,
    )
    return _override_response(record)


@router.post("/revoke", response_model=OverrideResponse)
def revoke(
    payload: OverrideRequest,
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> OverrideResponse:
    set_team_context(session, auth.team_id)
    record = revoke_override(
        session,
        team_id=auth.team_id,
        membership_id=payload.membership_id,
        code=payload.permission,
        acting_user_id=auth.user_id,
    )
    return _override_response(record)


@custom_roles_router.get("", response_model=list[CustomRoleResponse])
def get_custom_roles(
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> list[CustomRoleResponse]:
    set_team_context(session, auth.team_id)
    return [
        _custom_role_response(custom_role)
        for custom_role in list_custom_roles(session, team_id=auth.team_id, acting_user_id=auth.user_id)
    ]


@custom_roles_router.post("", response_model=CustomRoleResponse, status_code=201)
def post_custom_role(
    payload: CustomRoleCreateRequest,
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> CustomRoleResponse:
    set_team_context(session, auth.team_id)
    custom_role = create_custom_role(
        session,
        team_id=auth.team_id,
        acting_user_id=auth.user_id,
        name=payload.name,
        display_name=payload.display_name,
        description=payload.description,
        permission_codes=payload.permissions,
    )
    return _custom_role_response(custom_role)


@custom_roles_router.post("/assign", response_model=MemberResponse)
def post_role_assignment(
    payload: RoleAssignmentRequest,
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> MemberResponse:
    set_team_context(session, auth.team_id)
    if (payload.role is None) == (payload.custom_role_id is None):
        raise ValidationError("Provide exactly one of role or custom_role_id", code="invalid_member_role")
    if payload.custom_role_id is not None:
        membership = assign_custom_role(
            session,
            team_id=auth.team_id,
            acting_user_id=auth.user_id,
            membership_id=payload.membership_id,
            custom_role_id=payload.custom_role_id,
        )
    else:
        membership = assign_builtin_role(
            session,
            team_id=auth.team_id,
            acting_user_id=auth.user_id,
            membership_id=payload.membership_id,
            role=payload.role,
        )
    return MemberResponse(
        membership_id=membership.id,
        user_id=membership.user_id,
        email=membership.user.email,
        role=membership.role,
        custom_role_id=membership.custom_role_id,
        status=membership.status,
    )


@custom_roles_router.patch("/{custom_role_id}", response_model=CustomRoleResponse)
def patch_custom_role(
    custom_role_id: str,
    payload: CustomRoleUpdateRequest,
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> CustomRoleResponse:
    set_team_context(session, auth.team_id)
    custom_role = update_custom_role(
        session,
        team_id=auth.team_id,
        acting_user_id=auth.user_id,
        custom_role_id=custom_role_id,
        display_name=payload.display_name,
        description=payload.description,
        permission_codes=payload.permissions,
    )
    return _custom_role_response(custom_role)


@custom_roles_router.delete("/{custom_role_id}", response_model=CustomRoleDeleteResponse)
def remove_custom_role(
    custom_role_id: str,
    fallback_role: str = Query(default=DEFAULT_FALLBACK_ROLE.value),
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> CustomRoleDeleteResponse:
    set_team_context(session, auth.team_id)
    deletion = delete_custom_role(
        session,
        team_id=auth.team_id,
        acting_user_id=auth.user_id,
        custom_role_id=custom_role_id,
        fallback_role=fallback_role,
    )
    return CustomRoleDeleteResponse(
        custom_role_id=deletion.custom_role_id,
        fallback_role=deletion.fallback_role,
        reassigned=deletion.reassigned,
    )


@role_defaults_router.get("", response_model=list[RoleDefaultsResponse])
def get_role_defaults(
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> list[RoleDefaultsResponse]:
    require_active_membership(session, user_id=auth.user_id, team_id=auth.team_id)
    defaults = RoleDefaultsService(session).list_role_defaults()
    return [RoleDefaultsResponse(role=role, permissions=list(codes)) for role, codes in defaults.items()]


@role_defaults_router.get("/audit", response_model=list[RoleDefaultsAuditResponse])
def get_role_defaults_audit(
    role: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> list[RoleDefaultsAuditResponse]:
    require_active_membership(session, user_id=auth.user_id, team_id=auth.team_id)
    entries = RoleDefaultsService(session).list_audit(role=role, limit=limit)
    return [
        RoleDefaultsAuditResponse(
            id=entry.id,
            role=entry.role,
            actor_user_id=entry.actor_user_id,
            added=list(entry.added),
            removed=list(entry.removed),
            created_at=entry.created_at.isoformat() if isinstance(entry.created_at, datetime) else str(entry.created_at),
        )
        for entry in entries
    ]


@role_defaults_router.get("/{role}", response_model=RoleDefaultsResponse)
def get_role_default(
    role: str,
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> RoleDefaultsResponse:
    require_active_membership(session, user_id=auth.user_id, team_id=auth.team_id)
    service = RoleDefaultsService(session)
    return RoleDefaultsResponse(role=role.lower(), permissions=list(service.get_role_permissions(role)))


@role_defaults_router.put("/{role}", response_model=RoleDefaultsResponse)
def put_role_default(
    role: str,
    payload: RoleDefaultsRequest,
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> RoleDefaultsResponse:
    change = RoleDefaultsService(session).set_role_permissions(
        actor_user_id=auth.user_id,
        team_id=auth.team_id,
        role=role,
        permission_codes=payload.permissions,
    )
    return RoleDefaultsResponse(
        role=change.role,
        permissions=list(change.permissions),
        added=list(change.added),
        removed=list(change.removed),
    )
