"""Pydantic schemas for permission, custom role and role-default APIs."""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field


class EffectivePermissionsResponse(BaseModel):
    user_id: str
    team_id: str
    permissions: List[str]


class PermissionCheckResponse(BaseModel):
    permission: str
    allowed: bool


class OverrideRequest(BaseModel):
    membership_id: str
    permission: str = Field(min_length=1, max_length=80)


class OverrideResponse(BaseModel):
    membership_id: str
    permission: str
    state: str


class MemberOverridesResponse(BaseModel):
    membership_id: str
    grants: List[str]
    denies: List[str]


class CustomRoleCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=64)
    display_name: str = Field(min_length=1, max_length=120)
    description: Optional[str] = Field(default=None, max_length=255)
    permissions: List[str] = Field(default_factory=list)


class CustomRoleUpdateRequest(BaseModel):
    display_name: Optional[str] = Field(default=None, max_length=120)
    description: Optional[str] = Field(default=None, max_length=255)
    permissions: Optional[List[str]] = None


class CustomRoleResponse(BaseModel):
    id: str
    name: str
    display_name: str
    description: Optional[str]
    permissions: List[str]


class CustomRoleDeleteResponse(BaseModel):
    custom_role_id: str
    fallback_role: str
    reassigned: int


class RoleAssignmentRequest(BaseModel):
    membership_id: str
    role: Optional[str] = None
    custom_role_id: Optional[str] = None


class RoleDefaultsRequest(BaseModel):
    permissions: List[str]


class RoleDefaultsResponse(BaseModel):
    role: str
    permissions: List[str]
    added: List[str] = Field(default_factory=list)
    removed: List[str] = Field(default_factory=list)


class RoleDefaultsAuditResponse(BaseModel):
    id: str
    role: str
    actor_user_id: Optional[str]
    added: List[str]
    removed: List[str]
    created_at: str
