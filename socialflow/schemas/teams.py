"""Pydantic schemas for team management API."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, EmailStr, Field


class TeamCreateRequest(BaseModel):
    name: str = Field(min_length=3, max_length=120)
    owner_email: EmailStr
    owner_password: str = Field(min_length=8, max_length=255)
    owner_name: Optional[str] = Field(default=None, max_length=120)


class TeamCreateResponse(BaseModel):
    team_id: str
    name: str
    owner_user_id: str
    owner_membership_id: str
    owner_role: str


class MemberCreateRequest(BaseModel):
    email: EmailStr
    password: Optional[str] = Field(default=None, min_length=8, max_length=255)
    name: Optional[str] = Field(default=None, max_length=120)
    role: Optional[str] = None
    custom_role_id: Optional[str] = None


class MemberStatusRequest(BaseModel):
    status: str


class MemberResponse(BaseModel):
    membership_id: str
    user_id: str
    email: str
    role: Optional[str]
    custom_role_id: Optional[str]
    status: str


class TeamResponse(BaseModel):
    id: str
    name: str
    created_at: str
    my_role: str


class InvitationCreateRequest(BaseModel):
    email: EmailStr
    role: str


class InvitationRegisterRequest(BaseModel):
    token: str = Field(min_length=16, max_length=255)
    password: str = Field(min_length=8, max_length=255)
    name: Optional[str] = Field(default=None, max_length=120)


class InvitationResponse(BaseModel):
    id: str
    team_id: str
    email: str
    role: str
    status: str
    invited_by_user_id: Optional[str]
    expires_at: str
    responded_at: Optional[str]
    created_at: str


class InvitationAcceptResponse(BaseModel):
    invitation_id: str
    team_id: str
    membership_id: str
    user_id: str
    role: str
