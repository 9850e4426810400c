"""Team management API routes."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from socialflow.auth.dependencies import require_auth_context
from socialflow.auth.jwt import AuthContext
from socialflow.schemas.teams import (
    InvitationAcceptResponse,
    InvitationCreateRequest,
    InvitationRegisterRequest,
    InvitationResponse,
    MemberCreateRequest,
    MemberResponse,
    MemberStatusRequest,
    TeamCreateRequest,
    TeamCreateResponse,
    TeamResponse,
)
from socialflow.storage.db import get_session
from socialflow.storage.models import Invitation, Membership
from socialflow.storage.tenant import set_team_context
from socialflow.teams.invitations import (
    accept_invitation,
    cancel_invitation,
    invite_member,
    list_my_invitations,
    list_team_invitations,
    register_with_invitation,
    reject_invitation,
)
from socialflow.teams.service import (
    add_member,
    create_team_with_owner,
    get_team_for_member,
    list_members,
    membership_role_label,
    set_member_status,
)


router = APIRouter(prefix="/teams", tags=["teams"])
invitations_router = APIRouter(prefix="/invitations", tags=["invitations"])


def _member_response(membership: Membership) -> MemberResponse:
    return MemberResponse(
        membership_id=membership.id,
        user_id=membership.user_id,
        email=membership.user.email,
        role=membership.role,
        custom_role_id=membership.custom_role_id,
        status=membership.status,
    )


def _invitation_response(invitation: Invitation) -> InvitationResponse:
    return InvitationResponse(
        id=invitation.id,
        team_id=invitation.team_id,
        email=invitation.email,
        role=invitation.role,
        status=invitation.status,
        invited_by_user_id=invitation.invited_by_user_id,
        expires_at=invitation.expires_at.isoformat(),
        responded_at=invitation.responded_at.isoformat() if invitation.responded_at else None,
        created_at=invitation.created_at.isoformat(),
    )


def _accept_response(invitation_id: str, membership: Membership) -> InvitationAcceptResponse:
    return InvitationAcceptResponse(
        invitation_id=invitation_id,
        team_id=membership.team_id,
        membership_id=membership.id,
        user_id=membership.user_id,
        role=membership_role_label(membership),
    )


@router.post("", response_model=TeamCreateResponse, status_code=201)
def create_team(payload: TeamCreateRequest, session: Session = Depends(get_session)) -> TeamCreateResponse:
    team, user, membership = create_team_with_owner(
        session,
        team_name=payload.name,
        owner_email=payload.owner_email,
        owner_password=payload.owner_password,
        owner_name=payload.owner_name,
    )
    return TeamCreateResponse(
        team_id=team.id,
        name=team.name,
        owner_user_id=user.id,
        owner_membership_id=membership.id,
        owner_role=membership_role_label(membership),
    )


@router.get("/current", response_model=TeamResponse)
def get_current_team(
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> TeamResponse:
    set_team_context(session, auth.team_id)
    team, membership = get_team_for_member(session, team_id=auth.team_id, user_id=auth.user_id)
    return TeamResponse(
        id=team.id,
        name=team.name,
        created_at=team.created_at.isoformat() if isinstance(team.created_at, datetime) else str(team.created_at),
        my_role=membership_role_label(membership),
    )


@router.get("/members", response_model=list[MemberResponse])
def get_members(
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> list[MemberResponse]:
    set_team_context(session, auth.team_id)
    return [
        _member_response(membership)
        for membership in list_members(session, team_id=auth.team_id, acting_user_id=auth.user_id)
    ]


@router.post("/members", response_model=MemberResponse, status_code=201)
def create_member(
    payload: MemberCreateRequest,
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> MemberResponse:
    set_team_context(session, auth.team_id)
    _user, membership = add_member(
        session,
        team_id=auth.team_id,
        acting_user_id=auth.user_id,
        email=payload.email,
        password=payload.password,
        name=payload.name,
        role=payload.role,
        custom_role_id=payload.custom_role_id,
    )
    return _member_response(membership)


@router.patch("/members/{membership_id}/status", response_model=MemberResponse)
def update_member_status(
    membership_id: str,
    payload: MemberStatusRequest,
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> MemberResponse:
    set_team_context(session, auth.team_id)
    membership = set_member_status(
        session,
        team_id=auth.team_id,
        acting_user_id=auth.user_id,
        membership_id=membership_id,
        status=payload.status,
    )
    return _member_response(membership)


@router.post("/invitations", response_model=InvitationResponse, status_code=201)
def create_invitation(
    payload: InvitationCreateRequest,
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> InvitationResponse:
    set_team_context(session, auth.team_id)
    issued = invite_member(
        session,
        team_id=auth.team_id,
        acting_user_id=auth.user_id,
        email=payload.email,
        role=payload.role,
    )
    return _invitation_response(issued.invitation)


@router.get("/invitations", response_model=list[InvitationResponse])
def get_team_invitations(
    include_processed: bool = Query(default=False),
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> list[InvitationResponse]:
    set_team_context(session, auth.team_id)
    invitations = list_team_invitations(
        session,
        team_id=auth.team_id,
        acting_user_id=auth.user_id,
        include_processed=include_processed,
    )
    return [_invitation_response(invitation) for invitation in invitations]


@router.post("/invitations/{invitation_id}/cancel", response_model=InvitationResponse)
def cancel_team_invitation(
    invitation_id: str,
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> InvitationResponse:
    set_team_context(session, auth.team_id)
    invitation = cancel_invitation(
        session,
        team_id=auth.team_id,
        acting_user_id=auth.user_id,
        invitation_id=invitation_id,
    )
    return _invitation_response(invitation)


@invitations_router.get("/mine", response_model=list[InvitationResponse])
def get_my_invitations(
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> list[InvitationResponse]:
    return [_invitation_response(invitation) for invitation in list_my_invitations(session, user_id=auth.user_id)]


@invitations_router.post("/register", response_model=InvitationAcceptResponse, status_code=201)
def register_invited_user(
    payload: InvitationRegisterRequest,
    session: Session = Depends(get_session),
) -> InvitationAcceptResponse:
    invitation, membership = register_with_invitation(
        session,
        token=payload.token,
        password=payload.password,
        name=payload.name,
    )
    return _accept_response(invitation.id, membership)


@invitations_router.post("/{invitation_id}/accept", response_model=InvitationAcceptResponse)
def accept_team_invitation(
    invitation_id: str,
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> InvitationAcceptResponse:
    membership = accept_invitation(session, invitation_id=invitation_id, user_id=auth.user_id)
    return _accept_response(invitation_id, membership)


@invitations_router.post("/{invitation_id}/reject", response_model=InvitationResponse)
def reject_team_invitation(
    invitation_id: str,
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> InvitationResponse:
    return _invitation_response(reject_invitation(session, invitation_id=invitation_id, user_id=auth.user_id))
