"""Authentication API routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from socialflow.auth.jwt import AuthContext, create_access_token
from socialflow.schemas.auth import LoginRequest, TokenResponse
from socialflow.storage.db import get_session
from socialflow.storage.tenant import set_team_context
from socialflow.teams.service import authenticate_team_user, membership_role_label


router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/login", response_model=TokenResponse)
def login(payload: LoginRequest, session: Session = Depends(get_session)) -> TokenResponse:
    set_team_context(session, payload.team_id)
    user, membership = authenticate_team_user(
        session,
        email=payload.email,
        password=payload.password,
        team_id=payload.team_id,
    )
    role = membership_role_label(membership)

    token, expires_in = create_access_token(
        AuthContext(
            user_id=user.id,
            team_id=payload.team_id,
            role=role,
            email=user.email,
        )
    )

    return TokenResponse(
        access_token=token,
        expires_in=expires_in,
        team_id=payload.team_id,
        role=role,
    )
