"""Post API routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from socialflow.auth.dependencies import require_auth_context
from socialflow.auth.jwt import AuthContext
from socialflow.posts.service import create_post, get_post, list_posts
from socialflow.schemas.posts import PostCreateRequest, PostResponse
from socialflow.storage.db import get_session
from socialflow.storage.models import Post
from socialflow.storage.tenant import set_team_context


router = APIRouter(prefix="/posts", tags=["posts"])


def _post_response(post: Post) -> PostResponse:
    return PostResponse(
        id=post.id,
        team_id=post.team_id,
        author_user_id=post.author_user_id,
        content=post.content,
        status=post.status,
        scheduled_at=post.scheduled_at.isoformat() if post.scheduled_at else None,
    )


@router.post("", response_model=PostResponse, status_code=201)
def post_create(
    payload: PostCreateRequest,
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> PostResponse:
    set_team_context(session, auth.team_id)
    post = create_post(session, team_id=auth.team_id, acting_user_id=auth.user_id, content=payload.content)
    return _post_response(post)


@router.get("", response_model=list[PostResponse])
def post_list(
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> list[PostResponse]:
    set_team_context(session, auth.team_id)
    return [_post_response(post) for post in list_posts(session, team_id=auth.team_id, acting_user_id=auth.user_id)]


@router.get("/{post_id}", response_model=PostResponse)
def post_detail(
    post_id: str,
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> PostResponse:
    set_team_context(session, auth.team_id)
    return _post_response(get_post(session, post_id=post_id, acting_user_id=auth.user_id))
