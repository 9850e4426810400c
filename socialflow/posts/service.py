"""Minimal post services backing the approval flow."""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from socialflow.core.errors import NotFoundError, ValidationError
from socialflow.core.logger import get_logger
from socialflow.permissions.catalog import CONTENT_CREATE
from socialflow.permissions.resolver import require_active_membership, require_permission
from socialflow.posts.states import POST_STATUS_DRAFT
from socialflow.storage.db import transaction
from socialflow.storage.models import Post


logger = get_logger("socialflow.posts")


def create_post(session: Session, *, team_id: str, acting_user_id: str, content: str) -> Post:
    require_permission(session, user_id=acting_user_id, team_id=team_id, code=CONTENT_CREATE)
    body = content.strip()
    if not body:
        raise ValidationError("Post content is required", code="empty_post")

    with transaction(session):
        post = Post(team_id=team_id, author_user_id=acting_user_id, content=body, status=POST_STATUS_DRAFT)
        session.add(post)

    logger.info("post_created", team_id=team_id, post_id=post.id)
    return post


def get_post(session: Session, *, post_id: str, acting_user_id: str) -> Post:
    post = session.get(Post, post_id)
    if post is None:
        raise NotFoundError("Post not found", code="post_not_found", details={"post_id": post_id})
    require_active_membership(session, user_id=acting_user_id, team_id=post.team_id)
    return post


def list_posts(session: Session, *, team_id: str, acting_user_id: str) -> list[Post]:
    require_active_membership(session, user_id=acting_user_id, team_id=team_id)
    return list(
        session.scalars(
            select(Post).where(Post.team_id == team_id).order_by(Post.created_at.desc(), Post.id)
        ).all()
    )
