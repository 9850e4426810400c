"""Pydantic schemas for posts API."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field


class PostCreateRequest(BaseModel):
    content: str = Field(min_length=1, max_length=5000)


class PostResponse(BaseModel):
    id: str
    team_id: str
    author_user_id: str
    content: str
    status: str
    scheduled_at: Optional[str] = None
