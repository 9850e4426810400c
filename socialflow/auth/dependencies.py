"""FastAPI dependencies for authentication."""

from __future__ import annotations

from typing import Optional

from fastapi import Depends, Request

from socialflow.auth.jwt import AuthContext
from socialflow.auth.middleware import AUTH_CONTEXT_KEY
from socialflow.core.errors import UnauthorizedError


def get_optional_auth_context(request: Request) -> Optional[AuthContext]:
    return getattr(request.state, AUTH_CONTEXT_KEY, None)


def require_auth_context(auth: Optional[AuthContext] = Depends(get_optional_auth_context)) -> AuthContext:
    if auth is None:
        raise UnauthorizedError("Authentication required")
    return auth
