"""Team-scoped DB context helpers."""

from __future__ import annotations

from typing import Optional

from sqlalchemy import text
from sqlalchemy.orm import Session


def set_team_context(session: Session, team_id: Optional[str]) -> None:
    """Set team context for PostgreSQL RLS policies."""

    bind = session.get_bind()
    if bind is None or bind.dialect.name != "postgresql":
        return

    value = team_id or ""
    session.execute(
        text("SELECT set_config('app.current_team_id', :team_id, true)"),
        {"team_id": value},
    )
