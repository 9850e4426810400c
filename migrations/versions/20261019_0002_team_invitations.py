"""team invitations

Revision ID: 20261019_0002
Revises: 20261019_0001
Create Date: 2026-10-19

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261019_0002"
down_revision = "20261019_0001"
branch_labels = None
depends_on = None


def _is_postgresql() -> bool:
    return op.get_bind().dialect.name == "postgresql"


def upgrade() -> None:
    op.create_table(
        "invitations",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("team_id", sa.String(length=36), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("role", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("pending_email", sa.String(length=255), nullable=True),
        sa.Column("token_hash", sa.String(length=64), nullable=False),
        sa.Column("invited_by_user_id", sa.String(length=36), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("responded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.ForeignKeyConstraint(["team_id"], ["teams.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["invited_by_user_id"], ["users.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("token_hash", name="uq_invitations_token_hash"),
        sa.UniqueConstraint("team_id", "pending_email", name="uq_invitations_team_pending_email"),
    )
    op.create_index("ix_invitations_team_created_at", "invitations", ["team_id", "created_at"], unique=False)
    op.create_index("ix_invitations_email_status", "invitations", ["email", "status"], unique=False)

    if _is_postgresql():
        op.execute("ALTER TABLE invitations ENABLE ROW LEVEL SECURITY;")
        op.execute("ALTER TABLE invitations FORCE ROW LEVEL SECURITY;")
        op.execute(
            """
            CREATE POLICY invitations_team_policy ON invitations
            USING (app_current_team_id() IS NULL OR team_id = app_current_team_id())
            WITH CHECK (app_current_team_id() IS NULL OR team_id = app_current_team_id());
            """
        )


def downgrade() -> None:
    if _is_postgresql():
        op.execute("DROP POLICY IF EXISTS invitations_team_policy ON invitations;")
        op.execute("ALTER TABLE invitations NO FORCE ROW LEVEL SECURITY;")
        op.execute("ALTER TABLE invitations DISABLE ROW LEVEL SECURITY;")

    op.drop_index("ix_invitations_email_status", table_name="invitations")
    op.drop_index("ix_invitations_team_created_at", table_name="invitations")
    op.drop_table("invitations")
