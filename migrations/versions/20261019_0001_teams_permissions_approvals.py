"""teams, permissions and approval workflows

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


TEAM_SCOPED_TABLES = ["custom_roles", "memberships", "posts", "approval_workflows"]


def _is_postgresql() -> bool:
    return op.get_bind().dialect.name == "postgresql"


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at",
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.text("CURRENT_TIMESTAMP"),
    )


def _updated_at() -> sa.Column:
    return sa.Column(
        "updated_at",
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.text("CURRENT_TIMESTAMP"),
    )


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=True),
        sa.Column("password_hash", sa.String(length=255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        _created_at(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email", name="uq_users_email"),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "teams",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        _created_at(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name", name="uq_teams_name"),
    )

    op.create_table(
        "permissions",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("code", sa.String(length=80), nullable=False),
        sa.Column("description", sa.String(length=255), nullable=False, server_default=""),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("code", name="uq_permissions_code"),
    )

    op.create_table(
        "role_permissions",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("role", sa.String(length=32), nullable=False),
        sa.Column("permission_id", sa.String(length=36), nullable=False),
        sa.ForeignKeyConstraint(["permission_id"], ["permissions.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("role", "permission_id", name="uq_role_permissions_role_permission"),
    )

    op.create_table(
        "role_permission_audits",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("role", sa.String(length=32), nullable=False),
        sa.Column("actor_user_id", sa.String(length=36), nullable=True),
        sa.Column("team_id", sa.String(length=36), nullable=True),
        sa.Column("added_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("removed_json", sa.Text(), nullable=False, server_default="[]"),
        _created_at(),
        sa.ForeignKeyConstraint(["actor_user_id"], ["users.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["team_id"], ["teams.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_role_permission_audits_role_created_at",
        "role_permission_audits",
        ["role", "created_at"],
        unique=False,
    )

    op.create_table(
        "custom_roles",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("team_id", sa.String(length=36), nullable=False),
        sa.Column("name", sa.String(length=64), nullable=False),
        sa.Column("display_name", sa.String(length=120), nullable=False),
        sa.Column("description", sa.String(length=255), nullable=True),
        _created_at(),
        _updated_at(),
        sa.ForeignKeyConstraint(["team_id"], ["teams.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("team_id", "name", name="uq_custom_roles_team_name"),
    )

    op.create_table(
        "custom_role_permissions",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("custom_role_id", sa.String(length=36), nullable=False),
        sa.Column("permission_id", sa.String(length=36), nullable=False),
        sa.ForeignKeyConstraint(["custom_role_id"], ["custom_roles.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["permission_id"], ["permissions.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("custom_role_id", "permission_id", name="uq_custom_role_permissions_role_permission"),
    )

    op.create_table(
        "memberships",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("team_id", sa.String(length=36), nullable=False),
        sa.Column("user_id", sa.String(length=36), nullable=False),
        sa.Column("role", sa.String(length=32), nullable=True),
        sa.Column("custom_role_id", sa.String(length=36), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="active"),
        _created_at(),
        sa.ForeignKeyConstraint(["team_id"], ["teams.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["custom_role_id"], ["custom_roles.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("team_id", "user_id", name="uq_memberships_team_user"),
        sa.CheckConstraint(
            "(role IS NOT NULL AND custom_role_id IS NULL) OR (role IS NULL AND custom_role_id IS NOT NULL)",
            name="ck_memberships_single_basis",
        ),
    )
    op.create_index(
        "ix_memberships_team_role_status",
        "memberships",
        ["team_id", "role", "status"],
        unique=False,
    )
    op.create_index("ix_memberships_custom_role", "memberships", ["custom_role_id"], unique=False)

    for table_name in ["membership_grants", "membership_denies"]:
        op.create_table(
            table_name,
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("membership_id", sa.String(length=36), nullable=False),
            sa.Column("permission_id", sa.String(length=36), nullable=False),
            _created_at(),
            sa.ForeignKeyConstraint(["membership_id"], ["memberships.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["permission_id"], ["permissions.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint(
                "membership_id",
                "permission_id",
                name=f"uq_{table_name}_membership_permission",
            ),
        )

    op.create_table(
        "posts",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("team_id", sa.String(length=36), nullable=False),
        sa.Column("author_user_id", sa.String(length=36), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="draft"),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        _updated_at(),
        sa.ForeignKeyConstraint(["team_id"], ["teams.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["author_user_id"], ["users.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_posts_team_created_at", "posts", ["team_id", "created_at"], unique=False)

    op.create_table(
        "approval_workflows",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("team_id", sa.String(length=36), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("description", sa.String(length=500), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        _created_at(),
        _updated_at(),
        sa.ForeignKeyConstraint(["team_id"], ["teams.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_approval_workflows_team_created_at",
        "approval_workflows",
        ["team_id", "created_at"],
        unique=False,
    )

    op.create_table(
        "approval_steps",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("workflow_id", sa.String(length=36), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("step_order", sa.Integer(), nullable=False),
        sa.Column("role", sa.String(length=32), nullable=False),
        sa.Column("assigned_user_id", sa.String(length=36), nullable=True),
        sa.Column("require_all_users_in_role", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.ForeignKeyConstraint(["workflow_id"], ["approval_workflows.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["assigned_user_id"], ["users.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("workflow_id", "step_order", name="uq_approval_steps_workflow_order"),
    )

    op.create_table(
        "approval_instances",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("post_id", sa.String(length=36), nullable=False),
        sa.Column("workflow_id", sa.String(length=36), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("current_step_order", sa.Integer(), nullable=True),
        sa.Column("active_post_id", sa.String(length=36), nullable=True),
        sa.Column("review_round", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default="1"),
        _created_at(),
        _updated_at(),
        sa.ForeignKeyConstraint(["post_id"], ["posts.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["workflow_id"], ["approval_workflows.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("active_post_id", name="uq_approval_instances_active_post"),
    )
    op.create_index(
        "ix_approval_instances_post_created_at",
        "approval_instances",
        ["post_id", "created_at"],
        unique=False,
    )
    op.create_index(
        "ix_approval_instances_workflow_status",
        "approval_instances",
        ["workflow_id", "status"],
        unique=False,
    )

    op.create_table(
        "approval_assignments",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("instance_id", sa.String(length=36), nullable=False),
        sa.Column("step_id", sa.String(length=36), nullable=True),
        sa.Column("step_order", sa.Integer(), nullable=False),
        sa.Column("review_round", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("step_name", sa.String(length=120), nullable=False, server_default=""),
        sa.Column("step_role", sa.String(length=32), nullable=False),
        sa.Column("assigned_user_id", sa.String(length=36), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("feedback", sa.Text(), nullable=True),
        sa.Column("reviewer_label", sa.String(length=255), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.ForeignKeyConstraint(["instance_id"], ["approval_instances.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["step_id"], ["approval_steps.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["assigned_user_id"], ["users.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_approval_assignments_instance_round_step",
        "approval_assignments",
        ["instance_id", "review_round", "step_order"],
        unique=False,
    )
    op.create_index(
        "ix_approval_assignments_assignee_status",
        "approval_assignments",
        ["assigned_user_id", "status"],
        unique=False,
    )
    op.create_index(
        "ix_approval_assignments_role_status",
        "approval_assignments",
        ["step_role", "status"],
        unique=False,
    )

    op.create_table(
        "review_links",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("assignment_id", sa.String(length=36), nullable=False),
        sa.Column("token_hash", sa.String(length=64), nullable=False),
        sa.Column("reviewer_email", sa.String(length=255), nullable=False),
        sa.Column("created_by_user_id", sa.String(length=36), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("used_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.ForeignKeyConstraint(["assignment_id"], ["approval_assignments.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["created_by_user_id"], ["users.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("token_hash", name="uq_review_links_token_hash"),
    )

    op.create_table(
        "notification_outbox",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("team_id", sa.String(length=36), nullable=True),
        sa.Column("kind", sa.String(length=64), nullable=False),
        sa.Column("recipient_user_id", sa.String(length=36), nullable=True),
        sa.Column("recipient_email", sa.String(length=255), nullable=True),
        sa.Column("payload_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.String(length=255), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        _updated_at(),
        sa.ForeignKeyConstraint(["team_id"], ["teams.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["recipient_user_id"], ["users.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_notification_outbox_status_created_at",
        "notification_outbox",
        ["status", "created_at"],
        unique=False,
    )

    if _is_postgresql():
        op.execute(
            """
            CREATE OR REPLACE FUNCTION app_current_team_id()
            RETURNS text
            LANGUAGE sql
            STABLE
            AS $$
                SELECT NULLIF(current_setting('app.current_team_id', true), '');
            $$;
            """
        )

        # Connections without a team context (login, review links, workers) see every row.
        for table_name in TEAM_SCOPED_TABLES:
            op.execute(f"ALTER TABLE {table_name} ENABLE ROW LEVEL SECURITY;")
            op.execute(f"ALTER TABLE {table_name} FORCE ROW LEVEL SECURITY;")
            op.execute(
                f"""
                CREATE POLICY {table_name}_team_policy ON {table_name}
                USING (app_current_team_id() IS NULL OR team_id = app_current_team_id())
                WITH CHECK (app_current_team_id() IS NULL OR team_id = app_current_team_id());
                """
            )


def downgrade() -> None:
    if _is_postgresql():
        for table_name in TEAM_SCOPED_TABLES:
            op.execute(f"DROP POLICY IF EXISTS {table_name}_team_policy ON {table_name};")
            op.execute(f"ALTER TABLE {table_name} NO FORCE ROW LEVEL SECURITY;")
            op.execute(f"ALTER TABLE {table_name} DISABLE ROW LEVEL SECURITY;")
        op.execute("DROP FUNCTION IF EXISTS app_current_team_id();")

    op.drop_index("ix_notification_outbox_status_created_at", table_name="notification_outbox")
    op.drop_table("notification_outbox")
    op.drop_table("review_links")
    op.drop_index("ix_approval_assignments_role_status", table_name="approval_assignments")
    op.drop_index("ix_approval_assignments_assignee_status", table_name="approval_assignments")
    op.drop_index("ix_approval_assignments_instance_round_step", table_name="approval_assignments")
    op.drop_table("approval_assignments")
    op.drop_index("ix_approval_instances_workflow_status", table_name="approval_instances")
    op.drop_index("ix_approval_instances_post_created_at", table_name="approval_instances")
    op.drop_table("approval_instances")
    op.drop_table("approval_steps")
    op.drop_index("ix_approval_workflows_team_created_at", table_name="approval_workflows")
    op.drop_table("approval_workflows")
    op.drop_index("ix_posts_team_created_at", table_name="posts")
    op.drop_table("posts")
    op.drop_table("membership_denies")
    op.drop_table("membership_grants")
    op.drop_index("ix_memberships_custom_role", table_name="memberships")
    op.drop_index("ix_memberships_team_role_status", table_name="memberships")
    op.drop_table("memberships")
    op.drop_table("custom_role_permissions")
    op.drop_table("custom_roles")
    op.drop_index("ix_role_permission_audits_role_created_at", table_name="role_permission_audits")
    op.drop_table("role_permission_audits")
    op.drop_table("role_permissions")
    op.drop_table("permissions")
    op.drop_table("teams")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")
