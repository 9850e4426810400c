"""SQLAlchemy ORM models for teams, permissions and approval workflows."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional
import uuid

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from socialflow.approvals.states import ApprovalStatus, AssignmentStatus
from socialflow.permissions.roles import (
    AuthorizationBasis,
    BuiltinRole,
    CustomRoleBasis,
    InvitationStatus,
    MemberStatus,
    Role,
)
from socialflow.posts.states import POST_STATUS_DRAFT
from socialflow.storage.db import Base


def _uuid() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    name: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
    )

    @property
    def display_name(self) -> str:
        return self.name or self.email.split("@")[0]


class Team(Base):
    __tablename__ = "teams"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(120), unique=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
    )

    members: Mapped[list[Membership]] = relationship("Membership", back_populates="team")


class Permission(Base):
    __tablename__ = "permissions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    code: Mapped[str] = mapped_column(String(80), unique=True, nullable=False)
    description: Mapped[str] = mapped_column(String(255), nullable=False, default="")


class RolePermission(Base):
    """Global default permission set of a built-in role."""

    __tablename__ = "role_permissions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    role: Mapped[str] = mapped_column(String(32), nullable=False)
    permission_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("permissions.id", ondelete="CASCADE"),
        nullable=False,
    )

    permission: Mapped[Permission] = relationship("Permission")

    __table_args__ = (UniqueConstraint("role", "permission_id", name="uq_role_permissions_role_permission"),)


class RolePermissionAudit(Base):
    __tablename__ = "role_permission_audits"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    role: Mapped[str] = mapped_column(String(32), nullable=False)
    actor_user_id: Mapped[Optional[str]] = mapped_column(
        String(36),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    team_id: Mapped[Optional[str]] = mapped_column(
        String(36),
        ForeignKey("teams.id", ondelete="SET NULL"),
        nullable=True,
    )
    added_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    removed_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
    )

    __table_args__ = (Index("ix_role_permission_audits_role_created_at", "role", "created_at"),)


class CustomRole(Base):
    __tablename__ = "custom_roles"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    team_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("teams.id", ondelete="CASCADE"),
        nullable=False,
    )
    name: Mapped[str] = mapped_column(String(64), nullable=False)
    display_name: Mapped[str] = mapped_column(String(120), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
    )

    permissions: Mapped[list[CustomRolePermission]] = relationship(
        "CustomRolePermission",
        cascade="all, delete-orphan",
        back_populates="custom_role",
    )

    __table_args__ = (UniqueConstraint("team_id", "name", name="uq_custom_roles_team_name"),)

    @property
    def permission_codes(self) -> list[str]:
        return sorted(link.permission.code for link in self.permissions)


class CustomRolePermission(Base):
    __tablename__ = "custom_role_permissions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    custom_role_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("custom_roles.id", ondelete="CASCADE"),
        nullable=False,
    )
    permission_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("permissions.id", ondelete="CASCADE"),
        nullable=False,
    )

    custom_role: Mapped[CustomRole] = relationship("CustomRole", back_populates="permissions")
    permission: Mapped[Permission] = relationship("Permission")

    __table_args__ = (
        UniqueConstraint("custom_role_id", "permission_id", name="uq_custom_role_permissions_role_permission"),
    )


class Membership(Base):
    __tablename__ = "memberships"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    team_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("teams.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    # Exactly one of role / custom_role_id is set; write through assign_basis().
    role: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    custom_role_id: Mapped[Optional[str]] = mapped_column(
        String(36),
        ForeignKey("custom_roles.id", ondelete="RESTRICT"),
        nullable=True,
    )
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=MemberStatus.ACTIVE.value)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
    )

    team: Mapped[Team] = relationship("Team", back_populates="members")
    user: Mapped[User] = relationship("User")
    custom_role: Mapped[Optional[CustomRole]] = relationship("CustomRole")

    __table_args__ = (
        UniqueConstraint("team_id", "user_id", name="uq_memberships_team_user"),
        CheckConstraint(
            "(role IS NOT NULL AND custom_role_id IS NULL) OR (role IS NULL AND custom_role_id IS NOT NULL)",
            name="ck_memberships_single_basis",
        ),
        Index("ix_memberships_team_role_status", "team_id", "role", "status"),
        Index("ix_memberships_custom_role", "custom_role_id"),
    )

    @property
    def basis(self) -> AuthorizationBasis:
        if self.custom_role_id is not None:
            return CustomRoleBasis(custom_role_id=self.custom_role_id)
        if self.role is None:
            raise RuntimeError(f"Membership {self.id} has no authorization basis")
        return BuiltinRole(role=Role(self.role))

    def assign_basis(self, basis: AuthorizationBasis) -> None:
        if isinstance(basis, BuiltinRole):
            self.role = Role(basis.role).value
            self.custom_role_id = None
        elif isinstance(basis, CustomRoleBasis):
            self.role = None
            self.custom_role_id = basis.custom_role_id
        else:
            raise TypeError(f"Unsupported authorization basis: {basis!r}")

    def holds_role(self, role: str) -> bool:
        return self.role is not None and self.role == Role(role).value

    @property
    def is_active(self) -> bool:
        return self.status == MemberStatus.ACTIVE.value


class MembershipGrant(Base):
    __tablename__ = "membership_grants"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    membership_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("memberships.id", ondelete="CASCADE"),
        nullable=False,
    )
    permission_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("permissions.id", ondelete="CASCADE"),
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
    )

    permission: Mapped[Permission] = relationship("Permission")

    __table_args__ = (
        UniqueConstraint("membership_id", "permission_id", name="uq_membership_grants_membership_permission"),
    )


class MembershipDeny(Base):
    __tablename__ = "membership_denies"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    membership_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("memberships.id", ondelete="CASCADE"),
        nullable=False,
    )
    permission_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("permissions.id", ondelete="CASCADE"),
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
    )

    permission: Mapped[Permission] = relationship("Permission")

    __table_args__ = (
        UniqueConstraint("membership_id", "permission_id", name="uq_membership_denies_membership_permission"),
    )


class Post(Base):
    __tablename__ = "posts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    team_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("teams.id", ondelete="CASCADE"),
        nullable=False,
    )
    author_user_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=POST_STATUS_DRAFT)
    scheduled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
    )

    author: Mapped[User] = relationship("User")

    __table_args__ = (Index("ix_posts_team_created_at", "team_id", "created_at"),)


class ApprovalWorkflow(Base):
    __tablename__ = "approval_workflows"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    team_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("teams.id", ondelete="CASCADE"),
        nullable=False,
    )
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
    )

    steps: Mapped[list[ApprovalStep]] = relationship(
        "ApprovalStep",
        cascade="all, delete-orphan",
        order_by="ApprovalStep.order",
        back_populates="workflow",
    )

    __table_args__ = (Index("ix_approval_workflows_team_created_at", "team_id", "created_at"),)


class ApprovalStep(Base):
    __tablename__ = "approval_steps"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    workflow_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("approval_workflows.id", ondelete="CASCADE"),
        nullable=False,
    )
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    order: Mapped[int] = mapped_column("step_order", Integer, nullable=False)
    role: Mapped[str] = mapped_column(String(32), nullable=False)
    assigned_user_id: Mapped[Optional[str]] = mapped_column(
        String(36),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    require_all_users_in_role: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    workflow: Mapped[ApprovalWorkflow] = relationship("ApprovalWorkflow", back_populates="steps")

    __table_args__ = (UniqueConstraint("workflow_id", "step_order", name="uq_approval_steps_workflow_order"),)


class ApprovalInstance(Base):
    __tablename__ = "approval_instances"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    post_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("posts.id", ondelete="CASCADE"),
        nullable=False,
    )
    workflow_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("approval_workflows.id", ondelete="RESTRICT"),
        nullable=False,
    )
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=ApprovalStatus.PENDING.value)
    current_step_order: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    # Mirrors post_id while the instance is active; NULL once terminal.
    active_post_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, unique=True)
    # Incremented on every resubmission; assignments carry the round they belong to.
    review_round: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    version_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
    )

    post: Mapped[Post] = relationship("Post")
    workflow: Mapped[ApprovalWorkflow] = relationship("ApprovalWorkflow")
    assignments: Mapped[list[ApprovalAssignment]] = relationship(
        "ApprovalAssignment",
        cascade="all, delete-orphan",
        back_populates="instance",
        order_by="ApprovalAssignment.created_at",
    )

    __mapper_args__ = {"version_id_col": version_id}
    __table_args__ = (
        Index("ix_approval_instances_post_created_at", "post_id", "created_at"),
        Index("ix_approval_instances_workflow_status", "workflow_id", "status"),
    )


class ApprovalAssignment(Base):
    __tablename__ = "approval_assignments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    instance_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("approval_instances.id", ondelete="CASCADE"),
        nullable=False,
    )
    step_id: Mapped[Optional[str]] = mapped_column(
        String(36),
        ForeignKey("approval_steps.id", ondelete="SET NULL"),
        nullable=True,
    )
    # Step snapshot taken when the assignment is materialized.
    step_order: Mapped[int] = mapped_column(Integer, nullable=False)
    review_round: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    step_name: Mapped[str] = mapped_column(String(120), nullable=False, default="")
    step_role: Mapped[str] = mapped_column(String(32), nullable=False)
    assigned_user_id: Mapped[Optional[str]] = mapped_column(
        String(36),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=AssignmentStatus.PENDING.value)
    feedback: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    reviewer_label: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
    )

    instance: Mapped[ApprovalInstance] = relationship("ApprovalInstance", back_populates="assignments")
    step: Mapped[Optional[ApprovalStep]] = relationship("ApprovalStep")
    assignee: Mapped[Optional[User]] = relationship("User")

    __table_args__ = (
        Index("ix_approval_assignments_instance_round_step", "instance_id", "review_round", "step_order"),
        Index("ix_approval_assignments_assignee_status", "assigned_user_id", "status"),
        Index("ix_approval_assignments_role_status", "step_role", "status"),
    )


class Invitation(Base):
    """Invitation of an email address into a team under a built-in role."""

    __tablename__ = "invitations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    team_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("teams.id", ondelete="CASCADE"),
        nullable=False,
    )
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=InvitationStatus.PENDING.value)
    # Mirrors email while pending and is cleared once processed; unique per team.
    pending_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    token_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    invited_by_user_id: Mapped[Optional[str]] = mapped_column(
        String(36),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    responded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
    )

    team: Mapped[Team] = relationship("Team")

    __table_args__ = (
        UniqueConstraint("team_id", "pending_email", name="uq_invitations_team_pending_email"),
        Index("ix_invitations_team_created_at", "team_id", "created_at"),
        Index("ix_invitations_email_status", "email", "status"),
    )

    @property
    def is_pending(self) -> bool:
        return self.status == InvitationStatus.PENDING.value


class ReviewLink(Base):
    """One-time review token for an external reviewer of one assignment."""

    __tablename__ = "review_links"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    assignment_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("approval_assignments.id", ondelete="CASCADE"),
        nullable=False,
    )
    token_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    reviewer_email: Mapped[str] = mapped_column(String(255), nullable=False)
    created_by_user_id: Mapped[Optional[str]] = mapped_column(
        String(36),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    used_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
    )

    assignment: Mapped[ApprovalAssignment] = relationship("ApprovalAssignment")


class NotificationOutbox(Base):
    __tablename__ = "notification_outbox"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    team_id: Mapped[Optional[str]] = mapped_column(
        String(36),
        ForeignKey("teams.id", ondelete="CASCADE"),
        nullable=True,
    )
    kind: Mapped[str] = mapped_column(String(64), nullable=False)
    recipient_user_id: Mapped[Optional[str]] = mapped_column(
        String(36),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    recipient_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    payload_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
    )

    __table_args__ = (Index("ix_notification_outbox_status_created_at", "status", "created_at"),)
