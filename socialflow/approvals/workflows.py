"""Approval workflow administration."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from socialflow.approvals.states import ACTIVE_STATUSES
from socialflow.core.errors import ConflictError, NotFoundError, ValidationError
from socialflow.core.logger import get_logger
from socialflow.permissions.catalog import WORKFLOW_CREATE, WORKFLOW_UPDATE
from socialflow.permissions.resolver import (
    get_membership,
    require_active_membership,
    require_any_permission,
    require_permission,
)
from socialflow.permissions.roles import Role, parse_role
from socialflow.storage.db import transaction
from socialflow.storage.models import ApprovalAssignment, ApprovalInstance, ApprovalStep, ApprovalWorkflow, Membership
from socialflow.teams.service import active_role_holders


logger = get_logger("socialflow.approvals.workflows")


@dataclass(frozen=True)
class StepSpec:
    name: str
    order: int
    role: str
    assigned_user_id: Optional[str] = None
    require_all_users_in_role: bool = False


def _validate_steps(session: Session, *, team_id: str, steps: Sequence[StepSpec]) -> list[ApprovalStep]:
    if not steps:
        raise ValidationError("Workflow must have at least one step", code="empty_steps")

    orders = [step.order for step in steps]
    if len(set(orders)) != len(orders):
        raise ValidationError("Step orders must be unique", code="duplicate_step_order", details={"orders": orders})
    if any(order < 1 for order in orders):
        raise ValidationError("Step orders must be positive", code="invalid_step_order", details={"orders": orders})

    built: list[ApprovalStep] = []
    for spec in sorted(steps, key=lambda item: item.order):
        try:
            role = parse_role(spec.role)
        except ValueError as exc:
            raise ValidationError(str(exc), code="unknown_role", details={"step": spec.name}) from exc

        if spec.assigned_user_id is not None:
            assignee = get_membership(session, user_id=spec.assigned_user_id, team_id=team_id)
            if assignee is None or not assignee.is_active:
                raise ValidationError(
                    "Assigned user must be an active member of the team",
                    code="invalid_step_assignee",
                    details={"step": spec.name, "assigned_user_id": spec.assigned_user_id},
                )

        built.append(
            ApprovalStep(
                name=spec.name.strip() or f"Step {spec.order}",
                order=spec.order,
                role=role.value,
                assigned_user_id=spec.assigned_user_id,
                require_all_users_in_role=bool(spec.require_all_users_in_role),
            )
        )
    return built


def _get_team_workflow(session: Session, *, team_id: str, workflow_id: str) -> ApprovalWorkflow:
    workflow = session.get(ApprovalWorkflow, workflow_id)
    if workflow is None or workflow.team_id != team_id:
        raise NotFoundError("Workflow not found", code="workflow_not_found", details={"workflow_id": workflow_id})
    return workflow


def create_workflow(
    session: Session,
    *,
    team_id: str,
    acting_user_id: str,
    name: str,
    steps: Sequence[StepSpec],
    description: Optional[str] = None,
) -> ApprovalWorkflow:
    require_permission(session, user_id=acting_user_id, team_id=team_id, code=WORKFLOW_CREATE)

    with transaction(session):
        workflow = ApprovalWorkflow(team_id=team_id, name=name.strip(), description=description, is_active=True)
        workflow.steps = _validate_steps(session, team_id=team_id, steps=steps)
        session.add(workflow)

    logger.info("workflow_created", team_id=team_id, workflow_id=workflow.id, steps=len(workflow.steps))
    return workflow


def update_workflow(
    session: Session,
    *,
    team_id: str,
    acting_user_id: str,
    workflow_id: str,
    name: Optional[str] = None,
    description: Optional[str] = None,
    is_active: Optional[bool] = None,
    steps: Optional[Sequence[StepSpec]] = None,
) -> ApprovalWorkflow:
    require_any_permission(
        session,
        user_id=acting_user_id,
        team_id=team_id,
        codes=(WORKFLOW_UPDATE, WORKFLOW_CREATE),
    )

    with transaction(session):
        workflow = _get_team_workflow(session, team_id=team_id, workflow_id=workflow_id)
        if name is not None:
            workflow.name = name.strip()
        if description is not None:
            workflow.description = description
        if is_active is not None:
            workflow.is_active = is_active

        if steps is not None:
            in_flight = session.scalar(
                select(func.count(ApprovalInstance.id)).where(
                    ApprovalInstance.workflow_id == workflow.id,
                    ApprovalInstance.status.in_([status.value for status in ACTIVE_STATUSES]),
                )
            )
            if in_flight:
                raise ConflictError(
                    "Workflow steps cannot change while approvals are in progress",
                    code="workflow_in_use",
                    details={"workflow_id": workflow.id, "in_progress": int(in_flight)},
                )
            replacement = _validate_steps(session, team_id=team_id, steps=steps)
            old_ids = [step.id for step in workflow.steps]
            if old_ids:
                # Assignments keep their step snapshot columns.
                session.execute(
                    update(ApprovalAssignment)
                    .where(ApprovalAssignment.step_id.in_(old_ids))
                    .values(step_id=None)
                    .execution_options(synchronize_session=False)
                )
            workflow.steps.clear()
            session.flush()
            workflow.steps.extend(replacement)

        workflow.updated_at = datetime.now(timezone.utc)

    logger.info("workflow_updated", team_id=team_id, workflow_id=workflow.id, steps_replaced=steps is not None)
    return workflow


def get_workflow(session: Session, *, team_id: str, acting_user_id: str, workflow_id: str) -> ApprovalWorkflow:
    require_active_membership(session, user_id=acting_user_id, team_id=team_id)
    return _get_team_workflow(session, team_id=team_id, workflow_id=workflow_id)


def list_workflows(
    session: Session,
    *,
    team_id: str,
    acting_user_id: str,
    active_only: bool = False,
) -> list[ApprovalWorkflow]:
    require_active_membership(session, user_id=acting_user_id, team_id=team_id)
    statement = (
        select(ApprovalWorkflow)
        .where(ApprovalWorkflow.team_id == team_id)
        .order_by(ApprovalWorkflow.created_at, ApprovalWorkflow.id)
    )
    if active_only:
        statement = statement.where(ApprovalWorkflow.is_active.is_(True))
    return list(session.scalars(statement).all())


def list_users_by_role(session: Session, *, team_id: str, acting_user_id: str, role: str) -> list[Membership]:
    require_active_membership(session, user_id=acting_user_id, team_id=team_id)
    try:
        parsed: Role = parse_role(role)
    except ValueError as exc:
        raise ValidationError(str(exc), code="unknown_role") from exc
    return active_role_holders(session, team_id=team_id, role=parsed)
