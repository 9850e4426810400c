"""Administrative service for the global role-default permission sets."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import json
from typing import Iterable, Optional

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from socialflow.core.errors import ForbiddenError, ValidationError
from socialflow.core.logger import get_logger
from socialflow.permissions.catalog import TEAM_MANAGE, get_permissions_by_code
from socialflow.permissions.resolver import require_permission
from socialflow.permissions.role_defaults import bump_role_defaults_version, get_role_default_codes
from socialflow.permissions.roles import OWNER_ROLE, Role, parse_role
from socialflow.storage.db import transaction
from socialflow.storage.models import RolePermission, RolePermissionAudit


logger = get_logger("socialflow.permissions.role_admin")


@dataclass(frozen=True)
class RoleDefaultsChange:
    role: str
    permissions: tuple[str, ...]
    added: tuple[str, ...]
    removed: tuple[str, ...]


@dataclass(frozen=True)
class RoleDefaultsAuditEntry:
    id: str
    role: str
    actor_user_id: Optional[str]
    team_id: Optional[str]
    added: tuple[str, ...]
    removed: tuple[str, ...]
    created_at: datetime


class RoleDefaultsService:
    """Single writer for ``role_permissions``.

    Role defaults apply to every team at once, so each change is recorded in
    ``role_permission_audits`` and the shared cache version is bumped after the
    commit.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def _parse(self, role: str | Role) -> Role:
        try:
            return parse_role(role)
        except ValueError as exc:
            raise ValidationError(str(exc), code="unknown_role", details={"role": str(role)}) from exc

    def get_role_permissions(self, role: str | Role) -> tuple[str, ...]:
        return tuple(sorted(get_role_default_codes(self.session, self._parse(role))))

    def list_role_defaults(self) -> dict[str, tuple[str, ...]]:
        return {
            role.value: tuple(sorted(get_role_default_codes(self.session, role)))
            for role in Role
            if role != OWNER_ROLE
        }

    def set_role_permissions(
        self,
        *,
        actor_user_id: str,
        team_id: str,
        role: str | Role,
        permission_codes: Iterable[str],
    ) -> RoleDefaultsChange:
        target = self._parse(role)
        require_permission(self.session, user_id=actor_user_id, team_id=team_id, code=TEAM_MANAGE)
        if target == OWNER_ROLE:
            raise ForbiddenError(
                "Owner permissions are implicit and cannot be edited",
                code="owner_role_immutable",
                details={"role": target.value},
            )

        wanted = sorted(set(permission_codes))
        permissions = get_permissions_by_code(self.session, wanted)
        unknown = [code for code in wanted if code not in permissions]
        if unknown:
            raise ValidationError(
                "Unknown permission codes",
                code="unknown_permission",
                details={"permissions": unknown},
            )

        with transaction(self.session):
            current_rows = self.session.scalars(
                select(RolePermission).where(RolePermission.role == target.value)
            ).all()
            current = {row.permission.code: row for row in current_rows}
            added = sorted(set(wanted) - set(current))
            removed = sorted(set(current) - set(wanted))

            if removed:
                self.session.execute(
                    delete(RolePermission).where(
                        RolePermission.role == target.value,
                        RolePermission.permission_id.in_([current[code].permission_id for code in removed]),
                    )
                )
            for code in added:
                self.session.add(RolePermission(role=target.value, permission_id=permissions[code].id))
            self.session.add(
                RolePermissionAudit(
                    role=target.value,
                    actor_user_id=actor_user_id,
                    team_id=team_id,
                    added_json=json.dumps(added),
                    removed_json=json.dumps(removed),
                )
            )

        bump_role_defaults_version()
        logger.info(
            "role_defaults_updated",
            role=target.value,
            actor_user_id=actor_user_id,
            added=added,
            removed=removed,
        )
        return RoleDefaultsChange(
            role=target.value,
            permissions=tuple(wanted),
            added=tuple(added),
            removed=tuple(removed),
        )

    def list_audit(self, *, role: Optional[str | Role] = None, limit: int = 50) -> list[RoleDefaultsAuditEntry]:
        statement = select(RolePermissionAudit).order_by(RolePermissionAudit.created_at.desc()).limit(limit)
        if role is not None:
            statement = statement.where(RolePermissionAudit.role == self._parse(role).value)
        return [
            RoleDefaultsAuditEntry(
                id=row.id,
                role=row.role,
                actor_user_id=row.actor_user_id,
                team_id=row.team_id,
                added=tuple(json.loads(row.added_json)),
                removed=tuple(json.loads(row.removed_json)),
                created_at=row.created_at,
            )
            for row in self.session.scalars(statement).all()
        ]
