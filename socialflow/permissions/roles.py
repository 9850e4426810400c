"""Built-in team roles and the membership authorization basis."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Union


class Role(str, Enum):
    OWNER = "owner"
    MANAGER = "manager"
    SUPERVISOR = "supervisor"
    CONTENT_CREATOR = "content_creator"
    INTERNAL_REVIEWER = "internal_reviewer"
    CLIENT_REVIEWER = "client_reviewer"
    ANALYST = "analyst"
    INBOX_AGENT = "inbox_agent"


class MemberStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"


class InvitationStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


OWNER_ROLE = Role.OWNER
DEFAULT_FALLBACK_ROLE = Role.CONTENT_CREATOR


@dataclass(frozen=True)
class BuiltinRole:
    role: Role


@dataclass(frozen=True)
class CustomRoleBasis:
    custom_role_id: str


AuthorizationBasis = Union[BuiltinRole, CustomRoleBasis]


def parse_role(value: str) -> Role:
    """Return the enum member for a role name, case-insensitively."""

    normalized = str(value or "").strip().lower()
    try:
        return Role(normalized)
    except ValueError as exc:
        raise ValueError(f"Unknown role: {value}") from exc
