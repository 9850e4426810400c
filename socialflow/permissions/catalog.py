"""Permission codes known to the product and their catalog seed."""

from __future__ import annotations

from typing import Dict

from sqlalchemy import select
from sqlalchemy.orm import Session

from socialflow.core.logger import get_logger
from socialflow.storage.models import Permission


logger = get_logger("socialflow.permissions.catalog")

CONTENT_CREATE = "content.create"
CONTENT_EDIT_OWN = "content.edit.own"
CONTENT_EDIT_ANY = "content.edit.any"
CONTENT_DELETE_OWN = "content.delete.own"
CONTENT_DELETE_ANY = "content.delete.any"
CONTENT_PUBLISH_OWN = "content.publish.own"
CONTENT_PUBLISH_ANY = "content.publish.any"
CONTENT_APPROVE = "content.approve"
CONTENT_SCHEDULE = "content.schedule"
MEDIA_UPLOAD = "media.upload"
MEDIA_DELETE_OWN = "media.delete.own"
MEDIA_DELETE_ANY = "media.delete.any"
ACCOUNT_CONNECT = "account.connect"
ACCOUNT_DISCONNECT = "account.disconnect"
ACCOUNT_MANAGE = "account.manage"
ANALYTICS_VIEW = "analytics.view"
ANALYTICS_EXPORT = "analytics.export"
INBOX_VIEW = "inbox.view"
INBOX_REPLY = "inbox.reply"
ORG_MEMBERS_VIEW = "org.members.view"
ORG_MEMBERS_INVITE = "org.members.invite"
TEAM_MANAGE = "team.manage"
PERMISSIONS_MANAGE = "permissions.manage"
WORKFLOW_CREATE = "workflow.create"
WORKFLOW_UPDATE = "workflow.update"

PERMISSION_DESCRIPTIONS: Dict[str, str] = {
    CONTENT_CREATE: "Create posts",
    CONTENT_EDIT_OWN: "Edit own posts",
    CONTENT_EDIT_ANY: "Edit any post in the team",
    CONTENT_DELETE_OWN: "Delete own posts",
    CONTENT_DELETE_ANY: "Delete any post in the team",
    CONTENT_PUBLISH_OWN: "Publish own posts",
    CONTENT_PUBLISH_ANY: "Publish any post in the team",
    CONTENT_APPROVE: "Review posts in approval workflows",
    CONTENT_SCHEDULE: "Schedule posts",
    MEDIA_UPLOAD: "Upload media",
    MEDIA_DELETE_OWN: "Delete own media",
    MEDIA_DELETE_ANY: "Delete any media in the team",
    ACCOUNT_CONNECT: "Connect social accounts",
    ACCOUNT_DISCONNECT: "Disconnect social accounts",
    ACCOUNT_MANAGE: "Manage social account settings",
    ANALYTICS_VIEW: "View analytics",
    ANALYTICS_EXPORT: "Export analytics",
    INBOX_VIEW: "View the social inbox",
    INBOX_REPLY: "Reply from the social inbox",
    ORG_MEMBERS_VIEW: "View team members",
    ORG_MEMBERS_INVITE: "Invite team members",
    TEAM_MANAGE: "Manage team roles and settings",
    PERMISSIONS_MANAGE: "Grant and deny member permissions",
    WORKFLOW_CREATE: "Create approval workflows",
    WORKFLOW_UPDATE: "Update approval workflows",
}

ALL_PERMISSION_CODES = frozenset(PERMISSION_DESCRIPTIONS)


def seed_permission_catalog(session: Session) -> int:
    """Insert missing catalog permissions and refresh descriptions.

    Returns the number of permissions created. Does not commit.
    """

    existing = {permission.code: permission for permission in session.scalars(select(Permission)).all()}
    created = 0
    for code, description in sorted(PERMISSION_DESCRIPTIONS.items()):
        permission = existing.get(code)
        if permission is None:
            session.add(Permission(code=code, description=description))
            created += 1
        elif permission.description != description:
            permission.description = description
    session.flush()

    if created:
        logger.info("permission_catalog_seeded", created=created)
    return created


def get_permissions_by_code(session: Session, codes) -> Dict[str, Permission]:
    wanted = sorted(set(codes))
    if not wanted:
        return {}
    rows = session.scalars(select(Permission).where(Permission.code.in_(wanted))).all()
    return {row.code: row for row in rows}


def list_catalog_codes(session: Session) -> frozenset[str]:
    return frozenset(session.scalars(select(Permission.code)).all())
