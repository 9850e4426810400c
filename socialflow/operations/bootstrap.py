"""Idempotent seeding of the permission catalog and built-in role defaults."""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.orm import Session

from socialflow.core.logger import get_logger
from socialflow.permissions.catalog import seed_permission_catalog
from socialflow.permissions.role_defaults import bump_role_defaults_version, seed_role_defaults
from socialflow.storage.db import transaction


logger = get_logger("socialflow.operations.bootstrap")


@dataclass(frozen=True)
class SeedReport:
    permissions_created: int
    role_permissions_created: int


def seed_authorization(session: Session, *, reset_role_defaults: bool = False) -> SeedReport:
    with transaction(session):
        permissions_created = seed_permission_catalog(session)
        role_permissions_created = seed_role_defaults(session, reset=reset_role_defaults)
    bump_role_defaults_version()

    logger.info(
        "authorization_seeded",
        permissions_created=permissions_created,
        role_permissions_created=role_permissions_created,
        reset_role_defaults=reset_role_defaults,
    )
    return SeedReport(
        permissions_created=permissions_created,
        role_permissions_created=role_permissions_created,
    )
