"""Role-default permission store.

Defaults are declared in a YAML file, validated, seeded into the
``role_permissions`` table and read back through a per-process cache keyed by
role. Cache entries are tagged with a version counter kept in Redis; every
writer bumps the counter after its commit, so all workers drop their entries
on the next read. Entries also expire after
``ROLE_DEFAULTS_CACHE_TTL_SECONDS``. When Redis cannot be read, the cache is
bypassed and every lookup goes to the database.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from threading import Lock
import time
from typing import Dict, List, Optional

import yaml
from pydantic import BaseModel, field_validator
from redis.exceptions import RedisError
from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from socialflow.core.config import get_settings
from socialflow.core.logger import get_logger
from socialflow.permissions.catalog import ALL_PERMISSION_CODES, get_permissions_by_code
from socialflow.permissions.roles import OWNER_ROLE, Role
from socialflow.storage.models import Permission, RolePermission
from socialflow.storage.redis_client import get_client


logger = get_logger("socialflow.permissions.role_defaults")

ROLE_DEFAULTS_VERSION_KEY = "socialflow:role_defaults:version"


@dataclass(frozen=True)
class _CacheEntry:
    version: str
    codes: frozenset[str]
    expires_at: float


_cache: Dict[str, _CacheEntry] = {}
_cache_lock = Lock()


class RoleDefaultsFile(BaseModel):
    version: int = 1
    roles: Dict[Role, List[str]]

    @field_validator("roles")
    @classmethod
    def _check_roles(cls, value: Dict[Role, List[str]]) -> Dict[Role, List[str]]:
        if OWNER_ROLE in value:
            raise ValueError("owner permissions are implicit and cannot be configured")
        for role, codes in value.items():
            unknown = sorted(set(codes) - ALL_PERMISSION_CODES)
            if unknown:
                raise ValueError(f"Unknown permission codes for {role.value}: {', '.join(unknown)}")
        return {role: sorted(set(codes)) for role, codes in value.items()}


def _resolve_defaults_path() -> Path:
    settings = get_settings()
    configured = Path(settings.role_permissions_file_path)
    if configured.is_absolute():
        return configured
    from_cwd = Path.cwd() / configured
    if from_cwd.exists():
        return from_cwd
    return Path(__file__).resolve().parents[2] / configured


@lru_cache(maxsize=1)
def load_role_defaults() -> Dict[Role, List[str]]:
    path = _resolve_defaults_path()
    with path.open("r", encoding="utf-8") as file:
        content = yaml.safe_load(file) or {}
    if not isinstance(content, dict):
        raise ValueError("Invalid role permissions file format")
    return RoleDefaultsFile.model_validate(content).roles


def seed_role_defaults(session: Session, *, reset: bool = False) -> int:
    """Write the configured defaults into ``role_permissions``.

    Missing pairs are inserted. With ``reset`` each configured role is synced
    to exactly the configured set. Returns the number of rows inserted. Does
    not commit; the caller bumps the shared version once it has. Expects the
    permission catalog to be seeded.
    """

    defaults = load_role_defaults()
    all_codes = sorted({code for codes in defaults.values() for code in codes})
    permissions = get_permissions_by_code(session, all_codes)
    missing = sorted(set(all_codes) - set(permissions))
    if missing:
        raise ValueError(f"Permission catalog is missing codes: {', '.join(missing)}")

    inserted = 0
    for role, codes in defaults.items():
        existing_ids = set(
            session.scalars(select(RolePermission.permission_id).where(RolePermission.role == role.value)).all()
        )
        wanted_ids = {permissions[code].id for code in codes}
        if reset and existing_ids - wanted_ids:
            session.execute(
                delete(RolePermission).where(
                    RolePermission.role == role.value,
                    RolePermission.permission_id.in_(sorted(existing_ids - wanted_ids)),
                )
            )
        for permission_id in sorted(wanted_ids - existing_ids):
            session.add(RolePermission(role=role.value, permission_id=permission_id))
            inserted += 1
    session.flush()

    logger.info("role_defaults_seeded", inserted=inserted, reset=reset)
    return inserted


def current_role_defaults_version() -> Optional[str]:
    """Return the shared role-defaults version, or None when Redis is unreachable."""

    try:
        value = get_client().get(ROLE_DEFAULTS_VERSION_KEY)
    except RedisError as exc:
        logger.warning("role_defaults_version_unavailable", error=str(exc))
        return None
    return "0" if value is None else str(value)


def bump_role_defaults_version() -> None:
    """Mark every cached role-default set stale, in this process and all others.

    Call after the transaction that changed ``role_permissions`` has committed.
    """

    invalidate_role_defaults_cache()
    try:
        version = get_client().incr(ROLE_DEFAULTS_VERSION_KEY)
    except RedisError as exc:
        # Other workers keep their entries until the TTL runs out.
        logger.error("role_defaults_version_bump_failed", error=str(exc))
        return
    logger.info("role_defaults_version_bumped", version=int(version))


def get_role_default_codes(session: Session, role: str | Role) -> frozenset[str]:
    key = Role(role).value
    ttl_seconds = get_settings().role_defaults_cache_ttl_seconds
    # Read the version before the query: a set loaded just before a concurrent
    # write is stored under the old version and is never served afterwards.
    version = current_role_defaults_version()
    if version is not None:
        with _cache_lock:
            entry = _cache.get(key)
        if entry is not None and entry.version == version and time.monotonic() < entry.expires_at:
            return entry.codes

    codes = frozenset(
        session.scalars(
            select(Permission.code)
            .join(RolePermission, RolePermission.permission_id == Permission.id)
            .where(RolePermission.role == key)
        ).all()
    )
    if version is not None and ttl_seconds > 0:
        with _cache_lock:
            _cache[key] = _CacheEntry(version=version, codes=codes, expires_at=time.monotonic() + ttl_seconds)
    return codes


def invalidate_role_defaults_cache() -> None:
    """Drop this process's cached sets. Other workers are reached through bump_role_defaults_version()."""

    with _cache_lock:
        _cache.clear()
