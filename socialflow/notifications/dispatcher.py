"""Outbox dispatcher guarded by a Redis lock."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import json
from typing import Any, Dict, Optional
import uuid

from redis import Redis
from sqlalchemy import select
from sqlalchemy.orm import Session

from socialflow.core.config import Settings, get_settings
from socialflow.core.logger import get_logger
from socialflow.core.metrics import record_notification_dispatch
from socialflow.notifications.email_client import EmailClientError, ResendClient
from socialflow.notifications.outbox import (
    KIND_APPROVAL_APPROVED,
    KIND_APPROVAL_REJECTED,
    KIND_APPROVAL_REQUESTED,
    KIND_TEAM_INVITATION,
    OUTBOX_STATUS_FAILED,
    OUTBOX_STATUS_PENDING,
    OUTBOX_STATUS_SENT,
)
from socialflow.storage.models import NotificationOutbox, User


logger = get_logger("socialflow.notifications")

DISPATCH_LOCK_KEY = "socialflow:notifications:dispatch:lock"
RELEASE_LOCK_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
  return redis.call("del", KEYS[1])
end
return 0
"""


@dataclass(frozen=True)
class DispatchLockHandle:
    manager: "DispatchLockManager"
    token: str
    key: str

    def release(self) -> bool:
        return self.manager.release(self.token)


class DispatchLockManager:
    """Single dispatcher lock using Redis SET NX EX with token-checked release."""

    def __init__(self, redis_client: Redis, *, ttl_seconds: int = 120, key: str = DISPATCH_LOCK_KEY) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self._redis = redis_client
        self._ttl_seconds = ttl_seconds
        self._key = key

    def acquire(self) -> DispatchLockHandle | None:
        token = str(uuid.uuid4())
        acquired = self._redis.set(self._key, token, nx=True, ex=self._ttl_seconds)
        if not acquired:
            return None
        return DispatchLockHandle(manager=self, token=token, key=self._key)

    def release(self, token: str) -> bool:
        released = self._redis.eval(RELEASE_LOCK_SCRIPT, 1, self._key, token)
        return int(released) == 1


@dataclass(frozen=True)
class DispatchReport:
    acquired: bool
    sent: int = 0
    retried: int = 0
    failed: int = 0


def render_message(kind: str, payload: Dict[str, Any], *, public_base_url: str) -> tuple[str, str]:
    base_url = public_base_url.rstrip("/")
    post_id = payload.get("post_id", "")
    if kind == KIND_APPROVAL_REQUESTED:
        excerpt = payload.get("excerpt") or ""
        return (
            "A post is waiting for your review",
            f"A post needs your approval.\n\n{excerpt}\n\nReview it at {base_url}/approvals",
        )
    if kind == KIND_APPROVAL_APPROVED:
        return (
            "Your post was approved",
            f"Your post {post_id} passed every approval step and can now be scheduled.",
        )
    if kind == KIND_APPROVAL_REJECTED:
        feedback = payload.get("feedback") or "No feedback was provided."
        return (
            "Your post needs changes",
            f"Your post {post_id} was rejected.\n\nFeedback: {feedback}",
        )
    if kind == KIND_TEAM_INVITATION:
        team_name = payload.get("team_name") or "a team"
        role = str(payload.get("role") or "member").replace("_", " ")
        accept_url = payload.get("accept_url") or f"{base_url}/invitations"
        return (
            f"You are invited to join {team_name}",
            f"You have been invited to join {team_name} as {role}.\n\nAccept the invitation at {accept_url}",
        )
    raise EmailClientError(f"unsupported_notification_kind kind={kind}")


class NotificationDispatcher:
    def __init__(
        self,
        session: Session,
        *,
        redis_client: Redis,
        email_client: ResendClient,
        settings: Optional[Settings] = None,
    ) -> None:
        self._session = session
        self._email_client = email_client
        self._settings = settings or get_settings()
        self._locks = DispatchLockManager(redis_client, ttl_seconds=self._settings.notification_lock_ttl_seconds)

    def _recipient_email(self, row: NotificationOutbox) -> Optional[str]:
        if row.recipient_email:
            return row.recipient_email
        if row.recipient_user_id is None:
            return None
        user = self._session.get(User, row.recipient_user_id)
        return user.email if user is not None else None

    def _deliver(self, row: NotificationOutbox) -> None:
        email = self._recipient_email(row)
        if not email:
            raise EmailClientError("notification_recipient_missing")
        subject, text = render_message(
            row.kind,
            json.loads(row.payload_json or "{}"),
            public_base_url=self._settings.app_public_base_url,
        )
        self._email_client.send_email(
            from_address=self._settings.email_from_address,
            to=[email],
            subject=subject,
            text=text,
            tags={"kind": row.kind},
        )

    def dispatch_pending(self, *, limit: Optional[int] = None) -> DispatchReport:
        handle = self._locks.acquire()
        if handle is None:
            logger.info("notification_dispatch_skipped", reason="lock_held")
            return DispatchReport(acquired=False)

        sent = retried = failed = 0
        try:
            batch_size = limit or self._settings.notification_batch_size
            rows = self._session.scalars(
                select(NotificationOutbox)
                .where(NotificationOutbox.status == OUTBOX_STATUS_PENDING)
                .order_by(NotificationOutbox.created_at, NotificationOutbox.id)
                .limit(batch_size)
            ).all()

            for row in rows:
                now = datetime.now(timezone.utc)
                try:
                    self._deliver(row)
                except EmailClientError as exc:
                    row.attempts += 1
                    row.last_error = str(exc)[:255]
                    row.updated_at = now
                    if row.attempts >= self._settings.notification_max_attempts:
                        row.status = OUTBOX_STATUS_FAILED
                        failed += 1
                    else:
                        retried += 1
                    self._session.commit()
                    record_notification_dispatch(kind=row.kind, status=row.status)
                    logger.warning(
                        "notification_delivery_failed",
                        notification_id=row.id,
                        kind=row.kind,
                        attempts=row.attempts,
                        status=row.status,
                        error=row.last_error,
                    )
                    continue

                row.status = OUTBOX_STATUS_SENT
                row.attempts += 1
                row.sent_at = now
                row.updated_at = now
                row.last_error = None
                self._session.commit()
                sent += 1
                record_notification_dispatch(kind=row.kind, status=OUTBOX_STATUS_SENT)
        finally:
            handle.release()

        logger.info("notification_dispatch_completed", sent=sent, retried=retried, failed=failed)
        return DispatchReport(acquired=True, sent=sent, retried=retried, failed=failed)
