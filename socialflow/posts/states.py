"""Canonical post statuses used by the approval flow."""

from __future__ import annotations

from typing import Tuple


POST_STATUS_DRAFT = "draft"
POST_STATUS_SCHEDULED = "scheduled"
POST_STATUS_PUBLISHED = "published"
POST_STATUS_FAILED = "failed"

# Posts stay in draft while under review; approval makes them schedulable.
POST_STATUS_AWAITING_SCHEDULE = POST_STATUS_DRAFT
POST_STATUS_SCHEDULABLE = POST_STATUS_SCHEDULED

POST_STATUSES: Tuple[str, ...] = (
    POST_STATUS_DRAFT,
    POST_STATUS_SCHEDULED,
    POST_STATUS_PUBLISHED,
    POST_STATUS_FAILED,
)
SUBMITTABLE_POST_STATUSES: Tuple[str, ...] = (
    POST_STATUS_DRAFT,
    POST_STATUS_SCHEDULED,
)
