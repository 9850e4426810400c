"""Approval instance/assignment statuses and the instance transition table."""

from __future__ import annotations

from enum import Enum
from typing import Dict, Iterable, Optional, Tuple


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    APPROVED = "approved"
    REJECTED = "rejected"


class AssignmentStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class ReviewOutcome(str, Enum):
    REJECTED = "rejected"
    WAITING_FOR_OTHERS = "waiting_for_others"
    APPROVED = "approved"
    MOVED_TO_NEXT_STEP = "moved_to_next_step"


class ApprovalEvent(str, Enum):
    SUBMIT = "submit"
    ADVANCE = "advance"
    COMPLETE = "complete"
    REJECT = "reject"
    RESUBMIT = "resubmit"


class StepProgress(str, Enum):
    ALL_APPROVED = "all_approved"
    WAITING = "waiting"
    REJECTED = "rejected"


TERMINAL_STATUSES = frozenset({ApprovalStatus.APPROVED, ApprovalStatus.REJECTED})
ACTIVE_STATUSES = frozenset({ApprovalStatus.PENDING, ApprovalStatus.IN_PROGRESS})

TRANSITIONS: Dict[Tuple[ApprovalStatus, ApprovalEvent], ApprovalStatus] = {
    (ApprovalStatus.PENDING, ApprovalEvent.SUBMIT): ApprovalStatus.IN_PROGRESS,
    (ApprovalStatus.IN_PROGRESS, ApprovalEvent.ADVANCE): ApprovalStatus.IN_PROGRESS,
    (ApprovalStatus.IN_PROGRESS, ApprovalEvent.COMPLETE): ApprovalStatus.APPROVED,
    (ApprovalStatus.IN_PROGRESS, ApprovalEvent.REJECT): ApprovalStatus.REJECTED,
    (ApprovalStatus.REJECTED, ApprovalEvent.RESUBMIT): ApprovalStatus.IN_PROGRESS,
}


class IllegalTransition(ValueError):
    def __init__(self, status: ApprovalStatus, event: ApprovalEvent) -> None:
        self.status = status
        self.event = event
        super().__init__(f"Cannot apply {event.value} to an instance in status {status.value}")


def next_status(status: str | ApprovalStatus, event: ApprovalEvent) -> ApprovalStatus:
    current = ApprovalStatus(status)
    target = TRANSITIONS.get((current, event))
    if target is None:
        raise IllegalTransition(current, event)
    return target


def is_terminal(status: str | ApprovalStatus) -> bool:
    return ApprovalStatus(status) in TERMINAL_STATUSES


def step_progress(statuses: Iterable[str | AssignmentStatus]) -> StepProgress:
    """Summarize the assignments of one step.

    Any rejection wins. Otherwise the step is complete only when every
    assignment is approved; an empty step is never complete.
    """

    normalized = [AssignmentStatus(value) for value in statuses]
    if any(value == AssignmentStatus.REJECTED for value in normalized):
        return StepProgress.REJECTED
    if normalized and all(value == AssignmentStatus.APPROVED for value in normalized):
        return StepProgress.ALL_APPROVED
    return StepProgress.WAITING


def next_step_order(orders: Iterable[int], current: int) -> Optional[int]:
    """Smallest step order strictly greater than ``current``."""

    later = [order for order in orders if order > current]
    return min(later) if later else None
