"""Service error taxonomy with stable codes for the HTTP boundary."""

from __future__ import annotations

from typing import Any, Dict, Optional


class ServiceError(RuntimeError):
    """Base class for failures surfaced to API callers."""

    status_code = 500
    default_code = "internal_error"

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details: Dict[str, Any] = dict(details or {})

    def to_payload(self) -> Dict[str, Any]:
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
            }
        }


class UnauthorizedError(ServiceError):
    status_code = 401
    default_code = "unauthorized"


class ForbiddenError(ServiceError):
    status_code = 403
    default_code = "forbidden"


class NotFoundError(ServiceError):
    status_code = 404
    default_code = "not_found"


class ValidationError(ServiceError):
    status_code = 422
    default_code = "validation_error"


class ConflictError(ServiceError):
    status_code = 409
    default_code = "conflict"


class RateLimitedError(ServiceError):
    status_code = 429
    default_code = "rate_limited"


class InternalError(ServiceError):
    status_code = 500
    default_code = "internal_error"


class NotAMember(NotFoundError):
    """Raised when a user has no membership in the requested team."""

    default_code = "not_a_member"

    def __init__(self, *, user_id: str, team_id: str) -> None:
        super().__init__(
            "User is not a member of this team",
            details={"user_id": user_id, "team_id": team_id},
        )


class PermissionNotFound(NotFoundError):
    default_code = "permission_not_found"

    def __init__(self, code: str) -> None:
        super().__init__(f"Permission {code} not found", details={"permission": code})


class EmptyWorkflow(ValidationError):
    default_code = "empty_workflow"

    def __init__(self, workflow_id: str) -> None:
        super().__init__("Workflow must have at least one step", details={"workflow_id": workflow_id})


class AlreadyInApproval(ConflictError):
    default_code = "already_in_approval"

    def __init__(self, post_id: str) -> None:
        super().__init__("Post is already in an approval process", details={"post_id": post_id})
