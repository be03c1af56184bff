"""Domain error taxonomy surfaced by services and mapped to HTTP responses."""

from __future__ import annotations

from fastapi import status


class TaskShareError(Exception):
    """Base class for expected, user-facing failures."""

    code = "error"
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Request failed"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_detail(self) -> dict[str, str]:
        return {"code": self.code, "message": self.message}


class ValidationError(TaskShareError):
    """Malformed or missing required input."""

    code = "validation_error"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    default_message = "Invalid input"


class AuthorizationError(TaskShareError):
    """The caller's identity fails the policy predicate for the operation."""

    code = "forbidden"
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "Not allowed"


class NotFoundError(TaskShareError):
    """Row does not exist or is not visible to the caller."""

    code = "not_found"
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Not found"


class ProviderError(TaskShareError):
    """The storage, auth, or notification backend failed or is unreachable."""

    code = "provider_unavailable"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_message = "Backend provider unavailable"
