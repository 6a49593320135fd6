"""Domain errors shared by the store, services and API layers."""

from __future__ import annotations

from fastapi import status


class CoreError(Exception):
    """Base class for errors that map onto a client-visible error kind."""

    code = "INTERNAL"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_detail = "Internal error"

    def __init__(self, detail: str | None = None) -> None:
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class UnauthenticatedError(CoreError):
    code = "UNAUTHENTICATED"
    status_code = status.HTTP_401_UNAUTHORIZED
    default_detail = "Could not validate credentials"


class ForbiddenError(CoreError):
    code = "FORBIDDEN"
    status_code = status.HTTP_403_FORBIDDEN
    default_detail = "Not allowed"


class NotFoundError(CoreError):
    code = "NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Not found"


class ConflictError(CoreError):
    code = "CONFLICT"
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Conflicting state"


class ActiveSessionExistsError(ConflictError):
    code = "ACTIVE_SESSION_EXISTS"
    default_detail = "A participant already has an active session"


class StaleError(CoreError):
    """A compare-and-set lost against a concurrent transition."""

    code = "ALREADY_HANDLED"
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Already handled"


class ValidationFailedError(CoreError):
    code = "VALIDATION_FAILED"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    default_detail = "Invalid request"


__all__ = [
    "ActiveSessionExistsError",
    "ConflictError",
    "CoreError",
    "ForbiddenError",
    "NotFoundError",
    "StaleError",
    "UnauthenticatedError",
    "ValidationFailedError",
]
