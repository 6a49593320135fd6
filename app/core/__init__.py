"""Core utilities for the matchmaking backend."""

from .errors import (
    ActiveSessionExistsError,
    ConflictError,
    CoreError,
    ForbiddenError,
    NotFoundError,
    StaleError,
    UnauthenticatedError,
    ValidationFailedError,
)

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
