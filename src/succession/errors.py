"""Error kinds raised inside the succession core.

Business-rule violations are raised as SuccessionError subclasses and
caught at the service facade, which turns them into typed ServiceResult
failures. Each subclass carries an ErrorKind so the boundary layer can
map it to a transport status without parsing messages.
"""

from __future__ import annotations

import enum


class ErrorKind(str, enum.Enum):
    """Classification of a failed operation."""
    NOT_FOUND = "not_found"
    VALIDATION = "validation"
    INVALID_STATE = "invalid_state"
    CONFLICT = "conflict"
    FORBIDDEN = "forbidden"

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS[self]


_HTTP_STATUS: dict[ErrorKind, int] = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.VALIDATION: 400,
    ErrorKind.INVALID_STATE: 409,
    ErrorKind.CONFLICT: 409,
    ErrorKind.FORBIDDEN: 403,
}


class SuccessionError(Exception):
    """Base class for all business-rule violations."""
    kind: ErrorKind = ErrorKind.VALIDATION


class NotFoundError(SuccessionError):
    kind = ErrorKind.NOT_FOUND


class ValidationError(SuccessionError):
    kind = ErrorKind.VALIDATION


class InvalidStateError(SuccessionError):
    kind = ErrorKind.INVALID_STATE


class ConflictError(SuccessionError):
    kind = ErrorKind.CONFLICT


class ForbiddenError(SuccessionError):
    kind = ErrorKind.FORBIDDEN
