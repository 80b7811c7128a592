from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``
    that clients can branch on.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class BadRequestError(ServiceError):
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    status_code = 409
    error_code = "conflict"


class LockedError(ServiceError):
    """Account or factor temporarily locked (423)."""

    status_code = 423
    error_code = "locked"


class RateLimitedError(ServiceError):
    status_code = 429
    error_code = "rate_limited"


class AuthErrorKind(str, Enum):
    """Stable failure kinds returned by the auth services."""

    INVALID_CREDENTIALS = "invalid_credentials"
    ACCOUNT_LOCKED = "account_locked"
    ACCOUNT_SUSPENDED = "account_suspended"
    ACCOUNT_DELETED = "account_deleted"
    EMAIL_NOT_VERIFIED = "email_not_verified"
    INVALID_TWO_FACTOR_CODE = "invalid_two_factor_code"
    TWO_FACTOR_LOCKED = "two_factor_locked"
    TOKEN_EXPIRED = "token_expired"
    TOKEN_NOT_FOUND = "token_not_found"
    PASSWORD_REUSED = "password_reused"
    PASSWORD_TOO_WEAK = "password_too_weak"
    RATE_LIMITED = "rate_limited"
    CONFLICT = "conflict"
    INVALID_STATE = "invalid_state"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"


_KIND_TO_ERROR: Dict[AuthErrorKind, type[ServiceError]] = {
    AuthErrorKind.INVALID_CREDENTIALS: AuthenticationError,
    AuthErrorKind.ACCOUNT_LOCKED: LockedError,
    AuthErrorKind.ACCOUNT_SUSPENDED: ForbiddenError,
    AuthErrorKind.ACCOUNT_DELETED: ForbiddenError,
    AuthErrorKind.EMAIL_NOT_VERIFIED: ForbiddenError,
    AuthErrorKind.INVALID_TWO_FACTOR_CODE: AuthenticationError,
    AuthErrorKind.TWO_FACTOR_LOCKED: LockedError,
    AuthErrorKind.TOKEN_EXPIRED: AuthenticationError,
    AuthErrorKind.TOKEN_NOT_FOUND: AuthenticationError,
    AuthErrorKind.PASSWORD_REUSED: BadRequestError,
    AuthErrorKind.PASSWORD_TOO_WEAK: BadRequestError,
    AuthErrorKind.RATE_LIMITED: RateLimitedError,
    AuthErrorKind.CONFLICT: ConflictError,
    AuthErrorKind.INVALID_STATE: BadRequestError,
    AuthErrorKind.FORBIDDEN: ForbiddenError,
    AuthErrorKind.NOT_FOUND: NotFoundError,
}


@dataclass
class AuthFailure:
    """Explicit failure value; services return these instead of raising."""

    kind: AuthErrorKind
    message: str
    details: Dict[str, Any] = field(default_factory=dict)

    def to_error(self) -> ServiceError:
        error_cls = _KIND_TO_ERROR[self.kind]
        detail = {"kind": self.kind.value, **self.details}
        return error_cls(self.message, detail=detail)


def failure(kind: AuthErrorKind, message: str, **details: Any) -> AuthFailure:
    return AuthFailure(kind=kind, message=message, details=details)


__all__ = [
    "ServiceError",
    "BadRequestError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "LockedError",
    "RateLimitedError",
    "AuthErrorKind",
    "AuthFailure",
    "failure",
]
