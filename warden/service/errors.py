from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    """Machine-readable error codes returned by every auth operation."""

    VALIDATION_FAILED = "VALIDATION_FAILED"
    PASSWORD_TOO_WEAK = "PASSWORD_TOO_WEAK"
    CONFIRMATION_REQUIRED = "CONFIRMATION_REQUIRED"

    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    INVALID_ASSERTION = "INVALID_ASSERTION"
    EMAIL_MISMATCH = "EMAIL_MISMATCH"
    INVALID_CURRENT_PASSWORD = "INVALID_CURRENT_PASSWORD"
    ACCOUNT_DISABLED = "ACCOUNT_DISABLED"

    NO_ALTERNATE_AUTH = "NO_ALTERNATE_AUTH"
    PASSWORD_ALREADY_EXISTS = "PASSWORD_ALREADY_EXISTS"
    PASSWORD_REUSED = "PASSWORD_REUSED"
    NO_PASSWORD_SET = "NO_PASSWORD_SET"
    FEDERATED_ID_IN_USE = "FEDERATED_ID_IN_USE"
    EMAIL_ALREADY_REGISTERED = "EMAIL_ALREADY_REGISTERED"

    REFRESH_INVALID = "REFRESH_INVALID"
    REFRESH_EXPIRED = "REFRESH_EXPIRED"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    TOKEN_INVALID = "TOKEN_INVALID"
    RESET_TOKEN_INVALID = "RESET_TOKEN_INVALID"

    USER_NOT_FOUND = "USER_NOT_FOUND"
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"

    RATE_LIMITED = "RATE_LIMITED"

    DEPENDENCY_UNAVAILABLE = "DEPENDENCY_UNAVAILABLE"


_DEFAULT_MESSAGES = {
    ErrorCode.VALIDATION_FAILED: "Request validation failed",
    ErrorCode.PASSWORD_TOO_WEAK: "Password does not meet security requirements",
    ErrorCode.CONFIRMATION_REQUIRED: "Explicit confirmation is required for this operation",
    ErrorCode.INVALID_CREDENTIALS: "Invalid email or password",
    ErrorCode.INVALID_ASSERTION: "Identity assertion could not be verified",
    ErrorCode.EMAIL_MISMATCH: "Identity email does not match the account email",
    ErrorCode.INVALID_CURRENT_PASSWORD: "Current password is incorrect",
    ErrorCode.ACCOUNT_DISABLED: "Account is disabled",
    ErrorCode.NO_ALTERNATE_AUTH: "Account would be left without a sign-in method",
    ErrorCode.PASSWORD_ALREADY_EXISTS: "Account already has a password",
    ErrorCode.PASSWORD_REUSED: "Password was used recently",
    ErrorCode.NO_PASSWORD_SET: "Account has no password",
    ErrorCode.FEDERATED_ID_IN_USE: "Identity is already linked to another account",
    ErrorCode.EMAIL_ALREADY_REGISTERED: "Email is already registered",
    ErrorCode.REFRESH_INVALID: "Refresh token is invalid",
    ErrorCode.REFRESH_EXPIRED: "Refresh token has expired",
    ErrorCode.TOKEN_EXPIRED: "Access token has expired",
    ErrorCode.TOKEN_INVALID: "Access token is invalid",
    ErrorCode.RESET_TOKEN_INVALID: "Reset token is invalid or has expired",
    ErrorCode.USER_NOT_FOUND: "User not found",
    ErrorCode.SESSION_NOT_FOUND: "Session not found",
    ErrorCode.RATE_LIMITED: "Too many attempts; try again later",
    ErrorCode.DEPENDENCY_UNAVAILABLE: "Authentication backend temporarily unavailable",
}


class ServiceError(Exception):
    """Base class for auth-layer failures.

    Each subclass fixes a taxonomy ``category`` and an HTTP-equivalent
    ``status_code``; the concrete ``code`` identifies the failure for clients.
    """

    status_code: int = 400
    category: str = "validation"

    def __init__(
        self,
        code: ErrorCode,
        message: Optional[str] = None,
        *,
        detail: Optional[dict] = None,
        status_code: Optional[int] = None,
    ) -> None:
        self.code = ErrorCode(code)
        self.message = message or _DEFAULT_MESSAGES.get(self.code, self.code.value)
        super().__init__(self.message)
        if status_code is not None:
            self.status_code = status_code
        self.detail = detail or {}

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.code.value!r})"


class ValidationError(ServiceError):
    """Malformed input; safe to show detail to the caller (400)."""
    status_code = 400
    category = "validation"


class CredentialError(ServiceError):
    """Credential or assertion rejected (401)."""
    status_code = 401
    category = "credential"


class TokenError(ServiceError):
    """Access or refresh token rejected (401)."""
    status_code = 401
    category = "token"


class NotFoundError(ServiceError):
    """Referenced user or session does not exist (404)."""
    status_code = 404
    category = "not_found"


class StateConflictError(ServiceError):
    """Requested transition would violate an account invariant (409)."""
    status_code = 409
    category = "state_conflict"


class RateLimitError(ServiceError):
    """Too many attempts; carries a retry-after hint in seconds (429)."""
    status_code = 429
    category = "rate_limit"

    def __init__(
        self,
        retry_after: int,
        message: Optional[str] = None,
        *,
        detail: Optional[dict] = None,
    ) -> None:
        self.retry_after = max(0, int(retry_after))
        merged = {"retry_after": self.retry_after, **(detail or {})}
        super().__init__(ErrorCode.RATE_LIMITED, message, detail=merged)


class DependencyError(ServiceError):
    """Identity provider, hashing backend, or lock unavailable; retryable (503)."""
    status_code = 503
    category = "dependency"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        detail: Optional[dict] = None,
    ) -> None:
        super().__init__(ErrorCode.DEPENDENCY_UNAVAILABLE, message, detail=detail)


__all__ = [
    "ErrorCode",
    "ServiceError",
    "ValidationError",
    "CredentialError",
    "TokenError",
    "NotFoundError",
    "StateConflictError",
    "RateLimitError",
    "DependencyError",
]
