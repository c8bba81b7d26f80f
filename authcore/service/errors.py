from __future__ import annotations

from datetime import datetime
from typing import List, Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Every named failure carries an HTTP ``status_code`` and a stable
    ``error_code`` that clients can branch on:
    - invalid_credentials (401)
    - token_invalid (401)
    - user_not_found (404)
    - email_already_exists (409)
    - account_locked (423)
    - rate_limited (429)
    - weak_password / validation_error (400)
    - server_error (500)
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


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class WeakPasswordError(ValidationError):
    """Password rejected by the strength policy (400)."""
    error_code = "weak_password"

    def __init__(self, errors: List[str], *, score: int = 0) -> None:
        super().__init__(
            "password does not meet strength requirements",
            detail={"errors": list(errors), "score": score},
        )
        self.errors = list(errors)
        self.score = score


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Unknown email or wrong password; the two are indistinguishable (401)."""
    error_code = "invalid_credentials"

    def __init__(self, message: str = "invalid email or password") -> None:
        super().__init__(message)


class TokenInvalidError(AuthenticationError):
    """Token is unknown, expired, revoked or not owned by the caller (401)."""
    error_code = "token_invalid"

    def __init__(self, message: str = "invalid or expired token") -> None:
        super().__init__(message)


class AccountLockedError(ServiceError):
    """Account temporarily locked after repeated failures (423)."""
    status_code = 423
    error_code = "account_locked"

    def __init__(self, locked_until: datetime) -> None:
        super().__init__(
            "account temporarily locked",
            detail={"locked_until": locked_until.isoformat()},
        )
        self.locked_until = locked_until


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class UserNotFoundError(NotFoundError):
    error_code = "user_not_found"

    def __init__(self, message: str = "user not found") -> None:
        super().__init__(message)


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class EmailAlreadyExistsError(ConflictError):
    error_code = "email_already_exists"

    def __init__(self, message: str = "email already registered") -> None:
        super().__init__(message)


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(
        self,
        message: str = "too many requests",
        *,
        headers: Optional[dict] = None,
        retry_after: Optional[int] = None,
    ) -> None:
        detail = {"retry_after": retry_after} if retry_after is not None else None
        super().__init__(message, detail=detail)
        self.headers = headers or {}


class BackupError(ServiceError):
    """Backup could not be written, read or verified (400)."""
    status_code = 400
    error_code = "backup_error"


class DecryptionKeyRequiredError(BackupError):
    error_code = "decryption_key_required"


class IntegrityViolationError(BackupError):
    error_code = "integrity_violation"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "WeakPasswordError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "TokenInvalidError",
    "AccountLockedError",
    "NotFoundError",
    "UserNotFoundError",
    "ConflictError",
    "EmailAlreadyExistsError",
    "RateLimitedError",
    "BackupError",
    "DecryptionKeyRequiredError",
    "IntegrityViolationError",
    "ServerError",
]
