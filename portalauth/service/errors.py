from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries a stable machine-readable ``error_code`` and the
    HTTP ``status_code`` it is rendered with. Credential and validation
    errors are 4xx; ``StoreUnavailableError`` is 503 and must never be
    caught to admit a request.
    """

    status_code: int = 400
    error_code: str = "validation_failed"

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
    error_code = "validation_failed"


class InvalidCredentialsError(ServiceError):
    """Email/password pair rejected (401). Never says which part was wrong."""
    status_code = 401
    error_code = "invalid_credentials"


class AccountInactiveError(ServiceError):
    """Account exists but is deactivated (403)."""
    status_code = 403
    error_code = "account_inactive"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidTokenError(AuthenticationError):
    """Presented token cannot be accepted (401)."""
    error_code = "invalid_token"


class TokenMalformedError(InvalidTokenError):
    error_code = "token_malformed"


class TokenSignatureInvalidError(InvalidTokenError):
    error_code = "token_signature_invalid"


class TokenExpiredError(InvalidTokenError):
    error_code = "token_expired"


class TokenNotYetValidError(InvalidTokenError):
    error_code = "token_not_yet_valid"


class TokenRevokedError(InvalidTokenError):
    """Token is cryptographically valid but was revoked."""
    error_code = "token_revoked"


class TokenReuseDetectedError(InvalidTokenError):
    """An already-rotated refresh token was presented again."""
    error_code = "token_reuse_detected"


class SessionExpiredError(InvalidTokenError):
    """Session record is gone (expired or logged out)."""
    error_code = "session_expired"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class SessionNotFoundError(NotFoundError):
    error_code = "session_not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitExceededError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limit_exceeded"

    def __init__(self, message: str, *, retry_after: int = 1, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = max(1, int(retry_after))
        self.detail.setdefault("retry_after", self.retry_after)


class ResetTokenInvalidError(ServiceError):
    """Reset token unknown, already used or invalidated (400)."""
    status_code = 400
    error_code = "reset_token_invalid"


class ResetTokenExpiredError(ServiceError):
    status_code = 400
    error_code = "reset_token_expired"


class ResetTokenExhaustedError(ServiceError):
    """Security-question attempts for this reset token are used up (400)."""
    status_code = 400
    error_code = "reset_token_exhausted"


class InvalidSecurityAnswerError(ServiceError):
    status_code = 400
    error_code = "invalid_answer"


class StoreUnavailableError(ServiceError):
    """Backing key-value store timed out or is unreachable (503)."""
    status_code = 503
    error_code = "store_unavailable"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


ERROR_CODES = frozenset(
    cls.error_code
    for cls in (
        ServiceError,
        ValidationError,
        InvalidCredentialsError,
        AccountInactiveError,
        AuthenticationError,
        InvalidTokenError,
        TokenMalformedError,
        TokenSignatureInvalidError,
        TokenExpiredError,
        TokenNotYetValidError,
        TokenRevokedError,
        TokenReuseDetectedError,
        SessionExpiredError,
        ForbiddenError,
        NotFoundError,
        SessionNotFoundError,
        ConflictError,
        RateLimitExceededError,
        ResetTokenInvalidError,
        ResetTokenExpiredError,
        ResetTokenExhaustedError,
        InvalidSecurityAnswerError,
        StoreUnavailableError,
        ServerError,
    )
)


__all__ = [
    "ERROR_CODES",
    "ServiceError",
    "ValidationError",
    "InvalidCredentialsError",
    "AccountInactiveError",
    "AuthenticationError",
    "InvalidTokenError",
    "TokenMalformedError",
    "TokenSignatureInvalidError",
    "TokenExpiredError",
    "TokenNotYetValidError",
    "TokenRevokedError",
    "TokenReuseDetectedError",
    "SessionExpiredError",
    "ForbiddenError",
    "NotFoundError",
    "SessionNotFoundError",
    "ConflictError",
    "RateLimitExceededError",
    "ResetTokenInvalidError",
    "ResetTokenExpiredError",
    "ResetTokenExhaustedError",
    "InvalidSecurityAnswerError",
    "StoreUnavailableError",
    "ServerError",
]
