"""Application exception hierarchy.

Every error carries an HTTP status and a stable machine-readable code; the
exception handler in main.py renders them as
``{"success": false, "error": {"code": ..., "message": ...}}``.
"""

from typing import Optional


class AppError(Exception):
    """Base exception for all application errors."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str = "Internal server error", code: Optional[str] = None):
        if code is not None:
            self.code = code
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class AuthError(AppError):
    """Authentication failed (401)."""

    status_code = 401
    code = "UNAUTHORIZED"


class TokenMissing(AuthError):
    code = "TOKEN_MISSING"

    def __init__(self, message: str = "Authentication token required"):
        super().__init__(message)


class TokenExpired(AuthError):
    """Correctly signed token past its expiry. Recoverable through a refresh."""

    code = "TOKEN_EXPIRED"

    def __init__(self, message: str = "Token expired"):
        super().__init__(message)


class TokenInvalid(AuthError):
    """Malformed token, bad signature, missing claims or wrong token type."""

    code = "TOKEN_INVALID"

    def __init__(self, message: str = "Invalid token"):
        super().__init__(message)


class RefreshExhausted(AuthError):
    """Refresh token expired, revoked, unknown or already consumed."""

    code = "INVALID_REFRESH_TOKEN"

    def __init__(self, message: str = "Invalid refresh token", code: Optional[str] = None):
        super().__init__(message, code)


class InvalidCredentials(AuthError):
    code = "INVALID_CREDENTIALS"

    def __init__(self, message: str = "Invalid email or password"):
        super().__init__(message)


class SessionTerminated(AuthError):
    """Client-side terminal error: the session cannot be recovered."""

    code = "SESSION_EXPIRED"

    def __init__(self, message: str = "Session expired, please log in again"):
        super().__init__(message)


class AccountInactive(AppError):
    status_code = 403
    code = "ACCOUNT_INACTIVE"

    def __init__(self, message: str = "Account is disabled", code: Optional[str] = None):
        super().__init__(message, code)


class Forbidden(AppError):
    status_code = 403
    code = "FORBIDDEN"

    def __init__(self, message: str = "Access denied"):
        super().__init__(message)


class NotFound(AppError):
    status_code = 404
    code = "NOT_FOUND"

    def __init__(self, message: str = "Resource not found"):
        super().__init__(message)


class Conflict(AppError):
    status_code = 409
    code = "EMAIL_EXISTS"

    def __init__(self, message: str = "Email already registered", code: Optional[str] = None):
        super().__init__(message, code)


class ValidationFailed(AppError):
    status_code = 400
    code = "VALIDATION_ERROR"

    def __init__(self, message: str = "Invalid request"):
        super().__init__(message)
