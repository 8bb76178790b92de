"""Domain errors raised by the session services and rendered by the API layer."""

from typing import Optional


class AuthError(Exception):
    """
    Base class for authentication errors.

    Each subclass carries a stable ``code`` for clients and the HTTP status the
    API layer responds with. None of these are retried server-side.
    """

    code: str = "AUTH_ERROR"
    status_code: int = 401
    default_message: str = "Authentication failed"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class TokenInvalid(AuthError):
    """Malformed, expired, or wrongly signed access token."""

    code = "TOKEN_INVALID"
    default_message = "Invalid or expired token"


class TokenExpired(TokenInvalid):
    """Well-formed access token past its expiry. Same code, clearer message."""

    default_message = "Token has expired"


class UserNotFound(TokenInvalid):
    """
    Token subject no longer exists.

    Rendered exactly like TokenInvalid so account existence is not leaked.
    """


class RefreshInvalid(AuthError):
    """Refresh credential missing, expired, or inactive."""

    code = "REFRESH_TOKEN_INVALID"
    default_message = "Invalid or expired refresh token"


class AccountDeactivated(AuthError):
    code = "ACCOUNT_DEACTIVATED"
    status_code = 403
    default_message = "Account is deactivated"


class AccountLocked(AuthError):
    code = "ACCOUNT_LOCKED"
    status_code = 423
    default_message = "Account is temporarily locked due to multiple failed login attempts"


class PasswordChanged(AuthError):
    code = "PASSWORD_CHANGED"
    default_message = "Password was recently changed. Please login again."


class InvalidCredentials(AuthError):
    code = "INVALID_CREDENTIALS"
    default_message = "Invalid credentials"


class EmailAlreadyRegistered(AuthError):
    code = "EMAIL_TAKEN"
    status_code = 409
    default_message = "Email already registered"


class UsernameTaken(AuthError):
    code = "USERNAME_TAKEN"
    status_code = 409
    default_message = "Username already taken"


class ResetTokenInvalid(AuthError):
    """Password reset token unknown, already used, or expired."""

    code = "RESET_TOKEN_INVALID"
    status_code = 400
    default_message = "Invalid or expired reset token"
