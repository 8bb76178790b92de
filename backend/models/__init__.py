from .auth_audit import AuthAuditLog
from .password_reset import PasswordReset
from .refresh_token import RefreshToken
from .user import User

__all__ = [
    "AuthAuditLog",
    "PasswordReset",
    "RefreshToken",
    "User",
]
