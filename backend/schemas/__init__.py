from .user import (
    LogoutAllResponse,
    LogoutRequest,
    MessageResponse,
    PasswordChangeRequest,
    RefreshTokenRequest,
    SessionListResponse,
    SessionResponse,
    TokenPairResponse,
    UserLogin,
    UserRegister,
    UserResponse,
)

__all__ = [
    # Requests
    "LogoutRequest",
    "PasswordChangeRequest",
    "RefreshTokenRequest",
    "UserLogin",
    "UserRegister",
    # Responses
    "LogoutAllResponse",
    "MessageResponse",
    "SessionListResponse",
    "SessionResponse",
    "TokenPairResponse",
    "UserResponse",
]
