from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator


class UserRegister(BaseModel):
    """Registration request"""

    username: str = Field(..., min_length=3, max_length=30)
    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=8, max_length=128)

    @field_validator("username", mode="before")
    @classmethod
    def normalize_username(cls, value: str) -> str:
        if isinstance(value, str):
            return value.strip()
        return value

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, value: str) -> str:
        if isinstance(value, str):
            value = value.strip().lower()
            if "@" not in value:
                raise ValueError("Invalid email address")
        return value


class UserLogin(BaseModel):
    """Password login request"""

    email: str = Field(..., min_length=1, max_length=255)
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, value: str) -> str:
        if isinstance(value, str):
            return value.strip().lower()
        return value


class UserResponse(BaseModel):
    """User info response"""

    id: int
    username: str
    email: str
    role: str
    email_verified: bool
    provider: str
    created_at: Optional[datetime] = None
    last_login: Optional[datetime] = None

    model_config = {"from_attributes": True}


class TokenPairResponse(BaseModel):
    """Access + refresh token response"""

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int  # access token lifetime in seconds
    user: Optional[UserResponse] = None


class RefreshTokenRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=128)

    @field_validator("refresh_token", mode="before")
    @classmethod
    def normalize_token(cls, value: str) -> str:
        if isinstance(value, str):
            return value.strip()
        return value


class LogoutRequest(BaseModel):
    """Logout request. A missing token still logs out successfully."""

    refresh_token: Optional[str] = Field(default=None, max_length=128)


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str = Field(..., min_length=8, max_length=128)


class ForgotPasswordRequest(BaseModel):
    email: str = Field(..., min_length=1, max_length=255)

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, value: str) -> str:
        if isinstance(value, str):
            return value.strip().lower()
        return value


class ForgotPasswordResponse(BaseModel):
    """Same answer whether or not the account exists"""

    message: str
    # There is no mail delivery: the token is handed back in dev mode only
    reset_token: Optional[str] = None


class PasswordResetRequest(BaseModel):
    new_password: str = Field(..., min_length=8, max_length=128)


class MessageResponse(BaseModel):
    message: str


class LogoutAllResponse(BaseModel):
    message: str
    sessions_revoked: int


class SessionResponse(BaseModel):
    """Active session (refresh credential) info"""

    id: int
    device_type: Optional[str] = None
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    created_at: datetime
    last_used_at: Optional[datetime] = None
    expires_at: datetime

    model_config = {"from_attributes": True}


class SessionListResponse(BaseModel):
    sessions: List[SessionResponse]
    total: int
