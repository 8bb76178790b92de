"""Token issuance, verification and refresh for the session lifecycle."""

import json
import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config import Settings, get_settings
from db.database import get_db
from models.auth_audit import AuthAuditLog
from models.user import User
from services.device import DeviceInfo
from services.errors import (
    AccountDeactivated,
    AccountLocked,
    AuthError,
    PasswordChanged,
    RefreshInvalid,
    TokenInvalid,
    UserNotFound,
)
from services.refresh_store import RefreshTokenStore
from services.token_codec import AccessClaims, TokenCodec

security = HTTPBearer(auto_error=False)
logger = logging.getLogger(__name__)


@dataclass
class TokenPair:
    """Represents a pair of access and refresh tokens."""
    access_token: str
    refresh_token: str
    expires_in: int  # access token lifetime in seconds


@dataclass
class RefreshResult:
    access_token: str
    refresh_token: str
    expires_in: int
    user: User


@dataclass
class AuthContext:
    """Authenticated principal of a request."""
    user: User
    claims: AccessClaims


class TokenService:
    """
    Issues, verifies and refreshes tokens.

    Access tokens are stateless; refresh credentials live in the
    ``refresh_tokens`` table and go through ``RefreshTokenStore``.
    """

    def __init__(self, db: AsyncSession, settings: Optional[Settings] = None):
        self.db = db
        self.settings = settings or get_settings()
        self.codec = TokenCodec.from_settings(self.settings)
        self.store = RefreshTokenStore.from_settings(db, self.settings)

    def create_access_token(self, user: User) -> str:
        return self.codec.issue(
            AccessClaims(
                user_id=user.id,
                role=user.role,
                email_verified=bool(user.email_verified),
                email=user.email,
            )
        )

    async def issue_token_pair(
        self,
        user: User,
        device_info: Optional[DeviceInfo] = None,
    ) -> TokenPair:
        """
        Create a new access token and exactly one new refresh credential.

        Used after registration, password login and OAuth sign-in. The
        per-user refresh credential quota is enforced by the store.
        """
        access_token = self.create_access_token(user)
        record = await self.store.create(user.id, device_info)

        return TokenPair(
            access_token=access_token,
            refresh_token=record.token,
            expires_in=self.settings.access_token_expires_in,
        )

    async def authenticate(self, access_token: str) -> AuthContext:
        """
        Validate an access token presented on a protected request.

        Checks, in order: signature and claims, user existence, account
        active, account not locked, token not older than the last password
        change.

        Raises:
            TokenInvalid, TokenExpired, UserNotFound, AccountDeactivated,
            AccountLocked, PasswordChanged
        """
        claims = self.codec.verify(access_token)

        user = await self._load_user(claims.user_id)
        if user is None:
            raise UserNotFound()

        if not user.is_active:
            raise AccountDeactivated()

        if user.is_locked:
            raise AccountLocked()

        if user.changed_password_after(claims.issued_at):
            raise PasswordChanged()

        return AuthContext(user=user, claims=claims)

    async def refresh(
        self,
        refresh_token: str,
        device_info: Optional[DeviceInfo] = None,
    ) -> RefreshResult:
        """
        Exchange a refresh credential for a new access token.

        With rotation enabled the presented credential is claimed
        (deactivated) atomically and a new one is issued; of two concurrent
        refreshes with the same credential exactly one succeeds. Without
        rotation the credential is touched and returned unchanged.

        Raises:
            RefreshInvalid: Credential unknown, inactive or expired
            AccountDeactivated: Owner account is deactivated
        """
        rotate = self.settings.ROTATE_REFRESH_TOKENS

        if rotate:
            record = await self.store.claim(refresh_token)
        else:
            record = await self.store.touch_active(refresh_token)

        if record is None:
            logger.warning("Refresh attempted with unknown, inactive or expired token")
            raise RefreshInvalid()

        user = await self._load_user(record.user_id)
        if user is None:
            raise RefreshInvalid()

        if not user.is_active:
            # Under rotation the claimed credential stays deactivated
            logger.warning(f"Refresh refused for deactivated user {user.id}")
            raise AccountDeactivated()

        access_token = self.create_access_token(user)

        if rotate:
            device_info = device_info or DeviceInfo(
                user_agent=record.user_agent,
                ip_address=record.ip_address,
            )
            new_record = await self.store.create(user.id, device_info)
            new_refresh_token = new_record.token
        else:
            new_refresh_token = record.token

        return RefreshResult(
            access_token=access_token,
            refresh_token=new_refresh_token,
            expires_in=self.settings.access_token_expires_in,
            user=user,
        )

    async def _load_user(self, user_id: int) -> Optional[User]:
        # populate_existing: account state may have changed in another session
        result = await self.db.execute(
            select(User)
            .where(User.id == user_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()


class AuditService:
    """Service for logging authentication events."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def log(
        self,
        action: str,
        user_id: Optional[int] = None,
        device_info: Optional[DeviceInfo] = None,
        success: bool = True,
        error_message: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> AuthAuditLog:
        """Log an authentication event."""
        device_info = device_info or DeviceInfo()
        log_entry = AuthAuditLog(
            user_id=user_id,
            action=action,
            ip_address=device_info.ip_address[:45] if device_info.ip_address else None,
            user_agent=device_info.user_agent[:500] if device_info.user_agent else None,
            success=success,
            error_message=error_message,
            metadata_json=json.dumps(metadata) if metadata else None,
        )
        self.db.add(log_entry)
        await self.db.flush()
        return log_entry


def get_client_info(request: Request) -> DeviceInfo:
    """Extract client IP and User-Agent from request."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        ip_address = forwarded_for.split(",")[0].strip()
    else:
        real_ip = request.headers.get("X-Real-IP")
        if real_ip:
            ip_address = real_ip.strip()
        elif request.client:
            ip_address = request.client.host
        else:
            ip_address = None

    return DeviceInfo(
        user_agent=request.headers.get("User-Agent"),
        ip_address=ip_address or None,
    )


async def get_auth_context(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AsyncSession = Depends(get_db),
) -> AuthContext:
    """Dependency that authenticates the bearer access token of a request."""
    if credentials is None or not credentials.credentials:
        raise TokenInvalid("Could not validate credentials")

    return await TokenService(db).authenticate(credentials.credentials.strip())


async def get_current_user(
    context: AuthContext = Depends(get_auth_context),
) -> User:
    """Dependency to get current authenticated user from JWT token."""
    return context.user


async def get_optional_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AsyncSession = Depends(get_db),
) -> Optional[User]:
    """
    Dependency to get current user if authenticated, or None if not.

    Any authentication failure (bad, expired or stale token, locked or
    deactivated account) is treated as anonymous instead of a 401.
    """
    if credentials is None or not credentials.credentials:
        return None

    try:
        context = await TokenService(db).authenticate(credentials.credentials.strip())
    except AuthError as e:
        logger.debug(f"Optional authentication ignored: {e.code}")
        return None
    return context.user
