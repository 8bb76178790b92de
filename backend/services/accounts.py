"""Registration, password login with lockout, password changes and resets."""

import hashlib
import logging
import secrets
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHash, VerificationError
from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config import Settings, get_settings
from models.auth_audit import AuthAuditLog
from models.password_reset import PasswordReset
from models.user import PROVIDER_LOCAL, ROLE_USER, User, as_utc, utc_now
from services.auth import AuditService, TokenPair, TokenService
from services.device import DeviceInfo
from services.errors import (
    AccountDeactivated,
    AccountLocked,
    EmailAlreadyRegistered,
    InvalidCredentials,
    ResetTokenInvalid,
    UsernameTaken,
)
from services.revocation import RevocationService

logger = logging.getLogger(__name__)

password_hasher = PasswordHasher()


def hash_password(password: str) -> str:
    return password_hasher.hash(password)


def verify_password(password_hash: Optional[str], password: str) -> bool:
    """Check a password against an argon2 hash. OAuth-only accounts never match."""
    if not password_hash:
        return False
    try:
        return password_hasher.verify(password_hash, password)
    except (VerificationError, InvalidHash):
        return False


def hash_reset_token(token: str) -> str:
    """SHA-256 digest of a reset token, the only form in which it is stored."""
    return hashlib.sha256(token.encode()).hexdigest()


@dataclass
class AccountSession:
    """A user together with the token pair just issued for them."""
    user: User
    tokens: TokenPair


class AccountService:
    """
    Account operations that start or end sessions.

    Failed logins are counted per user; reaching ``MAX_LOGIN_ATTEMPTS`` locks
    the account for ``LOCK_TIME_MINUTES``. A locked account is refused
    regardless of the password presented.
    """

    def __init__(self, db: AsyncSession, settings: Optional[Settings] = None):
        self.db = db
        self.settings = settings or get_settings()
        self.tokens = TokenService(db, self.settings)
        self.revocation = RevocationService(db, self.settings)
        self.audit = AuditService(db)

    async def register(
        self,
        username: str,
        email: str,
        password: str,
        device_info: Optional[DeviceInfo] = None,
    ) -> AccountSession:
        email = email.strip().lower()
        username = username.strip()

        if await self._get_by_email(email) is not None:
            raise EmailAlreadyRegistered()

        result = await self.db.execute(select(User).where(User.username == username))
        if result.scalar_one_or_none() is not None:
            raise UsernameTaken()

        user = User(
            username=username,
            email=email,
            password_hash=hash_password(password),
            role=ROLE_USER,
            provider=PROVIDER_LOCAL,
            password_changed_at=utc_now(),
            login_attempts=0,
        )
        self.db.add(user)
        await self.db.flush()

        tokens = await self.tokens.issue_token_pair(user, device_info)
        await self.audit.log(
            AuthAuditLog.ACTION_REGISTER,
            user_id=user.id,
            device_info=device_info,
        )
        logger.info(f"Registered user {user.id}")
        return AccountSession(user=user, tokens=tokens)

    async def login(
        self,
        email: str,
        password: str,
        device_info: Optional[DeviceInfo] = None,
    ) -> AccountSession:
        """
        Password login.

        Raises:
            InvalidCredentials: Unknown email or wrong password
            AccountLocked: Too many failed attempts; lock still in force
            AccountDeactivated: Account disabled
        """
        user = await self._get_by_email(email.strip().lower())
        if user is None:
            await self.audit.log(
                AuthAuditLog.ACTION_FAILED_LOGIN,
                device_info=device_info,
                success=False,
                error_message="Unknown email",
            )
            raise InvalidCredentials()

        if user.is_locked:
            await self.audit.log(
                AuthAuditLog.ACTION_FAILED_LOGIN,
                user_id=user.id,
                device_info=device_info,
                success=False,
                error_message="Account locked",
            )
            raise AccountLocked()

        if not user.is_active:
            raise AccountDeactivated()

        if not verify_password(user.password_hash, password):
            await self._record_failed_attempt(user, device_info)
            raise InvalidCredentials()

        user.login_attempts = 0
        user.lock_until = None
        user.last_login = utc_now()

        tokens = await self.tokens.issue_token_pair(user, device_info)
        await self.audit.log(
            AuthAuditLog.ACTION_LOGIN,
            user_id=user.id,
            device_info=device_info,
        )
        return AccountSession(user=user, tokens=tokens)

    async def change_password(
        self,
        user: User,
        current_password: str,
        new_password: str,
        device_info: Optional[DeviceInfo] = None,
    ) -> TokenPair:
        """
        Replace the password and end every existing session.

        Returns a fresh token pair for the caller, issued after the change.
        """
        if not verify_password(user.password_hash, current_password):
            raise InvalidCredentials("Current password is incorrect")

        user.password_hash = hash_password(new_password)
        revoked = await self.revocation.on_password_changed(user)

        tokens = await self.tokens.issue_token_pair(user, device_info)
        await self.audit.log(
            AuthAuditLog.ACTION_PASSWORD_CHANGE,
            user_id=user.id,
            device_info=device_info,
            metadata={"sessions_revoked": revoked},
        )
        return tokens

    async def request_password_reset(
        self,
        email: str,
        device_info: Optional[DeviceInfo] = None,
    ) -> Optional[str]:
        """
        Hand out a single-use password reset token.

        Issuing a token retires every earlier unused token of the user. Unknown
        or deactivated accounts and users over the hourly request limit get
        None; callers answer the same way in every case so that account
        existence is not revealed.

        Returns:
            The raw token, or None if no token was issued
        """
        user = await self._get_by_email(email.strip().lower())
        if user is None or not user.is_active:
            logger.info("Password reset requested for an unknown or inactive account")
            return None

        now = utc_now()
        window_start = now - timedelta(hours=1)
        recent = await self.db.scalar(
            select(func.count())
            .select_from(PasswordReset)
            .where(
                and_(
                    PasswordReset.user_id == user.id,
                    PasswordReset.created_at > window_start,
                )
            )
        )
        if recent >= self.settings.PASSWORD_RESET_MAX_PER_HOUR:
            logger.warning(f"Password reset limit reached for user {user.id}")
            await self.audit.log(
                AuthAuditLog.ACTION_PASSWORD_RESET_REQUEST,
                user_id=user.id,
                device_info=device_info,
                success=False,
                error_message="Too many reset requests",
            )
            return None

        await self._cleanup_resets(user.id, before=window_start)
        await self.db.execute(
            update(PasswordReset)
            .where(
                and_(
                    PasswordReset.user_id == user.id,
                    PasswordReset.used_at.is_(None),
                )
            )
            .values(used_at=now)
            .execution_options(synchronize_session="evaluate")
        )

        device_info = device_info or DeviceInfo()
        token = secrets.token_urlsafe(32)
        self.db.add(
            PasswordReset(
                user_id=user.id,
                token_hash=hash_reset_token(token),
                expires_at=now + timedelta(minutes=self.settings.PASSWORD_RESET_EXPIRE_MINUTES),
                ip_address=device_info.ip_address[:45] if device_info.ip_address else None,
                user_agent=device_info.user_agent[:500] if device_info.user_agent else None,
                created_at=now,
            )
        )
        await self.db.flush()

        await self.audit.log(
            AuthAuditLog.ACTION_PASSWORD_RESET_REQUEST,
            user_id=user.id,
            device_info=device_info,
        )
        logger.info(f"Password reset token issued for user {user.id}")
        return token

    async def reset_password(
        self,
        token: str,
        new_password: str,
        device_info: Optional[DeviceInfo] = None,
    ) -> User:
        """
        Redeem a reset token.

        Sets the new password, lifts any failed-login lock and ends every
        session of the user. Unlike ``change_password`` no tokens are issued:
        the user logs in again with the new password.

        Raises:
            ResetTokenInvalid: Token unknown, already used or expired
            AccountDeactivated: Account disabled; the token stays unused
        """
        if not token:
            raise ResetTokenInvalid()
        token_hash = hash_reset_token(token)

        user_id = await self.db.scalar(
            select(PasswordReset.user_id).where(PasswordReset.token_hash == token_hash)
        )
        if user_id is None:
            raise ResetTokenInvalid()

        # Owner row first, as for refresh credentials
        result = await self.db.execute(
            select(User)
            .where(User.id == user_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        user = result.scalar_one_or_none()
        if user is None:
            raise ResetTokenInvalid()
        if not user.is_active:
            raise AccountDeactivated()

        now = utc_now()
        result = await self.db.execute(
            update(PasswordReset)
            .where(
                and_(
                    PasswordReset.token_hash == token_hash,
                    PasswordReset.used_at.is_(None),
                    PasswordReset.expires_at > now,
                )
            )
            .values(used_at=now)
            .returning(PasswordReset.id)
            .execution_options(synchronize_session=False)
        )
        if result.scalar_one_or_none() is None:
            logger.warning(f"Used or expired reset token presented for user {user.id}")
            raise ResetTokenInvalid()

        was_locked = user.is_locked
        user.password_hash = hash_password(new_password)
        user.login_attempts = 0
        user.lock_until = None
        revoked = await self.revocation.on_password_changed(user)

        await self.audit.log(
            AuthAuditLog.ACTION_PASSWORD_RESET,
            user_id=user.id,
            device_info=device_info,
            metadata={"sessions_revoked": revoked},
        )
        if was_locked:
            await self.audit.log(
                AuthAuditLog.ACTION_ACCOUNT_UNLOCKED,
                user_id=user.id,
                device_info=device_info,
            )
        logger.info(f"Password reset for user {user.id}: {revoked} session(s) ended")
        return user

    async def unlock(self, user_id: int) -> Optional[User]:
        """Administrative reset of the failed-login counter and lock."""
        user = await self.db.get(User, user_id)
        if user is None:
            return None

        user.login_attempts = 0
        user.lock_until = None
        await self.db.flush()
        await self.audit.log(AuthAuditLog.ACTION_ACCOUNT_UNLOCKED, user_id=user.id)
        return user

    async def _record_failed_attempt(
        self,
        user: User,
        device_info: Optional[DeviceInfo],
    ) -> None:
        now = utc_now()
        lock_until = as_utc(user.lock_until)

        if lock_until is not None and lock_until <= now:
            # Previous lock ran out: start counting again
            user.login_attempts = 1
            user.lock_until = None
        else:
            user.login_attempts = (user.login_attempts or 0) + 1

        locked = False
        if user.login_attempts >= self.settings.MAX_LOGIN_ATTEMPTS and not user.is_locked:
            user.lock_until = now + timedelta(minutes=self.settings.LOCK_TIME_MINUTES)
            locked = True

        await self.db.flush()

        await self.audit.log(
            AuthAuditLog.ACTION_FAILED_LOGIN,
            user_id=user.id,
            device_info=device_info,
            success=False,
            error_message="Invalid password",
            metadata={"attempts": user.login_attempts},
        )
        if locked:
            logger.warning(
                f"User {user.id} locked after {user.login_attempts} failed login attempts"
            )
            await self.audit.log(
                AuthAuditLog.ACTION_ACCOUNT_LOCKED,
                user_id=user.id,
                device_info=device_info,
                success=False,
            )

    async def _cleanup_resets(self, user_id: int, before) -> int:
        """Delete used or expired reset tokens created before ``before``."""
        result = await self.db.execute(
            select(PasswordReset.id).where(
                and_(
                    PasswordReset.user_id == user_id,
                    PasswordReset.created_at <= before,
                    or_(
                        PasswordReset.used_at.is_not(None),
                        PasswordReset.expires_at <= utc_now(),
                    ),
                )
            )
        )
        stale_ids = list(result.scalars().all())
        if stale_ids:
            await self.db.execute(
                delete(PasswordReset)
                .where(PasswordReset.id.in_(stale_ids))
                .execution_options(synchronize_session="evaluate")
            )
        return len(stale_ids)

    async def _get_by_email(self, email: str) -> Optional[User]:
        result = await self.db.execute(select(User).where(User.email == email))
        return result.scalar_one_or_none()
