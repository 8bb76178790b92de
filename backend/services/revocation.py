"""Invalidation of refresh credentials."""

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from config import Settings, get_settings
from models.user import User, utc_now
from services.refresh_store import RefreshTokenStore

logger = logging.getLogger(__name__)


class RevocationService:
    """
    Logout, logout everywhere, and the password-change hook.

    All operations are idempotent: revoking something already revoked is not
    an error.
    """

    def __init__(self, db: AsyncSession, settings: Optional[Settings] = None):
        self.db = db
        self.store = RefreshTokenStore.from_settings(db, settings or get_settings())

    async def logout(self, refresh_token: str) -> bool:
        """
        Deactivate exactly one refresh credential.

        Returns:
            True if a credential was deactivated by this call
        """
        revoked = await self.store.deactivate_token(refresh_token)
        if revoked:
            logger.info("Refresh token revoked on logout")
        return revoked

    async def logout_all(self, user_id: int) -> int:
        """Deactivate every active refresh credential of a user."""
        count = await self.store.deactivate_all(user_id)
        logger.info(f"Revoked {count} refresh token(s) for user {user_id}")
        return count

    async def on_password_changed(self, user: User) -> int:
        """
        Stamp the password change and end every session of the user.

        Access tokens issued before the stamp are rejected from now on with
        ``PasswordChanged``; refresh credentials are deactivated.
        """
        user.password_changed_at = utc_now()
        await self.db.flush()
        return await self.logout_all(user.id)
