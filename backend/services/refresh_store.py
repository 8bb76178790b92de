"""Persistence of refresh credentials.

Every state change that two concurrent requests could race on is a single
conditional statement, so the database arbitrates the race:

- ``claim`` deactivates a credential only if it is still active and unexpired
  (compare-and-swap used by rotation).
- ``touch_active`` stamps last-use only on a usable credential.
- ``create`` locks the owner row before enforcing the per-user quota.

Writers that touch both a user row and its credential rows always lock the
user row first (``_lock_owner``); on PostgreSQL this keeps rotation, login,
logout-all and password changes from deadlocking each other.
"""

import logging
import secrets
from datetime import timedelta
from typing import Optional

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from config import Settings
from models.refresh_token import RefreshToken
from models.user import User, utc_now
from services.device import DeviceInfo

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_TOKEN_TTL = timedelta(days=30)
DEFAULT_REFRESH_TOKEN_LIMIT = 5


def generate_refresh_token() -> str:
    """Opaque, URL-safe refresh token string."""
    return secrets.token_urlsafe(48)


class RefreshTokenStore:
    """Refresh credential records for one database session."""

    def __init__(
        self,
        db: AsyncSession,
        ttl: timedelta = DEFAULT_REFRESH_TOKEN_TTL,
        limit: int = DEFAULT_REFRESH_TOKEN_LIMIT,
    ):
        self.db = db
        self.ttl = ttl
        self.limit = limit

    @classmethod
    def from_settings(cls, db: AsyncSession, settings: Settings) -> "RefreshTokenStore":
        return cls(
            db,
            ttl=timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS),
            limit=settings.REFRESH_TOKEN_LIMIT,
        )

    async def create(
        self,
        user_id: int,
        device_info: Optional[DeviceInfo] = None,
    ) -> RefreshToken:
        """
        Issue a new active refresh credential for a user.

        Expired and inactive records of the user are evicted first, then the
        oldest active records beyond the quota are deactivated so that exactly
        ``limit`` remain active once the new record is inserted.
        """
        device_info = device_info or DeviceInfo()
        now = utc_now()

        await self._lock_owner(user_id)
        await self.cleanup_user_tokens(user_id)
        evicted = await self.enforce_limit(user_id, keep=self.limit - 1)
        if evicted:
            logger.info(
                f"Refresh token quota reached for user {user_id}: "
                f"deactivated {evicted} oldest session(s)"
            )

        record = RefreshToken(
            token=generate_refresh_token(),
            user_id=user_id,
            expires_at=now + self.ttl,
            is_active=True,
            user_agent=device_info.user_agent[:500] if device_info.user_agent else None,
            ip_address=device_info.ip_address[:45] if device_info.ip_address else None,
            device_type=device_info.device_type.value,
            last_used_at=now,
            # Set explicitly: server-side CURRENT_TIMESTAMP has one-second
            # resolution on SQLite and quota eviction orders by creation time
            created_at=now,
        )
        self.db.add(record)
        await self.db.flush()
        return record

    async def find_active(self, token: str) -> Optional[RefreshToken]:
        """Return the credential if it exists, is active and not expired."""
        if not token:
            return None
        result = await self.db.execute(
            select(RefreshToken).where(
                and_(
                    RefreshToken.token == token,
                    RefreshToken.is_active == True,  # noqa: E712
                    RefreshToken.expires_at > utc_now(),
                )
            )
        )
        return result.scalar_one_or_none()

    async def owner_of(self, token: str) -> Optional[int]:
        """User id a token string belongs to, whatever its state."""
        if not token:
            return None
        return await self.db.scalar(
            select(RefreshToken.user_id).where(RefreshToken.token == token)
        )

    async def touch(self, credential: RefreshToken) -> bool:
        """
        Stamp the last-used time of a credential that is still usable.

        Returns:
            False if the credential stopped being usable in the meantime
        """
        now = utc_now()
        result = await self.db.execute(
            update(RefreshToken)
            .where(
                and_(
                    RefreshToken.id == credential.id,
                    RefreshToken.is_active == True,  # noqa: E712
                    RefreshToken.expires_at > now,
                )
            )
            .values(last_used_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            set_committed_value(credential, "last_used_at", now)
            return True
        return False

    async def touch_active(self, token: str) -> Optional[RefreshToken]:
        """Atomic find-active-and-touch. Returns None if the token is not usable."""
        if not token:
            return None
        now = utc_now()
        result = await self.db.execute(
            update(RefreshToken)
            .where(
                and_(
                    RefreshToken.token == token,
                    RefreshToken.is_active == True,  # noqa: E712
                    RefreshToken.expires_at > now,
                )
            )
            .values(last_used_at=now)
            .returning(RefreshToken.id)
            .execution_options(synchronize_session=False)
        )
        record_id = result.scalar_one_or_none()
        if record_id is None:
            return None
        return await self._reload(record_id)

    async def claim(self, token: str) -> Optional[RefreshToken]:
        """
        Atomically deactivate a usable credential and return it.

        Of several concurrent claims on the same token exactly one gets the
        record back; the others get None.

        The owner row is locked before the credential row, in the same order
        as ``create`` and ``deactivate_all``, so a claim followed by the
        rotation ``create`` cannot deadlock against a login or a logout-all.
        """
        if not token:
            return None
        owner_id = await self.owner_of(token)
        if owner_id is None:
            return None
        await self._lock_owner(owner_id)

        now = utc_now()
        result = await self.db.execute(
            update(RefreshToken)
            .where(
                and_(
                    RefreshToken.token == token,
                    RefreshToken.is_active == True,  # noqa: E712
                    RefreshToken.expires_at > now,
                )
            )
            .values(is_active=False, last_used_at=now)
            .returning(RefreshToken.id)
            .execution_options(synchronize_session=False)
        )
        record_id = result.scalar_one_or_none()
        if record_id is None:
            return None
        return await self._reload(record_id)

    async def deactivate(self, credential: RefreshToken) -> bool:
        """
        Deactivate a credential if it is currently active.

        Returns:
            True if this call flipped the credential, False if it was already inactive
        """
        result = await self.db.execute(
            update(RefreshToken)
            .where(
                and_(
                    RefreshToken.id == credential.id,
                    RefreshToken.is_active == True,  # noqa: E712
                )
            )
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )
        set_committed_value(credential, "is_active", False)
        return bool(result.rowcount)

    async def deactivate_token(self, token: str) -> bool:
        """Deactivate by token string. Unknown or inactive tokens are a no-op."""
        if not token:
            return False
        result = await self.db.execute(
            update(RefreshToken)
            .where(
                and_(
                    RefreshToken.token == token,
                    RefreshToken.is_active == True,  # noqa: E712
                )
            )
            .values(is_active=False)
            .execution_options(synchronize_session="evaluate")
        )
        return bool(result.rowcount)

    async def deactivate_all(self, user_id: int) -> int:
        """
        Deactivate every active credential of a user.

        Returns:
            Number of credentials deactivated
        """
        # Waits for an in-flight rotation of this user to commit its new record
        await self._lock_owner(user_id)
        result = await self.db.execute(
            update(RefreshToken)
            .where(
                and_(
                    RefreshToken.user_id == user_id,
                    RefreshToken.is_active == True,  # noqa: E712
                )
            )
            .values(is_active=False)
            .execution_options(synchronize_session="evaluate")
        )
        return result.rowcount

    async def enforce_limit(self, user_id: int, keep: Optional[int] = None) -> int:
        """
        Deactivate the oldest active credentials beyond ``keep``.

        Returns:
            Number of credentials deactivated
        """
        keep = self.limit if keep is None else max(keep, 0)
        result = await self.db.execute(
            select(RefreshToken.id)
            .where(
                and_(
                    RefreshToken.user_id == user_id,
                    RefreshToken.is_active == True,  # noqa: E712
                )
            )
            .order_by(RefreshToken.created_at.desc(), RefreshToken.id.desc())
            .offset(keep)
        )
        stale_ids = list(result.scalars().all())
        if not stale_ids:
            return 0

        await self.db.execute(
            update(RefreshToken)
            .where(RefreshToken.id.in_(stale_ids))
            .values(is_active=False)
            .execution_options(synchronize_session="evaluate")
        )
        return len(stale_ids)

    async def cleanup_user_tokens(self, user_id: int) -> int:
        """Delete a user's expired or inactive credentials."""
        result = await self.db.execute(
            select(RefreshToken.id).where(
                and_(
                    RefreshToken.user_id == user_id,
                    or_(
                        RefreshToken.expires_at <= utc_now(),
                        RefreshToken.is_active == False,  # noqa: E712
                    ),
                )
            )
        )
        return await self._delete_ids(list(result.scalars().all()))

    async def sweep_expired(self) -> int:
        """
        Delete every credential past its expiry.

        Runs from the periodic cleanup task and the admin CLI, not from
        request handlers.
        """
        result = await self.db.execute(
            select(RefreshToken.id).where(RefreshToken.expires_at <= utc_now())
        )
        removed = await self._delete_ids(list(result.scalars().all()))
        await self.db.flush()
        return removed

    async def list_active(self, user_id: int) -> list[RefreshToken]:
        """Active, unexpired sessions of a user, newest first."""
        result = await self.db.execute(
            select(RefreshToken)
            .where(
                and_(
                    RefreshToken.user_id == user_id,
                    RefreshToken.is_active == True,  # noqa: E712
                    RefreshToken.expires_at > utc_now(),
                )
            )
            .order_by(RefreshToken.created_at.desc(), RefreshToken.id.desc())
        )
        return list(result.scalars().all())

    async def _lock_owner(self, user_id: int) -> None:
        # Per-user write lock on PostgreSQL; SQLite serializes writers on its
        # own and ignores FOR UPDATE
        await self.db.execute(
            select(User.id).where(User.id == user_id).with_for_update()
        )

    async def _delete_ids(self, record_ids: list[int]) -> int:
        if not record_ids:
            return 0
        # evaluate: drop deleted rows from the identity map; SQLite may reuse their ids
        await self.db.execute(
            delete(RefreshToken)
            .where(RefreshToken.id.in_(record_ids))
            .execution_options(synchronize_session="evaluate")
        )
        return len(record_ids)

    async def _reload(self, record_id: int) -> RefreshToken:
        result = await self.db.execute(
            select(RefreshToken)
            .where(RefreshToken.id == record_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()
