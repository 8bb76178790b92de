"""
Tests for refresh credential persistence: quota, compare-and-swap, sweeps.
"""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import event, func, select

from models.refresh_token import RefreshToken
from models.user import as_utc, utc_now
from services.device import DeviceInfo
from services.refresh_store import RefreshTokenStore


async def _expire(db, record: RefreshToken) -> None:
    record.expires_at = utc_now() - timedelta(seconds=1)
    await db.flush()


class TestCreate:

    @pytest.mark.asyncio
    async def test_create_active_record(self, db_session, sample_user):
        """Test a new record is active, unexpired and carries device metadata."""
        store = RefreshTokenStore(db_session)
        device = DeviceInfo(user_agent="Mozilla/5.0 (iPhone)", ip_address="10.1.2.3")

        record = await store.create(sample_user.id, device)

        assert record.is_active is True
        assert len(record.token) >= 64
        assert record.device_type == "mobile"
        assert record.ip_address == "10.1.2.3"
        remaining = as_utc(record.expires_at) - utc_now()
        assert timedelta(days=29, hours=23) < remaining <= timedelta(days=30)

    @pytest.mark.asyncio
    async def test_tokens_are_unique(self, db_session, sample_user):
        store = RefreshTokenStore(db_session)
        tokens = {(await store.create(sample_user.id)).token for _ in range(3)}
        assert len(tokens) == 3

    @pytest.mark.asyncio
    async def test_ttl_from_settings(self, db_session, sample_user, settings):
        store = RefreshTokenStore.from_settings(
            db_session, settings.model_copy(update={"REFRESH_TOKEN_EXPIRE_DAYS": 7})
        )
        record = await store.create(sample_user.id)
        remaining = as_utc(record.expires_at) - utc_now()
        assert timedelta(days=6, hours=23) < remaining <= timedelta(days=7)

    @pytest.mark.asyncio
    async def test_quota_keeps_newest(self, db_session, sample_user):
        """Test the (limit+1)-th create deactivates the oldest active record."""
        store = RefreshTokenStore(db_session, limit=5)
        records = [await store.create(sample_user.id) for _ in range(6)]

        active = await store.list_active(sample_user.id)
        assert len(active) == 5
        assert {r.token for r in active} == {r.token for r in records[1:]}
        assert await store.find_active(records[0].token) is None

    @pytest.mark.asyncio
    async def test_quota_is_per_user(self, db_session, make_user):
        first = await make_user()
        second = await make_user()
        store = RefreshTokenStore(db_session, limit=2)

        for _ in range(3):
            await store.create(first.id)
        await store.create(second.id)

        assert len(await store.list_active(first.id)) == 2
        assert len(await store.list_active(second.id)) == 1

    @pytest.mark.asyncio
    async def test_create_evicts_expired_and_inactive(self, db_session, sample_user):
        """Test dead records of the user are deleted on the next create."""
        store = RefreshTokenStore(db_session)
        expired = await store.create(sample_user.id)
        revoked = await store.create(sample_user.id)
        await _expire(db_session, expired)
        await store.deactivate(revoked)
        dead_tokens = [expired.token, revoked.token]

        await store.create(sample_user.id)

        # Match on token strings: SQLite hands deleted ids to new rows
        result = await db_session.execute(
            select(RefreshToken.id).where(RefreshToken.token.in_(dead_tokens))
        )
        assert result.scalars().all() == []


class TestLookup:

    @pytest.mark.asyncio
    async def test_find_active(self, db_session, sample_user):
        store = RefreshTokenStore(db_session)
        record = await store.create(sample_user.id)

        found = await store.find_active(record.token)
        assert found is not None
        assert found.id == record.id

    @pytest.mark.asyncio
    async def test_find_active_ignores_inactive_and_expired(self, db_session, sample_user):
        store = RefreshTokenStore(db_session)
        inactive = await store.create(sample_user.id)
        expired = await store.create(sample_user.id)
        await store.deactivate(inactive)
        await _expire(db_session, expired)

        assert await store.find_active(inactive.token) is None
        assert await store.find_active(expired.token) is None
        assert await store.find_active("no-such-token") is None
        assert await store.find_active("") is None

    @pytest.mark.asyncio
    async def test_list_active_newest_first(self, db_session, sample_user):
        store = RefreshTokenStore(db_session)
        records = [await store.create(sample_user.id) for _ in range(3)]

        active = await store.list_active(sample_user.id)
        assert [r.id for r in active] == [r.id for r in reversed(records)]


class TestTouch:

    @pytest.mark.asyncio
    async def test_touch_stamps_last_used(self, db_session, sample_user):
        store = RefreshTokenStore(db_session)
        record = await store.create(sample_user.id)
        before = as_utc(record.last_used_at)

        await asyncio.sleep(0.01)
        assert await store.touch(record) is True
        assert as_utc(record.last_used_at) > before

    @pytest.mark.asyncio
    async def test_touch_refuses_inactive(self, db_session, sample_user):
        store = RefreshTokenStore(db_session)
        record = await store.create(sample_user.id)
        await store.deactivate(record)

        assert await store.touch(record) is False

    @pytest.mark.asyncio
    async def test_touch_active_by_token(self, db_session, sample_user):
        store = RefreshTokenStore(db_session)
        record = await store.create(sample_user.id)

        touched = await store.touch_active(record.token)
        assert touched is not None
        assert touched.id == record.id
        assert touched.is_active is True

        await store.deactivate(record)
        assert await store.touch_active(record.token) is None


class TestDeactivation:

    @pytest.mark.asyncio
    async def test_deactivate_is_compare_and_swap(self, db_session, sample_user):
        """Test only the first deactivation reports the flip."""
        store = RefreshTokenStore(db_session)
        record = await store.create(sample_user.id)

        assert await store.deactivate(record) is True
        assert await store.deactivate(record) is False
        assert record.is_active is False

    @pytest.mark.asyncio
    async def test_deactivate_token(self, db_session, sample_user):
        store = RefreshTokenStore(db_session)
        record = await store.create(sample_user.id)

        assert await store.deactivate_token(record.token) is True
        assert await store.deactivate_token(record.token) is False
        assert await store.deactivate_token("unknown") is False

    @pytest.mark.asyncio
    async def test_claim_once(self, db_session, sample_user):
        """Test a credential can be claimed exactly once."""
        store = RefreshTokenStore(db_session)
        record = await store.create(sample_user.id)

        claimed = await store.claim(record.token)
        assert claimed is not None
        assert claimed.id == record.id
        assert claimed.is_active is False

        assert await store.claim(record.token) is None
        assert await store.find_active(record.token) is None

    @pytest.mark.asyncio
    async def test_claim_refuses_expired(self, db_session, sample_user):
        store = RefreshTokenStore(db_session)
        record = await store.create(sample_user.id)
        await _expire(db_session, record)

        assert await store.claim(record.token) is None

    @pytest.mark.asyncio
    async def test_deactivate_all_is_idempotent(self, db_session, make_user):
        owner = await make_user()
        bystander = await make_user()
        store = RefreshTokenStore(db_session)
        for _ in range(3):
            await store.create(owner.id)
        await store.create(bystander.id)

        assert await store.deactivate_all(owner.id) == 3
        assert await store.deactivate_all(owner.id) == 0
        assert await store.list_active(owner.id) == []
        assert len(await store.list_active(bystander.id)) == 1

    @pytest.mark.asyncio
    async def test_concurrent_claims_have_one_winner(self, session_factory, sample_user):
        """Test two sessions racing to claim the same token: exactly one wins."""
        user_id = sample_user.id
        async with session_factory() as setup:
            token = (await RefreshTokenStore(setup).create(user_id)).token
            await setup.commit()

        async def attempt():
            async with session_factory() as db:
                claimed = await RefreshTokenStore(db).claim(token)
                # Hold the write transaction open while the other attempt waits
                await asyncio.sleep(0.05)
                await db.commit()
                return claimed

        results = await asyncio.gather(attempt(), attempt())
        assert sum(r is not None for r in results) == 1


class TestLockOrder:
    """The owner row is locked before any write to its credential rows."""

    @staticmethod
    def _capture(engine) -> list[str]:
        statements: list[str] = []

        @event.listens_for(engine.sync_engine, "before_cursor_execute")
        def record(conn, cursor, statement, parameters, context, executemany):
            statements.append(" ".join(statement.split()))

        return statements

    @staticmethod
    def _first(statements: list[str], prefix: str) -> int:
        return next(i for i, s in enumerate(statements) if s.startswith(prefix))

    @pytest.mark.asyncio
    async def test_claim_locks_owner_first(self, engine, db_session, sample_user):
        store = RefreshTokenStore(db_session)
        record = await store.create(sample_user.id)
        await db_session.commit()

        statements = self._capture(engine)
        assert await store.claim(record.token) is not None

        lock = self._first(statements, "SELECT users.id FROM users")
        write = self._first(statements, "UPDATE refresh_tokens")
        assert lock < write

    @pytest.mark.asyncio
    async def test_claim_unknown_token_takes_no_lock(self, engine, db_session):
        statements = self._capture(engine)
        assert await RefreshTokenStore(db_session).claim("never-issued") is None
        assert not any(s.startswith("SELECT users.id") for s in statements)

    @pytest.mark.asyncio
    async def test_deactivate_all_locks_owner_first(self, engine, db_session, sample_user):
        store = RefreshTokenStore(db_session)
        await store.create(sample_user.id)
        await db_session.commit()

        statements = self._capture(engine)
        assert await store.deactivate_all(sample_user.id) == 1

        lock = self._first(statements, "SELECT users.id FROM users")
        write = self._first(statements, "UPDATE refresh_tokens")
        assert lock < write

    @pytest.mark.asyncio
    async def test_owner_of(self, db_session, sample_user):
        store = RefreshTokenStore(db_session)
        record = await store.create(sample_user.id)
        await store.deactivate(record)

        assert await store.owner_of(record.token) == sample_user.id
        assert await store.owner_of("never-issued") is None
        assert await store.owner_of("") is None


class TestSweep:

    @pytest.mark.asyncio
    async def test_sweep_deletes_only_expired(self, db_session, make_user):
        first = await make_user()
        second = await make_user()
        store = RefreshTokenStore(db_session)

        live = await store.create(first.id)
        inactive = await store.create(first.id)
        expired = [await store.create(second.id), await store.create(first.id)]
        # Deactivate after the last create, which would evict it otherwise
        await store.deactivate(inactive)
        for record in expired:
            await _expire(db_session, record)

        assert await store.sweep_expired() == 2

        count = await db_session.scalar(select(func.count()).select_from(RefreshToken))
        assert count == 2
        assert await store.find_active(live.token) is not None
        remaining = await db_session.scalar(
            select(func.count())
            .select_from(RefreshToken)
            .where(RefreshToken.token == inactive.token)
        )
        assert remaining == 1

    @pytest.mark.asyncio
    async def test_sweep_nothing_to_do(self, db_session, sample_user):
        store = RefreshTokenStore(db_session)
        await store.create(sample_user.id)
        assert await store.sweep_expired() == 0
