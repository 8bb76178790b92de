"""
Tests for the client-side single-flight refresh coordinator and credential stores.
"""

import asyncio
import os
import stat
from datetime import timedelta

import pytest

from client.coordinator import NotAuthenticated, RefreshCoordinator, RefreshState
from client.credentials import Credentials, FileCredentialStore, MemoryCredentialStore
from services.token_codec import AccessClaims, TokenCodec

_codec = TokenCodec(secret_key="client-side-tests-do-not-verify-signatures-000")


def make_access_token(minutes: float) -> str:
    return _codec.issue(
        AccessClaims(user_id=1, role="user", email_verified=True),
        ttl=timedelta(minutes=minutes),
    )


class FakeRefresh:
    """Stands in for the network refresh call."""

    def __init__(self, error: Exception = None, delay: float = 0.02):
        self.calls = []
        self.error = error
        self.delay = delay

    async def __call__(self, refresh_token: str) -> Credentials:
        self.calls.append(refresh_token)
        await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        n = len(self.calls)
        return Credentials(access_token=make_access_token(15), refresh_token=f"refresh-{n}")


@pytest.fixture
def expired_store() -> MemoryCredentialStore:
    return MemoryCredentialStore(
        Credentials(access_token=make_access_token(-1), refresh_token="refresh-0")
    )


class TestEnsureValidToken:

    @pytest.mark.asyncio
    async def test_valid_token_is_returned_without_refresh(self):
        token = make_access_token(15)
        refresh = FakeRefresh()
        coordinator = RefreshCoordinator(
            refresh, MemoryCredentialStore(Credentials(token, "refresh-0"))
        )

        assert await coordinator.ensure_valid_token() == token
        assert refresh.calls == []

    @pytest.mark.asyncio
    async def test_token_inside_safety_margin_is_refreshed(self):
        """Test a token with four minutes left counts as expired under a five minute margin."""
        refresh = FakeRefresh()
        store = MemoryCredentialStore(Credentials(make_access_token(4), "refresh-0"))
        coordinator = RefreshCoordinator(refresh, store, safety_margin=300)

        token = await coordinator.ensure_valid_token()

        assert refresh.calls == ["refresh-0"]
        assert store.load().access_token == token
        assert store.load().refresh_token == "refresh-1"

    @pytest.mark.asyncio
    async def test_no_credentials(self):
        coordinator = RefreshCoordinator(FakeRefresh(), MemoryCredentialStore())
        with pytest.raises(NotAuthenticated):
            await coordinator.ensure_valid_token()

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_refresh(self, expired_store):
        """Test three concurrent callers cause one network refresh and get the same token."""
        refresh = FakeRefresh()
        coordinator = RefreshCoordinator(refresh, expired_store)

        tokens = await asyncio.gather(*(coordinator.ensure_valid_token() for _ in range(3)))

        assert len(refresh.calls) == 1
        assert len(set(tokens)) == 1
        assert expired_store.load().access_token == tokens[0]
        assert coordinator.state is RefreshState.IDLE

    @pytest.mark.asyncio
    async def test_failed_refresh_rejects_everyone_and_clears(self, expired_store):
        """Test a failed refresh is a forced logout shared by all waiting callers."""
        error = RuntimeError("refresh token revoked")
        refresh = FakeRefresh(error=error)
        coordinator = RefreshCoordinator(refresh, expired_store)

        results = await asyncio.gather(
            *(coordinator.ensure_valid_token() for _ in range(3)),
            return_exceptions=True,
        )

        assert len(refresh.calls) == 1
        assert all(result is error for result in results)
        assert expired_store.load() is None
        assert coordinator.state is RefreshState.IDLE

        with pytest.raises(NotAuthenticated):
            await coordinator.ensure_valid_token()

    @pytest.mark.asyncio
    async def test_sequential_refreshes_each_hit_network(self, expired_store):
        refresh = FakeRefresh()
        coordinator = RefreshCoordinator(refresh, expired_store)

        await coordinator.force_refresh()
        await coordinator.force_refresh()

        assert refresh.calls == ["refresh-0", "refresh-1"]


class TestForceRefresh:

    @pytest.mark.asyncio
    async def test_force_refresh_ignores_local_expiry(self):
        refresh = FakeRefresh()
        store = MemoryCredentialStore(Credentials(make_access_token(15), "refresh-0"))
        coordinator = RefreshCoordinator(refresh, store)

        token = await coordinator.force_refresh()

        assert refresh.calls == ["refresh-0"]
        assert store.load().access_token == token

    @pytest.mark.asyncio
    async def test_force_refresh_joins_refresh_in_flight(self, expired_store):
        refresh = FakeRefresh()
        coordinator = RefreshCoordinator(refresh, expired_store)

        first, forced = await asyncio.gather(
            coordinator.ensure_valid_token(),
            coordinator.force_refresh(),
        )

        assert first == forced
        assert len(refresh.calls) == 1

    @pytest.mark.asyncio
    async def test_force_refresh_without_credentials(self):
        with pytest.raises(NotAuthenticated):
            await RefreshCoordinator(FakeRefresh(), MemoryCredentialStore()).force_refresh()


class TestBackgroundRefresh:

    @pytest.mark.asyncio
    async def test_background_refresh_renews_expiring_token(self, expired_store):
        refresh = FakeRefresh(delay=0)
        coordinator = RefreshCoordinator(refresh, expired_store)

        task = coordinator.start_background_refresh(interval=0.01)
        assert coordinator.start_background_refresh(interval=0.01) is task
        await asyncio.sleep(0.1)
        await coordinator.stop_background_refresh()

        # Renewed once; the new token stays valid beyond the margin
        assert refresh.calls == ["refresh-0"]
        assert task.done()

    @pytest.mark.asyncio
    async def test_background_refresh_survives_failure(self, expired_store):
        refresh = FakeRefresh(error=RuntimeError("server down"), delay=0)
        coordinator = RefreshCoordinator(refresh, expired_store)

        task = coordinator.start_background_refresh(interval=0.01)
        await asyncio.sleep(0.05)

        assert not task.done()
        assert expired_store.load() is None
        await coordinator.stop_background_refresh()

    @pytest.mark.asyncio
    async def test_stop_without_start(self):
        coordinator = RefreshCoordinator(FakeRefresh(), MemoryCredentialStore())
        await coordinator.stop_background_refresh()


class TestFileCredentialStore:

    def test_save_and_load(self, tmp_path):
        store = FileCredentialStore(tmp_path / "tokens.json")
        store.save(Credentials(access_token="a", refresh_token="r"))

        assert store.load() == Credentials(access_token="a", refresh_token="r")
        assert stat.S_IMODE((tmp_path / "tokens.json").stat().st_mode) == 0o600

    def test_file_created_private_under_permissive_umask(self, tmp_path, monkeypatch):
        """Test the file is opened with mode 0600 rather than tightened after writing."""
        opened = []
        real_open = os.open

        def recording_open(path, flags, mode=0o777, *args, **kwargs):
            opened.append(mode)
            return real_open(path, flags, mode, *args, **kwargs)

        monkeypatch.setattr(os, "open", recording_open)
        previous = os.umask(0o000)
        try:
            FileCredentialStore(tmp_path / "tokens.json").save(Credentials(access_token="a", refresh_token="r"))
        finally:
            os.umask(previous)

        assert opened == [0o600]
        assert stat.S_IMODE((tmp_path / "tokens.json").stat().st_mode) == 0o600

    def test_save_tightens_existing_file(self, tmp_path):
        path = tmp_path / "tokens.json"
        path.write_text("{}")
        path.chmod(0o644)

        FileCredentialStore(path).save(Credentials(access_token="a", refresh_token="r"))

        assert stat.S_IMODE(path.stat().st_mode) == 0o600
        assert FileCredentialStore(path).load() == Credentials(access_token="a", refresh_token="r")

    def test_missing_file(self, tmp_path):
        assert FileCredentialStore(tmp_path / "absent.json").load() is None

    def test_corrupt_file(self, tmp_path):
        path = tmp_path / "tokens.json"
        path.write_text("{not json")
        assert FileCredentialStore(path).load() is None

    def test_clear(self, tmp_path):
        store = FileCredentialStore(tmp_path / "tokens.json")
        store.save(Credentials(access_token="a", refresh_token="r"))

        store.clear()
        store.clear()

        assert store.load() is None
        assert not (tmp_path / "tokens.json").exists()
