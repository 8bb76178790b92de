"""
Test fixtures and configuration for pytest.
"""

import os
import sys
from typing import AsyncGenerator, Awaitable, Callable

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import Settings
from db.database import Base, get_db
from models.user import User, utc_now
from services.accounts import hash_password

TEST_PASSWORD = "correct-horse-battery"


@pytest_asyncio.fixture(scope="function")
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """
    File-backed SQLite database per test.

    A file (not :memory:) so that several sessions can hit the same database
    concurrently, as two API workers would.
    """
    # Import models to register them
    import models  # noqa: F401

    test_engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        echo=False,
        connect_args={"timeout": 15},
    )

    @event.listens_for(test_engine.sync_engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield test_engine

    await test_engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a fresh database session for each test."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def settings() -> Settings:
    """Settings with a test secret and default token policy."""
    return Settings(
        SECRET_KEY="test-secret-key-for-session-service-tests-0123456789",
        ACCESS_TOKEN_EXPIRE_MINUTES=15,
        REFRESH_TOKEN_EXPIRE_DAYS=30,
        REFRESH_TOKEN_LIMIT=5,
        ROTATE_REFRESH_TOKENS=True,
        MAX_LOGIN_ATTEMPTS=5,
        LOCK_TIME_MINUTES=120,
    )


@pytest.fixture
def no_rotation_settings(settings: Settings) -> Settings:
    return settings.model_copy(update={"ROTATE_REFRESH_TOKENS": False})


# ============== Test Data Fixtures ==============


@pytest.fixture
def make_user(db_session: AsyncSession) -> Callable[..., Awaitable[User]]:
    """Factory creating committed users with the shared test password."""
    counter = {"n": 0}

    async def _make_user(**overrides) -> User:
        counter["n"] += 1
        n = counter["n"]
        fields = {
            "username": f"user{n}",
            "email": f"user{n}@example.com",
            "password_hash": hash_password(TEST_PASSWORD),
            "password_changed_at": utc_now(),
            "login_attempts": 0,
        }
        fields.update(overrides)
        user = User(**fields)
        db_session.add(user)
        await db_session.commit()
        await db_session.refresh(user)
        return user

    return _make_user


@pytest_asyncio.fixture
async def sample_user(make_user) -> User:
    return await make_user(username="alice", email="alice@example.com")


# ============== Client Fixtures ==============


@pytest_asyncio.fixture(scope="function")
async def client(db_session: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    """Create a test client with database override."""
    from main import app

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
