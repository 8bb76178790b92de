"""
Database configuration and session management.

SQLite (development, tests) and PostgreSQL (production) are both supported.
Conditional updates used by the refresh token store rely on
``UPDATE ... RETURNING``, available on PostgreSQL and SQLite >= 3.35.

Limitations:
- SQLite serializes writers; ``SELECT ... FOR UPDATE`` is a no-op there.
- SQLite stores timezone-aware datetimes without offset. All timestamps are
  written in UTC so comparisons stay consistent.
"""

import logging

from config import get_settings
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

settings = get_settings()
logger = logging.getLogger(__name__)

# Convert URL for async drivers
database_url = settings.DATABASE_URL
if database_url.startswith("postgresql://"):
    database_url = database_url.replace("postgresql://", "postgresql+asyncpg://", 1)

is_sqlite = database_url.startswith("sqlite")

engine_kwargs: dict = {
    "echo": False,
}

if is_sqlite:
    # Writers wait on each other instead of failing with "database is locked"
    engine_kwargs["connect_args"] = {"timeout": 15}
else:
    # pool_pre_ping: verify connections are alive before using them.
    # Total max connections = pool_size + max_overflow = 15
    engine_kwargs["pool_pre_ping"] = True
    engine_kwargs["pool_size"] = 5
    engine_kwargs["max_overflow"] = 10

engine = create_async_engine(database_url, **engine_kwargs)

# SQLite does not enforce foreign keys by default - must be enabled per connection
if is_sqlite:
    from sqlalchemy import event as sa_event

    @sa_event.listens_for(engine.sync_engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)


class Base(DeclarativeBase):
    pass


async def get_db():
    """
    Dependency that yields a database session.

    Routes call ``db.commit()`` explicitly when they want to persist changes.
    The rollback on exception is kept as a safety net.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


async def init_db():
    """Create tables for all registered models."""
    # Import models so they register on Base.metadata
    from models import auth_audit, password_reset, refresh_token, user  # noqa: F401

    async with engine.begin() as conn:
        # For PostgreSQL: use advisory lock to prevent race conditions
        # when multiple workers start simultaneously
        if not is_sqlite:
            # pg_advisory_xact_lock is released automatically when transaction ends
            await conn.execute(text("SELECT pg_advisory_xact_lock(1)"))
            logger.info("Acquired database migration lock")

        await conn.run_sync(Base.metadata.create_all, checkfirst=True)

    logger.info("Database initialized successfully")
