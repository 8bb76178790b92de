from datetime import datetime, timezone
from typing import Optional

from db.database import Base
from sqlalchemy import Boolean, Column, DateTime, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

ROLE_USER = "user"
ROLE_ADMIN = "admin"

PROVIDER_LOCAL = "local"
PROVIDER_GOOGLE = "google"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Attach UTC to naive datetimes.

    SQLite drops the offset of DateTime(timezone=True) columns; every value we
    write is UTC, so a naive value read back is UTC as well.
    """
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(30), nullable=False, unique=True, index=True)
    email = Column(String(255), nullable=False, unique=True, index=True)
    # Nullable for OAuth-only accounts
    password_hash = Column(String(255), nullable=True)
    role = Column(String(20), nullable=False, default=ROLE_USER)
    email_verified = Column(Boolean, nullable=False, default=True)
    is_active = Column(Boolean, nullable=False, default=True)
    provider = Column(String(20), nullable=False, default=PROVIDER_LOCAL)

    # Session-relevant security state
    password_changed_at = Column(DateTime(timezone=True), nullable=True)
    login_attempts = Column(Integer, nullable=False, default=0)
    lock_until = Column(DateTime(timezone=True), nullable=True)
    last_login = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    refresh_tokens = relationship(
        "RefreshToken", back_populates="user", cascade="all, delete-orphan"
    )
    auth_audit_logs = relationship(
        "AuthAuditLog", back_populates="user"
    )
    password_resets = relationship(
        "PasswordReset", back_populates="user", cascade="all, delete-orphan"
    )

    def __repr__(self):
        return f"<User(id={self.id}, username='{self.username}', role='{self.role}')>"

    @property
    def is_locked(self) -> bool:
        """True while a failed-login lock is in force."""
        lock_until = as_utc(self.lock_until)
        return lock_until is not None and lock_until > utc_now()

    def changed_password_after(self, issued_at: float) -> bool:
        """
        Check whether the password changed after a token was issued.

        Args:
            issued_at: The token's ``iat`` claim (seconds since epoch)

        Returns:
            True if the token predates the most recent password change
        """
        changed_at = as_utc(self.password_changed_at)
        if changed_at is None:
            return False
        return changed_at.timestamp() > issued_at
