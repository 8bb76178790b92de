import logging
import warnings
from enum import Enum
from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings


logger = logging.getLogger(__name__)


# Default insecure secret key - MUST be changed in production
_DEFAULT_INSECURE_SECRET_KEY = "your-secret-key-here-change-in-production"


class AppMode(str, Enum):
    DEV = "dev"
    PROD = "prod"


class Settings(BaseSettings):
    # Application mode - defaults to DEV for safety
    # SECURITY: In production, explicitly set APP_MODE=prod
    APP_MODE: AppMode = AppMode.DEV

    # Debug mode - MUST be False in production
    DEBUG: bool = False

    # Database (SQLite default for dev, use PostgreSQL in production)
    DATABASE_URL: str = "sqlite+aiosqlite:///./session_service.db"

    # Server configuration
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # Access token signing
    # SECURITY: SECRET_KEY has no secure default - MUST be set via environment variable
    # Generate with: python -c "import secrets; print(secrets.token_urlsafe(64))"
    SECRET_KEY: str = _DEFAULT_INSECURE_SECRET_KEY
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 15
    JWT_ISSUER: str = "session-service"
    JWT_AUDIENCE: str = "session-service-users"

    # Refresh credentials
    REFRESH_TOKEN_EXPIRE_DAYS: int = 30
    REFRESH_TOKEN_LIMIT: int = 5  # active refresh tokens per user
    ROTATE_REFRESH_TOKENS: bool = True

    # Failed-login lockout
    MAX_LOGIN_ATTEMPTS: int = 5
    LOCK_TIME_MINUTES: int = 120

    # Password reset links
    PASSWORD_RESET_EXPIRE_MINUTES: int = 60
    PASSWORD_RESET_MAX_PER_HOUR: int = 3

    # Periodic sweep of expired refresh tokens
    TOKEN_CLEANUP_INTERVAL_SECONDS: int = 3600

    # CORS - comma-separated list of allowed origins
    CORS_ALLOWED_ORIGINS: str = ""

    LOG_LEVEL: str = "INFO"

    @property
    def access_token_expires_in(self) -> int:
        """Access token lifetime in seconds."""
        return self.ACCESS_TOKEN_EXPIRE_MINUTES * 60

    @property
    def CORS_ORIGINS(self) -> List[str]:
        """
        Get allowed CORS origins.

        SECURITY: In production, never return ["*"]. Origins must be configured
        explicitly through CORS_ALLOWED_ORIGINS.
        """
        origins = []

        if self.APP_MODE == AppMode.DEV:
            origins = [
                "http://localhost:3000",
                "http://localhost:5173",
                "http://127.0.0.1:3000",
                "http://127.0.0.1:5173",
            ]

        if self.CORS_ALLOWED_ORIGINS:
            custom_origins = [
                o.strip() for o in self.CORS_ALLOWED_ORIGINS.split(",") if o.strip()
            ]
            origins.extend(custom_origins)

        if not origins and self.APP_MODE == AppMode.PROD:
            logger.warning(
                "SECURITY WARNING: No CORS_ALLOWED_ORIGINS configured in production. "
                "Cross-origin requests will be blocked."
            )

        return origins

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"  # Ignore extra env variables


def _validate_settings(settings: Settings) -> Settings:
    """
    Validate settings and warn/error on security issues.

    A missing signing secret is a startup-time failure, never a per-request one.
    """
    if not settings.SECRET_KEY:
        error_msg = "SECRET_KEY is empty. Access tokens cannot be signed."
        logger.critical(error_msg)
        raise ValueError(error_msg)

    if settings.REFRESH_TOKEN_LIMIT < 1:
        raise ValueError("REFRESH_TOKEN_LIMIT must be at least 1")

    if settings.APP_MODE == AppMode.PROD:
        # CRITICAL: Fail fast if using default secret key in production
        if settings.SECRET_KEY == _DEFAULT_INSECURE_SECRET_KEY:
            error_msg = (
                "CRITICAL SECURITY ERROR: Default SECRET_KEY is being used in production! "
                "Set a strong, unique SECRET_KEY environment variable. "
                "Generate one with: python -c \"import secrets; print(secrets.token_urlsafe(64))\""
            )
            logger.critical(error_msg)
            raise ValueError(error_msg)

        if settings.DEBUG:
            error_msg = (
                "CRITICAL SECURITY ERROR: DEBUG=True in production! "
                "Set DEBUG=False or remove the DEBUG environment variable."
            )
            logger.critical(error_msg)
            raise ValueError(error_msg)

        if len(settings.SECRET_KEY) < 32:
            warnings.warn(
                "SECRET_KEY appears to be weak (less than 32 characters). "
                "Consider using a longer, more random key for production.",
                SecurityWarning,
                stacklevel=2,
            )

    return settings


class SecurityWarning(UserWarning):
    """Warning for security-related configuration issues."""
    pass


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).

    Settings are validated on first access; critical misconfigurations raise.
    """
    settings = Settings()
    return _validate_settings(settings)
