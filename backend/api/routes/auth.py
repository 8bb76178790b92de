"""Authentication routes: login, refresh with rotation, logout, password reset and sessions."""

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from config import AppMode, get_settings
from db.database import get_db
from models.auth_audit import AuthAuditLog
from models.user import User
from schemas.user import (
    ForgotPasswordRequest,
    ForgotPasswordResponse,
    LogoutAllResponse,
    LogoutRequest,
    MessageResponse,
    PasswordChangeRequest,
    PasswordResetRequest,
    RefreshTokenRequest,
    SessionListResponse,
    SessionResponse,
    TokenPairResponse,
    UserLogin,
    UserRegister,
    UserResponse,
)
from services.accounts import AccountService
from services.auth import (
    AuditService,
    TokenPair,
    TokenService,
    get_client_info,
    get_current_user,
    get_optional_user,
)
from services.errors import AccountDeactivated, AuthError
from services.refresh_store import RefreshTokenStore
from services.revocation import RevocationService

settings = get_settings()
router = APIRouter(prefix="/auth", tags=["auth"])
logger = logging.getLogger(__name__)


# Background task for periodic token cleanup
_cleanup_task: Optional[asyncio.Task] = None


async def _periodic_token_cleanup(interval_seconds: float):
    """Background task to periodically delete expired refresh tokens."""
    while True:
        try:
            await asyncio.sleep(interval_seconds)
            # Import here to avoid circular imports
            from db.database import AsyncSessionLocal
            async with AsyncSessionLocal() as db:
                removed = await RefreshTokenStore(db).sweep_expired()
                await db.commit()
                if removed > 0:
                    logger.info(
                        f"Token cleanup completed: {removed} expired refresh tokens removed"
                    )
        except asyncio.CancelledError:
            logger.info("Token cleanup task cancelled")
            break
        except Exception as e:
            logger.error(f"Error in token cleanup task: {e}")
            # Continue running despite errors


def start_cleanup_task(interval_seconds: Optional[float] = None):
    """Start the periodic token cleanup background task."""
    global _cleanup_task
    if _cleanup_task is None or _cleanup_task.done():
        interval = interval_seconds or settings.TOKEN_CLEANUP_INTERVAL_SECONDS
        _cleanup_task = asyncio.create_task(_periodic_token_cleanup(interval))
        logger.debug("Started periodic token cleanup task")


def stop_cleanup_task():
    """Stop the periodic token cleanup background task."""
    global _cleanup_task
    if _cleanup_task and not _cleanup_task.done():
        _cleanup_task.cancel()
        logger.debug("Stopped periodic token cleanup task")


def _token_response(tokens: TokenPair, user: Optional[User] = None) -> TokenPairResponse:
    return TokenPairResponse(
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        expires_in=tokens.expires_in,
        user=UserResponse.model_validate(user) if user is not None else None,
    )


@router.post(
    "/register",
    response_model=TokenPairResponse,
    status_code=status.HTTP_201_CREATED,
)
async def register(
    data: UserRegister,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    """Create a local account and start its first session."""
    device_info = get_client_info(request)
    session = await AccountService(db).register(
        username=data.username,
        email=data.email,
        password=data.password,
        device_info=device_info,
    )
    await db.commit()
    await db.refresh(session.user)

    return _token_response(session.tokens, session.user)


@router.post("/login", response_model=TokenPairResponse)
async def login(
    login_data: UserLogin,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    """
    Login with email and password.

    Returns a JWT access token and an opaque refresh token.
    """
    device_info = get_client_info(request)
    accounts = AccountService(db)

    try:
        session = await accounts.login(
            login_data.email,
            login_data.password,
            device_info=device_info,
        )
    except AuthError:
        # Failed-attempt counters, lockouts and audit rows persist even
        # though the login itself fails
        await db.commit()
        raise

    await db.commit()
    return _token_response(session.tokens, session.user)


@router.post("/refresh", response_model=TokenPairResponse)
async def refresh_tokens(
    body: RefreshTokenRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    """
    Refresh access token using refresh token.

    With rotation enabled the presented refresh token is consumed and a new
    one is returned; presenting it again fails.
    """
    device_info = get_client_info(request)
    audit = AuditService(db)
    token_service = TokenService(db)

    try:
        result = await token_service.refresh(body.refresh_token, device_info)
    except AccountDeactivated:
        # Keep the claimed refresh token deactivated
        await db.commit()
        raise

    await audit.log(
        action=AuthAuditLog.ACTION_TOKEN_REFRESH,
        user_id=result.user.id,
        device_info=device_info,
        metadata={"rotated": token_service.settings.ROTATE_REFRESH_TOKENS},
    )
    await db.commit()

    return TokenPairResponse(
        access_token=result.access_token,
        refresh_token=result.refresh_token,
        expires_in=result.expires_in,
        user=UserResponse.model_validate(result.user),
    )


@router.post("/logout", response_model=MessageResponse)
async def logout(
    request: Request,
    body: Optional[LogoutRequest] = None,
    current_user: Optional[User] = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Logout from the current session.

    Always succeeds: unknown or already revoked refresh tokens are ignored.
    An access token is optional; when a valid one is sent the audit entry
    names the user.
    """
    refresh_token = body.refresh_token if body else None

    if refresh_token:
        revoked = await RevocationService(db).logout(refresh_token.strip())
        if revoked:
            await AuditService(db).log(
                action=AuthAuditLog.ACTION_LOGOUT,
                user_id=current_user.id if current_user else None,
                device_info=get_client_info(request),
            )
        await db.commit()

    return MessageResponse(message="Successfully logged out")


@router.post("/logout-all", response_model=LogoutAllResponse)
async def logout_all(
    request: Request,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Logout from all sessions of the current user."""
    count = await RevocationService(db).logout_all(current_user.id)

    await AuditService(db).log(
        action=AuthAuditLog.ACTION_LOGOUT_ALL,
        user_id=current_user.id,
        device_info=get_client_info(request),
        metadata={"sessions_revoked": count},
    )
    await db.commit()

    return LogoutAllResponse(
        message=f"Successfully logged out from all {count} sessions",
        sessions_revoked=count,
    )


@router.post("/change-password", response_model=TokenPairResponse)
async def change_password(
    data: PasswordChangeRequest,
    request: Request,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Change the password of the current user.

    Every existing session ends; the response carries a fresh token pair.
    """
    tokens = await AccountService(db).change_password(
        current_user,
        data.current_password,
        data.new_password,
        device_info=get_client_info(request),
    )
    await db.commit()

    return _token_response(tokens, current_user)


@router.post("/forgot-password", response_model=ForgotPasswordResponse)
async def forgot_password(
    data: ForgotPasswordRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    """
    Request a password reset token.

    The answer is the same for unknown, deactivated and rate-limited accounts.
    """
    token = await AccountService(db).request_password_reset(
        data.email,
        device_info=get_client_info(request),
    )
    await db.commit()

    return ForgotPasswordResponse(
        message="If the account exists, a password reset link has been issued",
        reset_token=token if settings.APP_MODE == AppMode.DEV else None,
    )


@router.post("/reset-password/{token}", response_model=MessageResponse)
async def reset_password(
    token: str,
    data: PasswordResetRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    """
    Set a new password with a reset token.

    Lifts any failed-login lock and ends every session; log in again
    afterwards.
    """
    await AccountService(db).reset_password(
        token,
        data.new_password,
        device_info=get_client_info(request),
    )
    await db.commit()

    return MessageResponse(
        message="Password reset successfully. Please login with your new password."
    )


@router.get("/sessions", response_model=SessionListResponse)
async def get_sessions(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Get list of active sessions for the current user.

    Each session represents a device/browser with an active refresh token.
    """
    sessions = await RefreshTokenStore.from_settings(db, settings).list_active(current_user.id)

    return SessionListResponse(
        sessions=[SessionResponse.model_validate(s) for s in sessions],
        total=len(sessions),
    )


@router.get("/me", response_model=UserResponse)
async def get_me(
    current_user: User = Depends(get_current_user),
):
    """Get current authenticated user info."""
    return UserResponse.model_validate(current_user)
