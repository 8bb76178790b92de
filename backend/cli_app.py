#!/usr/bin/env python3
"""
Session Service admin CLI.

Maintenance commands that act directly on the database:
sweep expired refresh tokens, revoke every session of a user, unlock an
account locked by failed logins, list a user's sessions, run the server.
"""

import argparse
import asyncio
import sys
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession


class Colors:
    """ANSI colors for terminal"""

    RESET = "\033[0m"
    BOLD = "\033[1m"
    DIM = "\033[2m"
    RED = "\033[91m"
    GREEN = "\033[92m"
    YELLOW = "\033[93m"
    BLUE = "\033[94m"
    CYAN = "\033[96m"
    WHITE = "\033[97m"


def info(msg):
    print(f"{Colors.BLUE}[INFO]{Colors.RESET} {msg}")


def success(msg):
    print(f"{Colors.GREEN}[OK]{Colors.RESET} {msg}")


def warn(msg):
    print(f"{Colors.YELLOW}[WARN]{Colors.RESET} {msg}")


def error(msg):
    print(f"{Colors.RED}[ERROR]{Colors.RESET} {msg}")


async def find_user(db: AsyncSession, identifier: str):
    """Look a user up by numeric id or by email."""
    from models.user import User

    if identifier.isdigit():
        return await db.get(User, int(identifier))

    result = await db.execute(select(User).where(User.email == identifier.strip().lower()))
    return result.scalar_one_or_none()


async def sweep_expired_tokens(db: AsyncSession) -> int:
    from services.refresh_store import RefreshTokenStore

    removed = await RefreshTokenStore(db).sweep_expired()
    await db.commit()
    return removed


async def revoke_user_sessions(db: AsyncSession, identifier: str) -> Optional[int]:
    """Deactivate every refresh token of a user. None if the user does not exist."""
    from models.auth_audit import AuthAuditLog
    from services.auth import AuditService
    from services.revocation import RevocationService

    user = await find_user(db, identifier)
    if user is None:
        return None

    count = await RevocationService(db).logout_all(user.id)
    await AuditService(db).log(
        AuthAuditLog.ACTION_LOGOUT_ALL,
        user_id=user.id,
        metadata={"sessions_revoked": count, "source": "admin_cli"},
    )
    await db.commit()
    return count


async def unlock_user(db: AsyncSession, identifier: str) -> bool:
    from services.accounts import AccountService

    user = await find_user(db, identifier)
    if user is None:
        return False

    await AccountService(db).unlock(user.id)
    await db.commit()
    return True


async def list_user_sessions(db: AsyncSession, identifier: str):
    """Active sessions of a user, or None if the user does not exist."""
    from services.refresh_store import RefreshTokenStore

    user = await find_user(db, identifier)
    if user is None:
        return None
    return await RefreshTokenStore(db).list_active(user.id)


class SessionAdminCLI:
    """Argument parsing and console output around the admin operations."""

    def build_parser(self) -> argparse.ArgumentParser:
        parser = argparse.ArgumentParser(
            prog="session-admin", description="Session Service administration"
        )
        subparsers = parser.add_subparsers(dest="command", required=True)

        subparsers.add_parser("sweep", help="Delete expired refresh tokens")

        revoke = subparsers.add_parser(
            "revoke-user", help="Revoke every session of a user"
        )
        revoke.add_argument("user", help="User id or email")

        unlock = subparsers.add_parser(
            "unlock-user", help="Clear failed-login lock of a user"
        )
        unlock.add_argument("user", help="User id or email")

        sessions = subparsers.add_parser("sessions", help="List active sessions of a user")
        sessions.add_argument("user", help="User id or email")

        serve = subparsers.add_parser("serve", help="Run the API server")
        serve.add_argument("--reload", action="store_true", help="Auto-reload on changes")

        return parser

    async def _execute(self, args: argparse.Namespace) -> int:
        from db.database import AsyncSessionLocal, init_db

        await init_db()

        async with AsyncSessionLocal() as db:
            if args.command == "sweep":
                removed = await sweep_expired_tokens(db)
                success(f"Removed {removed} expired refresh token(s)")
                return 0

            if args.command == "revoke-user":
                count = await revoke_user_sessions(db, args.user)
                if count is None:
                    error(f"User not found: {args.user}")
                    return 1
                success(f"Revoked {count} session(s) of {args.user}")
                return 0

            if args.command == "unlock-user":
                if not await unlock_user(db, args.user):
                    error(f"User not found: {args.user}")
                    return 1
                success(f"Unlocked {args.user}")
                return 0

            if args.command == "sessions":
                sessions = await list_user_sessions(db, args.user)
                if sessions is None:
                    error(f"User not found: {args.user}")
                    return 1
                if not sessions:
                    warn(f"No active sessions for {args.user}")
                    return 0
                info(f"{len(sessions)} active session(s) for {args.user}")
                for s in sessions:
                    print(
                        f"  {Colors.BOLD}#{s.id}{Colors.RESET} "
                        f"{s.device_type or 'unknown':<8} "
                        f"{s.ip_address or '-':<16} "
                        f"{Colors.DIM}last used {s.last_used_at}, expires {s.expires_at}{Colors.RESET}"
                    )
                return 0

        error(f"Unknown command: {args.command}")
        return 2

    def serve(self, reload: bool = False) -> int:
        import uvicorn

        from config import get_settings

        settings = get_settings()
        info(f"Backend:  http://{settings.HOST}:{settings.PORT}")
        info(f"API Docs: http://{settings.HOST}:{settings.PORT}/docs")
        uvicorn.run("main:app", host=settings.HOST, port=settings.PORT, reload=reload)
        return 0

    def run(self, argv=None) -> int:
        args = self.build_parser().parse_args(argv)

        if args.command == "serve":
            return self.serve(reload=args.reload)

        return asyncio.run(self._execute(args))


if __name__ == "__main__":
    sys.exit(SessionAdminCLI().run())
