"""
Single-flight access token refresh for API consumers.

Any number of concurrent callers may ask for a valid access token. At most
one refresh call is in flight per coordinator; callers arriving meanwhile
wait for its outcome and all receive the same token, or the same error.

State machine::

    IDLE --refresh--> REFRESHING --ok--> RESOLVED --> IDLE
                                 --error--> FAILED --> IDLE

A failed refresh is a forced logout: stored credentials are cleared.
"""

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, List, Optional

from client.credentials import CredentialStore, Credentials
from services.token_codec import is_token_expired

logger = logging.getLogger(__name__)

# Network call exchanging a refresh token for a new credential pair
RefreshFn = Callable[[str], Awaitable[Credentials]]

DEFAULT_SAFETY_MARGIN_SECONDS = 300.0


class RefreshState(str, Enum):
    IDLE = "idle"
    REFRESHING = "refreshing"
    RESOLVED = "resolved"
    FAILED = "failed"


class NotAuthenticated(Exception):
    """No credentials are stored; the user has to log in."""


class RefreshCoordinator:
    def __init__(
        self,
        refresh_fn: RefreshFn,
        store: CredentialStore,
        safety_margin: float = DEFAULT_SAFETY_MARGIN_SECONDS,
    ):
        self.refresh_fn = refresh_fn
        self.store = store
        self.safety_margin = safety_margin

        self._state = RefreshState.IDLE
        self._waiters: List[asyncio.Future] = []
        self._background_task: Optional[asyncio.Task] = None

    @property
    def state(self) -> RefreshState:
        return self._state

    @property
    def is_refreshing(self) -> bool:
        return self._state is RefreshState.REFRESHING

    async def ensure_valid_token(self) -> str:
        """
        Return an access token valid for at least ``safety_margin`` seconds.

        Raises:
            NotAuthenticated: No stored credentials
            Exception: Whatever the refresh call raised, when it failed
        """
        credentials = self.store.load()
        if credentials is None:
            raise NotAuthenticated()

        if not is_token_expired(credentials.access_token, self.safety_margin):
            return credentials.access_token

        if self.is_refreshing:
            return await self._wait_for_refresh()

        return await self._refresh(credentials)

    async def force_refresh(self) -> str:
        """
        Refresh regardless of the local expiry estimate.

        Used when the server rejected a token the client still believed
        valid. Joins a refresh already in flight instead of starting another.
        """
        if self.is_refreshing:
            return await self._wait_for_refresh()

        credentials = self.store.load()
        if credentials is None:
            raise NotAuthenticated()

        return await self._refresh(credentials)

    def start_background_refresh(self, interval: float = 60.0) -> asyncio.Task:
        """Periodically refresh ahead of expiry through the same single-flight path."""
        if self._background_task is None or self._background_task.done():
            self._background_task = asyncio.create_task(self._background_refresh(interval))
            logger.debug("Started background token refresh")
        return self._background_task

    async def stop_background_refresh(self) -> None:
        task, self._background_task = self._background_task, None
        if task is None or task.done():
            return

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.debug("Stopped background token refresh")

    async def _refresh(self, credentials: Credentials) -> str:
        self._state = RefreshState.REFRESHING
        try:
            new_credentials = await self.refresh_fn(credentials.refresh_token)
            self.store.save(new_credentials)
        except asyncio.CancelledError:
            self._cancel_waiters()
            raise
        except Exception as e:
            self._state = RefreshState.FAILED
            logger.warning(f"Token refresh failed, clearing credentials: {e}")
            self.store.clear()
            self._settle(error=e)
            raise
        else:
            self._state = RefreshState.RESOLVED
            self._settle(token=new_credentials.access_token)
            return new_credentials.access_token
        finally:
            self._state = RefreshState.IDLE

    async def _wait_for_refresh(self) -> str:
        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        return await waiter

    def _settle(self, token: Optional[str] = None, error: Optional[BaseException] = None) -> None:
        waiters, self._waiters = self._waiters, []
        logger.debug(f"Settling {len(waiters)} waiting request(s)")
        for waiter in waiters:
            if waiter.done():
                continue
            if error is not None:
                waiter.set_exception(error)
            else:
                waiter.set_result(token)

    def _cancel_waiters(self) -> None:
        waiters, self._waiters = self._waiters, []
        for waiter in waiters:
            waiter.cancel()

    async def _background_refresh(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            if self.store.load() is None:
                continue
            try:
                await self.ensure_valid_token()
            except Exception as e:
                logger.warning(f"Background token refresh failed: {e}")
