"""Async HTTP client that keeps its session alive through the refresh coordinator."""

import logging
from typing import Any, Optional

import httpx

from client.coordinator import DEFAULT_SAFETY_MARGIN_SECONDS, RefreshCoordinator
from client.credentials import CredentialStore, Credentials, MemoryCredentialStore

logger = logging.getLogger(__name__)

DEFAULT_AUTH_PREFIX = "/api/v1/auth"


class AuthRequestError(Exception):
    """The auth API answered with an error envelope."""

    def __init__(self, status_code: int, detail: str, code: Optional[str] = None):
        self.status_code = status_code
        self.detail = detail
        self.code = code
        super().__init__(f"{status_code} {code or ''} {detail}".strip())


def _raise_for_auth_error(response: httpx.Response) -> None:
    if response.is_success:
        return
    try:
        body = response.json()
    except ValueError:
        body = {}
    detail = body.get("detail") if isinstance(body, dict) else None
    code = body.get("code") if isinstance(body, dict) else None
    raise AuthRequestError(response.status_code, str(detail or response.reason_phrase), code)


def _credentials_from(response: httpx.Response) -> Credentials:
    data = response.json()
    return Credentials(
        access_token=data["access_token"],
        refresh_token=data["refresh_token"],
    )


class SessionClient:
    """
    Authenticated API client.

    Every ``request`` carries a bearer token obtained from the coordinator.
    A 401 from the server triggers one forced refresh and one retry.

    Args:
        base_url: Server root, e.g. ``http://localhost:8000``
        store: Where credentials live between calls (memory by default)
        http_client: Injected ``httpx.AsyncClient`` (not closed by this class)
    """

    def __init__(
        self,
        base_url: str = "",
        store: Optional[CredentialStore] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        auth_prefix: str = DEFAULT_AUTH_PREFIX,
        safety_margin: float = DEFAULT_SAFETY_MARGIN_SECONDS,
    ):
        self.store = store or MemoryCredentialStore()
        self.auth_prefix = auth_prefix.rstrip("/")
        self._owns_client = http_client is None
        self.http = http_client or httpx.AsyncClient(base_url=base_url)
        self.coordinator = RefreshCoordinator(
            refresh_fn=self.refresh_tokens,
            store=self.store,
            safety_margin=safety_margin,
        )

    async def __aenter__(self) -> "SessionClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.coordinator.stop_background_refresh()
        if self._owns_client:
            await self.http.aclose()

    async def register(self, username: str, email: str, password: str) -> Credentials:
        response = await self.http.post(
            f"{self.auth_prefix}/register",
            json={"username": username, "email": email, "password": password},
        )
        _raise_for_auth_error(response)
        credentials = _credentials_from(response)
        self.store.save(credentials)
        return credentials

    async def login(self, email: str, password: str) -> Credentials:
        response = await self.http.post(
            f"{self.auth_prefix}/login",
            json={"email": email, "password": password},
        )
        _raise_for_auth_error(response)
        credentials = _credentials_from(response)
        self.store.save(credentials)
        return credentials

    async def refresh_tokens(self, refresh_token: str) -> Credentials:
        """Network refresh call; the coordinator persists the result."""
        response = await self.http.post(
            f"{self.auth_prefix}/refresh",
            json={"refresh_token": refresh_token},
        )
        _raise_for_auth_error(response)
        return _credentials_from(response)

    async def logout(self) -> None:
        """End this session. Local credentials are cleared even if the call fails."""
        credentials = self.store.load()
        try:
            if credentials is not None:
                response = await self.http.post(
                    f"{self.auth_prefix}/logout",
                    json={"refresh_token": credentials.refresh_token},
                )
                _raise_for_auth_error(response)
        finally:
            self.store.clear()

    async def logout_all(self) -> int:
        """End every session of the user; returns how many were revoked."""
        try:
            response = await self.request("POST", f"{self.auth_prefix}/logout-all")
            _raise_for_auth_error(response)
            return int(response.json().get("sessions_revoked", 0))
        finally:
            self.store.clear()

    async def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """
        Send an authenticated request.

        Raises:
            NotAuthenticated: No stored credentials
            AuthRequestError: The forced refresh after a 401 failed
        """
        token = await self.coordinator.ensure_valid_token()
        response = await self._send(method, url, token, **kwargs)

        if response.status_code == 401:
            logger.info(f"{method} {url} rejected with 401, refreshing token and retrying once")
            token = await self.coordinator.force_refresh()
            response = await self._send(method, url, token, **kwargs)

        return response

    async def _send(self, method: str, url: str, token: str, **kwargs: Any) -> httpx.Response:
        headers = dict(kwargs.pop("headers", None) or {})
        headers["Authorization"] = f"Bearer {token}"
        return await self.http.request(method, url, headers=headers, **kwargs)
