"""Client-side session handling for consumers of the auth API."""

from .coordinator import NotAuthenticated, RefreshCoordinator, RefreshState
from .credentials import Credentials, CredentialStore, FileCredentialStore, MemoryCredentialStore
from .session import AuthRequestError, SessionClient

__all__ = [
    "AuthRequestError",
    "Credentials",
    "CredentialStore",
    "FileCredentialStore",
    "MemoryCredentialStore",
    "NotAuthenticated",
    "RefreshCoordinator",
    "RefreshState",
    "SessionClient",
]
