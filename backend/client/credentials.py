"""Client-side storage of the current token pair."""

import json
import logging
import os
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Optional, Protocol

logger = logging.getLogger(__name__)


@dataclass
class Credentials:
    access_token: str
    refresh_token: str


class CredentialStore(Protocol):
    def load(self) -> Optional[Credentials]: ...

    def save(self, credentials: Credentials) -> None: ...

    def clear(self) -> None: ...


class MemoryCredentialStore:
    """Keeps credentials for the lifetime of the process."""

    def __init__(self, credentials: Optional[Credentials] = None):
        self._credentials = credentials

    def load(self) -> Optional[Credentials]:
        return self._credentials

    def save(self, credentials: Credentials) -> None:
        self._credentials = credentials

    def clear(self) -> None:
        self._credentials = None


class FileCredentialStore:
    """
    Persists credentials as JSON in a file only the owner can read.

    Args:
        path: Token file (default: ~/.session_tokens)
    """

    def __init__(self, path: Optional[Path] = None):
        if path is None:
            path = Path.home() / ".session_tokens"
        self.path = Path(path)

    def load(self) -> Optional[Credentials]:
        if not self.path.exists():
            return None

        try:
            with open(self.path, "r") as f:
                data = json.load(f)
            return Credentials(
                access_token=data["access_token"],
                refresh_token=data["refresh_token"],
            )
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.error(f"Failed to load credentials from {self.path}: {e}")
            return None

    def save(self, credentials: Credentials) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)

        # Created rw------- so the tokens are never readable by others
        fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        # os.open leaves the mode of an existing file alone
        os.fchmod(fd, 0o600)
        with os.fdopen(fd, "w") as f:
            json.dump(asdict(credentials), f, indent=2)

        logger.debug(f"Credentials saved to {self.path}")

    def clear(self) -> None:
        if self.path.exists():
            self.path.unlink()
            logger.info("Credentials cleared")
