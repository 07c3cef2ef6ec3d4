"""Explicit caller credentials and their storage lifecycle.

A ``Credentials`` value is passed into every client call. Only
``SessionManager`` creates, persists and clears it; nothing keeps a
module-level token.
"""

import json
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol

from billing_sync.core.exceptions import Unauthenticated


@dataclass(frozen=True)
class Credentials:
    access_token: str
    expires_at: datetime | None = None

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or datetime.now(UTC)) >= self.expires_at

    def authorization_header(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.access_token}"}

    def to_dict(self) -> dict:
        return {
            "access_token": self.access_token,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Credentials":
        expires_at = data.get("expires_at")
        return cls(
            access_token=data["access_token"],
            expires_at=datetime.fromisoformat(expires_at) if expires_at else None,
        )


class CredentialStorage(Protocol):
    def load(self) -> Credentials | None: ...

    def save(self, credentials: Credentials) -> None: ...

    def clear(self) -> None: ...


class InMemoryCredentialStorage:
    def __init__(self) -> None:
        self._credentials: Credentials | None = None

    def load(self) -> Credentials | None:
        return self._credentials

    def save(self, credentials: Credentials) -> None:
        self._credentials = credentials

    def clear(self) -> None:
        self._credentials = None


class FileCredentialStorage:
    """Persists credentials as JSON so a session survives restarts."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)

    def load(self) -> Credentials | None:
        if not self.path.exists():
            return None
        try:
            return Credentials.from_dict(json.loads(self.path.read_text()))
        except (json.JSONDecodeError, KeyError, ValueError):
            # Unreadable file is treated as signed out
            self.clear()
            return None

    def save(self, credentials: Credentials) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(credentials.to_dict()))
        self.path.chmod(0o600)

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)


class SessionManager:
    """Owns the credential lifecycle: sign-in stores, sign-out clears."""

    def __init__(self, storage: CredentialStorage | None = None) -> None:
        self.storage = storage or InMemoryCredentialStorage()

    def sign_in(self, access_token: str, expires_at: datetime | None = None) -> Credentials:
        if not access_token:
            raise Unauthenticated("Empty access token")
        credentials = Credentials(access_token=access_token, expires_at=expires_at)
        self.storage.save(credentials)
        return credentials

    def sign_out(self) -> None:
        self.storage.clear()

    def current(self) -> Credentials | None:
        """Stored credentials, or None when signed out or expired."""
        credentials = self.storage.load()
        if credentials is not None and credentials.is_expired():
            self.storage.clear()
            return None
        return credentials

    def require(self) -> Credentials:
        credentials = self.current()
        if credentials is None:
            raise Unauthenticated("Not signed in")
        return credentials
