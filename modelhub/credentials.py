"""
Credential storage for hosted backends.

Secrets are keyed by the backend URL they belong to.  The application
supplies a concrete store (a system keychain, for example);
``InMemoryCredentialStore`` serves tests and short-lived processes.
"""

from __future__ import annotations

from abc import ABC, abstractmethod


class CredentialStore(ABC):
    @abstractmethod
    async def read(self, url: str) -> str | None:
        """Return the secret stored for *url*, or ``None``."""
        ...

    @abstractmethod
    async def write(self, url: str, secret: str) -> None:
        ...

    @abstractmethod
    async def delete(self, url: str) -> None:
        """Forget the secret for *url*.  Missing entries are ignored."""
        ...


class InMemoryCredentialStore(CredentialStore):
    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._secrets: dict[str, str] = dict(initial or {})

    async def read(self, url: str) -> str | None:
        return self._secrets.get(url)

    async def write(self, url: str, secret: str) -> None:
        self._secrets[url] = secret

    async def delete(self, url: str) -> None:
        self._secrets.pop(url, None)
