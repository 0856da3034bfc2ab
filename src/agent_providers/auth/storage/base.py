"""Abstract base class for secret backends."""

from abc import ABC, abstractmethod
from enum import StrEnum


class StorageBackend(StrEnum):
    """Where a secret ended up."""

    KEYCHAIN = "keychain"
    FILE = "file"


class SecretBackend(ABC):
    """Abstract interface for one place secrets can be kept.

    Implementations are synchronous; the credential store moves calls off
    the event loop.
    """

    kind: StorageBackend

    @abstractmethod
    def is_available(self) -> bool:
        """Report whether this backend can be used on this machine."""

    @abstractmethod
    def get(self, account: str) -> str | None:
        """Read a secret.

        Args:
            account: Account key, e.g. "anthropic-api-key"

        Returns:
            The secret if present, None otherwise

        """

    @abstractmethod
    def set(self, account: str, secret: str) -> None:
        """Write a secret, replacing any previous value.

        Raises:
            Exception: Any backend failure; callers treat all failures alike

        """

    @abstractmethod
    def delete(self, account: str) -> None:
        """Delete a secret. Deleting a missing secret is not an error."""

    @abstractmethod
    def get_location(self) -> str:
        """Get a human-readable description of where secrets are stored."""
