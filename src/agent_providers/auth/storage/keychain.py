"""System keychain backend built on the keyring library."""

import keyring
from keyring.backend import KeyringBackend
from keyring.errors import PasswordDeleteError
from structlog import get_logger

from .base import SecretBackend, StorageBackend


logger = get_logger(__name__)


class KeychainSecretBackend(SecretBackend):
    """Secrets in the OS keychain (macOS Keychain, Secret Service, Windows)."""

    kind = StorageBackend.KEYCHAIN

    def __init__(self, service_name: str, backend: KeyringBackend | None = None):
        self.service_name = service_name
        self._backend = backend

    @property
    def backend(self) -> KeyringBackend:
        if self._backend is None:
            self._backend = keyring.get_keyring()
        return self._backend

    def is_available(self) -> bool:
        try:
            priority = self.backend.priority
        except Exception as e:
            # Backends probe the platform inside `priority` and may raise
            logger.debug("keychain_probe_failed", error=str(e))
            return False
        return bool(priority and priority > 0)

    def get(self, account: str) -> str | None:
        return self.backend.get_password(self.service_name, account)

    def set(self, account: str, secret: str) -> None:
        self.backend.set_password(self.service_name, account, secret)

    def delete(self, account: str) -> None:
        try:
            self.backend.delete_password(self.service_name, account)
        except PasswordDeleteError:
            pass

    def get_location(self) -> str:
        return f"system keychain ({type(self.backend).__name__})"
