"""Credential store: system keychain first, private file as fallback."""

import asyncio

from structlog import get_logger

from agent_providers.config.settings import StorageSettings
from agent_providers.exceptions import CredentialsStorageError

from .base import SecretBackend, StorageBackend
from .file import FileSecretBackend
from .keychain import KeychainSecretBackend


logger = get_logger(__name__)


class CredentialStore:
    """The only component that persists secrets.

    `store()` reports which backend took the secret so callers can show
    storage provenance. A keychain failure is never surfaced when the file
    fallback succeeds.
    """

    def __init__(
        self,
        keychain: SecretBackend | None,
        file_backend: SecretBackend,
    ):
        self._keychain = keychain
        self._file = file_backend

    @classmethod
    def from_settings(cls, settings: StorageSettings) -> "CredentialStore":
        keychain = (
            KeychainSecretBackend(settings.service_name)
            if settings.use_keychain
            else None
        )
        return cls(keychain, FileSecretBackend(settings.credentials_dir))

    def _keychain_usable(self) -> bool:
        return self._keychain is not None and self._keychain.is_available()

    @property
    def backend(self) -> StorageBackend:
        """Backend a store() call would try first."""
        return StorageBackend.KEYCHAIN if self._keychain_usable() else StorageBackend.FILE

    def get_location(self) -> str:
        if self._keychain_usable() and self._keychain is not None:
            return self._keychain.get_location()
        return self._file.get_location()

    async def store(self, account: str, secret: str) -> StorageBackend:
        """Persist a secret.

        Returns:
            The backend that now holds the secret

        Raises:
            CredentialsStorageError: If both keychain and file writes failed
        """
        return await asyncio.to_thread(self._store_sync, account, secret)

    async def load(self, account: str) -> str | None:
        return await asyncio.to_thread(self._load_sync, account)

    async def delete(self, account: str) -> None:
        await asyncio.to_thread(self._delete_sync, account)

    def _store_sync(self, account: str, secret: str) -> StorageBackend:
        if self._keychain_usable() and self._keychain is not None:
            try:
                self._keychain.set(account, secret)
            except Exception as e:
                # Locked keychains, missing D-Bus sessions and denied
                # access all surface as different exception types
                logger.warning(
                    "keychain_store_failed_using_file",
                    account=account,
                    error=str(e),
                )
            else:
                try:
                    self._file.delete(account)
                except OSError as e:
                    logger.warning("stale_secret_file_not_removed", error=str(e))
                logger.debug("secret_stored", account=account, backend="keychain")
                return StorageBackend.KEYCHAIN

        try:
            self._file.set(account, secret)
        except (OSError, ValueError) as e:
            logger.error("secret_store_failed", account=account, error=str(e))
            raise CredentialsStorageError(
                f"Failed to store credentials for {account}: {e}"
            ) from e
        logger.debug("secret_stored", account=account, backend="file")
        return StorageBackend.FILE

    def _load_sync(self, account: str) -> str | None:
        if self._keychain_usable() and self._keychain is not None:
            try:
                secret = self._keychain.get(account)
            except Exception as e:
                logger.warning("keychain_load_failed", account=account, error=str(e))
            else:
                if secret:
                    return secret
        try:
            return self._file.get(account)
        except (OSError, ValueError) as e:
            logger.warning("secret_file_load_failed", account=account, error=str(e))
            return None

    def _delete_sync(self, account: str) -> None:
        if self._keychain_usable() and self._keychain is not None:
            try:
                self._keychain.delete(account)
            except Exception as e:
                logger.warning("keychain_delete_failed", account=account, error=str(e))
        try:
            self._file.delete(account)
        except OSError as e:
            logger.warning("secret_file_delete_failed", account=account, error=str(e))
