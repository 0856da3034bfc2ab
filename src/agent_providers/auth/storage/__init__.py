"""Secret storage backends."""

from .base import SecretBackend, StorageBackend
from .file import FileSecretBackend
from .keychain import KeychainSecretBackend
from .store import CredentialStore


__all__ = [
    "CredentialStore",
    "FileSecretBackend",
    "KeychainSecretBackend",
    "SecretBackend",
    "StorageBackend",
]
