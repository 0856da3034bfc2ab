"""Credential storage, OAuth flows and token lifecycle."""

from agent_providers.auth.lifecycle import TokenLifecycleManager
from agent_providers.auth.storage import CredentialStore, StorageBackend
from agent_providers.auth.tokens import AuthState, OAuthTokenSet, TokenHealth


__all__ = [
    "AuthState",
    "CredentialStore",
    "OAuthTokenSet",
    "StorageBackend",
    "TokenHealth",
    "TokenLifecycleManager",
]
