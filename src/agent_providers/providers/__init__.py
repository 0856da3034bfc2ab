"""Agent backends behind one interface."""

from .base import (
    AuthStatus,
    CodexRunConfig,
    Provider,
    ProviderRunOptions,
    QueryStream,
    ReadyStatus,
    RunConfig,
)
from .registry import (
    SUPPORTED_PROVIDERS,
    dispose_all_providers,
    get_provider,
    get_provider_for,
)


__all__ = [
    "SUPPORTED_PROVIDERS",
    "AuthStatus",
    "CodexRunConfig",
    "Provider",
    "ProviderRunOptions",
    "QueryStream",
    "ReadyStatus",
    "RunConfig",
    "dispose_all_providers",
    "get_provider",
    "get_provider_for",
]
