"""Lazy, memoized provider registry."""

import asyncio
import importlib

import structlog

from agent_providers.config.settings import Settings, get_settings
from agent_providers.exceptions import UnknownProviderError

from .base import Provider, RunConfig


logger = structlog.get_logger(__name__)

# name -> "module:ClassName"; modules are imported on first use so an
# application that only needs one backend never loads the other's SDK
_PROVIDER_PATHS: dict[str, str] = {
    "claude": "agent_providers.providers.claude:ClaudeProvider",
    "codex": "agent_providers.providers.codex:CodexProvider",
}

SUPPORTED_PROVIDERS: tuple[str, ...] = tuple(_PROVIDER_PATHS)

_instances: dict[str, Provider] = {}
_lock: asyncio.Lock | None = None


def _get_lock() -> asyncio.Lock:
    global _lock
    if _lock is None:
        _lock = asyncio.Lock()
    return _lock


def _load_provider_class(name: str) -> type[Provider]:
    module_path, _, class_name = _PROVIDER_PATHS[name].partition(":")
    module = importlib.import_module(module_path)
    provider_class: type[Provider] = getattr(module, class_name)
    return provider_class


async def get_provider(name: str, settings: Settings | None = None) -> Provider:
    """Return the provider for `name`, constructing it on first use.

    Args:
        name: Provider name, one of SUPPORTED_PROVIDERS
        settings: Settings for a newly constructed provider; defaults to
            the process settings. Ignored once the provider exists.

    Raises:
        UnknownProviderError: If `name` is not a supported provider
    """
    key = name.strip().lower()
    if key not in _PROVIDER_PATHS:
        raise UnknownProviderError(name, SUPPORTED_PROVIDERS)

    existing = _instances.get(key)
    if existing is not None:
        return existing

    async with _get_lock():
        existing = _instances.get(key)
        if existing is not None:
            return existing
        provider_class = _load_provider_class(key)
        provider = provider_class(settings or get_settings())  # type: ignore[call-arg]
        await provider.start()
        _instances[key] = provider
        logger.info("provider_created", provider=key)
        return provider


async def get_provider_for(config: RunConfig, settings: Settings | None = None) -> Provider:
    """Provider named by a run configuration, or the configured default."""
    settings = settings or get_settings()
    return await get_provider(config.provider or settings.default_provider, settings)


def cached_providers() -> list[str]:
    return list(_instances)


async def dispose_all_providers() -> None:
    """Tear down every constructed provider and forget it."""
    global _lock
    async with _get_lock():
        instances = list(_instances.items())
        _instances.clear()
    for name, provider in instances:
        try:
            await provider.dispose()
        except Exception as e:
            logger.error(
                "provider_dispose_failed",
                provider=name,
                error=str(e),
                error_type=type(e).__name__,
            )
    # A new event loop may construct providers after this
    _lock = None
    logger.debug("providers_disposed", count=len(instances))
