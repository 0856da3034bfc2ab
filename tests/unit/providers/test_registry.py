"""Tests for the lazy provider registry."""

from unittest.mock import AsyncMock, patch

import pytest

from agent_providers.config.settings import Settings
from agent_providers.exceptions import UnknownProviderError
from agent_providers.providers import registry
from agent_providers.providers.base import RunConfig


pytestmark = pytest.mark.usefixtures("isolated_registry")


class TestRegistry:
    """One memoized instance per provider name."""

    @pytest.mark.asyncio
    async def test_unknown_provider(self, settings: Settings) -> None:
        """Test that an unsupported name raises with the supported list."""
        with pytest.raises(UnknownProviderError) as exc_info:
            await registry.get_provider("gemini", settings)

        assert exc_info.value.name == "gemini"
        assert "claude" in str(exc_info.value)
        assert registry.cached_providers() == []

    @pytest.mark.asyncio
    async def test_same_instance_is_returned(self, settings: Settings) -> None:
        """Test that repeated lookups share one instance."""
        first = await registry.get_provider("codex", settings)
        second = await registry.get_provider(" Codex ", settings)

        assert first is second
        assert first.name == "codex"
        assert registry.cached_providers() == ["codex"]

    @pytest.mark.asyncio
    async def test_providers_are_constructed_lazily(self, settings: Settings) -> None:
        """Test that only requested providers are built."""
        await registry.get_provider("claude", settings)

        assert registry.cached_providers() == ["claude"]

    @pytest.mark.asyncio
    async def test_run_config_selects_provider(self, settings: Settings) -> None:
        """Test that the run config's provider wins over the default."""
        explicit = await registry.get_provider_for(RunConfig(provider="codex"), settings)
        default = await registry.get_provider_for(RunConfig(), settings)

        assert explicit.name == "codex"
        assert default.name == settings.default_provider == "claude"

    @pytest.mark.asyncio
    async def test_dispose_all_continues_past_failures(self, settings: Settings) -> None:
        """Test that one failing dispose does not keep others alive."""
        claude = await registry.get_provider("claude", settings)
        codex = await registry.get_provider("codex", settings)

        with (
            patch.object(claude, "dispose", AsyncMock(side_effect=RuntimeError("boom"))),
            patch.object(codex, "dispose", AsyncMock()) as codex_dispose,
        ):
            await registry.dispose_all_providers()

        codex_dispose.assert_awaited_once()
        assert registry.cached_providers() == []
        assert await registry.get_provider("claude", settings) is not claude
