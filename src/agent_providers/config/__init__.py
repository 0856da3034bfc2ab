"""Configuration for agent-providers."""

from agent_providers.config.settings import Settings, get_settings


__all__ = ["Settings", "get_settings"]
