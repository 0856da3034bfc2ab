"""Agent Providers - uniform streaming sessions over Claude and Codex backends."""

from ._version import __version__


__all__ = ["__version__"]
