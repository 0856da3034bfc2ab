"""Locates the optional TOML configuration file."""

from pathlib import Path

from agent_providers.core.system import get_app_config_dir


CONFIG_FILE_NAMES = (".agent_providers.toml", "agent_providers.toml")


def _project_root(start: Path) -> Path | None:
    """Nearest ancestor of `start` holding a .git entry."""
    for directory in (start, *start.parents):
        if (directory / ".git").exists():
            return directory
    return None


def find_toml_config_file(start: Path | None = None) -> Path | None:
    """First config file found in the working directory, the enclosing git
    checkout, then `<user config dir>/agent-providers/config.toml`."""
    cwd = (start or Path.cwd()).resolve()
    directories = [cwd]
    root = _project_root(cwd)
    if root is not None and root != cwd:
        directories.append(root)

    candidates = [d / name for d in directories for name in CONFIG_FILE_NAMES]
    candidates.append(get_app_config_dir() / "config.toml")
    return next((path for path in candidates if path.is_file()), None)
