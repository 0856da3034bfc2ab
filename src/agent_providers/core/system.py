from pathlib import Path

import platformdirs


APP_NAME = "agent-providers"


def get_app_config_dir() -> Path:
    """Get the private per-application directory.

    Returns:
        Path to the agent-providers directory within the user config directory.
    """
    return Path(platformdirs.user_config_dir(APP_NAME))


def ensure_private_dir(path: Path) -> Path:
    """Create a directory readable only by the current user.

    Args:
        path: Directory to create

    Returns:
        The same path, guaranteed to exist with mode 0700
    """
    path.mkdir(parents=True, exist_ok=True, mode=0o700)
    path.chmod(0o700)
    return path
