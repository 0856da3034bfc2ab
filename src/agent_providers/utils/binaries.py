"""Locates native binaries when the host process has a minimal PATH.

Desktop launchers and service managers often start processes without the
user's shell profile, so `node`, `claude` and `codex` installed through
nvm, Homebrew or npm prefixes are invisible to a plain PATH lookup. Each
resolver tries the environment first, then the user's login shell, then
well-known install locations.
"""

import os
import shutil
import subprocess
from functools import cache
from pathlib import Path

from structlog import get_logger


logger = get_logger(__name__)

LOGIN_SHELL_TIMEOUT_SECONDS = 5


def _is_executable(path: Path) -> bool:
    return path.is_file() and os.access(path, os.X_OK)


def _login_shell_lookup(name: str) -> str | None:
    """Ask the user's login shell where `name` lives."""
    shell = os.environ.get("SHELL") or "/bin/sh"
    try:
        # nosec B603 - fixed argv, name comes from this module only
        result = subprocess.run(
            [shell, "-lc", f"command -v {name}"],
            capture_output=True,
            text=True,
            timeout=LOGIN_SHELL_TIMEOUT_SECONDS,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.debug("login_shell_lookup_failed", binary=name, error=str(e))
        return None
    for line in reversed(result.stdout.strip().splitlines()):
        candidate = Path(line.strip())
        if candidate.is_absolute() and _is_executable(candidate):
            return str(candidate)
    return None


def _nvm_default_node(home: Path) -> Path | None:
    nvm_dir = Path(os.environ.get("NVM_DIR") or home / ".nvm")
    alias_file = nvm_dir / "alias" / "default"
    versions_dir = nvm_dir / "versions" / "node"
    if not versions_dir.is_dir():
        return None

    if alias_file.is_file():
        alias = alias_file.read_text(encoding="utf-8").strip().lstrip("v")
        matches = sorted(
            (p for p in versions_dir.iterdir() if p.name.lstrip("v").startswith(alias)),
            reverse=True,
        )
        for match in matches:
            node = match / "bin" / "node"
            if _is_executable(node):
                return node

    installed = sorted(versions_dir.iterdir(), reverse=True)
    for version in installed:
        node = version / "bin" / "node"
        if _is_executable(node):
            return node
    return None


def _common_locations(name: str, home: Path) -> list[Path]:
    return [
        Path("/opt/homebrew/bin") / name,
        Path("/usr/local/bin") / name,
        Path("/usr/bin") / name,
        home / ".local" / "bin" / name,
        home / ".npm-global" / "bin" / name,
        home / ".volta" / "bin" / name,
        home / ".bun" / "bin" / name,
    ]


def _resolve(name: str, env_var: str | None, extra: list[Path]) -> str | None:
    if env_var:
        override = os.environ.get(env_var)
        if override:
            return override

    found = shutil.which(name)
    if found:
        return found

    found = _login_shell_lookup(name)
    if found:
        return found

    for candidate in extra + _common_locations(name, Path.home()):
        if _is_executable(candidate):
            return str(candidate)
    return None


@cache
def resolve_node_binary() -> str:
    """Node.js runtime used to spawn SDK CLIs. Falls back to bare "node"."""
    home = Path.home()
    nvm_node = _nvm_default_node(home)
    node = _resolve("node", "NODE_BINARY", [nvm_node] if nvm_node else [])
    logger.debug("node_binary_resolved", path=node)
    return node or "node"


@cache
def resolve_claude_cli(explicit: str | None = None) -> str | None:
    """Claude CLI path, or None to let the SDK use its bundled CLI."""
    if explicit:
        return explicit
    home = Path.home()
    path = _resolve(
        "claude",
        "CLAUDE_CLI_PATH",
        [home / ".claude" / "local" / "claude", home / ".claude" / "bin" / "claude"],
    )
    logger.debug("claude_cli_resolved", path=path)
    return path


@cache
def resolve_codex_binary(explicit: str | None = None) -> str:
    """Codex CLI path. Falls back to bare "codex" on PATH."""
    if explicit:
        return explicit
    path = _resolve("codex", "CODEX_BINARY", [])
    logger.debug("codex_binary_resolved", path=path)
    return path or "codex"


def subprocess_env(extra: dict[str, str] | None = None) -> dict[str, str]:
    """Environment for spawned backends.

    The resolved node directory is put at the front of PATH so CLI shims
    with a `#!/usr/bin/env node` shebang find the same runtime.
    """
    env = dict(os.environ)
    node = resolve_node_binary()
    node_dir = str(Path(node).parent) if os.path.isabs(node) else None
    if node_dir:
        parts = env.get("PATH", "").split(os.pathsep) if env.get("PATH") else []
        if node_dir not in parts:
            env["PATH"] = os.pathsep.join([node_dir, *parts])
    if extra:
        env.update(extra)
    return env


def clear_caches() -> None:
    resolve_node_binary.cache_clear()
    resolve_claude_cli.cache_clear()
    resolve_codex_binary.cache_clear()
