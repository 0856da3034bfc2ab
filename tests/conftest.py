"""Shared fixtures for agent-providers tests."""

import json
import sys
from collections.abc import AsyncIterator, Callable, Iterator
from pathlib import Path
from typing import Any

import httpx
import pytest
import pytest_asyncio
import structlog
from keyring.backend import KeyringBackend
from keyring.errors import PasswordDeleteError, PasswordSetError

from agent_providers.auth.storage import (
    CredentialStore,
    FileSecretBackend,
    KeychainSecretBackend,
)
from agent_providers.auth.tokens import OAuthTokenSet, now_ms
from agent_providers.config.settings import (
    CodexSettings,
    OAuthSettings,
    Settings,
    StorageSettings,
)
from agent_providers.providers.registry import dispose_all_providers
from agent_providers.utils import binaries


class InMemoryKeyring(KeyringBackend):
    """Keyring backend that keeps secrets in a dict."""

    priority = 1  # type: ignore[assignment]

    def __init__(self) -> None:
        super().__init__()
        self.passwords: dict[tuple[str, str], str] = {}

    def get_password(self, service: str, username: str) -> str | None:
        return self.passwords.get((service, username))

    def set_password(self, service: str, username: str, password: str) -> None:
        self.passwords[(service, username)] = password

    def delete_password(self, service: str, username: str) -> None:
        if (service, username) not in self.passwords:
            raise PasswordDeleteError(username)
        del self.passwords[(service, username)]


class LockedKeyring(InMemoryKeyring):
    """Keyring backend whose writes always fail, like a locked keychain."""

    def set_password(self, service: str, username: str, password: str) -> None:
        raise PasswordSetError("keychain is locked")


@pytest.fixture
def memory_keyring() -> InMemoryKeyring:
    return InMemoryKeyring()


@pytest.fixture
def credentials_dir(tmp_path: Path) -> Path:
    return tmp_path / "app" / "credentials"


@pytest.fixture
def file_store(credentials_dir: Path) -> CredentialStore:
    """Credential store with no keychain, backed by tmp_path."""
    return CredentialStore(None, FileSecretBackend(credentials_dir))


@pytest.fixture
def keychain_store(
    memory_keyring: InMemoryKeyring, credentials_dir: Path
) -> CredentialStore:
    return CredentialStore(
        KeychainSecretBackend("agent-providers-test", memory_keyring),
        FileSecretBackend(credentials_dir),
    )


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings isolated to tmp_path with the keychain disabled."""
    return Settings(
        storage=StorageSettings(app_dir=tmp_path / "app", use_keychain=False),
        oauth=OAuthSettings(flow_ttl_seconds=5, callback_timeout_seconds=2),
        codex=CodexSettings(home=tmp_path / "codex-home"),
    )


@pytest.fixture
def make_tokens() -> Callable[..., OAuthTokenSet]:
    """Build a token set expiring `expires_in` seconds from now."""

    def _make(
        expires_in: int = 3600,
        access_token: str = "access-1",
        refresh_token: str = "refresh-1",
        account_id: str | None = None,
    ) -> OAuthTokenSet:
        return OAuthTokenSet(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=now_ms() + expires_in * 1000,
            account_id=account_id,
        )

    return _make


class TokenEndpoint:
    """Recording stand-in for an OAuth token endpoint."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.responses: list[httpx.Response] = []
        self.default_body: dict[str, Any] = {
            "access_token": "access-new",
            "refresh_token": "refresh-new",
            "expires_in": 28800,
        }

    def queue(self, status_code: int, body: dict[str, Any] | str) -> None:
        if isinstance(body, str):
            self.responses.append(httpx.Response(status_code, text=body))
        else:
            self.responses.append(httpx.Response(status_code, json=body))

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.responses:
            return self.responses.pop(0)
        return httpx.Response(200, json=self.default_body)

    def form(self, index: int = -1) -> dict[str, str]:
        from urllib.parse import parse_qsl

        return dict(parse_qsl(self.requests[index].content.decode()))

    def json(self, index: int = -1) -> dict[str, Any]:
        result: dict[str, Any] = json.loads(self.requests[index].content)
        return result


@pytest.fixture
def token_endpoint() -> TokenEndpoint:
    return TokenEndpoint()


@pytest_asyncio.fixture
async def http_client(token_endpoint: TokenEndpoint) -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient(transport=httpx.MockTransport(token_endpoint)) as client:
        yield client


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep host credentials and binary caches out of every test."""
    for var in (
        "ANTHROPIC_API_KEY",
        "CLAUDE_CODE_OAUTH_TOKEN",
        "OPENAI_API_KEY",
        "CODEX_API_KEY",
        "CLAUDE_CLI_PATH",
        "CODEX_BINARY",
    ):
        monkeypatch.delenv(var, raising=False)
    binaries.clear_caches()


@pytest.fixture(autouse=True)
def reset_structlog() -> Iterator[None]:
    """Undo structlog configuration done by a test (e.g. CLI logging setup)."""
    yield
    structlog.reset_defaults()


@pytest_asyncio.fixture
async def isolated_registry() -> AsyncIterator[None]:
    await dispose_all_providers()
    yield
    await dispose_all_providers()


@pytest.fixture
def locked_keyring() -> LockedKeyring:
    return LockedKeyring()


FAKE_CODEX_SCRIPT = r"""#!/bin/sh
if [ "$1" = "--version" ]; then
    echo "codex-cli 0.50.0"
    exit 0
fi
dir="$FAKE_CODEX_DIR"
n=$(ls "$dir" | grep -c '^args-')
n=$((n + 1))
printf '%s\n' "$@" > "$dir/args-$n"
cat > "$dir/stdin-$n"
env > "$dir/env-$n"
case "$FAKE_CODEX_MODE" in
    fail)
        echo "boom: bad model" >&2
        exit 2
        ;;
    garbage)
        echo "not json"
        exit 0
        ;;
    hang)
        echo '{"type":"thread.started","thread_id":"th-1"}'
        exec sleep 30
        ;;
esac
echo '{"type":"thread.started","thread_id":"th-1"}'
echo '{"type":"turn.started"}'
echo "{\"type\":\"item.completed\",\"item\":{\"id\":\"m$n\",\"type\":\"agent_message\",\"text\":\"reply $n\"}}"
echo '{"type":"turn.completed","usage":{"input_tokens":3,"cached_input_tokens":0,"output_tokens":2}}'
"""


class FakeCodex:
    """Shell script standing in for the codex binary; records every call."""

    def __init__(self, root: Path):
        self.dir = root / "calls"
        self.dir.mkdir(parents=True)
        self.path = root / "codex"
        self.path.write_text(FAKE_CODEX_SCRIPT)
        self.path.chmod(0o755)

    def calls(self) -> list[list[str]]:
        count = len(list(self.dir.glob("args-*")))
        return [
            (self.dir / f"args-{n}").read_text().splitlines()
            for n in range(1, count + 1)
        ]

    def stdin(self, n: int) -> str:
        return (self.dir / f"stdin-{n}").read_text()

    def env(self, n: int) -> dict[str, str]:
        pairs = (
            line.split("=", 1)
            for line in (self.dir / f"env-{n}").read_text().splitlines()
            if "=" in line
        )
        return dict(pairs)


@pytest.fixture
def fake_codex(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> FakeCodex:
    if sys.platform == "win32":
        pytest.skip("fake codex binary is a POSIX shell script")
    fake = FakeCodex(tmp_path / "fake-codex")
    monkeypatch.setenv("FAKE_CODEX_DIR", str(fake.dir))
    monkeypatch.delenv("FAKE_CODEX_MODE", raising=False)
    return fake
