"""Provider contract shared by every backend."""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from structlog import get_logger

from agent_providers.auth.lifecycle import ReconnectListener
from agent_providers.auth.oauth.flows import LoginStart
from agent_providers.auth.storage import StorageBackend
from agent_providers.auth.tokens import AuthState, TokenHealth
from agent_providers.protocol.messages import CanonicalMessage, QueryResult, ResultTracker
from agent_providers.session import ImageAttachment, RunHandle


logger = get_logger(__name__)

ReasoningEffort = Literal["minimal", "low", "medium", "high", "max"]


class CodexRunConfig(BaseModel):
    """Codex thread options; None means use the configured default."""

    sandbox_mode: str | None = None
    approval_policy: str | None = None
    network_access: bool | None = None
    web_search: bool | None = None
    base_url: str | None = None


class RunConfig(BaseModel):
    """Caller-supplied configuration, passed into query() verbatim."""

    provider: str | None = None
    model: str | None = None
    reasoning_effort: ReasoningEffort | None = None
    permission_mode: str | None = None
    cwd: str | None = None
    env: dict[str, str] = Field(default_factory=dict)
    mcp_servers: dict[str, dict[str, Any]] = Field(default_factory=dict)
    max_budget_usd: float | None = None
    codex: CodexRunConfig = Field(default_factory=CodexRunConfig)


@dataclass
class ProviderRunOptions:
    """Everything a single query() call needs."""

    prompt: str
    config: RunConfig = field(default_factory=RunConfig)
    system_prompt: str | None = None
    resume_id: str | None = None
    attachments: list[ImageAttachment] = field(default_factory=list)
    on_run_ready: Callable[[RunHandle], Any] | None = None
    abort_event: asyncio.Event | None = None
    single_turn: bool = False
    max_turns: int | None = None
    can_use_tool: Callable[..., Awaitable[Any]] | None = None
    hooks: dict[str, Any] | None = None
    agents: dict[str, Any] | None = None

    @property
    def aborted(self) -> bool:
        return self.abort_event is not None and self.abort_event.is_set()


class AuthStatus(BaseModel):
    """Auth status as shown to the application."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    authenticated: bool
    method: AuthState = AuthState.UNAUTHENTICATED
    identity: str | None = None
    error: str | None = None
    storage_backend: StorageBackend | None = None
    token_health: TokenHealth = TokenHealth.NO_TOKENS
    next_refresh_at: datetime | None = None
    reconnect_required: bool | None = None

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class ReadyStatus(BaseModel):
    ready: bool
    reason: str | None = None
    binary: str | None = None
    version: str | None = None


class QueryStream:
    """Live canonical message stream with a final summary.

    Iterate it to receive messages in backend order; `result` becomes
    available once the stream has been fully drained.
    """

    def __init__(self, source: AsyncIterator[CanonicalMessage]):
        self._source = source
        self._tracker = ResultTracker()
        self._result: QueryResult | None = None

    def __aiter__(self) -> "QueryStream":
        return self

    async def __anext__(self) -> CanonicalMessage:
        if self._result is not None:
            raise StopAsyncIteration
        try:
            message = await anext(self._source)
        except StopAsyncIteration:
            self._result = self._tracker.result()
            raise
        self._tracker.observe(message)
        return message

    @property
    def done(self) -> bool:
        return self._result is not None

    @property
    def result(self) -> QueryResult:
        if self._result is None:
            raise RuntimeError("Query result is only available after the stream ends")
        return self._result

    async def collect(self) -> QueryResult:
        """Drain the stream and return the summary."""
        async for _ in self:
            pass
        return self.result

    async def aclose(self) -> None:
        aclose = getattr(self._source, "aclose", None)
        if aclose is not None:
            await aclose()


class Provider(ABC):
    """One agent backend behind the uniform interface."""

    name: str

    async def start(self) -> None:
        """Arm background work (token refresh) after construction."""

    @abstractmethod
    async def check_ready(self) -> ReadyStatus:
        """Report whether the backend binary and credentials are usable."""

    @abstractmethod
    async def get_auth_status(self) -> AuthStatus:
        """Derive the current auth status. Never raises for auth failures."""

    @abstractmethod
    async def login_with_api_key(self, api_key: str) -> AuthStatus:
        """Validate and persist an API key."""

    @abstractmethod
    async def login_with_oauth(self) -> LoginStart:
        """Begin an OAuth login; returns the URL to open and a login id."""

    @abstractmethod
    async def complete_oauth_login(
        self, login_id: str, code: str | None = None
    ) -> AuthStatus:
        """Finish an OAuth login started with login_with_oauth().

        Args:
            login_id: Login id from login_with_oauth(); paste flows also
                accept the pasted "code#state" here
            code: Pasted "code#state" for paste flows, when login_id is the id
        """

    @abstractmethod
    async def reset_auth(self) -> None:
        """Forget every credential this provider manages."""

    @abstractmethod
    def on_reconnect_required(self, listener: ReconnectListener) -> Callable[[], None]:
        """Subscribe to reconnect-required signals."""

    @abstractmethod
    def _run(self, options: ProviderRunOptions) -> AsyncIterator[CanonicalMessage]:
        """Backend-specific stream of canonical messages."""

    def query(self, options: ProviderRunOptions) -> QueryStream:
        """Start a session and stream its canonical messages."""
        return QueryStream(self._run(options))

    @abstractmethod
    async def dispose(self) -> None:
        """Release timers, listeners and pending logins."""


async def notify_run_ready(options: ProviderRunOptions, handle: RunHandle) -> None:
    """Hand the handle to the caller before the backend starts streaming."""
    if options.on_run_ready is None:
        return
    result = options.on_run_ready(handle)
    if asyncio.iscoroutine(result):
        await result


def abort_watcher(options: ProviderRunOptions, handle: RunHandle) -> asyncio.Task[None] | None:
    """Close the handle as soon as the abort event fires."""
    if options.abort_event is None:
        return None
    event = options.abort_event

    async def watch() -> None:
        await event.wait()
        logger.debug("run_aborted", provider=handle.provider, session_id=handle.session_id)
        handle.close()

    return asyncio.create_task(watch())
