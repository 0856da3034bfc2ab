"""Claude provider backed by the Claude Agent SDK."""

import asyncio
import contextlib
import os
from collections.abc import AsyncIterator, Callable
from typing import Any

import httpx
import orjson
from cachetools import TTLCache
from claude_agent_sdk import ClaudeAgentOptions, ClaudeSDKClient, ClaudeSDKError
from structlog import get_logger

from agent_providers.auth.lifecycle import ReconnectListener, TokenLifecycleManager
from agent_providers.auth.oauth import CLAUDE_OAUTH, LoginStart, OAuthFlowManager
from agent_providers.auth.storage import CredentialStore
from agent_providers.auth.tokens import AuthState, TokenHealth
from agent_providers.config.settings import Settings
from agent_providers.core.async_utils import iterate_until
from agent_providers.exceptions import (
    CredentialsError,
    CredentialsStorageError,
    OAuthError,
)
from agent_providers.protocol import messages as m
from agent_providers.protocol.claude import ClaudeMessageAdapter
from agent_providers.session import MessageChannel, RunHandle
from agent_providers.utils.binaries import resolve_claude_cli, subprocess_env

from .base import (
    AuthStatus,
    Provider,
    ProviderRunOptions,
    ReadyStatus,
    abort_watcher,
    notify_run_ready,
)


logger = get_logger(__name__)

ACCOUNT_API_KEY = "anthropic-api-key"
ACCOUNT_OAUTH = "anthropic-oauth"

CLI_AUTH_TIMEOUT_SECONDS = 5

# The SDK exposes thinking as a token budget rather than an effort level
THINKING_BUDGETS: dict[str, int] = {
    "minimal": 1024,
    "low": 4096,
    "medium": 10240,
    "high": 20480,
    "max": 32000,
}

DISALLOWED_TOOLS = ["EnterPlanMode", "ExitPlanMode"]


class ClaudeProvider(Provider):
    """Token-streaming backend.

    Auth methods are tried in order: API key (environment, then stored),
    the Claude CLI's own login, then tokens from our OAuth flow.
    """

    name = "claude"

    def __init__(
        self,
        settings: Settings,
        store: CredentialStore | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.settings = settings
        self.store = store or CredentialStore.from_settings(settings.storage)
        self._http_client = http_client
        self.lifecycle = TokenLifecycleManager(
            self.name,
            self.store,
            ACCOUNT_OAUTH,
            CLAUDE_OAUTH,
            lead_seconds=settings.oauth.refresh_lead_seconds,
            http_client=http_client,
        )
        self.flows = OAuthFlowManager(
            CLAUDE_OAUTH,
            flow_ttl=settings.oauth.flow_ttl_seconds,
            callback_timeout=settings.oauth.callback_timeout_seconds,
            http_client=http_client,
        )
        cache_ttl = max(settings.claude.auth_status_cache_seconds, 1)
        self._cli_auth_cache: TTLCache[str, bool] = TTLCache(maxsize=1, ttl=cache_ttl)
        self._status_cache: TTLCache[str, AuthStatus] = TTLCache(
            maxsize=1, ttl=cache_ttl
        )
        self.lifecycle.on_reconnect_required(lambda _reason: self._status_cache.clear())

    async def start(self) -> None:
        await self.lifecycle.start()

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    async def _api_key(self) -> str | None:
        env_key = os.environ.get("ANTHROPIC_API_KEY")
        if env_key:
            return env_key
        return await self.store.load(ACCOUNT_API_KEY)

    async def _cli_has_own_auth(self) -> bool:
        cached = self._cli_auth_cache.get("logged_in")
        if cached is not None:
            return cached
        cli = resolve_claude_cli(
            str(self.settings.claude.cli_path) if self.settings.claude.cli_path else None
        )
        logged_in = False
        if cli:
            logged_in = await self._run_cli_auth_status(cli)
        self._cli_auth_cache["logged_in"] = logged_in
        logger.debug("claude_cli_auth_checked", logged_in=logged_in)
        return logged_in

    async def _run_cli_auth_status(self, cli: str) -> bool:
        try:
            process = await asyncio.create_subprocess_exec(
                cli,
                "auth",
                "status",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=subprocess_env({"CLAUDECODE": ""}),
            )
        except OSError as e:
            logger.debug("claude_cli_auth_status_failed", error=str(e))
            return False
        try:
            stdout, _ = await asyncio.wait_for(
                process.communicate(), timeout=CLI_AUTH_TIMEOUT_SECONDS
            )
        except TimeoutError:
            process.kill()
            await process.wait()
            return False
        if process.returncode != 0:
            return False
        try:
            data = orjson.loads(stdout)
        except orjson.JSONDecodeError:
            return False
        return isinstance(data, dict) and data.get("loggedIn") is True

    async def _active_method(self) -> AuthState:
        if await self._api_key():
            return AuthState.API_KEY
        if await self._cli_has_own_auth():
            return AuthState.CLI_DELEGATED
        if await self.lifecycle.load_tokens() is not None:
            return AuthState.OAUTH_VALID
        return AuthState.UNAUTHENTICATED

    async def validate_api_key(self, api_key: str) -> str | None:
        """Check a key against the models endpoint.

        Returns:
            None if the key works, otherwise a human-readable reason
        """
        url = f"{self.settings.claude.api_base_url.rstrip('/')}/v1/models"
        headers = {
            "x-api-key": api_key,
            "anthropic-version": self.settings.claude.anthropic_version,
        }
        timeout = self.settings.oauth.http_timeout_seconds
        try:
            if self._http_client is None:
                async with httpx.AsyncClient() as client:
                    response = await client.get(url, headers=headers, timeout=timeout)
            else:
                response = await self._http_client.get(
                    url, headers=headers, timeout=timeout
                )
        except httpx.HTTPError as e:
            logger.warning("claude_api_key_validation_failed", error=str(e))
            return f"Could not validate key: {e}"
        if response.status_code == 200:
            return None
        if response.status_code == 401:
            return "Invalid API key"
        if response.status_code == 403:
            return "API key lacks permissions"
        return f"Unexpected response from API: {response.status_code}"

    async def get_auth_status(self) -> AuthStatus:
        method = await self._active_method()
        cached = self._status_cache.get("status")
        if cached is not None and cached.method == method and method in (
            AuthState.API_KEY,
            AuthState.CLI_DELEGATED,
        ):
            return cached

        if method == AuthState.API_KEY:
            api_key = await self._api_key()
            error = await self.validate_api_key(api_key or "")
            status = AuthStatus(
                authenticated=error is None,
                method=AuthState.API_KEY,
                identity="Anthropic API key" if error is None else None,
                error=error,
                storage_backend=self.store.backend,
            )
            if error is None:
                self._status_cache["status"] = status
            return status

        if method == AuthState.CLI_DELEGATED:
            status = AuthStatus(
                authenticated=True,
                method=AuthState.CLI_DELEGATED,
                identity="Claude CLI",
                token_health=TokenHealth.VALID,
            )
            self._status_cache["status"] = status
            return status

        if method == AuthState.OAUTH_VALID:
            return await self._oauth_status()

        return AuthStatus(
            authenticated=False,
            method=AuthState.UNAUTHENTICATED,
            error="Not authenticated. Add an API key or log in with Claude.",
            storage_backend=self.store.backend,
        )

    async def _oauth_status(self) -> AuthStatus:
        token = await self.lifecycle.ensure_valid_token()
        health = await self.lifecycle.health()
        method = {
            TokenHealth.EXPIRING: AuthState.OAUTH_EXPIRING,
            TokenHealth.EXPIRED: AuthState.OAUTH_EXPIRED,
        }.get(health, AuthState.OAUTH_VALID)
        if token is None:
            return AuthStatus(
                authenticated=False,
                method=AuthState.OAUTH_EXPIRED,
                error=self.lifecycle.reconnect_reason
                or "OAuth token expired. Re-authentication required.",
                storage_backend=self.store.backend,
                token_health=health,
                next_refresh_at=self.lifecycle.next_refresh_at,
                reconnect_required=True,
            )
        return AuthStatus(
            authenticated=True,
            method=method,
            identity="Claude subscription",
            storage_backend=self.store.backend,
            token_health=health,
            next_refresh_at=self.lifecycle.next_refresh_at,
            reconnect_required=self.lifecycle.reconnect_required,
        )

    async def check_ready(self) -> ReadyStatus:
        status = await self.get_auth_status()
        if not status.authenticated:
            return ReadyStatus(ready=False, reason=status.error or "Not authenticated.")
        return ReadyStatus(ready=True)

    async def login_with_api_key(self, api_key: str) -> AuthStatus:
        api_key = api_key.strip()
        error = await self.validate_api_key(api_key)
        if error is not None:
            return AuthStatus(
                authenticated=False,
                method=AuthState.API_KEY,
                error=error,
                storage_backend=self.store.backend,
            )
        try:
            backend = await self.store.store(ACCOUNT_API_KEY, api_key)
        except CredentialsStorageError as e:
            return AuthStatus(authenticated=False, method=AuthState.API_KEY, error=e.message)
        logger.info("claude_api_key_saved", backend=backend.value)
        status = AuthStatus(
            authenticated=True,
            method=AuthState.API_KEY,
            identity="Anthropic API key",
            storage_backend=backend,
        )
        self._status_cache["status"] = status
        return status

    async def login_with_oauth(self) -> LoginStart:
        return await self.flows.start_login()

    async def complete_oauth_login(
        self, login_id: str, code: str | None = None
    ) -> AuthStatus:
        try:
            if code is None:
                tokens = await self.flows.complete_login(callback=login_id)
            else:
                tokens = await self.flows.complete_login(callback=code, login_id=login_id)
            backend = await self.lifecycle.save_tokens(tokens)
        except (OAuthError, CredentialsStorageError) as e:
            logger.warning("claude_oauth_login_failed", error=e.message)
            return AuthStatus(
                authenticated=False,
                method=AuthState.UNAUTHENTICATED,
                error=e.message,
                storage_backend=self.store.backend,
            )
        except httpx.HTTPError as e:
            logger.warning("claude_oauth_login_failed", error=str(e))
            return AuthStatus(
                authenticated=False,
                method=AuthState.UNAUTHENTICATED,
                error=f"Token exchange failed: {e}",
                storage_backend=self.store.backend,
            )
        self._status_cache.clear()
        logger.info("claude_oauth_login_saved", backend=backend.value)
        return await self.get_auth_status()

    async def reset_auth(self) -> None:
        await self.store.delete(ACCOUNT_API_KEY)
        await self.lifecycle.clear()
        await self.flows.dispose()
        self._status_cache.clear()
        self._cli_auth_cache.clear()
        logger.info("claude_auth_reset")

    def on_reconnect_required(self, listener: ReconnectListener) -> Callable[[], None]:
        return self.lifecycle.on_reconnect_required(listener)

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------

    async def _auth_env(self) -> dict[str, str]:
        """Credential variables for the CLI subprocess.

        Raises:
            CredentialsError: If OAuth is the active method and the token
                cannot be refreshed
        """
        method = await self._active_method()
        if method == AuthState.API_KEY:
            api_key = await self._api_key()
            return {"ANTHROPIC_API_KEY": api_key or ""}
        if method == AuthState.OAUTH_VALID:
            token = await self.lifecycle.ensure_valid_token()
            if token is None:
                raise CredentialsError(
                    self.lifecycle.reconnect_reason
                    or "OAuth token expired. Re-authentication required."
                )
            return {"CLAUDE_CODE_OAUTH_TOKEN": token}
        return {}

    def _build_options(
        self, options: ProviderRunOptions, env: dict[str, str]
    ) -> ClaudeAgentOptions:
        config = options.config
        cli_path = self.settings.claude.cli_path
        kwargs: dict[str, Any] = {
            "model": config.model or self.settings.claude.default_model,
            "system_prompt": options.system_prompt,
            "permission_mode": config.permission_mode,
            "cwd": config.cwd,
            "env": env,
            "mcp_servers": config.mcp_servers,
            "resume": options.resume_id,
            "max_turns": options.max_turns,
            "include_partial_messages": True,
            "disallowed_tools": DISALLOWED_TOOLS,
            "stderr": _log_stderr,
            "cli_path": resolve_claude_cli(str(cli_path) if cli_path else None),
            "can_use_tool": options.can_use_tool,
            "hooks": options.hooks,
            "agents": options.agents,
            "max_budget_usd": config.max_budget_usd,
        }
        if config.reasoning_effort:
            kwargs["max_thinking_tokens"] = THINKING_BUDGETS[config.reasoning_effort]
        return ClaudeAgentOptions(**{k: v for k, v in kwargs.items() if v is not None})

    @staticmethod
    async def _prompt_stream(
        channel: MessageChannel, handle: RunHandle
    ) -> AsyncIterator[dict[str, Any]]:
        async for turn in channel:
            content: list[dict[str, Any]] = [
                image.to_content_block() for image in turn.images
            ]
            content.append({"type": "text", "text": turn.text})
            yield {
                "type": "user",
                "message": {"role": "user", "content": content},
                "parent_tool_use_id": None,
                "session_id": handle.session_id or "default",
            }

    async def _run(self, options: ProviderRunOptions) -> AsyncIterator[m.CanonicalMessage]:
        handle = RunHandle(self.name)
        handle.session_id = options.resume_id
        # Seeded before the SDK exists so no later injection can overtake it
        handle.inject(options.prompt, options.attachments)
        await notify_run_ready(options, handle)
        watcher = abort_watcher(options, handle)
        adapter = ClaudeMessageAdapter()
        adapter.session_id = options.resume_id
        client: ClaudeSDKClient | None = None

        try:
            try:
                env = subprocess_env({**options.config.env, **await self._auth_env()})
            except CredentialsError as e:
                yield m.error_message(e.message, handle.session_id)
                yield m.result_message(e.message, handle.session_id, is_error=True)
                return

            client = ClaudeSDKClient(options=self._build_options(options, env))
            logger.info(
                "claude_session_starting",
                model=options.config.model,
                resume=options.resume_id is not None,
            )
            await client.connect(prompt=self._prompt_stream(handle.channel, handle))
            handle.bind_backend(client)

            async for sdk_message in iterate_until(
                client.receive_messages(), options.abort_event
            ):
                for message in adapter.to_canonical(sdk_message):
                    if adapter.session_id:
                        handle.session_id = adapter.session_id
                    yield message
                    if options.single_turn and m.is_terminal_result(message):
                        handle.close()
        except ClaudeSDKError as e:
            if options.aborted:
                logger.info("claude_session_aborted", session_id=handle.session_id)
            else:
                logger.error("claude_session_failed", error=str(e))
                text = f"Claude error: {e}"
                yield m.error_message(text, handle.session_id)
                yield m.result_message(text, handle.session_id, is_error=True)
        finally:
            handle.close()
            handle.unbind_backend()
            if watcher is not None:
                watcher.cancel()
            if client is not None:
                await _disconnect(client)
            logger.debug("claude_session_ended", session_id=handle.session_id)

    async def dispose(self) -> None:
        await self.flows.dispose()
        await self.lifecycle.dispose()
        if self._http_client is not None:
            await self._http_client.aclose()


def _log_stderr(line: str) -> None:
    logger.debug("claude_cli_stderr", line=line.rstrip())


async def _disconnect(client: ClaudeSDKClient) -> None:
    try:
        await client.disconnect()
    except Exception as e:
        # disconnect() can fail when the CLI already exited; the transport
        # close below still reaps the subprocess
        logger.debug("claude_disconnect_failed", error=str(e))
        transport = getattr(client, "_transport", None)
        if transport is not None:
            with contextlib.suppress(Exception):
                await transport.close()
