"""Codex provider: one `codex exec` subprocess per turn."""

import asyncio
import base64
import mimetypes
import os
import tempfile
from collections.abc import AsyncIterator, Callable
from pathlib import Path

import httpx
import orjson
from structlog import get_logger

from agent_providers.auth.lifecycle import ReconnectListener, TokenLifecycleManager
from agent_providers.auth.oauth import CODEX_OAUTH, LoginStart, OAuthFlowManager
from agent_providers.auth.storage import CredentialStore, StorageBackend
from agent_providers.auth.tokens import AuthState, TokenHealth
from agent_providers.config.settings import Settings
from agent_providers.core.async_utils import iterate_until
from agent_providers.core.system import ensure_private_dir
from agent_providers.exceptions import (
    BackendError,
    CredentialsError,
    CredentialsStorageError,
    OAuthError,
)
from agent_providers.protocol import messages as m
from agent_providers.protocol.codex import DEFAULT_MODEL_LABEL, CodexEventNormalizer
from agent_providers.session import ImageAttachment, RunHandle
from agent_providers.utils.binaries import resolve_codex_binary, subprocess_env

from .base import (
    AuthStatus,
    Provider,
    ProviderRunOptions,
    ReadyStatus,
    abort_watcher,
    notify_run_ready,
)
from .codex_exec import CodexExecOptions, CodexExecTurn


logger = get_logger(__name__)

ACCOUNT_API_KEY = "openai-api-key"
ACCOUNT_OAUTH = "openai-oauth"

VERSION_TIMEOUT_SECONDS = 10
INSTALL_HINT = "Install with: npm i -g @openai/codex"


def wrap_system_prompt(prompt: str, system_prompt: str | None) -> str:
    if not system_prompt:
        return prompt
    return f"<system_instructions>\n{system_prompt}\n</system_instructions>\n\n{prompt}"


def read_cli_auth(codex_home: Path) -> dict[str, object] | None:
    """The Codex CLI's own auth.json, if it holds a usable credential."""
    auth_file = codex_home / "auth.json"
    try:
        data = orjson.loads(auth_file.read_bytes())
    except FileNotFoundError:
        return None
    except (OSError, orjson.JSONDecodeError) as e:
        logger.debug("codex_cli_auth_unreadable", path=str(auth_file), error=str(e))
        return None
    if not isinstance(data, dict):
        return None
    tokens = data.get("tokens") if isinstance(data.get("tokens"), dict) else {}
    if (
        data.get("OPENAI_API_KEY")
        or data.get("api_key")
        or data.get("token")
        or data.get("access_token")
        or tokens.get("access_token")
    ):
        return data
    return None


class CodexTurnControls:
    """Live controls bound to a Codex run handle.

    Codex has no persistent session to steer, so controls act on the
    running turn (interrupt) or on the turns that follow (model).
    """

    def __init__(self, model: str | None):
        self.model = model
        self.current: CodexExecTurn | None = None

    async def interrupt(self) -> None:
        if self.current is not None:
            await self.current.terminate()

    def set_model(self, model: str | None) -> None:
        self.model = model


class CodexProvider(Provider):
    """Turn-based backend.

    Auth methods are tried in order: tokens from our OAuth flow, an API
    key (environment, then stored), then the Codex CLI's own auth.json.
    """

    name = "codex"

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
            CODEX_OAUTH,
            lead_seconds=settings.oauth.refresh_lead_seconds,
            http_client=http_client,
        )
        self.flows = OAuthFlowManager(
            CODEX_OAUTH,
            flow_ttl=settings.oauth.flow_ttl_seconds,
            callback_timeout=settings.oauth.callback_timeout_seconds,
            http_client=http_client,
        )

    @property
    def codex_home(self) -> Path:
        return self.settings.codex.resolved_home()

    @property
    def binary(self) -> str:
        return resolve_codex_binary(self.settings.codex.binary)

    async def start(self) -> None:
        await self.lifecycle.start()

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    async def _api_key(self) -> str | None:
        env_key = os.environ.get("OPENAI_API_KEY", "").strip()
        if env_key:
            return env_key
        return await self.store.load(ACCOUNT_API_KEY)

    async def _resolve_credential(self) -> str | None:
        """Secret handed to the subprocess, or None to let the CLI use its own.

        Raises:
            CredentialsError: If OAuth tokens exist but cannot be refreshed
                and no other credential is available
        """
        if await self.lifecycle.load_tokens() is not None:
            token = await self.lifecycle.ensure_valid_token()
            if token:
                return token
            if await self._api_key() is None and read_cli_auth(self.codex_home) is None:
                raise CredentialsError(
                    self.lifecycle.reconnect_reason
                    or "OAuth token expired. Reconnect required."
                )
        return await self._api_key()

    async def get_auth_status(self) -> AuthStatus:
        tokens = await self.lifecycle.load_tokens()
        if tokens is not None:
            token = await self.lifecycle.ensure_valid_token()
            health = await self.lifecycle.health()
            if token is None:
                return AuthStatus(
                    authenticated=False,
                    method=AuthState.OAUTH_EXPIRED,
                    error=self.lifecycle.reconnect_reason
                    or "OAuth token expired. Reconnect required.",
                    storage_backend=self.store.backend,
                    token_health=health,
                    next_refresh_at=self.lifecycle.next_refresh_at,
                    reconnect_required=True,
                )
            latest = await self.lifecycle.load_tokens() or tokens
            return AuthStatus(
                authenticated=True,
                method=(
                    AuthState.OAUTH_EXPIRING
                    if health == TokenHealth.EXPIRING
                    else AuthState.OAUTH_VALID
                ),
                identity=f"ChatGPT ({latest.account_id})"
                if latest.account_id
                else "ChatGPT",
                storage_backend=self.store.backend,
                token_health=health,
                next_refresh_at=self.lifecycle.next_refresh_at,
                reconnect_required=self.lifecycle.reconnect_required,
            )

        if os.environ.get("OPENAI_API_KEY", "").strip():
            return AuthStatus(
                authenticated=True,
                method=AuthState.API_KEY,
                identity="env:OPENAI_API_KEY",
                storage_backend=self.store.backend,
            )
        if await self.store.load(ACCOUNT_API_KEY):
            return AuthStatus(
                authenticated=True,
                method=AuthState.API_KEY,
                identity="managed key",
                storage_backend=self.store.backend,
            )

        if read_cli_auth(self.codex_home) is not None:
            return AuthStatus(
                authenticated=True,
                method=AuthState.CLI_DELEGATED,
                identity="Codex CLI",
                storage_backend=StorageBackend.FILE,
            )

        return AuthStatus(
            authenticated=False,
            method=AuthState.UNAUTHENTICATED,
            error="Not authenticated with Codex",
            storage_backend=self.store.backend,
        )

    async def _codex_version(self) -> str | None:
        try:
            process = await asyncio.create_subprocess_exec(
                self.binary,
                "--version",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
                env=subprocess_env(),
            )
        except OSError as e:
            logger.debug("codex_version_check_failed", error=str(e))
            return None
        try:
            stdout, _ = await asyncio.wait_for(
                process.communicate(), timeout=VERSION_TIMEOUT_SECONDS
            )
        except TimeoutError:
            process.kill()
            await process.wait()
            return None
        if process.returncode != 0:
            return None
        return stdout.decode("utf-8", errors="replace").strip() or "unknown"

    async def check_ready(self) -> ReadyStatus:
        version = await self._codex_version()
        if version is None:
            return ReadyStatus(
                ready=False,
                reason=f"codex binary not found or not working. {INSTALL_HINT}",
                binary=self.binary,
            )
        status = await self.get_auth_status()
        if not status.authenticated:
            return ReadyStatus(
                ready=False,
                reason=status.error
                or "Not authenticated. Add an API key or log in with ChatGPT.",
                binary=self.binary,
                version=version,
            )
        return ReadyStatus(ready=True, binary=self.binary, version=version)

    async def login_with_api_key(self, api_key: str) -> AuthStatus:
        api_key = api_key.strip()
        if not api_key:
            return AuthStatus(
                authenticated=False, method=AuthState.API_KEY, error="API key is empty"
            )
        try:
            backend = await self.store.store(ACCOUNT_API_KEY, api_key)
        except CredentialsStorageError as e:
            return AuthStatus(authenticated=False, method=AuthState.API_KEY, error=e.message)
        logger.info("codex_api_key_saved", backend=backend.value)
        await self._register_with_cli(api_key)
        return await self.get_auth_status()

    async def _register_with_cli(self, api_key: str) -> None:
        """Best-effort `codex login --with-api-key` so the CLI works standalone."""
        ensure_private_dir(self.codex_home)
        try:
            process = await asyncio.create_subprocess_exec(
                self.binary,
                "login",
                "--with-api-key",
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
                env=subprocess_env({"CODEX_HOME": str(self.codex_home)}),
            )
            await asyncio.wait_for(
                process.communicate(f"{api_key}\n".encode()),
                timeout=VERSION_TIMEOUT_SECONDS,
            )
        except (OSError, TimeoutError) as e:
            logger.debug("codex_cli_login_skipped", error=str(e))

    async def login_with_oauth(self) -> LoginStart:
        ensure_private_dir(self.codex_home)
        return await self.flows.start_login()

    async def complete_oauth_login(
        self, login_id: str, code: str | None = None
    ) -> AuthStatus:
        try:
            tokens = await self.flows.complete_login(callback=code, login_id=login_id)
            backend = await self.lifecycle.save_tokens(tokens)
        except (OAuthError, CredentialsStorageError) as e:
            logger.warning("codex_oauth_login_failed", error=e.message)
            return AuthStatus(
                authenticated=False,
                method=AuthState.UNAUTHENTICATED,
                error=e.message,
                storage_backend=self.store.backend,
            )
        except httpx.HTTPError as e:
            logger.warning("codex_oauth_login_failed", error=str(e))
            return AuthStatus(
                authenticated=False,
                method=AuthState.UNAUTHENTICATED,
                error=f"Token exchange failed: {e}",
                storage_backend=self.store.backend,
            )
        logger.info("codex_oauth_login_saved", backend=backend.value)
        return await self.get_auth_status()

    async def reset_auth(self) -> None:
        await self.store.delete(ACCOUNT_API_KEY)
        await self.lifecycle.clear()
        await self.flows.dispose()
        logger.info("codex_auth_reset")

    def on_reconnect_required(self, listener: ReconnectListener) -> Callable[[], None]:
        return self.lifecycle.on_reconnect_required(listener)

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------

    def _exec_options(
        self,
        options: ProviderRunOptions,
        controls: CodexTurnControls,
        env: dict[str, str],
        images: list[Path],
    ) -> CodexExecOptions:
        config = options.config
        defaults = self.settings.codex
        overrides = config.codex
        return CodexExecOptions(
            binary=self.binary,
            model=controls.model,
            sandbox_mode=overrides.sandbox_mode or defaults.sandbox_mode,
            approval_policy=overrides.approval_policy or defaults.approval_policy,
            network_access=(
                overrides.network_access
                if overrides.network_access is not None
                else defaults.network_access
            ),
            web_search=(
                overrides.web_search
                if overrides.web_search is not None
                else defaults.web_search
            ),
            reasoning_effort=config.reasoning_effort,
            cwd=config.cwd,
            images=images,
            env=env,
        )

    def _exec_env(self, options: ProviderRunOptions, credential: str | None) -> dict[str, str]:
        extra = dict(options.config.env)
        if credential:
            extra["CODEX_API_KEY"] = credential
        base_url = options.config.codex.base_url or self.settings.codex.base_url
        if base_url:
            extra["OPENAI_BASE_URL"] = base_url.strip()
        if self.settings.codex.home:
            extra["CODEX_HOME"] = str(self.codex_home)
        return subprocess_env(extra)

    async def _run(self, options: ProviderRunOptions) -> AsyncIterator[m.CanonicalMessage]:
        handle = RunHandle(self.name)
        handle.session_id = options.resume_id
        handle.inject(options.prompt, options.attachments)
        controls = CodexTurnControls(
            options.config.model or self.settings.codex.default_model
        )
        handle.bind_backend(controls)
        await notify_run_ready(options, handle)
        watcher = abort_watcher(options, handle)
        normalizer = CodexEventNormalizer(
            controls.model or DEFAULT_MODEL_LABEL, options.resume_id
        )
        thread_id = options.resume_id

        try:
            async for turn in iterate_until(aiter(handle.channel), options.abort_event):
                # Each turn is a new process, so it picks up refreshed tokens
                try:
                    credential = await self._resolve_credential()
                except CredentialsError as e:
                    logger.warning("codex_turn_unauthenticated", error=e.message)
                    yield m.error_message(e.message, thread_id)
                    yield m.result_message(e.message, thread_id, is_error=True)
                    return
                env = self._exec_env(options, credential)

                # Resumed threads already carry the system prompt
                prompt = (
                    turn.text
                    if thread_id
                    else wrap_system_prompt(turn.text, options.system_prompt)
                )
                with tempfile.TemporaryDirectory(prefix="codex-images-") as tmp:
                    images = _write_images(turn.images, Path(tmp))
                    exec_turn = CodexExecTurn(
                        self._exec_options(options, controls, env, images), thread_id
                    )
                    controls.current = exec_turn
                    completed = False
                    try:
                        await exec_turn.start(prompt)
                        async for event in iterate_until(
                            exec_turn.events(), options.abort_event
                        ):
                            for message in normalizer.normalize(event):
                                yield message
                                completed = completed or m.is_terminal_result(message)
                    except BackendError as e:
                        if not options.aborted:
                            logger.error("codex_turn_error", error=e.message)
                            yield m.error_message(e.message, normalizer.session_id)
                            for message in normalizer.fail(e.message):
                                yield message
                        completed = True
                    finally:
                        controls.current = None
                        await exec_turn.close()

                thread_id = exec_turn.thread_id or normalizer.session_id or thread_id
                handle.session_id = thread_id
                if options.aborted:
                    logger.info("codex_run_aborted", session_id=thread_id)
                    for message in normalizer.finish():
                        yield message
                    return
                if not completed:
                    logger.info("codex_turn_interrupted", session_id=thread_id)
                    for message in normalizer.interrupted():
                        yield message
                if options.single_turn:
                    break
        finally:
            handle.close()
            handle.unbind_backend()
            if watcher is not None:
                watcher.cancel()
            logger.debug("codex_run_ended", session_id=thread_id)

    async def dispose(self) -> None:
        await self.flows.dispose()
        await self.lifecycle.dispose()
        if self._http_client is not None:
            await self._http_client.aclose()


def _write_images(images: list[ImageAttachment], directory: Path) -> list[Path]:
    """Codex takes images as file paths; materialize them for one turn."""
    paths = []
    for i, image in enumerate(images):
        suffix = mimetypes.guess_extension(image.media_type) or ".img"
        path = directory / f"image-{i}{suffix}"
        path.write_bytes(base64.b64decode(image.data))
        paths.append(path)
    return paths
