"""Two-step OAuth login with PKCE.

Pending logins live in a TTLCache so abandoned flows self-expire. Every
failure (state mismatch, provider error, failed exchange) leaves the
pending flow in place until its own TTL runs out so the user can retry;
only a successful exchange consumes it, and only a timeout discards it
early.
"""

import asyncio
import contextlib
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from urllib.parse import parse_qs, urlparse

import httpx
from cachetools import TTLCache
from structlog import get_logger

from agent_providers.auth.tokens import OAuthTokenSet
from agent_providers.exceptions import (
    OAuthFlowExpiredError,
    OAuthLoginError,
    OAuthStateMismatchError,
    TokenExchangeError,
)

from .callback_server import LoopbackCallbackServer
from .pkce import generate_code_challenge, generate_code_verifier, generate_state
from .token_exchange import OAuthProviderConfig, exchange_code_async


logger = get_logger(__name__)

_MAX_PENDING_FLOWS = 16


@dataclass
class PendingOAuthFlow:
    login_id: str
    state: str
    code_verifier: str
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    callback_server: LoopbackCallbackServer | None = None


@dataclass(frozen=True)
class LoginStart:
    auth_url: str
    login_id: str
    # True when the user must paste "code#state" back (no loopback listener)
    manual_code: bool = False


def parse_callback_input(value: str) -> tuple[str, str | None]:
    """Split pasted callback input into (code, state).

    Accepts "code#state", a bare code, or the full redirect URL.
    """
    value = value.strip()
    if value.startswith(("http://", "https://")):
        parsed = urlparse(value)
        query = parse_qs(parsed.query)
        code = (query.get("code") or [""])[0]
        state = (query.get("state") or [None])[0]
        if not state and parsed.fragment:
            state = parsed.fragment
        return code, state
    code, sep, state = value.partition("#")
    return code, (state or None) if sep else None


class OAuthFlowManager:
    """Starts and completes OAuth logins for one provider."""

    def __init__(
        self,
        config: OAuthProviderConfig,
        flow_ttl: float = 120.0,
        callback_timeout: float = 120.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.config = config
        self.flow_ttl = flow_ttl
        self.callback_timeout = callback_timeout
        self._http_client = http_client
        self._pending: TTLCache[str, PendingOAuthFlow] = TTLCache(
            maxsize=_MAX_PENDING_FLOWS, ttl=flow_ttl
        )
        self._expiry_tasks: dict[str, asyncio.Task[None]] = {}
        # Tracked apart from the TTLCache, which may evict a flow before its
        # listener has been shut down
        self._servers: dict[str, LoopbackCallbackServer] = {}

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def start_login(self) -> LoginStart:
        """Begin a login.

        For loopback providers the local listener is bound and serving
        before the authorization URL is returned.

        Raises:
            CallbackServerError: If the loopback listener cannot start
        """
        verifier = generate_code_verifier()
        state = generate_state()
        flow = PendingOAuthFlow(
            login_id=uuid.uuid4().hex, state=state, code_verifier=verifier
        )

        if self.config.uses_loopback:
            # The port is fixed, so an older loopback login cannot coexist
            for login_id in list(self._servers):
                await self._discard(login_id)
            assert self.config.callback_port is not None
            server = LoopbackCallbackServer(
                host=self.config.callback_host or "127.0.0.1",
                port=self.config.callback_port,
                path=self.config.callback_path or "/",
                expected_state=state,
            )
            await server.start()
            flow.callback_server = server
            self._servers[flow.login_id] = server
            self._expiry_tasks[flow.login_id] = asyncio.create_task(
                self._expire_later(flow.login_id)
            )

        self._pending[flow.login_id] = flow
        auth_url = self.config.authorize_url_for(
            generate_code_challenge(verifier), state
        )
        logger.info(
            "oauth_login_started",
            provider=self.config.name,
            login_id=flow.login_id,
            loopback=self.config.uses_loopback,
        )
        return LoginStart(
            auth_url=auth_url,
            login_id=flow.login_id,
            manual_code=not self.config.uses_loopback,
        )

    async def complete_login(
        self, callback: str | None = None, login_id: str | None = None
    ) -> OAuthTokenSet:
        """Finish a login and return the exchanged token set.

        Args:
            callback: Pasted "code#state" or redirect URL (paste flows)
            login_id: Login identifier from start_login (required for loopback)

        Raises:
            OAuthStateMismatchError: Returned state matches no pending flow
            OAuthFlowExpiredError: No such pending login, or it timed out
            OAuthCallbackError: Provider redirected back with an error
            TokenExchangeError: Code exchange failed
        """
        if self.config.uses_loopback:
            flow = self._pending.get(login_id) if login_id else None
            if flow is None or flow.callback_server is None:
                raise OAuthFlowExpiredError()
            try:
                code = await flow.callback_server.wait_for_code(self.callback_timeout)
            except OAuthFlowExpiredError:
                logger.warning("oauth_login_timed_out", provider=self.config.name)
                await self._discard(flow.login_id)
                raise
        else:
            if not callback:
                raise OAuthLoginError("Paste the authorization code to finish login")
            code, state = parse_callback_input(callback)
            if not code or not state:
                raise OAuthLoginError(
                    "Expected the authorization code in the form code#state"
                )
            flow = self._match_flow(state, login_id)

        try:
            tokens = await exchange_code_async(
                code, flow.code_verifier, flow.state, self.config, self._http_client
            )
        except (TokenExchangeError, httpx.HTTPError):
            # The code is single-use; a retry has to wait for a new redirect
            if flow.callback_server is not None:
                flow.callback_server.reset_code()
            raise
        await self._discard(flow.login_id)
        logger.info(
            "oauth_login_completed",
            provider=self.config.name,
            expires_in=tokens.expires_in_seconds(),
        )
        return tokens

    def _match_flow(self, state: str, login_id: str | None) -> PendingOAuthFlow:
        if login_id is not None:
            flow = self._pending.get(login_id)
            if flow is None:
                raise OAuthFlowExpiredError()
            if flow.state != state:
                logger.warning("oauth_state_mismatch", provider=self.config.name)
                raise OAuthStateMismatchError()
            return flow

        for flow in list(self._pending.values()):
            if flow.state == state:
                return flow
        if len(self._pending) == 0:
            raise OAuthFlowExpiredError()
        logger.warning("oauth_state_mismatch", provider=self.config.name)
        raise OAuthStateMismatchError()

    async def _expire_later(self, login_id: str) -> None:
        await asyncio.sleep(self.flow_ttl)
        self._expiry_tasks.pop(login_id, None)
        logger.info("oauth_login_expired", provider=self.config.name, login_id=login_id)
        await self._discard(login_id)

    async def _discard(self, login_id: str) -> None:
        flow = self._pending.pop(login_id, None)
        task = self._expiry_tasks.pop(login_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        server = self._servers.pop(login_id, None)
        if server is not None:
            await server.close()
        elif flow is not None and flow.callback_server is not None:
            await flow.callback_server.close()

    async def dispose(self) -> None:
        for login_id in {*self._pending.keys(), *self._servers}:
            await self._discard(login_id)
        for task in list(self._expiry_tasks.values()):
            task.cancel()
        self._expiry_tasks.clear()
