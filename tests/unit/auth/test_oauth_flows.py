"""Tests for OAuth login flows and the loopback callback listener."""

import asyncio
import socket
from typing import Any

import httpx
import pytest

from agent_providers.auth.oauth import (
    CLAUDE_OAUTH,
    OAuthFlowManager,
    OAuthProviderConfig,
    parse_callback_input,
)
from agent_providers.auth.oauth.callback_server import LoopbackCallbackServer
from agent_providers.exceptions import (
    CallbackServerError,
    OAuthCallbackError,
    OAuthFlowExpiredError,
    OAuthLoginError,
    OAuthStateMismatchError,
    TokenExchangeError,
)


def state_of(auth_url: str) -> str:
    return httpx.URL(auth_url).params["state"]


@pytest.fixture
def loopback_config() -> OAuthProviderConfig:
    """Loopback provider on an ephemeral port with opaque tokens."""
    return OAuthProviderConfig(
        name="loopback-test",
        authorize_url="https://auth.example.test/authorize",
        token_url="https://auth.example.test/token",
        client_id="client-1",
        redirect_uri="http://localhost:0/auth/callback",
        scopes=["openid"],
        exchange_format="form",
        refresh_format="form",
        callback_host="127.0.0.1",
        callback_port=0,
        callback_path="/auth/callback",
    )


class TestParseCallbackInput:
    """Accepted forms of a pasted authorization code."""

    def test_code_hash_state(self) -> None:
        """Test the code#state form shown by the provider's callback page."""
        assert parse_callback_input("abc#xyz") == ("abc", "xyz")

    def test_full_redirect_url(self) -> None:
        """Test that a pasted redirect URL yields code and state."""
        url = "https://console.anthropic.com/oauth/code/callback?code=abc&state=xyz"

        assert parse_callback_input(url) == ("abc", "xyz")

    def test_bare_code_has_no_state(self) -> None:
        """Test that a bare code carries no state."""
        assert parse_callback_input("  abc  ") == ("abc", None)


class TestPasteFlow:
    """Two-step paste flow (Claude)."""

    @pytest.fixture
    def manager(self, http_client: httpx.AsyncClient) -> OAuthFlowManager:
        return OAuthFlowManager(CLAUDE_OAUTH, flow_ttl=60, http_client=http_client)

    @pytest.mark.asyncio
    async def test_successful_login_consumes_flow(
        self, manager: OAuthFlowManager, token_endpoint: Any
    ) -> None:
        """Test that a matching state exchanges the code and drops the flow."""
        start = await manager.start_login()
        assert start.manual_code
        assert manager.pending_count == 1

        tokens = await manager.complete_login(
            f"code-1#{state_of(start.auth_url)}", login_id=start.login_id
        )

        assert tokens.access_token == "access-new"
        assert token_endpoint.json()["code"] == "code-1"
        assert manager.pending_count == 0

    @pytest.mark.asyncio
    async def test_state_mismatch_never_exchanges(
        self, manager: OAuthFlowManager, token_endpoint: Any
    ) -> None:
        """Test that a forged state is rejected before any token request."""
        start = await manager.start_login()

        with pytest.raises(OAuthStateMismatchError, match="possible CSRF"):
            await manager.complete_login("code-1#forged", login_id=start.login_id)

        assert token_endpoint.requests == []
        assert manager.pending_count == 1

    @pytest.mark.asyncio
    async def test_state_match_without_login_id(
        self, manager: OAuthFlowManager
    ) -> None:
        """Test that the pasted state alone identifies the pending flow."""
        await manager.start_login()
        second = await manager.start_login()

        tokens = await manager.complete_login(f"code#{state_of(second.auth_url)}")

        assert tokens.refresh_token == "refresh-new"
        assert manager.pending_count == 1

    @pytest.mark.asyncio
    async def test_failed_exchange_keeps_flow_for_retry(
        self, manager: OAuthFlowManager, token_endpoint: Any
    ) -> None:
        """Test that an exchange failure leaves the flow in place."""
        start = await manager.start_login()
        callback = f"code-1#{state_of(start.auth_url)}"
        token_endpoint.queue(400, {"error": "invalid_request"})

        with pytest.raises(TokenExchangeError):
            await manager.complete_login(callback, login_id=start.login_id)
        assert manager.pending_count == 1

        tokens = await manager.complete_login(callback, login_id=start.login_id)
        assert tokens.access_token == "access-new"

    @pytest.mark.asyncio
    async def test_unknown_login_id(self, manager: OAuthFlowManager) -> None:
        """Test that an unknown login id is reported as expired."""
        with pytest.raises(OAuthFlowExpiredError):
            await manager.complete_login("code#state", login_id="missing")

    @pytest.mark.asyncio
    async def test_missing_state_is_rejected(self, manager: OAuthFlowManager) -> None:
        """Test that a code without its state is refused."""
        start = await manager.start_login()

        with pytest.raises(OAuthLoginError, match="code#state"):
            await manager.complete_login("code-only", login_id=start.login_id)

    @pytest.mark.asyncio
    async def test_flow_expires_after_ttl(self, http_client: httpx.AsyncClient) -> None:
        """Test that an abandoned flow can no longer be completed."""
        manager = OAuthFlowManager(CLAUDE_OAUTH, flow_ttl=0.05, http_client=http_client)
        start = await manager.start_login()
        await asyncio.sleep(0.1)

        with pytest.raises(OAuthFlowExpiredError):
            await manager.complete_login(
                f"code#{state_of(start.auth_url)}", login_id=start.login_id
            )


class TestLoopbackCallbackServer:
    """Local redirect listener."""

    @pytest.mark.asyncio
    async def test_delivers_code_after_rejecting_bad_state(self) -> None:
        """Test that a wrong state gets 400 and the right one delivers the code."""
        server = LoopbackCallbackServer("127.0.0.1", 0, "/auth/callback", "state-ok")
        await server.start()
        base = f"http://127.0.0.1:{server.port}/auth/callback"
        try:
            async with httpx.AsyncClient() as client:
                bad = await client.get(base, params={"code": "c", "state": "nope"})
                good = await client.get(base, params={"code": "c-1", "state": "state-ok"})

            assert bad.status_code == 400
            assert bad.text == "State mismatch"
            assert good.status_code == 200
            assert await server.wait_for_code(1) == "c-1"
        finally:
            await server.close()
        assert not server.running

    @pytest.mark.asyncio
    async def test_provider_error_is_raised(self) -> None:
        """Test that an error redirect surfaces as OAuthCallbackError."""
        server = LoopbackCallbackServer("127.0.0.1", 0, "/cb", "s")
        await server.start()
        try:
            async with httpx.AsyncClient() as client:
                await client.get(
                    f"http://127.0.0.1:{server.port}/cb",
                    params={"state": "s", "error": "access_denied"},
                )
            with pytest.raises(OAuthCallbackError, match="access_denied"):
                await server.wait_for_code(1)
        finally:
            await server.close()

    @pytest.mark.asyncio
    async def test_wait_times_out(self) -> None:
        """Test that no redirect within the timeout raises OAuthFlowExpiredError."""
        server = LoopbackCallbackServer("127.0.0.1", 0, "/cb", "s")
        await server.start()
        try:
            with pytest.raises(OAuthFlowExpiredError):
                await server.wait_for_code(0.05)
        finally:
            await server.close()

    @pytest.mark.asyncio
    async def test_port_in_use_fails_at_start(self) -> None:
        """Test that a bind conflict raises before any URL is handed out."""
        blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        blocker.bind(("127.0.0.1", 0))
        blocker.listen()
        try:
            port = blocker.getsockname()[1]
            server = LoopbackCallbackServer("127.0.0.1", port, "/cb", "s")
            with pytest.raises(CallbackServerError):
                await server.start()
        finally:
            blocker.close()


class TestLoopbackFlow:
    """Loopback flow (Codex) through the flow manager."""

    @pytest.mark.asyncio
    async def test_timeout_discards_flow(
        self, loopback_config: OAuthProviderConfig, http_client: httpx.AsyncClient
    ) -> None:
        """Test that a callback timeout drops the flow and its listener."""
        manager = OAuthFlowManager(
            loopback_config, flow_ttl=60, callback_timeout=0.05, http_client=http_client
        )
        start = await manager.start_login()
        assert not start.manual_code

        with pytest.raises(OAuthFlowExpiredError):
            await manager.complete_login(login_id=start.login_id)

        assert manager.pending_count == 0
        await manager.dispose()

    @pytest.mark.asyncio
    async def test_redirect_completes_login(
        self,
        loopback_config: OAuthProviderConfig,
        http_client: httpx.AsyncClient,
        token_endpoint: Any,
    ) -> None:
        """Test that the browser redirect finishes the pending login."""
        manager = OAuthFlowManager(
            loopback_config, flow_ttl=60, callback_timeout=2, http_client=http_client
        )
        start = await manager.start_login()
        server = manager._servers[start.login_id]
        completion = asyncio.create_task(manager.complete_login(login_id=start.login_id))

        async with httpx.AsyncClient() as browser:
            await browser.get(
                f"http://127.0.0.1:{server.port}/auth/callback",
                params={"code": "loop-code", "state": state_of(start.auth_url)},
            )
        tokens = await completion

        assert tokens.access_token == "access-new"
        assert token_endpoint.form()["code"] == "loop-code"
        assert manager.pending_count == 0
        assert not server.running
        await manager.dispose()

    @pytest.mark.asyncio
    async def test_failed_exchange_waits_for_a_new_redirect(
        self,
        loopback_config: OAuthProviderConfig,
        http_client: httpx.AsyncClient,
        token_endpoint: Any,
    ) -> None:
        """Test that a retry after a failed exchange uses the next redirect's code."""
        manager = OAuthFlowManager(
            loopback_config, flow_ttl=60, callback_timeout=2, http_client=http_client
        )
        start = await manager.start_login()
        server = manager._servers[start.login_id]
        url = f"http://127.0.0.1:{server.port}/auth/callback"
        state = state_of(start.auth_url)
        token_endpoint.queue(400, {"error": "invalid_request"})

        async with httpx.AsyncClient() as browser:
            first = asyncio.create_task(manager.complete_login(login_id=start.login_id))
            await browser.get(url, params={"code": "code-1", "state": state})
            with pytest.raises(TokenExchangeError):
                await first
            assert manager.pending_count == 1

            retry = asyncio.create_task(manager.complete_login(login_id=start.login_id))
            await asyncio.sleep(0.05)
            assert not retry.done()
            await browser.get(url, params={"code": "code-2", "state": state})
            tokens = await retry

        assert tokens.access_token == "access-new"
        assert [
            form["code"] for form in (token_endpoint.form(0), token_endpoint.form(1))
        ] == ["code-1", "code-2"]
        await manager.dispose()

    @pytest.mark.asyncio
    async def test_new_login_replaces_old_listener(
        self, loopback_config: OAuthProviderConfig
    ) -> None:
        """Test that only one loopback login is pending at a time."""
        manager = OAuthFlowManager(loopback_config, flow_ttl=60)
        first = await manager.start_login()
        await manager.start_login()

        assert manager.pending_count == 1
        with pytest.raises(OAuthFlowExpiredError):
            await manager.complete_login(login_id=first.login_id)
        await manager.dispose()
