"""Tests for token sets, PKCE helpers and token endpoint calls."""

import base64
import hashlib
from collections.abc import Callable
from typing import Any

import httpx
import jwt
import pytest

from agent_providers.auth.oauth import (
    CLAUDE_OAUTH,
    CODEX_OAUTH,
    exchange_code_async,
    extract_account_id,
    refresh_token_async,
)
from agent_providers.auth.oauth.constants import CODEX_JWT_AUTH_CLAIM
from agent_providers.auth.oauth.pkce import (
    generate_code_challenge,
    generate_code_verifier,
    generate_state,
)
from agent_providers.auth.tokens import (
    DEFAULT_TOKEN_EXPIRY_SECONDS,
    OAuthTokenSet,
    TokenHealth,
    now_ms,
)
from agent_providers.exceptions import TokenExchangeError


def codex_jwt(account_id: str = "acct-42") -> str:
    return jwt.encode(
        {CODEX_JWT_AUTH_CLAIM: {"chatgpt_account_id": account_id}, "sub": "user"},
        "test-secret-key-with-at-least-32-bytes",
        algorithm="HS256",
    )


class TestOAuthTokenSet:
    """Expiry classification and serialization of token sets."""

    def test_lead_window_boundaries(self) -> None:
        """Test that a token 25 minutes from expiry is inside a 30 minute lead."""
        now = now_ms()
        tokens = OAuthTokenSet(
            access_token="a", refresh_token="r", expires_at=now + 25 * 60 * 1000
        )

        assert tokens.in_lead_window(30 * 60, now=now)
        assert not tokens.in_lead_window(20 * 60, now=now)
        assert not tokens.is_expired(now=now)
        assert tokens.health(30 * 60, now=now) == TokenHealth.EXPIRING
        assert tokens.health(20 * 60, now=now) == TokenHealth.VALID

    def test_expired_health(self) -> None:
        """Test that a token past expires_at is reported expired."""
        now = now_ms()
        tokens = OAuthTokenSet(access_token="a", refresh_token="r", expires_at=now - 1)

        assert tokens.is_expired(now=now)
        assert tokens.health(0, now=now) == TokenHealth.EXPIRED

    def test_token_set_is_immutable(self, make_tokens: Callable[..., OAuthTokenSet]) -> None:
        """Test that token sets are replaced wholesale, never mutated."""
        tokens = make_tokens()

        with pytest.raises(ValueError):
            tokens.access_token = "other"  # type: ignore[misc]

    def test_json_round_trip_keeps_account(
        self, make_tokens: Callable[..., OAuthTokenSet]
    ) -> None:
        """Test that the stored JSON document restores the same set."""
        tokens = make_tokens(account_id="acct-1")

        assert OAuthTokenSet.from_json(tokens.to_json()) == tokens

    def test_from_response_keeps_previous_refresh_token(self) -> None:
        """Test that a refresh response without refresh_token keeps the old one."""
        tokens = OAuthTokenSet.from_token_response(
            {"access_token": "new", "expires_in": 60},
            previous_refresh_token="old-refresh",
        )

        assert tokens.refresh_token == "old-refresh"
        assert 55 <= tokens.expires_in_seconds() <= 60

    def test_from_response_defaults_expiry(self) -> None:
        """Test that a missing expires_in falls back to eight hours."""
        tokens = OAuthTokenSet.from_token_response(
            {"access_token": "a", "refresh_token": "r"}
        )

        assert tokens.expires_in_seconds() > DEFAULT_TOKEN_EXPIRY_SECONDS - 5

    def test_from_response_requires_tokens(self) -> None:
        """Test that a response without an access token is rejected."""
        with pytest.raises(ValueError):
            OAuthTokenSet.from_token_response({"refresh_token": "r"})


class TestPKCE:
    """PKCE verifier, challenge and state generation."""

    def test_challenge_is_s256_of_verifier(self) -> None:
        """Test that the challenge is unpadded base64url(sha256(verifier))."""
        verifier = generate_code_verifier()
        expected = (
            base64.urlsafe_b64encode(hashlib.sha256(verifier.encode()).digest())
            .decode()
            .rstrip("=")
        )

        assert generate_code_challenge(verifier) == expected
        assert "=" not in expected

    def test_values_are_unique(self) -> None:
        """Test that verifiers and states are fresh per call."""
        assert generate_code_verifier() != generate_code_verifier()
        assert generate_state() != generate_state()
        assert len(generate_state()) == 64


class TestAuthorizeUrl:
    """Authorization URLs for both providers."""

    def test_codex_url_carries_extra_params(self) -> None:
        """Test that the Codex authorize URL asks for the simplified flow."""
        url = httpx.URL(CODEX_OAUTH.authorize_url_for("challenge", "state-1"))

        assert url.params["id_token_add_organizations"] == "true"
        assert url.params["codex_cli_simplified_flow"] == "true"
        assert url.params["redirect_uri"] == "http://localhost:1455/auth/callback"
        assert url.params["code_challenge_method"] == "S256"
        assert url.params["state"] == "state-1"

    def test_claude_url(self) -> None:
        """Test that the Claude authorize URL uses the paste-back redirect."""
        url = httpx.URL(CLAUDE_OAUTH.authorize_url_for("challenge", "state-2"))

        assert url.host == "claude.ai"
        assert url.params["scope"] == "user:inference user:profile"
        assert url.params["code_challenge"] == "challenge"
        assert not CLAUDE_OAUTH.uses_loopback
        assert CODEX_OAUTH.uses_loopback


class TestTokenEndpoint:
    """Code exchange and refresh requests."""

    @pytest.mark.asyncio
    async def test_claude_exchange_sends_json_with_state(
        self, token_endpoint: Any, http_client: httpx.AsyncClient
    ) -> None:
        """Test that the Claude exchange posts JSON including the state."""
        tokens = await exchange_code_async(
            "code-1", "verifier-1", "state-1", CLAUDE_OAUTH, http_client
        )

        body = token_endpoint.json()
        assert body["grant_type"] == "authorization_code"
        assert body["code"] == "code-1"
        assert body["code_verifier"] == "verifier-1"
        assert body["state"] == "state-1"
        assert tokens.access_token == "access-new"

    @pytest.mark.asyncio
    async def test_codex_exchange_extracts_account_id(
        self, token_endpoint: Any, http_client: httpx.AsyncClient
    ) -> None:
        """Test that the Codex exchange is form encoded and reads the account id."""
        token_endpoint.default_body = {
            "access_token": codex_jwt("acct-42"),
            "refresh_token": "refresh-2",
            "expires_in": 3600,
        }

        tokens = await exchange_code_async(
            "code-2", "verifier-2", "state-2", CODEX_OAUTH, http_client
        )

        form = token_endpoint.form()
        assert form["code"] == "code-2"
        assert "state" not in form
        assert tokens.account_id == "acct-42"

    @pytest.mark.asyncio
    async def test_codex_exchange_requires_account_id(
        self, http_client: httpx.AsyncClient
    ) -> None:
        """Test that a Codex token without the account claim is rejected."""
        with pytest.raises(TokenExchangeError, match="account id"):
            await exchange_code_async("c", "v", "s", CODEX_OAUTH, http_client)

    @pytest.mark.asyncio
    async def test_non_200_raises_with_status(
        self, token_endpoint: Any, http_client: httpx.AsyncClient
    ) -> None:
        """Test that an error response surfaces status and body."""
        token_endpoint.queue(400, {"error": "invalid_grant"})

        with pytest.raises(TokenExchangeError) as exc_info:
            await exchange_code_async("c", "v", "s", CLAUDE_OAUTH, http_client)

        assert exc_info.value.status_code == 400
        assert exc_info.value.is_invalid_grant

    @pytest.mark.asyncio
    async def test_non_object_body_is_rejected(
        self, token_endpoint: Any, http_client: httpx.AsyncClient
    ) -> None:
        """Test that a 200 whose JSON is not an object raises TokenExchangeError."""
        token_endpoint.queue(200, '["access-new"]')

        with pytest.raises(TokenExchangeError, match="expected a JSON object") as exc_info:
            await exchange_code_async("c", "v", "s", CLAUDE_OAUTH, http_client)

        assert exc_info.value.status_code == 200

    @pytest.mark.asyncio
    async def test_refresh_is_form_encoded(
        self,
        token_endpoint: Any,
        http_client: httpx.AsyncClient,
        make_tokens: Callable[..., OAuthTokenSet],
    ) -> None:
        """Test that refresh posts the refresh token as a form body."""
        new_tokens = await refresh_token_async(
            make_tokens(refresh_token="refresh-old"), CLAUDE_OAUTH, http_client
        )

        form = token_endpoint.form()
        assert form["grant_type"] == "refresh_token"
        assert form["refresh_token"] == "refresh-old"
        assert new_tokens.refresh_token == "refresh-new"

    def test_extract_account_id_ignores_non_jwt(self) -> None:
        """Test that an opaque token yields no account id."""
        assert extract_account_id("not-a-jwt", CODEX_JWT_AUTH_CLAIM) is None
        assert extract_account_id(codex_jwt("acct-9"), CODEX_JWT_AUTH_CLAIM) == "acct-9"
