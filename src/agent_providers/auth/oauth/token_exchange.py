"""OAuth token exchange utilities.

Anthropic's token endpoint takes JSON bodies while OpenAI's takes the
standard form-encoded body; `OAuthProviderConfig` records the format
used for code exchange and for refresh separately.
"""

from dataclasses import dataclass, field
from typing import Any, Literal
from urllib.parse import urlencode

import httpx
import jwt
from structlog import get_logger

from agent_providers.auth.tokens import DEFAULT_TOKEN_EXPIRY_SECONDS, OAuthTokenSet
from agent_providers.exceptions import TokenExchangeError

from .constants import (
    CLAUDE_AUTHORIZE_URL,
    CLAUDE_CLIENT_ID,
    CLAUDE_REDIRECT_URI,
    CLAUDE_SCOPES,
    CLAUDE_TOKEN_URL,
    CODEX_AUTHORIZE_URL,
    CODEX_CALLBACK_HOST,
    CODEX_CALLBACK_PATH,
    CODEX_CALLBACK_PORT,
    CODEX_CLIENT_ID,
    CODEX_JWT_AUTH_CLAIM,
    CODEX_REDIRECT_URI,
    CODEX_SCOPES,
    CODEX_TOKEN_URL,
    OAUTH_USER_AGENT,
)


logger = get_logger(__name__)


@dataclass
class OAuthProviderConfig:
    """Per-provider OAuth endpoints and flow shape."""

    name: str
    authorize_url: str
    token_url: str
    client_id: str
    redirect_uri: str
    scopes: list[str]
    exchange_format: Literal["json", "form"] = "json"
    refresh_format: Literal["json", "form"] = "form"
    extra_authorize_params: dict[str, str] = field(default_factory=dict)
    # Loopback flows bind a local listener for the redirect
    callback_host: str | None = None
    callback_port: int | None = None
    callback_path: str | None = None
    account_id_claim: str | None = None
    require_account_id: bool = False
    default_expires_in: int = DEFAULT_TOKEN_EXPIRY_SECONDS
    timeout: float = 30.0

    @property
    def uses_loopback(self) -> bool:
        return self.callback_port is not None

    def authorize_url_for(self, challenge: str, state: str) -> str:
        params = {
            **self.extra_authorize_params,
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "scope": " ".join(self.scopes),
            "code_challenge": challenge,
            "code_challenge_method": "S256",
            "state": state,
        }
        return f"{self.authorize_url}?{urlencode(params)}"


CLAUDE_OAUTH = OAuthProviderConfig(
    name="claude",
    authorize_url=CLAUDE_AUTHORIZE_URL,
    token_url=CLAUDE_TOKEN_URL,
    client_id=CLAUDE_CLIENT_ID,
    redirect_uri=CLAUDE_REDIRECT_URI,
    scopes=CLAUDE_SCOPES,
    exchange_format="json",
    refresh_format="form",
)

CODEX_OAUTH = OAuthProviderConfig(
    name="codex",
    authorize_url=CODEX_AUTHORIZE_URL,
    token_url=CODEX_TOKEN_URL,
    client_id=CODEX_CLIENT_ID,
    redirect_uri=CODEX_REDIRECT_URI,
    scopes=CODEX_SCOPES,
    exchange_format="form",
    refresh_format="form",
    extra_authorize_params={
        "id_token_add_organizations": "true",
        "codex_cli_simplified_flow": "true",
    },
    callback_host=CODEX_CALLBACK_HOST,
    callback_port=CODEX_CALLBACK_PORT,
    callback_path=CODEX_CALLBACK_PATH,
    account_id_claim=CODEX_JWT_AUTH_CLAIM,
    require_account_id=True,
)


def extract_account_id(access_token: str, claim: str) -> str | None:
    """Read the ChatGPT account id embedded in a JWT access token.

    The signature is not verified; the token came straight from the token
    endpoint over TLS and is only inspected, never trusted for authz.
    """
    try:
        payload = jwt.decode(access_token, options={"verify_signature": False})
    except jwt.PyJWTError as e:
        logger.debug("access_token_not_jwt", error=str(e))
        return None
    auth = payload.get(claim)
    if not isinstance(auth, dict):
        return None
    account_id = auth.get("chatgpt_account_id")
    return account_id if isinstance(account_id, str) and account_id else None


async def _post_token(
    config: OAuthProviderConfig,
    body: dict[str, str],
    body_format: str,
    operation: str,
    client: httpx.AsyncClient | None,
) -> dict[str, Any]:
    headers = {"Accept": "application/json", "User-Agent": OAUTH_USER_AGENT}
    request_kwargs: dict[str, Any] = {"headers": headers, "timeout": config.timeout}
    if body_format == "json":
        request_kwargs["json"] = body
    else:
        request_kwargs["data"] = body

    if client is None:
        async with httpx.AsyncClient() as owned:
            response = await owned.post(config.token_url, **request_kwargs)
    else:
        response = await client.post(config.token_url, **request_kwargs)

    if response.status_code != 200:
        error_text = response.text[:500]
        logger.error(
            f"oauth_{operation}_failed",
            provider=config.name,
            status=response.status_code,
            error=error_text,
        )
        raise TokenExchangeError(
            f"{operation} failed ({response.status_code}): {error_text}",
            status_code=response.status_code,
            response_text=error_text,
        )

    try:
        result = response.json()
    except ValueError as e:
        raise TokenExchangeError(
            f"{operation} returned invalid JSON",
            status_code=response.status_code,
            response_text=response.text[:500],
        ) from e
    if not isinstance(result, dict):
        raise TokenExchangeError(
            f"{operation} returned {type(result).__name__}, expected a JSON object",
            status_code=response.status_code,
            response_text=response.text[:500],
        )
    return result


def _token_set_from(
    data: dict[str, Any],
    config: OAuthProviderConfig,
    previous_refresh_token: str | None = None,
    previous_account_id: str | None = None,
) -> OAuthTokenSet:
    account_id = None
    if config.account_id_claim:
        account_id = extract_account_id(
            str(data.get("access_token", "")), config.account_id_claim
        )
        if account_id is None and data.get("id_token"):
            account_id = extract_account_id(
                str(data["id_token"]), config.account_id_claim
            )
    account_id = account_id or previous_account_id
    if config.require_account_id and not account_id:
        raise TokenExchangeError("Token response carries no account id")
    try:
        return OAuthTokenSet.from_token_response(
            data,
            previous_refresh_token=previous_refresh_token,
            account_id=account_id,
            default_expires_in=config.default_expires_in,
        )
    except ValueError as e:
        raise TokenExchangeError(str(e)) from e


async def exchange_code_async(
    code: str,
    code_verifier: str,
    state: str,
    config: OAuthProviderConfig,
    client: httpx.AsyncClient | None = None,
) -> OAuthTokenSet:
    """Exchange an authorization code for a token set.

    Args:
        code: Authorization code from the callback
        code_verifier: PKCE verifier used in the authorization request
        state: State nonce of the flow
        config: Provider OAuth configuration
        client: Optional shared HTTP client

    Returns:
        The new token set, including the account id when one is embedded

    Raises:
        TokenExchangeError: If the exchange fails
    """
    body = {
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": config.redirect_uri,
        "client_id": config.client_id,
        "code_verifier": code_verifier,
    }
    if config.exchange_format == "json":
        body["state"] = state
    data = await _post_token(
        config, body, config.exchange_format, "token_exchange", client
    )
    return _token_set_from(data, config)


async def refresh_token_async(
    tokens: OAuthTokenSet,
    config: OAuthProviderConfig,
    client: httpx.AsyncClient | None = None,
) -> OAuthTokenSet:
    """Exchange a refresh token for a fresh token set.

    Raises:
        TokenExchangeError: If the refresh fails
    """
    body = {
        "grant_type": "refresh_token",
        "refresh_token": tokens.refresh_token,
        "client_id": config.client_id,
    }
    data = await _post_token(
        config, body, config.refresh_format, "token_refresh", client
    )
    return _token_set_from(
        data,
        config,
        previous_refresh_token=tokens.refresh_token,
        previous_account_id=tokens.account_id,
    )
