"""OAuth token set and derived auth states."""

import time
from enum import StrEnum
from typing import Any

import orjson
from pydantic import BaseModel, ConfigDict


DEFAULT_TOKEN_EXPIRY_SECONDS = 8 * 60 * 60


class AuthState(StrEnum):
    """How a provider is currently authenticated. Derived, never stored."""

    UNAUTHENTICATED = "unauthenticated"
    API_KEY = "api_key"
    CLI_DELEGATED = "cli_delegated"
    OAUTH_VALID = "oauth_valid"
    OAUTH_EXPIRING = "oauth_expiring"
    OAUTH_EXPIRED = "oauth_expired"


class TokenHealth(StrEnum):
    """Token lifecycle states."""

    NO_TOKENS = "no_tokens"
    VALID = "valid"
    EXPIRING = "expiring"
    EXPIRED = "expired"
    REFRESHING = "refreshing"


def now_ms() -> int:
    return int(time.time() * 1000)


class OAuthTokenSet(BaseModel):
    """Access/refresh token pair. Replaced wholesale on refresh."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    expires_at: int  # Unix timestamp in milliseconds
    account_id: str | None = None

    def expires_in_seconds(self, now: int | None = None) -> int:
        """Seconds until expiry (negative once expired)."""
        return (self.expires_at - (now if now is not None else now_ms())) // 1000

    def is_expired(self, now: int | None = None) -> bool:
        return (now if now is not None else now_ms()) >= self.expires_at

    def in_lead_window(self, lead_seconds: int, now: int | None = None) -> bool:
        """True once the current time has passed expires_at - lead."""
        current = now if now is not None else now_ms()
        return current >= self.expires_at - lead_seconds * 1000

    def health(self, lead_seconds: int, now: int | None = None) -> TokenHealth:
        if self.is_expired(now):
            return TokenHealth.EXPIRED
        if self.in_lead_window(lead_seconds, now):
            return TokenHealth.EXPIRING
        return TokenHealth.VALID

    @classmethod
    def from_token_response(
        cls,
        data: dict[str, Any],
        *,
        previous_refresh_token: str | None = None,
        account_id: str | None = None,
        default_expires_in: int = DEFAULT_TOKEN_EXPIRY_SECONDS,
    ) -> "OAuthTokenSet":
        """Build a token set from a token endpoint response.

        Args:
            data: Parsed JSON body of the token response
            previous_refresh_token: Kept when the response omits a new one
            account_id: Account identifier derived from the token, if any
            default_expires_in: Lifetime assumed when expires_in is missing

        Raises:
            ValueError: If the response carries no access or refresh token
        """
        access_token = data.get("access_token")
        refresh_token = data.get("refresh_token") or previous_refresh_token
        if not access_token or not refresh_token:
            raise ValueError("Token response is missing access_token or refresh_token")
        expires_in = int(data.get("expires_in") or default_expires_in)
        return cls(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=now_ms() + expires_in * 1000,
            account_id=account_id,
        )

    def to_json(self) -> str:
        return orjson.dumps(self.model_dump(exclude_none=True)).decode()

    @classmethod
    def from_json(cls, raw: str) -> "OAuthTokenSet":
        return cls.model_validate(orjson.loads(raw))
