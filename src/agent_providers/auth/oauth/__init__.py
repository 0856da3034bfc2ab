"""OAuth login flows and token exchange."""

from .flows import LoginStart, OAuthFlowManager, PendingOAuthFlow, parse_callback_input
from .token_exchange import (
    CLAUDE_OAUTH,
    CODEX_OAUTH,
    OAuthProviderConfig,
    exchange_code_async,
    extract_account_id,
    refresh_token_async,
)


__all__ = [
    "CLAUDE_OAUTH",
    "CODEX_OAUTH",
    "LoginStart",
    "OAuthFlowManager",
    "OAuthProviderConfig",
    "PendingOAuthFlow",
    "exchange_code_async",
    "extract_account_id",
    "parse_callback_input",
    "refresh_token_async",
]
