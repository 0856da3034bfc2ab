"""OAuth constants for the supported providers."""

# Claude (Anthropic console) - manual paste flow
CLAUDE_CLIENT_ID = "9d1c250a-e61b-44d9-88ed-5944d1962f5e"
CLAUDE_AUTHORIZE_URL = "https://claude.ai/oauth/authorize"
CLAUDE_TOKEN_URL = "https://console.anthropic.com/v1/oauth/token"
CLAUDE_REDIRECT_URI = "https://console.anthropic.com/oauth/code/callback"
CLAUDE_SCOPES = ["user:inference", "user:profile"]

# Codex (OpenAI) - loopback redirect flow
CODEX_CLIENT_ID = "app_EMoamEEZ73f0CkXaXp7hrann"
CODEX_AUTHORIZE_URL = "https://auth.openai.com/oauth/authorize"
CODEX_TOKEN_URL = "https://auth.openai.com/oauth/token"
CODEX_CALLBACK_HOST = "127.0.0.1"
CODEX_CALLBACK_PORT = 1455
CODEX_CALLBACK_PATH = "/auth/callback"
CODEX_REDIRECT_URI = f"http://localhost:{CODEX_CALLBACK_PORT}{CODEX_CALLBACK_PATH}"
CODEX_SCOPES = ["openid", "profile", "email", "offline_access"]
CODEX_JWT_AUTH_CLAIM = "https://api.openai.com/auth"

OAUTH_USER_AGENT = "agent-providers"
