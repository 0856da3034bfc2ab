"""Consolidated exception hierarchy for agent-providers.

All exceptions use proper exception chaining with the `from` keyword.
Error types use StrEnum for type safety and autocompletion.

Auth errors never cross the streaming boundary: providers catch them and
report an unauthenticated status instead.
"""

from enum import StrEnum
from typing import Any


class ErrorType(StrEnum):
    """Error type codes attached to every exception."""

    CONFIGURATION = "configuration_error"
    AUTHENTICATION = "authentication_error"
    STORAGE = "storage_error"
    OAUTH = "oauth_error"
    EXPIRED = "expired_error"
    TRANSPORT = "transport_error"
    BACKEND = "backend_error"
    NOT_FOUND = "not_found_error"
    INTERNAL = "internal_error"


# ============================================================================
# Base Exceptions
# ============================================================================


class AgentProvidersError(Exception):
    """Base exception for all agent-providers errors.

    Carries a machine-readable error type and structured details alongside
    the human-readable message.
    """

    def __init__(
        self,
        message: str,
        *,
        error_type: ErrorType | str = ErrorType.INTERNAL,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if isinstance(error_type, str) and not isinstance(error_type, ErrorType):
            try:
                self.error_type = ErrorType(error_type)
            except ValueError:
                self.error_type = error_type  # type: ignore[assignment]
        else:
            self.error_type = error_type
        self.details = details or {}


class ConfigurationError(AgentProvidersError):
    """Raised when configuration loading or validation fails."""

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, error_type=ErrorType.CONFIGURATION, details=details)


# ============================================================================
# Credentials Errors
# ============================================================================


class CredentialsError(AgentProvidersError):
    """Base credentials error."""

    def __init__(self, message: str = "Credentials error") -> None:
        super().__init__(message, error_type=ErrorType.AUTHENTICATION)


class CredentialsStorageError(CredentialsError):
    """Both the system keychain and the file fallback failed."""

    def __init__(self, message: str = "Failed to store credentials") -> None:
        super().__init__(message)
        self.error_type = ErrorType.STORAGE


# ============================================================================
# OAuth Errors
# ============================================================================


class OAuthError(AgentProvidersError):
    """Base OAuth error."""

    def __init__(self, message: str = "OAuth error") -> None:
        super().__init__(message, error_type=ErrorType.OAUTH)


class OAuthLoginError(OAuthError):
    """OAuth login could not be started or completed."""

    def __init__(self, message: str = "OAuth login failed") -> None:
        super().__init__(message)


class OAuthStateMismatchError(OAuthLoginError):
    """Returned state does not match any pending login."""

    def __init__(
        self,
        message: str = "OAuth state mismatch - possible CSRF. Please retry login.",
    ) -> None:
        super().__init__(message)


class OAuthFlowExpiredError(OAuthLoginError):
    """No pending login matches the request, or it timed out."""

    def __init__(
        self,
        message: str = "No pending OAuth login. Please start the login again.",
    ) -> None:
        super().__init__(message)
        self.error_type = ErrorType.EXPIRED


class OAuthCallbackError(OAuthError):
    """The authorization server redirected back with an error."""

    def __init__(self, message: str = "OAuth callback failed") -> None:
        super().__init__(message)


class CallbackServerError(OAuthError):
    """The loopback callback listener could not be started."""

    def __init__(self, message: str = "OAuth callback server failed to start") -> None:
        super().__init__(message)


class TokenExchangeError(OAuthError):
    """Token endpoint rejected a code exchange or refresh."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_text: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.response_text = response_text

    @property
    def is_invalid_grant(self) -> bool:
        """True when the refresh token itself was revoked or expired."""
        text = (self.response_text or "").lower()
        return self.status_code in (400, 401) and (
            "invalid_grant" in text or "expired" in text
        )


# ============================================================================
# Backend Errors
# ============================================================================


class BackendError(AgentProvidersError):
    """Base error for agent backend failures."""

    def __init__(
        self, message: str = "Backend error", *, details: dict[str, Any] | None = None
    ) -> None:
        super().__init__(message, error_type=ErrorType.BACKEND, details=details)


class BackendSpawnError(BackendError):
    """Backend process could not be started."""

    def __init__(self, message: str = "Failed to start backend process") -> None:
        super().__init__(message)


class BackendProtocolError(BackendError):
    """Backend emitted output that could not be parsed."""

    def __init__(self, message: str, *, line: str | None = None) -> None:
        super().__init__(message, details={"line": line} if line else None)


# ============================================================================
# Registry Errors
# ============================================================================


class UnknownProviderError(AgentProvidersError):
    """Requested provider name is not registered."""

    def __init__(self, name: str, supported: list[str] | tuple[str, ...]) -> None:
        super().__init__(
            f"Unknown provider: {name}. Supported: {', '.join(supported)}",
            error_type=ErrorType.NOT_FOUND,
            details={"name": name, "supported": list(supported)},
        )
        self.name = name


__all__ = [
    # Error types
    "ErrorType",
    # Base
    "AgentProvidersError",
    "ConfigurationError",
    # Credentials
    "CredentialsError",
    "CredentialsStorageError",
    # OAuth
    "OAuthError",
    "OAuthLoginError",
    "OAuthStateMismatchError",
    "OAuthFlowExpiredError",
    "OAuthCallbackError",
    "CallbackServerError",
    "TokenExchangeError",
    # Backend
    "BackendError",
    "BackendSpawnError",
    "BackendProtocolError",
    # Registry
    "UnknownProviderError",
]
