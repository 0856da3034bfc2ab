"""Settings configuration for agent-providers."""

import tomllib
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

import structlog
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from agent_providers.config.discovery import find_toml_config_file
from agent_providers.core.system import get_app_config_dir
from agent_providers.exceptions import ConfigurationError


__all__ = [
    "Settings",
    "StorageSettings",
    "OAuthSettings",
    "ClaudeSettings",
    "CodexSettings",
    "LoggingSettings",
    "get_settings",
]

logger = structlog.get_logger(__name__)


class StorageSettings(BaseModel):
    """Where secrets live."""

    app_dir: Path = Field(
        default_factory=get_app_config_dir,
        description="Private per-application directory for the file fallback",
    )
    service_name: str = Field(
        default="agent-providers",
        description="Service name used for system keychain entries",
    )
    use_keychain: bool = Field(
        default=True,
        description="Try the system keychain before falling back to files",
    )

    @property
    def credentials_dir(self) -> Path:
        return self.app_dir / "credentials"


class OAuthSettings(BaseModel):
    """OAuth flow and token refresh timing."""

    refresh_lead_seconds: int = Field(
        default=30 * 60,
        ge=0,
        description="Refresh tokens this many seconds before they expire",
    )
    flow_ttl_seconds: int = Field(
        default=120,
        gt=0,
        description="Pending logins self-expire after this many seconds",
    )
    callback_timeout_seconds: float = Field(
        default=120.0,
        gt=0,
        description="How long to wait for the loopback redirect",
    )
    http_timeout_seconds: float = Field(default=30.0, gt=0)


class ClaudeSettings(BaseModel):
    """Claude backend settings."""

    cli_path: Path | None = Field(
        default=None,
        description="Explicit path to the claude CLI; resolved automatically when unset",
    )
    api_base_url: str = "https://api.anthropic.com"
    anthropic_version: str = "2023-06-01"
    auth_status_cache_seconds: int = Field(default=60, ge=0)
    default_model: str | None = None


class CodexSettings(BaseModel):
    """Codex backend settings."""

    binary: str | None = Field(
        default=None, description="Explicit path to the codex binary"
    )
    home: Path | None = Field(
        default=None, description="CODEX_HOME override; defaults to ~/.codex"
    )
    base_url: str | None = None
    sandbox_mode: Literal["read-only", "workspace-write", "danger-full-access"] = (
        "danger-full-access"
    )
    approval_policy: Literal["never", "on-request", "on-failure", "untrusted"] = (
        "never"
    )
    network_access: bool = True
    web_search: bool = False
    default_model: str | None = None

    def resolved_home(self) -> Path:
        return self.home or Path.home() / ".codex"


class LoggingSettings(BaseModel):
    level: str = "INFO"
    json_logs: bool = Field(default=False, alias="json")

    model_config = {"populate_by_name": True}


class Settings(BaseSettings):
    """
    Configuration settings for agent-providers.

    Settings are loaded from environment variables (prefix AGENT_PROVIDERS_,
    nested with __), .env files, and TOML configuration files.
    Environment variables take precedence over TOML values.
    """

    model_config = SettingsConfigDict(
        env_prefix="AGENT_PROVIDERS_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        env_nested_delimiter="__",
    )

    default_provider: str = Field(
        default="claude",
        description="Provider used when a run configuration names none",
    )
    storage: StorageSettings = Field(default_factory=StorageSettings)
    oauth: OAuthSettings = Field(default_factory=OAuthSettings)
    claude: ClaudeSettings = Field(default_factory=ClaudeSettings)
    codex: CodexSettings = Field(default_factory=CodexSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @field_validator("default_provider")
    @classmethod
    def validate_default_provider(cls, v: str) -> str:
        return v.strip().lower()

    @classmethod
    def load_toml_config(cls, toml_path: Path) -> dict[str, Any]:
        """Load configuration from a TOML file.

        Raises:
            ConfigurationError: If the TOML file is invalid or cannot be read
        """
        try:
            with toml_path.open("rb") as f:
                return tomllib.load(f)
        except OSError as e:
            raise ConfigurationError(
                f"Cannot read TOML config file {toml_path}: {e}"
            ) from e
        except tomllib.TOMLDecodeError as e:
            raise ConfigurationError(f"Invalid TOML syntax in {toml_path}: {e}") from e

    @classmethod
    def from_config(
        cls, config_path: Path | str | None = None, **kwargs: Any
    ) -> "Settings":
        """Create Settings from an optional TOML file plus overrides.

        Args:
            config_path: Path to a TOML file; auto-discovered when None
            **kwargs: Values that take precedence over the file

        Returns:
            Settings: Configured Settings instance
        """
        if isinstance(config_path, str):
            config_path = Path(config_path)
        if config_path is None:
            config_path = find_toml_config_file()

        config_data: dict[str, Any] = {}
        if config_path and config_path.exists():
            config_data = cls.load_toml_config(config_path)
            logger.debug("config_file_loaded", path=str(config_path))

        # Environment variables must still win over the file, so the file
        # values only fill in what the environment leaves unset.
        env_settings = cls(**kwargs)
        explicit = env_settings.model_dump(exclude_unset=True)
        merged = _deep_merge(config_data, explicit)
        return cls(**merged)


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    result = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the process-wide settings instance."""
    return Settings.from_config()
