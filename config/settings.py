"""
Application settings loaded from environment variables.

Built once at process entry with ``load_settings()`` and passed down through
constructors; nothing in the package reads the environment on its own.
"""

from __future__ import annotations

from typing import Optional

from pydantic import AliasChoices, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from connectors.errors import ConfigurationError


class Settings(BaseSettings):
    # ── Alloy credentials (required) ─────────────────────────────────────
    api_key: str = Field(validation_alias=AliasChoices("ALLOY_API_KEY", "api_key"))
    user_id: str = Field(validation_alias=AliasChoices("ALLOY_USER_ID", "user_id"))
    base_url: str = Field(validation_alias=AliasChoices("ALLOY_BASE_URL", "base_url"))

    # Pre-known connection (credentialId) to try before listing
    connection_id: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("ALLOY_CONNECTION_ID", "CONNECTION_ID", "connection_id"),
    )

    # ── Protocol ─────────────────────────────────────────────────────────
    api_version: str = "2025-09"
    notion_version: str = "2022-06-28"
    request_timeout: float = 30.0

    # ── OAuth callback ───────────────────────────────────────────────────
    oauth_redirect_uri: str = "http://localhost:3000/oauth/callback"
    callback_host: str = "127.0.0.1"
    callback_port: int = 3000
    callback_timeout_seconds: Optional[float] = None   # None = wait for the user indefinitely

    # ── Retry / batching ─────────────────────────────────────────────────
    default_max_retries: int = 3
    default_base_delay: float = 1.0
    default_max_delay: float = 30.0
    batch_concurrency: int = 3
    probe_limit: int = 10

    # ── Server ───────────────────────────────────────────────────────────
    host: str = "127.0.0.1"
    port: int = 3000
    debug: bool = False

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        frozen=True,
        populate_by_name=True,
    )

    @field_validator("api_key", "user_id", "base_url")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("must not be blank")
        return value.strip()

    @field_validator("base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("connection_id")
    @classmethod
    def _blank_is_none(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return None
        return value.strip()

    def masked_api_key(self) -> str:
        """API key safe for logs: first and last four characters only."""
        if len(self.api_key) <= 8:
            return "****"
        return f"{self.api_key[:4]}…{self.api_key[-4:]}"


def load_settings(**overrides) -> Settings:
    """
    Build the process-wide ``Settings``.

    Keyword overrides take precedence over the environment.  Any missing or
    blank required field raises ``ConfigurationError``; no partially built
    object is ever returned.
    """
    try:
        return Settings(**overrides)
    except ValidationError as exc:
        fields = sorted(
            {str(err["loc"][0]) for err in exc.errors() if err.get("loc")}
        )
        raise ConfigurationError(
            f"Invalid configuration ({', '.join(fields) or 'unknown field'}): "
            "set ALLOY_API_KEY, ALLOY_USER_ID and ALLOY_BASE_URL",
            fields=fields,
        ) from exc
