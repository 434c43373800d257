"""Application configuration using environment variables."""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import AliasChoices, AnyHttpUrl, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

# Resolve the project root once so that `.env` is discovered regardless of CWD
PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent

DEFAULT_MEDIA_MAX_BYTES = 20 * 1024 * 1024


class ConfigurationError(RuntimeError):
    """Raised when a request cannot be served with the current configuration."""


class Settings(BaseSettings):
    """Load configuration from environment variables and `.env`."""

    model_config = SettingsConfigDict(
        env_file=str(PROJECT_ROOT / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # DingTalk app credentials; the client id doubles as the robot code
    client_id: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("DINGTALK_CLIENT_ID", "client_id"),
    )
    client_secret: SecretStr = Field(
        ...,
        validation_alias=AliasChoices("DINGTALK_CLIENT_SECRET", "client_secret"),
    )

    enable_media_upload: bool = Field(
        default=True,
        validation_alias=AliasChoices(
            "DINGTALK_ENABLE_MEDIA_UPLOAD", "enable_media_upload"
        ),
    )
    system_prompt: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("DINGTALK_SYSTEM_PROMPT", "system_prompt"),
    )

    gateway_base_url: AnyHttpUrl = Field(
        default_factory=lambda: AnyHttpUrl("http://127.0.0.1:18789"),
        validation_alias=AliasChoices("GATEWAY_BASE_URL", "gateway_base_url"),
    )
    gateway_model: str = Field(
        default="default",
        validation_alias=AliasChoices("GATEWAY_MODEL", "gateway_model"),
    )
    gateway_token: Optional[SecretStr] = Field(
        default=None,
        validation_alias=AliasChoices("GATEWAY_TOKEN", "gateway_token"),
    )
    gateway_password: Optional[SecretStr] = Field(
        default=None,
        validation_alias=AliasChoices("GATEWAY_PASSWORD", "gateway_password"),
    )
    gateway_timeout: float = Field(
        default=300.0,
        ge=1,
        validation_alias=AliasChoices("GATEWAY_TIMEOUT", "gateway_timeout"),
    )

    api_base_url: AnyHttpUrl = Field(
        default_factory=lambda: AnyHttpUrl("https://api.dingtalk.com"),
        validation_alias=AliasChoices("DINGTALK_API_BASE_URL", "api_base_url"),
    )
    oapi_base_url: AnyHttpUrl = Field(
        default_factory=lambda: AnyHttpUrl("https://oapi.dingtalk.com"),
        validation_alias=AliasChoices("DINGTALK_OAPI_BASE_URL", "oapi_base_url"),
    )
    card_template_id: str = Field(
        default="382e4302-551d-4880-bf29-a30acfab2e71.schema",
        validation_alias=AliasChoices(
            "DINGTALK_CARD_TEMPLATE_ID", "card_template_id"
        ),
    )

    media_max_size_bytes: int = Field(
        default=DEFAULT_MEDIA_MAX_BYTES,
        ge=1,
        validation_alias=AliasChoices(
            "DINGTALK_MEDIA_MAX_BYTES", "media_max_size_bytes"
        ),
    )

    dedup_ttl_seconds: int = Field(
        default=300,
        ge=0,
        validation_alias=AliasChoices(
            "DINGTALK_DEDUP_TTL_SECONDS", "dedup_ttl_seconds"
        ),
    )
    session_timeout_minutes: int = Field(
        default=30,
        ge=0,
        validation_alias=AliasChoices(
            "DINGTALK_SESSION_TIMEOUT_MINUTES", "session_timeout_minutes"
        ),
    )
    verify_signature: bool = Field(
        default=True,
        validation_alias=AliasChoices(
            "DINGTALK_VERIFY_SIGNATURE", "verify_signature"
        ),
    )

    @property
    def gateway_auth(self) -> Optional[str]:
        """Bearer credential for the gateway; the token wins over the password."""

        for secret in (self.gateway_token, self.gateway_password):
            if secret is not None and secret.get_secret_value():
                return secret.get_secret_value()
        return None

    @property
    def api_base(self) -> str:
        return str(self.api_base_url).rstrip("/")

    @property
    def oapi_base(self) -> str:
        return str(self.oapi_base_url).rstrip("/")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached `Settings` instance."""

    return Settings()  # pyright: ignore[reportCallIssue]


__all__ = [
    "ConfigurationError",
    "DEFAULT_MEDIA_MAX_BYTES",
    "Settings",
    "get_settings",
]
