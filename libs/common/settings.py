"""Application settings for the adoq work-item assistant."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration, read from ``ADOQ_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="ADOQ_",
        env_file=None,
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Core application settings
    app_env: Literal["development", "staging", "production", "test"] = "development"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    debug: bool = False
    display_timezone: str = "America/Los_Angeles"

    # CORS - use string to avoid JSON parsing issues
    cors_origins_str: str = Field(default="http://localhost:3000,https://localhost:3000", alias="cors_origins")

    @property
    def cors_origins(self) -> list[str]:
        """Parse CORS origins from string."""
        if not self.cors_origins_str.strip():
            return ["http://localhost:3000", "https://localhost:3000"]
        return [origin.strip() for origin in self.cors_origins_str.split(",") if origin.strip()]

    # Azure DevOps
    ado_organization: str | None = Field(
        default=None, validation_alias=AliasChoices("ADOQ_ADO_ORGANIZATION", "ADO_ORGANIZATION")
    )
    ado_project: str | None = Field(
        default=None, validation_alias=AliasChoices("ADOQ_ADO_PROJECT", "ADO_PROJECT")
    )
    ado_pat: str | None = Field(default=None, validation_alias=AliasChoices("ADOQ_ADO_PAT", "ADO_PAT"))
    ado_api_version: str = "7.1"
    ado_base_url: str = "https://dev.azure.com"
    ado_search_base_url: str = "https://almsearch.dev.azure.com"
    enhanced_mode_enabled: bool = True

    # Language-model providers
    openai_api_key: str | None = Field(
        default=None, validation_alias=AliasChoices("ADOQ_OPENAI_API_KEY", "OPENAI_API_KEY")
    )
    openrouter_api_key: str | None = Field(
        default=None, validation_alias=AliasChoices("ADOQ_OPENROUTER_API_KEY", "OPENROUTER_API_KEY")
    )
    openai_base_url: str = "https://api.openai.com/v1"
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    intent_model: str = "gpt-4o-mini"
    synthesis_model: str = "gpt-4o"

    # Resilience
    provider_max_retries: int = Field(default=3, ge=0, le=10)
    backoff_base_seconds: float = Field(default=1.0, gt=0)
    backoff_max_seconds: float = Field(default=8.0, gt=0)
    backoff_jitter_seconds: float = Field(default=0.5, ge=0)
    http_timeout_seconds: float = Field(default=15.0, gt=0)
    request_timeout_seconds: float = Field(default=30.0, gt=0)

    # Caching and conversation retention
    redis_url: str | None = Field(default=None, validation_alias=AliasChoices("ADOQ_REDIS_URL", "REDIS_URL"))
    metadata_ttl_seconds: int = 1800
    query_cache_ttl_seconds: int = 300
    conversation_ttl_days: int = 30
    conversation_inactivity_days: int = 5
    context_window_messages: int = 10
    prefetch_metadata: bool = True

    # Rate limiting
    rate_limit_enabled: bool = True
    chat_rate_limit_max: int = Field(default=20, ge=1)
    chat_rate_limit_window_seconds: int = Field(default=900, ge=1)

    # Firebase session verification
    firebase_admin_sdk_json: str | None = None
    firebase_admin_sdk_path: str | None = None

    @field_validator("display_timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        """Reject unknown IANA zone names early."""
        from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone: {v}") from e
        return v

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.app_env == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.app_env == "production"

    @property
    def ado_configured(self) -> bool:
        """True when organization and PAT are both present."""
        return bool(self.ado_organization and self.ado_pat)

    @property
    def llm_configured(self) -> bool:
        return bool(self.openrouter_api_key or self.openai_api_key)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
