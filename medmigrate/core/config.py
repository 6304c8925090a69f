"""
Runtime configuration loaded from environment variables.

Settings are read once and cached; reload_settings() re-reads the
environment after a secret rotation.
"""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Correction attempts beyond this are never made, whatever the configuration says
HARD_MAX_CORRECTION_ATTEMPTS = 5


class MigrationSettings(BaseSettings):
    """Environment-backed settings for the migration pipeline."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    anthropic_api_key: str | None = Field(default=None, description="Anthropic API key")
    openai_api_key: str | None = Field(default=None, description="OpenAI API key")
    migration_anthropic_model: str = Field(
        default="claude-sonnet-4-5-20250929",
        description="Model used for mapping drafts and schema discovery",
    )
    migration_openai_model: str = Field(
        default="gpt-4o",
        description="Model used by the secondary mapping backend",
    )
    migration_masking_secret: str = Field(
        default="dev-masking-secret",
        description="HMAC key for hashToken and identifier masking",
    )
    migration_encryption_key: str | None = Field(
        default=None,
        description="AES-256-GCM key for vendor credentials (64 hex or base64 of 32 bytes)",
    )
    migration_cache_dir: str = Field(
        default=".migration-cache",
        description="Root directory for cross-run caches",
    )
    migration_storage_dir: str = Field(
        default="storage/migration",
        description="Root directory for the local artifact store",
    )
    migration_max_correction_attempts: int = Field(
        default=3,
        ge=0,
        description="AI self-correction attempts after a failed validation",
    )
    redis_url: str | None = Field(default=None, description="Redis URL for run events")

    @field_validator("migration_max_correction_attempts")
    @classmethod
    def cap_correction_attempts(cls, v: int) -> int:
        return min(v, HARD_MAX_CORRECTION_ATTEMPTS)


@lru_cache
def get_settings() -> MigrationSettings:
    """Get cached settings instance."""
    return MigrationSettings()


def reload_settings() -> MigrationSettings:
    """Drop the cached settings and read the environment again."""
    get_settings.cache_clear()
    return get_settings()
