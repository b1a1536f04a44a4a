"""Application configuration management."""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Centralised application settings derived from environment variables."""

    anthropic_api_key: str
    anthropic_model: str = Field(default="claude-sonnet-4-5-20250929")

    database_url: str = Field(
        default="sqlite:///./data/azuka.db",
        description="SQLAlchemy-compatible database URL.",
    )
    app_host: str = Field(default="0.0.0.0")
    app_port: int = Field(default=8000, ge=1, le=65535)

    debug: bool = Field(default=False)

    log_level: str = Field(default="INFO")
    log_dir: Path = Field(default=Path("logs"))
    scheduler_hour: int = Field(default=5, ge=0, le=23)
    scheduler_minute: int = Field(default=0, ge=0, le=59)
    scheduler_lock_file: Path = Field(default=Path(".scheduler.lock"))

    source_config_path: Path = Field(
        default=Path(__file__).resolve().parent / "prompts" / "sources.yaml",
        description="YAML file holding the recommendation source prompt templates.",
    )
    source_max_tokens: int = Field(default=2048, ge=256)

    default_cycle_length: int = Field(
        default=28,
        ge=21,
        description="Cycle length used when a profile does not specify one.",
    )
    orchestration_timeout_seconds: float = Field(default=8.0, gt=0)
    recent_log_limit: int = Field(default=3, ge=1, le=3)

    decision_cache_ttl_hours: int = Field(default=24, ge=1)
    fallback_cache_ttl_minutes: int = Field(default=5, ge=1)
    cache_max_entries: int = Field(default=1000, ge=10)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("anthropic_api_key")
    @classmethod
    def validate_api_key(cls, value: str) -> str:
        """Ensure the API key is not left as a placeholder."""

        if value.strip().lower() in {"", "change-me", "changeme"}:
            raise ValueError(
                "ANTHROPIC_API_KEY is required. Update your .env file before running the app."
            )
        return value.strip()

    @field_validator("log_level")
    @classmethod
    def normalize_log_level(cls, value: str) -> str:
        valid = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}
        upper = value.upper()
        if upper not in valid:
            raise ValueError(f"LOG_LEVEL must be one of {', '.join(sorted(valid))}")
        return upper


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance so it can be reused across the app."""

    settings = Settings()
    settings.log_dir.mkdir(parents=True, exist_ok=True)
    return settings
