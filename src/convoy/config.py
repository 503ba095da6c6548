"""Configuration management for Convoy."""

from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        env_parse_none_str="",
    )

    # Database Configuration
    database_url: str = Field(
        default="sqlite:///.convoy/convoy.sqlite",
        description="SQLAlchemy connection URL for the entity store",
    )

    # Logging Configuration
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="json", description="Log format: json or console")

    # Autoscaler Configuration
    spawn_backlog_threshold: int = Field(
        default=10, description="Pending dispatches per role above which a new agent is recommended"
    )
    spawn_role_cap: int = Field(
        default=2, description="Maximum number of agents per role the autoscaler will grow to"
    )
    learning_limit: int = Field(
        default=5, description="Number of recent learnings folded into a spawned agent's prompt"
    )
    templates_file: Path | None = Field(
        default=None, description="Optional YAML file overriding the built-in role templates"
    )

    # Scheduling Configuration
    poll_interval_seconds: int = Field(
        default=30, description="How often the fleet cycle runs"
    )
    autoscale_interval_seconds: int = Field(
        default=300, description="How often the autoscaler runs"
    )
    lease_ttl_seconds: int = Field(
        default=120, description="Lifetime of a run lease before another instance may take it over"
    )

    # Reporting Configuration
    standup_reporter: str = Field(
        default="MAX", description="Agent credited with generated standup events"
    )

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        v = v.lower()
        if v not in ("json", "console"):
            raise ValueError("log_format must be 'json' or 'console'")
        return v

    @field_validator("spawn_role_cap", "spawn_backlog_threshold", "learning_limit")
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("must be >= 0")
        return v


# Global settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get or create settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings instance (used after environment changes)."""
    global _settings
    _settings = None
