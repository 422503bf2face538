"""Configuration management for Drishti."""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from drishti.stages import DEFAULT_DELAYS


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_prefix="DRISHTI_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Pipeline Configuration
    delay_scale: float = Field(default=1.0, ge=0, description="Multiplier for simulated stage latency; 0 disables it")
    stage_delays: dict[str, float] = Field(
        default_factory=lambda: dict(DEFAULT_DELAYS),
        description="Per-stage simulated latency in seconds",
    )

    # Logging Configuration
    log_level: str = Field(default="INFO", description="Log level")
    log_format: str = Field(default="default", description="Log profile: default or plain")


def get_settings(**overrides: object) -> Settings:
    """Get application settings.

    Args:
        overrides: Explicit values that win over environment and .env

    Returns:
        Settings instance
    """
    return Settings(**overrides)  # type: ignore[arg-type]
