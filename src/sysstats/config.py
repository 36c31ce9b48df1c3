"""Configuration management using Pydantic Settings.

Settings are read from the environment once at startup and never change
afterwards. The listen port comes from PORT; everything else uses the
SYSSTATS_ prefix.
"""

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_PORT = 3000
LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")


class Settings(BaseSettings):
    """Process-wide configuration."""

    model_config = SettingsConfigDict(
        env_prefix="SYSSTATS_",
        frozen=True,
        populate_by_name=True,
        extra="ignore",
    )

    port: int = Field(DEFAULT_PORT, ge=0, le=65535, validation_alias="PORT", description="Listen port")
    host: str = Field("0.0.0.0", description="Listen address")
    stream_interval: float = Field(2.0, gt=0, description="Seconds between stream events")
    shutdown_grace: float = Field(5.0, ge=0, description="Seconds to wait for in-flight requests on shutdown")
    disk_path: str = Field("/", description="Filesystem whose utilization is reported")
    log_level: str = Field("INFO", description="Log level: DEBUG|INFO|WARNING|ERROR")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Accept a standard logging level name, case-insensitive."""
        level = v.upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"unknown log level: {v}")
        return level
