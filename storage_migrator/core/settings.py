"""Runtime settings for storage migration processes.

Provides process-level paths and logging knobs using Pydantic BaseSettings
with environment variable support for operational tuning.
"""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class RuntimeSettings(BaseSettings):
    """Where state and logs live, and how verbose logging is."""

    state_dir: Path = Field(
        Path(".migration-state"),
        alias="MIGRATOR_STATE_DIR",
        description="Directory holding the state database and exported reports",
    )

    log_dir: Path | None = Field(
        None, alias="MIGRATOR_LOG_DIR", description="Directory for rotating log files"
    )

    log_level: str = Field("INFO", alias="LOG_LEVEL", description="Root log level")

    log_file_size_mb: int = Field(
        10, alias="LOG_FILE_SIZE_MB", description="Max log file size before truncation"
    )

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", populate_by_name=True)


def get_runtime_settings() -> RuntimeSettings:
    """Read runtime settings from the environment (fresh on every call)."""
    settings = RuntimeSettings()
    if settings.log_file_size_mb < 1 or settings.log_file_size_mb > 100:
        settings.log_file_size_mb = 10
    return settings
