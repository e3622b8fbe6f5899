"""Configuration management for storage migration runs."""

import asyncio
import os
import re
from pathlib import Path
from typing import Any, Literal

import structlog
import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from .. import constants
from .exceptions import ConfigurationError

logger = structlog.get_logger()

# Scalar fields that MIGRATOR_<FIELD> environment variables may override
ENV_OVERRIDABLE_FIELDS = (
    "scope",
    "batch_size",
    "max_workers",
    "checkpoint_every_batches",
    "changelog_flush_every",
    "max_retries",
    "retry_base_delay",
    "retry_max_delay",
    "max_repeated_errors",
    "error_threshold",
    "lock_ttl_seconds",
    "lock_acquire_timeout",
    "checkpoint_retention_hours",
    "fuzzy_threshold",
)

ALLOWED_ENV_VARS = {
    "HOME",
    "USER",
    "XDG_DATA_HOME",
    "MIGRATOR_STATE_DIR",
    "MIGRATOR_LOG_DIR",
    "MIGRATOR_DATA_ROOT",
    "LOG_LEVEL",
}


class LocationConfig(BaseModel):
    """Backend definition for one named storage location."""

    backend: Literal["local", "memory"] = "local"
    root: str | None = None  # Required for local backends
    supports_move: bool = True
    description: str = ""


class MetadataStoreConfig(BaseModel):
    """Where the reference metadata repository keeps its records."""

    backend: Literal["sqlite", "memory"] = "sqlite"
    path: str | None = None


class MigrationConfig(BaseSettings):
    """Main configuration for a migration run."""

    scope: str = Field(default="default", description="Lock scope; one active run per scope")
    source_locations: list[str] = Field(default_factory=list)
    target_location: str = ""
    target_prefix: str = ""
    quarantine_location: str = ""
    quarantine_prefix: str = constants.QUARANTINE_PREFIX
    staging_prefix: str = constants.STAGING_PREFIX

    originals_markers: list[str] = Field(default_factory=lambda: list(constants.DEFAULT_ORIGINALS_MARKERS))
    extension_families: list[list[str]] = Field(
        default_factory=lambda: [list(f) for f in constants.DEFAULT_EXTENSION_FAMILIES]
    )
    fuzzy_threshold: float = constants.DEFAULT_FUZZY_THRESHOLD
    low_confidence_warning: float = constants.DEFAULT_LOW_CONFIDENCE_WARNING

    batch_size: int = constants.DEFAULT_BATCH_SIZE
    max_workers: int = constants.DEFAULT_MAX_WORKERS
    checkpoint_every_batches: int = constants.DEFAULT_CHECKPOINT_EVERY_BATCHES
    changelog_flush_every: int = constants.DEFAULT_CHANGELOG_FLUSH_EVERY

    max_retries: int = constants.DEFAULT_MAX_RETRIES
    retry_base_delay: float = constants.DEFAULT_RETRY_BASE_DELAY
    retry_max_delay: float = constants.DEFAULT_RETRY_MAX_DELAY
    max_repeated_errors: int = constants.DEFAULT_MAX_REPEATED_ERRORS
    error_threshold: int = constants.DEFAULT_ERROR_THRESHOLD

    lock_ttl_seconds: int = constants.DEFAULT_LOCK_TTL_SECONDS
    lock_acquire_timeout: float = 0.0
    checkpoint_retention_hours: int = constants.DEFAULT_CHECKPOINT_RETENTION_HOURS

    snapshot_before_run: bool = True
    keep_staging: bool = False
    verification_sample_size: int = constants.DEFAULT_VERIFICATION_SAMPLE_SIZE

    locations: dict[str, LocationConfig] = Field(default_factory=dict)
    metadata: MetadataStoreConfig = Field(default_factory=MetadataStoreConfig)

    model_config = SettingsConfigDict(
        env_prefix="MIGRATOR_", env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    @property
    def managed_locations(self) -> list[str]:
        """Sources plus target, in order, without duplicates."""
        ordered: list[str] = []
        for name in [*self.source_locations, self.target_location]:
            if name and name not in ordered:
                ordered.append(name)
        return ordered

    def validate_run_config(self) -> None:
        """Raise ConfigurationError describing every problem found."""
        problems = collect_config_problems(self)
        if problems:
            raise ConfigurationError("Invalid migration configuration: " + "; ".join(problems))

    def to_storable(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


def collect_config_problems(config: MigrationConfig) -> list[str]:
    """Return human-readable configuration problems (empty when valid)."""
    problems: list[str] = []
    if not config.source_locations:
        problems.append("at least one source location is required")
    if not config.target_location:
        problems.append("target_location is required")
    if not config.quarantine_location:
        problems.append("quarantine_location is required")
    if config.quarantine_location and config.quarantine_location == config.target_location:
        problems.append("quarantine_location must differ from target_location")
    if config.quarantine_location in config.source_locations:
        problems.append("quarantine_location must not be a source location")

    if config.locations:
        referenced = {*config.managed_locations, config.quarantine_location} - {""}
        for name in sorted(referenced - set(config.locations)):
            problems.append(f"location '{name}' has no backend definition")
        for name, location in config.locations.items():
            if location.backend == "local" and not location.root:
                problems.append(f"local location '{name}' requires a root directory")

    positive_ints = {
        "batch_size": config.batch_size,
        "max_workers": config.max_workers,
        "checkpoint_every_batches": config.checkpoint_every_batches,
        "changelog_flush_every": config.changelog_flush_every,
        "max_repeated_errors": config.max_repeated_errors,
        "error_threshold": config.error_threshold,
        "lock_ttl_seconds": config.lock_ttl_seconds,
        "checkpoint_retention_hours": config.checkpoint_retention_hours,
    }
    for name, value in positive_ints.items():
        if value < 1:
            problems.append(f"{name} must be >= 1 (got {value})")
    if config.max_retries < 0:
        problems.append(f"max_retries must be >= 0 (got {config.max_retries})")
    if config.retry_base_delay < 0 or config.retry_max_delay < 0:
        problems.append("retry delays must not be negative")
    if config.lock_acquire_timeout < 0:
        problems.append("lock_acquire_timeout must not be negative")
    if not 0 < config.fuzzy_threshold <= 1:
        problems.append(f"fuzzy_threshold must be in (0, 1] (got {config.fuzzy_threshold})")
    return problems


def config_from_dict(data: dict[str, Any]) -> MigrationConfig:
    """Build a config from plain data, mapping pydantic errors to ConfigurationError."""
    try:
        return MigrationConfig(**data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid migration configuration: {e}") from e


def load_config(config_path: str | Path | None = None) -> MigrationConfig:
    """Load configuration from YAML and environment (synchronous interface).

    Note:
        For async code, use load_config_async() instead.
    """
    try:
        asyncio.get_running_loop()
        raise RuntimeError(
            "load_config() cannot be called from within an async context. "
            "Use 'await load_config_async()' instead."
        )
    except RuntimeError as e:
        if "no running event loop" in str(e).lower():
            return asyncio.run(load_config_async(config_path))
        raise


async def load_config_async(config_path: str | Path | None = None) -> MigrationConfig:
    """Load configuration from multiple sources (async interface).

    Priority, lowest first: defaults, YAML file, MIGRATOR_* environment variables.
    The result is validated; problems raise ConfigurationError.
    """
    load_dotenv()

    data: dict[str, Any] = {}
    path = Path(config_path or os.getenv("MIGRATOR_CONFIG", "migration.yml"))
    if config_path is not None and not path.exists():
        raise ConfigurationError(f"Configuration file not found: {path}")
    if path.exists():
        data = await _load_yaml_config(path)

    _apply_env_overrides(data)
    config = config_from_dict(data)
    config.validate_run_config()

    logger.info(
        "Configuration loaded",
        config_file=str(path) if path.exists() else None,
        scope=config.scope,
        sources=config.source_locations,
        target=config.target_location,
    )
    return config


def _apply_env_overrides(data: dict[str, Any]) -> None:
    """Environment variables win over YAML values for scalar knobs."""
    for field_name in ENV_OVERRIDABLE_FIELDS:
        value = os.getenv(f"MIGRATOR_{field_name.upper()}")
        if value is not None:
            data[field_name] = value


async def _load_yaml_config(config_path: Path) -> dict[str, Any]:
    """Load YAML configuration file."""
    try:
        content = await asyncio.to_thread(config_path.read_text)
        content = _expand_yaml_config(content)
        loaded = yaml.safe_load(content)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Failed to load config from {config_path}: {e}") from e

    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise ConfigurationError(f"Config file {config_path} must contain a mapping")
    return loaded


def _expand_yaml_config(content: str) -> str:
    """Expand ${VAR} references, limited to an allowlist of environment variables."""

    def replace_var(match: re.Match[str]) -> str:
        var_name = match.group(1)
        if var_name in ALLOWED_ENV_VARS:
            return os.getenv(var_name, match.group(0))
        logger.warning(
            "Environment variable not in allowlist, skipping expansion",
            variable=var_name,
        )
        return match.group(0)

    return re.sub(r"\$\{([^}]+)\}", replace_var, content)
