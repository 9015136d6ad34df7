"""webtop configuration management with environment variable overrides.

This module provides the process configuration:
- Environment variable overrides (highest priority)
- YAML config file loading
- Pydantic validation
- Path resolution with StoragePathResolver (XDG-compliant)

Priority order for configuration values:
1. Environment variables (WEBTOP_*)
2. YAML config file
3. StoragePathResolver for paths
4. Pydantic defaults (lowest priority)

Runtime-mutable pipeline parameters (threshold, election window, leaderboard
size, ...) live in the store's settings record; ``pipeline`` here only seeds
that record when a store is created.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from webtop.models import PipelineSettings
from webtop.rollup.levels import DEFAULT_LEVELS, RollupLevel, validate_cascade
from webtop.storage.path_resolver import StoragePathResolver

logger = logging.getLogger(__name__)


class StorageConfig(BaseModel):
    """Event store configuration.

    Attributes:
        path: DuckDB database path (":memory:" for an in-memory store)
        seed_settings: Write ``pipeline`` into an empty store on startup
    """

    path: str | None = None  # Will be resolved by model_validator
    seed_settings: bool = True

    @model_validator(mode="after")
    def resolve_paths(self) -> "StorageConfig":
        """Resolve database path using StoragePathResolver."""
        if self.path is None:
            self.path = str(StoragePathResolver().get_database_path())
        return self


class JobsConfig(BaseModel):
    """Intervals and startup offsets of the non-rollup jobs.

    Rollup refresh jobs take their timing from their level. The election
    job's interval comes from the runtime settings record.
    """

    selection_interval: timedelta = timedelta(minutes=1)
    selection_delay: timedelta = timedelta(seconds=20)
    election_delay: timedelta = timedelta(minutes=1)
    retention_interval: timedelta = timedelta(minutes=1)
    retention_delay: timedelta = timedelta(seconds=40)
    drain_timeout_seconds: float = 30.0
    persist_status: bool = True

    @field_validator("selection_interval", "retention_interval")
    @classmethod
    def validate_positive(cls, v: timedelta) -> timedelta:
        if v <= timedelta(0):
            raise ValueError("job intervals must be positive")
        return v

    @field_validator("selection_delay", "election_delay", "retention_delay")
    @classmethod
    def validate_non_negative(cls, v: timedelta) -> timedelta:
        if v < timedelta(0):
            raise ValueError("job offsets must not be negative")
        return v


class WebtopConfig(BaseSettings):
    """Main webtop configuration.

    Attributes:
        storage: Event store configuration
        levels: Rollup cascade from finest to coarsest
        jobs: Scheduling of selection, election and retention
        pipeline: Settings seeded into a store that has none
        stats_level: Rollup level feeding per-entry traffic statistics
        max_clock_skew: Events stamped further in the future are rejected
        metrics_enabled: Expose Prometheus metrics while running
        prometheus_port: Port of the metrics endpoint
        environment: Deployment environment name
    """

    storage: StorageConfig = Field(default_factory=StorageConfig)
    levels: list[RollupLevel] = Field(default_factory=lambda: list(DEFAULT_LEVELS))
    jobs: JobsConfig = Field(default_factory=JobsConfig)
    pipeline: PipelineSettings = Field(default_factory=PipelineSettings)
    stats_level: str | None = None
    max_clock_skew: timedelta = timedelta(minutes=5)

    # Monitoring
    metrics_enabled: bool = False
    prometheus_port: int = Field(9464, ge=1, le=65535)

    # Environment
    environment: str = "development"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_nested_delimiter="__",
        env_prefix="webtop_",
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Environment beats values loaded from the YAML file (passed as init kwargs)
        return env_settings, dotenv_settings, init_settings, file_secret_settings

    @field_validator("levels")
    @classmethod
    def validate_levels(cls, v: list[RollupLevel]) -> list[RollupLevel]:
        return validate_cascade(v)

    @model_validator(mode="after")
    def validate_stats_level(self) -> "WebtopConfig":
        names = {level.name for level in self.levels}
        if self.stats_level is not None and self.stats_level not in names:
            raise ValueError(f"stats_level '{self.stats_level}' is not a configured level")

        base = self.levels[0]
        horizon = self.pipeline.retention_for(base.name, base.retention)
        if horizon < self.pipeline.election_window:
            logger.warning(
                f"Retention of level {base.name} ({horizon}) is shorter than the "
                f"election window ({self.pipeline.election_window})"
            )
        return self


def load_config_from_file(config_path: str | Path) -> dict[str, Any]:
    """Load configuration from YAML file.

    Args:
        config_path: Path to YAML configuration file

    Returns:
        Configuration dictionary (empty if the file does not exist)

    Raises:
        ValueError: If the file is not valid YAML or not a mapping
    """
    path = Path(config_path).expanduser()
    if not path.exists():
        logger.warning(f"Config file not found: {config_path}")
        return {}

    try:
        with open(path) as f:
            config = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {config_path}: {e}") from e

    if not isinstance(config, dict):
        raise ValueError(f"Config file {config_path} must contain a mapping")

    logger.info(f"Loaded configuration from {config_path}")
    return config


def get_config(config_path: str | Path | None = None) -> WebtopConfig:
    """Get configuration instance.

    Without an explicit path the default config file
    (``$XDG_CONFIG_HOME/webtop/config.yaml``) is used when it exists.

    Args:
        config_path: Optional path to YAML config file

    Returns:
        WebtopConfig instance
    """
    if config_path is None:
        default = StoragePathResolver().get_default_config_file()
        if default.exists():
            config_path = default

    if config_path:
        file_config = load_config_from_file(config_path)
        return WebtopConfig(**file_config)

    return WebtopConfig()
