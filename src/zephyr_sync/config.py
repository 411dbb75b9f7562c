"""Configuration management for Zephyr Sync.

This module defines the configuration schema using Pydantic settings,
supporting TOML files, environment variables, and programmatic overrides.

Configuration loading priority (highest to lowest):
1. Programmatic overrides (passed to ZephyrSyncConfig constructor)
2. Environment variables (ZEPHYR_SYNC_* prefix)
3. TOML configuration file
4. Default values defined in this module

Example TOML configuration:
    [api]
    base_url = "https://discord.com/api/v10"
    timeout_seconds = 20

    [producer]
    scan_concurrency = 3

Example environment variable override:
    ZEPHYR_SYNC_PRODUCER__SCAN_CONCURRENCY=2
    ZEPHYR_SYNC_STORAGE__SNAPSHOT_PATH=/var/lib/zephyr/snapshot.json
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import tomli
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ApiConfig(BaseSettings):
    """Remote chat API configuration.

    Attributes:
        base_url: Base URL of the REST API
        timeout_seconds: Request timeout in seconds
        user_agent: User-Agent header sent with every request
    """

    model_config = SettingsConfigDict(
        env_prefix="ZEPHYR_SYNC_API__",
        extra="forbid",
    )

    base_url: str = Field(default="https://discord.com/api/v10")
    timeout_seconds: int = Field(default=30, ge=1, le=300)
    user_agent: str = Field(default="zephyr-sync/0.1")

    @field_validator("base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        """Normalize base URL so endpoint paths join cleanly."""
        return v.rstrip("/")


class ProducerConfig(BaseSettings):
    """Producer scheduling configuration.

    Attributes:
        scan_concurrency: Maximum channels fetched concurrently during an initial scan
        tick_interval_seconds: Interval of the periodic scheduler tick
        work_delay_seconds: Delay before the extra tick requested by scheduled work
        message_page_limit: Page size of the greedy backfill on a channel's first fetch
    """

    model_config = SettingsConfigDict(
        env_prefix="ZEPHYR_SYNC_PRODUCER__",
        extra="forbid",
    )

    scan_concurrency: int = Field(default=1, ge=1, le=16)
    tick_interval_seconds: float = Field(default=1.0, ge=0.1, le=60.0)
    work_delay_seconds: float = Field(default=0.2, ge=0.0, le=10.0)
    message_page_limit: int = Field(default=100, ge=1, le=100)


class StorageConfig(BaseSettings):
    """Snapshot storage configuration.

    Attributes:
        snapshot_path: File the encoded snapshot is written to
    """

    model_config = SettingsConfigDict(
        env_prefix="ZEPHYR_SYNC_STORAGE__",
        extra="forbid",
    )

    snapshot_path: Path = Field(
        default_factory=lambda: Path.home() / ".local" / "share" / "zephyr-sync" / "snapshot.json"
    )


class LoggingConfig(BaseSettings):
    """Logging configuration.

    Attributes:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format: Log format (json or console)
        file: Optional log file path (None for stdout only)
        rotation_size_mb: Log file rotation size in megabytes
        retention_count: Number of rotated log files to keep
    """

    model_config = SettingsConfigDict(
        env_prefix="ZEPHYR_SYNC_LOGGING__",
        extra="forbid",
    )

    level: str = Field(default="INFO")
    format: str = Field(default="json")
    file: Path | None = Field(default=None)
    rotation_size_mb: int = Field(default=50, ge=1, le=1000)
    retention_count: int = Field(default=10, ge=1, le=100)

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate log level is recognized."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v_upper

    @field_validator("format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        """Validate log format is recognized."""
        valid_formats = {"json", "console"}
        v_lower = v.lower()
        if v_lower not in valid_formats:
            raise ValueError(f"Invalid log format: {v}. Must be one of {valid_formats}")
        return v_lower


class ZephyrSyncConfig(BaseSettings):
    """Root configuration for Zephyr Sync.

    Aggregates all subsystem configurations. Configuration can be loaded from:
    1. TOML files (using load_config function)
    2. Environment variables (ZEPHYR_SYNC_* prefix)
    3. Direct instantiation with keyword arguments

    Environment variable format for nested config:
        ZEPHYR_SYNC_<SECTION>__<KEY>=value
    """

    model_config = SettingsConfigDict(
        env_prefix="ZEPHYR_SYNC_",
        env_nested_delimiter="__",
        extra="forbid",
    )

    api: ApiConfig = Field(default_factory=ApiConfig)
    producer: ProducerConfig = Field(default_factory=ProducerConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def load_config(config_path: Path | None = None) -> ZephyrSyncConfig:
    """Load configuration from TOML file with environment variable overrides.

    Configuration search order (first found is used):
    1. config_path if explicitly provided
    2. ./zephyr-sync.toml (current directory)
    3. ~/.config/zephyr-sync/config.toml (user config directory)

    Args:
        config_path: Explicit path to TOML config file. If None, searches
                    default locations.

    Returns:
        ZephyrSyncConfig: Fully resolved configuration instance.

    Raises:
        FileNotFoundError: If config_path is explicitly provided but doesn't exist.
        ValueError: If TOML file contains invalid configuration.
    """
    toml_data: dict[str, Any] = {}

    if config_path is not None:
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
        selected_path = config_path
    else:
        search_paths = [
            Path.cwd() / "zephyr-sync.toml",
            Path.home() / ".config" / "zephyr-sync" / "config.toml",
        ]
        selected_path = None
        for path in search_paths:
            if path.exists():
                selected_path = path
                break

    if selected_path is not None:
        with open(selected_path, "rb") as f:
            toml_data = tomli.load(f)

    # Pydantic overlays environment variables on top of the TOML data
    try:
        return ZephyrSyncConfig(**toml_data)
    except Exception as e:
        if selected_path:
            raise ValueError(
                f"Invalid configuration in {selected_path}: {e}"
            ) from e
        else:
            raise ValueError(f"Invalid configuration: {e}") from e
