"""
Configuration management for offsync.

Uses pydantic-settings for environment variable support (``OFFSYNC_`` prefix)
with an optional YAML config file underneath.
"""

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Literal

import yaml
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from offsync.core.cache import DEFAULT_PERSIST_KEYS
from offsync.resilience.breaker import CircuitBreakerConfig
from offsync.resilience.executor import RetryPolicy
from offsync.sync.connectivity import DEFAULT_TARGETS

logger = logging.getLogger(__name__)

ENV_PREFIX = "OFFSYNC_"

DEFAULT_PROBE_TARGETS = list(DEFAULT_TARGETS)


class Settings(BaseSettings):
    """offsync configuration with environment variable support."""

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    environment: str = Field(
        default="development",
        description="Environment: development, staging, production, test",
    )

    # Durable store
    data_dir: Path = Field(
        default=Path("~/.offsync/data"),
        description="Directory for the file store",
    )
    store_backend: Literal["file", "memory"] = Field(
        default="file",
        description="Durable store implementation",
    )

    # TTL cache
    cache_max_entries: int = Field(default=50, ge=1, le=100_000)
    cache_default_ttl: float = Field(default=300.0, gt=0, description="Seconds")
    cache_persist_keys: list[str] = Field(
        default_factory=lambda: list(DEFAULT_PERSIST_KEYS),
        description="Key substrings whose cache entries are also persisted",
    )

    # Retry
    retry_max_attempts: int = Field(default=3, ge=1, le=20)
    retry_base_delay: float = Field(default=1.0, ge=0)
    retry_max_delay: float = Field(default=10.0, ge=0)
    retry_backoff_multiplier: float = Field(default=2.0, ge=1.0)
    network_max_attempts: int = Field(default=2, ge=1, le=20)
    network_base_delay: float = Field(default=2.0, ge=0)
    operation_timeout: float | None = Field(
        default=10.0,
        gt=0,
        description="Per-attempt timeout in seconds; null disables",
    )

    # Circuit breaker
    breaker_failure_threshold: int = Field(default=5, ge=1)
    breaker_reset_timeout: float = Field(default=60.0, ge=0)

    # Sync queue
    queue_capacity: int = Field(default=100, ge=1)
    sync_batch_size: int = Field(default=5, ge=1)
    sync_batch_pause: float = Field(default=0.2, ge=0)
    upload_max_attempts: int = Field(default=2, ge=1)
    upload_base_delay: float = Field(default=1.0, ge=0)
    drain_max_attempts: int = Field(default=3, ge=1)
    drain_base_delay: float = Field(default=2.0, ge=0)
    sync_base_url: str = Field(
        default="http://localhost:8081/api",
        description="Base URL of the remote mutation API",
    )
    sync_interval: float = Field(default=30.0, gt=0)
    user_id: str | None = Field(
        default=None,
        description="Account id sent as userId with every upload",
    )

    # Connectivity probe
    probe_targets: list[str] = Field(default_factory=lambda: list(DEFAULT_PROBE_TARGETS))
    probe_timeout: float = Field(default=3.0, gt=0)

    # Diagnostics
    error_log_capacity: int = Field(default=50, ge=1)
    log_level: str = Field(default="INFO")
    log_json: bool = Field(default=True)

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Invalid log level: {v}")
        return level

    @field_validator("sync_base_url")
    @classmethod
    def _validate_base_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("sync_base_url must be an http(s) URL")
        return v.rstrip("/")

    @field_validator("probe_targets")
    @classmethod
    def _validate_probe_targets(cls, v: list[str]) -> list[str]:
        if not v:
            raise ValueError("probe_targets must not be empty")
        return v

    @model_validator(mode="after")
    def _check_delays(self) -> "Settings":
        if self.retry_max_delay < self.retry_base_delay:
            raise ValueError("retry_max_delay must be >= retry_base_delay")
        return self

    # Builders for component configuration

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.retry_max_attempts,
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
            backoff_multiplier=self.retry_backoff_multiplier,
        )

    def network_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.network_max_attempts,
            base_delay=self.network_base_delay,
            max_delay=max(self.retry_max_delay, self.network_base_delay),
            backoff_multiplier=self.retry_backoff_multiplier,
        )

    def upload_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.upload_max_attempts,
            base_delay=self.upload_base_delay,
            max_delay=max(self.retry_max_delay, self.upload_base_delay),
            backoff_multiplier=self.retry_backoff_multiplier,
        )

    def drain_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.drain_max_attempts,
            base_delay=self.drain_base_delay,
            max_delay=max(self.retry_max_delay, self.drain_base_delay),
            backoff_multiplier=self.retry_backoff_multiplier,
        )

    def breaker_config(self) -> CircuitBreakerConfig:
        return CircuitBreakerConfig(
            failure_threshold=self.breaker_failure_threshold,
            reset_timeout=self.breaker_reset_timeout,
        )


def _find_config_file() -> Path | None:
    """
    Find configuration file in standard locations.

    Search order:
    1. OFFSYNC_CONFIG_FILE environment variable
    2. ./offsync.yaml / ./offsync.yml (current directory)
    3. ~/.offsync/config.yaml

    Returns:
        Path to config file if found, None otherwise
    """
    env_config = os.getenv(f"{ENV_PREFIX}CONFIG_FILE")
    if env_config:
        path = Path(env_config).expanduser()
        if path.exists():
            return path
        logger.warning(f"Config file from {ENV_PREFIX}CONFIG_FILE not found: {path}")

    search_paths = [
        Path("offsync.yaml"),
        Path("offsync.yml"),
        Path.home() / ".offsync" / "config.yaml",
    ]

    for path in search_paths:
        if path.exists():
            logger.debug(f"Found config file: {path}")
            return path

    return None


def _load_yaml_config(path: Path) -> dict:
    """
    Load configuration from YAML file.

    Raises:
        ValueError: If YAML file is invalid
    """
    try:
        with open(path) as f:
            config = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in config file {path}: {e}")

    if not isinstance(config, dict):
        raise ValueError(f"Config file must contain a dictionary, got {type(config).__name__}")

    logger.info(f"Loaded configuration from: {path}")
    return config


def _without_env_overrides(yaml_config: dict) -> dict:
    """Drop YAML keys that an OFFSYNC_* environment variable overrides."""
    filtered = {}
    for key, value in yaml_config.items():
        env_key = f"{ENV_PREFIX}{key.upper()}"
        if os.getenv(env_key) is None:
            filtered[key] = value
        else:
            logger.debug(f"Skipping YAML key '{key}' - overridden by {env_key}")
    return filtered


def load_settings_from_yaml(config_path: Path | str | None = None) -> Settings:
    """
    Load Settings from YAML file with environment variable overrides.

    Args:
        config_path: Path to YAML config file. If None, searches standard locations.

    Example YAML config:
        ```yaml
        # ~/.offsync/config.yaml
        store_backend: file
        data_dir: ~/.offsync/data
        sync_base_url: https://api.example.com/api
        user_id: store-7
        queue_capacity: 200
        ```
    """
    if config_path:
        path = Path(config_path).expanduser()
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
    else:
        path = _find_config_file()

    yaml_config = _load_yaml_config(path) if path else {}
    return Settings(**_without_env_overrides(yaml_config))


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Precedence: OFFSYNC_* environment variables, then the YAML config file,
    then defaults.
    """
    return load_settings_from_yaml()


def reset_settings() -> None:
    """Clear the cached settings, forcing reload on next get_settings() call."""
    get_settings.cache_clear()


__all__ = [
    "DEFAULT_PERSIST_KEYS",
    "DEFAULT_PROBE_TARGETS",
    "Settings",
    "get_settings",
    "load_settings_from_yaml",
    "reset_settings",
]
