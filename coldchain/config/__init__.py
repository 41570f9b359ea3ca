"""
Configuration management for the cold-chain engine.

This module handles loading and validating configuration from YAML files.
All configuration values are validated using Pydantic models to ensure
type safety and catch configuration errors early.

Configuration is loaded from YAML files in the config/ directory:
    - engine.yaml: Engine timings, storage backend, gateway and logging
    - notifications.yaml: Notification channel providers
    - assets.yaml: Optional asset seed

Environment variables can override connection settings:
    - REDIS_URL: Redis connection URL
    - DATABASE_URL: PostgreSQL connection URL
    - LOG_LEVEL: Application log level
    - STORAGE_BACKEND: Live state backend

Example:
    >>> from coldchain.config import load_config, AppConfig
    >>> config = load_config()
    >>> config.engine.scan_interval_seconds
    60

Modules:
    loader: Configuration file loading utilities
    models: Pydantic models for configuration validation
"""

from coldchain.config.loader import ConfigLoadError, ConfigLoader, load_config
from coldchain.config.models import (
    # Enums
    ChannelProvider,
    LogFormat,
    LogLevel,
    StorageBackend,
    # Sections
    AppConfig,
    AssetsConfig,
    ChannelConfig,
    EngineConfig,
    GatewayConfig,
    LoggingConfig,
    NotificationsConfig,
    PostgresConnectionConfig,
    RedisConnectionConfig,
    StorageConfig,
    NOTIFICATION_CHANNELS,
)

__all__ = [
    # Loader
    "ConfigLoadError",
    "ConfigLoader",
    "load_config",
    # Enums
    "ChannelProvider",
    "LogFormat",
    "LogLevel",
    "StorageBackend",
    # Sections
    "AppConfig",
    "AssetsConfig",
    "ChannelConfig",
    "EngineConfig",
    "GatewayConfig",
    "LoggingConfig",
    "NotificationsConfig",
    "PostgresConnectionConfig",
    "RedisConnectionConfig",
    "StorageConfig",
    "NOTIFICATION_CHANNELS",
]
