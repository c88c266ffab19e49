"""Configuration models and loaders."""

from .config import (
    CircuitBreakerConfig,
    Config,
    DebugConfig,
    IngestionConfig,
    MonitorConfig,
    MonitoringConfig,
    QualityConfig,
    ScraperConfig,
    StorageConfig,
    ValidatorConfig,
    find_config_file,
    load_config,
    settings,
)

__all__ = [
    "CircuitBreakerConfig",
    "Config",
    "DebugConfig",
    "IngestionConfig",
    "MonitorConfig",
    "MonitoringConfig",
    "QualityConfig",
    "ScraperConfig",
    "StorageConfig",
    "ValidatorConfig",
    "find_config_file",
    "load_config",
    "settings",
]
