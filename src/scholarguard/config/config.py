"""
Configuration management for ScholarGuard using Pydantic.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any, ClassVar, Dict, List, Literal, Optional, cast

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from scholarguard.quality.scorer import ACCEPTANCE_THRESHOLD

# --- Setup Logging ---
log = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "ScholarGuard-LinkValidator/1.0 (+https://github.com/scholarguard/scholarguard)"
DEFAULT_MOBILE_USER_AGENT = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_4 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.4 Mobile/15E148 Safari/604.1"
)

# --- Nested Configuration Models ---


class CircuitBreakerConfig(BaseModel):
    failure_threshold: int = Field(default=5, ge=1, description="Consecutive failures before a source is opened.")
    cooldown_seconds: float = Field(default=600.0, gt=0, description="How long an open source stays blocked.")
    state_file: Optional[Path] = Field(
        default=Path("./data/breakers.json"),
        description="Where breaker state is kept between processes. None disables.",
    )


class ScraperConfig(BaseModel):
    """Orchestrator and source-adapter settings."""

    max_concurrency: int = Field(default=8, ge=1, description="Worker pool size for concurrent network operations.")
    source_timeout: float = Field(default=300.0, gt=0, description="Time budget for one adapter run in seconds.")
    min_request_delay: float = Field(default=1.0, ge=0, description="Minimum delay between requests to a domain.")
    max_request_delay: float = Field(default=3.0, ge=0, description="Upper bound of the jittered request delay.")
    domain_policies: Dict[str, float] = Field(
        default_factory=lambda: {"gov.in": 8.0, "edu.in": 5.0, "ac.in": 5.0},
        description="Minimum request delay per domain suffix, overriding min_request_delay.",
    )
    candidate_queue_size: int = Field(default=100, ge=1, description="Buffered candidates per source.")
    fetch_timeout: float = Field(default=30.0, gt=0, description="Timeout for a single adapter fetch.")
    user_agent: str = Field(default=DEFAULT_USER_AGENT)
    schedule_cron: Optional[str] = Field(default=None, description="Optional crontab for scheduled scrape runs.")

    @model_validator(mode="after")
    def check_delay_range(self) -> "ScraperConfig":
        if self.max_request_delay < self.min_request_delay:
            raise ValueError("max_request_delay must be >= min_request_delay")
        if any(delay < 0 for delay in self.domain_policies.values()):
            raise ValueError("domain_policies delays must be >= 0")
        return self


class ValidatorConfig(BaseModel):
    """Link validation settings."""

    timeout: float = Field(default=15.0, gt=0, description="Overall time budget per candidate in seconds.")
    max_redirects: int = Field(default=5, ge=0, description="Redirect hop limit.")
    max_retries: int = Field(default=1, ge=0, description="Retries on 429/502/503/504.")
    user_agent: str = Field(default=DEFAULT_USER_AGENT)
    mobile_user_agent: str = Field(default=DEFAULT_MOBILE_USER_AGENT)
    check_mobile: bool = Field(default=True, description="Repeat the probe with a mobile user agent.")
    title_match_threshold: int = Field(default=60, ge=0, le=100, description="Minimum fuzzy title similarity.")
    min_keyword_matches: int = Field(default=3, ge=0, description="Scholarship keywords a correct page must contain.")
    max_body_bytes: int = Field(default=2_000_000, gt=0, description="Page bytes read for content analysis.")


class QualityConfig(BaseModel):
    acceptance_threshold: int = Field(
        default=ACCEPTANCE_THRESHOLD, ge=0, le=100, description="Minimum score to persist a candidate."
    )


class IngestionConfig(BaseModel):
    refresh_duplicates: bool = Field(
        default=True, description="Refresh last_validated on the existing record when a duplicate arrives."
    )
    rejected_db_path: Optional[Path] = Field(
        default=Path("./data/rejected.db"),
        description="SQLite file for rejected candidates. None keeps them in memory.",
    )


class StorageConfig(BaseModel):
    """Configuration for the scholarship record store."""

    backend: Literal["sqlite", "memory"] = Field(default="sqlite")
    db_path: Path = Field(default=Path("./data/scholarships.db"), description="SQLite database file path")
    pool_size: int = Field(default=5, ge=1, description="Size of the connection pool.")
    wal_mode: bool = Field(default=True, description="Enable Write-Ahead Logging for higher concurrency.")


class MonitorConfig(BaseModel):
    """Health monitor settings."""

    sweep_cron: str = Field(default="0 2 * * *", description="Crontab expression for the daily sweep.")
    timezone: str = Field(default="UTC")
    repair_strategies: List[Literal["source_url", "url_variations"]] = Field(default_factory=lambda: ["source_url"])
    repair_timeout: float = Field(default=60.0, gt=0, description="Time budget for one repair attempt.")
    report_file: Optional[Path] = Field(
        default=Path("./data/last_sweep.json"),
        description="Where the latest sweep report is kept for other processes. None disables.",
    )

    @field_validator("repair_strategies")
    @classmethod
    def validate_strategies(cls, v: List[str]) -> List[str]:
        if not v:
            raise ValueError("repair_strategies must name at least one strategy")
        return v


class MonitoringConfig(BaseModel):
    """Configuration for logging, metrics and the audit trail."""

    log_level: str = Field(default="INFO", description="Logging level (e.g., DEBUG, INFO, WARNING).")
    log_file: str | None = Field(default=None, description="Path to log file. If None, logs to console.")
    prometheus_port: int | None = Field(default=None, description="Port for Prometheus metrics exporter.")
    audit_log_path: str | None = Field(default="./logs/audit.jsonl", description="JSONL audit trail. None disables.")
    audit_buffer_size: int = Field(default=1000, ge=1, description="Recent audit events kept in memory.")

    @field_validator("log_file", "audit_log_path", mode="before")
    @classmethod
    def create_parent_dir(cls, v: str | Path | None) -> str | None:
        if v is None:
            return None
        path = Path(v)
        path.parent.mkdir(parents=True, exist_ok=True)
        return str(path)


class DebugConfig(BaseModel):
    test_mode: bool = False


# --- Main Configuration Class ---


class Config(BaseSettings):
    project_name: str = "ScholarGuard"
    version: str = "0.1.0"
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    scraper: ScraperConfig = Field(default_factory=ScraperConfig)
    validator: ValidatorConfig = Field(default_factory=ValidatorConfig)
    quality: QualityConfig = Field(default_factory=QualityConfig)
    ingestion: IngestionConfig = Field(default_factory=IngestionConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    monitor: MonitorConfig = Field(default_factory=MonitorConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    debug: DebugConfig = Field(default_factory=DebugConfig)

    model_config = SettingsConfigDict(env_prefix="SCHOLARGUARD_", env_nested_delimiter="__", case_sensitive=False)

    @classmethod
    def from_yaml(cls, path: Path) -> Config:
        log.debug("Loading configuration from YAML file: %s", path)
        if not path.is_file():
            raise FileNotFoundError(f"Configuration file not found or is not a file: {path}")
        with open(path, "r", encoding="utf-8") as f:
            yaml_data = yaml.safe_load(f)
        if not yaml_data:
            log.warning("Configuration file is empty: %s. Using default settings.", path)
            return cls.model_validate({})
        return cls.model_validate(yaml_data)


def find_config_file() -> Path | None:
    current_dir = Path.cwd()
    for path in (
        current_dir / "scholarguard.yaml",
        current_dir / "scholarguard.yml",
        current_dir / "config.yaml",
        current_dir / "config.yml",
    ):
        if path.exists():
            return path
    return None


def load_config(path: Path | None = None) -> Config:
    """Load configuration from an explicit path, a discovered file, or defaults."""
    config_path = path or find_config_file()
    if config_path is None:
        return Config()
    return Config.from_yaml(config_path)


# --- Lazy Configuration Loader ---


class LazyConfig:
    """
    A proxy for the Config object that delays its loading and validation
    until an attribute is first accessed. This prevents configuration errors
    from crashing the application on import.
    """

    _config: ClassVar[Config | None] = None
    _lock: ClassVar[threading.Lock] = threading.Lock()

    def __getattr__(self, name: str) -> Any:
        if self.__class__._config is None:
            with self.__class__._lock:
                if self.__class__._config is None:
                    self.__class__._config = self._load_config_with_fallback()
        return getattr(self.__class__._config, name)

    def _load_config_with_fallback(self) -> Config:
        """Load configuration from file or fall back to defaults."""
        config_path = find_config_file()
        if config_path:
            try:
                log.info("Lazy loading configuration from: %s", config_path)
                return Config.from_yaml(config_path)
            except (ValidationError, FileNotFoundError, yaml.YAMLError) as e:
                log.error(
                    "Failed to load or validate configuration from '%s': %s. "
                    "Falling back to default settings. Please check your config file.",
                    config_path,
                    e,
                    exc_info=log.getEffectiveLevel() <= logging.DEBUG,
                )
        else:
            log.info("No config file found. Using default settings for lazy load.")

        try:
            return Config()
        except ValidationError as e:
            log.critical("FATAL: Default configuration is invalid: %s", e, exc_info=True)
            raise RuntimeError(f"Default configuration is invalid, cannot start: {e}") from e


# --- Global Settings Instance ---
settings: "Config" = cast("Config", LazyConfig())
