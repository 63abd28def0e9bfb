"""
Configuration loader with Pydantic validation.

Supports:
- YAML file loading
- Environment variable overrides (TELEMETRY_BUS_*)
- Per-type default priorities
"""

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class BusConfig(BaseModel):
    """Queueing and batching parameters."""

    batch_size: int = 50
    batch_timeout_seconds: float = 5.0
    max_queue_size: int = 10000  # Per event type
    max_in_flight_batches: int = 4  # Per event type
    persist_timeout_seconds: float = 10.0
    shutdown_grace_seconds: float = 10.0
    backpressure_warning_pct: float = 0.5
    backpressure_critical_pct: float = 0.9
    default_priorities: dict[str, str] = Field(
        default_factory=lambda: {
            "customer_activity": "normal",
            "heatmap_interaction": "low",
            "ab_assignment": "normal",
            "ab_conversion": "high",
        }
    )

    @field_validator("batch_size", "max_queue_size", "max_in_flight_batches")
    @classmethod
    def validate_positive_int(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @field_validator("batch_timeout_seconds", "persist_timeout_seconds")
    @classmethod
    def validate_positive_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("timeout must be positive")
        return v

    @field_validator("shutdown_grace_seconds")
    @classmethod
    def validate_grace(cls, v: float) -> float:
        if v < 0:
            raise ValueError("shutdown_grace_seconds must be non-negative")
        return v

    @field_validator("backpressure_warning_pct", "backpressure_critical_pct")
    @classmethod
    def validate_pct(cls, v: float) -> float:
        if not 0 < v <= 1:
            raise ValueError("backpressure thresholds must be between 0 and 1")
        return v

    @field_validator("default_priorities")
    @classmethod
    def validate_priorities(cls, v: dict[str, str]) -> dict[str, str]:
        allowed = {"high", "normal", "low"}
        for event_type, priority in v.items():
            if priority not in allowed:
                raise ValueError(
                    f"priority for {event_type} must be one of {sorted(allowed)}"
                )
        return v


class RetryConfig(BaseModel):
    """Handler retry and backoff parameters."""

    max_retries: int = 3
    base_delay_seconds: float = 1.0
    jitter: float = 0.1  # Proportional, 0 disables

    @field_validator("max_retries")
    @classmethod
    def validate_retries(cls, v: int) -> int:
        if v < 0:
            raise ValueError("max_retries must be non-negative")
        return v

    @field_validator("base_delay_seconds")
    @classmethod
    def validate_delay(cls, v: float) -> float:
        if v < 0:
            raise ValueError("base_delay_seconds must be non-negative")
        return v

    @field_validator("jitter")
    @classmethod
    def validate_jitter(cls, v: float) -> float:
        if not 0 <= v < 1:
            raise ValueError("jitter must be in [0, 1)")
        return v


class IdempotencyConfig(BaseModel):
    """Duplicate detection window."""

    ttl_seconds: float = 600.0  # 10 minutes
    sweep_interval_seconds: float = 60.0
    shards: int = 16

    @field_validator("ttl_seconds", "sweep_interval_seconds")
    @classmethod
    def validate_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be positive")
        return v

    @field_validator("shards")
    @classmethod
    def validate_shards(cls, v: int) -> int:
        if v < 1:
            raise ValueError("shards must be at least 1")
        return v


class CorrelationConfig(BaseModel):
    """Session correlation window."""

    ttl_seconds: float = 1800.0  # 30 minutes of inactivity
    sweep_interval_seconds: float = 60.0
    shards: int = 16

    @field_validator("ttl_seconds", "sweep_interval_seconds")
    @classmethod
    def validate_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be positive")
        return v

    @field_validator("shards")
    @classmethod
    def validate_shards(cls, v: int) -> int:
        if v < 1:
            raise ValueError("shards must be at least 1")
        return v


class ConsentConfig(BaseModel):
    """Privacy consent policy."""

    analytics_category: str = "analytics"
    redacted_user_agent: str = "redacted"


class DeadLetterConfig(BaseModel):
    """Dead-letter retention."""

    max_entries: int = 10000

    @field_validator("max_entries")
    @classmethod
    def validate_entries(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_entries must be at least 1")
        return v


class StorageConfig(BaseModel):
    """Handler storage."""

    db_path: str = "data/telemetry.db"
    busy_timeout_seconds: float = 5.0


class ObservabilityConfig(BaseModel):
    """Logging and metrics configuration."""

    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    metrics_enabled: bool = True
    metrics_port: int = 9090

    @field_validator("log_format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        if v not in ("json", "text"):
            raise ValueError("log_format must be 'json' or 'text'")
        return v


class EnvSettings(BaseSettings):
    """
    Overrides read from environment variables.

    Takes precedence over the YAML file.
    """

    model_config = SettingsConfigDict(env_prefix="TELEMETRY_BUS_", case_sensitive=False)

    config_path: str = ""
    log_level: str = ""
    log_format: str = ""
    metrics_port: int | None = None
    db_path: str = ""


class AppConfig(BaseModel):
    """Complete application configuration."""

    config_version: str = "1.0.0"
    environment: str = "local"

    bus: BusConfig = Field(default_factory=BusConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    idempotency: IdempotencyConfig = Field(default_factory=IdempotencyConfig)
    correlation: CorrelationConfig = Field(default_factory=CorrelationConfig)
    consent: ConsentConfig = Field(default_factory=ConsentConfig)
    dead_letter: DeadLetterConfig = Field(default_factory=DeadLetterConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    def diff_from_defaults(self) -> dict[str, Any]:
        """
        Dotted keys whose value differs from the built-in default.

        Logged at startup so operators can see what a deployment customizes.
        """
        return _flat_diff(self.model_dump(), AppConfig().model_dump())


def _flat_diff(current: dict, default: dict, prefix: str = "") -> dict[str, Any]:
    changed: dict[str, Any] = {}
    for key in sorted(current.keys() | default.keys()):
        dotted = f"{prefix}{key}"
        mine, theirs = current.get(key), default.get(key)
        if isinstance(mine, dict) and isinstance(theirs, dict):
            changed.update(_flat_diff(mine, theirs, f"{dotted}."))
        elif mine != theirs:
            changed[dotted] = {"current": mine, "default": theirs}
    return changed


def load_yaml_config(path: Path) -> dict[str, Any]:
    """Parse a YAML config file; an empty file is an empty config."""
    if not path.is_file():
        raise FileNotFoundError(f"Config file not found: {path}")
    return yaml.safe_load(path.read_text()) or {}


def deep_merge(base: dict, override: dict) -> dict:
    """Recursive merge; override wins, nested sections merge key by key."""
    merged = dict(base)
    for key, value in override.items():
        existing = merged.get(key)
        merged[key] = (
            deep_merge(existing, value)
            if isinstance(existing, dict) and isinstance(value, dict)
            else value
        )
    return merged


def env_overrides(env: EnvSettings) -> dict[str, Any]:
    """Translate environment settings into a config overlay."""
    overlay: dict[str, Any] = {}
    observability: dict[str, Any] = {}
    if env.log_level:
        observability["log_level"] = env.log_level.upper()
    if env.log_format:
        observability["log_format"] = env.log_format
    if env.metrics_port is not None:
        observability["metrics_port"] = env.metrics_port
    if observability:
        overlay["observability"] = observability
    if env.db_path:
        overlay["storage"] = {"db_path": env.db_path}
    return overlay


def load_config(
    config_path: str | Path | None = None,
    env: EnvSettings | None = None,
) -> AppConfig:
    """
    Load configuration from YAML file with environment overrides.

    Priority (highest to lowest):
    1. Environment variables (TELEMETRY_BUS_*)
    2. Specified config file (or TELEMETRY_BUS_CONFIG_PATH)
    3. Defaults
    """
    env = env or EnvSettings()
    config_dict: dict[str, Any] = {}

    path = config_path or env.config_path
    if path:
        config_dict = load_yaml_config(Path(path))

    config_dict = deep_merge(config_dict, env_overrides(env))
    return AppConfig(**config_dict)


# Global config instance (set by main.py)
_config: AppConfig | None = None


def get_config() -> AppConfig:
    """Get the global configuration."""
    if _config is None:
        raise RuntimeError("Configuration not loaded. Call init_config() first.")
    return _config


def init_config(config_path: str | Path | None = None) -> AppConfig:
    """Initialize global configuration."""
    global _config
    _config = load_config(config_path)
    return _config
