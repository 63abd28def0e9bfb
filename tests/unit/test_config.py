"""Tests for configuration loading."""

import pytest
from pathlib import Path

from telemetry_bus.infrastructure.config import (
    AppConfig,
    BusConfig,
    EnvSettings,
    IdempotencyConfig,
    ObservabilityConfig,
    RetryConfig,
    deep_merge,
    env_overrides,
    load_config,
    load_yaml_config,
)


class TestBusConfig:
    """Tests for BusConfig validation."""

    def test_defaults(self):
        config = BusConfig()
        assert config.batch_size == 50
        assert config.batch_timeout_seconds == 5.0
        assert config.default_priorities["ab_conversion"] == "high"
        assert config.default_priorities["heatmap_interaction"] == "low"

    def test_batch_size_must_be_positive(self):
        with pytest.raises(ValueError):
            BusConfig(batch_size=0)

    def test_timeouts_must_be_positive(self):
        with pytest.raises(ValueError):
            BusConfig(batch_timeout_seconds=0)
        with pytest.raises(ValueError):
            BusConfig(persist_timeout_seconds=-1)

    def test_unknown_priority_rejected(self):
        with pytest.raises(ValueError):
            BusConfig(default_priorities={"customer_activity": "urgent"})

    def test_backpressure_thresholds_bounded(self):
        with pytest.raises(ValueError):
            BusConfig(backpressure_warning_pct=1.5)


class TestRetryConfig:
    """Tests for RetryConfig validation."""

    def test_defaults_give_1_2_4_schedule(self):
        config = RetryConfig()
        assert config.max_retries == 3
        assert config.base_delay_seconds == 1.0

    def test_jitter_range(self):
        with pytest.raises(ValueError):
            RetryConfig(jitter=1.0)
        with pytest.raises(ValueError):
            RetryConfig(jitter=-0.1)
        assert RetryConfig(jitter=0).jitter == 0

    def test_negative_retries_rejected(self):
        with pytest.raises(ValueError):
            RetryConfig(max_retries=-1)


class TestOtherSections:

    def test_idempotency_ttl_positive(self):
        with pytest.raises(ValueError):
            IdempotencyConfig(ttl_seconds=0)
        assert IdempotencyConfig().ttl_seconds == 600

    def test_log_format(self):
        with pytest.raises(ValueError):
            ObservabilityConfig(log_format="xml")


class TestAppConfig:
    """Tests for complete AppConfig."""

    def test_default_config_is_valid(self):
        config = AppConfig()
        assert config.environment == "local"
        assert not config.is_production

    def test_diff_from_defaults(self):
        config = AppConfig(bus=BusConfig(batch_size=10))
        diff = config.diff_from_defaults()
        assert diff == {"bus.batch_size": {"current": 10, "default": 50}}


class TestDeepMerge:
    """Tests for deep_merge utility."""

    def test_nested_merge(self):
        base = {"a": {"x": 1, "y": 2}, "b": 3}
        override = {"a": {"y": 5}}
        result = deep_merge(base, override)

        assert result == {"a": {"x": 1, "y": 5}, "b": 3}
        assert base["a"]["y"] == 2


class TestLoading:

    def test_missing_file_raises(self, tmp_path: Path):
        with pytest.raises(FileNotFoundError):
            load_yaml_config(tmp_path / "missing.yaml")

    def test_empty_file_is_empty_dict(self, tmp_path: Path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert load_yaml_config(path) == {}

    def test_load_yaml_with_env_overrides(self, tmp_path: Path):
        path = tmp_path / "bus.yaml"
        path.write_text(
            "environment: staging\n"
            "bus:\n"
            "  batch_size: 25\n"
            "observability:\n"
            "  log_level: INFO\n"
        )
        env = EnvSettings(log_level="debug", db_path="/tmp/t.db")

        config = load_config(path, env=env)

        assert config.environment == "staging"
        assert config.bus.batch_size == 25
        assert config.bus.batch_timeout_seconds == 5.0
        assert config.observability.log_level == "DEBUG"
        assert config.storage.db_path == "/tmp/t.db"

    def test_env_settings_read_prefixed_variables(self, monkeypatch):
        monkeypatch.setenv("TELEMETRY_BUS_METRICS_PORT", "9191")
        monkeypatch.setenv("TELEMETRY_BUS_LOG_FORMAT", "text")

        overlay = env_overrides(EnvSettings())

        assert overlay["observability"] == {"metrics_port": 9191, "log_format": "text"}

    def test_shipped_default_config_loads(self):
        path = Path(__file__).resolve().parents[2] / "config" / "default.yaml"
        config = load_config(path, env=EnvSettings())
        assert config.bus.batch_size == 50
        assert config.retry.max_retries == 3
