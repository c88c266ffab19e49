"""
Tests for configuration loading and validation.
"""

from pathlib import Path

import pytest
from pydantic import ValidationError
from scholarguard.config import Config, MonitorConfig, ScraperConfig, load_config, settings
from scholarguard.config.config import LazyConfig
from scholarguard.quality.scorer import ACCEPTANCE_THRESHOLD


@pytest.mark.unit
class TestDefaults:
    def test_defaults(self):
        config = Config()

        assert config.circuit_breaker.failure_threshold == 5
        assert config.circuit_breaker.cooldown_seconds == 600
        assert config.validator.max_redirects == 5
        assert config.validator.check_mobile is True
        assert config.quality.acceptance_threshold == ACCEPTANCE_THRESHOLD == 70
        assert config.storage.backend == "sqlite"
        assert config.monitor.sweep_cron == "0 2 * * *"
        assert config.monitor.repair_strategies == ["source_url"]
        assert config.scraper.domain_policies == {"gov.in": 8.0, "edu.in": 5.0, "ac.in": 5.0}
        assert config.monitor.report_file is not None

    def test_test_mode_comes_from_environment(self):
        # conftest sets SCHOLARGUARD_DEBUG__TEST_MODE
        assert Config().debug.test_mode is True

    def test_nested_environment_override(self, monkeypatch):
        monkeypatch.setenv("SCHOLARGUARD_CIRCUIT_BREAKER__FAILURE_THRESHOLD", "2")
        monkeypatch.setenv("SCHOLARGUARD_STORAGE__BACKEND", "memory")

        config = Config()

        assert config.circuit_breaker.failure_threshold == 2
        assert config.storage.backend == "memory"


@pytest.mark.unit
class TestYaml:
    def test_load_from_yaml(self, tmp_path):
        path = tmp_path / "scholarguard.yaml"
        path.write_text(
            "circuit_breaker:\n"
            "  failure_threshold: 3\n"
            "  state_file: null\n"
            "quality:\n"
            "  acceptance_threshold: 80\n"
            "monitor:\n"
            "  repair_strategies: [source_url, url_variations]\n",
            encoding="utf-8",
        )

        config = load_config(path)

        assert config.circuit_breaker.failure_threshold == 3
        assert config.circuit_breaker.state_file is None
        assert config.quality.acceptance_threshold == 80
        assert config.monitor.repair_strategies == ["source_url", "url_variations"]

    def test_empty_yaml_uses_defaults(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("", encoding="utf-8")

        assert load_config(path).scraper.max_concurrency == 8

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            Config.from_yaml(tmp_path / "nope.yaml")

    def test_discovered_in_working_directory(self, tmp_path, monkeypatch):
        (tmp_path / "scholarguard.yml").write_text("scraper:\n  max_concurrency: 2\n", encoding="utf-8")
        monkeypatch.chdir(tmp_path)

        assert load_config().scraper.max_concurrency == 2

    def test_no_file_gives_defaults(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)

        assert load_config().validator.timeout == 15.0


@pytest.mark.unit
class TestValidation:
    def test_delay_range(self):
        with pytest.raises(ValidationError):
            ScraperConfig(min_request_delay=5, max_request_delay=1)

    def test_negative_domain_policy(self):
        with pytest.raises(ValidationError):
            ScraperConfig(domain_policies={"gov.in": -2})

    def test_unknown_repair_strategy(self):
        with pytest.raises(ValidationError):
            MonitorConfig(repair_strategies=["wayback"])

    def test_empty_repair_strategies(self):
        with pytest.raises(ValidationError):
            MonitorConfig(repair_strategies=[])

    def test_threshold_bounds(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("quality:\n  acceptance_threshold: 150\n", encoding="utf-8")

        with pytest.raises(ValidationError):
            load_config(path)

    def test_log_file_parent_is_created(self, tmp_path):
        config = Config(monitoring={"log_file": str(tmp_path / "logs" / "app.log"), "audit_log_path": None})

        assert Path(config.monitoring.log_file).parent.is_dir()
        assert config.monitoring.audit_log_path is None


@pytest.mark.unit
class TestLazySettings:
    def test_settings_load_on_first_access(self, tmp_path, monkeypatch):
        (tmp_path / "config.yaml").write_text("storage:\n  pool_size: 3\n", encoding="utf-8")
        monkeypatch.chdir(tmp_path)
        monkeypatch.setattr(LazyConfig, "_config", None)

        assert settings.storage.pool_size == 3

    def test_invalid_file_falls_back_to_defaults(self, tmp_path, monkeypatch):
        (tmp_path / "config.yaml").write_text("storage:\n  pool_size: 0\n", encoding="utf-8")
        monkeypatch.chdir(tmp_path)
        monkeypatch.setattr(LazyConfig, "_config", None)

        assert settings.storage.pool_size == 5
