"""Tests for configuration loading and validation."""

import pytest
from pydantic import ValidationError

from automation_engine.config import (
    AppConfig,
    LogLevel,
    get_production_config,
    get_testing_config,
    validate_config,
)


class TestAppConfig:
    """Test configuration settings."""

    def test_defaults(self):
        config = AppConfig()

        assert config.batch_size == 25
        assert config.lock_timeout_seconds == 300
        assert config.trigger_evaluation_url is None
        assert config.runner_secret is None
        assert config.trust_scheduler_header is True
        assert config.is_sqlite

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("AUTOMATION_ENGINE_BATCH_SIZE", "10")
        monkeypatch.setenv("AUTOMATION_ENGINE_LOCK_TIMEOUT_SECONDS", "120")
        monkeypatch.setenv("AUTOMATION_ENGINE_RUNNER_SECRET", "s3cret")
        monkeypatch.setenv("AUTOMATION_ENGINE_TRUST_SCHEDULER_HEADER", "false")
        monkeypatch.setenv("AUTOMATION_ENGINE_LOG_LEVEL", "debug")
        monkeypatch.setenv("AUTOMATION_ENGINE_CORS_ORIGINS", "https://a.example,https://b.example")
        monkeypatch.setenv("AUTOMATION_ENGINE_DATABASE_URL", "postgresql://crm@localhost/crm")

        config = AppConfig.from_env()

        assert config.batch_size == 10
        assert config.lock_timeout_seconds == 120
        assert config.runner_secret == "s3cret"
        assert config.trust_scheduler_header is False
        assert config.log_level == LogLevel.DEBUG
        assert config.cors_origins == ["https://a.example", "https://b.example"]
        assert not config.is_sqlite

    def test_blank_secrets_are_unset(self):
        config = AppConfig(runner_secret="  ", cron_secret="", trigger_evaluation_url=" ")

        assert config.runner_secret is None
        assert config.cron_secret is None
        assert config.trigger_evaluation_url is None

    @pytest.mark.parametrize("field", ["batch_size", "step_batch_size", "outbox_batch_size", "lock_timeout_seconds"])
    def test_non_positive_values_are_rejected(self, field):
        with pytest.raises(ValidationError):
            AppConfig(**{field: 0})

    def test_unsupported_database_is_rejected(self):
        with pytest.raises(ValidationError):
            AppConfig(database_url="mysql://localhost/crm")

    def test_invalid_port_is_rejected(self):
        with pytest.raises(ValidationError):
            AppConfig(port=70000)


class TestValidateConfig:
    """Test environment-dependent validation."""

    def test_production_requires_runner_secret(self, tmp_path):
        config = get_production_config()
        config.database_url = f"sqlite:///{tmp_path}/engine.db"

        with pytest.raises(ValueError, match="runner_secret"):
            validate_config(config)

        config.runner_secret = "s3cret"
        validate_config(config)

    def test_debug_allows_missing_secret(self, tmp_path):
        config = AppConfig(debug=True, database_url=f"sqlite:///{tmp_path}/engine.db")
        validate_config(config)

    def test_creates_database_directory(self, tmp_path):
        db_dir = tmp_path / "nested" / "dir"
        config = AppConfig(debug=True, database_url=f"sqlite:///{db_dir}/engine.db")

        validate_config(config)

        assert db_dir.exists()

    def test_testing_preset(self):
        config = get_testing_config()

        assert config.debug is True
        assert config.runner_secret
        validate_config(config)
