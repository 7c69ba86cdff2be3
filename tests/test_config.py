import pytest
from pydantic import ValidationError

import config
from config import (
    DevelopmentSettings,
    ProductionSettings,
    Settings,
    get_settings_for_environment,
)


class TestSettings:
    """Test configuration loading."""

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("WORKER_COUNT", raising=False)
        monkeypatch.delenv("CHANNEL_CAPACITY", raising=False)

        settings = Settings(_env_file=None)

        assert settings.worker_count == 1
        assert settings.channel_capacity == 100_000
        assert settings.log_format == "json"

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("WORKER_COUNT", "6")
        monkeypatch.setenv("channel_capacity", "32")

        settings = Settings(_env_file=None)

        assert settings.worker_count == 6
        assert settings.channel_capacity == 32

    @pytest.mark.parametrize("field", ["worker_count", "channel_capacity"])
    def test_pipeline_tuning_must_be_positive(self, field):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, **{field: 0})

    @pytest.mark.parametrize("env, expected", [
        ("development", DevelopmentSettings),
        ("PRODUCTION", ProductionSettings),
        ("testing", config.TestingSettings),
        ("unknown", Settings),
    ])
    def test_settings_for_environment(self, env, expected):
        assert type(get_settings_for_environment(env)) is expected

    def test_production_runs_several_workers(self):
        assert ProductionSettings(_env_file=None).worker_count > 1
