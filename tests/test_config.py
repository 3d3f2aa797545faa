"""
Configuration Tests
"""

import pytest

from integrity_system.core.config import (
    DevelopmentConfig,
    IntegrityConfig,
    ProductionConfig,
    TestConfig,
    get_config,
)


class TestConfigSelection:

    @pytest.mark.parametrize("env,expected", [
        ("development", DevelopmentConfig),
        ("production", ProductionConfig),
        ("test", TestConfig),
        ("unknown", DevelopmentConfig),
    ])
    def test_get_config(self, env, expected):
        assert get_config(env) is expected

    def test_env_variable_picks_config(self, monkeypatch):
        monkeypatch.setenv("INTEGRITY_ENV", "production")
        assert get_config() is ProductionConfig


class TestValidation:

    def test_defaults_are_valid(self):
        assert IntegrityConfig.validate_config() == []
        assert TestConfig.validate_config() == []

    def test_bad_values_reported(self):
        class BadConfig(TestConfig):
            CHECKPOINT_EVERY = 0
            WITNESS_MAX_ATTEMPTS = 0
            WITNESS_BASE_DELAY = 5.0
            WITNESS_MAX_DELAY = 1.0
            SERVICE_PORT = 80

        issues = BadConfig.validate_config()
        assert len(issues) == 4
        assert any("CHECKPOINT_EVERY" in issue for issue in issues)

    def test_negative_checkpoint_hours_reported(self):
        class BadConfig(TestConfig):
            CHECKPOINT_HOURS = -1.0

        assert BadConfig.validate_config() == ["CHECKPOINT_HOURS must be >= 0"]

    def test_witness_config(self):
        witness = TestConfig.get_witness_config()
        assert witness["url"] is None
        assert witness["base_delay"] == 0.0
        assert witness["max_attempts"] == TestConfig.WITNESS_MAX_ATTEMPTS
