"""Tests for application settings."""

import os
import tempfile

import pytest
from pydantic import ValidationError

from libs.common.settings import Settings, get_settings


class TestSettings:
    """Test settings configuration."""

    def test_defaults(self):
        """Test defaults for the gate, loop limits and failure handling."""
        settings = Settings(app_env="development")

        assert settings.max_clarification_attempts == 2
        assert settings.max_search_attempts == 2
        assert settings.max_failures == 3
        assert settings.backoff_base_ms == 1000
        assert settings.backoff_cap_ms == 30000
        assert settings.decision_stickiness_ttl_seconds == 120
        assert settings.web_fetch_concurrency == 3
        assert settings.gate_blocking_enabled is True
        assert settings.gate_strict_refusal is False
        assert settings.redis_url is None

    def test_settings_from_env_file(self):
        """Test settings read from a dotenv file with the env prefix."""
        env_vars = {
            "GROUNDGATE_REDIS_URL": "redis://localhost:6379/0",
            "GROUNDGATE_GATE_STRICT_REFUSAL": "true",
            "GROUNDGATE_CACHE_SIMILARITY_THRESHOLD": "0.9",
        }

        with tempfile.NamedTemporaryFile(mode="w", suffix=".env", delete=False) as f:
            for key, value in env_vars.items():
                f.write(f"{key}={value}\n")
            env_file = f.name

        try:
            settings = Settings(_env_file=env_file)
            assert settings.redis_url == "redis://localhost:6379/0"
            assert settings.gate_strict_refusal is True
            assert settings.cache_similarity_threshold == 0.9
        finally:
            os.unlink(env_file)

    def test_settings_from_environment(self, monkeypatch):
        monkeypatch.setenv("GROUNDGATE_MAX_FAILURES", "5")
        monkeypatch.setenv("GROUNDGATE_GATE_SHADOW_MODE", "1")

        settings = Settings()

        assert settings.max_failures == 5
        assert settings.gate_shadow_mode is True

    def test_backoff_cap_below_base_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            Settings(backoff_base_ms=2000, backoff_cap_ms=1000)
        assert "backoff_cap_ms must be >= backoff_base_ms" in str(exc_info.value)

    def test_similarity_threshold_bounds(self):
        with pytest.raises(ValidationError):
            Settings(cache_similarity_threshold=1.5)

    def test_settings_environment_properties(self):
        """Test environment detection properties."""
        assert Settings(app_env="test").is_test
        assert not Settings(app_env="test").is_production
        assert Settings(app_env="production").is_production

    def test_get_settings_is_cached(self):
        assert get_settings() is get_settings()
        assert get_settings().is_test
