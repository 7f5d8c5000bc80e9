"""Unit tests for the configuration module."""

import pytest
from pydantic import ValidationError

from flow_overview.config import Settings, get_settings


def _make_settings(**overrides) -> Settings:
    """Create a Settings instance isolated from any local .env file."""
    return Settings(_env_file=None, **overrides)


class TestDefaults:
    """Tests for default values."""

    def test_overview_defaults(self, monkeypatch):
        for var in (
            "OVERVIEW_DEFAULT_COOLDOWN_SECONDS",
            "OVERVIEW_POLL_INTERVAL_SECONDS",
            "OVERVIEW_MAX_ATTEMPTS",
            "LLM_DEFAULT_PROVIDER",
            "OLLAMA_MODEL",
        ):
            monkeypatch.delenv(var, raising=False)

        settings = _make_settings()

        assert settings.overview_default_cooldown_seconds == 900
        assert settings.overview_poll_interval_seconds == 60
        assert settings.overview_unique_window_seconds == 60
        assert settings.overview_max_attempts == 3
        assert settings.overview_change_limit == 100
        assert settings.overview_summary_limit == 10
        assert settings.overview_temperature == 0.7
        assert settings.llm_default_provider == "ollama"
        assert settings.ollama_model == "mistral:latest"
        assert settings.llm_timeout_seconds == 60.0
        assert settings.delivery_url is None

    def test_ollama_url(self):
        settings = _make_settings(ollama_host="localhost", ollama_port=11500)
        assert settings.ollama_url == "http://localhost:11500"

    def test_is_development(self):
        assert _make_settings(environment="Development").is_development is True
        assert _make_settings(environment="production").is_development is False

    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("OVERVIEW_DEFAULT_COOLDOWN_SECONDS", "1800")
        monkeypatch.setenv("GEMINI_API_KEY", "secret-key")

        settings = _make_settings()

        assert settings.overview_default_cooldown_seconds == 1800
        assert settings.gemini_api_key.get_secret_value() == "secret-key"
        assert "secret-key" not in repr(settings)


class TestValidation:
    """Tests for field validators."""

    def test_cooldown_below_minimum_rejected(self):
        with pytest.raises(ValidationError):
            _make_settings(overview_default_cooldown_seconds=59)

    def test_cooldown_at_minimum_accepted(self):
        settings = _make_settings(overview_default_cooldown_seconds=60)
        assert settings.overview_default_cooldown_seconds == 60

    def test_provider_is_normalised(self):
        assert _make_settings(llm_default_provider="GEMINI").llm_default_provider == "gemini"

    def test_unknown_provider_rejected(self):
        with pytest.raises(ValidationError):
            _make_settings(llm_default_provider="openai")

    @pytest.mark.parametrize(
        "field",
        [
            "overview_poll_interval_seconds",
            "overview_max_attempts",
            "overview_change_limit",
            "overview_summary_limit",
            "job_batch_size",
            "job_poll_interval_seconds",
        ],
    )
    def test_non_positive_rejected(self, field):
        with pytest.raises(ValidationError):
            _make_settings(**{field: 0})


class TestGetSettings:
    """Tests for the cached accessor."""

    def test_returns_cached_instance(self):
        assert get_settings() is get_settings()
