import pytest
from pydantic import ValidationError

from tools.config import DEFAULT_WEBHOOK_URL, ENV_KEYS, ResearchSettings, build_settings, load_settings
from tools.errors import InvalidConfigError


@pytest.fixture
def clean_env(monkeypatch):
    for key in ENV_KEYS.values():
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setattr("tools.config.load_dotenv", lambda: False)
    return monkeypatch


class TestResearchSettings:
    """Test dispatch settings and their bounds."""

    def test_defaults(self):
        """Test the default dispatch behaviour."""
        settings = ResearchSettings()

        assert settings.webhook_url == DEFAULT_WEBHOOK_URL
        assert settings.webhook_timeout_seconds == 1800
        assert settings.max_retries == 1
        assert settings.retry_delay_seconds == 30
        assert settings.batch_size == 10
        assert settings.inter_batch_delay_seconds == 2.0
        assert settings.stale_processing_seconds is None

    def test_settings_are_immutable(self):
        """Test a settings value cannot be changed in place."""
        settings = ResearchSettings()

        with pytest.raises(ValidationError):
            settings.batch_size = 50

    def test_bounds(self):
        """Test out-of-range values are rejected."""
        for values in (
            {"webhook_timeout_seconds": 29},
            {"webhook_timeout_seconds": 1801},
            {"max_retries": -1},
            {"max_retries": 11},
            {"retry_delay_seconds": 0},
            {"retry_delay_seconds": 61},
            {"batch_size": 0},
            {"batch_size": 101},
            {"inter_batch_delay_seconds": -1},
            {"webhook_url": "localhost:5678/webhook"},
            {"unknown_setting": 1},
        ):
            with pytest.raises(InvalidConfigError):
                build_settings(values)

    def test_with_overrides(self):
        """Test overrides produce a validated copy."""
        settings = ResearchSettings()
        updated = settings.with_overrides(max_retries=3, batch_size=25)

        assert updated.max_retries == 3
        assert updated.batch_size == 25
        assert settings.max_retries == 1

        with pytest.raises(InvalidConfigError, match="batch_size"):
            settings.with_overrides(batch_size=0)


class TestLoadSettings:
    """Test reading settings from the environment."""

    def test_load_from_environment(self, clean_env):
        """Test environment variables override defaults."""
        clean_env.setenv("RESEARCH_WEBHOOK_URL", "https://n8n.internal/webhook/research")
        clean_env.setenv("MAX_RETRIES", "3")
        clean_env.setenv("BATCH_SIZE", " 25 ")
        clean_env.setenv("STALE_PROCESSING_SECONDS", "7200")
        clean_env.setenv("RETRY_DELAY_SECONDS", "")

        settings = load_settings()

        assert settings.webhook_url == "https://n8n.internal/webhook/research"
        assert settings.max_retries == 3
        assert settings.batch_size == 25
        assert settings.stale_processing_seconds == 7200
        assert settings.retry_delay_seconds == 30

    def test_invalid_environment(self, clean_env):
        """Test a bad environment value is a configuration error."""
        clean_env.setenv("WEBHOOK_TIMEOUT_SECONDS", "forever")

        with pytest.raises(InvalidConfigError):
            load_settings()
