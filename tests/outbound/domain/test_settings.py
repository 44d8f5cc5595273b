import pytest
from pydantic import ValidationError

from outbound.config import Settings, get_settings, reset_settings


class TestSettings:
    def test_defaults(self):
        settings = Settings()
        assert settings.max_per_minute == 15
        assert settings.min_delay_between_sends_ms == 3000
        assert settings.send_window_start == "08:00"
        assert settings.use_fake_senders is True

    def test_prefixed_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("OUTBOUND_MAX_PER_HOUR", "120")
        monkeypatch.setenv("OUTBOUND_RESPECT_SEND_WINDOW", "false")
        monkeypatch.setenv("OUTBOUND_USE_FAKE_SENDERS", "0")

        settings = Settings()

        assert settings.max_per_hour == 120
        assert settings.respect_send_window is False
        assert settings.use_fake_senders is False

    def test_unprefixed_variables_are_ignored(self, monkeypatch):
        monkeypatch.setenv("MAX_PER_MINUTE", "1")
        assert Settings().max_per_minute == 15

    def test_invalid_value_is_rejected(self, monkeypatch):
        monkeypatch.setenv("OUTBOUND_BATCH_SIZE", "0")
        with pytest.raises(ValidationError):
            Settings()

    def test_cached_until_reset(self, monkeypatch):
        before = get_settings()
        monkeypatch.setenv("OUTBOUND_COUNTRY_CODE", "1")

        assert get_settings() is before
        reset_settings()
        assert get_settings().country_code == "1"
