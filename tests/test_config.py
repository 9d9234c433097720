"""Tests for runtime settings."""

from signtrail.config import Settings


class TestSettings:
    def test_defaults(self, monkeypatch):
        for name in ("SIGNTRAIL_MAX_PIN_ATTEMPTS", "SIGNTRAIL_LOCKOUT_MINUTES"):
            monkeypatch.delenv(name, raising=False)
        settings = Settings()
        assert settings.max_pin_attempts == 3
        assert settings.lockout_minutes == 30
        assert settings.access_code_length == 6
        assert settings.refresh_lock_prefix == 20
        assert settings.refresh_grace_seconds == 5.0
        assert settings.refresh_stale_seconds == 30.0
        assert settings.access_cookie_name == "sb-access-token"
        assert settings.refresh_cookie_name == "sb-refresh-token"

    def test_env_override(self, monkeypatch, tmp_path):
        monkeypatch.setenv("SIGNTRAIL_LOCKOUT_MINUTES", "5")
        monkeypatch.setenv("SIGNTRAIL_DATA_DIR", str(tmp_path))
        settings = Settings()
        assert settings.lockout_minutes == 5
        assert settings.data_dir == tmp_path
