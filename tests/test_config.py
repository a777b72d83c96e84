import os
import stat

import pytest
from pydantic import ValidationError

from sessionguard.config import Settings, get_settings, reset_settings_cache


def test_from_env_reads_declared_variables(monkeypatch):
    monkeypatch.setenv("SMTP_HOST", "smtp.example.com")
    monkeypatch.setenv("SMTP_PORT", "2525")
    monkeypatch.setenv("RESET_TOKEN_TTL_MINUTES", "30")
    monkeypatch.setenv("REQUIRE_EMAIL_VERIFICATION", "false")

    settings = Settings.from_env()

    assert settings.smtp_host == "smtp.example.com"
    assert settings.smtp_port == 2525
    assert settings.reset_token_ttl_minutes == 30
    assert settings.require_email_verification is False


def test_blank_values_become_none(monkeypatch):
    monkeypatch.setenv("SMTP_HOST", "   ")
    monkeypatch.setenv("SMTP_PORT", "")

    settings = Settings.from_env()

    assert settings.smtp_host is None
    assert settings.smtp_port is None
    assert settings.redis_url is None


@pytest.mark.parametrize(
    "field", ["access_token_ttl_minutes", "reset_token_ttl_minutes", "verify_token_ttl_minutes"]
)
def test_token_lifetimes_must_be_positive(field):
    with pytest.raises(ValidationError):
        Settings(jwt_secret="x" * 40, **{field: 0})


def test_default_lifetimes():
    settings = Settings(jwt_secret="x" * 40)

    assert settings.reset_token_ttl_minutes == 15
    assert settings.verify_token_ttl_minutes == 48 * 60
    assert settings.refresh_token_ttl_minutes > settings.session_refresh_ttl_minutes


def test_missing_jwt_secret_is_generated_and_persisted(tmp_path, monkeypatch):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))

    first = Settings(jwt_secret=None)
    second = Settings(jwt_secret=None)

    assert first.jwt_secret == second.jwt_secret
    assert len(first.jwt_secret) >= 32
    secret_path = tmp_path / ".jwt_secret"
    if os.name == "posix":
        assert stat.S_IMODE(secret_path.stat().st_mode) == 0o600


def test_settings_cache_resets(monkeypatch):
    reset_settings_cache()
    first = get_settings()
    monkeypatch.setenv("RESET_TOKEN_TTL_MINUTES", "45")

    assert get_settings() is first
    reset_settings_cache()
    assert get_settings().reset_token_ttl_minutes == 45
