import pytest
from pydantic import ValidationError

from studybuddy.config import Environment, Settings, get_settings, reset_settings_cache

SECRET = "s" * 40


def test_jwt_secret_is_required(monkeypatch, tmp_path):
    # restored before the runtime reset at teardown, which needs a secret
    with monkeypatch.context() as mp:
        mp.chdir(tmp_path)
        mp.delenv("JWT_SECRET", raising=False)
        with pytest.raises(ValidationError):
            Settings.from_env()

    assert get_settings().jwt_secret


def test_short_jwt_secret_rejected():
    with pytest.raises(ValidationError):
        Settings(jwt_secret="too-short")


def test_refresh_secret_falls_back_to_access_secret():
    settings = Settings(jwt_secret=SECRET)
    assert settings.jwt_refresh_secret == SECRET


def test_short_refresh_secret_rejected():
    with pytest.raises(ValidationError):
        Settings(jwt_secret=SECRET, jwt_refresh_secret="short")


def test_from_env_reads_aliased_variables(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("JWT_SECRET", SECRET)
    monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "5")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example")
    monkeypatch.setenv("ENVIRONMENT", "production")

    settings = Settings.from_env()

    assert settings.access_token_ttl_minutes == 5
    assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]
    assert settings.environment == Environment.PRODUCTION


def test_from_env_reads_dotenv_file(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("JWT_SECRET", raising=False)
    monkeypatch.delenv("JWT_ISSUER", raising=False)
    (tmp_path / ".env").write_text(f"JWT_SECRET={SECRET}\nJWT_ISSUER=dotenv-issuer\n")

    settings = Settings.from_env()

    assert settings.jwt_secret == SECRET
    assert settings.jwt_issuer == "dotenv-issuer"


def test_production_defaults_harden_cookies_and_alerts():
    dev = Settings(jwt_secret=SECRET)
    prod = Settings(jwt_secret=SECRET, environment="production")

    assert dev.secure_cookies is False
    assert dev.send_login_alerts is False
    assert prod.secure_cookies is True
    assert prod.send_login_alerts is True


def test_explicit_cookie_and_alert_flags_win():
    prod = Settings(
        jwt_secret=SECRET,
        environment="production",
        refresh_cookie_secure=False,
        login_alerts_enabled=False,
    )
    assert prod.secure_cookies is False
    assert prod.send_login_alerts is False


def test_settings_cache_resets(monkeypatch):
    first = get_settings()
    monkeypatch.setenv("JWT_ISSUER", "another-issuer")
    assert get_settings() is first

    reset_settings_cache()
    assert get_settings().jwt_issuer == "another-issuer"
