from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from studybuddy.logging import get_logger

logger = get_logger(__name__)

MIN_SECRET_LENGTH = 32


class Environment(str, Enum):
    """Deployment environments; production enables secure cookies and login alerts."""

    DEVELOPMENT = "development"
    PRODUCTION = "production"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the StudyBuddy API."""

    environment: Environment = env_field(Environment.DEVELOPMENT, "ENVIRONMENT")
    database_url: str = env_field(
        "postgresql://localhost:5432/studybuddy", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/studybuddy", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors such as runtime resets.",
    )
    build_sha: str = env_field("dev", "BUILD_SHA")

    # Signing secrets. JWT_SECRET is mandatory; the refresh secret falls back to it.
    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_refresh_secret: str | None = env_field(None, "JWT_REFRESH_SECRET")
    jwt_issuer: str = env_field("studybuddy", "JWT_ISSUER")
    jwt_audience: str = env_field("studybuddy-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES", ge=1)
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES", ge=1
    )
    email_verification_ttl_hours: int = env_field(
        24, "EMAIL_VERIFICATION_TTL_HOURS", ge=1
    )
    password_reset_ttl_minutes: int = env_field(15, "PASSWORD_RESET_TTL_MINUTES", ge=1)

    # argon2id work factor
    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST", ge=1)
    password_hash_memory_cost: int = env_field(
        64 * 1024,
        "PASSWORD_HASH_MEMORY_COST",
        ge=8,
        description="argon2 memory cost in KiB",
    )
    password_hash_parallelism: int = env_field(4, "PASSWORD_HASH_PARALLELISM", ge=1)

    require_email_verification: bool = env_field(True, "REQUIRE_EMAIL_VERIFICATION")
    login_alerts_enabled: bool | None = env_field(
        None,
        "LOGIN_ALERTS_ENABLED",
        description="Email a login alert when the sign-in IP changes; defaults to on in production",
    )
    refresh_cookie_secure: bool | None = env_field(
        None,
        "REFRESH_COOKIE_SECURE",
        description="Mark the refresh cookie Secure; defaults to on in production",
    )
    refresh_cookie_name: str = env_field("refresh_token", "REFRESH_COOKIE_NAME")

    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("StudyBuddy", "EMAIL_FROM_NAME")
    frontend_url: str = env_field("http://localhost:5173", "FRONTEND_URL")

    # Rate limits (requests per window, per client IP)
    auth_rate_limit: int = env_field(10, "AUTH_RATE_LIMIT")
    auth_rate_limit_window_seconds: int = env_field(15 * 60, "AUTH_RATE_LIMIT_WINDOW_SECONDS")
    forgot_password_rate_limit: int = env_field(5, "FORGOT_PASSWORD_RATE_LIMIT")
    forgot_password_rate_limit_window_seconds: int = env_field(
        15 * 60, "FORGOT_PASSWORD_RATE_LIMIT_WINDOW_SECONDS"
    )
    resend_verification_rate_limit: int = env_field(3, "RESEND_VERIFICATION_RATE_LIMIT")
    resend_verification_rate_limit_window_seconds: int = env_field(
        15 * 60, "RESEND_VERIFICATION_RATE_LIMIT_WINDOW_SECONDS"
    )
    delete_account_rate_limit: int = env_field(3, "DELETE_ACCOUNT_RATE_LIMIT")
    delete_account_rate_limit_window_seconds: int = env_field(
        60 * 60, "DELETE_ACCOUNT_RATE_LIMIT_WINDOW_SECONDS"
    )

    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("environment")
    @classmethod
    def _validate_environment(cls, value: Environment) -> Environment:
        return Environment(value)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _require_jwt_secret(cls, value: str | None) -> str:
        if not value:
            logger.error("jwt_secret_missing")
            raise ValueError("JWT_SECRET must be set before the service can start")
        if len(value) < MIN_SECRET_LENGTH:
            raise ValueError(
                f"JWT_SECRET must be at least {MIN_SECRET_LENGTH} characters"
            )
        return value

    @field_validator("jwt_refresh_secret")
    @classmethod
    def _check_refresh_secret(cls, value: str | None) -> str | None:
        if value and len(value) < MIN_SECRET_LENGTH:
            raise ValueError(
                f"JWT_REFRESH_SECRET must be at least {MIN_SECRET_LENGTH} characters"
            )
        return value or None

    @model_validator(mode="after")
    def _default_refresh_secret(self) -> "Settings":
        if not self.jwt_refresh_secret:
            self.jwt_refresh_secret = self.jwt_secret
        return self

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @property
    def secure_cookies(self) -> bool:
        if self.refresh_cookie_secure is not None:
            return self.refresh_cookie_secure
        return self.is_production

    @property
    def send_login_alerts(self) -> bool:
        if self.login_alerts_enabled is not None:
            return self.login_alerts_enabled
        return self.is_production


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
