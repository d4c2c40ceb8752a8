from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from sessionauth.logging import get_logger

logger = get_logger(__name__)


class RateLimitBackend(str, Enum):
    """Where login attempt counters live."""

    MEMORY = "memory"
    REDIS = "redis"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/sessionauth", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    shared_fs_root: str = env_field("/srv/sessionauth", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (runtime reset hooks).",
    )
    login_rate_limit_backend: RateLimitBackend = env_field(
        RateLimitBackend.MEMORY,
        "LOGIN_RATE_LIMIT_BACKEND",
        description="memory keeps counters per process; redis shares them across workers",
    )

    # Sessions
    session_lifetime_seconds: int = env_field(24 * 60 * 60, "SESSION_LIFETIME_SECONDS")
    session_token_bytes: int = env_field(64, "SESSION_TOKEN_BYTES")
    max_concurrent_sessions: int = env_field(
        0,
        "MAX_CONCURRENT_SESSIONS",
        description="Active sessions allowed per user; 0 means unlimited",
    )
    session_cleanup_interval_seconds: int = env_field(
        60 * 60, "SESSION_CLEANUP_INTERVAL_SECONDS"
    )
    session_refresh_threshold_seconds: int = env_field(
        60 * 60,
        "SESSION_REFRESH_THRESHOLD_SECONDS",
        description="Sessions expiring sooner than this are extended on use",
    )

    # Login rate limiting
    login_max_attempts: int = env_field(5, "LOGIN_MAX_ATTEMPTS")
    login_attempt_window_seconds: int = env_field(15 * 60, "LOGIN_ATTEMPT_WINDOW_SECONDS")
    login_lockout_seconds: int = env_field(30 * 60, "LOGIN_LOCKOUT_SECONDS")
    login_attempt_sweep_interval_seconds: int = env_field(
        5 * 60, "LOGIN_ATTEMPT_SWEEP_INTERVAL_SECONDS"
    )

    # Password reset and email verification tokens
    reset_token_bytes: int = env_field(32, "RESET_TOKEN_BYTES")
    reset_token_ttl_seconds: int = env_field(60 * 60, "RESET_TOKEN_TTL_SECONDS")
    verification_token_bytes: int = env_field(64, "VERIFICATION_TOKEN_BYTES")
    verification_token_ttl_hours: int = env_field(24, "VERIFICATION_TOKEN_TTL_HOURS")
    token_cleanup_interval_seconds: int = env_field(60 * 60, "TOKEN_CLEANUP_INTERVAL_SECONDS")
    skip_email_verification: bool = env_field(
        False,
        "SKIP_EMAIL_VERIFICATION",
        description="Mark new accounts verified at registration (development only)",
    )
    invalidate_sessions_on_password_change: bool = env_field(
        True, "INVALIDATE_SESSIONS_ON_PASSWORD_CHANGE"
    )

    # Password hashing cost (argon2id)
    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST")
    argon2_memory_cost: int = env_field(64 * 1024, "ARGON2_MEMORY_COST")
    argon2_parallelism: int = env_field(4, "ARGON2_PARALLELISM")

    # Email delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("SessionAuth", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

    # CORS
    cors_allow_origins: list[str] = env_field(
        ["http://localhost:3000", "http://localhost:5173", "http://localhost:8000"],
        "CORS_ALLOW_ORIGINS",
        description="Comma separated list of allowed origins",
    )
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")

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

    @field_validator("login_rate_limit_backend", mode="before")
    @classmethod
    def _validate_rate_limit_backend(cls, value: Any) -> RateLimitBackend:
        if isinstance(value, str):
            value = value.strip().lower()
        return RateLimitBackend(value)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator(
        "session_lifetime_seconds",
        "session_token_bytes",
        "login_max_attempts",
        "login_attempt_window_seconds",
        "login_lockout_seconds",
        "reset_token_bytes",
        "reset_token_ttl_seconds",
        "verification_token_bytes",
        "verification_token_ttl_hours",
        "session_cleanup_interval_seconds",
        "token_cleanup_interval_seconds",
        "login_attempt_sweep_interval_seconds",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("max_concurrent_sessions", "session_refresh_threshold_seconds")
    @classmethod
    def _require_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        if _settings_cache.skip_email_verification and not _settings_cache.test_mode:
            logger.warning("email_verification_disabled")
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
