from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from userhub.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the user service, read from env and ``.env``."""

    database_url: str = env_field(
        "postgresql://localhost:5432/userhub", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors (in-process cache fallback, no SMTP).",
    )

    # Tokens
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_refresh_secret: str | None = env_field(None, "JWT_REFRESH_SECRET")
    jwt_issuer: str = env_field("userhub", "JWT_ISSUER")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES", ge=1)
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS", ge=1)
    email_verification_token_bytes: int = env_field(
        32, "EMAIL_VERIFICATION_TOKEN_BYTES", ge=16
    )
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES", ge=1)

    # Cache
    profile_cache_ttl_seconds: int = env_field(3600, "PROFILE_CACHE_TTL_SECONDS", ge=1)
    directory_cache_ttl_seconds: int = env_field(300, "DIRECTORY_CACHE_TTL_SECONDS", ge=1)

    # Pagination & files
    default_page_size: int = env_field(10, "DEFAULT_PAGE_SIZE", ge=1)
    max_page_size: int = env_field(100, "MAX_PAGE_SIZE", ge=1)
    upload_dir: str = env_field("uploads", "UPLOAD_DIR")
    max_upload_bytes: int = env_field(5 * 1024 * 1024, "MAX_UPLOAD_BYTES", ge=1)

    # Rate limiting (per client IP, across /api)
    rate_limit_requests: int = env_field(
        100, "RATE_LIMIT_REQUESTS", ge=0, description="0 disables rate limiting"
    )
    rate_limit_window_seconds: int = env_field(900, "RATE_LIMIT_WINDOW_SECONDS", ge=1)

    # Email
    client_url: str = env_field("http://localhost:3000", "CLIENT_URL")
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("UserHub", "EMAIL_FROM_NAME")

    cors_allow_origins: list[str] | None = env_field(
        None,
        "CORS_ALLOW_ORIGINS",
        description="Comma-separated origins; defaults to CLIENT_URL",
    )

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

    @field_validator("redis_url", "smtp_host", "jwt_secret", "jwt_refresh_secret")
    @classmethod
    def _blank_as_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        return value or None

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @model_validator(mode="after")
    def _ensure_jwt_secrets(self) -> "Settings":
        if not self.jwt_secret:
            logger.warning(
                "jwt_secret_generated",
                message="JWT_SECRET not set; tokens will not survive a restart",
            )
            self.jwt_secret = secrets.token_urlsafe(64)
        if not self.jwt_refresh_secret:
            logger.warning(
                "jwt_refresh_secret_generated",
                message="JWT_REFRESH_SECRET not set; tokens will not survive a restart",
            )
            self.jwt_refresh_secret = secrets.token_urlsafe(64)
        if self.jwt_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_SECRET and JWT_REFRESH_SECRET must differ")
        return self

    @property
    def allowed_origins(self) -> list[str]:
        if self.cors_allow_origins:
            return self.cors_allow_origins
        return [self.client_url]


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
