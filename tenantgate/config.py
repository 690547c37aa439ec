from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from tenantgate.logging import get_logger

logger = get_logger(__name__)


class AppEnv(str, Enum):
    """Deployment environments recognised by the service."""

    DEVELOPMENT = "development"
    TEST = "test"
    STAGING = "staging"
    PRODUCTION = "production"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings read from the process environment and ``.env``."""

    app_env: AppEnv = env_field(AppEnv.DEVELOPMENT, "APP_ENV")
    database_url: str = env_field(
        "postgresql://localhost:5432/tenantgate", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    memory_store_path: str | None = env_field(
        None,
        "MEMORY_STORE_PATH",
        description="JSON snapshot file for the in-memory store; unset keeps state in process only",
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(False, "TEST_MODE")

    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_refresh_secret: str | None = env_field(None, "JWT_REFRESH_SECRET")
    access_token_ttl_minutes: int = env_field(60, "ACCESS_TOKEN_TTL_MINUTES", ge=1)
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES", ge=1
    )
    jwt_leeway_seconds: int = env_field(0, "JWT_LEEWAY_SECONDS", ge=0)
    refresh_token_in_body: bool = env_field(
        True,
        "REFRESH_TOKEN_IN_BODY",
        description="Return the refresh token in login/refresh bodies in addition to the cookie",
    )

    password_time_cost: int = env_field(3, "PASSWORD_TIME_COST", ge=1)
    password_memory_cost: int = env_field(65536, "PASSWORD_MEMORY_COST", ge=8)
    password_parallelism: int = env_field(4, "PASSWORD_PARALLELISM", ge=1)

    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE", ge=1)
    register_rate_limit_per_minute: int = env_field(
        5, "REGISTER_RATE_LIMIT_PER_MINUTE", ge=1
    )

    stripe_secret_key: str | None = env_field(None, "STRIPE_SECRET_KEY")
    stripe_api_base: str = env_field("https://api.stripe.com/v1", "STRIPE_API_BASE")
    stripe_timeout_seconds: float = env_field(30.0, "STRIPE_TIMEOUT_SECONDS", gt=0)

    cors_allow_origins: str = env_field(
        "http://localhost:3000,http://127.0.0.1:3000", "CORS_ALLOW_ORIGINS"
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

    @field_validator("redis_url", "memory_store_path", "stripe_secret_key")
    @classmethod
    def _blank_is_none(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value.strip()

    @model_validator(mode="after")
    def _require_signing_secrets(self) -> "Settings":
        if not self.jwt_secret:
            raise ValueError("JWT_SECRET must be set")
        if not self.jwt_refresh_secret:
            raise ValueError("JWT_REFRESH_SECRET must be set")
        if self.jwt_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_REFRESH_SECRET must differ from JWT_SECRET")
        if self.app_env == AppEnv.PRODUCTION and len(self.jwt_secret) < 32:
            logger.warning("jwt_secret_short", length=len(self.jwt_secret))
        return self

    @property
    def is_production(self) -> bool:
        return self.app_env == AppEnv.PRODUCTION

    @property
    def cors_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_allow_origins.split(",") if o.strip()]


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
