from __future__ import annotations

import os
import secrets
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from authcore.logging import get_logger

logger = get_logger(__name__)


class Environment(str, Enum):
    """Deployment modes; only PRODUCTION enforces explicit secrets."""

    DEVELOPMENT = "development"
    TEST = "test"
    PRODUCTION = "production"


class RateLimitBackend(str, Enum):
    """Rate-limit store selection.

    - AUTO: Redis when scaled out (production or more than one worker), else memory
    - MEMORY: always the in-process store
    - REDIS: always try Redis first, falling back to memory if unreachable
    """

    AUTO = "auto"
    MEMORY = "memory"
    REDIS = "redis"


# Values shipped in sample configs; never acceptable as a production secret.
PLACEHOLDER_SECRETS = frozenset(
    {
        "your-secret-key-for-jwt-tokens",
        "default-secret-for-testing-please-change-in-prod",
        "changeme",
    }
)
MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication core."""

    environment: Environment = env_field(Environment.DEVELOPMENT, "APP_ENV")
    database_url: str | None = env_field(None, "DATABASE_URL")
    use_memory_store: bool | None = env_field(
        None,
        "USE_MEMORY_STORE",
        description="Defaults to true when DATABASE_URL is unset",
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    rate_limit_backend: RateLimitBackend = env_field(
        RateLimitBackend.AUTO, "RATE_LIMIT_BACKEND"
    )
    server_workers: int = env_field(
        1,
        "WEB_CONCURRENCY",
        description="Number of server processes sharing rate-limit state",
    )
    rate_limit_sweep_seconds: float = env_field(60.0, "RATE_LIMIT_SWEEP_SECONDS")

    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    pepper_secret: str | None = env_field(
        None,
        "PEPPER_SECRET",
        description="Password pepper; falls back to JWT_SECRET when unset",
    )
    jwt_issuer: str = env_field("authcore", "JWT_ISSUER")
    jwt_audience: str = env_field("authcore-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_days: int = env_field(30, "REFRESH_TOKEN_TTL_DAYS")

    max_login_attempts: int = env_field(5, "MAX_LOGIN_ATTEMPTS")
    lockout_minutes: int = env_field(15, "LOCKOUT_MINUTES")

    # Argon2id cost parameters (memory in KiB)
    hash_time_cost: int = env_field(2, "HASH_TIME_COST")
    hash_memory_cost_kib: int = env_field(19456, "HASH_MEMORY_COST_KIB")
    hash_parallelism: int = env_field(1, "HASH_PARALLELISM")

    login_rate_limit_max: int = env_field(5, "LOGIN_RATE_LIMIT_MAX")
    login_rate_limit_window_seconds: int = env_field(
        15 * 60, "LOGIN_RATE_LIMIT_WINDOW_SECONDS"
    )
    register_rate_limit_max: int = env_field(3, "REGISTER_RATE_LIMIT_MAX")
    register_rate_limit_window_seconds: int = env_field(
        60 * 60, "REGISTER_RATE_LIMIT_WINDOW_SECONDS"
    )
    general_rate_limit_max: int = env_field(100, "GENERAL_RATE_LIMIT_MAX")
    general_rate_limit_window_seconds: int = env_field(
        15 * 60, "GENERAL_RATE_LIMIT_WINDOW_SECONDS"
    )

    backup_dir: str = env_field(".", "BACKUP_DIR")

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

    @field_validator("rate_limit_backend")
    @classmethod
    def _validate_rate_limit_backend(cls, value: RateLimitBackend) -> RateLimitBackend:
        return RateLimitBackend(value)

    @field_validator("server_workers", "max_login_attempts", "hash_time_cost", "hash_parallelism")
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @property
    def memory_store_enabled(self) -> bool:
        if self.use_memory_store is not None:
            return self.use_memory_store
        return not self.database_url

    @model_validator(mode="after")
    def _resolve_secrets(self) -> "Settings":
        if self.is_production:
            _require_production_secret("JWT_SECRET", self.jwt_secret)
            if self.pepper_secret is not None:
                _require_production_secret("PEPPER_SECRET", self.pepper_secret)
        if not self.jwt_secret:
            # Ephemeral secrets are fine outside production; they need not survive restarts
            self.jwt_secret = secrets.token_urlsafe(48)
            logger.warning(
                "jwt_secret_ephemeral",
                environment=self.environment.value,
                message="JWT_SECRET not set; tokens will not survive a restart",
            )
        if not self.pepper_secret:
            self.pepper_secret = self.jwt_secret
        return self


def _require_production_secret(name: str, value: str | None) -> None:
    if not value:
        raise ValueError(f"{name} must be set when APP_ENV=production")
    if value in PLACEHOLDER_SECRETS:
        raise ValueError(f"{name} is a placeholder value; configure a real secret")
    if len(value) < MIN_SECRET_LENGTH:
        raise ValueError(f"{name} must be at least {MIN_SECRET_LENGTH} characters")


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
