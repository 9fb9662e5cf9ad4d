from __future__ import annotations

import os
import secrets
from enum import Enum
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from storefront_auth.logging import get_logger

logger = get_logger(__name__)

MIN_PRODUCTION_SECRET_LENGTH = 32


class ConfigurationError(RuntimeError):
    """Raised when the process must not start with the given settings."""


class Environment(str, Enum):
    """Deployment profiles recognised by the service."""

    DEVELOPMENT = "development"
    TEST = "test"
    PRODUCTION = "production"


# argon2id cost parameters per profile: (memory KiB, iterations, parallelism)
ARGON_PROFILE_DEFAULTS: dict[Environment, tuple[int, int, int]] = {
    Environment.PRODUCTION: (131072, 4, 2),
    Environment.DEVELOPMENT: (65536, 3, 2),
    Environment.TEST: (16384, 2, 1),
}


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the credential and session service."""

    environment: Environment = env_field(Environment.DEVELOPMENT, "APP_ENV")
    database_url: str = env_field(
        "postgresql://localhost:5432/storefront", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")

    # Password hashing; None means "use the profile default"
    argon_memory_cost: int | None = env_field(
        None, "ARGON_MEMORY_COST", description="argon2id memory cost in KiB"
    )
    argon_time_cost: int | None = env_field(
        None, "ARGON_TIME_COST", description="argon2id iterations (>= 2)"
    )
    argon_parallelism: int | None = env_field(
        None, "ARGON_PARALLELISM", description="argon2id lanes"
    )

    # Access tokens
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("storefront-auth", "JWT_ISSUER")
    access_token_ttl_minutes: int = env_field(
        15,
        "ACCESS_TOKEN_TTL_MINUTES",
        description=(
            "Access tokens cannot be revoked; this value is the whole "
            "compromise window for a leaked bearer token"
        ),
    )

    # Refresh tokens
    refresh_token_pepper: str | None = env_field(None, "REFRESH_TOKEN_PEPPER")
    refresh_token_ttl_days: int = env_field(30, "REFRESH_TOKEN_TTL_DAYS")
    refresh_token_bytes: int = env_field(48, "REFRESH_TOKEN_BYTES")
    refresh_cookie_name: str = env_field("refreshToken", "REFRESH_COOKIE_NAME")
    refresh_cookie_max_age_seconds: int = env_field(
        60 * 60 * 24 * 30, "REFRESH_TOKEN_COOKIE_MAX_AGE"
    )
    refresh_cookie_path: str = env_field("/", "REFRESH_COOKIE_PATH")
    force_secure_cookies: bool = env_field(False, "FORCE_SECURE_COOKIES")
    prune_interval_seconds: int = env_field(3600, "PRUNE_INTERVAL_SECONDS")

    # Email verification / password reset links
    action_token_secret: str | None = env_field(None, "ACTION_TOKEN_SECRET")
    email_verify_ttl_hours: int = env_field(24, "EMAIL_VERIFY_TTL_HOURS")
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES")
    auto_verify_new_users: bool = env_field(False, "AUTO_VERIFY_NEW_USERS")
    frontend_url: str = env_field("http://localhost:5173", "FRONTEND_URL")

    # Email delivery (unset host means log-only delivery)
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Storefront", "EMAIL_FROM_NAME")
    security_alert_email: str | None = env_field(
        None, "ADMIN_EMAIL", description="Operator copy of refresh-token reuse alerts"
    )

    cors_allow_origins: str = env_field(
        "http://localhost:5173,http://localhost:3000", "CORS_ALLOW_ORIGINS"
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

    @field_validator("environment", mode="before")
    @classmethod
    def _normalize_environment(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("access_token_ttl_minutes", "refresh_token_ttl_days")
    @classmethod
    def _positive_lifetime(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("token lifetimes must be positive")
        return value

    @field_validator("argon_time_cost")
    @classmethod
    def _argon_time_cost_floor(cls, value: int | None) -> int | None:
        if value is not None and value < 2:
            raise ValueError("argon2 time cost must be at least 2")
        return value

    @model_validator(mode="after")
    def _resolve_profile(self) -> "Settings":
        memory, iterations, lanes = ARGON_PROFILE_DEFAULTS[self.environment]
        if self.argon_memory_cost is None:
            self.argon_memory_cost = memory
        if self.argon_time_cost is None:
            self.argon_time_cost = iterations
        if self.argon_parallelism is None:
            self.argon_parallelism = lanes

        self.jwt_secret = self._require_secret("jwt_secret", "JWT_SECRET")
        self.refresh_token_pepper = self._require_secret(
            "refresh_token_pepper", "REFRESH_TOKEN_PEPPER"
        )
        if not self.action_token_secret:
            self.action_token_secret = self.jwt_secret
        return self

    def _require_secret(self, name: str, env_name: str) -> str:
        value = getattr(self, name)
        if self.is_production:
            if not value:
                raise ConfigurationError(f"{env_name} is required in production")
            if len(value) < MIN_PRODUCTION_SECRET_LENGTH:
                raise ConfigurationError(
                    f"{env_name} must be at least {MIN_PRODUCTION_SECRET_LENGTH} characters"
                )
            return value
        if value:
            return value
        logger.warning(
            "insecure_default_secret",
            setting=env_name,
            environment=self.environment.value,
            message="generated a per-process secret; tokens will not survive a restart",
        )
        return secrets.token_urlsafe(48)

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @property
    def secure_cookies(self) -> bool:
        return self.force_secure_cookies or self.is_production

    @property
    def cors_origins_list(self) -> List[str]:
        return [origin.strip() for origin in self.cors_allow_origins.split(",") if origin.strip()]


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
