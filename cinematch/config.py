from __future__ import annotations

import os
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from cinematch.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class SigningKeySet:
    """Immutable kid -> secret table handed to the token signer at start-up.

    ``current_kid`` signs new tokens; every kid in ``keys`` still verifies,
    which lets operators add a key, switch the current kid and retire the old
    one later without logging everybody out.
    """

    keys: Mapping[str, str] = field(default_factory=dict)
    current_kid: str = "v1"
    default_kid: str = "v1"

    def __post_init__(self) -> None:
        object.__setattr__(self, "keys", MappingProxyType(dict(self.keys)))

    def secret_for(self, kid: str) -> str | None:
        return self.keys.get(kid)

    @property
    def current_secret(self) -> str | None:
        return self.keys.get(self.current_kid)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the CineMatch account service."""

    environment: str = env_field(
        "development",
        "APP_ENV",
        description="'production' switches the refresh cookie to secure cross-site mode",
    )
    database_url: str = env_field(
        "postgresql://localhost:5432/cinematch", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    memory_store_path: str | None = env_field(
        None,
        "MEMORY_STORE_PATH",
        description="JSON file used to persist the in-memory store between restarts",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and runtime resets",
    )

    # Signing keys
    jwt_secret_v1: str | None = env_field(None, "JWT_SECRET_V1")
    jwt_secret_v2: str | None = env_field(None, "JWT_SECRET_V2")
    jwt_signing_keys: str | None = env_field(
        None,
        "JWT_SIGNING_KEYS",
        description="Additional keys as comma separated kid=secret pairs",
    )
    jwt_access_secret: str | None = env_field(
        None,
        "JWT_ACCESS_SECRET",
        description="Single-key deployments; registered as kid v1 when nothing else is set",
    )
    jwt_current_kid: str = env_field("v1", "JWT_CURRENT_KID")
    jwt_default_kid: str = env_field(
        "v1",
        "JWT_DEFAULT_KID",
        description="kid assumed for tokens minted before key versioning",
    )
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES")
    clock_skew_leeway_seconds: int = env_field(30, "CLOCK_SKEW_LEEWAY_SECONDS")

    # Refresh cookie
    refresh_cookie_name: str = env_field("rt", "REFRESH_COOKIE_NAME")
    refresh_cookie_path: str = env_field("/auth", "REFRESH_COOKIE_PATH")
    refresh_cookie_max_age_days: int = env_field(30, "REFRESH_COOKIE_MAX_AGE_DAYS")
    max_refresh_sessions: int = env_field(
        10,
        "MAX_REFRESH_SESSIONS",
        description="Oldest refresh tokens beyond this count are pruned on login",
    )

    # Brute-force protection
    email_rate_limit_points: int = env_field(5, "EMAIL_RATE_LIMIT_POINTS")
    email_rate_limit_duration_seconds: int = env_field(15 * 60, "EMAIL_RATE_LIMIT_DURATION_SECONDS")
    email_rate_limit_block_seconds: int = env_field(15 * 60, "EMAIL_RATE_LIMIT_BLOCK_SECONDS")
    ip_rate_limit_points: int = env_field(20, "IP_RATE_LIMIT_POINTS")
    ip_rate_limit_duration_seconds: int = env_field(15 * 60, "IP_RATE_LIMIT_DURATION_SECONDS")
    ip_rate_limit_block_seconds: int = env_field(15 * 60, "IP_RATE_LIMIT_BLOCK_SECONDS")
    mail_rate_limit_points: int = env_field(20, "MAIL_RATE_LIMIT_POINTS")
    mail_rate_limit_duration_seconds: int = env_field(15 * 60, "MAIL_RATE_LIMIT_DURATION_SECONDS")

    # One-time grants
    email_verification_ttl_hours: int = env_field(24, "EMAIL_VERIFICATION_TTL_HOURS")
    password_reset_ttl_minutes: int = env_field(30, "PASSWORD_RESET_TTL_MINUTES")

    # Argon2id cost for passwords and one-time secrets
    hash_time_cost: int = env_field(3, "HASH_TIME_COST")
    hash_memory_cost_kib: int = env_field(65536, "HASH_MEMORY_COST_KIB")
    hash_parallelism: int = env_field(4, "HASH_PARALLELISM")

    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool | None = env_field(
        None,
        "SMTP_USE_TLS",
        description="STARTTLS; defaults to on for every port except 465 (implicit TLS)",
    )
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("CineMatch", "EMAIL_FROM_NAME")

    client_origin: str = env_field("http://localhost:5173", "CLIENT_ORIGIN")
    server_origin: str = env_field("http://localhost:5050", "SERVER_ORIGIN")
    verify_email_path: str = env_field(
        "/api/auth/verify-email",
        "VERIFY_EMAIL_PATH",
        description="Public path of the verify endpoint behind SERVER_ORIGIN",
    )
    cors_allow_origins: list[str] | None = env_field(None, "CORS_ALLOW_ORIGINS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field_info in cls.model_fields.items():
            extra = field_info.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("environment")
    @classmethod
    def _normalize_environment(cls, value: str) -> str:
        return (value or "development").strip().lower()

    @field_validator("redis_url", "memory_store_path", "smtp_host", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("jwt_current_kid", "jwt_default_kid")
    @classmethod
    def _validate_kid(cls, value: str) -> str:
        value = (value or "").strip()
        if not value:
            raise ValueError("kid must not be empty")
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "email_rate_limit_points",
        "ip_rate_limit_points",
        "mail_rate_limit_points",
        "max_refresh_sessions",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def refresh_cookie_samesite(self) -> str:
        return "none" if self.is_production else "strict"

    @property
    def smtp_starttls(self) -> bool:
        if self.smtp_use_tls is not None:
            return self.smtp_use_tls
        return self.smtp_port != 465

    @property
    def allowed_origins(self) -> list[str]:
        return self.cors_allow_origins or [self.client_origin]

    def signing_key_set(self) -> SigningKeySet:
        keys: dict[str, str] = {}
        if self.jwt_secret_v1:
            keys["v1"] = self.jwt_secret_v1
        if self.jwt_secret_v2:
            keys["v2"] = self.jwt_secret_v2
        for entry in (self.jwt_signing_keys or "").split(","):
            kid, sep, secret = entry.strip().partition("=")
            if not sep:
                continue
            if kid.strip() and secret.strip():
                keys[kid.strip()] = secret.strip()
        if not keys and self.jwt_access_secret:
            keys["v1"] = self.jwt_access_secret
        if self.jwt_current_kid not in keys:
            logger.error(
                "signing_key_missing",
                current_kid=self.jwt_current_kid,
                known_kids=sorted(keys),
            )
        return SigningKeySet(
            keys=keys,
            current_kid=self.jwt_current_kid,
            default_kid=self.jwt_default_kid,
        )


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
