from __future__ import annotations

import os
import secrets
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from claimgate.logging import get_logger

logger = get_logger(__name__)


class AppEnv(str, Enum):
    """Deployment environments recognised by the cookie and secret policies."""

    DEVELOPMENT = "development"
    PRODUCTION = "production"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth layer, read from the environment and ``.env``."""

    app_env: AppEnv = env_field(AppEnv.DEVELOPMENT, "APP_ENV")
    app_base_url: str = env_field("http://localhost:3000", "APP_BASE_URL")
    database_url: str = env_field(
        "postgresql://localhost:5432/claimgate", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic test behaviour: sync Redis client, generated secrets allowed.",
    )

    # Credential hashing
    password_pepper: str | None = env_field(None, "PASSWORD_PEPPER")
    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST", ge=1)
    argon2_memory_cost_kib: int = env_field(65536, "ARGON2_MEMORY_COST_KIB", ge=8)
    argon2_parallelism: int = env_field(4, "ARGON2_PARALLELISM", ge=1)
    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH", ge=1)

    # Claim tokens, temporary and credential sessions
    claim_token_ttl_hours: int = env_field(24, "CLAIM_TOKEN_TTL_HOURS", ge=1)
    claim_token_max_ttl_hours: int = env_field(
        24 * 7, "CLAIM_TOKEN_MAX_TTL_HOURS", ge=1
    )
    temp_session_ttl_minutes: int = env_field(60, "TEMP_SESSION_TTL_MINUTES", ge=1)
    credential_session_ttl_hours: int = env_field(
        24 * 7, "CREDENTIAL_SESSION_TTL_HOURS", ge=1
    )
    login_grant_ttl_seconds: int = env_field(120, "LOGIN_GRANT_TTL_SECONDS", ge=1)
    revoke_temp_sessions_on_claim: bool = env_field(
        True,
        "REVOKE_TEMP_SESSIONS_ON_CLAIM",
        description="Delete outstanding temporary sessions when an account is claimed.",
    )
    session_sweep_interval_seconds: int = env_field(
        900,
        "SESSION_SWEEP_INTERVAL_SECONDS",
        ge=0,
        description="Background deletion of expired sessions; 0 disables the sweep.",
    )
    allow_registration: bool = env_field(True, "ALLOW_REGISTRATION")

    # Service-to-service trust domain
    service_jwt_secret: str | None = env_field(None, "SERVICE_JWT_SECRET")
    service_token_audience: str = env_field("client-portal", "SERVICE_TOKEN_AUDIENCE")
    service_token_default_ttl: str = env_field("1h", "SERVICE_TOKEN_DEFAULT_TTL")
    service_token_max_ttl_hours: int = env_field(24, "SERVICE_TOKEN_MAX_TTL_HOURS", ge=1)
    service_client_encryption_key: str | None = env_field(
        None, "SERVICE_CLIENT_ENCRYPTION_KEY"
    )
    enhanced_auth_window_seconds: int = env_field(
        300, "ENHANCED_AUTH_WINDOW_SECONDS", ge=1
    )
    enforce_nonce_uniqueness: bool = env_field(True, "ENFORCE_NONCE_UNIQUENESS")
    main_app_client_secret: str | None = env_field(None, "MAIN_APP_SERVICE_SECRET")

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

    @field_validator("app_env", mode="before")
    @classmethod
    def _normalize_env(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("service_token_default_ttl")
    @classmethod
    def _validate_default_ttl(cls, value: str) -> str:
        # Local import: the service package imports this module.
        from claimgate.service.service_tokens import parse_expires_in

        parse_expires_in(value)
        return value

    @model_validator(mode="after")
    def _ensure_secrets(self) -> "Settings":
        for name in ("password_pepper", "service_jwt_secret"):
            if getattr(self, name):
                continue
            if self.is_production and not self.test_mode:
                raise ValueError(
                    f"{name.upper()} must be set when APP_ENV=production"
                )
            logger.warning(
                "generated_ephemeral_secret",
                setting=name,
                message="secret is regenerated on every restart; set it explicitly",
            )
            setattr(self, name, secrets.token_urlsafe(48))
        return self

    @property
    def is_production(self) -> bool:
        return self.app_env == AppEnv.PRODUCTION

    @property
    def cookie_secure(self) -> bool:
        return self.is_production

    def claim_url(self, token: str) -> str:
        return f"{self.app_base_url.rstrip('/')}/auth/claim?token={token}"


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
