from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from gatehouse.logging import get_logger

logger = get_logger(__name__)

_SECRET_FIELDS = (
    "jwt_access_secret",
    "jwt_refresh_secret",
    "jwt_verify_email_secret",
    "jwt_reset_password_secret",
)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the credential and session core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/gatehouse", "DATABASE_URL"
    )
    redis_url: str | None = env_field(
        None,
        "REDIS_URL",
        description="When set, per-user locks are held in Redis instead of in-process",
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Relaxes cookie security and enables test-only behaviour",
    )

    # Signing secrets, one per token purpose
    jwt_access_secret: str | None = env_field(
        None, "JWT_ACCESS_SECRET", validate_default=True
    )
    jwt_refresh_secret: str | None = env_field(
        None, "JWT_REFRESH_SECRET", validate_default=True
    )
    jwt_verify_email_secret: str | None = env_field(
        None, "JWT_VERIFY_EMAIL_SECRET", validate_default=True
    )
    jwt_reset_password_secret: str | None = env_field(
        None, "JWT_RESET_PASSWORD_SECRET", validate_default=True
    )
    jwt_issuer: str = env_field("gatehouse", "JWT_ISSUER")
    jwt_audience: str = env_field("gatehouse-clients", "JWT_AUDIENCE")

    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES", ge=1)
    refresh_token_ttl_minutes: int = env_field(
        60 * 24 * 7, "REFRESH_TOKEN_TTL_MINUTES", ge=1
    )
    verify_email_token_ttl_minutes: int = env_field(
        60, "VERIFY_EMAIL_TOKEN_TTL_MINUTES", ge=1
    )
    reset_password_token_ttl_minutes: int = env_field(
        60, "RESET_PASSWORD_TOKEN_TTL_MINUTES", ge=1
    )

    # Argon2id cost profiles. Secrets (OTP, device, refresh and reset hashes)
    # use the costlier profile.
    password_hash_time_cost: int = env_field(2, "PASSWORD_HASH_TIME_COST", ge=1)
    password_hash_memory_kib: int = env_field(
        19456, "PASSWORD_HASH_MEMORY_KIB", ge=8
    )
    password_hash_parallelism: int = env_field(1, "PASSWORD_HASH_PARALLELISM", ge=1)
    secret_hash_time_cost: int = env_field(3, "SECRET_HASH_TIME_COST", ge=1)
    secret_hash_memory_kib: int = env_field(65536, "SECRET_HASH_MEMORY_KIB", ge=8)
    secret_hash_parallelism: int = env_field(1, "SECRET_HASH_PARALLELISM", ge=1)

    # Second factor
    otp_length: int = env_field(6, "OTP_LENGTH", ge=4, le=10)
    otp_ttl_minutes: int = env_field(5, "OTP_TTL_MINUTES", ge=1)
    otp_max_attempts: int = env_field(5, "OTP_MAX_ATTEMPTS", ge=1)
    otp_lock_on_final_failure: bool = env_field(
        False,
        "OTP_LOCK_ON_FINAL_FAILURE",
        description="Delete the code on the failure that reaches the attempt limit",
    )
    device_token_bytes: int = env_field(32, "DEVICE_TOKEN_BYTES", ge=16)
    trusted_device_ttl_days: int = env_field(30, "TRUSTED_DEVICE_TTL_DAYS", ge=1)
    second_factor_allowlist: list[str] = env_field(
        ["/2fa/send-code", "/2fa/verify-code", "/auth/logout"],
        "SECOND_FACTOR_ALLOWLIST",
        description="Comma-separated path prefixes exempt from the 2FA gate",
    )

    # Cookies
    refresh_cookie_name: str = env_field("refreshToken", "REFRESH_COOKIE_NAME")
    trusted_device_cookie_name: str = env_field(
        "trustedDevice", "TRUSTED_DEVICE_COOKIE_NAME"
    )
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")

    # Account lifecycle
    frontend_url: str = env_field("http://localhost:5173", "FRONTEND_URL")
    bootstrap_first_admin: bool = env_field(True, "BOOTSTRAP_FIRST_ADMIN")
    activity_log_retention_days: int = env_field(
        30, "ACTIVITY_LOG_RETENTION_DAYS", ge=1
    )
    activity_purge_interval_seconds: int = env_field(
        86400, "ACTIVITY_PURGE_INTERVAL_SECONDS", ge=60
    )

    # Collaborator bounds
    store_timeout_seconds: float = env_field(5.0, "STORE_TIMEOUT_SECONDS", gt=0)
    lock_timeout_seconds: float = env_field(10.0, "LOCK_TIMEOUT_SECONDS", gt=0)

    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Gatehouse", "EMAIL_FROM_NAME")
    company_name: str = env_field("Gatehouse", "COMPANY_NAME")
    support_email: str | None = env_field(None, "SUPPORT_EMAIL")
    template_dir: str | None = env_field(
        None,
        "TEMPLATE_DIR",
        description="Directory with email templates; defaults to the bundled ones",
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

    @field_validator("second_factor_allowlist", mode="before")
    @classmethod
    def _split_allowlist(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator(*_SECRET_FIELDS)
    @classmethod
    def _ensure_secret(cls, value: str | None, info) -> str:
        if value:
            if len(value) < 32:
                raise ValueError(f"{info.field_name} must be at least 32 characters")
            return value
        # Tokens signed with a generated secret do not survive a restart
        logger.warning("jwt_secret_generated", field=info.field_name)
        return secrets.token_urlsafe(64)

    @model_validator(mode="after")
    def _distinct_secrets(self) -> "Settings":
        values = [getattr(self, name) for name in _SECRET_FIELDS]
        if len(set(values)) != len(values):
            raise ValueError("each token purpose needs its own signing secret")
        return self


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
