from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from stepguard.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the step-up authentication service."""

    # One-time passcodes
    otp_ttl_minutes: int = env_field(
        10,
        "OTP_TTL_MINUTES",
        description="Lifetime of a verification session; fixed at creation",
    )
    otp_max_attempts: int = env_field(5, "OTP_MAX_ATTEMPTS")
    otp_resend_cooldown_seconds: int = env_field(
        60,
        "OTP_RESEND_COOLDOWN_SECONDS",
        description="Minimum gap between deliveries on one channel, capped at session expiry",
    )
    otp_hash_secret: str | None = env_field(None, "OTP_HASH_SECRET")

    # Login lockout
    login_lockout_threshold: int = env_field(5, "LOGIN_LOCKOUT_THRESHOLD")
    login_lockout_window_minutes: int = env_field(15, "LOGIN_LOCKOUT_WINDOW_MINUTES")
    login_lockout_minutes: int = env_field(15, "LOGIN_LOCKOUT_MINUTES")

    # Delivery
    delivery_timeout_seconds: float = env_field(10.0, "DELIVERY_TIMEOUT_SECONDS")
    delivery_max_retries: int = env_field(
        1,
        "DELIVERY_MAX_RETRIES",
        description="Internal retries after a ChannelUnavailable delivery; never more than one",
    )

    # Tokens
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("stepguard", "JWT_ISSUER")
    jwt_audience: str = env_field("stepguard-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(24 * 60, "REFRESH_TOKEN_TTL_MINUTES")
    default_scopes: list[str] = env_field(["profile"], "DEFAULT_SCOPES")

    # SMTP / email transport
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("StepGuard", "EMAIL_FROM_NAME")

    # WhatsApp Cloud API messaging transport
    whatsapp_api_base_url: str = env_field(
        "https://graph.facebook.com/v19.0", "WHATSAPP_API_BASE_URL"
    )
    whatsapp_phone_number_id: str | None = env_field(None, "WHATSAPP_PHONE_NUMBER_ID")
    whatsapp_access_token: str | None = env_field(None, "WHATSAPP_ACCESS_TOKEN")

    # Federation
    oauth_google_client_id: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_ID")
    oauth_google_client_secret: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_SECRET")
    oauth_redirect_uri: str | None = env_field(None, "OAUTH_REDIRECT_URI")

    # Infrastructure
    redis_url: str | None = env_field(None, "REDIS_URL")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; transports log instead of sending",
    )
    audit_queue_size: int = env_field(1000, "AUDIT_QUEUE_SIZE")
    security_alert_email: str | None = env_field(None, "SECURITY_ALERT_EMAIL")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

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

    @field_validator(
        "otp_ttl_minutes",
        "otp_max_attempts",
        "login_lockout_threshold",
        "login_lockout_window_minutes",
        "login_lockout_minutes",
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "audit_queue_size",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("otp_resend_cooldown_seconds")
    @classmethod
    def _validate_cooldown(cls, value: int) -> int:
        if value < 0:
            raise ValueError("cooldown cannot be negative")
        return value

    @field_validator("delivery_max_retries")
    @classmethod
    def _clamp_retries(cls, value: int) -> int:
        if value > 1:
            logger.warning("delivery_retries_clamped", requested=value, applied=1)
            return 1
        return max(0, value)

    @field_validator("delivery_timeout_seconds")
    @classmethod
    def _validate_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("delivery timeout must be positive")
        return value

    @field_validator("default_scopes", "cors_allow_origins", mode="before")
    @classmethod
    def _split_csv(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("jwt_secret", "otp_hash_secret", "redis_url", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value


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
