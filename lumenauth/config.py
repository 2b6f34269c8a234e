from __future__ import annotations

import os
from enum import Enum
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from lumenauth.logging import get_logger

logger = get_logger(__name__)


class MfaType(str, Enum):
    """MFA channels a user can enroll in."""

    OTP = "otp"
    SMS = "sms"
    EMAIL = "email"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Identity provider settings.

    Every field can be overridden at runtime through the directory's system
    settings table; see ``Runtime.settings_snapshot``.
    """

    auth_server_url: str = env_field("http://localhost:8787", "AUTH_SERVER_URL")
    database_url: str = env_field(
        "postgresql://localhost:5432/lumenauth", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets and in-memory fallbacks for CI",
    )
    otp_secret_key: str | None = env_field(
        None,
        "OTP_SECRET_KEY",
        description="Key material used to encrypt OTP secrets at rest in Postgres",
    )

    # Token lifetimes (seconds)
    authorization_code_expires_in: int = env_field(300, "AUTHORIZATION_CODE_EXPIRES_IN")
    access_token_expires_in: int = env_field(1800, "ACCESS_TOKEN_EXPIRES_IN")
    id_token_expires_in: int = env_field(1800, "ID_TOKEN_EXPIRES_IN")
    refresh_token_expires_in: int = env_field(
        7 * 24 * 60 * 60, "REFRESH_TOKEN_EXPIRES_IN"
    )

    # Sign-in methods
    enable_sign_up: bool = env_field(True, "ENABLE_SIGN_UP")
    enable_password_sign_in: bool = env_field(True, "ENABLE_PASSWORD_SIGN_IN")
    enable_passkey_sign_in: bool = env_field(True, "ENABLE_PASSKEY_SIGN_IN")

    # MFA policy
    otp_mfa_is_required: bool = env_field(False, "OTP_MFA_IS_REQUIRED")
    sms_mfa_is_required: bool = env_field(False, "SMS_MFA_IS_REQUIRED")
    email_mfa_is_required: bool = env_field(False, "EMAIL_MFA_IS_REQUIRED")
    enforce_one_mfa_enrollment: List[MfaType] = env_field(
        [MfaType.OTP, MfaType.EMAIL],
        "ENFORCE_ONE_MFA_ENROLLMENT",
        description="Channels offered when a user must enroll in at least one MFA type; empty disables",
    )
    allow_email_mfa_as_backup: bool = env_field(True, "ALLOW_EMAIL_MFA_AS_BACKUP")
    otp_issuer: str = env_field("lumenauth", "OTP_ISSUER")
    sms_mfa_country_code: str = env_field("+1", "SMS_MFA_COUNTRY_CODE")

    # Consent
    enable_user_app_consent: bool = env_field(True, "ENABLE_USER_APP_CONSENT")

    # Abuse prevention, 0 disables a threshold
    account_lockout_threshold: int = env_field(5, "ACCOUNT_LOCKOUT_THRESHOLD")
    account_lockout_expires_in: int = env_field(86400, "ACCOUNT_LOCKOUT_EXPIRES_IN")
    sms_mfa_message_threshold: int = env_field(5, "SMS_MFA_MESSAGE_THRESHOLD")
    email_mfa_email_threshold: int = env_field(10, "EMAIL_MFA_EMAIL_THRESHOLD")
    mfa_counter_expires_in: int = env_field(1800, "MFA_COUNTER_EXPIRES_IN")

    # Social sign-in
    oauth_google_client_id: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_ID")
    oauth_google_client_secret: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_SECRET")
    oauth_github_client_id: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_ID")
    oauth_github_client_secret: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_SECRET")
    oauth_redirect_uri: str | None = env_field(None, "OAUTH_REDIRECT_URI")

    # Email delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("LumenAuth", "EMAIL_FROM_NAME")

    # SMS delivery (Twilio-compatible REST endpoint)
    sms_api_url: str | None = env_field(None, "SMS_API_URL")
    sms_account_id: str | None = env_field(None, "SMS_ACCOUNT_ID")
    sms_auth_token: str | None = env_field(None, "SMS_AUTH_TOKEN")
    sms_sender_number: str | None = env_field(None, "SMS_SENDER_NUMBER")

    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")

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

    @field_validator("enforce_one_mfa_enrollment", "cors_allow_origins", mode="before")
    @classmethod
    def _split_csv(cls, value: Any) -> Any:
        # env values arrive as "otp,email"
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator(
        "account_lockout_threshold",
        "sms_mfa_message_threshold",
        "email_mfa_email_threshold",
    )
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("thresholds must be >= 0")
        return value

    def with_overrides(self, overrides: dict[str, Any] | None) -> "Settings":
        """Return a validated copy with directory-stored overrides applied."""

        if not overrides:
            return self
        known = {key: value for key, value in overrides.items() if key in type(self).model_fields}
        unknown = sorted(set(overrides) - set(known))
        if unknown:
            logger.warning("system_settings_unknown_keys", keys=unknown)
        return self.__class__(**{**self.model_dump(), **known})


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
