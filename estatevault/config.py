from __future__ import annotations

import contextlib
import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from estatevault.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth core, read from the environment and `.env`."""

    database_url: str = env_field(
        "postgresql://localhost:5432/estatevault", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/estatevault", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (runtime reset, relaxed cache requirements).",
    )

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("estatevault", "JWT_ISSUER")
    jwt_audience: str = env_field("estatevault-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(30, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES")
    remember_me_refresh_ttl_minutes: int = env_field(
        90 * 24 * 60,
        "REMEMBER_ME_REFRESH_TTL_MINUTES",
        description="Refresh token TTL when the client asks to be remembered",
    )

    # Brute-force protection
    max_failed_logins: int = env_field(5, "MAX_FAILED_LOGINS")
    lockout_minutes: int = env_field(30, "LOCKOUT_MINUTES")
    password_history_depth: int = env_field(5, "PASSWORD_HISTORY_DEPTH")

    # Two-factor
    two_factor_code_ttl_minutes: int = env_field(10, "TWO_FACTOR_CODE_TTL_MINUTES")
    two_factor_max_attempts: int = env_field(5, "TWO_FACTOR_MAX_ATTEMPTS")
    two_factor_lockout_minutes: int = env_field(15, "TWO_FACTOR_LOCKOUT_MINUTES")
    totp_window: int = env_field(
        2, "TOTP_WINDOW", description="Accepted drift in 30 second steps either side of now"
    )
    backup_code_count: int = env_field(10, "BACKUP_CODE_COUNT")
    two_factor_issuer: str = env_field("EstateVault", "TWO_FACTOR_ISSUER")
    two_factor_encryption_key: str | None = env_field(
        None,
        "TWO_FACTOR_ENCRYPTION_KEY",
        description="Key material for encrypting 2FA secrets at rest; defaults to JWT_SECRET",
    )

    # Purpose tokens
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES")
    password_reset_cooldown_seconds: int = env_field(300, "PASSWORD_RESET_COOLDOWN_SECONDS")
    email_verification_ttl_hours: int = env_field(24, "EMAIL_VERIFICATION_TTL_HOURS")
    require_email_verification: bool = env_field(
        True,
        "REQUIRE_EMAIL_VERIFICATION",
        description="Reject logins for accounts that have not confirmed their email",
    )

    # Retention
    blacklist_grace_hours: int = env_field(24, "BLACKLIST_GRACE_HOURS")
    audit_retention_days: int = env_field(7 * 365, "AUDIT_RETENTION_DAYS")

    # Suspicious activity heuristics
    suspicious_window_hours: int = env_field(24, "SUSPICIOUS_WINDOW_HOURS")
    suspicious_max_ips: int = env_field(3, "SUSPICIOUS_MAX_IPS")
    suspicious_max_countries: int = env_field(1, "SUSPICIOUS_MAX_COUNTRIES")
    suspicious_max_logins: int = env_field(10, "SUSPICIOUS_MAX_LOGINS")
    suspicious_ip_failure_threshold: int = env_field(10, "SUSPICIOUS_IP_FAILURE_THRESHOLD")

    # Background jobs
    enable_background_jobs: bool = env_field(True, "ENABLE_BACKGROUND_JOBS")
    token_cleanup_interval_seconds: int = env_field(3600, "TOKEN_CLEANUP_INTERVAL_SECONDS")
    suspicious_scan_interval_seconds: int = env_field(
        1800, "SUSPICIOUS_SCAN_INTERVAL_SECONDS"
    )

    # Rate limits (per minute)
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    signup_rate_limit_per_minute: int = env_field(5, "SIGNUP_RATE_LIMIT_PER_MINUTE")
    reset_rate_limit_per_minute: int = env_field(5, "RESET_RATE_LIMIT_PER_MINUTE")
    two_factor_rate_limit_per_minute: int = env_field(
        10, "TWO_FACTOR_RATE_LIMIT_PER_MINUTE"
    )

    # Delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("EstateVault", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    sms_api_url: str | None = env_field(None, "SMS_API_URL")
    sms_api_key: str | None = env_field(None, "SMS_API_KEY")
    sms_sender_id: str = env_field("EstateVault", "SMS_SENDER_ID")
    admin_alert_emails: str = env_field(
        "", "ADMIN_ALERT_EMAILS", description="Comma separated list of admin inboxes"
    )
    delivery_timeout_seconds: float = env_field(10.0, "DELIVERY_TIMEOUT_SECONDS")

    cors_allow_origins: str = env_field("", "CORS_ALLOW_ORIGINS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        """Process environment first, then `.env`, then field defaults."""
        dotenv = dotenv_values(".env")
        values: dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            env_name = (field.json_schema_extra or {}).get("env", name.upper())
            raw = os.environ.get(env_name, dotenv.get(env_name))
            if raw is not None:
                values[name] = raw
        return cls(**values)

    @property
    def admin_alert_recipients(self) -> list[str]:
        return _split_csv(self.admin_alert_emails)

    @property
    def cors_origins(self) -> list[str]:
        return _split_csv(self.cors_allow_origins)

    @field_validator("redis_url")
    @classmethod
    def _blank_redis_url(cls, value: str | None) -> str | None:
        return value or None

    @field_validator(
        "max_failed_logins",
        "lockout_minutes",
        "password_history_depth",
        "two_factor_max_attempts",
        "backup_code_count",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        return _persisted_secret(Path(os.getenv("SHARED_FS_ROOT", "/srv/estatevault")))


def _split_csv(raw: str) -> list[str]:
    return [item.strip() for item in raw.split(",") if item.strip()]


_MIN_SECRET_LENGTH = 32


def _persisted_secret(fs_root: Path) -> str:
    """Reuse ``<fs_root>/.jwt_secret`` or write a fresh one atomically.

    Issued tokens must survive restarts, so a generated secret is never
    kept in memory only.
    """
    secret_path = fs_root / ".jwt_secret"
    if secret_path.is_file() and not secret_path.is_symlink():
        try:
            existing = secret_path.read_text().strip()
        except OSError as exc:
            logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))
        else:
            if len(existing) >= _MIN_SECRET_LENGTH:
                return existing

    secret = secrets.token_urlsafe(64)
    tmp_name: str | None = None
    try:
        fs_root.mkdir(mode=0o700, parents=True, exist_ok=True)
        # mkstemp creates the file 0600
        fd, tmp_name = tempfile.mkstemp(dir=fs_root, prefix=".jwt_secret_", suffix=".tmp")
        with os.fdopen(fd, "w") as handle:
            handle.write(secret)
        os.replace(tmp_name, secret_path)
    except OSError as exc:
        logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
        if tmp_name:
            with contextlib.suppress(FileNotFoundError):
                os.unlink(tmp_name)
        raise RuntimeError(
            "Unable to persist JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
        ) from exc
    logger.info("jwt_secret_generated", path=str(secret_path))
    return secret


_settings_cache: Settings | None = None


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""
    global _settings_cache
    _settings_cache = None
