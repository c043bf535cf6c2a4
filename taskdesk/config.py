from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from taskdesk.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the credential and session service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/taskdesk", "DATABASE_URL"
    )
    redis_url: str | None = env_field(
        None,
        "REDIS_URL",
        description="Optional; rate limits fall back to in-process buckets when unset",
    )
    shared_fs_root: str = env_field("/srv/taskdesk", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors: dev email transport, runtime reset",
    )
    # Token issuance
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("taskdesk", "JWT_ISSUER")
    jwt_audience: str = env_field("taskdesk-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        15, "ACCESS_TOKEN_TTL_MINUTES", ge=1
    )
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS", ge=1)
    refresh_token_bytes: int = env_field(
        64,
        "REFRESH_TOKEN_BYTES",
        ge=32,
        description="Random bytes per refresh token before hex encoding",
    )
    refresh_token_retention_days: int = env_field(
        30,
        "REFRESH_TOKEN_RETENTION_DAYS",
        ge=0,
        description="Days an expired refresh token row is kept before the sweep deletes it",
    )
    # One-time codes
    otp_ttl_minutes: int = env_field(10, "OTP_TTL_MINUTES", ge=1)
    otp_hash_time_cost: int = env_field(3, "OTP_HASH_TIME_COST", ge=1)
    otp_hash_memory_cost: int = env_field(
        65536, "OTP_HASH_MEMORY_COST", ge=8, description="Argon2 memory cost in KiB"
    )
    otp_hash_parallelism: int = env_field(4, "OTP_HASH_PARALLELISM", ge=1)
    # Email delivery
    brevo_api_key: str | None = env_field(None, "BREVO_API_KEY")
    brevo_api_url: str = env_field(
        "https://api.brevo.com/v3/smtp/email", "BREVO_API_URL"
    )
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Task Management System", "EMAIL_FROM_NAME")
    email_timeout_seconds: float = env_field(10.0, "EMAIL_TIMEOUT_SECONDS", gt=0)
    # HTTP-layer rate limits
    otp_request_rate_limit: int = env_field(5, "OTP_REQUEST_RATE_LIMIT", ge=1)
    otp_request_rate_window_seconds: int = env_field(
        15 * 60, "OTP_REQUEST_RATE_WINDOW_SECONDS", ge=1
    )
    otp_verify_rate_limit: int = env_field(10, "OTP_VERIFY_RATE_LIMIT", ge=1)
    otp_verify_rate_window_seconds: int = env_field(
        15 * 60, "OTP_VERIFY_RATE_WINDOW_SECONDS", ge=1
    )
    # Housekeeping
    credential_sweep_interval_seconds: int = env_field(
        3600,
        "CREDENTIAL_SWEEP_INTERVAL_SECONDS",
        ge=0,
        description="Seconds between expired-credential sweeps; 0 disables the background task",
    )
    cors_allow_origins: list[str] = env_field(
        ["http://localhost:3000"], "CORS_ALLOW_ORIGINS"
    )
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")

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

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so issued tokens survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/taskdesk"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup",
                error=str(exc),
                path=str(fs_root),
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path is not None:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET env var or make SHARED_FS_ROOT writable"
            ) from exc
        return generated


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
