from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from warden.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication and session subsystem."""

    shared_fs_root: str = env_field("/srv/warden", "SHARED_FS_ROOT")
    redis_url: str | None = env_field(
        None,
        "REDIS_URL",
        description="Shared rate-limit backend; in-process buckets are used when unset",
    )
    persist_memory_store: bool = env_field(
        False,
        "PERSIST_MEMORY_STORE",
        description="Write memory store state to SHARED_FS_ROOT/state on each mutation",
    )
    test_mode: bool = env_field(False, "TEST_MODE")

    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("warden", "JWT_ISSUER")
    jwt_audience: str = env_field("warden-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES"
    )
    remember_me_refresh_ttl_minutes: int = env_field(
        30 * 24 * 60,
        "REMEMBER_ME_REFRESH_TTL_MINUTES",
        description="Refresh token lifetime for sessions created with remember-me",
    )
    rotate_refresh_tokens: bool = env_field(
        False,
        "ROTATE_REFRESH_TOKENS",
        description="Issue a new refresh token on every refresh and retire the old one",
    )
    clock_skew_leeway_seconds: int = env_field(30, "CLOCK_SKEW_LEEWAY_SECONDS")

    max_sessions_per_user: int = env_field(10, "MAX_SESSIONS_PER_USER")
    session_lock_timeout_seconds: float = env_field(
        10.0, "SESSION_LOCK_TIMEOUT_SECONDS"
    )
    inactive_session_retention_days: int = env_field(
        30, "INACTIVE_SESSION_RETENTION_DAYS"
    )

    password_history_limit: int = env_field(5, "PASSWORD_HISTORY_LIMIT")
    password_min_length: int = env_field(12, "PASSWORD_MIN_LENGTH")
    password_max_length: int = env_field(128, "PASSWORD_MAX_LENGTH")
    hash_time_cost: int = env_field(
        3,
        "HASH_TIME_COST",
        description="argon2 iterations; tune so one verification takes 100-250ms",
    )
    hash_memory_cost_kib: int = env_field(65536, "HASH_MEMORY_COST_KIB")
    hash_parallelism: int = env_field(4, "HASH_PARALLELISM")

    google_client_id: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_ID")
    google_tokeninfo_url: str = env_field(
        "https://oauth2.googleapis.com/tokeninfo", "OAUTH_GOOGLE_TOKENINFO_URL"
    )
    identity_provider_timeout_seconds: float = env_field(
        5.0, "IDENTITY_PROVIDER_TIMEOUT_SECONDS"
    )

    login_rate_limit: int = env_field(10, "LOGIN_RATE_LIMIT")
    login_rate_window_seconds: int = env_field(900, "LOGIN_RATE_WINDOW_SECONDS")
    password_change_rate_limit: int = env_field(5, "PASSWORD_CHANGE_RATE_LIMIT")
    password_change_rate_window_seconds: int = env_field(
        900, "PASSWORD_CHANGE_RATE_WINDOW_SECONDS"
    )
    password_reset_rate_limit: int = env_field(3, "PASSWORD_RESET_RATE_LIMIT")
    password_reset_rate_window_seconds: int = env_field(
        24 * 60 * 60, "PASSWORD_RESET_RATE_WINDOW_SECONDS"
    )
    password_reset_token_ttl_minutes: int = env_field(
        60,
        "PASSWORD_RESET_TOKEN_TTL_MINUTES",
        description="Lifetime of an emailed password reset token",
    )

    collaborator_timeout_seconds: float = env_field(
        2.0,
        "COLLABORATOR_TIMEOUT_SECONDS",
        description="Upper bound for notification and audit calls before they are dropped",
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

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "remember_me_refresh_ttl_minutes",
        "password_reset_token_ttl_minutes",
        "max_sessions_per_user",
        "hash_time_cost",
        "hash_parallelism",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @field_validator("password_history_limit", "clock_skew_leeway_seconds")
    @classmethod
    def _require_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @model_validator(mode="after")
    def _check_password_bounds(self) -> "Settings":
        if self.password_min_length < 1:
            raise ValueError("password_min_length must be at least 1")
        if self.password_min_length > self.password_max_length:
            raise ValueError("password_min_length exceeds password_max_length")
        return self

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            if len(value) < 32:
                logger.warning("jwt_secret_short", length=len(value))
            return value
        # Persist a generated secret so access tokens survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/warden"))
        secret_path = fs_root / ".jwt_secret"
        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            pass
        except OSError as exc:
            logger.warning("jwt_secret_dir_setup", error=str(exc), path=str(fs_root))

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))

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
            if tmp_path:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
            logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
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
