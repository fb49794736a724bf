from __future__ import annotations

import contextlib
import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from marketauth.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth service and its collaborators."""

    database_url: str = env_field(
        "postgresql://localhost:5432/marketauth", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (runtime reset, in-process rate limits).",
    )
    storage_timeout_seconds: float = env_field(
        5.0,
        "STORAGE_TIMEOUT_SECONDS",
        description="Upper bound for connecting, acquiring a pooled connection and running a statement",
    )

    # Signed credentials
    jwt_access_secret: str = env_field(None, "JWT_ACCESS_SECRET")
    jwt_refresh_secret: str = env_field(None, "JWT_REFRESH_SECRET")
    jwt_action_secret: str = env_field(None, "JWT_ACTION_SECRET")
    jwt_issuer: str = env_field("marketauth", "JWT_ISSUER")
    jwt_audience: str = env_field("marketplace-clients", "JWT_AUDIENCE")
    jwt_leeway_seconds: int = env_field(0, "JWT_LEEWAY_SECONDS", ge=0)
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES", gt=0)
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS", gt=0)

    # Single-use action tokens
    email_verification_ttl_minutes: int = env_field(
        60, "EMAIL_VERIFICATION_TTL_MINUTES", gt=0
    )
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES", gt=0)

    # Refresh session lifecycle
    refresh_reuse_detection: bool = env_field(
        True,
        "REFRESH_REUSE_DETECTION",
        description="Revoke the whole lineage when an already-rotated refresh token is presented",
    )
    refresh_retention_days: int = env_field(30, "REFRESH_RETENTION_DAYS", ge=0)
    refresh_purge_interval_seconds: int = env_field(
        3600,
        "REFRESH_PURGE_INTERVAL_SECONDS",
        description="Period of the background retention sweep; 0 disables it",
    )

    # Federated sign-in
    google_client_id: str | None = env_field(None, "GOOGLE_CLIENT_ID")
    google_tokeninfo_url: str = env_field(
        "https://oauth2.googleapis.com/tokeninfo", "GOOGLE_TOKENINFO_URL"
    )

    # Email delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Macle", "EMAIL_FROM_NAME")
    app_public_url: str = env_field("http://localhost:3000", "APP_PUBLIC_URL")
    email_verify_route: str = env_field("/verify-email", "EMAIL_VERIFY_ROUTE")
    password_reset_route: str = env_field("/reset-password", "PASSWORD_RESET_ROUTE")

    # HTTP surface
    cors_allow_origins: list[str] = env_field([], "CORS_ORIGIN")
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    signup_rate_limit_per_minute: int = env_field(5, "SIGNUP_RATE_LIMIT_PER_MINUTE")
    reset_rate_limit_per_minute: int = env_field(5, "RESET_RATE_LIMIT_PER_MINUTE")

    model_config = ConfigDict(extra="ignore", validate_default=True)

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
        # Comma-separated, e.g. "https://macleapp.com,https://legal.macleapp.com"
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator(
        "jwt_access_secret", "jwt_refresh_secret", "jwt_action_secret", mode="before"
    )
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None, info) -> str:
        if value:
            if len(value) < 32:
                logger.warning("jwt_secret_short", field=info.field_name, length=len(value))
            return value
        return _load_or_create_secret(info.field_name)


def _load_or_create_secret(field_name: str) -> str:
    """Return the persisted secret for ``field_name``, generating it on first use.

    Every worker and restart sharing ``STATE_DIR`` signs with the same key.
    """
    state_dir = Path(os.getenv("STATE_DIR", "/var/lib/marketauth"))
    secret_path = state_dir / f".{field_name}"

    try:
        state_dir.mkdir(parents=True, exist_ok=True)
        os.chmod(state_dir, 0o700)
    except PermissionError:
        # Directory may already exist with different permissions (e.g., in container)
        pass

    persisted = _read_secret(secret_path)
    if persisted:
        return persisted

    generated = secrets.token_urlsafe(64)
    tmp_path = None
    try:
        fd, tmp_path = tempfile.mkstemp(dir=str(state_dir), prefix=secret_path.name, suffix=".tmp")
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        # link() refuses to overwrite, so concurrent workers agree on the first secret
        os.link(tmp_path, secret_path)
    except FileExistsError:
        persisted = _read_secret(secret_path)
        if persisted:
            return persisted
        raise RuntimeError(f"unreadable persisted secret at {secret_path}")
    except OSError as exc:
        logger.error("jwt_secret_persist_failed", field=field_name, error=str(exc), path=str(secret_path))
        raise RuntimeError(
            f"Unable to persist {field_name}; set {field_name.upper()} or make STATE_DIR writable"
        ) from exc
    finally:
        if tmp_path:
            with contextlib.suppress(OSError):
                os.unlink(tmp_path)
    logger.warning(
        "jwt_secret_generated",
        field=field_name,
        path=str(secret_path),
        message="No secret configured; generated one shared through STATE_DIR",
    )
    return generated


def _read_secret(path: Path) -> str | None:
    if not path.exists() or path.is_symlink():
        return None
    try:
        value = path.read_text().strip()
    except OSError as exc:
        logger.error("jwt_secret_read_failed", error=str(exc), path=str(path))
        return None
    return value if len(value) >= 32 else None


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
