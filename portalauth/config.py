from __future__ import annotations

import os
import re
import secrets
import tempfile
from datetime import timedelta
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from portalauth.logging import get_logger

logger = get_logger(__name__)

_DURATION_UNITS = {
    "ms": 0.001,
    "s": 1,
    "m": 60,
    "h": 3600,
    "d": 86400,
    "w": 604800,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h|d|w)")

MIN_SECRET_LENGTH = 32


def parse_duration(value: Any) -> timedelta:
    """Parse ``"15m"``, ``"7d"``, ``"1h30m"`` or a bare number of seconds.

    Raises ``ValueError`` for anything it does not recognise instead of
    falling back to a default.
    """
    if isinstance(value, timedelta):
        return value
    if isinstance(value, bool):
        raise ValueError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        if value <= 0:
            raise ValueError(f"duration must be positive: {value!r}")
        return timedelta(seconds=value)
    if not isinstance(value, str):
        raise ValueError(f"invalid duration: {value!r}")

    text = value.strip().lower()
    if not text:
        raise ValueError("duration is empty")
    if text.isdigit():
        seconds = int(text)
        if seconds <= 0:
            raise ValueError(f"duration must be positive: {value!r}")
        return timedelta(seconds=seconds)

    total = 0.0
    position = 0
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            raise ValueError(f"invalid duration: {value!r}")
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()
    if position != len(text) or total <= 0:
        raise ValueError(f"invalid duration: {value!r}")
    return timedelta(seconds=total)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/portalauth", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    store_timeout_seconds: float = env_field(
        5.0,
        "STORE_TIMEOUT_SECONDS",
        description="Upper bound for every key-value store call",
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors and in-process store fallback",
    )
    secrets_dir: str = env_field("/srv/portalauth", "SECRETS_DIR")

    # Signing keys, one per token class
    access_token_secret: str | None = env_field(None, "ACCESS_TOKEN_SECRET")
    refresh_token_secret: str | None = env_field(None, "REFRESH_TOKEN_SECRET")
    reset_token_secret: str | None = env_field(None, "RESET_TOKEN_SECRET")
    token_issuer: str = env_field("portal-auth", "TOKEN_ISSUER")
    access_token_audience: str = env_field("portal-system", "ACCESS_TOKEN_AUDIENCE")
    refresh_token_audience: str = env_field("portal-refresh", "REFRESH_TOKEN_AUDIENCE")
    reset_token_audience: str = env_field(
        "portal-password-reset", "RESET_TOKEN_AUDIENCE"
    )
    access_token_ttl: timedelta = env_field("15m", "ACCESS_TOKEN_TTL")
    refresh_token_ttl: timedelta = env_field("7d", "REFRESH_TOKEN_TTL")
    reset_token_ttl: timedelta = env_field("30m", "RESET_TOKEN_TTL")
    clock_skew_leeway: timedelta = env_field("2m", "CLOCK_SKEW_LEEWAY")

    # Rate limits
    global_rate_limit: int = env_field(100, "GLOBAL_RATE_LIMIT")
    global_rate_window: timedelta = env_field("15m", "GLOBAL_RATE_WINDOW")
    auth_rate_limit: int = env_field(10, "AUTH_RATE_LIMIT")
    auth_rate_window: timedelta = env_field("15m", "AUTH_RATE_WINDOW")
    reset_request_rate_limit: int = env_field(1, "RESET_REQUEST_RATE_LIMIT")
    reset_request_rate_window: timedelta = env_field("5m", "RESET_REQUEST_RATE_WINDOW")
    security_question_rate_limit: int = env_field(3, "SECURITY_QUESTION_RATE_LIMIT")
    security_question_rate_window: timedelta = env_field(
        "30m", "SECURITY_QUESTION_RATE_WINDOW"
    )

    # HTTP surface
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    refresh_cookie_name: str = env_field("refresh_token", "REFRESH_COOKIE_NAME")
    cors_allow_origins: str = env_field("", "CORS_ALLOW_ORIGINS")
    allowed_email_domains: str = env_field(
        "",
        "ALLOWED_EMAIL_DOMAINS",
        description="Comma separated domains accepted at registration and reset",
    )
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    sweep_interval: timedelta = env_field("10m", "SWEEP_INTERVAL")

    # Email delivery for reset links
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Portal", "EMAIL_FROM_NAME")

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

    @field_validator(
        "access_token_ttl",
        "refresh_token_ttl",
        "reset_token_ttl",
        "global_rate_window",
        "auth_rate_window",
        "reset_request_rate_window",
        "security_question_rate_window",
        "sweep_interval",
        mode="before",
    )
    @classmethod
    def _parse_durations(cls, value: Any) -> timedelta:
        return parse_duration(value)

    @field_validator("clock_skew_leeway", mode="before")
    @classmethod
    def _parse_leeway(cls, value: Any) -> timedelta:
        if value in (0, "0"):
            return timedelta(0)
        return parse_duration(value)

    @field_validator(
        "global_rate_limit",
        "auth_rate_limit",
        "reset_request_rate_limit",
        "security_question_rate_limit",
    )
    @classmethod
    def _positive_limit(cls, value: int) -> int:
        if value < 1:
            raise ValueError("rate limits must be at least 1")
        return value

    @field_validator("store_timeout_seconds")
    @classmethod
    def _positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("store timeout must be positive")
        return value

    @model_validator(mode="after")
    def _ensure_signing_keys(self) -> "Settings":
        for field_name, filename in (
            ("access_token_secret", ".access_token_secret"),
            ("refresh_token_secret", ".refresh_token_secret"),
            ("reset_token_secret", ".reset_token_secret"),
        ):
            value = getattr(self, field_name)
            if not value:
                value = _load_or_create_secret(Path(self.secrets_dir), filename)
            elif len(value) < MIN_SECRET_LENGTH:
                raise ValueError(
                    f"{field_name} must be at least {MIN_SECRET_LENGTH} characters"
                )
            setattr(self, field_name, value)

        keys = {
            self.access_token_secret,
            self.refresh_token_secret,
            self.reset_token_secret,
        }
        if len(keys) != 3:
            raise ValueError("access, refresh and reset signing keys must be distinct")
        audiences = {
            self.access_token_audience,
            self.refresh_token_audience,
            self.reset_token_audience,
        }
        if len(audiences) != 3:
            raise ValueError("access, refresh and reset audiences must be distinct")
        return self

    @property
    def allowed_domains(self) -> set[str]:
        return {
            domain.strip().lower().lstrip("@")
            for domain in self.allowed_email_domains.split(",")
            if domain.strip()
        }

    @property
    def cors_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_allow_origins.split(",") if o.strip()]


def _load_or_create_secret(root: Path, filename: str) -> str:
    """Return a persisted signing key, generating it on first use."""
    secret_path = root / filename
    try:
        root.mkdir(parents=True, exist_ok=True)
        os.chmod(root, 0o700)
    except PermissionError:
        # Directory may already exist with different permissions (e.g., in container)
        pass
    except OSError as exc:
        logger.warning("secret_dir_setup", error=str(exc), path=str(root))

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if len(persisted) >= MIN_SECRET_LENGTH:
                return persisted
        except OSError as exc:
            logger.error("secret_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    tmp_path: str | None = None
    try:
        fd, tmp_path = tempfile.mkstemp(dir=str(root), prefix=filename, suffix=".tmp")
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(secret_path))
    except OSError as exc:
        if tmp_path and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        logger.error("secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            f"Unable to persist signing key {filename}; set it via the environment "
            "or make SECRETS_DIR writable"
        ) from exc
    logger.info("secret_generated", path=str(secret_path))
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
