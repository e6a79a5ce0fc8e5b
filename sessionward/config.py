from __future__ import annotations

import hashlib
import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from sessionward.logging import get_logger

logger = get_logger(__name__)


_MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    """Declare a settings field read from the environment variable ``env``."""
    extra = dict(kwargs.pop("json_schema_extra", None) or {})
    extra["env"] = env
    return Field(default, json_schema_extra=extra, **kwargs)


def _load_or_create_secret(path: Path) -> str:
    """Return the signing secret stored at ``path``, generating it on first use."""
    root = path.parent
    try:
        root.mkdir(mode=0o700, parents=True, exist_ok=True)
    except OSError as exc:
        logger.warning("secret_dir_unavailable", path=str(root), error=str(exc))

    if path.is_file() and not path.is_symlink():
        try:
            stored = path.read_text().strip()
        except OSError as exc:
            logger.error("secret_read_failed", path=str(path), error=str(exc))
        else:
            if len(stored) >= _MIN_SECRET_LENGTH:
                return stored
            logger.warning("secret_too_short_regenerating", path=str(path))

    secret = secrets.token_urlsafe(64)
    staging = None
    try:
        fd, staging = tempfile.mkstemp(dir=str(root), prefix=f"{path.name}.", suffix=".tmp")
        with os.fdopen(fd, "w") as handle:
            os.fchmod(handle.fileno(), 0o600)
            handle.write(secret)
        # Readers never observe a partially written secret
        os.replace(staging, path)
    except OSError as exc:
        if staging and os.path.exists(staging):
            os.unlink(staging)
        logger.error("secret_persist_failed", path=str(path), error=str(exc))
        raise RuntimeError(
            "cannot persist a signing secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
        ) from exc
    return secret


class Settings(BaseModel):
    """Runtime settings for the credential-lifecycle service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/sessionward", "DATABASE_URL"
    )
    redis_url: str | None = env_field(
        None,
        "REDIS_URL",
        description="Optional Redis for login-failure counters; the primary store is used when unset",
    )
    shared_fs_root: str = env_field("/srv/sessionward", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic behaviors for CI; disables background cleanup",
    )
    cors_allow_origins: str = env_field("", "CORS_ALLOW_ORIGINS")

    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    renewal_token_secret: str | None = env_field(None, "RENEWAL_TOKEN_SECRET")
    jwt_issuer: str = env_field("sessionward", "JWT_ISSUER")
    jwt_audience: str = env_field("sessionward-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    renewal_token_ttl_days: int = env_field(7, "RENEWAL_TOKEN_TTL_DAYS")
    renewal_max_uses: int = env_field(
        10,
        "RENEWAL_MAX_USES",
        description="Renewals allowed per renewal token before it is exhausted",
    )
    rotation_ratio: float = env_field(
        0.8,
        "ROTATION_RATIO",
        description="Fraction of max uses at which the renewal family is rotated",
    )
    clock_skew_seconds: int = env_field(30, "CLOCK_SKEW_SECONDS")
    renew_hint_seconds: int = env_field(
        300,
        "RENEW_HINT_SECONDS",
        description="Introspection recommends renewal when fewer seconds than this remain",
    )
    suspicious_login_threshold: int = env_field(5, "SUSPICIOUS_LOGIN_THRESHOLD")
    login_failure_window_seconds: int = env_field(900, "LOGIN_FAILURE_WINDOW_SECONDS")
    expired_cleanup_interval_seconds: int = env_field(
        3600, "EXPIRED_CLEANUP_INTERVAL_SECONDS"
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls, env_file: str = ".env") -> "Settings":
        """Build settings from process env, falling back to ``env_file`` entries."""
        file_values = dotenv_values(env_file)
        values: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra if isinstance(field.json_schema_extra, dict) else {}
            key = extra.get("env", name.upper())
            raw = os.environ.get(key, file_values.get(key))
            if raw is not None:
                values[name] = raw
        return cls(**values)

    @field_validator(
        "access_token_ttl_minutes",
        "renewal_token_ttl_days",
        "renewal_max_uses",
        "suspicious_login_threshold",
        "login_failure_window_seconds",
        "expired_cleanup_interval_seconds",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("clock_skew_seconds", "renew_hint_seconds")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator("rotation_ratio")
    @classmethod
    def _validate_rotation_ratio(cls, value: float) -> float:
        if not 0 < value <= 1:
            raise ValueError("rotation_ratio must be in (0, 1]")
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        return _load_or_create_secret(
            Path(os.getenv("SHARED_FS_ROOT", "/srv/sessionward")) / ".jwt_secret"
        )

    @model_validator(mode="after")
    def _derive_renewal_secret(self) -> "Settings":
        if not self.renewal_token_secret:
            # Renewal tokens must never verify under the access-token key
            derived = hashlib.sha256(
                f"renewal:{self.jwt_secret}".encode("utf-8")
            ).hexdigest()
            self.renewal_token_secret = derived
        elif self.renewal_token_secret == self.jwt_secret:
            raise ValueError("RENEWAL_TOKEN_SECRET must differ from JWT_SECRET")
        return self

    @property
    def access_token_ttl_seconds(self) -> int:
        return self.access_token_ttl_minutes * 60

    @property
    def renewal_token_ttl_seconds(self) -> int:
        return self.renewal_token_ttl_days * 24 * 60 * 60

    @property
    def cors_origins(self) -> list[str]:
        return [origin.strip() for origin in self.cors_allow_origins.split(",") if origin.strip()]


_settings_cache: Settings | None = None


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


def reset_settings_cache() -> None:
    global _settings_cache
    _settings_cache = None
