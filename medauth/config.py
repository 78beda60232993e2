from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from medauth.logging import get_logger

logger = get_logger(__name__)

# Values shipped in sample env files and docs; never acceptable in production.
KNOWN_DEFAULT_SECRETS = frozenset(
    {
        "",
        "secret",
        "changeme",
        "change-me",
        "your-secret-key",
        "your-refresh-secret-key",
        "your-super-secret-jwt-key",
        "your-super-secret-refresh-key",
    }
)

MIN_SECRET_LENGTH = 32


class Environment(str, Enum):
    """Deployment environments recognised by the service."""

    DEVELOPMENT = "development"
    TEST = "test"
    PRODUCTION = "production"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication service."""

    environment: Environment = env_field(Environment.DEVELOPMENT, "APP_ENV")
    database_url: str = env_field(
        "postgresql://localhost:5432/medauth", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/medauth", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    require_redis: bool = env_field(
        False,
        "REQUIRE_REDIS",
        description="Abort startup when Redis is unreachable instead of running durable-only",
    )
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic behaviours for CI: sync Redis client, no state persistence",
    )

    # Token signing
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_refresh_secret: str | None = env_field(None, "JWT_REFRESH_SECRET")
    jwt_issuer: str = env_field("mesmtf-api", "JWT_ISSUER")
    jwt_audience: str = env_field("mesmtf-client", "JWT_AUDIENCE")
    jwt_leeway_seconds: int = env_field(
        30, "JWT_LEEWAY_SECONDS", description="Allowed clock skew when checking exp"
    )
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES"
    )
    session_ttl_seconds: int = env_field(7 * 24 * 60 * 60, "SESSION_TTL_SECONDS")
    rotate_refresh_tokens: bool = env_field(
        False,
        "ROTATE_REFRESH_TOKENS",
        description="Issue a new refresh token and session id on every refresh",
    )
    session_purge_interval_seconds: int = env_field(
        3600,
        "SESSION_PURGE_INTERVAL_SECONDS",
        description="How often expired durable session rows are deleted; 0 disables",
    )

    # Password hashing (argon2id cost parameters)
    password_time_cost: int = env_field(3, "PASSWORD_TIME_COST")
    password_memory_cost: int = env_field(65536, "PASSWORD_MEMORY_COST")
    password_parallelism: int = env_field(4, "PASSWORD_PARALLELISM")

    # Rate limits
    global_rate_limit: int = env_field(100, "GLOBAL_RATE_LIMIT")
    global_rate_window_seconds: int = env_field(15 * 60, "GLOBAL_RATE_WINDOW_SECONDS")
    login_rate_limit: int = env_field(5, "LOGIN_RATE_LIMIT")
    register_rate_limit: int = env_field(5, "REGISTER_RATE_LIMIT")
    strict_rate_window_seconds: int = env_field(15 * 60, "STRICT_RATE_WINDOW_SECONDS")
    progressive_rate_limit_enabled: bool = env_field(
        False, "PROGRESSIVE_RATE_LIMIT_ENABLED"
    )
    progressive_rate_limit: int = env_field(10, "PROGRESSIVE_RATE_LIMIT")
    progressive_rate_window_seconds: int = env_field(
        60, "PROGRESSIVE_RATE_WINDOW_SECONDS"
    )
    progressive_max_multiplier: int = env_field(32, "PROGRESSIVE_MAX_MULTIPLIER")
    user_rate_limit: int = env_field(100, "USER_RATE_LIMIT")
    user_rate_window_seconds: int = env_field(15 * 60, "USER_RATE_WINDOW_SECONDS")

    # HTTP
    trust_proxy_headers: bool = env_field(
        False,
        "TRUST_PROXY_HEADERS",
        description="Use X-Forwarded-For for the client IP (only behind a trusted proxy)",
    )
    cors_allow_origins: str = env_field("", "CORS_ALLOW_ORIGINS")

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

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @field_validator("environment", mode="before")
    @classmethod
    def _normalize_environment(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "session_ttl_seconds",
        "password_time_cost",
        "password_memory_cost",
        "password_parallelism",
        "global_rate_window_seconds",
        "strict_rate_window_seconds",
        "progressive_rate_window_seconds",
        "user_rate_window_seconds",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("progressive_max_multiplier")
    @classmethod
    def _validate_multiplier(cls, value: int) -> int:
        if value < 1:
            raise ValueError("progressive_max_multiplier must be at least 1")
        return value

    @model_validator(mode="after")
    def _ensure_signing_secrets(self) -> "Settings":
        if self.is_production:
            for env_name, value in (
                ("JWT_SECRET", self.jwt_secret),
                ("JWT_REFRESH_SECRET", self.jwt_refresh_secret),
            ):
                if not value or value.strip().lower() in KNOWN_DEFAULT_SECRETS:
                    raise ValueError(
                        f"{env_name} must be explicitly configured when APP_ENV=production"
                    )
                if len(value) < MIN_SECRET_LENGTH:
                    raise ValueError(
                        f"{env_name} must be at least {MIN_SECRET_LENGTH} characters in production"
                    )
        else:
            if not self.jwt_secret:
                self.jwt_secret = _load_or_generate_secret(
                    Path(self.shared_fs_root), ".jwt_access_secret"
                )
            if not self.jwt_refresh_secret:
                self.jwt_refresh_secret = _load_or_generate_secret(
                    Path(self.shared_fs_root), ".jwt_refresh_secret"
                )
        if self.jwt_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_SECRET and JWT_REFRESH_SECRET must be different")
        return self


def _load_or_generate_secret(fs_root: Path, filename: str) -> str:
    """Return a persisted development secret, generating it on first use.

    Only reachable outside production. The secret is written atomically with
    0600 permissions so tokens stay valid across restarts of a dev server.
    """
    secret_path = fs_root / filename
    try:
        fs_root.mkdir(parents=True, exist_ok=True)
        os.chmod(fs_root, 0o700)
    except PermissionError:
        # Directory may already exist with different ownership (e.g., in a container)
        pass

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if len(persisted) >= MIN_SECRET_LENGTH:
                return persisted
        except OSError as exc:
            logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    tmp_path: str | None = None
    try:
        fd, tmp_path = tempfile.mkstemp(dir=str(fs_root), prefix=f"{filename}_", suffix=".tmp")
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(secret_path))
    except OSError as exc:
        if tmp_path and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            "Unable to persist development signing secret; set JWT_SECRET/JWT_REFRESH_SECRET "
            "or make SHARED_FS_ROOT writable"
        ) from exc
    logger.warning(
        "jwt_secret_generated",
        path=str(secret_path),
        message="Generated a development signing secret; configure explicit secrets for production",
    )
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
