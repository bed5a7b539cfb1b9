from __future__ import annotations

import os
import secrets
import tempfile
from datetime import timedelta
from pathlib import Path
from typing import Any, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from gatekey.logging import get_logger

logger = get_logger(__name__)

# Minimum HS256 key length accepted outside test mode
MIN_JWT_SECRET_LENGTH = 16


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    aliases = kwargs.pop("env_aliases", ()) or ()
    extra = {**extra, "env": env, "env_aliases": list(aliases)}
    return Field(default, json_schema_extra=extra, **kwargs)


def _default_file_storage_path() -> str:
    return str(Path(tempfile.gettempdir()) / "gatekey-store")


class Settings(BaseModel):
    """Runtime settings for the credential service.

    Values come from the process environment first and fall back to a local
    ``.env`` file. The storage backend is chosen by the presence of
    ``database_url``: set it for PostgreSQL, leave it empty for the in-process
    store backed by ``file_storage_path``.
    """

    http_addr: str = env_field("0.0.0.0:8081", "HTTP_ADDR")
    database_url: Optional[str] = env_field(
        None,
        "DATABASE_URL",
        env_aliases=("DB_DSN",),
        description="PostgreSQL DSN; when unset the memory store is used",
    )
    file_storage_path: str = env_field(
        "",
        "FILE_STORAGE_PATH",
        validate_default=True,
        description="Base path for the memory store; users are appended to '<path>.users'",
    )
    db_pool_min_size: int = env_field(1, "DB_POOL_MIN_SIZE", ge=0)
    db_pool_max_size: int = env_field(10, "DB_POOL_MAX_SIZE", ge=1)
    db_pool_timeout_seconds: float = env_field(5.0, "DB_POOL_TIMEOUT_SECONDS", gt=0)
    jwt_secret: Optional[str] = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("gatekey", "JWT_ISSUER")
    jwt_audience: str = env_field("gatekey-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        24 * 60,
        "ACCESS_TOKEN_TTL_MINUTES",
        gt=0,
        description="Access token lifetime in minutes",
    )
    refresh_token_ttl_hours: int = env_field(
        720,
        "REFRESH_TOKEN_TTL",
        gt=0,
        description="Refresh token lifetime in hours",
    )
    refresh_sweep_interval_seconds: int = env_field(
        300,
        "REFRESH_SWEEP_INTERVAL_SECONDS",
        ge=0,
        description="Period of the expired refresh token sweep; 0 disables it",
    )
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow a generated signing secret for tests and local runs",
    )
    build_sha: str = env_field("dev", "BUILD_SHA")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            aliases = extra.get("env_aliases", []) if isinstance(extra, dict) else []
            for env_name in [env_key or name.upper(), *aliases]:
                if env_name in os.environ:
                    merged[name] = os.environ[env_name]
                    break
                if env_name in env_file_values and env_file_values[env_name] is not None:
                    merged[name] = env_file_values[env_name]
                    break
        return cls(**merged)

    @field_validator("database_url")
    @classmethod
    def _blank_dsn_is_none(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip()
        return value or None

    @field_validator("file_storage_path")
    @classmethod
    def _default_storage_path(cls, value: str) -> str:
        return value.strip() or _default_file_storage_path()

    @model_validator(mode="after")
    def _ensure_jwt_secret(self) -> "Settings":
        if self.db_pool_min_size > self.db_pool_max_size:
            raise ValueError("DB_POOL_MIN_SIZE must not exceed DB_POOL_MAX_SIZE")
        if self.jwt_secret:
            if len(self.jwt_secret) < MIN_JWT_SECRET_LENGTH and not self.test_mode:
                raise ValueError(
                    f"JWT_SECRET must be at least {MIN_JWT_SECRET_LENGTH} characters"
                )
            return self
        if not self.test_mode:
            raise ValueError("JWT_SECRET is required; set TEST_MODE=true to generate one")
        self.jwt_secret = secrets.token_urlsafe(48)
        logger.warning(
            "jwt_secret_generated",
            message="Using an ephemeral signing secret; tokens will not survive a restart",
        )
        return self

    @property
    def use_memory_store(self) -> bool:
        return self.database_url is None

    @property
    def access_token_ttl(self) -> timedelta:
        return timedelta(minutes=self.access_token_ttl_minutes)

    @property
    def refresh_token_ttl(self) -> timedelta:
        return timedelta(hours=self.refresh_token_ttl_hours)


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
