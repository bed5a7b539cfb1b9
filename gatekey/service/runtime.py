from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from gatekey.config import Settings, get_settings, reset_settings_cache
from gatekey.logging import get_logger
from gatekey.service.auth import AuthService
from gatekey.service.passwords import PasswordHasher
from gatekey.service.refresh import RefreshTokenLifecycle
from gatekey.service.tokens import TokenSigner
from gatekey.storage.memory import MemoryStore
from gatekey.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a DSN for logging."""

    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


def create_store(settings: Settings) -> Union[MemoryStore, PostgresStore]:
    """Build the store selected by configuration: Postgres when a DSN is set."""

    if settings.use_memory_store:
        return MemoryStore(settings.file_storage_path)
    return PostgresStore(
        settings.database_url,
        min_size=settings.db_pool_min_size,
        max_size=settings.db_pool_max_size,
        timeout=settings.db_pool_timeout_seconds,
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            store_type=store_type,
            database_url=_mask_url_password(self.settings.database_url),
            test_mode=self.settings.test_mode,
        )
        try:
            self.store = create_store(self.settings)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.hasher = PasswordHasher()
        self.signer = TokenSigner(
            self.settings.jwt_secret,
            ttl=self.settings.access_token_ttl,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
        )
        self.refresh = RefreshTokenLifecycle(
            self.store, ttl=self.settings.refresh_token_ttl
        )
        self.auth = AuthService(self.store, self.hasher, self.signer, self.refresh)
        logger.info("runtime_init_completed", build_sha=self.settings.build_sha)

    def close(self) -> None:
        self.store.close()
        logger.info("runtime_closed")


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: the fast path skips the lock once the
    runtime exists.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""

    global runtime
    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        runtime = Runtime()
        return runtime


def shutdown_runtime() -> None:
    global runtime
    with _runtime_lock:
        if runtime is not None:
            runtime.close()
            runtime = None
