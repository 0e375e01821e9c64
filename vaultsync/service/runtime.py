from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from vaultsync.config import get_settings, reset_settings_cache
from vaultsync.logging import get_logger
from vaultsync.service.auth import AuthService
from vaultsync.service.ratelimit import RateLimitService
from vaultsync.service.totp import is_totp_enabled
from vaultsync.storage.memory import MemoryStore
from vaultsync.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a connection URL with ``***`` for logging."""
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
    return urlunparse(
        (
            parsed.scheme,
            netloc,
            parsed.path,
            parsed.params,
            parsed.query,
            parsed.fragment,
        )
    )


class Runtime:
    """Holds the store and service singletons for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            store_type=store_type,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url, fs_root=self.settings.shared_fs_root
                )
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.rate_limiter = RateLimitService(
            self.store,
            max_login_attempts=self.settings.login_max_attempts,
            lockout_minutes=self.settings.login_lockout_minutes,
            write_limit=self.settings.api_write_rate_limit_per_minute,
            sync_read_limit=self.settings.api_sync_rate_limit_per_minute,
            window_seconds=self.settings.rate_limit_window_seconds,
            cleanup_probability=self.settings.cleanup_probability,
        )
        self.auth = AuthService(self.store, self.rate_limiter, self.settings)

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            totp_enabled=is_totp_enabled(self.settings.totp_secret),
            signing_key_problem=self.settings.secret_problem,
        )


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton with double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from the current environment; TEST_MODE only."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.store, PostgresStore):
            runtime.store.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
