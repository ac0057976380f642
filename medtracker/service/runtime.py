from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from medtracker.config import get_settings, reset_settings_cache
from medtracker.logging import get_logger
from medtracker.service.auth import AuthService
from medtracker.service.catalog import CatalogService
from medtracker.service.images import ImageService, LocalImageStore
from medtracker.service.medicines import MedicineService
from medtracker.service.notifications import LoggingPushSink, NotificationService
from medtracker.service.profiles import ProfileService
from medtracker.service.revocation import TokenRevocationService
from medtracker.service.schedules import ScheduleService
from medtracker.service.tokens import TokenService
from medtracker.service.users import UserService
from medtracker.storage.memory import MemoryStore
from medtracker.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a DSN with ``***`` for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            store_type=store_type,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            # unreachable store is fatal at startup
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.tokens = TokenService(self.settings)
        self.revocations = TokenRevocationService(self.store)
        self.auth = AuthService(self.store, self.tokens, self.revocations)
        self.users = UserService(self.store)
        self.profiles = ProfileService(self.store)
        self.medicines = MedicineService(self.store, self.store)
        self.schedules = ScheduleService(self.store, self.store, self.store)
        self.catalog = CatalogService(self.store)
        self.image_store = LocalImageStore(
            self.settings.shared_fs_root, self.settings.app_base_url
        )
        self.images = ImageService(
            self.image_store, max_bytes=self.settings.image_max_bytes
        )
        self.notifications = NotificationService(
            self.store,
            self.store,
            self.store,
            LoggingPushSink(),
            expiry_warning_days=self.settings.expiry_warning_days,
        )


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton using double-checked locking."""
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
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
