from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from yoink.config import Settings, get_settings, reset_settings_cache
from yoink.logging import get_logger
from yoink.service.auth import AuthResolver, SessionRefresher
from yoink.service.clock import Clock, build_clock
from yoink.service.hashing import Argon2SecretHasher, SecretHasher
from yoink.service.membership import MembershipService
from yoink.service.sessions import SessionService
from yoink.service.tokens import TokenService
from yoink.service.users import UserService
from yoink.storage.memory import MemoryStore
from yoink.storage.postgres import PostgresStore

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
    """Holds singleton store and service instances for the FastAPI app."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Union[MemoryStore, PostgresStore, None] = None,
        clock: Optional[Clock] = None,
        hasher: Optional[SecretHasher] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        if store is None:
            try:
                store = (
                    MemoryStore()
                    if self.settings.use_memory_store
                    else PostgresStore(self.settings.database_url)
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
        self.store = store
        self.clock = clock or build_clock(self.settings)
        self.hasher = hasher or Argon2SecretHasher.from_settings(self.settings)

        self.sessions = SessionService(
            store.sessions,
            store.users,
            store.memberships,
            self.clock,
            ttl=self.settings.session_ttl,
            refresh_threshold=self.settings.session_refresh_threshold,
        )
        self.tokens = TokenService(
            store.tokens,
            store.users,
            store.organizations,
            store.memberships,
            self.hasher,
            self.clock,
            max_tokens_per_user=self.settings.max_tokens_per_user,
        )
        self.memberships = MembershipService(
            store.memberships,
            store.organizations,
            store.users,
            self.sessions,
            self.clock,
        )
        self.users = UserService(
            store.users,
            store.organizations,
            store.memberships,
            self.sessions,
            self.clock,
        )
        self.refresher = SessionRefresher(self.sessions)
        self.auth = AuthResolver(self.sessions, self.tokens, self.refresher, self.clock)

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            clock=self.settings.clock.value,
            session_ttl_minutes=self.settings.session_ttl_minutes,
            session_refresh_threshold_minutes=self.settings.session_refresh_threshold_minutes,
        )

    async def shutdown(self) -> None:
        await self.refresher.drain()
        self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking: the fast path skips the lock once the runtime
    exists.
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
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
