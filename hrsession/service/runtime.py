from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from hrsession.config import Settings, StateBackend, get_settings, reset_settings_cache
from hrsession.logging import get_logger
from hrsession.service.health import SessionHealthStore
from hrsession.service.provider import HttpIdentityProvider, IdentityProvider
from hrsession.service.request_cache import GenericRequestCache
from hrsession.service.session import SessionSupervisor
from hrsession.service.session_token import LocalSessionTokenStore
from hrsession.service.tokens import TokenLifecycleManager
from hrsession.service.user_cache import UserRecordCache
from hrsession.storage.redis_state import RedisProfileFeed, RedisStateStore
from hrsession.storage.state import FileStateStore, MemoryStateStore, StateKeys, StateStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    redis://:secret@localhost:6379 -> redis://:***@localhost:6379
    """
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
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Application root: builds the session core's services once and wires them."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        provider: Optional[IdentityProvider] = None,
        state: Optional[StateStore] = None,
    ) -> None:
        self.settings = settings or get_settings()
        s = self.settings
        logger.info(
            "runtime_init_started",
            state_backend=s.state_backend.value,
            test_mode=s.test_mode,
        )

        self.keys = StateKeys(s.storage_namespace)
        self.state = state if state is not None else self._build_state()

        self.feed: Optional[RedisProfileFeed] = None
        if provider is None:
            if s.redis_url:
                self.feed = RedisProfileFeed(s.redis_url)
            provider = HttpIdentityProvider(
                s.identity_url,
                self.state,
                api_key=s.identity_api_key,
                keys=self.keys,
                feed=self.feed,
                timeout=s.identity_timeout_seconds,
            )
        self.provider = provider

        self.health = SessionHealthStore(
            self.state,
            keys=self.keys,
            purge=s.purge_prefixes,
            max_failed_attempts=s.max_failed_attempts,
            recovery_cooldown=s.recovery_cooldown_seconds,
            inactivity_timeout=s.inactivity_timeout_seconds,
        )
        ttls = s.cache_ttls()
        self.cache = GenericRequestCache(
            short_ttl=ttls["short"],
            default_ttl=ttls["default"],
            long_ttl=ttls["long"],
            batch_window=s.batch_window_seconds,
        )
        self.tokens = TokenLifecycleManager(
            self.provider,
            refresh_threshold=s.refresh_threshold_seconds,
            visibility_refresh_threshold=s.visibility_refresh_threshold_seconds,
            visibility_debounce=s.visibility_debounce_seconds,
        )
        self.user_cache = UserRecordCache(
            self.provider,
            self.health,
            ttl=s.user_cache_ttl_seconds,
            wait=s.user_cache_wait_seconds,
        )
        self.session_tokens = LocalSessionTokenStore(self.state, self.provider, keys=self.keys)
        self.supervisor = SessionSupervisor(
            self.provider,
            health=self.health,
            cache=self.cache,
            tokens=self.tokens,
            user_cache=self.user_cache,
            session_tokens=self.session_tokens,
            bootstrap_timeout=s.bootstrap_timeout_seconds,
            revocation_poll_interval=s.revocation_poll_interval_seconds,
            inactivity_check_interval=s.inactivity_check_interval_seconds,
        )
        logger.info(
            "runtime_init_completed",
            state_store=type(self.state).__name__,
            provider=type(self.provider).__name__,
            push_feed=self.feed is not None,
        )

    def _build_state(self) -> StateStore:
        s = self.settings
        if s.state_backend is StateBackend.MEMORY:
            return MemoryStateStore()
        if s.state_backend is StateBackend.FILE:
            return FileStateStore(s.state_path)

        if not s.redis_url:
            raise RuntimeError("STATE_BACKEND=redis requires REDIS_URL")
        try:
            store = RedisStateStore(s.redis_url)
            store.verify_connection()
            return store
        except Exception as exc:
            if not s.test_mode:
                logger.error(
                    "runtime_state_init_failed",
                    redis_url=_mask_url_password(s.redis_url),
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(s.redis_url),
                error=str(exc),
                mode="TEST_MODE",
            )
            return MemoryStateStore()

    async def close(self) -> None:
        await self.supervisor.stop()
        close = getattr(self.provider, "close", None)
        if close is not None:
            await close()
        if self.feed is not None:
            await self.feed.close()
        if isinstance(self.state, RedisStateStore):
            self.state.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking: no lock on the fast path, re-check under the
    lock before creating.
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
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                asyncio.run(runtime.close())
            else:
                loop.create_task(runtime.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
