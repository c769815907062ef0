"""Session supervisor: the application root of the session core.

Owns the current identity and the loading flag, orders bootstrap before the
background watchers, and is the only place that tears local state down.
Every lifecycle (bootstrap, sign-in, sign-out, reset, forced logout) moves a
generation counter forward; a continuation that finds the counter moved on
drops its result instead of applying it.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, List, Optional, Pattern, Set, Union

from hrsession.logging import bind_lifecycle_id, get_logger
from hrsession.service.errors import AuthError, AuthErrorKind, LockoutError
from hrsession.service.health import SessionHealthStore
from hrsession.service.inactivity import INACTIVITY_CHECK_INTERVAL_SECONDS, InactivityMonitor
from hrsession.service.provider import IdentityProvider
from hrsession.service.request_cache import CacheTTL, GenericRequestCache
from hrsession.service.revocation import REVOCATION_POLL_INTERVAL_SECONDS, RevocationWatcher
from hrsession.service.session_token import LocalSessionTokenStore
from hrsession.service.tasks import cancel_tasks
from hrsession.service.tokens import TokenLifecycleManager
from hrsession.service.user_cache import UserRecordCache
from hrsession.storage.models import CachedUserRecord

logger = get_logger(__name__)

BOOTSTRAP_TIMEOUT_SECONDS = 8.0

IdentityListener = Callable[[Optional[CachedUserRecord], str], None]


class SessionSupervisor:
    def __init__(
        self,
        provider: IdentityProvider,
        *,
        health: SessionHealthStore,
        cache: GenericRequestCache,
        tokens: TokenLifecycleManager,
        user_cache: UserRecordCache,
        session_tokens: LocalSessionTokenStore,
        bootstrap_timeout: float = BOOTSTRAP_TIMEOUT_SECONDS,
        revocation_poll_interval: float = REVOCATION_POLL_INTERVAL_SECONDS,
        inactivity_check_interval: float = INACTIVITY_CHECK_INTERVAL_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.provider = provider
        self.health = health
        self.cache = cache
        self.tokens = tokens
        self.user_cache = user_cache
        self.session_tokens = session_tokens
        self.bootstrap_timeout = bootstrap_timeout
        self._monotonic = monotonic

        self.revocation = RevocationWatcher(
            provider,
            session_tokens,
            on_forced_logout=self._on_revoked,
            on_deactivated=self._on_deactivated,
            poll_interval=revocation_poll_interval,
            sleep=sleep,
        )
        self.inactivity = InactivityMonitor(
            health,
            self._on_idle_timeout,
            check_interval=inactivity_check_interval,
            sleep=sleep,
        )
        if tokens.on_refresh_rejected is None:
            tokens.on_refresh_rejected = self._on_refresh_rejected

        self.current: Optional[CachedUserRecord] = None
        self.loading = True
        self._loading_since: Optional[float] = monotonic()
        self._generation = 0
        self._watch_generation: Optional[int] = None
        self._listeners: List[IdentityListener] = []
        self._orphans: Set[asyncio.Task] = set()

    # -- reactive surface -----------------------------------------------------

    @property
    def generation(self) -> int:
        return self._generation

    def subscribe(self, listener: IdentityListener) -> Callable[[], None]:
        """Call ``listener(identity, reason)`` on every identity change."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, reason: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(self.current, reason)
            except Exception as exc:
                logger.error(
                    "identity_listener_failed",
                    reason=reason,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )

    def _set_current(self, record: Optional[CachedUserRecord], reason: str) -> None:
        self.current = record
        self._notify(reason)

    def _set_loading(self, loading: bool) -> None:
        self.loading = loading
        self._loading_since = self._monotonic() if loading else None

    def loading_stuck(self) -> bool:
        """True once loading has lasted longer than the bootstrap timeout."""
        if not self.loading or self._loading_since is None:
            return False
        return self._monotonic() - self._loading_since > self.bootstrap_timeout

    def _begin(self, lifecycle: str) -> int:
        self._generation += 1
        lifecycle_id = bind_lifecycle_id()
        logger.debug(
            "session_lifecycle_started",
            lifecycle=lifecycle,
            generation=self._generation,
            lifecycle_id=lifecycle_id,
        )
        return self._generation

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation

    # -- bootstrap ------------------------------------------------------------

    async def start(self) -> Optional[CachedUserRecord]:
        """Restore an existing session, bounded by the bootstrap timeout.

        On timeout the system assumes logged-out; the abandoned attempt is
        left to finish and its result is discarded.
        """
        generation = self._begin("bootstrap")
        self._set_loading(True)
        task = asyncio.ensure_future(self._bootstrap(generation))
        try:
            done, _ = await asyncio.wait({task}, timeout=self.bootstrap_timeout)
            if not done:
                logger.warning(
                    "session_bootstrap_timeout", timeout_seconds=self.bootstrap_timeout
                )
                self._orphans.add(task)
                task.add_done_callback(self._discard_orphan)
                self._generation += 1
                self._set_current(None, "bootstrap_timeout")
                return None
            return task.result()
        except AuthError as exc:
            if self._is_current(generation):
                await self._handle_bootstrap_error(exc)
            return None
        finally:
            if self._is_current(generation) or not task.done():
                self._set_loading(False)

    async def _bootstrap(self, generation: int) -> Optional[CachedUserRecord]:
        session = await self.tokens.get_session()
        if session is None:
            if self._is_current(generation):
                self._set_current(None, "no_session")
            logger.info("session_bootstrap_completed", signed_in=False)
            return None

        record = await self.user_cache.resolve(session.user)
        if not self._is_current(generation):
            logger.debug("session_bootstrap_discarded", generation=generation)
            return None
        if not await self._activate(record, generation, "bootstrap"):
            return None
        logger.info(
            "session_bootstrap_completed",
            signed_in=True,
            identity_id=record.identity_id,
            role=record.role.value,
        )
        return record

    def _discard_orphan(self, task: asyncio.Task) -> None:
        self._orphans.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.info(
                "session_bootstrap_late_failure",
                error=str(exc),
                error_type=type(exc).__name__,
            )

    async def _handle_bootstrap_error(self, exc: AuthError) -> None:
        logger.warning("session_bootstrap_failed", kind=exc.kind.value, error=exc.message)
        if exc.kind is AuthErrorKind.TRANSIENT:
            # Keep the stored session; the next start can pick it up
            self._set_current(None, "bootstrap_failed")
            return
        if exc.detail.get("reason") == "corrupt_session_blob":
            self.health.recover_and_clear()
        await self._clear_local_state()
        self._set_current(None, exc.kind.value)

    async def _activate(
        self, record: CachedUserRecord, generation: int, reason: str
    ) -> bool:
        """Start both watchers, then publish ``record``.

        Returns False, with any watcher it started stopped again, when the
        lifecycle was superseded while the watchers were starting.
        """
        self._watch_generation = generation
        await self.revocation.start(record.identity_id)
        if self._is_current(generation):
            await self.inactivity.start()
        if not self._is_current(generation):
            if self._watch_generation == generation:
                await self._stop_watchers()
            logger.debug("session_activation_discarded", generation=generation)
            return False
        self._set_current(record, reason)
        return True

    # -- sign in / sign out ---------------------------------------------------

    async def sign_in(self, email: str, password: str) -> Optional[CachedUserRecord]:
        """Authenticate and resolve the identity.

        Raises ``LockoutError`` instead of the credential error once repeated
        failures trip the lockout, ``BannedError`` for a banned account, and
        any other ``AuthError`` unchanged. Returns None if another lifecycle
        superseded this one while it was in flight.
        """
        generation = self._begin("sign_in")
        await self._stop_watchers()
        self.cache.invalidate()

        try:
            session = await self.provider.sign_in(email, password)
        except AuthError as exc:
            if exc.kind is AuthErrorKind.INVALID_CREDENTIALS and self.health.record_failure():
                failed = self.health.get_health().failed_attempts
                logger.warning("sign_in_locked_out", failed_attempts=failed)
                raise LockoutError(
                    "too many failed sign-in attempts",
                    detail={"failed_attempts": failed},
                ) from exc
            logger.info("sign_in_failed", kind=exc.kind.value)
            raise

        if not self._is_current(generation):
            return None
        self._set_loading(True)
        try:
            try:
                await self.session_tokens.issue()
            except AuthError as exc:
                # Supersession detection is unavailable for this login
                logger.warning("session_token_issue_failed", kind=exc.kind.value, error=exc.message)

            try:
                record = await self.user_cache.resolve(session.user)
            except AuthError as exc:
                logger.warning("sign_in_resolution_failed", kind=exc.kind.value, error=exc.message)
                if self._is_current(generation):
                    await self._clear_local_state()
                    self._set_current(None, exc.kind.value)
                raise

            if not self._is_current(generation):
                logger.debug("sign_in_discarded", generation=generation)
                return None

            self.health.record_success()
            self.health.update_last_activity()
            if not await self._activate(record, generation, "signed_in"):
                return None
            await self._record_activity(
                record.identity_id, "user_login", {"email": record.email}
            )
            logger.info("sign_in_completed", identity_id=record.identity_id, role=record.role.value)
            return record
        finally:
            if self._is_current(generation):
                self._set_loading(False)

    async def sign_out(self) -> None:
        self._begin("sign_out")
        record = self.current
        await self._stop_watchers()
        if record is not None:
            await self._record_activity(record.identity_id, "user_logout")
        await self.session_tokens.clear(remote=record is not None)
        await self.provider.sign_out()
        await self._clear_local_state()
        self._set_current(None, "signed_out")
        logger.info("sign_out_completed", identity_id=record.identity_id if record else None)

    async def reset_session(self) -> int:
        """Manual hard reset for stuck loading states. Returns keys purged."""
        self._begin("reset")
        await self._stop_watchers()
        removed = self.health.recover_and_clear()
        await self.session_tokens.clear(remote=False)
        self.user_cache.clear()
        self.cache.invalidate()
        self.health.clear_last_activity()
        self._set_current(None, "reset")
        self._set_loading(False)
        return removed

    # -- forced logout ---------------------------------------------------------

    async def _forced_logout(
        self,
        reason: str,
        *,
        generation: Optional[int],
        remote_scope: Optional[str] = None,
    ) -> bool:
        """Tear the session down once per generation.

        ``remote_scope`` None means local-only: the provider is not told.
        Returns False when this generation was already torn down.
        """
        if generation is None or not self._is_current(generation):
            logger.debug("forced_logout_skipped", reason=reason, generation=generation)
            return False
        self._generation += 1
        record = self.current
        logger.warning(
            "forced_logout",
            reason=reason,
            remote=remote_scope is not None,
            identity_id=record.identity_id if record else None,
        )
        await self._stop_watchers()
        if remote_scope is not None:
            await self.provider.sign_out(scope=remote_scope)
        await self._clear_local_state()
        self._set_current(None, reason)
        return True

    async def _on_revoked(self, reason: str, remote: bool) -> None:
        await self._forced_logout(
            reason,
            generation=self._watch_generation,
            remote_scope="global" if remote else None,
        )

    async def _on_idle_timeout(self) -> None:
        record = self.current
        if record is not None and self._watch_generation == self._generation:
            await self._record_activity(
                record.identity_id, "user_logout", {"reason": "inactivity"}
            )
        await self._forced_logout(
            "inactivity", generation=self._watch_generation, remote_scope="local"
        )

    async def _on_refresh_rejected(self, exc: AuthError) -> None:
        if self.current is None:
            return
        await self._forced_logout("session_expired", generation=self._watch_generation)

    async def _on_deactivated(self, identity_id: str) -> None:
        self.user_cache.mark_inactive(identity_id)
        if self.current is not None and self.current.identity_id == identity_id:
            self.current.is_active = False
            self._notify("deactivated")

    # -- shared teardown ---------------------------------------------------------

    async def _stop_watchers(self) -> None:
        self._watch_generation = None
        await self.revocation.stop()
        await self.inactivity.stop()

    async def _clear_local_state(self) -> None:
        await self.session_tokens.clear(remote=False)
        self.health.purge_auth_artifacts()
        self.health.clear_last_activity()
        self.user_cache.clear()
        self.cache.invalidate()

    async def _record_activity(
        self, identity_id: str, action: str, details: Optional[dict] = None
    ) -> None:
        try:
            await self.provider.record_activity(identity_id, action, details)
        except AuthError as exc:
            logger.warning(
                "activity_log_failed", action=action, kind=exc.kind.value, error=exc.message
            )

    # -- UI entry points --------------------------------------------------------

    def record_interaction(self, event_type: str) -> bool:
        return self.inactivity.record_event(event_type)

    async def on_visibility_change(self, visible: bool) -> None:
        if not visible or self.current is None:
            return
        if await self.inactivity.on_visibility_regained():
            return
        await self.tokens.on_visibility_regained()

    async def get_valid_access_token(self) -> Optional[str]:
        return await self.tokens.get_valid_access_token()

    async def get_fresh_access_token(self) -> Optional[str]:
        return await self.tokens.get_fresh_access_token()

    # -- cache primitives -------------------------------------------------------

    async def cached_query(
        self,
        key: str,
        fetch: Callable[[], Awaitable[Any]],
        *,
        ttl: CacheTTL = "default",
        force_refresh: bool = False,
    ) -> Any:
        return await self.cache.cached_query(key, fetch, ttl=ttl, force_refresh=force_refresh)

    async def batched_query(
        self, key: str, fetch: Callable[[], Awaitable[Any]], *, ttl: CacheTTL = "default"
    ) -> Any:
        return await self.cache.batched_query(key, fetch, ttl=ttl)

    def invalidate_cache(self, pattern: Union[str, Pattern[str], None] = None) -> int:
        return self.cache.invalidate(pattern)

    def invalidate_table(self, table: str) -> int:
        return self.cache.invalidate_table(table)

    # -- shutdown ---------------------------------------------------------------

    async def stop(self) -> None:
        self._generation += 1
        await self._stop_watchers()
        await self.cache.close()
        orphans, self._orphans = list(self._orphans), set()
        await cancel_tasks(orphans)
        logger.info("session_supervisor_stopped")
