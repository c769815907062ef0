"""Server-side revocation detection.

Two producers feed one queue: a push subscription on the identity's own
profile row and a fixed-interval poll of the same row. A single consumer
runs the ban / superseded / deactivated checks and calls the forced-logout
hook at most once per ``start()``.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, List, Optional

from hrsession.logging import get_logger
from hrsession.service.errors import AuthError
from hrsession.service.provider import IdentityProvider, ProfileSubscription
from hrsession.service.session_token import LocalSessionTokenStore
from hrsession.service.tasks import cancel_tasks
from hrsession.storage.models import UserProfile

logger = get_logger(__name__)

REVOCATION_POLL_INTERVAL_SECONDS = 60.0

ForcedLogoutHook = Callable[[str, bool], Awaitable[None]]
DeactivationHook = Callable[[str], Awaitable[None]]


class RevocationKind(str, Enum):
    BANNED = "banned"
    SUPERSEDED = "superseded"
    DEACTIVATED = "deactivated"


@dataclass
class RevocationEvent:
    identity_id: str
    profile: UserProfile
    source: str


class RevocationWatcher:
    def __init__(
        self,
        provider: IdentityProvider,
        session_tokens: LocalSessionTokenStore,
        *,
        on_forced_logout: ForcedLogoutHook,
        on_deactivated: Optional[DeactivationHook] = None,
        poll_interval: float = REVOCATION_POLL_INTERVAL_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.provider = provider
        self.session_tokens = session_tokens
        self.on_forced_logout = on_forced_logout
        self.on_deactivated = on_deactivated
        self.poll_interval = poll_interval
        self._sleep = sleep
        self._identity_id: Optional[str] = None
        self._queue: Optional[asyncio.Queue] = None
        self._subscription: Optional[ProfileSubscription] = None
        self._tasks: List[asyncio.Task] = []
        self._running = False
        self._terminated = False
        self._deactivation_reported = False
        self._epoch = 0

    @property
    def running(self) -> bool:
        return self._running

    @property
    def push_active(self) -> bool:
        return self._subscription is not None

    def evaluate(self, profile: UserProfile) -> Optional[RevocationKind]:
        if profile.is_banned:
            return RevocationKind.BANNED
        if self.session_tokens.is_superseded_by(profile.session_token):
            return RevocationKind.SUPERSEDED
        if not profile.is_active:
            return RevocationKind.DEACTIVATED
        return None

    async def start(self, identity_id: str) -> Callable[[], Awaitable[None]]:
        """Begin watching ``identity_id``; returns the disposer."""
        if self._running:
            logger.warning("revocation_watcher_already_running", identity_id=self._identity_id)
            return self.stop

        self._identity_id = identity_id
        self._queue = asyncio.Queue()
        self._running = True
        self._terminated = False
        self._deactivation_reported = False
        self._epoch += 1
        epoch = self._epoch

        subscription: Optional[ProfileSubscription] = None
        try:
            subscription = await self.provider.subscribe_profile(
                identity_id, self._on_push
            )
        except AuthError as exc:
            # Polling still covers this identity
            logger.warning(
                "revocation_push_unavailable",
                identity_id=identity_id,
                kind=exc.kind.value,
                error=exc.message,
            )

        if epoch != self._epoch:
            # stop() ran while the subscribe was in flight
            if subscription is not None:
                await self._close_subscription(subscription)
            logger.info("revocation_watcher_start_abandoned", identity_id=identity_id)
            return self.stop
        self._subscription = subscription

        self._tasks = [
            asyncio.create_task(self._consume()),
            asyncio.create_task(self._poll_loop()),
        ]
        logger.info(
            "revocation_watcher_started",
            identity_id=identity_id,
            push=self._subscription is not None,
            poll_interval=self.poll_interval,
        )
        return self.stop

    async def stop(self) -> None:
        if not self._running and not self._tasks:
            return
        self._running = False
        self._epoch += 1
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            await self._close_subscription(subscription)
        tasks, self._tasks = self._tasks, []
        await cancel_tasks(tasks)
        queue = self._queue
        while queue is not None and not queue.empty():
            queue.get_nowait()
            queue.task_done()
        logger.info("revocation_watcher_stopped", identity_id=self._identity_id)

    async def _close_subscription(self, subscription: ProfileSubscription) -> None:
        try:
            await subscription.close()
        except Exception as exc:
            logger.warning("revocation_unsubscribe_failed", error=str(exc))

    async def _on_push(self, profile: UserProfile) -> None:
        if not self._running or self._queue is None or profile.id != self._identity_id:
            return
        self._queue.put_nowait(RevocationEvent(profile.id, profile, "push"))

    async def poll_once(self) -> bool:
        """Fetch the profile row and enqueue it. Returns False when the read failed."""
        identity_id = self._identity_id
        if not self._running or identity_id is None or self._queue is None:
            return False
        try:
            profile = await self.provider.fetch_profile(identity_id)
        except AuthError as exc:
            logger.warning(
                "revocation_poll_failed",
                identity_id=identity_id,
                kind=exc.kind.value,
                error=exc.message,
            )
            return False
        if self._running and identity_id == self._identity_id:
            self._queue.put_nowait(RevocationEvent(identity_id, profile, "poll"))
        return True

    async def drain(self) -> None:
        """Wait until every queued event has been handled."""
        if self._running and self._queue is not None:
            await self._queue.join()

    async def _poll_loop(self) -> None:
        while self._running:
            await self._sleep(self.poll_interval)
            if not self._running:
                break
            try:
                await self.poll_once()
            except Exception as exc:
                logger.error(
                    "revocation_poll_loop_error",
                    error=str(exc),
                    error_type=type(exc).__name__,
                )

    async def _consume(self) -> None:
        queue = self._queue
        while self._running and queue is not None:
            event = await queue.get()
            try:
                await self.handle(event)
            except Exception as exc:
                logger.error(
                    "revocation_handler_error",
                    source=event.source,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
            finally:
                queue.task_done()

    async def handle(self, event: RevocationEvent) -> Optional[RevocationKind]:
        """Apply the revocation checks to one profile snapshot."""
        if self._terminated or event.identity_id != self._identity_id:
            return None

        kind = self.evaluate(event.profile)
        if kind is None:
            self._deactivation_reported = False
            return None

        if kind is RevocationKind.DEACTIVATED:
            if not self._deactivation_reported:
                self._deactivation_reported = True
                logger.warning(
                    "identity_deactivated", identity_id=event.identity_id, source=event.source
                )
                if self.on_deactivated is not None:
                    await self.on_deactivated(event.identity_id)
            return kind

        if self._terminated:
            return None
        self._terminated = True
        logger.warning(
            "identity_revoked",
            identity_id=event.identity_id,
            reason=kind.value,
            source=event.source,
        )
        await self.on_forced_logout(kind.value, kind is RevocationKind.BANNED)
        return kind
