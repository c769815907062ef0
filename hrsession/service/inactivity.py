from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, List

from hrsession.logging import get_logger
from hrsession.service.health import SessionHealthStore
from hrsession.service.tasks import cancel_tasks

logger = get_logger(__name__)

INACTIVITY_CHECK_INTERVAL_SECONDS = 30.0

INTERACTION_EVENTS = frozenset(
    {"mousedown", "mousemove", "keydown", "scroll", "touchstart", "click"}
)


class InactivityMonitor:
    """Idle-timeout logout.

    Interaction events stamp the persisted last-activity time. A recurring
    check, and an immediate one on visibility regain, fires ``on_timeout``
    exactly once per ``start()``.
    """

    def __init__(
        self,
        health: SessionHealthStore,
        on_timeout: Callable[[], Awaitable[None]],
        *,
        check_interval: float = INACTIVITY_CHECK_INTERVAL_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.health = health
        self.on_timeout = on_timeout
        self.check_interval = check_interval
        self._sleep = sleep
        self._tasks: List[asyncio.Task] = []
        self._running = False
        self._logging_out = False

    @property
    def running(self) -> bool:
        return self._running

    def record_event(self, event_type: str) -> bool:
        if event_type not in INTERACTION_EVENTS:
            return False
        self.health.update_last_activity()
        return True

    async def start(self) -> Callable[[], Awaitable[None]]:
        if self._running:
            return self.stop
        self._running = True
        self._logging_out = False
        self._tasks = [asyncio.create_task(self._run_loop())]
        logger.info(
            "inactivity_monitor_started",
            timeout_seconds=self.health.inactivity_timeout,
            check_interval=self.check_interval,
        )
        return self.stop

    async def stop(self) -> None:
        if not self._running and not self._tasks:
            return
        self._running = False
        tasks, self._tasks = self._tasks, []
        await cancel_tasks(tasks)
        logger.info("inactivity_monitor_stopped")

    async def check(self) -> bool:
        """Run one idle check; returns True when it triggered the logout."""
        if not self._running or self._logging_out:
            return False
        if not self.health.is_inactivity_exceeded():
            return False
        self._logging_out = True
        logger.info("inactivity_timeout", idle_seconds=self.health.idle_seconds())
        await self.on_timeout()
        return True

    async def on_visibility_regained(self) -> bool:
        return await self.check()

    async def _run_loop(self) -> None:
        while self._running:
            await self._sleep(self.check_interval)
            try:
                if await self.check():
                    break
            except Exception as exc:
                logger.error(
                    "inactivity_check_error",
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
