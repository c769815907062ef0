"""Request cache shared by every read path in the application.

- TTL-keyed entries, lazily evicted on read and always replaced, never updated
- in-flight de-duplication: concurrent callers for one key share a single fetch
- a short collection window (``batched_query``) to coalesce bursts of callers
  mounting in the same tick
- pattern invalidation, plus ``invalidate_table`` for ``<table>:*`` keys

Failed fetches are never cached and always release their in-flight marker.
"""

from __future__ import annotations

import asyncio
import json
import re
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Pattern, TypeVar, Union

from hrsession.logging import get_logger
from hrsession.storage.models import CacheEntry

logger = get_logger(__name__)

T = TypeVar("T")

SHORT_TTL_SECONDS = 5.0
DEFAULT_TTL_SECONDS = 30.0
LONG_TTL_SECONDS = 5 * 60.0
BATCH_WINDOW_SECONDS = 0.01

# "short" | "default" | "long" | explicit seconds
CacheTTL = Union[str, int, float]
Fetch = Callable[[], Awaitable[T]]


def create_cache_key(resource: str, params: Optional[Dict[str, Any]] = None) -> str:
    """Normalized key: ``resource:`` followed by the params as sorted JSON."""
    return f"{resource}:{json.dumps(params or {}, sort_keys=True, default=str)}"


def _consume_result(task: asyncio.Future) -> None:
    # Waiters may all be gone; mark a failure as retrieved
    if not task.cancelled():
        task.exception()


@dataclass
class _PendingFetch:
    task: "asyncio.Future[Any]"
    # Set when an invalidation lands while the fetch is still running
    stale: bool = False


@dataclass
class _BatchedCall:
    fetch: Fetch
    ttl: CacheTTL
    future: "asyncio.Future[Any]"


@dataclass
class CacheStats:
    size: int
    keys: List[str] = field(default_factory=list)
    pending_requests: int = 0


class GenericRequestCache:
    def __init__(
        self,
        *,
        short_ttl: float = SHORT_TTL_SECONDS,
        default_ttl: float = DEFAULT_TTL_SECONDS,
        long_ttl: float = LONG_TTL_SECONDS,
        batch_window: float = BATCH_WINDOW_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._ttls = {"short": short_ttl, "default": default_ttl, "long": long_ttl}
        self.batch_window = batch_window
        self._clock = clock
        self._entries: Dict[str, CacheEntry[Any]] = {}
        self._pending: Dict[str, _PendingFetch] = {}
        self._batch_queue: Dict[str, List[_BatchedCall]] = {}
        self._batch_timer: Optional[asyncio.TimerHandle] = None
        self._flush_tasks: set[asyncio.Task] = set()

    def ttl_seconds(self, ttl: CacheTTL) -> float:
        if isinstance(ttl, bool):
            raise TypeError("ttl must be a ttl class name or a number of seconds")
        if isinstance(ttl, (int, float)):
            return float(ttl)
        try:
            return self._ttls[ttl]
        except KeyError:
            raise ValueError(f"unknown ttl class: {ttl!r}") from None

    def _fresh_entry(self, key: str) -> Optional[CacheEntry[Any]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            del self._entries[key]
            return None
        return entry

    def get(self, key: str) -> Any:
        """Cached value for ``key``, or None when absent or expired."""
        entry = self._fresh_entry(key)
        return entry.data if entry is not None else None

    def set(self, key: str, data: Any, ttl: CacheTTL = "default") -> None:
        now = self._clock()
        self._entries[key] = CacheEntry(
            data=data, timestamp=now, expires_at=now + self.ttl_seconds(ttl)
        )

    async def cached_query(
        self,
        key: str,
        fetch: Fetch,
        *,
        ttl: CacheTTL = "default",
        force_refresh: bool = False,
    ) -> Any:
        """Return the fresh cached value, join an in-flight fetch, or start one."""
        if not force_refresh:
            entry = self._fresh_entry(key)
            if entry is not None:
                return entry.data

        pending = self._pending.get(key)
        if pending is None:
            # Validate before registering so a bad ttl cannot strand a marker
            ttl_seconds = self.ttl_seconds(ttl)
            task = asyncio.ensure_future(self._run_fetch(key, fetch, ttl_seconds))
            task.add_done_callback(_consume_result)
            pending = _PendingFetch(task=task)
            self._pending[key] = pending
        # Shield so one cancelled caller does not cancel the fetch for the others
        return await asyncio.shield(pending.task)

    async def _run_fetch(self, key: str, fetch: Fetch, ttl_seconds: float) -> Any:
        try:
            result = await fetch()
        except BaseException as exc:
            self._release(key)
            if not isinstance(exc, asyncio.CancelledError):
                logger.debug("request_cache_fetch_failed", key=key, error=str(exc))
            raise
        pending = self._release(key)
        if pending is not None and not pending.stale:
            self.set(key, result, ttl_seconds)
        return result

    def _release(self, key: str) -> Optional[_PendingFetch]:
        """Drop the in-flight marker for ``key`` if it belongs to the running task.

        An invalidated fetch has already been detached, so None comes back and
        its result is not written.
        """
        current = asyncio.current_task()
        pending = self._pending.get(key)
        if pending is not None and pending.task is current:
            del self._pending[key]
            return pending
        return None

    async def batched_query(
        self, key: str, fetch: Fetch, *, ttl: CacheTTL = "default"
    ) -> Any:
        """Like ``cached_query`` but gathered into a short collection window first.

        Every key queued in the window is flushed together when it elapses and is
        resolved through ``cached_query`` on its own, with the first fetch queued
        for that key.
        """
        entry = self._fresh_entry(key)
        if entry is not None:
            return entry.data

        loop = asyncio.get_running_loop()
        future: asyncio.Future[Any] = loop.create_future()
        self._batch_queue.setdefault(key, []).append(
            _BatchedCall(fetch=fetch, ttl=ttl, future=future)
        )
        if self._batch_timer is None:
            self._batch_timer = loop.call_later(self.batch_window, self._flush_batch)
        return await future

    def _flush_batch(self) -> None:
        self._batch_timer = None
        queued = self._batch_queue
        self._batch_queue = {}
        if len(queued) > 1:
            logger.debug("request_cache_batch_flush", keys=len(queued))
        for key, calls in queued.items():
            task = asyncio.ensure_future(self._flush_key(key, calls))
            self._flush_tasks.add(task)
            task.add_done_callback(self._flush_tasks.discard)

    async def _flush_key(self, key: str, calls: List[_BatchedCall]) -> None:
        first = calls[0]
        try:
            result = await self.cached_query(key, first.fetch, ttl=first.ttl)
        except asyncio.CancelledError:
            for call in calls:
                call.future.cancel()
            raise
        except Exception as exc:
            for call in calls:
                if not call.future.done():
                    call.future.set_exception(exc)
            return
        for call in calls:
            if not call.future.done():
                call.future.set_result(result)

    def invalidate(self, pattern: Union[str, Pattern[str], None] = None) -> int:
        """Drop every entry (no pattern) or those whose key matches ``pattern``.

        In-flight fetches for affected keys stay shared with their current
        callers but will not write their result back. Returns the count of
        entries removed.
        """
        if pattern is None:
            removed = len(self._entries)
            self._entries.clear()
            for pending in self._pending.values():
                pending.stale = True
            self._pending.clear()
            return removed

        regex = re.compile(pattern) if isinstance(pattern, str) else pattern
        doomed = [key for key in self._entries if regex.search(key)]
        for key in doomed:
            del self._entries[key]
        for key in [k for k in self._pending if regex.search(k)]:
            self._pending.pop(key).stale = True
        return len(doomed)

    def invalidate_table(self, table: str) -> int:
        return self.invalidate(re.compile(f"^{re.escape(table)}:"))

    def stats(self) -> CacheStats:
        return CacheStats(
            size=len(self._entries),
            keys=list(self._entries.keys()),
            pending_requests=len(self._pending),
        )

    def clear_all(self) -> None:
        self.invalidate()

    async def close(self) -> None:
        """Cancel the batch timer and any flushes still running."""
        if self._batch_timer is not None:
            self._batch_timer.cancel()
            self._batch_timer = None
        for calls in self._batch_queue.values():
            for call in calls:
                call.future.cancel()
        self._batch_queue = {}
        tasks = list(self._flush_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
