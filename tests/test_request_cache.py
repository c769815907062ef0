import asyncio
import gc
import re

import pytest

from hrsession.service.request_cache import GenericRequestCache, create_cache_key


class CountingFetch:
    def __init__(self, value=None, *, delay=0.0, error=None):
        self.calls = 0
        self.value = value
        self.delay = delay
        self.error = error

    async def __call__(self):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if self.value is None:
            return {"call": self.calls}
        return self.value


@pytest.fixture
def cache(clock):
    return GenericRequestCache(clock=clock)


class TestCachedQuery:
    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_fetch(self, cache):
        """Two components reading profiles:42 in the same tick see one fetch."""
        fetch = CountingFetch({"id": 42, "name": "A"}, delay=0.05)

        first, second = await asyncio.gather(
            cache.cached_query("profiles:42", fetch),
            cache.cached_query("profiles:42", fetch),
        )

        assert fetch.calls == 1
        assert first == {"id": 42, "name": "A"}
        assert first is second

    @pytest.mark.asyncio
    async def test_many_concurrent_callers(self, cache):
        fetch = CountingFetch(delay=0.01)
        results = await asyncio.gather(
            *[cache.cached_query("employees:list", fetch) for _ in range(25)]
        )
        assert fetch.calls == 1
        assert all(r is results[0] for r in results)

    @pytest.mark.asyncio
    async def test_fresh_entry_skips_fetch(self, cache, clock):
        fetch = CountingFetch()
        await cache.cached_query("leave:1", fetch)
        clock.advance(29)
        await cache.cached_query("leave:1", fetch)
        assert fetch.calls == 1

    @pytest.mark.asyncio
    async def test_expired_entry_triggers_exactly_one_fetch(self, cache, clock):
        fetch = CountingFetch()
        await cache.cached_query("leave:1", fetch, ttl="short")
        clock.advance(6)
        again = await asyncio.gather(
            cache.cached_query("leave:1", fetch, ttl="short"),
            cache.cached_query("leave:1", fetch, ttl="short"),
        )
        assert fetch.calls == 2
        assert again[0] == {"call": 2}

    @pytest.mark.asyncio
    async def test_failure_is_not_cached_and_clears_marker(self, cache):
        failing = CountingFetch(error=RuntimeError("boom"), delay=0.01)
        results = await asyncio.gather(
            cache.cached_query("payroll:3", failing),
            cache.cached_query("payroll:3", failing),
            return_exceptions=True,
        )
        assert failing.calls == 1
        assert all(isinstance(r, RuntimeError) for r in results)
        assert cache.stats().pending_requests == 0
        assert cache.get("payroll:3") is None

        ok = CountingFetch({"ok": True})
        assert await cache.cached_query("payroll:3", ok) == {"ok": True}
        assert ok.calls == 1

    @pytest.mark.asyncio
    async def test_force_refresh_bypasses_fresh_entry(self, cache):
        fetch = CountingFetch()
        await cache.cached_query("tasks:all", fetch)
        refreshed = await cache.cached_query("tasks:all", fetch, force_refresh=True)
        assert fetch.calls == 2
        assert refreshed == {"call": 2}
        assert cache.get("tasks:all") == {"call": 2}

    @pytest.mark.asyncio
    async def test_numeric_ttl_is_seconds(self, cache, clock):
        fetch = CountingFetch()
        await cache.cached_query("warnings:7", fetch, ttl=2)
        clock.advance(1.5)
        assert cache.get("warnings:7") == {"call": 1}
        clock.advance(1)
        assert cache.get("warnings:7") is None

    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_cancel_shared_fetch(self, cache):
        fetch = CountingFetch({"v": 1}, delay=0.05)
        loser = asyncio.ensure_future(cache.cached_query("k:1", fetch))
        winner = asyncio.ensure_future(cache.cached_query("k:1", fetch))
        await asyncio.sleep(0.01)
        loser.cancel()
        assert await winner == {"v": 1}
        assert fetch.calls == 1

    @pytest.mark.asyncio
    async def test_failure_after_every_caller_cancelled_is_retrieved(self, cache):
        reported = []
        asyncio.get_running_loop().set_exception_handler(
            lambda loop, context: reported.append(context)
        )
        failing = CountingFetch(error=RuntimeError("boom"), delay=0.02)
        caller = asyncio.ensure_future(cache.cached_query("k:2", failing))
        await asyncio.sleep(0.005)
        caller.cancel()
        with pytest.raises(asyncio.CancelledError):
            await caller

        await asyncio.sleep(0.05)
        gc.collect()

        assert failing.calls == 1
        assert cache.stats().pending_requests == 0
        assert reported == []


class TestTtlClasses:
    def test_named_classes(self, cache):
        assert cache.ttl_seconds("short") == 5
        assert cache.ttl_seconds("default") == 30
        assert cache.ttl_seconds("long") == 300

    def test_unknown_class_rejected(self, cache):
        with pytest.raises(ValueError):
            cache.ttl_seconds("forever")

    def test_bool_rejected(self, cache):
        with pytest.raises(TypeError):
            cache.ttl_seconds(True)

    def test_entry_expires_lazily_on_read(self, cache, clock):
        cache.set("a:1", "x", "short")
        assert cache.stats().size == 1
        clock.advance(5.5)
        assert cache.get("a:1") is None
        assert cache.stats().size == 0


class TestBatchedQuery:
    @pytest.mark.asyncio
    async def test_burst_is_flushed_together_with_per_key_dedup(self, cache):
        profiles = CountingFetch({"kind": "profiles"})
        leave = CountingFetch({"kind": "leave"})

        results = await asyncio.gather(
            cache.batched_query("profiles:1", profiles),
            cache.batched_query("profiles:1", profiles),
            cache.batched_query("leave:1", leave),
        )

        assert results[0] is results[1]
        assert results[2] == {"kind": "leave"}
        assert profiles.calls == 1
        assert leave.calls == 1
        assert cache.get("profiles:1") == {"kind": "profiles"}

    @pytest.mark.asyncio
    async def test_nothing_runs_before_window_elapses(self, clock):
        cache = GenericRequestCache(clock=clock, batch_window=0.05)
        fetch = CountingFetch()
        pending = asyncio.ensure_future(cache.batched_query("x:1", fetch))
        await asyncio.sleep(0.01)
        assert fetch.calls == 0
        assert await pending == {"call": 1}
        assert fetch.calls == 1

    @pytest.mark.asyncio
    async def test_fresh_entry_answers_without_batching(self, cache):
        cache.set("x:1", "cached")
        fetch = CountingFetch()
        assert await cache.batched_query("x:1", fetch) == "cached"
        assert fetch.calls == 0

    @pytest.mark.asyncio
    async def test_failure_reaches_every_batched_caller(self, cache):
        failing = CountingFetch(error=LookupError("gone"))
        results = await asyncio.gather(
            cache.batched_query("x:2", failing),
            cache.batched_query("x:2", failing),
            return_exceptions=True,
        )
        assert failing.calls == 1
        assert all(isinstance(r, LookupError) for r in results)

    @pytest.mark.asyncio
    async def test_close_cancels_queued_calls(self, clock):
        cache = GenericRequestCache(clock=clock, batch_window=10)
        pending = asyncio.ensure_future(cache.batched_query("x:3", CountingFetch()))
        await asyncio.sleep(0)
        await cache.close()
        with pytest.raises(asyncio.CancelledError):
            await pending


class TestInvalidation:
    def seed(self, cache):
        cache.set("employees:1", "e1")
        cache.set('employees:{"dept":"hr"}', "e-hr")
        cache.set("employees_archive:1", "old")
        cache.set("leave:1", "l1")

    def test_invalidate_table_only_touches_that_table(self, cache):
        self.seed(cache)
        assert cache.invalidate_table("employees") == 2
        assert cache.get("employees:1") is None
        assert cache.get("employees_archive:1") == "old"
        assert cache.get("leave:1") == "l1"

    def test_invalidate_all(self, cache):
        self.seed(cache)
        assert cache.invalidate() == 4
        assert cache.stats().size == 0

    def test_invalidate_string_pattern(self, cache):
        self.seed(cache)
        assert cache.invalidate(":1$") == 3
        assert cache.stats().keys == ['employees:{"dept":"hr"}']

    def test_invalidate_compiled_pattern(self, cache):
        self.seed(cache)
        assert cache.invalidate(re.compile("^leave:")) == 1

    @pytest.mark.asyncio
    async def test_invalidated_inflight_result_is_not_written_back(self, cache):
        slow = CountingFetch({"old": True}, delay=0.03)
        inflight = asyncio.ensure_future(cache.cached_query("employees:9", slow))
        await asyncio.sleep(0.005)
        cache.invalidate_table("employees")

        fresh = CountingFetch({"new": True})
        assert await cache.cached_query("employees:9", fresh) == {"new": True}
        assert await inflight == {"old": True}
        assert cache.get("employees:9") == {"new": True}

    def test_clear_all_and_stats(self, cache):
        self.seed(cache)
        stats = cache.stats()
        assert stats.size == 4
        assert "leave:1" in stats.keys
        cache.clear_all()
        assert cache.stats().size == 0


class TestCacheKeys:
    def test_params_order_does_not_matter(self):
        assert create_cache_key("employees", {"b": 2, "a": 1}) == create_cache_key(
            "employees", {"a": 1, "b": 2}
        )

    def test_key_is_prefixed_by_resource(self):
        assert create_cache_key("leave", {"id": 3}) == 'leave:{"id": 3}'
        assert create_cache_key("leave") == "leave:{}"
