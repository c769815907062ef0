import asyncio

import pytest

from hrsession.service.errors import (
    BannedError,
    ProfileAccessError,
    SessionExpiredError,
    TransientAuthError,
)
from hrsession.service.user_cache import UserRecordCache
from hrsession.storage.models import Role


@pytest.fixture
def user_cache(provider, health, clock):
    return UserRecordCache(provider, health, clock=clock, wait=0.05)


class TestResolve:
    @pytest.mark.asyncio
    async def test_builds_record_from_profile(self, user_cache, provider):
        user = provider.add_user("hr@example.com", "pw", role="hr", employee_id="emp-7")
        provider.issue_session(user)

        record = await user_cache.resolve(user)

        assert record.identity_id == user.id
        assert record.email == "hr@example.com"
        assert record.role is Role.HR
        assert record.linked_record_id == "emp-7"
        assert record.is_active is True

    @pytest.mark.asyncio
    async def test_claims_role_wins_over_profile(self, user_cache, provider):
        user = provider.add_user("a@example.com", "pw", role="staff", claim_role="admin")
        provider.issue_session(user)
        record = await user_cache.resolve(user)
        assert record.role is Role.ADMIN
        assert record.has_role("admin", "hr")
        assert not record.has_role(Role.STAFF)

    @pytest.mark.asyncio
    async def test_cached_for_sixty_seconds(self, user_cache, provider, clock):
        user = provider.add_user("s@example.com", "pw")
        provider.issue_session(user)
        first = await user_cache.resolve(user)
        clock.advance(59)
        assert await user_cache.resolve(user) is first
        assert provider.calls.fetch_profile == 1

        clock.advance(1)
        second = await user_cache.resolve(user)
        assert second is not first
        assert provider.calls.fetch_profile == 2

    @pytest.mark.asyncio
    async def test_success_clears_failure_record(self, user_cache, provider, health):
        health.record_failure()
        user = provider.add_user("s@example.com", "pw")
        provider.issue_session(user)
        await user_cache.resolve(user)
        assert health.get_health().failed_attempts == 0


class TestCooperativeWait:
    @pytest.mark.asyncio
    async def test_second_caller_waits_instead_of_fetching(self, user_cache, provider):
        user = provider.add_user("s@example.com", "pw")
        provider.issue_session(user)
        provider.profile_delay = 0.01

        first, second = await asyncio.gather(
            user_cache.resolve(user), user_cache.resolve(user)
        )

        assert first is second
        assert provider.calls.fetch_profile == 1

    @pytest.mark.asyncio
    async def test_waiter_fetches_itself_when_first_is_slow(self, user_cache, provider):
        user = provider.add_user("s@example.com", "pw")
        provider.issue_session(user)
        provider.profile_delay = 0.2

        await asyncio.gather(user_cache.resolve(user), user_cache.resolve(user))

        assert provider.calls.fetch_profile == 2


class TestBanAndDegradation:
    @pytest.mark.asyncio
    async def test_banned_profile_signs_out_and_raises(self, user_cache, provider, state, keys):
        user = provider.add_user("b@example.com", "pw")
        provider.issue_session(user)
        provider.profiles[user.id].banned_at = "2024-05-01T10:00:00Z"

        with pytest.raises(BannedError):
            await user_cache.resolve(user)

        assert provider.calls.sign_out == ["global"]
        assert state.get(keys.auth_token) is None
        assert user_cache.get_cached(user.id) is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [ProfileAccessError("row policy"), TransientAuthError("timeout")],
    )
    async def test_profile_read_failure_degrades(self, user_cache, provider, health, error):
        user = provider.add_user("d@example.com", "pw", claim_role="hr", employee_id="e1")
        provider.issue_session(user)
        health.record_failure()
        provider.fail_profile = error

        record = await user_cache.resolve(user)

        assert record.role is Role.HR
        assert record.is_active is False
        assert record.linked_record_id is None
        assert user_cache.get_cached(user.id) is None
        assert health.get_health().failed_attempts == 1

    @pytest.mark.asyncio
    async def test_degraded_record_defaults_to_staff(self, user_cache, provider):
        user = provider.add_user("d@example.com", "pw")
        provider.fail_profile = ProfileAccessError("denied")
        record = await user_cache.resolve(user)
        assert record.role is Role.STAFF

    @pytest.mark.asyncio
    async def test_authoritative_failure_propagates(self, user_cache, provider):
        user = provider.add_user("d@example.com", "pw")
        provider.fail_profile = SessionExpiredError("jwt expired")
        with pytest.raises(SessionExpiredError):
            await user_cache.resolve(user)


class TestInvalidation:
    @pytest.mark.asyncio
    async def test_mark_inactive_and_clear(self, user_cache, provider):
        user = provider.add_user("s@example.com", "pw")
        provider.issue_session(user)
        record = await user_cache.resolve(user)

        assert user_cache.mark_inactive(user.id) is record
        assert record.is_active is False

        user_cache.clear()
        assert user_cache.get_cached(user.id) is None
        assert user_cache.mark_inactive(user.id) is None
