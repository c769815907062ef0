import json

import pytest

from hrsession.service.health import SessionHealthStore
from hrsession.storage.models import SessionHealth


class TestFailureCounter:
    """Sign-in failure counting and the recovery signal."""

    def test_third_failure_signals_recovery_after_cooldown(self, health, clock):
        """Threshold reached with the cooldown long past signals on the 3rd call."""
        clock.advance(60)
        assert health.record_failure() is False
        assert health.record_failure() is False
        assert health.record_failure() is True

    def test_every_later_failure_keeps_signalling(self, health, clock):
        clock.advance(60)
        for _ in range(3):
            health.record_failure()
        assert health.record_failure() is True
        clock.advance(1)
        assert health.record_failure() is True
        assert health.get_health().failed_attempts == 5

    def test_success_resets_the_signal(self, health, clock):
        clock.advance(60)
        for _ in range(3):
            health.record_failure()
        health.record_success()
        assert health.get_health() == SessionHealth()
        assert health.record_failure() is False

    def test_cooldown_after_recovery_suppresses_signal(self, health, clock):
        """Within 5 seconds of a recovery the threshold alone does not signal."""
        health.recover_and_clear()
        clock.advance(1)
        results = [health.record_failure() for _ in range(3)]
        assert results == [False, False, False]
        clock.advance(5)
        assert health.record_failure() is True

    def test_time_alone_never_resets_counter(self, health, clock):
        health.record_failure()
        health.record_failure()
        clock.advance(24 * 3600)
        assert health.get_health().failed_attempts == 2

    def test_failure_stamps_last_attempt(self, health, clock):
        clock.advance(10)
        health.record_failure()
        assert health.get_health().last_attempt == clock.now

    def test_health_is_persisted_in_camel_case(self, health, state, keys):
        health.record_failure()
        stored = json.loads(state.get(keys.session_health))
        assert stored["failedAttempts"] == 1
        assert set(stored) == {"failedAttempts", "lastAttempt", "lastRecovery"}

    def test_corrupt_record_reads_as_default(self, health, state, keys):
        state.set(keys.session_health, "{not json")
        assert health.get_health() == SessionHealth()
        assert health.record_failure() is False
        assert health.get_health().failed_attempts == 1

    def test_negative_count_is_clamped(self, health, state, keys):
        state.set(keys.session_health, json.dumps({"failedAttempts": -4}))
        assert health.get_health().failed_attempts == 0


class TestRecoverAndClear:
    def test_purges_auth_keys_and_keeps_bookkeeping(self, health, state, keys, clock):
        state.set(keys.auth_token, "{}")
        state.set(keys.session_token, "tok")
        state.set("sb-project-auth-token", "{}")
        state.set("unrelated", "keep")
        health.update_last_activity()
        health.record_failure()

        removed = health.recover_and_clear()

        assert removed == 3
        assert sorted(state.keys()) == sorted(
            [keys.session_health, keys.last_activity, "unrelated"]
        )
        record = health.get_health()
        assert record.failed_attempts == 0
        assert record.last_recovery == clock.now

    def test_default_purge_covers_own_namespace_only(self, state, keys):
        store = SessionHealthStore(state, keys=keys)
        state.set(keys.auth_token, "{}")
        state.set("sb-other", "{}")
        assert store.recover_and_clear() == 1
        assert state.get("sb-other") == "{}"


class TestInactivity:
    def test_fresh_activity_is_not_idle(self, health):
        health.update_last_activity()
        assert health.is_inactivity_exceeded() is False

    def test_exceeded_at_exactly_eight_minutes(self, health, clock):
        health.update_last_activity()
        clock.advance(8 * 60 - 1)
        assert health.is_inactivity_exceeded() is False
        clock.advance(1)
        assert health.is_inactivity_exceeded() is True

    def test_missing_stamp_reads_as_now(self, health, clock):
        assert health.get_last_activity() == clock.now
        assert health.idle_seconds() == 0

    @pytest.mark.parametrize("raw", ["", "yesterday"])
    def test_unusable_stamp_reads_as_now(self, health, state, keys, clock, raw):
        state.set(keys.last_activity, raw)
        assert health.get_last_activity() == clock.now
