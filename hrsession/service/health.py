"""Persisted session health: sign-in failure counter, recovery cooldown and
last-activity stamp.

The failure counter only goes back to zero through ``record_success`` or
``recover_and_clear``; elapsed time alone never resets it. Once the threshold
has been crossed and the cooldown has elapsed, every further failure keeps
signalling that recovery is needed.
"""

from __future__ import annotations

import json
import time
from typing import Callable, Iterable, Optional

from hrsession.logging import get_logger
from hrsession.storage.models import SessionHealth
from hrsession.storage.state import StateKeys, StateStore, purge_prefixes

logger = get_logger(__name__)

DEFAULT_MAX_FAILED_ATTEMPTS = 3
DEFAULT_RECOVERY_COOLDOWN_SECONDS = 5.0
DEFAULT_INACTIVITY_TIMEOUT_SECONDS = 8 * 60.0


class SessionHealthStore:
    def __init__(
        self,
        state: StateStore,
        *,
        keys: Optional[StateKeys] = None,
        purge: Optional[Iterable[str]] = None,
        max_failed_attempts: int = DEFAULT_MAX_FAILED_ATTEMPTS,
        recovery_cooldown: float = DEFAULT_RECOVERY_COOLDOWN_SECONDS,
        inactivity_timeout: float = DEFAULT_INACTIVITY_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.state = state
        self.keys = keys or StateKeys()
        self.purge = tuple(purge) if purge is not None else (self.keys.auth_prefix,)
        self.max_failed_attempts = max_failed_attempts
        self.recovery_cooldown = recovery_cooldown
        self.inactivity_timeout = inactivity_timeout
        self._clock = clock

    def get_health(self) -> SessionHealth:
        raw = self.state.get(self.keys.session_health)
        if not raw:
            return SessionHealth()
        try:
            data = json.loads(raw)
            return SessionHealth.from_dict(data)
        except (json.JSONDecodeError, TypeError, ValueError, AttributeError):
            # Corrupted record - start over rather than guess
            logger.warning("session_health_corrupt", key=self.keys.session_health)
            return SessionHealth()

    def _save(self, health: SessionHealth) -> None:
        self.state.set(self.keys.session_health, json.dumps(health.to_dict()))

    def record_failure(self) -> bool:
        """Count one failed sign-in. Returns True when recovery is needed."""
        health = self.get_health()
        now = self._clock()
        health.failed_attempts += 1
        health.last_attempt = now
        self._save(health)

        needs_recovery = (
            health.failed_attempts >= self.max_failed_attempts
            and now - health.last_recovery > self.recovery_cooldown
        )
        logger.info(
            "session_failure_recorded",
            failed_attempts=health.failed_attempts,
            needs_recovery=needs_recovery,
        )
        return needs_recovery

    def record_success(self) -> None:
        self.state.remove(self.keys.session_health)

    def recover_and_clear(self) -> int:
        """Hard reset: stamp the recovery, zero the counter and purge auth artifacts.

        Returns the number of persisted keys removed.
        """
        health = self.get_health()
        health.last_recovery = self._clock()
        health.failed_attempts = 0
        self._save(health)
        return self.purge_auth_artifacts()

    def purge_auth_artifacts(self) -> int:
        """Remove every persisted key under the auth prefixes."""
        removed = purge_prefixes(self.state, self.purge)
        logger.warning("session_state_purged", keys_removed=removed)
        return removed

    def update_last_activity(self) -> None:
        self.state.set(self.keys.last_activity, repr(self._clock()))

    def get_last_activity(self) -> float:
        """Last recorded interaction; "now" when nothing usable is stored."""
        raw = self.state.get(self.keys.last_activity)
        if raw:
            try:
                return float(raw)
            except ValueError:
                pass
        return self._clock()

    def clear_last_activity(self) -> None:
        self.state.remove(self.keys.last_activity)

    def idle_seconds(self) -> float:
        return self._clock() - self.get_last_activity()

    def is_inactivity_exceeded(self) -> bool:
        return self.idle_seconds() >= self.inactivity_timeout
