"""Resolve and cache the signed-in identity's profile record.

De-duplication here is cooperative only: a single in-progress marker and a
flat wait, then one more look at the cache. The generic request cache does
full promise sharing; this one intentionally does not.
"""

from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable, Dict, Optional

from hrsession.logging import get_logger
from hrsession.service.errors import AuthError, AuthErrorKind, BannedError
from hrsession.service.health import SessionHealthStore
from hrsession.service.provider import IdentityProvider
from hrsession.storage.models import CachedUserRecord, IdentityUser, Role, UserProfile

logger = get_logger(__name__)

USER_CACHE_TTL_SECONDS = 60.0
COOPERATIVE_WAIT_SECONDS = 0.5


class UserRecordCache:
    def __init__(
        self,
        provider: IdentityProvider,
        health: SessionHealthStore,
        *,
        ttl: float = USER_CACHE_TTL_SECONDS,
        wait: float = COOPERATIVE_WAIT_SECONDS,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.provider = provider
        self.health = health
        self.ttl = ttl
        self.wait = wait
        self._clock = clock
        self._sleep = sleep
        self._records: Dict[str, CachedUserRecord] = {}
        self._in_progress: Optional[str] = None

    def get_cached(self, identity_id: str) -> Optional[CachedUserRecord]:
        record = self._records.get(identity_id)
        if record is None:
            return None
        if self._clock() - record.cached_at >= self.ttl:
            del self._records[identity_id]
            return None
        return record

    async def resolve(self, user: IdentityUser) -> CachedUserRecord:
        """Return the cached record for ``user`` or load it from the provider.

        Raises ``BannedError`` after terminating the provider session when the
        profile carries a ban marker. A failed profile read yields a degraded,
        inactive record built from the token claims.
        """
        cached = self.get_cached(user.id)
        if cached is not None:
            return cached

        if self._in_progress == user.id:
            await self._sleep(self.wait)
            cached = self.get_cached(user.id)
            if cached is not None:
                return cached
            logger.debug("user_cache_wait_missed", identity_id=user.id)

        self._in_progress = user.id
        try:
            return await self._load(user)
        finally:
            if self._in_progress == user.id:
                self._in_progress = None

    async def _load(self, user: IdentityUser) -> CachedUserRecord:
        try:
            profile = await self.provider.fetch_profile(user.id)
        except AuthError as exc:
            if exc.kind is AuthErrorKind.AUTHORITATIVE:
                raise
            logger.warning(
                "user_profile_read_failed",
                identity_id=user.id,
                kind=exc.kind.value,
                error=exc.message,
            )
            return self._degraded(user)

        if profile.is_banned:
            logger.warning("user_banned_detected", identity_id=user.id)
            await self.provider.sign_out(scope="global")
            raise BannedError(
                "account has been banned", detail={"identity_id": user.id}
            )

        record = self._from_profile(user, profile)
        self._records[user.id] = record
        self.health.record_success()
        return record

    def _from_profile(self, user: IdentityUser, profile: UserProfile) -> CachedUserRecord:
        role = user.claimed_role() or Role.parse(profile.role, Role.STAFF)
        return CachedUserRecord(
            identity_id=user.id,
            email=user.email,
            role=role,
            linked_record_id=profile.employee_id,
            is_active=profile.is_active,
            cached_at=self._clock(),
        )

    def _degraded(self, user: IdentityUser) -> CachedUserRecord:
        return CachedUserRecord(
            identity_id=user.id,
            email=user.email,
            role=user.claimed_role() or Role.STAFF,
            linked_record_id=None,
            is_active=False,
            cached_at=self._clock(),
        )

    def mark_inactive(self, identity_id: str) -> Optional[CachedUserRecord]:
        record = self._records.get(identity_id)
        if record is None:
            return None
        record.is_active = False
        return record

    def clear(self) -> None:
        self._records.clear()
        self._in_progress = None
