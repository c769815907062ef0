"""Access-token lifecycle: fetch, proactive refresh near expiry, and an
opportunistic refresh when the client becomes visible again."""

from __future__ import annotations

import time
from typing import Awaitable, Callable, Optional

from hrsession.logging import get_logger
from hrsession.service.errors import AuthError, AuthErrorKind
from hrsession.service.provider import IdentityProvider
from hrsession.storage.models import Session

logger = get_logger(__name__)

REFRESH_THRESHOLD_SECONDS = 5 * 60.0
VISIBILITY_REFRESH_THRESHOLD_SECONDS = 2 * 60.0
VISIBILITY_DEBOUNCE_SECONDS = 2.0

RejectionHook = Callable[[AuthError], Awaitable[None]]


class TokenLifecycleManager:
    def __init__(
        self,
        provider: IdentityProvider,
        *,
        refresh_threshold: float = REFRESH_THRESHOLD_SECONDS,
        visibility_refresh_threshold: float = VISIBILITY_REFRESH_THRESHOLD_SECONDS,
        visibility_debounce: float = VISIBILITY_DEBOUNCE_SECONDS,
        on_refresh_rejected: Optional[RejectionHook] = None,
        clock: Callable[[], float] = time.time,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.provider = provider
        self.refresh_threshold = refresh_threshold
        self.visibility_refresh_threshold = visibility_refresh_threshold
        self.visibility_debounce = visibility_debounce
        self.on_refresh_rejected = on_refresh_rejected
        self._clock = clock
        self._monotonic = monotonic
        self._visibility_refreshing = False
        self._last_visibility_check: Optional[float] = None

    async def get_session(self) -> Optional[Session]:
        """Current provider session, or None. Authoritative errors propagate."""
        try:
            return await self.provider.get_session()
        except AuthError as exc:
            if exc.kind is AuthErrorKind.AUTHORITATIVE:
                raise
            logger.warning("token_session_lookup_failed", kind=exc.kind.value, error=exc.message)
            return None

    async def _refresh(self) -> Optional[Session]:
        try:
            return await self.provider.refresh_session()
        except AuthError as exc:
            logger.warning("token_refresh_failed", kind=exc.kind.value, error=exc.message)
            if exc.kind is AuthErrorKind.AUTHORITATIVE and self.on_refresh_rejected:
                await self.on_refresh_rejected(exc)
            return None

    async def get_valid_access_token(self) -> Optional[str]:
        try:
            session = await self.get_session()
        except AuthError:
            return None
        if session is None:
            return None

        expires_in = session.expires_in(self._clock())
        if expires_in >= self.refresh_threshold:
            return session.access_token

        refreshed = await self._refresh()
        if refreshed is not None:
            logger.debug("token_refreshed", reason="near_expiry")
            return refreshed.access_token
        if expires_in > 0:
            return session.access_token
        return None

    async def get_fresh_access_token(self) -> Optional[str]:
        """Force a refresh; used before high-stakes writes."""
        refreshed = await self._refresh()
        if refreshed is not None:
            return refreshed.access_token
        try:
            session = await self.get_session()
        except AuthError:
            return None
        if session is not None and session.expires_in(self._clock()) > 0:
            return session.access_token
        return None

    async def on_visibility_regained(self) -> bool:
        """Refresh if the token is about to lapse. Returns True when a refresh ran."""
        if self._visibility_refreshing:
            return False
        now = self._monotonic()
        if (
            self._last_visibility_check is not None
            and now - self._last_visibility_check < self.visibility_debounce
        ):
            return False
        self._last_visibility_check = now
        self._visibility_refreshing = True
        try:
            try:
                session = await self.get_session()
            except AuthError:
                return False
            if session is None:
                return False
            if session.expires_in(self._clock()) >= self.visibility_refresh_threshold:
                return False
            refreshed = await self._refresh()
            if refreshed is not None:
                logger.info("token_refreshed", reason="visibility")
            return refreshed is not None
        finally:
            self._visibility_refreshing = False
