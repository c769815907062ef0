from __future__ import annotations

import asyncio
import json
import secrets
import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional

from hrsession.logging import get_logger
from hrsession.service.errors import (
    AuthError,
    BannedError,
    InvalidCredentialsError,
    ProfileAccessError,
    SessionExpiredError,
    TransientAuthError,
)
from hrsession.storage.models import IdentityUser, Session, UserProfile
from hrsession.storage.state import MemoryStateStore, StateKeys, StateStore


@dataclass
class _Account:
    user: IdentityUser
    password: str
    banned: bool = False


@dataclass
class _MemorySubscription:
    provider: "MemoryIdentityProvider"
    identity_id: str
    callback: Any
    closed: bool = False

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        subs = self.provider._subscribers.get(self.identity_id, [])
        if self in subs:
            subs.remove(self)


@dataclass
class ProviderCalls:
    sign_in: int = 0
    get_session: int = 0
    refresh: int = 0
    sign_out: List[str] = field(default_factory=list)
    fetch_profile: int = 0
    set_session_token: List[Optional[str]] = field(default_factory=list)
    activity: List[tuple[str, str]] = field(default_factory=list)


class MemoryIdentityProvider:
    """In-memory Identity Provider for local development and tests.

    Keeps accounts, profile rows and issued refresh tokens in dicts, persists
    the current session blob into the given state store like the HTTP client
    does, and delivers profile updates to subscribers synchronously.
    Failures can be injected per operation through the ``fail_*`` attributes.
    """

    def __init__(
        self,
        state: Optional[StateStore] = None,
        *,
        keys: Optional[StateKeys] = None,
        token_ttl: float = 3600.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.logger = get_logger(__name__)
        self.state = state if state is not None else MemoryStateStore()
        self.keys = keys or StateKeys()
        self.token_ttl = token_ttl
        self._clock = clock
        self.accounts: Dict[str, _Account] = {}
        self.profiles: Dict[str, UserProfile] = {}
        self._refresh_tokens: Dict[str, str] = {}
        self._subscribers: Dict[str, List[_MemorySubscription]] = {}
        self.calls = ProviderCalls()
        self.push_available = True
        self.fail_sign_in: Optional[AuthError] = None
        self.fail_refresh: Optional[AuthError] = None
        self.fail_profile: Optional[AuthError] = None
        self.fail_get_session: Optional[AuthError] = None
        self.fail_write: Optional[AuthError] = None
        self.get_session_delay: float = 0.0
        self.profile_delay: float = 0.0
        self.subscribe_delay: float = 0.0

    # -- seeding --------------------------------------------------------------

    def add_user(
        self,
        email: str,
        password: str,
        *,
        role: Optional[str] = "staff",
        employee_id: Optional[str] = None,
        claim_role: Optional[str] = None,
        is_active: bool = True,
        user_id: Optional[str] = None,
    ) -> IdentityUser:
        identity_id = user_id or f"user-{len(self.accounts) + 1}"
        app_metadata = {"role": claim_role} if claim_role else {}
        user = IdentityUser(id=identity_id, email=email, app_metadata=app_metadata)
        self.accounts[email.lower()] = _Account(user=user, password=password)
        self.profiles[identity_id] = UserProfile(
            id=identity_id, role=role, employee_id=employee_id, is_active=is_active
        )
        return user

    def issue_session(self, user: IdentityUser, *, expires_in: Optional[float] = None) -> Session:
        """Mint and persist a session without going through sign-in."""
        ttl = self.token_ttl if expires_in is None else expires_in
        session = Session(
            access_token=f"at-{secrets.token_hex(8)}",
            refresh_token=f"rt-{secrets.token_hex(8)}",
            expires_at=self._clock() + ttl,
            user=user,
        )
        self._refresh_tokens[session.refresh_token] = user.id
        self.state.set(self.keys.auth_token, json.dumps(session.to_dict()))
        return session

    async def update_profile(self, identity_id: str, **changes: Any) -> UserProfile:
        """Mutate a profile row and push the new row to subscribers."""
        profile = replace(self.profiles[identity_id], **changes)
        self.profiles[identity_id] = profile
        self.logger.debug(
            "memory_profile_updated", identity_id=identity_id, fields=sorted(changes)
        )
        for sub in list(self._subscribers.get(identity_id, [])):
            if not sub.closed:
                await sub.callback(replace(profile))
        return profile

    async def ban(self, identity_id: str, banned_at: str = "2024-01-01T00:00:00Z") -> None:
        for account in self.accounts.values():
            if account.user.id == identity_id:
                account.banned = True
        await self.update_profile(identity_id, banned_at=banned_at, is_active=False)

    def subscriber_count(self, identity_id: str) -> int:
        return len(self._subscribers.get(identity_id, []))

    # -- IdentityProvider -----------------------------------------------------

    def _stored_session(self) -> Optional[Session]:
        raw = self.state.get(self.keys.auth_token)
        if not raw:
            return None
        try:
            return Session.from_dict(json.loads(raw))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
            raise SessionExpiredError(
                "stored session is unreadable", detail={"reason": "corrupt_session_blob"}
            ) from exc

    async def sign_in(self, email: str, password: str) -> Session:
        self.calls.sign_in += 1
        if self.fail_sign_in is not None:
            raise self.fail_sign_in
        account = self.accounts.get(email.lower())
        if account is None or account.password != password:
            raise InvalidCredentialsError("Invalid login credentials")
        if account.banned:
            raise BannedError("User is banned")
        return self.issue_session(account.user)

    async def get_session(self) -> Optional[Session]:
        self.calls.get_session += 1
        if self.get_session_delay:
            await asyncio.sleep(self.get_session_delay)
        if self.fail_get_session is not None:
            raise self.fail_get_session
        return self._stored_session()

    async def refresh_session(self) -> Session:
        self.calls.refresh += 1
        if self.fail_refresh is not None:
            raise self.fail_refresh
        current = self._stored_session()
        if current is None or current.refresh_token not in self._refresh_tokens:
            raise SessionExpiredError("Invalid Refresh Token: Refresh Token Not Found")
        self._refresh_tokens.pop(current.refresh_token, None)
        return self.issue_session(current.user)

    async def sign_out(self, *, scope: str = "local") -> None:
        self.calls.sign_out.append(scope)
        current = self._stored_session_quiet()
        if current is not None:
            self._refresh_tokens.pop(current.refresh_token, None)
        self.state.remove(self.keys.auth_token)

    def _stored_session_quiet(self) -> Optional[Session]:
        try:
            return self._stored_session()
        except SessionExpiredError:
            return None

    async def fetch_profile(self, identity_id: str) -> UserProfile:
        self.calls.fetch_profile += 1
        if self.profile_delay:
            await asyncio.sleep(self.profile_delay)
        if self.fail_profile is not None:
            raise self.fail_profile
        profile = self.profiles.get(identity_id)
        if profile is None:
            raise ProfileAccessError("profile not visible", detail={"identity_id": identity_id})
        return replace(profile)

    async def set_session_token(self, token: Optional[str]) -> None:
        self.calls.set_session_token.append(token)
        if self.fail_write is not None:
            raise self.fail_write
        current = self._stored_session_quiet()
        if current is None:
            raise SessionExpiredError("no active session")
        profile = self.profiles.get(current.user.id)
        if profile is not None:
            # Privileged write: bypasses row policy and does not notify subscribers
            self.profiles[current.user.id] = replace(profile, session_token=token)

    async def subscribe_profile(self, identity_id: str, callback: Any) -> _MemorySubscription:
        if not self.push_available:
            raise TransientAuthError("push delivery unavailable")
        if self.subscribe_delay:
            await asyncio.sleep(self.subscribe_delay)
        sub = _MemorySubscription(provider=self, identity_id=identity_id, callback=callback)
        self._subscribers.setdefault(identity_id, []).append(sub)
        return sub

    async def record_activity(
        self, identity_id: str, action: str, details: Optional[dict] = None
    ) -> None:
        self.calls.activity.append((identity_id, action))
