"""Identity Provider port and its HTTP adapter.

The adapter speaks a GoTrue/PostgREST style REST API. It is the only place in
the package that looks at provider status codes and error payloads: every
failure leaves here as an ``AuthError`` tagged with an ``AuthErrorKind``.
"""

from __future__ import annotations

import asyncio
import json
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

import httpx

from hrsession.logging import get_logger
from hrsession.service.errors import (
    AuthError,
    AuthErrorKind,
    SessionExpiredError,
    TransientAuthError,
    error_for_kind,
)
from hrsession.storage.models import IdentityUser, Session, UserProfile
from hrsession.storage.state import StateKeys, StateStore

logger = get_logger(__name__)

ProfileCallback = Callable[[UserProfile], Awaitable[None]]

PROFILE_COLUMNS = "id,role,employee_id,is_active,banned_at,session_token"

_TRANSIENT_STATUS = {408, 425, 429, 500, 502, 503, 504}
_AUTHORITATIVE_CODES = {
    "refresh_token_not_found",
    "refresh_token_already_used",
    "session_not_found",
    "session_expired",
    "bad_jwt",
    "invalid_grant",
}
_BANNED_CODES = {"user_banned"}


class ProfileSubscription(Protocol):
    async def close(self) -> None: ...


class ProfileFeed(Protocol):
    async def subscribe(
        self, identity_id: str, callback: ProfileCallback
    ) -> ProfileSubscription: ...


class IdentityProvider(Protocol):
    async def sign_in(self, email: str, password: str) -> Session: ...

    async def get_session(self) -> Optional[Session]: ...

    async def refresh_session(self) -> Session: ...

    async def sign_out(self, *, scope: str = "local") -> None: ...

    async def fetch_profile(self, identity_id: str) -> UserProfile: ...

    async def set_session_token(self, token: Optional[str]) -> None: ...

    async def subscribe_profile(
        self, identity_id: str, callback: ProfileCallback
    ) -> ProfileSubscription: ...

    async def record_activity(
        self, identity_id: str, action: str, details: Optional[dict] = None
    ) -> None: ...


def _error_fields(payload: Dict[str, Any]) -> tuple[str, str]:
    code = payload.get("error_code") or payload.get("code") or payload.get("error") or ""
    message = (
        payload.get("msg")
        or payload.get("message")
        or payload.get("error_description")
        or ""
    )
    return str(code).lower(), str(message)


def classify_provider_error(
    status_code: Optional[int],
    payload: Optional[Dict[str, Any]] = None,
    *,
    operation: str,
) -> AuthErrorKind:
    """Map a provider failure onto an AuthErrorKind.

    ``status_code`` is None for transport failures. ``operation`` is one of
    ``sign_in``, ``refresh``, ``profile``, ``write`` or ``sign_out``.
    """
    if status_code is None or status_code in _TRANSIENT_STATUS:
        return AuthErrorKind.TRANSIENT
    code, message = _error_fields(payload or {})
    if code in _BANNED_CODES or "banned" in message.lower():
        return AuthErrorKind.BANNED
    if operation == "sign_in":
        if status_code in (400, 401, 422):
            return AuthErrorKind.INVALID_CREDENTIALS
        return AuthErrorKind.UNKNOWN
    if operation == "refresh":
        if status_code in (400, 401, 403) or code in _AUTHORITATIVE_CODES:
            return AuthErrorKind.AUTHORITATIVE
        return AuthErrorKind.UNKNOWN
    if status_code == 401 or code in _AUTHORITATIVE_CODES:
        return AuthErrorKind.AUTHORITATIVE
    if operation == "profile" and status_code in (403, 404, 406):
        return AuthErrorKind.ACCESS_DENIED
    if status_code == 403:
        return AuthErrorKind.ACCESS_DENIED
    return AuthErrorKind.UNKNOWN


class HttpIdentityProvider:
    """Identity Provider client over httpx.

    Owns the persisted token blob (``<ns>-auth-token``) in the state store the
    way a browser SDK owns its storage key.
    """

    def __init__(
        self,
        base_url: str,
        state: StateStore,
        *,
        api_key: Optional[str] = None,
        keys: Optional[StateKeys] = None,
        feed: Optional[ProfileFeed] = None,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.state = state
        self.api_key = api_key
        self.keys = keys or StateKeys()
        self.feed = feed
        self._clock = clock
        headers = {"apikey": api_key} if api_key else {}
        self.client = client or httpx.AsyncClient(
            base_url=self.base_url, timeout=timeout, headers=headers
        )
        self._refresh_lock = asyncio.Lock()

    async def close(self) -> None:
        await self.client.aclose()

    # -- token blob ---------------------------------------------------------

    def _load_session(self) -> Optional[Session]:
        raw = self.state.get(self.keys.auth_token)
        if not raw:
            return None
        try:
            return Session.from_dict(json.loads(raw))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
            raise SessionExpiredError(
                "stored session is unreadable",
                detail={"reason": "corrupt_session_blob", "error": str(exc)},
            ) from exc

    def _store_session(self, session: Session) -> None:
        self.state.set(self.keys.auth_token, json.dumps(session.to_dict()))

    def _session_from_payload(self, payload: Dict[str, Any]) -> Session:
        expires_at = payload.get("expires_at")
        if expires_at is None:
            expires_at = self._clock() + float(payload.get("expires_in") or 3600)
        return Session(
            access_token=payload["access_token"],
            refresh_token=payload["refresh_token"],
            expires_at=float(expires_at),
            user=IdentityUser.from_dict(payload["user"]),
        )

    # -- transport ------------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        access_token: Optional[str] = None,
        **kwargs: Any,
    ) -> httpx.Response:
        headers = dict(kwargs.pop("headers", {}) or {})
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        try:
            response = await self.client.request(method, path, headers=headers, **kwargs)
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            raise TransientAuthError(
                f"{operation} failed: {type(exc).__name__}",
                detail={"operation": operation},
            ) from exc
        if response.is_success:
            return response
        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}
        kind = classify_provider_error(
            response.status_code, payload, operation=operation
        )
        code, message = _error_fields(payload)
        raise error_for_kind(
            kind,
            message or f"{operation} failed with status {response.status_code}",
            detail={
                "operation": operation,
                "status_code": response.status_code,
                "provider_code": code or None,
            },
        )

    def _access_token(self) -> str:
        session = self._load_session()
        if session is None:
            raise SessionExpiredError("no active session", detail={"reason": "missing_session"})
        return session.access_token

    # -- IdentityProvider -----------------------------------------------------

    async def sign_in(self, email: str, password: str) -> Session:
        response = await self._request(
            "POST",
            "/auth/v1/token",
            operation="sign_in",
            params={"grant_type": "password"},
            json={"email": email, "password": password},
        )
        session = self._session_from_payload(response.json())
        self._store_session(session)
        return session

    async def get_session(self) -> Optional[Session]:
        return self._load_session()

    async def refresh_session(self) -> Session:
        async with self._refresh_lock:
            current = self._load_session()
            if current is None:
                raise SessionExpiredError(
                    "no refresh token available", detail={"reason": "missing_refresh_token"}
                )
            response = await self._request(
                "POST",
                "/auth/v1/token",
                operation="refresh",
                params={"grant_type": "refresh_token"},
                json={"refresh_token": current.refresh_token},
            )
            session = self._session_from_payload(response.json())
            self._store_session(session)
            return session

    async def sign_out(self, *, scope: str = "local") -> None:
        try:
            session = self._load_session()
        except SessionExpiredError:
            session = None
        try:
            if session is not None:
                await self._request(
                    "POST",
                    "/auth/v1/logout",
                    operation="sign_out",
                    access_token=session.access_token,
                    params={"scope": scope},
                )
        except AuthError as exc:
            logger.warning("provider_sign_out_failed", kind=exc.kind.value, error=exc.message)
        finally:
            self.state.remove(self.keys.auth_token)

    async def fetch_profile(self, identity_id: str) -> UserProfile:
        response = await self._request(
            "GET",
            "/rest/v1/users",
            operation="profile",
            access_token=self._access_token(),
            params={"id": f"eq.{identity_id}", "select": PROFILE_COLUMNS},
            headers={"Accept": "application/vnd.pgrst.object+json"},
        )
        return UserProfile.from_dict(response.json())

    async def set_session_token(self, token: Optional[str]) -> None:
        await self._request(
            "POST",
            "/rest/v1/rpc/set_session_token",
            operation="write",
            access_token=self._access_token(),
            json={"p_token": token},
        )

    async def subscribe_profile(
        self, identity_id: str, callback: ProfileCallback
    ) -> ProfileSubscription:
        if self.feed is None:
            raise TransientAuthError(
                "push delivery unavailable", detail={"reason": "no_profile_feed"}
            )
        return await self.feed.subscribe(identity_id, callback)

    async def record_activity(
        self, identity_id: str, action: str, details: Optional[dict] = None
    ) -> None:
        await self._request(
            "POST",
            "/rest/v1/activity_logs",
            operation="write",
            access_token=self._access_token(),
            json={
                "user_id": identity_id,
                "action": action,
                "entity_type": "user",
                "entity_id": identity_id,
                "details": details or {},
            },
        )
