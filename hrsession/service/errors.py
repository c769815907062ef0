from __future__ import annotations

from enum import Enum
from typing import Optional


class ServiceError(Exception):
    """Base class for errors surfaced by the session core.

    Each class carries a stable ``error_code`` so callers (and logs) can
    identify a failure without parsing its message.
    """

    error_code: str = "service_error"

    def __init__(
        self,
        message: str,
        *,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class AuthErrorKind(str, Enum):
    """What an identity failure means for local state.

    - TRANSIENT: abort/network/timeout shaped; never clears session state
    - AUTHORITATIVE: refresh token invalid/expired/missing; back to logged-out
    - INVALID_CREDENTIALS: ordinary sign-in rejection
    - BANNED: fatal and immediate (remote sign-out plus full local purge)
    - DEACTIVATED: non-fatal; the session persists with degraded access
    - LOCKED_OUT: too many sign-in failures
    - ACCESS_DENIED: a profile read was refused by access policy
    - UNKNOWN: anything the adapter could not classify
    """

    TRANSIENT = "transient"
    AUTHORITATIVE = "authoritative"
    INVALID_CREDENTIALS = "invalid_credentials"
    BANNED = "banned"
    DEACTIVATED = "deactivated"
    LOCKED_OUT = "locked_out"
    ACCESS_DENIED = "access_denied"
    UNKNOWN = "unknown"


class AuthError(ServiceError):
    kind: AuthErrorKind = AuthErrorKind.UNKNOWN
    error_code = "auth_error"

    def __init__(
        self,
        message: str,
        *,
        kind: Optional[AuthErrorKind] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message, detail=detail, error_code=error_code)
        if kind is not None:
            self.kind = kind

    @property
    def is_transient(self) -> bool:
        return self.kind is AuthErrorKind.TRANSIENT


class TransientAuthError(AuthError):
    kind = AuthErrorKind.TRANSIENT
    error_code = "transient"


class SessionExpiredError(AuthError):
    """The provider no longer recognises the session."""

    kind = AuthErrorKind.AUTHORITATIVE
    error_code = "session_expired"


class InvalidCredentialsError(AuthError):
    kind = AuthErrorKind.INVALID_CREDENTIALS
    error_code = "invalid_credentials"


class BannedError(AuthError):
    kind = AuthErrorKind.BANNED
    error_code = "banned"


class DeactivatedError(AuthError):
    kind = AuthErrorKind.DEACTIVATED
    error_code = "deactivated"


class LockoutError(AuthError):
    """Raised instead of InvalidCredentialsError once the failure threshold trips."""

    kind = AuthErrorKind.LOCKED_OUT
    error_code = "locked_out"


class ProfileAccessError(AuthError):
    kind = AuthErrorKind.ACCESS_DENIED
    error_code = "access_denied"


_KIND_TO_CLASS = {
    AuthErrorKind.TRANSIENT: TransientAuthError,
    AuthErrorKind.AUTHORITATIVE: SessionExpiredError,
    AuthErrorKind.INVALID_CREDENTIALS: InvalidCredentialsError,
    AuthErrorKind.BANNED: BannedError,
    AuthErrorKind.DEACTIVATED: DeactivatedError,
    AuthErrorKind.LOCKED_OUT: LockoutError,
    AuthErrorKind.ACCESS_DENIED: ProfileAccessError,
}


def error_for_kind(
    kind: AuthErrorKind, message: str, *, detail: Optional[dict] = None
) -> AuthError:
    """Build the AuthError subclass matching ``kind``."""
    cls = _KIND_TO_CLASS.get(kind)
    if cls is None:
        return AuthError(message, kind=kind, detail=detail)
    return cls(message, detail=detail)


__all__ = [
    "ServiceError",
    "AuthErrorKind",
    "AuthError",
    "TransientAuthError",
    "SessionExpiredError",
    "InvalidCredentialsError",
    "BannedError",
    "DeactivatedError",
    "LockoutError",
    "ProfileAccessError",
    "error_for_kind",
]
