from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, Generic, Optional, TypeVar

T = TypeVar("T")


class Role(str, Enum):
    ADMIN = "admin"
    HR = "hr"
    STAFF = "staff"

    @classmethod
    def parse(cls, value: Any, default: "Role | None" = None) -> "Role | None":
        """Map a provider-declared role string onto the enum, or ``default``."""
        if isinstance(value, Role):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                return default
        return default


@dataclass
class IdentityUser:
    """The identity as embedded in a provider session (token claims)."""

    id: str
    email: str = ""
    app_metadata: Dict[str, Any] = field(default_factory=dict)
    user_metadata: Dict[str, Any] = field(default_factory=dict)

    def claimed_role(self) -> Optional[Role]:
        """Role carried in the token claims; app metadata wins over user metadata."""
        return Role.parse(self.app_metadata.get("role")) or Role.parse(
            self.user_metadata.get("role")
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IdentityUser":
        return cls(
            id=str(data["id"]),
            email=data.get("email") or "",
            app_metadata=dict(data.get("app_metadata") or {}),
            user_metadata=dict(data.get("user_metadata") or {}),
        )


@dataclass
class Session:
    """Opaque provider session. The core never parses the tokens."""

    access_token: str
    refresh_token: str
    expires_at: float
    user: IdentityUser

    def expires_in(self, now: float) -> float:
        return self.expires_at - now

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        return cls(
            access_token=str(data["access_token"]),
            refresh_token=str(data["refresh_token"]),
            expires_at=float(data["expires_at"]),
            user=IdentityUser.from_dict(data["user"]),
        )


@dataclass
class UserProfile:
    """Server-side identity record (the ``users`` row)."""

    id: str
    role: Optional[str] = None
    employee_id: Optional[str] = None
    is_active: bool = True
    banned_at: Optional[str] = None
    session_token: Optional[str] = None

    @property
    def is_banned(self) -> bool:
        return bool(self.banned_at)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserProfile":
        is_active = data.get("is_active")
        return cls(
            id=str(data["id"]),
            role=data.get("role"),
            employee_id=data.get("employee_id"),
            is_active=True if is_active is None else bool(is_active),
            banned_at=data.get("banned_at"),
            session_token=data.get("session_token"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SessionHealth:
    failed_attempts: int = 0
    last_attempt: float = 0.0
    last_recovery: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "failedAttempts": self.failed_attempts,
            "lastAttempt": self.last_attempt,
            "lastRecovery": self.last_recovery,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionHealth":
        return cls(
            failed_attempts=max(0, int(data.get("failedAttempts", 0))),
            last_attempt=float(data.get("lastAttempt", 0.0)),
            last_recovery=float(data.get("lastRecovery", 0.0)),
        )


@dataclass
class CachedUserRecord:
    identity_id: str
    email: str
    role: Role
    linked_record_id: Optional[str]
    is_active: bool
    cached_at: float

    def has_role(self, *roles: "Role | str") -> bool:
        wanted = {Role.parse(r) for r in roles}
        return self.role in wanted


@dataclass
class CacheEntry(Generic[T]):
    data: T
    timestamp: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at
