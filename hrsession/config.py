from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from hrsession.logging import get_logger

logger = get_logger(__name__)


class StateBackend(str, Enum):
    """Where the client keeps its persisted local state."""

    MEMORY = "memory"
    FILE = "file"
    REDIS = "redis"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


_DURATION_FIELDS = (
    "identity_timeout_seconds",
    "bootstrap_timeout_seconds",
    "revocation_poll_interval_seconds",
    "visibility_debounce_seconds",
    "batch_window_seconds",
    "user_cache_wait_seconds",
    "user_cache_ttl_seconds",
    "recovery_cooldown_seconds",
    "inactivity_timeout_seconds",
    "inactivity_check_interval_seconds",
    "refresh_threshold_seconds",
    "visibility_refresh_threshold_seconds",
    "cache_short_ttl_seconds",
    "cache_default_ttl_seconds",
    "cache_long_ttl_seconds",
)


class Settings(BaseModel):
    """Runtime settings for the session lifecycle core."""

    identity_url: str = env_field("http://localhost:54321", "IDENTITY_URL")
    identity_api_key: str | None = env_field(None, "IDENTITY_API_KEY")
    identity_timeout_seconds: float = env_field(10.0, "IDENTITY_TIMEOUT_SECONDS")
    state_backend: StateBackend = env_field(StateBackend.FILE, "STATE_BACKEND")
    state_path: str = env_field("~/.hrsession/state.json", "STATE_PATH")
    redis_url: str | None = env_field(
        None,
        "REDIS_URL",
        description="Enables the pub/sub profile feed and the redis state backend",
    )
    storage_namespace: str = env_field("ems", "STORAGE_NAMESPACE")
    legacy_purge_prefixes: str = env_field(
        "sb-",
        "LEGACY_PURGE_PREFIXES",
        description="Comma separated key prefixes also purged by a hard reset",
    )

    # Lifecycle timing
    bootstrap_timeout_seconds: float = env_field(8.0, "BOOTSTRAP_TIMEOUT_SECONDS")
    revocation_poll_interval_seconds: float = env_field(
        60.0, "REVOCATION_POLL_INTERVAL_SECONDS"
    )
    visibility_debounce_seconds: float = env_field(2.0, "VISIBILITY_DEBOUNCE_SECONDS")
    refresh_threshold_seconds: float = env_field(300.0, "REFRESH_THRESHOLD_SECONDS")
    visibility_refresh_threshold_seconds: float = env_field(
        120.0, "VISIBILITY_REFRESH_THRESHOLD_SECONDS"
    )

    # Failure lockout and idle timeout
    max_failed_attempts: int = env_field(3, "MAX_FAILED_ATTEMPTS")
    recovery_cooldown_seconds: float = env_field(5.0, "RECOVERY_COOLDOWN_SECONDS")
    inactivity_timeout_seconds: float = env_field(8 * 60.0, "INACTIVITY_TIMEOUT_SECONDS")
    inactivity_check_interval_seconds: float = env_field(
        30.0, "INACTIVITY_CHECK_INTERVAL_SECONDS"
    )

    # Caches
    user_cache_ttl_seconds: float = env_field(60.0, "USER_CACHE_TTL_SECONDS")
    user_cache_wait_seconds: float = env_field(0.5, "USER_CACHE_WAIT_SECONDS")
    batch_window_seconds: float = env_field(0.01, "BATCH_WINDOW_SECONDS")
    cache_short_ttl_seconds: float = env_field(5.0, "CACHE_SHORT_TTL_SECONDS")
    cache_default_ttl_seconds: float = env_field(30.0, "CACHE_DEFAULT_TTL_SECONDS")
    cache_long_ttl_seconds: float = env_field(5 * 60.0, "CACHE_LONG_TTL_SECONDS")

    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allows runtime resets between test cases",
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("state_backend")
    @classmethod
    def _validate_state_backend(cls, value: StateBackend) -> StateBackend:
        return StateBackend(value)

    @field_validator(*_DURATION_FIELDS)
    @classmethod
    def _ensure_positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("durations must be positive")
        return value

    @field_validator("max_failed_attempts")
    @classmethod
    def _ensure_attempts(cls, value: int) -> int:
        if value < 1:
            raise ValueError("max_failed_attempts must be at least 1")
        return value

    @field_validator("storage_namespace")
    @classmethod
    def _validate_namespace(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("storage_namespace must not be empty")
        return value

    @property
    def purge_prefixes(self) -> tuple[str, ...]:
        """Key prefixes removed by a hard reset: own auth namespace plus legacy ones."""
        legacy = [p.strip() for p in self.legacy_purge_prefixes.split(",") if p.strip()]
        return (f"{self.storage_namespace}-", *legacy)

    def cache_ttls(self) -> dict[str, float]:
        return {
            "short": self.cache_short_ttl_seconds,
            "default": self.cache_default_ttl_seconds,
            "long": self.cache_long_ttl_seconds,
        }


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        logger.debug(
            "settings_loaded",
            state_backend=_settings_cache.state_backend.value,
            identity_url=_settings_cache.identity_url,
        )
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
