from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

_lifecycle_id: ContextVar[Optional[str]] = ContextVar("lifecycle_id", default=None)

_SENSITIVE = ("password", "secret", "token", "api_key", "authorization", "email")
_TRUTHY = {"1", "true", "yes", "on"}


def get_lifecycle_id() -> Optional[str]:
    return _lifecycle_id.get()


def bind_lifecycle_id(lifecycle_id: Optional[str] = None) -> str:
    """Tag the current task context with a bootstrap/sign-in lifecycle id.

    Tasks spawned afterwards inherit the id, so log lines from a superseded
    lifecycle's late continuations stay attributable to it.
    """
    lid = lifecycle_id or uuid.uuid4().hex[:12]
    _lifecycle_id.set(lid)
    return lid


def _add_lifecycle_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    lid = _lifecycle_id.get()
    if lid:
        event_dict.setdefault("lifecycle_id", lid)
    return event_dict


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    for key, value in list(event_dict.items()):
        if not isinstance(value, str) or len(value) <= 4:
            continue
        if any(word in key.lower() for word in _SENSITIVE):
            event_dict[key] = f"{value[:2]}***{value[-2:]}"
    return event_dict


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in _TRUTHY


def _configure_structlog() -> None:
    level = getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO)
    console = _env_flag("LOG_DEV_MODE", "false") or not _env_flag("LOG_JSON", "true")

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_lifecycle_id,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if console:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


_configure_structlog()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
