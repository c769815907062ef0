"""Persisted local state: a small namespaced key-value store.

Plays the part a browser's local storage plays for a web client: the identity
provider keeps its token blob here, and the session core keeps its health
record, last-activity stamp and local session token next to it.
"""

from __future__ import annotations

import json
import os
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol

from hrsession.logging import get_logger

logger = get_logger(__name__)


class StateStore(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...

    def keys(self) -> List[str]: ...


@dataclass(frozen=True)
class StateKeys:
    """Key names under one storage namespace.

    Auth artifacts use ``<ns>-``; bookkeeping that must outlive a hard reset
    (health record, last activity) uses ``<ns>_``.
    """

    namespace: str = "ems"

    @property
    def auth_token(self) -> str:
        return f"{self.namespace}-auth-token"

    @property
    def session_token(self) -> str:
        return f"{self.namespace}-session-token"

    @property
    def session_health(self) -> str:
        return f"{self.namespace}_session_health"

    @property
    def last_activity(self) -> str:
        return f"{self.namespace}_last_activity"

    @property
    def auth_prefix(self) -> str:
        return f"{self.namespace}-"


def purge_prefixes(store: StateStore, prefixes: Iterable[str]) -> int:
    """Remove every key starting with one of ``prefixes``. Returns the count removed."""
    wanted = tuple(p for p in prefixes if p)
    if not wanted:
        return 0
    doomed = [key for key in store.keys() if key.startswith(wanted)]
    for key in doomed:
        store.remove(key)
    return len(doomed)


class MemoryStateStore:
    """Process-local state; lost on restart."""

    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self._data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> List[str]:
        return list(self._data.keys())


class FileStateStore:
    """JSON file backed state that survives process restarts.

    The whole mapping is rewritten on every mutation via a temp file and
    ``os.replace`` so a crash never leaves a half-written file behind.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path).expanduser()
        self._lock = threading.Lock()
        self._data: Dict[str, str] = self._load()

    def _load(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            raw = json.loads(self.path.read_text())
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning(
                "state_file_unreadable", path=str(self.path), error=str(exc)
            )
            return {}
        if not isinstance(raw, dict):
            logger.warning("state_file_unexpected_shape", path=str(self.path))
            return {}
        return {str(k): str(v) for k, v in raw.items() if isinstance(v, str)}

    def _persist(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=str(self.path.parent), prefix=".state_", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w") as handle:
                json.dump(self._data, handle)
            os.replace(tmp_path, self.path)
        except OSError:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value
            self._persist()

    def remove(self, key: str) -> None:
        with self._lock:
            if self._data.pop(key, None) is not None:
                self._persist()

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._data.keys())
