"""
taskwave — loop session persistence.

File: src/taskwave/control_plane/session_store.py
Last updated: 2026-10-18

Purpose
- Keep active loop sessions and the bounded archive of finished sessions behind
  a small store interface so the loop enforcer never touches files directly.

What should be included in this file
- ``SessionStore`` protocol.
- ``JsonFileSessionStore``: one JSON document per active session under
  ``<state_dir>/loop-sessions/`` plus ``<state_dir>/loop-history.json``.
- ``InMemorySessionStore`` for tests and embedding.

Functional requirements
- Archiving removes the active record; a session is never both active and archived.
- History keeps only the most recent ``limit`` entries.

Non-functional requirements
- Writes are atomic; stores are safe to share between threads of one process.
"""

from __future__ import annotations

import hashlib
import json
import re
import threading
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import structlog

from taskwave.constants import LOOP_HISTORY_LIMIT
from taskwave.utils.fs import atomic_write_json, read_json

logger = structlog.get_logger(__name__)

SESSIONS_DIR_NAME = "loop-sessions"
HISTORY_FILE_NAME = "loop-history.json"

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]")

SessionPayload = dict[str, Any]


class SessionStoreError(RuntimeError):
    """Raised when persisted session state cannot be read."""


@runtime_checkable
class SessionStore(Protocol):
    """Storage contract for loop sessions, keyed by task id."""

    def load(self, task_id: str) -> SessionPayload | None: ...

    def save(self, task_id: str, payload: Mapping[str, Any]) -> None: ...

    def active_task_ids(self) -> tuple[str, ...]: ...

    def archive(self, task_id: str, payload: Mapping[str, Any], *, limit: int) -> None: ...

    def history(self) -> list[SessionPayload]: ...


class InMemorySessionStore:
    """Process-local store."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active: dict[str, SessionPayload] = {}
        self._history: list[SessionPayload] = []

    def load(self, task_id: str) -> SessionPayload | None:
        with self._lock:
            payload = self._active.get(task_id)
            return _copy(payload) if payload is not None else None

    def save(self, task_id: str, payload: Mapping[str, Any]) -> None:
        with self._lock:
            self._active[task_id] = _copy(payload)

    def active_task_ids(self) -> tuple[str, ...]:
        with self._lock:
            return tuple(sorted(self._active))

    def archive(self, task_id: str, payload: Mapping[str, Any], *, limit: int = LOOP_HISTORY_LIMIT) -> None:
        with self._lock:
            self._active.pop(task_id, None)
            self._history.append(_copy(payload))
            del self._history[: max(0, len(self._history) - limit)]

    def history(self) -> list[SessionPayload]:
        with self._lock:
            return [_copy(item) for item in self._history]


class JsonFileSessionStore:
    """File-backed store rooted at the configured state directory."""

    def __init__(self, state_dir: str | Path) -> None:
        self._state_dir = Path(state_dir)
        self._lock = threading.Lock()

    @property
    def sessions_dir(self) -> Path:
        return self._state_dir / SESSIONS_DIR_NAME

    @property
    def history_path(self) -> Path:
        return self._state_dir / HISTORY_FILE_NAME

    def session_path(self, task_id: str) -> Path:
        return self.sessions_dir / f"{_safe_filename(task_id)}.json"

    def load(self, task_id: str) -> SessionPayload | None:
        path = self.session_path(task_id)
        with self._lock:
            payload = self._read(path)
        if payload is None:
            return None
        if not isinstance(payload, dict):
            raise SessionStoreError(f"loop session {path} must contain a JSON object")
        return payload

    def save(self, task_id: str, payload: Mapping[str, Any]) -> None:
        with self._lock:
            atomic_write_json(self.session_path(task_id), dict(payload))

    def active_task_ids(self) -> tuple[str, ...]:
        with self._lock:
            if not self.sessions_dir.is_dir():
                return ()
            task_ids: list[str] = []
            for path in sorted(self.sessions_dir.glob("*.json")):
                payload = self._read(path)
                if isinstance(payload, dict) and isinstance(payload.get("task_id"), str):
                    task_ids.append(payload["task_id"])
            return tuple(task_ids)

    def archive(self, task_id: str, payload: Mapping[str, Any], *, limit: int = LOOP_HISTORY_LIMIT) -> None:
        with self._lock:
            history = self._read_history()
            history.append(dict(payload))
            atomic_write_json(self.history_path, history[-limit:] if limit > 0 else [])
            self.session_path(task_id).unlink(missing_ok=True)
        logger.debug("loop_session_archived", task_id=task_id, history_limit=limit)

    def history(self) -> list[SessionPayload]:
        with self._lock:
            return self._read_history()

    def _read_history(self) -> list[SessionPayload]:
        payload = self._read(self.history_path)
        if payload is None:
            return []
        if not isinstance(payload, list):
            raise SessionStoreError(f"loop history {self.history_path} must contain a JSON array")
        return [item for item in payload if isinstance(item, dict)]

    @staticmethod
    def _read(path: Path) -> Any | None:
        try:
            return read_json(path)
        except json.JSONDecodeError as exc:
            raise SessionStoreError(f"corrupt loop state file {path}: {exc}") from exc


def _safe_filename(task_id: str) -> str:
    # The digest keeps ids that sanitize alike (T/1, T_1) in separate files.
    cleaned = _UNSAFE_FILENAME_CHARS.sub("_", task_id).strip("._") or "task"
    digest = hashlib.sha256(task_id.encode("utf-8")).hexdigest()[:8]
    return f"{cleaned}-{digest}"


def _copy(payload: Mapping[str, Any]) -> SessionPayload:
    return json.loads(json.dumps(dict(payload)))


__all__ = [
    "HISTORY_FILE_NAME",
    "InMemorySessionStore",
    "JsonFileSessionStore",
    "SESSIONS_DIR_NAME",
    "SessionPayload",
    "SessionStore",
    "SessionStoreError",
]
