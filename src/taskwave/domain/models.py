"""Task domain model with strict validation and canonical serialization."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import StrEnum
from pathlib import PurePosixPath
from typing import NoReturn

_MAX_TEXT = 8192

# Queue files in the wild use a few spellings for the same lifecycle state.
_STATUS_ALIASES: dict[str, str] = {
    "in_progress": "running",
    "in-progress": "running",
    "active": "running",
    "complete": "done",
    "completed": "done",
    "failed": "blocked",
}


class TaskStatus(StrEnum):
    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    BLOCKED = "blocked"
    DONE = "done"

    @classmethod
    def parse(cls, value: object, path: str = "Task.status") -> TaskStatus:
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            _fail(path, f"expected string enum value, got {type(value).__name__}")
        normalized = value.strip().lower()
        normalized = _STATUS_ALIASES.get(normalized, normalized)
        try:
            return cls(normalized)
        except ValueError:
            allowed = ", ".join(sorted(item.value for item in cls))
            _fail(path, f"invalid value {value!r}; expected one of: {allowed}")

    @property
    def schedulable(self) -> bool:
        return self in {TaskStatus.PENDING, TaskStatus.READY}


@dataclass(frozen=True, slots=True)
class Task:
    """One unit of work owned by the external task queue.

    ``files`` and ``depends_on`` are frozensets so that equal tasks compare equal
    regardless of declaration order in the queue file.
    """

    id: str
    title: str = ""
    files: frozenset[str] = frozenset()
    depends_on: frozenset[str] = frozenset()
    priority: int = 0
    status: TaskStatus = TaskStatus.PENDING
    acceptance_criteria: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "id", _as_str(self.id, "Task.id", max_len=256))
        title = self.title if self.title else self.id
        object.__setattr__(self, "title", _as_str(title, "Task.title", max_len=_MAX_TEXT))
        object.__setattr__(
            self,
            "files",
            frozenset(
                _as_relative_path(item, f"Task.files[{idx}]")
                for idx, item in enumerate(sorted(_as_str_iterable(self.files, "Task.files")))
            ),
        )
        depends_on = frozenset(_as_str_iterable(self.depends_on, "Task.depends_on"))
        if self.id in depends_on:
            _fail("Task.depends_on", f"task {self.id!r} must not depend on itself")
        object.__setattr__(self, "depends_on", depends_on)
        if isinstance(self.priority, bool) or not isinstance(self.priority, int):
            _fail("Task.priority", f"expected integer, got {type(self.priority).__name__}")
        object.__setattr__(self, "status", TaskStatus.parse(self.status))
        object.__setattr__(
            self,
            "acceptance_criteria",
            tuple(_as_str_iterable(self.acceptance_criteria, "Task.acceptance_criteria")),
        )

    @classmethod
    def from_mapping(cls, data: Mapping[str, object]) -> Task:
        """Build a task from a queue entry, accepting camelCase and legacy aliases."""

        if not isinstance(data, Mapping):
            _fail("Task", f"expected object, got {type(data).__name__}")
        if "id" not in data:
            _fail("Task", "missing required fields: ['id']")

        depends_raw = _first_present(data, ("dependsOn", "depends_on", "dependencies"), ())
        criteria_raw = _first_present(
            data, ("acceptanceCriteria", "acceptance_criteria", "criteria"), ()
        )
        priority_raw = data.get("priority", 0)
        return cls(
            id=_coerce_id(data["id"]),
            title=_as_optional_text(data.get("title") or data.get("name")),
            files=frozenset(_as_str_iterable(data.get("files") or (), "Task.files")),
            depends_on=frozenset(
                _coerce_id(item) for item in _as_sequence(depends_raw, "Task.depends_on")
            ),
            priority=_coerce_priority(priority_raw),
            status=TaskStatus.parse(data.get("status", TaskStatus.PENDING.value)),
            acceptance_criteria=tuple(
                _as_str_iterable(criteria_raw, "Task.acceptance_criteria")
            ),
        )

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "id": self.id,
            "title": self.title,
            "files": sorted(self.files),
            "dependsOn": sorted(self.depends_on),
            "priority": self.priority,
            "status": self.status.value,
        }
        if self.acceptance_criteria:
            payload["acceptanceCriteria"] = list(self.acceptance_criteria)
        return payload

    def with_status(self, status: TaskStatus) -> Task:
        return Task(
            id=self.id,
            title=self.title,
            files=self.files,
            depends_on=self.depends_on,
            priority=self.priority,
            status=status,
            acceptance_criteria=self.acceptance_criteria,
        )


def _fail(path: str, message: str) -> NoReturn:
    raise ValueError(f"{path}: {message}")


def _first_present(data: Mapping[str, object], keys: tuple[str, ...], default: object) -> object:
    for key in keys:
        value = data.get(key)
        if value is not None:
            return value
    return default


def _coerce_id(value: object) -> str:
    # Numeric ids are common in hand-written queue files.
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return _as_str(value, "Task.id", max_len=256)


def _coerce_priority(value: object) -> int:
    if isinstance(value, bool):
        _fail("Task.priority", "expected integer, got bool")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        named = {"low": -1, "normal": 0, "medium": 0, "high": 1, "critical": 2}
        lowered = value.strip().lower()
        if lowered in named:
            return named[lowered]
        try:
            return int(lowered)
        except ValueError:
            _fail("Task.priority", f"invalid priority {value!r}")
    if value is None:
        return 0
    _fail("Task.priority", f"expected integer, got {type(value).__name__}")


def _as_str(value: object, path: str, *, max_len: int = _MAX_TEXT) -> str:
    if not isinstance(value, str):
        _fail(path, f"expected string, got {type(value).__name__}")
    normalized = value.strip()
    if not normalized:
        _fail(path, "must be at least 1 character(s)")
    if len(normalized) > max_len:
        _fail(path, f"must be <= {max_len} characters")
    return normalized


def _as_optional_text(value: object) -> str:
    if value is None:
        return ""
    return _as_str(value, "Task.title")


def _as_sequence(value: object, path: str) -> list[object]:
    if isinstance(value, (list, tuple, set, frozenset)):
        return list(value)
    _fail(path, f"expected array, got {type(value).__name__}")


def _as_str_iterable(value: Iterable[object] | object, path: str) -> list[str]:
    if isinstance(value, str):
        _fail(path, "expected array of strings, got str")
    items = _as_sequence(value, path)
    return [_as_str(item, f"{path}[{index}]") for index, item in enumerate(items)]


def _as_relative_path(value: object, path: str) -> str:
    parsed = _as_str(value, path, max_len=1024)
    if "\x00" in parsed:
        _fail(path, "must not contain NUL bytes")
    pure = PurePosixPath(parsed.replace("\\", "/"))
    if pure.is_absolute():
        _fail(path, "must be a relative POSIX path")
    if any(part == ".." for part in pure.parts):
        _fail(path, "must not contain '..' traversal")
    return pure.as_posix()


__all__ = ["Task", "TaskStatus"]
