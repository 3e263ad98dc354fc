"""
taskwave — task queue file access.

File: src/taskwave/persistence/task_queue.py
Last updated: 2026-10-18

Purpose
- Read the externally owned task queue and write back task status.

What should be included in this file
- JSON and YAML queue documents (``{"tasks": [...]}`` or a bare list).
- Pending/ready filtering for wave analysis.
- Atomic status writeback that preserves every other field of the document.

Functional requirements
- The queue is read-only apart from the ``status`` field of individual entries.
- Concurrent writebacks from one process must not lose updates.
"""

from __future__ import annotations

import json
import threading
from collections.abc import Iterable
from pathlib import Path
from typing import Any

import structlog
import yaml

from taskwave.domain.models import Task, TaskStatus
from taskwave.utils.fs import atomic_write, atomic_write_json

logger = structlog.get_logger(__name__)

_YAML_SUFFIXES = frozenset({".yaml", ".yml"})


class TaskQueueError(ValueError):
    """Raised when the queue document cannot be parsed or updated."""


class TaskQueue:
    """File-backed view of the task queue document."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def exists(self) -> bool:
        return self._path.is_file()

    def load(self) -> list[Task]:
        """Return every task in document order."""

        with self._lock:
            _, entries = self._read_document()
        tasks: list[Task] = []
        for index, entry in enumerate(entries):
            if not isinstance(entry, dict):
                raise TaskQueueError(f"{self._path}: tasks[{index}] must be an object")
            try:
                tasks.append(Task.from_mapping(entry))
            except ValueError as exc:
                raise TaskQueueError(f"{self._path}: tasks[{index}]: {exc}") from exc
        _reject_duplicate_ids(tasks, self._path)
        return tasks

    def schedulable(self) -> list[Task]:
        """Return tasks whose status is pending or ready."""

        return [task for task in self.load() if task.status.schedulable]

    def completed_ids(self) -> frozenset[str]:
        return frozenset(task.id for task in self.load() if task.status is TaskStatus.DONE)

    def update_status(self, task_id: str, status: TaskStatus) -> None:
        """Rewrite the status of one task in place."""

        with self._lock:
            document, entries = self._read_document()
            for entry in entries:
                if isinstance(entry, dict) and _entry_id(entry) == task_id:
                    entry["status"] = status.value
                    break
            else:
                raise TaskQueueError(f"{self._path}: unknown task id {task_id!r}")
            self._write_document(document)
        logger.info("task_status_updated", task_id=task_id, status=status.value)

    def _read_document(self) -> tuple[Any, list[Any]]:
        if not self._path.is_file():
            raise TaskQueueError(f"task queue not found: {self._path}")
        try:
            text = self._path.read_text(encoding="utf-8")
        except OSError as exc:
            raise TaskQueueError(f"unable to read task queue {self._path}: {exc}") from exc

        try:
            if self._is_yaml:
                document = yaml.safe_load(text)
            else:
                document = json.loads(text)
        except (json.JSONDecodeError, yaml.YAMLError) as exc:
            raise TaskQueueError(f"invalid task queue {self._path}: {exc}") from exc

        if document is None:
            document = {"tasks": []}
        if isinstance(document, list):
            return document, document
        if isinstance(document, dict):
            entries = document.get("tasks", [])
            if not isinstance(entries, list):
                raise TaskQueueError(f"{self._path}: 'tasks' must be a list")
            return document, entries
        raise TaskQueueError(f"{self._path}: queue root must be an object or a list")

    def _write_document(self, document: Any) -> None:
        if self._is_yaml:
            atomic_write(self._path, yaml.safe_dump(document, sort_keys=False))
        else:
            atomic_write_json(self._path, document, sort_keys=False)

    @property
    def _is_yaml(self) -> bool:
        return self._path.suffix.lower() in _YAML_SUFFIXES


def _entry_id(entry: dict[str, Any]) -> str | None:
    raw = entry.get("id")
    if isinstance(raw, int) and not isinstance(raw, bool):
        return str(raw)
    if isinstance(raw, str):
        return raw.strip()
    return None


def _reject_duplicate_ids(tasks: Iterable[Task], path: Path) -> None:
    seen: set[str] = set()
    for task in tasks:
        if task.id in seen:
            raise TaskQueueError(f"{path}: duplicate task id {task.id!r}")
        seen.add(task.id)


__all__ = ["TaskQueue", "TaskQueueError"]
