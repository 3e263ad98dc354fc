"""
taskwave — verification artifact layout.

File: src/taskwave/verification_plane/artifacts.py
Last updated: 2026-10-18

Purpose
- Persist verification results as files so later automation reads artifacts,
  never console output.

Storage layout
- `<verifications_dir>/<task>-<phase>.json` (one record per task and phase)
- `<verifications_dir>/verification-log.md` (append-only activity log)
- `<verifications_dir>/loops/<task>-loop.json` (structured-loop summary)

Functional requirements
- Record writes are atomic; a re-run of the same phase replaces the previous file whole.
- The markdown log is only ever appended to.
"""

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final

import structlog

from taskwave.utils.fs import append_text, atomic_write_json, read_json

if TYPE_CHECKING:
    from taskwave.verification_plane.runner import VerificationRecord

logger = structlog.get_logger(__name__)

LOG_FILE_NAME: Final[str] = "verification-log.md"
LOOPS_DIR_NAME: Final[str] = "loops"
LOG_HEADER: Final[str] = "# Verification Log\n\nFile-based verification results.\n\n"

_COMMAND_PREVIEW_CHARS: Final[int] = 40
_UNSAFE_NAME_CHARS: Final[re.Pattern[str]] = re.compile(r"[^A-Za-z0-9._-]")


class ArtifactError(RuntimeError):
    """Raised when a stored artifact cannot be parsed."""


class VerificationArtifactStore:
    """Read and write verification artifacts under one directory."""

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root)

    @property
    def root(self) -> Path:
        return self._root

    @property
    def log_path(self) -> Path:
        return self._root / LOG_FILE_NAME

    def record_path(self, task_id: str, phase: str) -> Path:
        return self._root / f"{_safe_name(task_id)}-{_safe_name(phase)}.json"

    def loop_summary_path(self, task_id: str) -> Path:
        return self._root / LOOPS_DIR_NAME / f"{_safe_name(task_id)}-loop.json"

    def save_record(self, record: VerificationRecord) -> Path:
        """Write the record artifact and append its activity-log entry."""

        path = self.record_path(record.task_id, record.phase)
        atomic_write_json(path, record.to_dict())
        append_text(self.log_path, format_log_entry(record), header=LOG_HEADER)
        logger.debug("verification_record_saved", task_id=record.task_id, phase=record.phase, path=str(path))
        return path

    def load_record_payload(self, task_id: str, phase: str) -> dict[str, Any] | None:
        return self._load_object(self.record_path(task_id, phase))

    def record_payloads_for_task(self, task_id: str) -> list[dict[str, Any]]:
        if not self._root.is_dir():
            return []
        prefix = f"{_safe_name(task_id)}-"
        payloads: list[dict[str, Any]] = []
        for path in sorted(self._root.glob(f"{prefix}*.json")):
            payload = self._load_object(path)
            if payload is not None and payload.get("task_id") == task_id:
                payloads.append(payload)
        return payloads

    def save_loop_summary(self, task_id: str, summary: Mapping[str, Any]) -> Path:
        path = self.loop_summary_path(task_id)
        atomic_write_json(path, dict(summary))
        return path

    def load_loop_summary(self, task_id: str) -> dict[str, Any] | None:
        return self._load_object(self.loop_summary_path(task_id))

    @staticmethod
    def _load_object(path: Path) -> dict[str, Any] | None:
        try:
            payload = read_json(path)
        except json.JSONDecodeError as exc:
            raise ArtifactError(f"corrupt verification artifact {path}: {exc}") from exc
        if payload is None:
            return None
        if not isinstance(payload, dict):
            raise ArtifactError(f"verification artifact {path} must contain a JSON object")
        return payload


def format_log_entry(record: VerificationRecord) -> str:
    """Markdown block appended to the activity log for one run."""

    status = "✓ PASSED" if record.all_passed else "✗ FAILED"
    lines = [
        "",
        f"## {record.task_id} - {record.phase} [{status}]",
        f"**Time:** {record.timestamp}",
        f"**Duration:** {record.duration_ms}ms",
        "",
        "| Command | Status | Exit | Duration |",
        "|---------|--------|------|----------|",
    ]
    for outcome in record.results:
        command = outcome.command
        if len(command) > _COMMAND_PREVIEW_CHARS:
            command = f"{command[:_COMMAND_PREVIEW_CHARS]}..."
        command = command.replace("|", "\\|")
        exit_text = "timeout" if outcome.timed_out else str(outcome.exit_code)
        mark = "✓" if outcome.passed else "✗"
        lines.append(f"| `{command}` | {mark} | {exit_text} | {outcome.duration_ms}ms |")
    lines.extend(["", "---", ""])
    return "\n".join(lines)


def _safe_name(value: str) -> str:
    return _UNSAFE_NAME_CHARS.sub("_", value) or "_"


__all__ = [
    "LOG_FILE_NAME",
    "LOG_HEADER",
    "LOOPS_DIR_NAME",
    "ArtifactError",
    "VerificationArtifactStore",
    "format_log_entry",
]
