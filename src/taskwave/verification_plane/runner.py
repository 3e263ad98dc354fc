"""
taskwave — phased verification runner.

File: src/taskwave/verification_plane/runner.py
Last updated: 2026-10-18

Purpose
- Run the external commands that gate each phase of a task (spec, test,
  implementation, final) and persist the outcome as a verification record.

What should be included in this file
- Phase, command and outcome types plus the immutable ``VerificationRecord``.
- A shell command executor with a hard timeout.
- ``VerificationRunner.run`` with fail-fast semantics and artifact persistence.

Functional requirements
- ``passed`` is ``exit_code == expected_exit_code``; a timed-out command has no
  exit code and fails.
- With fail-fast enabled, commands after the first failure are never run and are
  absent from the record.
- Captured output is bounded and redacted before it is written anywhere.

Non-functional requirements
- The executor is injectable so tests never spawn real processes.
"""

from __future__ import annotations

import os
import subprocess
import time
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import structlog

from taskwave.constants import VERIFICATION_RECORD_SCHEMA_VERSION
from taskwave.observability.logging import redact_text
from taskwave.verification_plane.artifacts import VerificationArtifactStore

logger = structlog.get_logger(__name__)

_TRUNCATION_MARKER = "\n...[truncated]"


class VerificationPhase(StrEnum):
    SPEC = "spec"
    TEST = "test"
    IMPLEMENTATION = "implementation"
    FINAL = "final"


class VerificationFailure(RuntimeError):
    """Raised by callers that escalate a failed record."""

    def __init__(self, record: VerificationRecord) -> None:
        failed = ", ".join(item.description for item in record.failures) or "unknown command"
        super().__init__(f"verification failed for {record.task_id} ({record.phase}): {failed}")
        self.record = record


@dataclass(frozen=True, slots=True)
class VerificationCommand:
    command: str
    description: str = ""
    required: bool = True
    expected_exit_code: int = 0

    def __post_init__(self) -> None:
        if not self.command.strip():
            raise ValueError("verification command must not be empty")
        if not self.description:
            object.__setattr__(self, "description", self.command)

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any] | str) -> VerificationCommand:
        if isinstance(payload, str):
            return cls(command=payload)
        return cls(
            command=str(payload["command"]),
            description=str(payload.get("description", "")),
            required=bool(payload.get("required", True)),
            expected_exit_code=int(payload.get("expected_exit_code", 0)),
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "command": self.command,
            "description": self.description,
            "required": self.required,
            "expected_exit_code": self.expected_exit_code,
        }


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    """Raw result returned by a :class:`CommandExecutor`."""

    exit_code: int | None
    stdout: str
    stderr: str
    timed_out: bool = False


@runtime_checkable
class CommandExecutor(Protocol):
    def execute(self, command: str, *, cwd: Path, timeout_seconds: float) -> ExecutionResult: ...


class ShellCommandExecutor:
    """Run commands through the system shell with a kill-on-timeout."""

    def __init__(self, *, env_overrides: Mapping[str, str] | None = None) -> None:
        self._env_overrides = dict(env_overrides or {})

    def execute(self, command: str, *, cwd: Path, timeout_seconds: float) -> ExecutionResult:
        env = os.environ.copy()
        env.update(self._env_overrides)
        try:
            completed = subprocess.run(
                command,
                shell=True,
                cwd=cwd,
                env=env,
                check=False,
                capture_output=True,
                text=True,
                timeout=timeout_seconds,
            )
        except subprocess.TimeoutExpired as exc:
            return ExecutionResult(
                exit_code=None,
                stdout=_coerce_timeout_stream(exc.stdout),
                stderr=_coerce_timeout_stream(exc.stderr),
                timed_out=True,
            )
        return ExecutionResult(
            exit_code=completed.returncode,
            stdout=completed.stdout,
            stderr=completed.stderr,
        )


@dataclass(frozen=True, slots=True)
class CommandOutcome:
    command: str
    description: str
    required: bool
    expected_exit_code: int
    exit_code: int | None
    passed: bool
    stdout: str
    stderr: str
    duration_ms: int
    timed_out: bool = False

    def to_dict(self) -> dict[str, object]:
        return {
            "command": self.command,
            "description": self.description,
            "required": self.required,
            "expected_exit_code": self.expected_exit_code,
            "exit_code": self.exit_code,
            "passed": self.passed,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "duration_ms": self.duration_ms,
            "timed_out": self.timed_out,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> CommandOutcome:
        exit_code = payload.get("exit_code")
        return cls(
            command=str(payload["command"]),
            description=str(payload.get("description", payload["command"])),
            required=bool(payload.get("required", True)),
            expected_exit_code=int(payload.get("expected_exit_code", 0)),
            exit_code=int(exit_code) if exit_code is not None else None,
            passed=bool(payload.get("passed", False)),
            stdout=str(payload.get("stdout", "")),
            stderr=str(payload.get("stderr", "")),
            duration_ms=int(payload.get("duration_ms", 0)),
            timed_out=bool(payload.get("timed_out", False)),
        )


@dataclass(frozen=True, slots=True)
class VerificationRecord:
    """Outcome of one phase run for one task."""

    task_id: str
    phase: str
    timestamp: str
    results: tuple[CommandOutcome, ...]
    all_passed: bool
    duration_ms: int
    schema_version: int = VERIFICATION_RECORD_SCHEMA_VERSION

    @property
    def failures(self) -> tuple[CommandOutcome, ...]:
        return tuple(item for item in self.results if not item.passed)

    @property
    def required_failures(self) -> tuple[CommandOutcome, ...]:
        return tuple(item for item in self.failures if item.required)

    @property
    def should_escalate(self) -> bool:
        """Failed in the final phase, or a required command failed."""
        if self.all_passed:
            return False
        return self.phase == VerificationPhase.FINAL.value or bool(self.required_failures)

    def raise_for_failure(self) -> None:
        if self.should_escalate:
            raise VerificationFailure(self)

    def to_dict(self) -> dict[str, object]:
        return {
            "schema_version": self.schema_version,
            "task_id": self.task_id,
            "phase": self.phase,
            "timestamp": self.timestamp,
            "results": [item.to_dict() for item in self.results],
            "all_passed": self.all_passed,
            "duration_ms": self.duration_ms,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> VerificationRecord:
        return cls(
            task_id=str(payload["task_id"]),
            phase=str(payload["phase"]),
            timestamp=str(payload.get("timestamp", "")),
            results=tuple(CommandOutcome.from_dict(item) for item in payload.get("results", [])),
            all_passed=bool(payload.get("all_passed", False)),
            duration_ms=int(payload.get("duration_ms", 0)),
            schema_version=int(payload.get("schema_version", VERIFICATION_RECORD_SCHEMA_VERSION)),
        )


@dataclass(frozen=True, slots=True)
class VerificationSettings:
    fail_fast: bool = True
    timeout_seconds: float = 120.0
    max_output_chars: int = 20_000
    commands: Mapping[str, tuple[VerificationCommand, ...]] | None = None

    @classmethod
    def from_config(cls, verification: Mapping[str, Any] | None) -> VerificationSettings:
        data = dict(verification or {})
        defaults = cls()
        raw_commands = data.get("commands") or {}
        commands = {
            str(phase): commands_from_config(entries)
            for phase, entries in dict(raw_commands).items()
        }
        return cls(
            fail_fast=bool(data.get("fail_fast", defaults.fail_fast)),
            timeout_seconds=float(data.get("timeout_seconds", defaults.timeout_seconds)),
            max_output_chars=int(data.get("max_output_chars", defaults.max_output_chars)),
            commands=commands,
        )

    def commands_for(self, phase: str) -> tuple[VerificationCommand, ...]:
        if self.commands is None:
            return ()
        return self.commands.get(phase, ())


class VerificationRunner:
    """Run phase commands and persist each run as an artifact."""

    def __init__(
        self,
        artifacts: VerificationArtifactStore,
        settings: VerificationSettings | None = None,
        *,
        executor: CommandExecutor | None = None,
        project_root: Path | str | None = None,
        now_fn: Callable[[], datetime] | None = None,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self._artifacts = artifacts
        self._settings = settings or VerificationSettings()
        self._executor = executor or ShellCommandExecutor()
        self._project_root = Path(project_root).resolve() if project_root is not None else Path.cwd()
        self._now = now_fn or _utc_now
        self._clock = clock

    @property
    def artifacts(self) -> VerificationArtifactStore:
        return self._artifacts

    @property
    def settings(self) -> VerificationSettings:
        return self._settings

    def default_commands(self, phase: VerificationPhase | str) -> tuple[VerificationCommand, ...]:
        return self._settings.commands_for(VerificationPhase(phase).value)

    def run(
        self,
        task_id: str,
        phase: VerificationPhase | str,
        commands: Iterable[VerificationCommand | Mapping[str, Any] | str] | None = None,
        *,
        fail_fast: bool | None = None,
        timeout_seconds: float | None = None,
        cwd: Path | str | None = None,
    ) -> VerificationRecord:
        """Run ``commands`` (or the phase defaults) and persist the record."""

        phase_value = VerificationPhase(phase).value
        planned = (
            self.default_commands(phase_value)
            if commands is None
            else tuple(_as_command(item) for item in commands)
        )
        stop_on_failure = self._settings.fail_fast if fail_fast is None else fail_fast
        timeout = self._settings.timeout_seconds if timeout_seconds is None else float(timeout_seconds)
        if timeout <= 0:
            raise ValueError("timeout_seconds must be > 0")
        run_cwd = Path(cwd).resolve() if cwd is not None else self._project_root

        timestamp = _iso(self._now())
        started = self._clock()
        outcomes: list[CommandOutcome] = []
        for command in planned:
            outcome = self._run_one(command, cwd=run_cwd, timeout_seconds=timeout)
            outcomes.append(outcome)
            if not outcome.passed:
                logger.warning(
                    "verification_command_failed",
                    task_id=task_id,
                    phase=phase_value,
                    command=command.description,
                    exit_code=outcome.exit_code,
                    timed_out=outcome.timed_out,
                )
                if stop_on_failure:
                    break

        record = VerificationRecord(
            task_id=task_id,
            phase=phase_value,
            timestamp=timestamp,
            results=tuple(outcomes),
            all_passed=all(item.passed for item in outcomes),
            duration_ms=_elapsed_ms(started, self._clock()),
        )
        self._artifacts.save_record(record)
        logger.info(
            "verification_completed",
            task_id=task_id,
            phase=phase_value,
            all_passed=record.all_passed,
            commands=len(outcomes),
            planned=len(planned),
            duration_ms=record.duration_ms,
        )
        return record

    def load_record(self, task_id: str, phase: VerificationPhase | str) -> VerificationRecord | None:
        payload = self._artifacts.load_record_payload(task_id, VerificationPhase(phase).value)
        return VerificationRecord.from_dict(payload) if payload is not None else None

    def records_for_task(self, task_id: str) -> list[VerificationRecord]:
        return [VerificationRecord.from_dict(item) for item in self._artifacts.record_payloads_for_task(task_id)]

    def _run_one(self, command: VerificationCommand, *, cwd: Path, timeout_seconds: float) -> CommandOutcome:
        started = self._clock()
        result = self._executor.execute(command.command, cwd=cwd, timeout_seconds=timeout_seconds)
        duration_ms = _elapsed_ms(started, self._clock())
        passed = not result.timed_out and result.exit_code == command.expected_exit_code
        return CommandOutcome(
            command=command.command,
            description=command.description,
            required=command.required,
            expected_exit_code=command.expected_exit_code,
            exit_code=None if result.timed_out else result.exit_code,
            passed=passed,
            stdout=self._bound(result.stdout),
            stderr=self._bound(result.stderr),
            duration_ms=duration_ms,
            timed_out=result.timed_out,
        )

    def _bound(self, text: str) -> str:
        limit = self._settings.max_output_chars
        redacted = redact_text(text)
        if limit <= 0 or len(redacted) <= limit:
            return redacted
        return redacted[-limit:] + _TRUNCATION_MARKER


def format_record(record: VerificationRecord) -> str:
    """Plain-text summary for terminals."""

    heading = "VERIFICATION PASSED" if record.all_passed else "VERIFICATION FAILED"
    lines = [
        f"{'✓' if record.all_passed else '✗'} {heading}",
        f"Task: {record.task_id} | Phase: {record.phase} | Duration: {record.duration_ms}ms",
        "",
    ]
    for outcome in record.results:
        mark = "✓" if outcome.passed else "✗"
        suffix = " (timed out)" if outcome.timed_out else ""
        optional = "" if outcome.required else " [optional]"
        lines.append(f"{mark} {outcome.description}{optional}{suffix}")
        if not outcome.passed and outcome.stderr.strip():
            lines.append(f"  {outcome.stderr.strip()[:200]}")
    return "\n".join(lines)


def commands_from_config(entries: Sequence[Mapping[str, Any] | str]) -> tuple[VerificationCommand, ...]:
    return tuple(VerificationCommand.from_mapping(item) for item in entries)


def _as_command(value: VerificationCommand | Mapping[str, Any] | str) -> VerificationCommand:
    if isinstance(value, VerificationCommand):
        return value
    return VerificationCommand.from_mapping(value)


def _coerce_timeout_stream(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


def _elapsed_ms(started: float, finished: float) -> int:
    return max(0, int(round((finished - started) * 1000)))


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


def _iso(value: datetime) -> str:
    return value.isoformat().replace("+00:00", "Z")


__all__ = [
    "CommandExecutor",
    "CommandOutcome",
    "ExecutionResult",
    "ShellCommandExecutor",
    "VerificationCommand",
    "VerificationFailure",
    "VerificationPhase",
    "VerificationRecord",
    "VerificationRunner",
    "VerificationSettings",
    "commands_from_config",
    "format_record",
]
