"""
taskwave — unit tests for the verification runner.

File: tests/unit/verification_plane/test_runner.py
Last updated: 2026-10-18

Purpose
- Validate fail-fast sequencing, timeouts, output bounding and redaction, phase
  defaults, escalation rules, and record persistence using a scripted executor.
"""

from __future__ import annotations

import itertools
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

import pytest

from taskwave.verification_plane.artifacts import VerificationArtifactStore
from taskwave.verification_plane.runner import (
    CommandExecutor,
    ExecutionResult,
    ShellCommandExecutor,
    VerificationCommand,
    VerificationFailure,
    VerificationPhase,
    VerificationRecord,
    VerificationRunner,
    VerificationSettings,
    format_record,
)


@dataclass
class ScriptedExecutor:
    results: Mapping[str, ExecutionResult] = field(default_factory=dict)
    executed: list[str] = field(default_factory=list)
    timeouts: list[float] = field(default_factory=list)

    def execute(self, command: str, *, cwd: Path, timeout_seconds: float) -> ExecutionResult:
        self.executed.append(command)
        self.timeouts.append(timeout_seconds)
        return self.results.get(command, ExecutionResult(exit_code=0, stdout=f"ran {command}", stderr=""))


def _runner(
    tmp_path: Path,
    executor: ScriptedExecutor,
    settings: VerificationSettings | None = None,
) -> VerificationRunner:
    ticks = itertools.count(start=0.0, step=0.25)
    return VerificationRunner(
        VerificationArtifactStore(tmp_path / "verifications"),
        settings,
        executor=executor,
        project_root=tmp_path,
        now_fn=lambda: datetime(2026, 10, 18, 12, 0, tzinfo=UTC),
        clock=lambda: next(ticks),
    )


def test_scripted_executor_satisfies_protocol() -> None:
    assert isinstance(ScriptedExecutor(), CommandExecutor)
    assert isinstance(ShellCommandExecutor(), CommandExecutor)


def test_scenario_fail_fast_stops_after_first_failure(tmp_path: Path) -> None:
    executor = ScriptedExecutor({"two": ExecutionResult(exit_code=1, stdout="", stderr="broken")})
    runner = _runner(tmp_path, executor)

    record = runner.run("T-1", "test", ["one", "two", "three", "four"])

    assert executor.executed == ["one", "two"]
    assert [item.command for item in record.results] == ["one", "two"]
    assert [item.passed for item in record.results] == [True, False]
    assert record.all_passed is False
    assert record.timestamp == "2026-10-18T12:00:00Z"


def test_without_fail_fast_every_command_runs(tmp_path: Path) -> None:
    executor = ScriptedExecutor({"two": ExecutionResult(exit_code=1, stdout="", stderr="")})
    record = _runner(tmp_path, executor).run("T-1", "test", ["one", "two", "three"], fail_fast=False)

    assert executor.executed == ["one", "two", "three"]
    assert len(record.failures) == 1


def test_expected_exit_code_and_timeouts(tmp_path: Path) -> None:
    executor = ScriptedExecutor(
        {
            "grep -q TODO src": ExecutionResult(exit_code=1, stdout="", stderr=""),
            "sleep 99": ExecutionResult(exit_code=None, stdout="partial", stderr="", timed_out=True),
        }
    )
    record = _runner(tmp_path, executor).run(
        "T-1",
        VerificationPhase.IMPLEMENTATION,
        [{"command": "grep -q TODO src", "expected_exit_code": 1}, "sleep 99"],
        timeout_seconds=3,
    )

    negated, slow = record.results
    assert negated.passed is True
    assert slow.passed is False
    assert slow.timed_out is True
    assert slow.exit_code is None
    assert executor.timeouts == [3.0, 3.0]


def test_non_positive_timeout_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="timeout_seconds"):
        _runner(tmp_path, ScriptedExecutor()).run("T-1", "final", ["true"], timeout_seconds=0)


def test_output_is_redacted_then_bounded(tmp_path: Path) -> None:
    noisy = "x" * 50 + "\nAPI_KEY=abcdef123456"
    executor = ScriptedExecutor({"leak": ExecutionResult(exit_code=0, stdout=noisy, stderr="token: s3cr3t")})
    settings = VerificationSettings(max_output_chars=30)

    outcome = _runner(tmp_path, executor, settings).run("T-1", "final", ["leak"]).results[0]

    assert "abcdef123456" not in outcome.stdout
    assert outcome.stdout.endswith("...[truncated]")
    assert outcome.stdout == "x" * 7 + "\nAPI_KEY=***REDACTED***" + "\n...[truncated]"
    assert outcome.stderr == "token:***REDACTED***"


def test_phase_defaults_come_from_settings(tmp_path: Path) -> None:
    settings = VerificationSettings.from_config(
        {"fail_fast": False, "commands": {"test": ["pytest -q", {"command": "ruff check .", "required": False}]}}
    )
    executor = ScriptedExecutor({"ruff check .": ExecutionResult(exit_code=1, stdout="", stderr="E501")})
    runner = _runner(tmp_path, executor, settings)

    record = runner.run("T-1", "test")

    assert executor.executed == ["pytest -q", "ruff check ."]
    assert record.failures[0].required is False
    assert not record.should_escalate
    record.raise_for_failure()
    assert runner.run("T-1", "spec").results == ()


def test_final_phase_failure_always_escalates(tmp_path: Path) -> None:
    executor = ScriptedExecutor({"lint": ExecutionResult(exit_code=1, stdout="", stderr="")})
    record = _runner(tmp_path, executor).run("T-1", "final", [{"command": "lint", "required": False}])

    assert record.should_escalate
    with pytest.raises(VerificationFailure, match=r"verification failed for T-1 \(final\): lint"):
        record.raise_for_failure()


def test_records_are_persisted_and_reloadable(tmp_path: Path) -> None:
    runner = _runner(tmp_path, ScriptedExecutor())
    record = runner.run("T-1", "spec", ["echo spec"])
    runner.run("T-1", "final", ["echo final"])

    assert runner.load_record("T-1", "spec") == record
    assert [item.phase for item in runner.records_for_task("T-1")] == ["final", "spec"]
    assert runner.load_record("T-2", "spec") is None
    assert VerificationRecord.from_dict(record.to_dict()) == record


def test_unknown_phase_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        _runner(tmp_path, ScriptedExecutor()).run("T-1", "deploy", ["true"])


def test_empty_command_is_rejected() -> None:
    with pytest.raises(ValueError):
        VerificationCommand("  ")
    assert VerificationCommand("make").description == "make"


def test_format_record_marks_failures(tmp_path: Path) -> None:
    executor = ScriptedExecutor({"bad": ExecutionResult(exit_code=2, stdout="", stderr="boom")})
    record = _runner(tmp_path, executor).run("T-1", "test", ["good", "bad"], fail_fast=False)

    text = format_record(record)

    assert text.splitlines()[0] == "✗ VERIFICATION FAILED"
    assert "✓ good" in text
    assert "✗ bad" in text
    assert "  boom" in text


def test_shell_executor_runs_real_commands(tmp_path: Path) -> None:
    executor = ShellCommandExecutor(env_overrides={"TASKWAVE_GREETING": "hello"})
    result = executor.execute('echo "$TASKWAVE_GREETING"; exit 3', cwd=tmp_path, timeout_seconds=10)
    assert result.exit_code == 3
    assert result.stdout.strip() == "hello"
    assert not result.timed_out
