"""Unit tests for the spec -> test -> implementation -> final structured loop."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from taskwave.verification_plane.artifacts import VerificationArtifactStore
from taskwave.verification_plane.runner import ExecutionResult, VerificationRunner, VerificationSettings
from taskwave.verification_plane.structured_loop import PHASE_ORDER, StructuredLoopResult, run_structured_loop


@dataclass
class PhaseExecutor:
    failing: frozenset[str] = frozenset()
    executed: list[str] = field(default_factory=list)

    def execute(self, command: str, *, cwd: Path, timeout_seconds: float) -> ExecutionResult:
        self.executed.append(command)
        return ExecutionResult(exit_code=1 if command in self.failing else 0, stdout="", stderr="")


def _runner(tmp_path: Path, executor: PhaseExecutor) -> VerificationRunner:
    settings = VerificationSettings.from_config(
        {
            "commands": {
                "spec": ["check-spec"],
                "test": ["run-tests"],
                "implementation": ["lint"],
                "final": ["full-suite"],
            }
        }
    )
    return VerificationRunner(
        VerificationArtifactStore(tmp_path / "verifications"),
        settings,
        executor=executor,
        project_root=tmp_path,
    )


def test_all_phases_pass(tmp_path: Path) -> None:
    executor = PhaseExecutor()
    runner = _runner(tmp_path, executor)

    result = run_structured_loop(runner, "T-1")

    assert list(result.phases) == [phase.value for phase in PHASE_ORDER]
    assert executor.executed == ["check-spec", "run-tests", "lint", "full-suite"]
    assert result.completed and result.success
    assert result.halted_at is None
    assert runner.artifacts.load_loop_summary("T-1")["success"] is True  # type: ignore[index]


def test_early_phase_failure_is_recorded_but_does_not_halt(tmp_path: Path) -> None:
    executor = PhaseExecutor(failing=frozenset({"run-tests"}))
    result = run_structured_loop(_runner(tmp_path, executor), "T-1")

    assert executor.executed[-1] == "full-suite"
    assert result.success
    summary = result.to_dict()["phases"]["test"]  # type: ignore[index]
    assert summary["verification"]["failed_commands"] == ["run-tests"]


def test_final_failure_halts_and_fails(tmp_path: Path) -> None:
    result = run_structured_loop(_runner(tmp_path, PhaseExecutor(failing=frozenset({"full-suite"}))), "T-1")

    assert result.completed
    assert not result.success
    assert result.halted_at == "final"


def test_raising_callback_halts_before_phase_commands(tmp_path: Path) -> None:
    executor = PhaseExecutor()
    seen: list[str | None] = []

    def write_tests(result: StructuredLoopResult) -> None:
        seen.append(result.current_phase)
        raise RuntimeError("no test plan")

    result = run_structured_loop(_runner(tmp_path, executor), "T-1", {"test": write_tests})

    assert seen == ["test"]
    assert executor.executed == ["check-spec"]
    assert result.halted_at == "test"
    assert result.phases["test"].error == "RuntimeError: no test plan"
    assert not result.success
