"""
taskwave — unit tests for the orchestration driver.

File: tests/unit/control_plane/test_driver.py
Last updated: 2026-10-18

Purpose
- Run the driver without git isolation against scripted executors and verify wave
  ordering, loop enforcement, safety aborts, verification gating and queue writeback.
"""

from __future__ import annotations

import json
import threading
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from taskwave.control_plane.criterion_verifier import CriterionCheck
from taskwave.control_plane.driver import (
    DriverSettings,
    IterationReport,
    OrchestrationDriver,
    OutcomeStatus,
    TaskWork,
)
from taskwave.control_plane.loop_enforcer import ExitReason, LoopEnforcer, LoopPolicy, LoopStatus
from taskwave.control_plane.session_store import InMemorySessionStore
from taskwave.domain.models import Task
from taskwave.persistence.task_queue import TaskQueue
from taskwave.sandbox.safety_guard import SafetyLimits, SafetyPolicy, ViolationPolicy
from taskwave.verification_plane.artifacts import VerificationArtifactStore
from taskwave.verification_plane.runner import (
    ExecutionResult,
    VerificationRunner,
    VerificationSettings,
)

_NO_ISOLATION = DriverSettings(require_isolation=False)


@dataclass
class ScriptedExecutor:
    """Marks every criterion passed unless the task id is listed as failing."""

    failing: frozenset[str] = frozenset()
    crashing: frozenset[str] = frozenset()
    calls: list[tuple[str, int]] = field(default_factory=list)
    feedback: dict[str, list[str]] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def __call__(self, work: TaskWork) -> IterationReport:
        with self._lock:
            self.calls.append((work.task.id, work.iteration))
            self.feedback.setdefault(work.task.id, []).append(work.feedback)
        if work.task.id in self.crashing:
            raise RuntimeError("agent crashed")
        passed = work.task.id not in self.failing
        return IterationReport(
            results={
                criterion.id: CriterionCheck(passed, "claimed", "executor")
                for criterion in work.session.criteria
            },
            tokens_used=10,
        )


class FixedExecutor:
    def __init__(self, exit_code: int) -> None:
        self.exit_code = exit_code

    def execute(self, command: str, *, cwd: Path, timeout_seconds: float) -> ExecutionResult:
        return ExecutionResult(exit_code=self.exit_code, stdout="", stderr="failed" if self.exit_code else "")


def _task(task_id: str, *depends_on: str, criteria: tuple[str, ...] = ("Docs updated",)) -> Task:
    return Task(id=task_id, depends_on=frozenset(depends_on), acceptance_criteria=criteria)


def _driver(
    tmp_path: Path,
    executor: ScriptedExecutor,
    *,
    store: InMemorySessionStore | None = None,
    **kwargs: object,
) -> OrchestrationDriver:
    policy = kwargs.pop("loop_policy", LoopPolicy())
    enforcer = LoopEnforcer(store or InMemorySessionStore(), policy, project_root=tmp_path)  # type: ignore[arg-type]
    return OrchestrationDriver(
        tmp_path,
        executor,
        enforcer=enforcer,
        settings=kwargs.pop("settings", _NO_ISOLATION),  # type: ignore[arg-type]
        **kwargs,  # type: ignore[arg-type]
    )


def test_waves_run_in_dependency_order(tmp_path: Path) -> None:
    executor = ScriptedExecutor()
    report = _driver(tmp_path, executor).run([_task("C", "A", "B"), _task("A"), _task("B")])

    assert report.succeeded
    assert report.analysis.waves == (("A", "B"), ("C",))
    assert [item.task_id for item in report.outcomes] == ["A", "B", "C"]
    assert all(item.status is OutcomeStatus.COMPLETED for item in report.outcomes)
    assert report.outcome_for("C").exit_reason is ExitReason.ALL_COMPLETE  # type: ignore[union-attr]
    assert [call for call in executor.calls if call[0] == "C"] == [("C", 1)]


def test_exhausted_loop_blocks_task_and_skips_dependents(tmp_path: Path) -> None:
    store = InMemorySessionStore()
    executor = ScriptedExecutor(failing=frozenset({"A"}))
    driver = _driver(tmp_path, executor, store=store, loop_policy=LoopPolicy(max_retries=2))

    report = driver.run([_task("A"), _task("B", "A"), _task("D")])

    blocked = report.outcome_for("A")
    assert blocked is not None
    assert blocked.status is OutcomeStatus.BLOCKED
    assert blocked.reason == "loop-exhausted"
    assert blocked.exit_reason is ExitReason.MAX_RETRIES
    assert blocked.iterations == 3
    assert report.outcome_for("B").reason == "dependency-failed"  # type: ignore[union-attr]
    assert report.outcome_for("D").status is OutcomeStatus.COMPLETED  # type: ignore[union-attr]
    assert not report.succeeded
    assert "LOOP ENFORCEMENT ACTIVE" in executor.feedback["A"][1]
    assert [item["status"] for item in store.history() if item["task_id"] == "A"] == ["exhausted"]


def test_crashing_executor_does_not_abort_its_wave(tmp_path: Path) -> None:
    executor = ScriptedExecutor(crashing=frozenset({"A"}))
    report = _driver(tmp_path, executor).run([_task("A"), _task("B")])

    crashed = report.outcome_for("A")
    assert crashed is not None
    assert crashed.status is OutcomeStatus.BLOCKED
    assert crashed.reason == "internal-error"
    assert "agent crashed" in (crashed.message or "")
    assert report.outcome_for("B").succeeded  # type: ignore[union-attr]


def test_safety_violation_aborts_task(tmp_path: Path) -> None:
    store = InMemorySessionStore()
    policy = SafetyPolicy(limits=SafetyLimits(max_steps=1))
    driver = _driver(
        tmp_path,
        ScriptedExecutor(failing=frozenset({"A"})),
        store=store,
        safety_policy=policy,
    )

    outcome = driver.run([_task("A")]).outcome_for("A")

    assert outcome is not None
    assert outcome.reason == "safety-violation"
    assert outcome.violation is not None
    assert outcome.violation["limit_name"] == "max_steps"
    assert store.history()[-1]["status"] == LoopStatus.ABORTED.value


def test_warn_policy_records_violation_and_continues(tmp_path: Path) -> None:
    policy = SafetyPolicy(on_violation=ViolationPolicy.WARN, limits=SafetyLimits(max_tokens=5))
    outcome = _driver(tmp_path, ScriptedExecutor(), safety_policy=policy).run(
        [_task("A", criteria=())]
    ).outcome_for("A")

    assert outcome is not None
    assert outcome.status is OutcomeStatus.COMPLETED
    assert outcome.warnings and "Token limit" in outcome.warnings[0]


def test_failed_final_verification_blocks_task(tmp_path: Path) -> None:
    runner = VerificationRunner(
        VerificationArtifactStore(tmp_path / "verifications"),
        VerificationSettings.from_config({"commands": {"final": ["make check"]}}),
        executor=FixedExecutor(2),
        project_root=tmp_path,
    )
    outcome = _driver(tmp_path, ScriptedExecutor(), runner=runner).run([_task("A")]).outcome_for("A")

    assert outcome is not None
    assert outcome.reason == "verification-failed"
    assert outcome.verification and not outcome.verification[0].all_passed
    assert (tmp_path / "verifications" / "A-final.json").is_file()


def test_unscheduled_tasks_are_reported_as_skipped(tmp_path: Path) -> None:
    report = _driver(tmp_path, ScriptedExecutor()).run(
        [_task("X", "Y"), _task("Y", "X"), _task("Z", "ghost")]
    )

    assert report.by_status(OutcomeStatus.SKIPPED) == ("X", "Y", "Z")
    assert report.outcome_for("Z").message == "missing dependencies: ghost"  # type: ignore[union-attr]
    assert report.outcome_for("X").message == "dependency cycle or blocked upstream"  # type: ignore[union-attr]


def test_queue_statuses_are_written_back(tmp_path: Path) -> None:
    queue_path = tmp_path / "queue.json"
    queue_path.write_text(
        json.dumps(
            {
                "tasks": [
                    {"id": "A", "status": "done"},
                    {"id": "B", "dependsOn": ["A"], "status": "pending", "owner": "kim"},
                    {"id": "C", "status": "pending"},
                ]
            }
        ),
        encoding="utf-8",
    )
    queue = TaskQueue(queue_path)
    executor = ScriptedExecutor(crashing=frozenset({"C"}))

    report = _driver(tmp_path, executor, queue=queue).run()

    assert report.analysis.waves == (("B", "C"),)
    document = json.loads(queue_path.read_text(encoding="utf-8"))
    assert [entry["status"] for entry in document["tasks"]] == ["done", "done", "blocked"]
    assert document["tasks"][1]["owner"] == "kim"


def test_run_without_tasks_or_queue_is_an_error(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="no task queue configured"):
        _driver(tmp_path, ScriptedExecutor()).run()


def test_stale_session_is_aborted_before_a_new_run(tmp_path: Path) -> None:
    store = InMemorySessionStore()
    LoopEnforcer(store).start("A", ["Docs updated"])

    outcome = _driver(tmp_path, ScriptedExecutor(), store=store).run([_task("A")]).outcome_for("A")

    assert outcome is not None and outcome.succeeded
    assert [item["status"] for item in store.history()] == ["aborted", "completed"]


def test_settings_from_config() -> None:
    settings = DriverSettings.from_config(
        {"parallel": {"enabled": False, "max_concurrent": 5}, "isolation": {"push": True}}
    )
    assert settings.max_concurrent == 1
    assert settings.push is True
    assert settings.squash is True
