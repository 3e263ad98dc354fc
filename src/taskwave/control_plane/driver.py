"""
taskwave — orchestration driver.

File: src/taskwave/control_plane/driver.py
Last updated: 2026-10-18

Purpose
- Execute analyzed task waves: one wave at a time, tasks of a wave concurrently,
  each task in its own isolation context with its own safety guard and loop session.

What should be included in this file
- ``TaskExecutor`` protocol for the external agent that edits files.
- Per-task flow: isolate, iterate under loop enforcement, verify, merge back.
- ``DriverReport`` with one ``TaskOutcome`` per task, including unscheduled ones.

Functional requirements
- Waves run strictly in sequence; a task whose dependency did not finish is skipped.
- Merge-back into the primary tree is serialized by ``threading.Lock``.
- A failing task never aborts its wave; its context is discarded (or its branch
  preserved after a merge failure) and its queue status becomes ``blocked``.
- Every abort leaves an explanation in the outcome and in the log.

Non-functional requirements
- All collaborators are injectable; ``from_config`` wires the defaults.
"""

from __future__ import annotations

import threading
from collections.abc import Iterable, Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import structlog

from taskwave.control_plane.criterion_verifier import CriterionCheck, VerificationContext
from taskwave.control_plane.loop_enforcer import (
    CriterionStatus,
    ExitReason,
    LoopEnforcer,
    LoopExhaustedError,
    LoopPolicy,
    LoopSession,
    LoopStatus,
)
from taskwave.control_plane.session_store import JsonFileSessionStore
from taskwave.domain.models import Task, TaskStatus
from taskwave.integration_plane.git_engine import MergeError, VCSError
from taskwave.integration_plane.isolation_manager import (
    IsolationContext,
    IsolationManager,
    MergeOutcome,
)
from taskwave.observability.logging import bound_task
from taskwave.persistence.task_queue import TaskQueue
from taskwave.planning.wave_analyzer import WaveAnalysis, WaveAnalyzer, WaveAnalyzerConfig
from taskwave.sandbox.safety_guard import SafetyGuard, SafetyPolicy, SafetyViolation, ViolationPolicy
from taskwave.verification_plane.artifacts import VerificationArtifactStore
from taskwave.verification_plane.runner import (
    VerificationFailure,
    VerificationPhase,
    VerificationRecord,
    VerificationRunner,
    VerificationSettings,
)

logger = structlog.get_logger(__name__)


class OutcomeStatus(StrEnum):
    MERGED = "merged"
    NO_CHANGES = "no_changes"
    COMPLETED = "completed"
    BLOCKED = "blocked"
    SKIPPED = "skipped"


@dataclass(frozen=True, slots=True)
class TaskWork:
    """Everything an executor gets for one iteration of one task."""

    task: Task
    workdir: Path
    guard: SafetyGuard
    session: LoopSession
    iteration: int
    feedback: str = ""


@dataclass(frozen=True, slots=True)
class IterationReport:
    """What the executor claims after an iteration, keyed by criterion id."""

    results: Mapping[str, CriterionCheck] = field(default_factory=dict)
    tokens_used: int = 0


@runtime_checkable
class TaskExecutor(Protocol):
    def __call__(self, work: TaskWork) -> IterationReport | None: ...


@dataclass(frozen=True, slots=True)
class TaskOutcome:
    task_id: str
    status: OutcomeStatus
    wave: int | None = None
    reason: str | None = None
    message: str | None = None
    iterations: int = 0
    exit_reason: ExitReason | None = None
    merge: MergeOutcome | None = None
    verification: tuple[VerificationRecord, ...] = ()
    violation: Mapping[str, object] | None = None
    warnings: tuple[str, ...] = ()

    @property
    def succeeded(self) -> bool:
        return self.status in {OutcomeStatus.MERGED, OutcomeStatus.NO_CHANGES, OutcomeStatus.COMPLETED}

    def to_dict(self) -> dict[str, object]:
        return {
            "task_id": self.task_id,
            "status": self.status.value,
            "wave": self.wave,
            "reason": self.reason,
            "message": self.message,
            "iterations": self.iterations,
            "exit_reason": self.exit_reason.value if self.exit_reason is not None else None,
            "merge": self.merge.to_dict() if self.merge is not None else None,
            "verification": [
                {"phase": item.phase, "all_passed": item.all_passed} for item in self.verification
            ],
            "violation": dict(self.violation) if self.violation is not None else None,
            "warnings": list(self.warnings),
        }


@dataclass(frozen=True, slots=True)
class DriverReport:
    analysis: WaveAnalysis
    outcomes: tuple[TaskOutcome, ...]
    started_at: datetime
    finished_at: datetime

    @property
    def succeeded(self) -> bool:
        return all(item.succeeded for item in self.outcomes)

    def outcome_for(self, task_id: str) -> TaskOutcome | None:
        for item in self.outcomes:
            if item.task_id == task_id:
                return item
        return None

    def by_status(self, status: OutcomeStatus) -> tuple[str, ...]:
        return tuple(item.task_id for item in self.outcomes if item.status is status)

    def to_dict(self) -> dict[str, object]:
        return {
            "succeeded": self.succeeded,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "waves": [list(wave) for wave in self.analysis.waves],
            "outcomes": [item.to_dict() for item in self.outcomes],
        }


@dataclass(frozen=True, slots=True)
class DriverSettings:
    max_concurrent: int = 3
    require_isolation: bool = True
    squash: bool = True
    push: bool = False
    keep_on_failure: bool = False
    verify_phases: tuple[VerificationPhase, ...] = (VerificationPhase.FINAL,)

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> DriverSettings:
        parallel = dict(config.get("parallel") or {})
        isolation = dict(config.get("isolation") or {})
        max_concurrent = int(parallel.get("max_concurrent", 3)) if parallel.get("enabled", True) else 1
        return cls(
            max_concurrent=max(1, max_concurrent),
            require_isolation=bool(parallel.get("require_isolation", True)),
            squash=bool(isolation.get("squash", True)),
            push=bool(isolation.get("push", False)),
            keep_on_failure=bool(isolation.get("keep_on_failure", False)),
        )


class _TaskAborted(Exception):
    """Internal signal carrying the outcome of an aborted task."""

    def __init__(self, outcome: TaskOutcome) -> None:
        super().__init__(outcome.message or outcome.reason or outcome.task_id)
        self.outcome = outcome


class OrchestrationDriver:
    """Single-controller dispatcher over analyzed waves."""

    def __init__(
        self,
        project_root: str | Path,
        executor: TaskExecutor,
        *,
        analyzer: WaveAnalyzer | None = None,
        isolation: IsolationManager | None = None,
        safety_policy: SafetyPolicy | None = None,
        enforcer: LoopEnforcer | None = None,
        runner: VerificationRunner | None = None,
        queue: TaskQueue | None = None,
        settings: DriverSettings | None = None,
        config: Mapping[str, Any] | None = None,
    ) -> None:
        self._root = Path(project_root).resolve()
        self._executor = executor
        self._analyzer = analyzer or WaveAnalyzer()
        self._settings = settings or DriverSettings()
        if self._settings.require_isolation and isolation is None:
            isolation = IsolationManager(self._root)
        self._isolation = isolation
        self._safety_policy = safety_policy or SafetyPolicy()
        self._enforcer = enforcer or LoopEnforcer(project_root=self._root)
        self._runner = runner
        self._queue = queue
        self._config = config
        self._merge_lock = threading.Lock()
        self._queue_ids: frozenset[str] = frozenset()

    @classmethod
    def from_config(
        cls,
        config: Mapping[str, Any],
        executor: TaskExecutor,
        *,
        project_root: str | Path | None = None,
    ) -> OrchestrationDriver:
        """Wire every collaborator from an effective (loaded, path-normalized) config."""

        root = Path(project_root).resolve() if project_root is not None else Path.cwd().resolve()
        paths = dict(config.get("paths") or {})
        state_dir = Path(str(paths.get("state_dir", root / ".workflow" / "state")))
        verifications_dir = Path(str(paths.get("verifications_dir", root / ".workflow" / "verifications")))
        settings = DriverSettings.from_config(config)
        return cls(
            root,
            executor,
            analyzer=WaveAnalyzer(WaveAnalyzerConfig.from_config(config.get("parallel") or {})),
            isolation=IsolationManager.from_config(root, config.get("isolation"))
            if settings.require_isolation
            else None,
            safety_policy=SafetyPolicy.from_config(config.get("safety")),
            enforcer=LoopEnforcer(
                JsonFileSessionStore(state_dir),
                LoopPolicy.from_config(config.get("loops")),
                project_root=root,
                config=config,
            ),
            runner=VerificationRunner(
                VerificationArtifactStore(verifications_dir),
                VerificationSettings.from_config(config.get("verification")),
                project_root=root,
            ),
            queue=TaskQueue(paths["task_queue"]) if paths.get("task_queue") else None,
            settings=settings,
            config=config,
        )

    @property
    def settings(self) -> DriverSettings:
        return self._settings

    def run(self, tasks: Sequence[Task] | None = None, completed: Iterable[str] = ()) -> DriverReport:
        """Analyze ``tasks`` (or the queue's schedulable tasks) and execute every wave."""

        started_at = _utc_now()
        completed_ids = set(completed)
        if tasks is None:
            if self._queue is None:
                raise ValueError("no tasks given and no task queue configured")
            tasks = self._queue.schedulable()
            completed_ids |= self._queue.completed_ids()
            self._queue_ids = frozenset(task.id for task in tasks)
        else:
            self._queue_ids = frozenset()

        by_id = {task.id: task for task in tasks}
        analysis = self._analyzer.analyze(tasks, completed=completed_ids)
        logger.info(
            "driver_run_started",
            tasks=len(by_id),
            waves=len(analysis.waves),
            unscheduled=len(analysis.unscheduled),
        )

        outcomes: list[TaskOutcome] = []
        finished: set[str] = set(completed_ids)
        for wave_index, wave in enumerate(analysis.waves):
            wave_outcomes = self._run_wave(wave_index, [by_id[task_id] for task_id in wave], finished)
            for outcome in wave_outcomes:
                if outcome.succeeded:
                    finished.add(outcome.task_id)
            outcomes.extend(wave_outcomes)

        for task_id in analysis.unscheduled:
            missing = analysis.missing_dependencies.get(task_id, ())
            message = (
                f"missing dependencies: {', '.join(missing)}"
                if missing
                else "dependency cycle or blocked upstream"
            )
            logger.warning("task_unscheduled", task_id=task_id, detail=message)
            outcomes.append(
                TaskOutcome(task_id=task_id, status=OutcomeStatus.SKIPPED, reason="unscheduled", message=message)
            )

        report = DriverReport(
            analysis=analysis,
            outcomes=tuple(outcomes),
            started_at=started_at,
            finished_at=_utc_now(),
        )
        logger.info(
            "driver_run_finished",
            succeeded=report.succeeded,
            blocked=len(report.by_status(OutcomeStatus.BLOCKED)),
            skipped=len(report.by_status(OutcomeStatus.SKIPPED)),
        )
        return report

    def _run_wave(self, wave_index: int, tasks: Sequence[Task], finished: set[str]) -> list[TaskOutcome]:
        runnable: list[Task] = []
        outcomes: dict[str, TaskOutcome] = {}
        for task in tasks:
            unmet = sorted(dep for dep in task.depends_on if dep not in finished)
            if unmet:
                message = f"dependencies did not finish: {', '.join(unmet)}"
                logger.warning("task_skipped", task_id=task.id, wave=wave_index, detail=message)
                self._write_status(task.id, TaskStatus.BLOCKED)
                outcomes[task.id] = TaskOutcome(
                    task_id=task.id,
                    status=OutcomeStatus.SKIPPED,
                    wave=wave_index,
                    reason="dependency-failed",
                    message=message,
                )
            else:
                runnable.append(task)

        workers = self._settings.max_concurrent if self._isolation is not None else 1
        workers = max(1, min(workers, len(runnable) or 1))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"taskwave-wave{wave_index}") as pool:
            futures = {task.id: pool.submit(self._guarded_run_task, task, wave_index) for task in runnable}
            for task_id, future in futures.items():
                outcomes[task_id] = future.result()

        return [outcomes[task.id] for task in tasks]

    def _guarded_run_task(self, task: Task, wave_index: int) -> TaskOutcome:
        with bound_task(task_id=task.id, wave=wave_index):
            try:
                return self.run_task(task, wave_index=wave_index)
            except Exception as exc:  # noqa: BLE001 - one task's failure must not abort its wave
                logger.exception("task_crashed", task_id=task.id)
                self._write_status(task.id, TaskStatus.BLOCKED)
                return TaskOutcome(
                    task_id=task.id,
                    status=OutcomeStatus.BLOCKED,
                    wave=wave_index,
                    reason="internal-error",
                    message=f"{type(exc).__name__}: {exc}",
                )

    def run_task(self, task: Task, *, wave_index: int | None = None) -> TaskOutcome:
        """Run one task end to end and return its outcome."""

        stale = self._enforcer.active(task.id)
        if stale is not None:
            logger.warning("loop_session_superseded", task_id=task.id, iteration=stale.iteration)
            self._enforcer.end(stale, LoopStatus.ABORTED, message="superseded by a new run")
        session = self._enforcer.start(task.id, task.acceptance_criteria)

        context: IsolationContext | None = None
        if self._isolation is not None:
            try:
                context = self._isolation.create(task.id)
            except VCSError as exc:
                logger.error("task_isolation_failed", task_id=task.id, error=str(exc))
                outcome = TaskOutcome(
                    task.id, OutcomeStatus.BLOCKED, wave_index, reason="isolation-failed", message=str(exc)
                )
                self._abandon(session, outcome)
                self._write_status(task.id, TaskStatus.BLOCKED)
                return outcome
        workdir = context.isolation_path if context is not None else self._root
        guard = SafetyGuard(self._safety_policy, project_root=workdir)
        self._write_status(task.id, TaskStatus.RUNNING)

        try:
            iterations, exit_reason, warnings = self._iterate(task, workdir, guard, session)
            records = self._verify(task, workdir)
            merge = self._merge(task, context)
        except _TaskAborted as aborted:
            self._abandon(session, aborted.outcome)
            self._release(context, preserve_branch=aborted.outcome.reason == "merge-failed")
            self._write_status(task.id, TaskStatus.BLOCKED)
            return replace(aborted.outcome, wave=wave_index)
        except Exception as exc:
            self._abandon(
                session,
                TaskOutcome(task.id, OutcomeStatus.BLOCKED, reason="internal-error", message=str(exc)),
            )
            self._release(context, preserve_branch=False)
            raise

        self._write_status(task.id, TaskStatus.DONE)
        status = OutcomeStatus.COMPLETED
        if merge is not None:
            status = OutcomeStatus.MERGED if merge.merged else OutcomeStatus.NO_CHANGES
        return TaskOutcome(
            task_id=task.id,
            status=status,
            wave=wave_index,
            iterations=iterations,
            exit_reason=exit_reason,
            merge=merge,
            verification=records,
            warnings=warnings,
        )

    def _iterate(
        self, task: Task, workdir: Path, guard: SafetyGuard, session: LoopSession
    ) -> tuple[int, ExitReason, tuple[str, ...]]:
        warnings: list[str] = []
        feedback = ""
        context = VerificationContext(project_root=workdir, config=self._config)
        while True:
            iteration = self._enforcer.increment_iteration(session)
            try:
                guard.record_step()
                report = self._executor(
                    TaskWork(task=task, workdir=workdir, guard=guard, session=session, iteration=iteration, feedback=feedback)
                )
                if report is not None and report.tokens_used:
                    guard.record_tokens(report.tokens_used)
            except SafetyViolation as exc:
                if self._safety_policy.on_violation is ViolationPolicy.ABORT:
                    raise _TaskAborted(
                        TaskOutcome(
                            task.id,
                            OutcomeStatus.BLOCKED,
                            reason="safety-violation",
                            message=exc.message,
                            iterations=session.iteration,
                            violation=exc.to_dict(),
                        )
                    ) from exc
                log = logger.warning if self._safety_policy.on_violation is ViolationPolicy.WARN else logger.info
                log("safety_violation_ignored", task_id=task.id, **exc.to_dict())
                warnings.append(exc.message)
                report = None

            self._apply_report(session, report, context)
            try:
                decision = self._enforcer.conclude(session)
            except LoopExhaustedError as exc:
                raise _TaskAborted(
                    TaskOutcome(
                        task.id,
                        OutcomeStatus.BLOCKED,
                        reason="loop-exhausted",
                        message=str(exc),
                        iterations=session.iteration,
                        exit_reason=exc.reason,
                    )
                ) from exc
            if decision.can_exit:
                return session.iteration, decision.reason, tuple(warnings)
            if session.with_status(CriterionStatus.FAILED):
                self._enforcer.increment_retry(session)
            feedback = decision.message

    def _apply_report(
        self, session: LoopSession, report: IterationReport | None, context: VerificationContext
    ) -> None:
        claimed = dict(report.results) if report is not None else {}
        for criterion in list(session.criteria):
            if criterion.status not in {CriterionStatus.PENDING, CriterionStatus.FAILED}:
                continue
            check = self._enforcer.verify_criterion(criterion, context)
            if check.passed is None:
                check = claimed.get(criterion.id, check)
            if check.passed is None:
                continue
            status = CriterionStatus.COMPLETED if check.passed else CriterionStatus.FAILED
            self._enforcer.update_criterion(session, criterion.id, status, check.message, context=context)

    def _verify(self, task: Task, workdir: Path) -> tuple[VerificationRecord, ...]:
        if self._runner is None:
            return ()
        records: list[VerificationRecord] = []
        for phase in self._settings.verify_phases:
            record = self._runner.run(task.id, phase, cwd=workdir)
            records.append(record)
            try:
                record.raise_for_failure()
            except VerificationFailure as exc:
                raise _TaskAborted(
                    TaskOutcome(
                        task.id,
                        OutcomeStatus.BLOCKED,
                        reason="verification-failed",
                        message=str(exc),
                        verification=tuple(records),
                    )
                ) from exc
        return tuple(records)

    def _merge(self, task: Task, context: IsolationContext | None) -> MergeOutcome | None:
        if context is None or self._isolation is None:
            return None
        message = f"{task.id}: {task.title}"
        with self._merge_lock:
            try:
                return self._isolation.commit_and_merge(
                    context, message, squash=self._settings.squash, push=self._settings.push
                )
            except MergeError as exc:
                raise _TaskAborted(
                    TaskOutcome(task.id, OutcomeStatus.BLOCKED, reason="merge-failed", message=str(exc))
                ) from exc
            except VCSError as exc:
                raise _TaskAborted(
                    TaskOutcome(task.id, OutcomeStatus.BLOCKED, reason="vcs-error", message=str(exc))
                ) from exc

    def _abandon(self, session: LoopSession, outcome: TaskOutcome) -> None:
        if not session.active:
            return
        status = LoopStatus.ABORTED if outcome.reason == "safety-violation" else LoopStatus.FAILED
        self._enforcer.end(session, status, message=outcome.message)

    def _release(self, context: IsolationContext | None, *, preserve_branch: bool) -> None:
        if context is None or self._isolation is None:
            return
        if self._settings.keep_on_failure and not preserve_branch:
            logger.info("isolation_kept_for_inspection", task_id=context.task_id, path=str(context.isolation_path))
            return
        self._isolation.discard(context, delete_branch=not preserve_branch)

    def _write_status(self, task_id: str, status: TaskStatus) -> None:
        if self._queue is None or task_id not in self._queue_ids:
            return
        self._queue.update_status(task_id, status)


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


__all__ = [
    "DriverReport",
    "DriverSettings",
    "IterationReport",
    "OrchestrationDriver",
    "OutcomeStatus",
    "TaskExecutor",
    "TaskOutcome",
    "TaskWork",
]
