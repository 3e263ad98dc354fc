"""
taskwave — acceptance-criteria loop enforcement.

File: src/taskwave/control_plane/loop_enforcer.py
Last updated: 2026-10-18

Purpose
- Gate task completion on its acceptance criteria. A task may leave its work loop
  only when every criterion is satisfied or an explicit retry/iteration ceiling
  forces an exit.

What should be included in this file
- ``LoopSession`` and ``AcceptanceCriterion`` state objects passed by handle.
- Named transition tables for criterion status and session status.
- ``LoopEnforcer`` operations: start, update, counters, exit/skip decisions,
  regression re-check, criterion verification, archival and history stats.

Functional requirements
- ``can_exit`` is a pure decision over the session and never mutates it.
- Forced exits (``max-retries``/``max-iterations``) are distinct from success and
  end the session as ``exhausted``.
- Unknown verification results never count as failures.
- Ending a session archives it and removes the active record in one store call.

Non-functional requirements
- Persistence goes through an injected ``SessionStore``.
- Every transition is logged with the task id and criterion id.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any

import structlog

from taskwave.constants import LOOP_HISTORY_LIMIT, LOOP_SESSION_SCHEMA_VERSION
from taskwave.control_plane.criterion_verifier import (
    CriterionCheck,
    CriterionVerifier,
    HeuristicCriterionVerifier,
    VerificationContext,
)
from taskwave.control_plane.session_store import InMemorySessionStore, SessionStore

logger = structlog.get_logger(__name__)

_RULE = "-" * 40


class LoopEnforcerError(RuntimeError):
    """Base error for loop enforcement."""


class LoopStateError(LoopEnforcerError):
    """Raised on an invalid transition or an operation on an ended session."""


class LoopExhaustedError(LoopEnforcerError):
    """Raised when a retry or iteration ceiling forces the loop to end."""

    def __init__(self, reason: ExitReason, session: LoopSession, message: str) -> None:
        super().__init__(message)
        self.reason = reason
        self.session = session


class CriterionStatus(StrEnum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class LoopStatus(StrEnum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    EXHAUSTED = "exhausted"
    ABORTED = "aborted"


class ExitReason(StrEnum):
    ALL_COMPLETE = "all-complete"
    MAX_RETRIES = "max-retries"
    MAX_ITERATIONS = "max-iterations"
    INCOMPLETE = "incomplete"
    NO_ACTIVE_LOOP = "no-active-loop"
    ENFORCEMENT_DISABLED = "enforcement-disabled"


class RegressionMode(StrEnum):
    WARN = "warn"
    BLOCK = "block"


CRITERION_TRANSITIONS: Mapping[CriterionStatus, frozenset[CriterionStatus]] = {
    CriterionStatus.PENDING: frozenset(
        {CriterionStatus.PENDING, CriterionStatus.COMPLETED, CriterionStatus.FAILED, CriterionStatus.SKIPPED}
    ),
    CriterionStatus.FAILED: frozenset(
        {CriterionStatus.PENDING, CriterionStatus.COMPLETED, CriterionStatus.FAILED, CriterionStatus.SKIPPED}
    ),
    CriterionStatus.COMPLETED: frozenset(
        {CriterionStatus.PENDING, CriterionStatus.COMPLETED, CriterionStatus.FAILED}
    ),
    CriterionStatus.SKIPPED: frozenset({CriterionStatus.PENDING}),
}

SESSION_TRANSITIONS: Mapping[LoopStatus, frozenset[LoopStatus]] = {
    LoopStatus.IN_PROGRESS: frozenset(
        {LoopStatus.COMPLETED, LoopStatus.FAILED, LoopStatus.EXHAUSTED, LoopStatus.ABORTED}
    ),
    LoopStatus.COMPLETED: frozenset(),
    LoopStatus.FAILED: frozenset(),
    LoopStatus.EXHAUSTED: frozenset(),
    LoopStatus.ABORTED: frozenset(),
}

_FORCED_REASONS = frozenset({ExitReason.MAX_RETRIES, ExitReason.MAX_ITERATIONS})


@dataclass(slots=True)
class AcceptanceCriterion:
    id: str
    description: str
    status: CriterionStatus = CriterionStatus.PENDING
    attempts: int = 0
    last_attempt: datetime | None = None
    verification_result: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "description": self.description,
            "status": self.status.value,
            "attempts": self.attempts,
            "last_attempt": _iso(self.last_attempt),
            "verification_result": self.verification_result,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> AcceptanceCriterion:
        return cls(
            id=str(payload["id"]),
            description=str(payload.get("description", "")),
            status=CriterionStatus(payload.get("status", CriterionStatus.PENDING.value)),
            attempts=int(payload.get("attempts", 0)),
            last_attempt=_parse_iso(payload.get("last_attempt")),
            verification_result=payload.get("verification_result"),
        )


@dataclass(slots=True)
class LoopSession:
    """Enforcement state for one task."""

    task_id: str
    criteria: list[AcceptanceCriterion]
    started_at: datetime
    iteration: int = 0
    retries: int = 0
    status: LoopStatus = LoopStatus.IN_PROGRESS
    ended_at: datetime | None = None
    exit_reason: ExitReason | None = None
    exit_message: str | None = None
    last_regression_check: dict[str, Any] | None = None
    schema_version: int = LOOP_SESSION_SCHEMA_VERSION

    @property
    def active(self) -> bool:
        return self.status is LoopStatus.IN_PROGRESS

    def criterion(self, criterion_id: str) -> AcceptanceCriterion:
        for item in self.criteria:
            if item.id == criterion_id:
                return item
        raise LoopStateError(f"criterion {criterion_id} not found in loop for task {self.task_id}")

    def with_status(self, status: CriterionStatus) -> list[AcceptanceCriterion]:
        return [item for item in self.criteria if item.status is status]

    def to_dict(self) -> dict[str, object]:
        return {
            "schema_version": self.schema_version,
            "task_id": self.task_id,
            "criteria": [item.to_dict() for item in self.criteria],
            "iteration": self.iteration,
            "retries": self.retries,
            "status": self.status.value,
            "started_at": _iso(self.started_at),
            "ended_at": _iso(self.ended_at),
            "exit_reason": self.exit_reason.value if self.exit_reason is not None else None,
            "exit_message": self.exit_message,
            "last_regression_check": self.last_regression_check,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> LoopSession:
        started_at = _parse_iso(payload.get("started_at"))
        exit_reason = payload.get("exit_reason")
        return cls(
            task_id=str(payload["task_id"]),
            criteria=[AcceptanceCriterion.from_dict(item) for item in payload.get("criteria", [])],
            started_at=started_at if started_at is not None else _utc_now(),
            iteration=int(payload.get("iteration", 0)),
            retries=int(payload.get("retries", 0)),
            status=LoopStatus(payload.get("status", LoopStatus.IN_PROGRESS.value)),
            ended_at=_parse_iso(payload.get("ended_at")),
            exit_reason=ExitReason(exit_reason) if exit_reason else None,
            exit_message=payload.get("exit_message"),
            last_regression_check=payload.get("last_regression_check"),
            schema_version=int(payload.get("schema_version", LOOP_SESSION_SCHEMA_VERSION)),
        )


@dataclass(frozen=True, slots=True)
class ExitDecision:
    can_exit: bool
    reason: ExitReason
    message: str = ""
    pending: tuple[str, ...] = ()
    failed: tuple[str, ...] = ()
    completed: tuple[str, ...] = ()
    skipped: tuple[str, ...] = ()

    @property
    def forced(self) -> bool:
        """True for ceiling escapes, which are not success."""
        return self.reason in _FORCED_REASONS

    def to_dict(self) -> dict[str, object]:
        return {
            "can_exit": self.can_exit,
            "reason": self.reason.value,
            "message": self.message,
            "pending": list(self.pending),
            "failed": list(self.failed),
            "completed": list(self.completed),
            "skipped": list(self.skipped),
        }


@dataclass(frozen=True, slots=True)
class SkipDecision:
    allowed: bool
    message: str
    requires_approval: bool = False


@dataclass(frozen=True, slots=True)
class Regression:
    criterion_id: str
    description: str
    message: str
    verification: str

    def to_dict(self) -> dict[str, str]:
        return {
            "criterion_id": self.criterion_id,
            "description": self.description,
            "message": self.message,
            "verification": self.verification,
        }


@dataclass(frozen=True, slots=True)
class LoopStats:
    total: int = 0
    completed: int = 0
    failed: int = 0
    exhausted: int = 0
    aborted: int = 0
    average_iterations: float = 0.0

    def to_dict(self) -> dict[str, object]:
        return {
            "total": self.total,
            "completed": self.completed,
            "failed": self.failed,
            "exhausted": self.exhausted,
            "aborted": self.aborted,
            "average_iterations": self.average_iterations,
        }


@dataclass(frozen=True, slots=True)
class LoopPolicy:
    """Loop settings resolved from the ``[loops]`` config section."""

    enforced: bool = True
    max_retries: int = 5
    max_iterations: int = 20
    block_on_skip: bool = True
    recheck_all_after_fix: bool = True
    regression_on_recheck: RegressionMode = RegressionMode.WARN
    fallback_to_manual: bool = True
    history_limit: int = LOOP_HISTORY_LIMIT

    @classmethod
    def from_config(cls, loops: Mapping[str, object] | None) -> LoopPolicy:
        data = dict(loops or {})
        defaults = cls()
        return cls(
            enforced=bool(data.get("enforced", defaults.enforced)),
            max_retries=int(data.get("max_retries", defaults.max_retries)),  # type: ignore[arg-type]
            max_iterations=int(data.get("max_iterations", defaults.max_iterations)),  # type: ignore[arg-type]
            block_on_skip=bool(data.get("block_on_skip", defaults.block_on_skip)),
            recheck_all_after_fix=bool(data.get("recheck_all_after_fix", defaults.recheck_all_after_fix)),
            regression_on_recheck=RegressionMode(
                str(data.get("regression_on_recheck", defaults.regression_on_recheck.value))
            ),
            fallback_to_manual=bool(data.get("fallback_to_manual", defaults.fallback_to_manual)),
            history_limit=int(data.get("history_limit", defaults.history_limit)),  # type: ignore[arg-type]
        )


class LoopEnforcer:
    """Drive loop sessions through their state machine."""

    def __init__(
        self,
        store: SessionStore | None = None,
        policy: LoopPolicy | None = None,
        *,
        verifier: CriterionVerifier | None = None,
        project_root: Path | str | None = None,
        config: Mapping[str, object] | None = None,
        now_fn: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store if store is not None else InMemorySessionStore()
        self._policy = policy or LoopPolicy()
        self._verifier = verifier or HeuristicCriterionVerifier(
            fallback_to_manual=self._policy.fallback_to_manual
        )
        self._project_root = Path(project_root).resolve() if project_root is not None else Path.cwd()
        self._config = config
        self._now = now_fn or _utc_now

    @property
    def policy(self) -> LoopPolicy:
        return self._policy

    @property
    def store(self) -> SessionStore:
        return self._store

    def start(self, task_id: str, criteria: Iterable[str]) -> LoopSession:
        """Open a session with every criterion pending."""

        if self._store.load(task_id) is not None:
            raise LoopStateError(f"loop for task {task_id} is already active")
        session = LoopSession(
            task_id=task_id,
            criteria=[
                AcceptanceCriterion(id=f"AC-{index}", description=description)
                for index, description in enumerate(criteria, start=1)
            ],
            started_at=self._now(),
        )
        self._save(session)
        logger.info("loop_started", task_id=task_id, criteria=len(session.criteria))
        return session

    def active(self, task_id: str) -> LoopSession | None:
        payload = self._store.load(task_id)
        return LoopSession.from_dict(payload) if payload is not None else None

    def active_sessions(self) -> list[LoopSession]:
        sessions: list[LoopSession] = []
        for task_id in self._store.active_task_ids():
            session = self.active(task_id)
            if session is not None:
                sessions.append(session)
        return sessions

    def update_criterion(
        self,
        session: LoopSession,
        criterion_id: str,
        status: CriterionStatus | str,
        result: str | None = None,
        *,
        context: VerificationContext | None = None,
    ) -> LoopSession:
        """Move one criterion to ``status`` and record the verification snippet."""

        _require_active(session)
        next_status = CriterionStatus(status)
        criterion = session.criterion(criterion_id)
        if next_status not in CRITERION_TRANSITIONS[criterion.status]:
            raise LoopStateError(
                f"criterion {criterion_id} cannot move from {criterion.status.value} to {next_status.value}"
            )
        criterion.status = next_status
        criterion.attempts += 1
        criterion.last_attempt = self._now()
        criterion.verification_result = result
        logger.info(
            "loop_criterion_updated",
            task_id=session.task_id,
            criterion_id=criterion_id,
            status=next_status.value,
            attempts=criterion.attempts,
        )

        if next_status is CriterionStatus.COMPLETED and self._policy.recheck_all_after_fix:
            self.regression_recheck(session, exclude=criterion_id, context=context, persist=False)
        self._save(session)
        return session

    def regression_recheck(
        self,
        session: LoopSession,
        *,
        exclude: str | None = None,
        context: VerificationContext | None = None,
        persist: bool = True,
    ) -> tuple[Regression, ...]:
        """Re-verify every completed criterion except ``exclude``."""

        regressions: list[Regression] = []
        for criterion in session.with_status(CriterionStatus.COMPLETED):
            if criterion.id == exclude:
                continue
            check = self.verify_criterion(criterion, context)
            if check.passed is not False:
                continue
            regressions.append(
                Regression(
                    criterion_id=criterion.id,
                    description=criterion.description,
                    message=check.message,
                    verification=check.verification,
                )
            )
            if self._policy.regression_on_recheck is RegressionMode.BLOCK:
                criterion.status = CriterionStatus.FAILED
                criterion.verification_result = f"REGRESSION: {check.message}"
            logger.warning(
                "loop_regression_detected",
                task_id=session.task_id,
                criterion_id=criterion.id,
                mode=self._policy.regression_on_recheck.value,
                detail=check.message,
            )

        if regressions:
            session.last_regression_check = {
                "timestamp": _iso(self._now()),
                "triggered_by": exclude,
                "regressions": [item.to_dict() for item in regressions],
            }
            if persist:
                self._save(session)
        return tuple(regressions)

    def increment_iteration(self, session: LoopSession) -> int:
        _require_active(session)
        session.iteration += 1
        self._save(session)
        return session.iteration

    def increment_retry(self, session: LoopSession) -> int:
        _require_active(session)
        session.retries += 1
        self._save(session)
        return session.retries

    def can_exit(self, session: LoopSession | None) -> ExitDecision:
        """Decide whether the loop may end; never mutates ``session``."""

        if session is None:
            return ExitDecision(True, ExitReason.NO_ACTIVE_LOOP)
        if not self._policy.enforced:
            return ExitDecision(True, ExitReason.ENFORCEMENT_DISABLED)

        pending = session.with_status(CriterionStatus.PENDING)
        failed = session.with_status(CriterionStatus.FAILED)
        completed = session.with_status(CriterionStatus.COMPLETED)
        skipped = session.with_status(CriterionStatus.SKIPPED)
        buckets = {
            "pending": tuple(item.id for item in pending),
            "failed": tuple(item.id for item in failed),
            "completed": tuple(item.id for item in completed),
            "skipped": tuple(item.id for item in skipped),
        }

        if not pending and not failed:
            note = f" ({len(skipped)} skipped with approval)" if skipped else ""
            return ExitDecision(
                True,
                ExitReason.ALL_COMPLETE,
                f"All {len(completed)} acceptance criteria passed{note}",
                **buckets,
            )
        if session.retries >= self._policy.max_retries:
            return ExitDecision(
                True,
                ExitReason.MAX_RETRIES,
                f"Max retries ({self._policy.max_retries}) reached. "
                f"{len(failed)} criteria still failing.",
                **buckets,
            )
        if session.iteration >= self._policy.max_iterations:
            return ExitDecision(
                True,
                ExitReason.MAX_ITERATIONS,
                f"Max iterations ({self._policy.max_iterations}) reached.",
                **buckets,
            )
        return ExitDecision(
            False,
            ExitReason.INCOMPLETE,
            enforcement_message(session, pending, failed, skipped),
            **buckets,
        )

    def can_skip(self, session: LoopSession, criterion_id: str, *, approved: bool = False) -> SkipDecision:
        try:
            criterion = session.criterion(criterion_id)
        except LoopStateError as exc:
            return SkipDecision(False, str(exc))
        if not self._policy.block_on_skip:
            return SkipDecision(True, "Skip allowed (block_on_skip disabled)")
        if not approved:
            return SkipDecision(
                False,
                f'Cannot skip "{criterion.description}" without approval. '
                "Complete the criterion, get explicit approval to skip, or abort the task.",
                requires_approval=True,
            )
        return SkipDecision(True, "Skip approved")

    def skip_criterion(
        self,
        session: LoopSession,
        criterion_id: str,
        *,
        approved: bool = False,
        reason: str | None = None,
    ) -> LoopSession:
        decision = self.can_skip(session, criterion_id, approved=approved)
        if not decision.allowed:
            raise LoopStateError(decision.message)
        return self.update_criterion(
            session, criterion_id, CriterionStatus.SKIPPED, reason or decision.message
        )

    def verify_criterion(
        self,
        criterion: AcceptanceCriterion,
        context: VerificationContext | None = None,
    ) -> CriterionCheck:
        return self._verifier.verify(criterion.description, context or self._default_context())

    def end(
        self,
        session: LoopSession,
        status: LoopStatus | str = LoopStatus.COMPLETED,
        *,
        reason: ExitReason | None = None,
        message: str | None = None,
    ) -> LoopSession:
        """Archive ``session`` into history and drop its active record."""

        next_status = LoopStatus(status)
        if next_status not in SESSION_TRANSITIONS[session.status]:
            raise LoopStateError(
                f"loop for task {session.task_id} cannot move from {session.status.value} to {next_status.value}"
            )
        session.status = next_status
        session.ended_at = self._now()
        session.exit_reason = reason
        session.exit_message = message
        self._store.archive(session.task_id, session.to_dict(), limit=self._policy.history_limit)
        logger.info(
            "loop_ended",
            task_id=session.task_id,
            status=next_status.value,
            reason=reason.value if reason is not None else None,
            iterations=session.iteration,
            retries=session.retries,
        )
        return session

    def conclude(self, session: LoopSession) -> ExitDecision:
        """Apply ``can_exit``: end the session when it may exit.

        Raises ``LoopExhaustedError`` after archiving the session as ``exhausted``
        when a ceiling forced the exit.
        """

        decision = self.can_exit(session)
        if not decision.can_exit:
            return decision
        if decision.forced:
            self.end(session, LoopStatus.EXHAUSTED, reason=decision.reason, message=decision.message)
            raise LoopExhaustedError(decision.reason, session, decision.message)
        self.end(session, LoopStatus.COMPLETED, reason=decision.reason, message=decision.message)
        return decision

    def stats(self) -> LoopStats:
        history = self._store.history()
        if not history:
            return LoopStats()
        statuses = [str(item.get("status", "")) for item in history]
        iterations = [int(item.get("iteration", 0)) for item in history]
        return LoopStats(
            total=len(history),
            completed=statuses.count(LoopStatus.COMPLETED.value),
            failed=statuses.count(LoopStatus.FAILED.value),
            exhausted=statuses.count(LoopStatus.EXHAUSTED.value),
            aborted=statuses.count(LoopStatus.ABORTED.value),
            average_iterations=round(sum(iterations) / len(history), 1),
        )

    def history(self) -> list[LoopSession]:
        return [LoopSession.from_dict(item) for item in self._store.history()]

    def _default_context(self) -> VerificationContext:
        return VerificationContext(project_root=self._project_root, config=self._config)

    def _save(self, session: LoopSession) -> None:
        self._store.save(session.task_id, session.to_dict())


def enforcement_message(
    session: LoopSession,
    pending: Iterable[AcceptanceCriterion],
    failed: Iterable[AcceptanceCriterion],
    skipped: Iterable[AcceptanceCriterion] = (),
) -> str:
    """Human-readable explanation of why the loop may not exit yet."""

    pending, failed, skipped = list(pending), list(failed), list(skipped)
    lines = [
        "LOOP ENFORCEMENT ACTIVE",
        _RULE,
        "",
        f"Task: {session.task_id}",
        f"Iteration: {session.iteration}",
        f"Retries: {session.retries}",
        "",
    ]
    for title, items in (("Pending", pending), ("Failed", failed)):
        if not items:
            continue
        lines.append(f"{title} ({len(items)}):")
        for item in items:
            lines.append(f"   - {item.id}: {item.description}")
            if item.verification_result:
                lines.append(f"     > {item.verification_result}")
        lines.append("")
    if skipped:
        lines.append(f"Skipped ({len(skipped)}):")
        lines.extend(f"   - {item.id}: {item.description}" for item in skipped)
        lines.append("")
    lines.append(_RULE)
    lines.append("You must complete all criteria before exiting.")
    return "\n".join(lines)


def _require_active(session: LoopSession) -> None:
    if not session.active:
        raise LoopStateError(f"loop for task {session.task_id} has ended ({session.status.value})")


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_iso(value: object) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


__all__ = [
    "CRITERION_TRANSITIONS",
    "SESSION_TRANSITIONS",
    "AcceptanceCriterion",
    "CriterionStatus",
    "ExitDecision",
    "ExitReason",
    "LoopEnforcer",
    "LoopEnforcerError",
    "LoopExhaustedError",
    "LoopPolicy",
    "LoopSession",
    "LoopStateError",
    "LoopStats",
    "LoopStatus",
    "Regression",
    "RegressionMode",
    "SkipDecision",
    "enforcement_message",
]
