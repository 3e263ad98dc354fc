"""Structured execution loop: spec, test, implementation, then final verification.

Each phase optionally runs a caller-supplied callback and then the phase's
verification commands. Failed verification in an early phase is recorded but
does not stop progression; only a failed ``final`` phase or a callback that
raises halts the loop. The loop summary is written to
``<verifications_dir>/loops/<task>-loop.json``.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime

import structlog

from taskwave.verification_plane.runner import (
    VerificationPhase,
    VerificationRecord,
    VerificationRunner,
)

logger = structlog.get_logger(__name__)

PHASE_ORDER: tuple[VerificationPhase, ...] = (
    VerificationPhase.SPEC,
    VerificationPhase.TEST,
    VerificationPhase.IMPLEMENTATION,
    VerificationPhase.FINAL,
)

PhaseCallback = Callable[["StructuredLoopResult"], object]


@dataclass(slots=True)
class PhaseState:
    status: str = "running"
    started_at: str = ""
    ended_at: str | None = None
    error: str | None = None
    record: VerificationRecord | None = None

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "status": self.status,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
        }
        if self.error is not None:
            payload["error"] = self.error
        if self.record is not None:
            payload["verification"] = {
                "passed": self.record.all_passed,
                "duration_ms": self.record.duration_ms,
                "failed_commands": [item.command for item in self.record.failures],
            }
        return payload


@dataclass(slots=True)
class StructuredLoopResult:
    task_id: str
    started_at: str
    phases: dict[str, PhaseState] = field(default_factory=dict)
    current_phase: str | None = None
    ended_at: str | None = None
    completed: bool = False
    success: bool = False

    @property
    def halted_at(self) -> str | None:
        for name, state in self.phases.items():
            if state.status == "failed" and (name == VerificationPhase.FINAL.value or state.error):
                return name
        return None

    def to_dict(self) -> dict[str, object]:
        return {
            "task_id": self.task_id,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "current_phase": self.current_phase,
            "completed": self.completed,
            "success": self.success,
            "phases": {name: state.to_dict() for name, state in self.phases.items()},
        }


def run_structured_loop(
    runner: VerificationRunner,
    task_id: str,
    callbacks: Mapping[str, PhaseCallback] | None = None,
    *,
    cwd: str | None = None,
) -> StructuredLoopResult:
    """Run every phase in order and persist the loop summary."""

    handlers = dict(callbacks or {})
    result = StructuredLoopResult(task_id=task_id, started_at=_now_iso())

    for phase in PHASE_ORDER:
        state = PhaseState(started_at=_now_iso())
        result.current_phase = phase.value
        result.phases[phase.value] = state

        handler = handlers.get(phase.value)
        if handler is not None:
            try:
                handler(result)
            except Exception as exc:  # noqa: BLE001 - recorded in the loop summary
                state.status = "failed"
                state.error = f"{type(exc).__name__}: {exc}"
                state.ended_at = _now_iso()
                logger.warning("structured_loop_callback_failed", task_id=task_id, phase=phase.value, error=state.error)
                break

        record = runner.run(task_id, phase, cwd=cwd)
        state.record = record
        state.ended_at = _now_iso()
        if not record.all_passed and phase is VerificationPhase.FINAL:
            state.status = "failed"
            break
        state.status = "completed"

    result.completed = True
    result.success = len(result.phases) == len(PHASE_ORDER) and all(
        state.status == "completed" for state in result.phases.values()
    )
    result.ended_at = _now_iso()
    runner.artifacts.save_loop_summary(task_id, result.to_dict())
    logger.info(
        "structured_loop_finished",
        task_id=task_id,
        success=result.success,
        halted_at=result.halted_at,
    )
    return result


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat().replace("+00:00", "Z")


__all__ = ["PHASE_ORDER", "PhaseCallback", "PhaseState", "StructuredLoopResult", "run_structured_loop"]
