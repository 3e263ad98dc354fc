"""
taskwave — dependency and wave analysis.

File: src/taskwave/planning/wave_analyzer.py
Last updated: 2026-10-18

Purpose
- Decide which tasks may run concurrently and in which order.

What should be included in this file
- Explicit dependency extraction (declared references only).
- Breadth-first wave layering with cycle and missing-dependency reporting.
- File-overlap risk signals between tasks that could run concurrently.
- Efficiency estimate and human-readable recommendation.

Functional requirements
- Every dependency of a task lies in a strictly earlier wave (or the completed set).
- Cyclic tasks and their dependents are reported as unscheduled, never dropped.
- Under the ``split`` overlap policy no two tasks in one wave share a file.

Non-functional requirements
- Deterministic output for identical input regardless of task declaration order.
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import structlog

from taskwave.planning.dependency_graph import CycleError, DependencyGraph

if TYPE_CHECKING:
    from taskwave.domain.models import Task

logger = structlog.get_logger(__name__)

HIGH_SEVERITY_TASK_COUNT = 3


class OverlapPolicy(StrEnum):
    SPLIT = "split"
    WARN = "warn"


class OverlapSeverity(StrEnum):
    MEDIUM = "medium"
    HIGH = "high"


class AnalysisReason(StrEnum):
    PARALLELIZABLE = "parallelizable"
    INSUFFICIENT_TASKS = "insufficient-tasks"
    BELOW_THRESHOLD = "below-threshold"
    PARALLEL_DISABLED = "parallel-disabled"


@dataclass(frozen=True, slots=True)
class WaveAnalyzerConfig:
    enabled: bool = True
    max_concurrent: int = 3
    min_tasks_for_parallel: int = 2
    overlap_policy: OverlapPolicy = OverlapPolicy.SPLIT

    def __post_init__(self) -> None:
        if self.max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        if self.min_tasks_for_parallel < 1:
            raise ValueError("min_tasks_for_parallel must be >= 1")
        object.__setattr__(self, "overlap_policy", OverlapPolicy(self.overlap_policy))

    @classmethod
    def from_config(cls, parallel: Mapping[str, Any]) -> WaveAnalyzerConfig:
        """Build from the ``[parallel]`` config section."""
        return cls(
            enabled=bool(parallel.get("enabled", True)),
            max_concurrent=int(parallel.get("max_concurrent", 3)),
            min_tasks_for_parallel=int(parallel.get("min_tasks_for_parallel", 2)),
            overlap_policy=OverlapPolicy(parallel.get("overlap_policy", OverlapPolicy.SPLIT)),
        )


@dataclass(frozen=True, slots=True)
class FileOverlap:
    """Tasks that could run concurrently while declaring the same file."""

    path: str
    task_ids: tuple[str, ...]
    severity: OverlapSeverity

    def to_dict(self) -> dict[str, object]:
        return {"file": self.path, "tasks": list(self.task_ids), "severity": self.severity.value}


@dataclass(frozen=True, slots=True)
class EfficiencyEstimate:
    """Unit-cost estimate, one unit per task. Reporting only."""

    sequential: int
    parallel: int
    saved: int
    percentage_gain: int

    @classmethod
    def for_waves(
        cls, waves: Sequence[Sequence[str]], max_concurrent: int
    ) -> EfficiencyEstimate:
        sequential = sum(len(wave) for wave in waves)
        parallel = sum(math.ceil(len(wave) / max_concurrent) for wave in waves)
        gain = 0
        if sequential:
            gain = math.floor((1 - parallel / sequential) * 100 + 0.5)
        return cls(
            sequential=sequential,
            parallel=parallel,
            saved=sequential - parallel,
            percentage_gain=gain,
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "sequential": self.sequential,
            "parallel": self.parallel,
            "saved": self.saved,
            "percentage_gain": self.percentage_gain,
        }


@dataclass(frozen=True, slots=True)
class WaveAnalysis:
    dependencies: dict[str, tuple[str, ...]]
    waves: tuple[tuple[str, ...], ...]
    file_overlaps: tuple[FileOverlap, ...]
    unscheduled: tuple[str, ...]
    cycles: tuple[tuple[str, ...], ...]
    missing_dependencies: dict[str, tuple[str, ...]]
    efficiency: EfficiencyEstimate
    parallelizable: tuple[str, ...]
    can_parallelize: bool
    reason: AnalysisReason
    recommendation: str
    overlap_policy: OverlapPolicy = OverlapPolicy.SPLIT
    task_count: int = field(default=0)

    @property
    def has_high_risk_overlap(self) -> bool:
        return any(item.severity is OverlapSeverity.HIGH for item in self.file_overlaps)

    def wave_of(self, task_id: str) -> int | None:
        for index, wave in enumerate(self.waves):
            if task_id in wave:
                return index
        return None

    def raise_for_cycles(self) -> None:
        """Raise ``CycleError`` when any dependency cycle was found."""
        if self.cycles:
            raise CycleError(self.cycles)

    def to_dict(self) -> dict[str, object]:
        return {
            "task_count": self.task_count,
            "can_parallelize": self.can_parallelize,
            "reason": self.reason.value,
            "overlap_policy": self.overlap_policy.value,
            "dependencies": {key: list(value) for key, value in self.dependencies.items()},
            "waves": [list(wave) for wave in self.waves],
            "parallelizable": list(self.parallelizable),
            "file_overlaps": [item.to_dict() for item in self.file_overlaps],
            "unscheduled": list(self.unscheduled),
            "cycles": [list(cycle) for cycle in self.cycles],
            "missing_dependencies": {
                key: list(value) for key, value in self.missing_dependencies.items()
            },
            "efficiency": self.efficiency.to_dict(),
            "recommendation": self.recommendation,
        }


class WaveAnalyzer:
    """Stateless planner that turns a task set into execution waves."""

    def __init__(self, config: WaveAnalyzerConfig | None = None) -> None:
        self._config = config or WaveAnalyzerConfig()

    @property
    def config(self) -> WaveAnalyzerConfig:
        return self._config

    def analyze(self, tasks: Sequence[Task], completed: Iterable[str] = ()) -> WaveAnalysis:
        by_id = _index_tasks(tasks)
        completed_ids = frozenset(completed)
        dependencies = {
            task_id: tuple(sorted(task.depends_on)) for task_id, task in sorted(by_id.items())
        }
        graph = DependencyGraph.from_dependencies(dependencies)

        def sort_key(task_id: str) -> tuple[int, str]:
            return (-by_id[task_id].priority, task_id)

        admit = None
        if self._config.overlap_policy is OverlapPolicy.SPLIT:

            def admit(layer: Sequence[str], candidate: str) -> bool:
                claimed: set[str] = set()
                for member in layer:
                    claimed.update(by_id[member].files)
                return claimed.isdisjoint(by_id[candidate].files)

        waves, unscheduled = graph.layers(completed_ids, sort_key=sort_key, admit=admit)
        cycles = graph.detect_cycles()
        missing = {
            task_id: tuple(ref for ref in refs if ref not in completed_ids)
            for task_id, refs in graph.missing.items()
        }
        missing = {task_id: refs for task_id, refs in missing.items() if refs}
        overlaps = _file_overlaps(by_id, graph)
        efficiency = EfficiencyEstimate.for_waves(waves, self._config.max_concurrent)
        parallelizable = waves[0] if waves else ()

        reason = AnalysisReason.PARALLELIZABLE
        pending_count = len([task_id for task_id in by_id if task_id not in completed_ids])
        if not self._config.enabled:
            reason = AnalysisReason.PARALLEL_DISABLED
        elif pending_count < 2:
            reason = AnalysisReason.INSUFFICIENT_TASKS
        elif len(parallelizable) < self._config.min_tasks_for_parallel:
            reason = AnalysisReason.BELOW_THRESHOLD
        can_parallelize = reason is AnalysisReason.PARALLELIZABLE

        if cycles:
            logger.warning("dependency_cycles_detected", cycles=[list(c) for c in cycles])
        if missing:
            logger.warning("missing_dependencies", missing={k: list(v) for k, v in missing.items()})

        analysis = WaveAnalysis(
            dependencies=dependencies,
            waves=waves,
            file_overlaps=overlaps,
            unscheduled=unscheduled,
            cycles=cycles,
            missing_dependencies=missing,
            efficiency=efficiency,
            parallelizable=parallelizable,
            can_parallelize=can_parallelize,
            reason=reason,
            recommendation=_recommendation(
                reason=reason,
                parallelizable=parallelizable,
                minimum=self._config.min_tasks_for_parallel,
                efficiency=efficiency,
                overlaps=overlaps,
                unscheduled=unscheduled,
                policy=self._config.overlap_policy,
            ),
            overlap_policy=self._config.overlap_policy,
            task_count=len(by_id),
        )
        logger.info(
            "waves_analyzed",
            tasks=len(by_id),
            waves=len(waves),
            unscheduled=len(unscheduled),
            overlaps=len(overlaps),
            reason=reason.value,
        )
        return analysis


def _index_tasks(tasks: Sequence[Task]) -> dict[str, Task]:
    by_id: dict[str, Task] = {}
    for task in tasks:
        if task.id in by_id:
            raise ValueError(f"duplicate task id {task.id!r}")
        by_id[task.id] = task
    return by_id


def _file_overlaps(by_id: Mapping[str, Task], graph: DependencyGraph) -> tuple[FileOverlap, ...]:
    file_to_tasks: dict[str, list[str]] = {}
    for task_id in sorted(by_id):
        for path in by_id[task_id].files:
            file_to_tasks.setdefault(path, []).append(task_id)

    overlaps: list[FileOverlap] = []
    for path in sorted(file_to_tasks):
        owners = file_to_tasks[path]
        if len(owners) < 2:
            continue
        concurrent: set[str] = set()
        for index, first in enumerate(owners):
            for second in owners[index + 1 :]:
                if graph.are_independent(first, second):
                    concurrent.update((first, second))
        if len(concurrent) < 2:
            continue
        severity = (
            OverlapSeverity.HIGH
            if len(concurrent) >= HIGH_SEVERITY_TASK_COUNT
            else OverlapSeverity.MEDIUM
        )
        overlaps.append(FileOverlap(path=path, task_ids=tuple(sorted(concurrent)), severity=severity))
    return tuple(overlaps)


def _recommendation(
    *,
    reason: AnalysisReason,
    parallelizable: Sequence[str],
    minimum: int,
    efficiency: EfficiencyEstimate,
    overlaps: Sequence[FileOverlap],
    unscheduled: Sequence[str],
    policy: OverlapPolicy,
) -> str:
    lines: list[str] = []
    if reason is AnalysisReason.PARALLEL_DISABLED:
        lines.append("SEQUENTIAL: parallel execution is disabled")
    elif reason is AnalysisReason.INSUFFICIENT_TASKS:
        lines.append("SEQUENTIAL: need at least 2 tasks to parallelize")
    elif reason is AnalysisReason.BELOW_THRESHOLD:
        lines.append(
            f"SEQUENTIAL: only {len(parallelizable)} task(s) can run in parallel "
            f"(minimum: {minimum})"
        )
    else:
        if len(parallelizable) >= 3:
            lines.append("RECOMMENDED: high parallelization potential")
        else:
            lines.append("POSSIBLE: moderate parallelization potential")
        lines.append(f"   {len(parallelizable)} tasks can run simultaneously")
        lines.append(f"   ~{efficiency.percentage_gain}% time savings expected")

    high = [item for item in overlaps if item.severity is OverlapSeverity.HIGH]
    if high:
        lines.append(f"   {len(high)} high-risk file overlap(s) detected")
        lines.append("      Consider enabling isolation for every task")
    elif overlaps and policy is OverlapPolicy.WARN:
        lines.append(f"   {len(overlaps)} file overlap(s) may run in the same wave")
    if unscheduled:
        lines.append(
            f"   {len(unscheduled)} task(s) cannot be scheduled "
            "(dependency cycle or missing dependency)"
        )
    return "\n".join(lines)


__all__ = [
    "AnalysisReason",
    "EfficiencyEstimate",
    "FileOverlap",
    "OverlapPolicy",
    "OverlapSeverity",
    "WaveAnalysis",
    "WaveAnalyzer",
    "WaveAnalyzerConfig",
]
