"""Output rendering abstraction for the taskwave CLI.

File: src/taskwave/ui/render.py
Last updated: 2026-10-18

Purpose
- Provide a thin rendering layer for human-readable CLI output.
- Respect NO_COLOR environment variable and --no-color CLI flag.

What should be included in this file
- CLIRenderer class with methods for common output patterns.
- Renderers for wave analyses, loop sessions, and safety status.
- Factory function to create a renderer with appropriate settings.

Functional requirements
- Plain-text rendering must always work without external dependencies.
- Output is deterministic for identical inputs.
"""

from __future__ import annotations

import os
import sys
from typing import IO, TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Sequence

    from taskwave.control_plane.loop_enforcer import LoopSession, LoopStats
    from taskwave.planning.wave_analyzer import WaveAnalysis
    from taskwave.sandbox.safety_guard import SafetyStatus

_ANSI_BOLD = "\033[1m"
_ANSI_RED = "\033[31m"
_ANSI_GREEN = "\033[32m"
_ANSI_RESET = "\033[0m"
_LIMIT_FOR_COUNTER = {"tokens_used": "max_tokens"}


def _color_allowed(no_color_flag: bool, stream: IO[str]) -> bool:
    """Check whether color output should be attempted."""

    if no_color_flag:
        return False
    if os.environ.get("NO_COLOR", ""):
        return False
    return hasattr(stream, "isatty") and stream.isatty()


class CLIRenderer:
    """Thin CLI output renderer.

    Produces clean, deterministic plain-text output.
    Respects ``NO_COLOR`` env var and ``--no-color`` flag.
    """

    def __init__(
        self, *, no_color: bool = False, verbose: bool = False, stream: IO[str] | None = None
    ) -> None:
        self.verbose = verbose
        self._stream = stream if stream is not None else sys.stdout
        self._color = _color_allowed(no_color, self._stream)

    def _print(self, line: str = "") -> None:
        print(line, file=self._stream)

    def _paint(self, text: str, code: str) -> str:
        return f"{code}{text}{_ANSI_RESET}" if self._color else text

    def heading(self, text: str) -> None:
        """Print a heading line."""

        self._print(self._paint(text, _ANSI_BOLD))

    def kv(self, key: str, value: object) -> None:
        """Print a key: value pair."""

        self._print(f"{key}: {value}")

    def text(self, line: str) -> None:
        """Print a plain text line."""

        self._print(line)

    def blank(self) -> None:
        self._print()

    def section(self, title: str) -> None:
        """Print a section header with a preceding blank line."""

        self._print(f"\n{self._paint(title, _ANSI_BOLD)}")

    def warning(self, text: str) -> None:
        self._print(f"  Warning: {text}")

    def items(self, entries: Sequence[str], *, prefix: str = "- ") -> None:
        """Print a bulleted list."""

        for entry in entries:
            self._print(f"  {prefix}{entry}")

    def table(
        self,
        headers: Sequence[str],
        rows: Sequence[Sequence[str]],
        *,
        title: str | None = None,
    ) -> None:
        """Print a formatted ASCII table."""

        if not rows:
            return

        col_count = len(headers)
        widths = [len(h) for h in headers]
        for row in rows:
            for i in range(min(len(row), col_count)):
                widths[i] = max(widths[i], len(str(row[i])))

        def _pad(cells: Sequence[str]) -> str:
            parts: list[str] = []
            for i in range(col_count):
                cell = str(cells[i]) if i < len(cells) else ""
                parts.append(cell.ljust(widths[i]))
            return "  ".join(parts).rstrip()

        if title:
            self.section(title)
        self._print(f"  {_pad(list(headers))}")
        self._print(f"  {'  '.join('-' * w for w in widths)}")
        for row in rows:
            self._print(f"  {_pad(list(row))}")

    def ok(self, label: str) -> None:
        """Print a passing check."""

        self._print(f"  {self._paint('OK', _ANSI_GREEN)}  {label}")

    def fail(self, label: str) -> None:
        """Print a failing check."""

        self._print(f"  {self._paint('FAIL', _ANSI_RED)}  {label}")

    # -- domain views -------------------------------------------------------

    def wave_analysis(self, analysis: WaveAnalysis) -> None:
        self.heading("Wave analysis")
        self.kv("Tasks", analysis.task_count)
        self.kv("Parallelizable", "yes" if analysis.can_parallelize else "no")
        self.kv("Reason", analysis.reason.value)
        self.kv("Overlap policy", analysis.overlap_policy.value)

        rows = [
            [str(index + 1), str(len(wave)), ", ".join(wave)]
            for index, wave in enumerate(analysis.waves)
        ]
        self.table(["Wave", "Size", "Tasks"], rows, title="Waves:")

        if analysis.file_overlaps:
            self.section("File overlaps:")
            for overlap in analysis.file_overlaps:
                self.items(
                    [f"{overlap.path} [{overlap.severity.value}]: {', '.join(overlap.task_ids)}"]
                )
        if analysis.cycles:
            self.section("Dependency cycles:")
            self.items([" -> ".join(cycle) for cycle in analysis.cycles])
        if analysis.unscheduled:
            self.section("Unscheduled:")
            self.items(list(analysis.unscheduled))
        if analysis.missing_dependencies:
            self.section("Missing dependencies:")
            self.items(
                [
                    f"{task_id} -> {', '.join(refs)}"
                    for task_id, refs in sorted(analysis.missing_dependencies.items())
                ]
            )

        efficiency = analysis.efficiency
        self.section("Efficiency:")
        self.kv("  Sequential", efficiency.sequential)
        self.kv("  Parallel", efficiency.parallel)
        self.kv("  Gain", f"{efficiency.percentage_gain}%")
        self.section("Recommendation:")
        self.text(f"  {analysis.recommendation}")

    def loop_session(self, session: LoopSession) -> None:
        self.heading(f"Loop session: {session.task_id}")
        self.kv("Status", session.status.value)
        self.kv("Iteration", session.iteration)
        self.kv("Retries", session.retries)
        self.kv("Started", session.started_at.isoformat() if session.started_at else "-")
        rows = [
            [item.id, item.status.value, str(item.attempts), item.description]
            for item in session.criteria
        ]
        self.table(["Id", "Status", "Attempts", "Criterion"], rows, title="Criteria:")

    def loop_stats(self, stats: LoopStats) -> None:
        self.heading("Loop statistics")
        for key, value in stats.to_dict().items():
            self.kv(key, value)

    def safety_status(self, status: SafetyStatus) -> None:
        self.heading("Safety status")
        self.kv("Enabled", "yes" if status.enabled else "no")
        rows = [
            [name, str(status.counters.get(name, 0)), _limit_text(status.limits, name)]
            for name in status.counters
        ]
        self.table(["Counter", "Value", "Limit"], rows, title="Counters:")
        self.kv("Needs checkpoint", "yes" if status.needs_checkpoint else "no")


def _limit_text(limits: dict[str, int | None], counter: str) -> str:
    value = limits.get(_LIMIT_FOR_COUNTER.get(counter, f"max_{counter}"))
    return "-" if value is None else str(value)


def create_renderer(*, no_color: bool = False, verbose: bool = False) -> CLIRenderer:
    """Create a CLI renderer with the given settings."""

    return CLIRenderer(no_color=no_color, verbose=verbose)


__all__ = ["CLIRenderer", "create_renderer"]
