"""Command-line interface router for taskwave."""

from __future__ import annotations

import argparse
import json
import sys
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from taskwave.config import (
    ConfigLoadError,
    ConfigValidationError,
    dump_effective_config,
    load_config,
    parse_assignment,
    redact_config,
)
from taskwave.control_plane import JsonFileSessionStore, LoopEnforcer, LoopPolicy
from taskwave.integration_plane import IsolationManager, VCSError
from taskwave.observability import configure_logging, logging_config_from_mapping
from taskwave.persistence import TaskQueue, TaskQueueError
from taskwave.planning import WaveAnalyzer, WaveAnalyzerConfig
from taskwave.sandbox import FileOperation, SafetyGuard, SafetyPolicy, SafetyViolation
from taskwave.ui.render import CLIRenderer, create_renderer
from taskwave.verification_plane import (
    VerificationArtifactStore,
    VerificationPhase,
    VerificationRunner,
    VerificationSettings,
    format_record,
    run_structured_loop,
)

EXIT_VERIFICATION_FAILED = 1
EXIT_USAGE = 2
EXIT_VCS = 3
EXIT_SAFETY_VIOLATION = 5


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = 1

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router for all supported CLI workflows."""

    parser = argparse.ArgumentParser(
        prog="taskwave",
        description=(
            "taskwave - wave-parallel task orchestration with isolation, safety and verification.\n\n"
            "Common workflows:\n"
            "  taskwave waves                      Analyze the task queue into waves\n"
            "  taskwave isolation list             Show live isolation contexts\n"
            "  taskwave safety check-file PATH     Check a path against the safety policy\n"
            "  taskwave verify TASK --phase final  Run verification commands for a task\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--project-root",
        default=".",
        help="Project root directory (default: current working directory).",
    )
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to a taskwave TOML config (default: ./taskwave.toml if present).",
    )
    common.add_argument("--profile", default=None, help="Optional config profile overlay name.")
    common.add_argument(
        "--set",
        dest="overrides",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Override one config value, e.g. parallel.max_concurrent=4 (repeatable).",
    )
    common.add_argument("--json", action="store_true", default=False, help="Emit JSON output.")
    common.add_argument(
        "--verbose", "-v", action="store_true", default=False, help="Show detailed output."
    )
    common.add_argument(
        "--no-color",
        action="store_true",
        default=False,
        help="Disable colored output (also respects NO_COLOR env var).",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # waves ---------------------------------------------------------------
    waves_parser = subparsers.add_parser(
        "waves",
        parents=[common],
        help="Analyze the task queue into execution waves",
        description=(
            "Build the dependency graph of pending/ready tasks and layer it into waves.\n\n"
            "Examples:\n"
            "  taskwave waves\n"
            "  taskwave waves --queue tasks.yaml --completed T0\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    waves_parser.add_argument("--queue", default=None, help="Task queue file (default: paths.task_queue).")
    waves_parser.add_argument(
        "--completed",
        action="append",
        default=[],
        help="Task id treated as already completed (repeatable).",
    )
    waves_parser.set_defaults(handler=_cmd_waves)

    # isolation -----------------------------------------------------------
    isolation_parser = subparsers.add_parser("isolation", help="Manage per-task isolation contexts")
    isolation_sub = isolation_parser.add_subparsers(dest="isolation_command", required=True)

    create_parser = isolation_sub.add_parser("create", parents=[common], help="Create a context")
    create_parser.add_argument("task_id")
    create_parser.add_argument("--base", default=None, help="Base branch (default: current branch).")
    create_parser.set_defaults(handler=_cmd_isolation_create)

    list_parser = isolation_sub.add_parser("list", parents=[common], help="List live contexts")
    list_parser.set_defaults(handler=_cmd_isolation_list)

    discard_parser = isolation_sub.add_parser("discard", parents=[common], help="Discard a context")
    discard_parser.add_argument("task_id")
    discard_parser.add_argument(
        "--keep-branch", action="store_true", default=False, help="Keep the task branch."
    )
    discard_parser.set_defaults(handler=_cmd_isolation_discard)

    sweep_parser = isolation_sub.add_parser("sweep", parents=[common], help="Discard stale contexts")
    sweep_parser.add_argument(
        "--max-age-hours",
        type=float,
        default=None,
        help="Age threshold (default: isolation.stale_after_hours).",
    )
    sweep_parser.add_argument("--dry-run", action="store_true", default=False)
    sweep_parser.set_defaults(handler=_cmd_isolation_sweep)

    # safety --------------------------------------------------------------
    safety_parser = subparsers.add_parser("safety", help="Inspect the safety policy")
    safety_sub = safety_parser.add_subparsers(dest="safety_command", required=True)

    check_file_parser = safety_sub.add_parser(
        "check-file", parents=[common], help="Check a file path against the policy"
    )
    check_file_parser.add_argument("path")
    check_file_parser.add_argument(
        "--operation",
        choices=[item.value for item in FileOperation],
        default=FileOperation.READ.value,
    )
    check_file_parser.set_defaults(handler=_cmd_safety_check_file)

    check_command_parser = safety_sub.add_parser(
        "check-command", parents=[common], help="Check a shell command against the policy"
    )
    check_command_parser.add_argument("shell_command", metavar="command")
    check_command_parser.set_defaults(handler=_cmd_safety_check_command)

    safety_status_parser = safety_sub.add_parser(
        "status", parents=[common], help="Show the effective limits and counters"
    )
    safety_status_parser.set_defaults(handler=_cmd_safety_status)

    # loop ----------------------------------------------------------------
    loop_parser = subparsers.add_parser("loop", help="Inspect loop-enforcement sessions")
    loop_sub = loop_parser.add_subparsers(dest="loop_command", required=True)

    loop_status_parser = loop_sub.add_parser(
        "status", parents=[common], help="Show active loop sessions"
    )
    loop_status_parser.add_argument("task_id", nargs="?", default=None)
    loop_status_parser.set_defaults(handler=_cmd_loop_status)

    loop_stats_parser = loop_sub.add_parser(
        "stats", parents=[common], help="Summarize archived loop sessions"
    )
    loop_stats_parser.set_defaults(handler=_cmd_loop_stats)

    # verify --------------------------------------------------------------
    verify_parser = subparsers.add_parser(
        "verify",
        parents=[common],
        help="Run verification commands for a task",
        description=(
            "Run a phase's configured verification commands (or explicit --cmd values)\n"
            "and persist the record under paths.verifications_dir.\n\n"
            "Examples:\n"
            "  taskwave verify T1\n"
            "  taskwave verify T1 --phase test --cmd 'pytest -q'\n"
            "  taskwave verify T1 --structured\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    verify_parser.add_argument("task_id")
    verify_parser.add_argument(
        "--phase",
        choices=[item.value for item in VerificationPhase],
        default=VerificationPhase.FINAL.value,
    )
    verify_parser.add_argument(
        "--cmd", dest="commands", action="append", default=None, help="Command to run (repeatable)."
    )
    verify_parser.add_argument("--timeout", type=float, default=None, help="Per-command timeout in seconds.")
    verify_parser.add_argument(
        "--no-fail-fast", action="store_true", default=False, help="Run every command."
    )
    verify_parser.add_argument(
        "--structured",
        action="store_true",
        default=False,
        help="Run all phases in order (spec, test, implementation, final).",
    )
    verify_parser.set_defaults(handler=_cmd_verify)

    # config --------------------------------------------------------------
    config_parser = subparsers.add_parser(
        "config",
        parents=[common],
        help="Show effective configuration (redacted)",
        description=(
            "Display the effective config after merging defaults, file, env, and profile.\n"
            "Sensitive values are redacted.\n\n"
            "Examples:\n"
            "  taskwave config\n"
            "  taskwave config --json --profile strict\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    config_parser.set_defaults(handler=_cmd_config)

    return parser


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return EXIT_USAGE

    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    return int(result)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_waves(args: argparse.Namespace) -> int:
    root = _project_root(args)
    config = _load_effective_config(args)
    queue_arg = _optional_str(getattr(args, "queue", None))
    queue_path = (
        _resolve_path(queue_arg, root)
        if queue_arg is not None
        else Path(str(_section(config, "paths")["task_queue"]))
    )
    queue = TaskQueue(queue_path)
    try:
        tasks = queue.schedulable()
        completed = set(queue.completed_ids())
    except TaskQueueError as exc:
        raise CLIError(str(exc), exit_code=EXIT_USAGE) from exc
    completed.update(_string_sequence(getattr(args, "completed", None)))

    analyzer = WaveAnalyzer(WaveAnalyzerConfig.from_config(_section(config, "parallel")))
    analysis = analyzer.analyze(tasks, completed=completed)

    if _flag(args, "json"):
        _emit_json({"command": "waves", "queue": queue_path.as_posix(), **analysis.to_dict()})
        return 0

    renderer = _get_renderer(args)
    renderer.kv("Queue", queue_path.as_posix())
    renderer.wave_analysis(analysis)
    return 0


def _cmd_isolation_create(args: argparse.Namespace) -> int:
    manager = _isolation_manager(args)
    task_id = _require_str(getattr(args, "task_id", None), "task_id")
    try:
        context = manager.create(task_id, _optional_str(getattr(args, "base", None)))
    except VCSError as exc:
        raise CLIError(str(exc), exit_code=EXIT_VCS) from exc

    if _flag(args, "json"):
        _emit_json({"command": "isolation create", "context": context.to_dict()})
        return 0

    renderer = _get_renderer(args)
    renderer.heading(f"Isolation created for {context.task_id}")
    renderer.kv("Path", context.isolation_path.as_posix())
    renderer.kv("Branch", context.branch_name)
    renderer.kv("Base", context.base_branch)
    return 0


def _cmd_isolation_list(args: argparse.Namespace) -> int:
    manager = _isolation_manager(args)
    try:
        contexts = manager.list_contexts()
    except VCSError as exc:
        raise CLIError(str(exc), exit_code=EXIT_VCS) from exc

    if _flag(args, "json"):
        _emit_json({"command": "isolation list", "contexts": [item.to_dict() for item in contexts]})
        return 0

    renderer = _get_renderer(args)
    if not contexts:
        renderer.text("No isolation contexts.")
        return 0
    rows = [
        [
            item.task_id,
            item.branch_name,
            item.created_at.isoformat() if item.created_at else "-",
            item.isolation_path.as_posix(),
        ]
        for item in contexts
    ]
    renderer.table(["Task", "Branch", "Created", "Path"], rows, title="Isolation contexts:")
    return 0


def _cmd_isolation_discard(args: argparse.Namespace) -> int:
    manager = _isolation_manager(args)
    task_id = _require_str(getattr(args, "task_id", None), "task_id")
    try:
        matches = [item for item in manager.list_contexts() if item.task_id == task_id]
        if not matches:
            raise CLIError(f"no isolation context for task: {task_id}", exit_code=EXIT_USAGE)
        outcomes = [
            manager.discard(item, delete_branch=not _flag(args, "keep_branch")) for item in matches
        ]
    except VCSError as exc:
        raise CLIError(str(exc), exit_code=EXIT_VCS) from exc

    if _flag(args, "json"):
        _emit_json(
            {
                "command": "isolation discard",
                "task_id": task_id,
                "discarded": [
                    {"branch_name": item.branch_name, **outcome.to_dict()}
                    for item, outcome in zip(matches, outcomes, strict=True)
                ],
            }
        )
        return 0

    renderer = _get_renderer(args)
    for item in matches:
        renderer.ok(f"discarded {item.branch_name}")
    return 0


def _cmd_isolation_sweep(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    manager = _isolation_manager(args, config)
    max_age = getattr(args, "max_age_hours", None)
    if max_age is None:
        max_age = float(_section(config, "isolation").get("stale_after_hours", 24))
    try:
        removed = manager.sweep_stale(max_age, dry_run=_flag(args, "dry_run"))
    except VCSError as exc:
        raise CLIError(str(exc), exit_code=EXIT_VCS) from exc
    except ValueError as exc:
        raise CLIError(str(exc), exit_code=EXIT_USAGE) from exc

    if _flag(args, "json"):
        _emit_json(
            {
                "command": "isolation sweep",
                "dry_run": _flag(args, "dry_run"),
                "max_age_hours": max_age,
                "removed": list(removed),
            }
        )
        return 0

    renderer = _get_renderer(args)
    if not removed:
        renderer.text("No stale isolation contexts.")
        return 0
    verb = "Would remove" if _flag(args, "dry_run") else "Removed"
    renderer.heading(f"{verb} {len(removed)} stale context(s):")
    renderer.items(list(removed))
    return 0


def _cmd_safety_check_file(args: argparse.Namespace) -> int:
    guard = _safety_guard(args)
    raw_path = _require_str(getattr(args, "path", None), "path")
    operation = FileOperation(getattr(args, "operation", FileOperation.READ.value))
    try:
        relative = guard.check_file_permission(raw_path, operation)
    except SafetyViolation as exc:
        return _report_violation(args, "safety check-file", exc)

    if _flag(args, "json"):
        _emit_json(
            {"command": "safety check-file", "allowed": True, "path": relative, "operation": operation.value}
        )
        return 0
    _get_renderer(args).ok(f"{operation.value} {relative}")
    return 0


def _cmd_safety_check_command(args: argparse.Namespace) -> int:
    guard = _safety_guard(args)
    command = _require_str(getattr(args, "shell_command", None), "command")
    try:
        guard.check_command_permission(command)
    except SafetyViolation as exc:
        return _report_violation(args, "safety check-command", exc)

    if _flag(args, "json"):
        _emit_json({"command": "safety check-command", "allowed": True, "shell_command": command})
        return 0
    _get_renderer(args).ok(command)
    return 0


def _cmd_safety_status(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    guard = _safety_guard(args, config)
    status = guard.status()
    policy = guard.policy

    if _flag(args, "json"):
        _emit_json(
            {
                "command": "safety status",
                "on_violation": policy.on_violation.value,
                "files": {"allow": list(policy.files.allow), "deny": list(policy.files.deny)},
                "commands": {"allow": list(policy.commands.allow), "deny": list(policy.commands.deny)},
                **status.to_dict(),
            }
        )
        return 0

    renderer = _get_renderer(args)
    renderer.safety_status(status)
    renderer.kv("On violation", policy.on_violation.value)
    if renderer.verbose:
        renderer.section("File allow:")
        renderer.items(list(policy.files.allow))
        renderer.section("File deny:")
        renderer.items(list(policy.files.deny))
        renderer.section("Command deny:")
        renderer.items(list(policy.commands.deny))
    return 0


def _cmd_loop_status(args: argparse.Namespace) -> int:
    enforcer = _loop_enforcer(args)
    task_id = _optional_str(getattr(args, "task_id", None))
    if task_id is not None:
        session = enforcer.active(task_id)
        sessions = [session] if session is not None else []
    else:
        sessions = enforcer.active_sessions()

    if _flag(args, "json"):
        _emit_json(
            {
                "command": "loop status",
                "sessions": [
                    {**session.to_dict(), "exit": enforcer.can_exit(session).to_dict()}
                    for session in sessions
                ],
            }
        )
        return 0

    renderer = _get_renderer(args)
    if not sessions:
        renderer.text("No active loop." if task_id is None else f"No active loop for task {task_id}.")
        return 0
    for index, session in enumerate(sessions):
        if index:
            renderer.blank()
        renderer.loop_session(session)
        decision = enforcer.can_exit(session)
        if not decision.can_exit and renderer.verbose:
            renderer.blank()
            renderer.text(decision.message)
    return 0


def _cmd_loop_stats(args: argparse.Namespace) -> int:
    enforcer = _loop_enforcer(args)
    stats = enforcer.stats()
    if _flag(args, "json"):
        _emit_json({"command": "loop stats", **stats.to_dict()})
        return 0
    _get_renderer(args).loop_stats(stats)
    return 0


def _cmd_verify(args: argparse.Namespace) -> int:
    root = _project_root(args)
    config = _load_effective_config(args)
    task_id = _require_str(getattr(args, "task_id", None), "task_id")
    runner = VerificationRunner(
        VerificationArtifactStore(Path(str(_section(config, "paths")["verifications_dir"]))),
        VerificationSettings.from_config(_section(config, "verification")),
        project_root=root,
    )

    if _flag(args, "structured"):
        loop_result = run_structured_loop(runner, task_id, cwd=str(root))
        if _flag(args, "json"):
            _emit_json({"command": "verify", "structured": True, **loop_result.to_dict()})
        else:
            renderer = _get_renderer(args)
            renderer.heading(f"Structured loop for {task_id}")
            for name, state in loop_result.phases.items():
                (renderer.ok if state.status == "completed" else renderer.fail)(name)
            if loop_result.halted_at is not None:
                renderer.kv("Halted at", loop_result.halted_at)
        return 0 if loop_result.success else EXIT_VERIFICATION_FAILED

    commands = _string_sequence(getattr(args, "commands", None)) or None
    try:
        record = runner.run(
            task_id,
            getattr(args, "phase", VerificationPhase.FINAL.value),
            commands,
            fail_fast=False if _flag(args, "no_fail_fast") else None,
            timeout_seconds=getattr(args, "timeout", None),
        )
    except ValueError as exc:
        raise CLIError(str(exc), exit_code=EXIT_USAGE) from exc

    if _flag(args, "json"):
        _emit_json(
            {
                "command": "verify",
                "artifact": runner.artifacts.record_path(record.task_id, record.phase).as_posix(),
                **record.to_dict(),
            }
        )
    else:
        renderer = _get_renderer(args)
        renderer.text(format_record(record))
        if not record.results:
            renderer.warning(f"no verification commands configured for phase {record.phase}")
    return 0 if record.all_passed else EXIT_VERIFICATION_FAILED


def _cmd_config(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    profile = _optional_str(getattr(args, "profile", None))
    redacted = redact_config(config)

    payload: dict[str, object] = {
        "command": "config",
        "active_profile": profile,
        "config": redacted,
    }

    if _flag(args, "json"):
        _emit_json(payload)
        return 0

    renderer = _get_renderer(args)
    renderer.kv("Active profile", profile or "(default)")
    renderer.text(dump_effective_config(config, indent=2))
    return 0


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _emit_json(payload: Mapping[str, object]) -> None:
    """Emit a JSON payload to stdout with deterministic formatting."""

    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str))


def _get_renderer(args: argparse.Namespace) -> CLIRenderer:
    return create_renderer(no_color=_flag(args, "no_color"), verbose=_flag(args, "verbose"))


def _report_violation(args: argparse.Namespace, command: str, exc: SafetyViolation) -> int:
    if _flag(args, "json"):
        _emit_json({"command": command, "allowed": False, "violation": exc.to_dict()})
    else:
        _get_renderer(args).fail(str(exc))
    return EXIT_SAFETY_VIOLATION


def _project_root(args: argparse.Namespace) -> Path:
    raw = _require_str(getattr(args, "project_root", None), "project_root")
    candidate = Path(raw).expanduser().resolve()
    if not candidate.exists() or not candidate.is_dir():
        raise CLIError(f"project root is not a directory: {candidate}", exit_code=EXIT_USAGE)
    return candidate


def _load_effective_config(args: argparse.Namespace) -> dict[str, Any]:
    cached = getattr(args, "_effective_config", None)
    if isinstance(cached, dict):
        return cached

    config_path = _optional_str(getattr(args, "config_path", None))
    profile = _optional_str(getattr(args, "profile", None))
    try:
        assignments = _string_sequence(getattr(args, "overrides", None))
        overrides = dict(parse_assignment(item) for item in assignments)
        loaded = load_config(
            config_path,
            project_root=_project_root(args),
            profile=profile,
            cli_overrides=overrides,
        )
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc), exit_code=EXIT_USAGE) from exc

    configure_logging(logging_config_from_mapping(_section(loaded, "observability")))
    args._effective_config = loaded
    return loaded


def _isolation_manager(
    args: argparse.Namespace, config: Mapping[str, Any] | None = None
) -> IsolationManager:
    resolved = config if config is not None else _load_effective_config(args)
    return IsolationManager.from_config(_project_root(args), _section(resolved, "isolation"))


def _safety_guard(args: argparse.Namespace, config: Mapping[str, Any] | None = None) -> SafetyGuard:
    resolved = config if config is not None else _load_effective_config(args)
    try:
        policy = SafetyPolicy.from_config(_section(resolved, "safety"))
    except (TypeError, ValueError) as exc:
        raise CLIError(f"invalid safety config: {exc}", exit_code=EXIT_USAGE) from exc
    return SafetyGuard(policy, project_root=_project_root(args))


def _loop_enforcer(args: argparse.Namespace) -> LoopEnforcer:
    config = _load_effective_config(args)
    state_dir = Path(str(_section(config, "paths")["state_dir"]))
    return LoopEnforcer(
        JsonFileSessionStore(state_dir),
        LoopPolicy.from_config(_section(config, "loops")),
        project_root=_project_root(args),
        config=config,
    )


def _section(config: Mapping[str, Any], name: str) -> dict[str, Any]:
    value = config.get(name)
    return dict(value) if isinstance(value, Mapping) else {}


def _resolve_path(path_arg: str, root: Path) -> Path:
    candidate = Path(path_arg).expanduser()
    return candidate.resolve() if candidate.is_absolute() else (root / candidate).resolve()


def _require_str(value: object, name: str) -> str:
    if not isinstance(value, str):
        raise CLIError(f"invalid {name}: expected string", exit_code=EXIT_USAGE)
    cleaned = value.strip()
    if not cleaned:
        raise CLIError(f"invalid {name}: value cannot be empty", exit_code=EXIT_USAGE)
    return cleaned


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise CLIError("invalid optional string argument", exit_code=EXIT_USAGE)
    cleaned = value.strip()
    return cleaned or None


def _flag(args: argparse.Namespace, name: str) -> bool:
    return bool(getattr(args, name, False))


def _string_sequence(value: object) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        cleaned = value.strip()
        return () if not cleaned else (cleaned,)
    if not isinstance(value, Sequence):
        raise CLIError("invalid sequence argument", exit_code=EXIT_USAGE)

    parsed: list[str] = []
    for item in value:
        if not isinstance(item, str):
            raise CLIError("invalid sequence argument", exit_code=EXIT_USAGE)
        cleaned = item.strip()
        if cleaned:
            parsed.append(cleaned)
    return tuple(parsed)


__all__ = ["CLIError", "build_parser", "run_cli"]
