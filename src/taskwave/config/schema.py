"""
taskwave — configuration schema and validation.

File: src/taskwave/config/schema.py
Last updated: 2026-10-18

Purpose
- Define authoritative configuration defaults and strict validation rules.

What should be included in this file
- Schema versioning and migration guidance.
- Validation rules for required fields, types, enums, and numeric constraints.
- Profile overlay validation and deterministic deep-merge helpers.
- Redaction rules for sensitive fields.

Functional requirements
- Validate config payloads and return structured errors (field path + message).
- Support profile overlays including strict/permissive.

Non-functional requirements
- Keep rules deterministic and easy to audit.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal, NotRequired, TypedDict

from taskwave.constants import (
    CONFIG_SCHEMA_VERSION,
    ISOLATION_BRANCH_PREFIX,
    LOOP_HISTORY_LIMIT,
    STATE_DIR,
    TASK_QUEUE_PATH,
    VERIFICATION_PHASES,
    VERIFICATIONS_DIR,
)

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION
BUILTIN_PROFILE_NAMES: Final[tuple[str, ...]] = ("strict", "permissive")

OVERLAP_POLICIES: Final[tuple[str, ...]] = ("split", "warn")
VIOLATION_POLICIES: Final[tuple[str, ...]] = ("abort", "warn", "log")
REGRESSION_MODES: Final[tuple[str, ...]] = ("warn", "block")
LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR")
LOG_FORMATS: Final[tuple[str, ...]] = ("json", "console")

_PROFILE_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_-]*$")
_BRANCH_PREFIX_PATTERN = re.compile(r"^[A-Za-z0-9._/-]+$")
_CAMEL_CASE_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")

_SENSITIVE_KEY_TOKENS: Final[frozenset[str]] = frozenset(
    {"secret", "token", "password", "passwd", "apikey", "credential", "credentials", "auth"}
)
_SENSITIVE_KEY_PHRASES: Final[tuple[str, ...]] = (
    "api_key",
    "access_token",
    "refresh_token",
    "client_secret",
    "private_key",
    "password",
    "secret",
)

_LIMIT_KEYS: Final[tuple[str, ...]] = (
    "max_steps",
    "max_files_modified",
    "max_files_created",
    "max_files_deleted",
    "max_commands_run",
    "max_tokens",
    "checkpoint_interval",
)

# Config paths that should be normalized relative to config file location.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("paths", "task_queue"),
    ("paths", "state_dir"),
    ("paths", "verifications_dir"),
    ("isolation", "root"),
    ("observability", "log_file"),
)

DEFAULT_FILE_ALLOW: Final[tuple[str, ...]] = (
    "src/**",
    "lib/**",
    "tests/**",
    "test/**",
    "__tests__/**",
    "scripts/**",
    ".workflow/**",
    "templates/**",
    "config/**",
    "docs/**",
    "*.json",
    "*.md",
    "*.toml",
    "*.cfg",
    "*.ini",
    "*.txt",
    "*.py",
    "*.pyi",
    "*.ts",
    "*.tsx",
    "*.js",
    "*.jsx",
    "*.css",
    "*.scss",
    "*.html",
    "*.yaml",
    "*.yml",
)

DEFAULT_FILE_DENY: Final[tuple[str, ...]] = (
    "**/.env",
    "**/.env.*",
    ".env",
    ".env.*",
    "**/secrets/**",
    "**/credentials/**",
    "**/*.pem",
    "**/*.key",
    "**/*.crt",
    "**/id_rsa*",
    "**/id_ed25519*",
    "**/.ssh/**",
    "**/.aws/**",
    "**/.gcloud/**",
    "**/package-lock.json",
    "**/yarn.lock",
    "**/pnpm-lock.yaml",
    "**/poetry.lock",
    "**/uv.lock",
    "**/node_modules/**",
    "**/.git/**",
    ".git/**",
    "**/dist/**",
    "dist/**",
    "**/build/**",
    "build/**",
)

DEFAULT_COMMAND_DENY: Final[tuple[str, ...]] = (
    "rm -rf /",
    "rm -rf ~",
    "rm -rf .",
    "rm -rf ..",
    "rm -rf *",
    "sudo",
    "su",
    "chmod 777",
    "curl",
    "wget",
    "ssh",
    "scp",
    "rsync",
    "nc",
    "netcat",
    "telnet",
    "ftp",
    "eval",
    "exec",
)


class MetaConfig(TypedDict):
    schema_version: int


class ParallelConfig(TypedDict):
    enabled: bool
    max_concurrent: int
    min_tasks_for_parallel: int
    overlap_policy: Literal["split", "warn"]
    require_isolation: bool


class IsolationConfig(TypedDict):
    root: NotRequired[str]
    branch_prefix: str
    squash: bool
    push: bool
    stale_after_hours: float
    keep_on_failure: bool


class SafetyLimitsConfig(TypedDict):
    max_steps: int
    max_files_modified: int
    max_files_created: int
    max_files_deleted: int
    max_commands_run: int
    max_tokens: NotRequired[int | None]
    checkpoint_interval: int


class PermissionListConfig(TypedDict):
    allow: list[str]
    deny: list[str]


class SafetyConfig(TypedDict):
    enabled: bool
    on_violation: Literal["abort", "warn", "log"]
    limits: SafetyLimitsConfig
    files: PermissionListConfig
    commands: PermissionListConfig


class LoopsConfig(TypedDict):
    enforced: bool
    max_retries: int
    max_iterations: int
    block_on_skip: bool
    recheck_all_after_fix: bool
    regression_on_recheck: Literal["warn", "block"]
    fallback_to_manual: bool
    history_limit: int


class VerificationCommandConfig(TypedDict, total=False):
    command: str
    description: str
    required: bool
    expected_exit_code: int


class VerificationConfig(TypedDict):
    fail_fast: bool
    timeout_seconds: float
    max_output_chars: int
    commands: dict[str, list[VerificationCommandConfig]]


class PathsConfig(TypedDict):
    task_queue: str
    state_dir: str
    verifications_dir: str


class ObservabilityConfig(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    log_format: Literal["json", "console"]
    log_file: NotRequired[str]
    redact_secrets: bool


class ProfileOverlay(TypedDict, total=False):
    parallel: dict[str, object]
    isolation: dict[str, object]
    safety: dict[str, object]
    loops: dict[str, object]
    verification: dict[str, object]
    paths: dict[str, object]
    observability: dict[str, object]


class TaskwaveConfig(TypedDict):
    meta: MetaConfig
    parallel: ParallelConfig
    isolation: IsolationConfig
    safety: SafetyConfig
    loops: LoopsConfig
    verification: VerificationConfig
    paths: PathsConfig
    observability: ObservabilityConfig
    profiles: dict[str, ProfileOverlay]


DEFAULT_CONFIG: Final[TaskwaveConfig] = {
    "meta": {
        "schema_version": ConfigSchemaVersion,
    },
    "parallel": {
        "enabled": True,
        "max_concurrent": 3,
        "min_tasks_for_parallel": 2,
        "overlap_policy": "split",
        "require_isolation": True,
    },
    "isolation": {
        "branch_prefix": ISOLATION_BRANCH_PREFIX,
        "squash": True,
        "push": False,
        "stale_after_hours": 24.0,
        "keep_on_failure": False,
    },
    "safety": {
        "enabled": True,
        "on_violation": "abort",
        "limits": {
            "max_steps": 50,
            "max_files_modified": 20,
            "max_files_created": 10,
            "max_files_deleted": 5,
            "max_commands_run": 30,
            "max_tokens": None,
            "checkpoint_interval": 5,
        },
        "files": {
            "allow": list(DEFAULT_FILE_ALLOW),
            "deny": list(DEFAULT_FILE_DENY),
        },
        "commands": {
            "allow": ["*"],
            "deny": list(DEFAULT_COMMAND_DENY),
        },
    },
    "loops": {
        "enforced": True,
        "max_retries": 5,
        "max_iterations": 20,
        "block_on_skip": True,
        "recheck_all_after_fix": True,
        "regression_on_recheck": "warn",
        "fallback_to_manual": True,
        "history_limit": LOOP_HISTORY_LIMIT,
    },
    "verification": {
        "fail_fast": True,
        "timeout_seconds": 120.0,
        "max_output_chars": 20_000,
        "commands": {
            "spec": [
                {
                    "command": 'echo "Spec validation"',
                    "description": "Validate spec exists",
                    "required": True,
                },
            ],
            "test": [
                {
                    "command": "python -m pytest -q || true",
                    "description": "Run tests (initial)",
                    "required": False,
                },
            ],
            "implementation": [
                {
                    "command": 'ruff check . 2>/dev/null || echo "lint skipped"',
                    "description": "Run linter",
                    "required": False,
                },
                {
                    "command": 'mypy . 2>/dev/null || echo "typecheck skipped"',
                    "description": "Run type checker",
                    "required": False,
                },
            ],
            "final": [
                {
                    "command": 'ruff check . 2>/dev/null || echo "lint not configured"',
                    "description": "Run linter",
                    "required": False,
                },
                {
                    "command": 'mypy . 2>/dev/null || echo "typecheck not configured"',
                    "description": "Run type checker",
                    "required": False,
                },
                {
                    "command": "python -m pytest -q",
                    "description": "Run tests",
                    "required": True,
                },
            ],
        },
    },
    "paths": {
        "task_queue": TASK_QUEUE_PATH.as_posix(),
        "state_dir": STATE_DIR.as_posix(),
        "verifications_dir": VERIFICATIONS_DIR.as_posix(),
    },
    "observability": {
        "log_level": "WARNING",
        "log_format": "json",
        "redact_secrets": True,
    },
    "profiles": {
        "strict": {
            "parallel": {"max_concurrent": 2},
            "safety": {
                "limits": {"max_steps": 30, "max_files_modified": 10, "max_commands_run": 15},
            },
            "loops": {"max_retries": 3, "regression_on_recheck": "block"},
        },
        "permissive": {
            "parallel": {"overlap_policy": "warn"},
            "safety": {"on_violation": "warn"},
        },
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    """Validation result with normalized config when no issues were found."""

    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        if not self.issues:
            rendered = "unknown validation failure"
        else:
            rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid config:\n{rendered}")


class _IssueCollector:
    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[ConfigValidationIssue] = []

    def add(self, path: str, message: str) -> None:
        self._items.append(ConfigValidationIssue(path=path, message=message))

    def items(self) -> tuple[ConfigValidationIssue, ...]:
        return tuple(self._items)

    @property
    def has_issues(self) -> bool:
        return bool(self._items)


_SectionValidator = Callable[[Mapping[str, object], str, _IssueCollector, bool], dict[str, Any]]


def default_config() -> TaskwaveConfig:
    """Return a deep copy of deterministic built-in defaults."""

    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    """Return deterministic migration guidance for schema version mismatch."""

    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade taskwave.toml to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade the taskwave runtime"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deterministically deep-merge ``overlay`` onto ``base``. Lists are replaced, not merged."""

    merged = _deep_copy_mapping(base)
    _merge_into(merged, overlay)
    return merged


def apply_profile_overlay(config: Mapping[str, object], profile: str | None) -> dict[str, Any]:
    """Apply a named profile overlay and re-validate the resulting config."""

    materialized = _deep_copy_mapping(config)
    if profile is None:
        return materialized

    selected = profile.strip()
    if not selected:
        return materialized

    profiles_raw = materialized.get("profiles")
    if not isinstance(profiles_raw, Mapping):
        raise ConfigValidationError(
            (ConfigValidationIssue("profiles", "profiles section is required"),)
        )

    overlay_raw = profiles_raw.get(selected)
    if overlay_raw is None:
        raise ConfigValidationError(
            (ConfigValidationIssue("profiles", f"profile {selected!r} is not defined"),)
        )
    if not isinstance(overlay_raw, Mapping):
        raise ConfigValidationError(
            (ConfigValidationIssue(f"profiles.{selected}", "profile overlay must be an object"),)
        )

    merged = merge_config(materialized, overlay_raw)
    return assert_valid_config(merged)


def validate_config(
    config: Mapping[str, object] | object,
    *,
    active_profile: str | None = None,
) -> ConfigValidationResult:
    """Validate config and return structured issues with deterministic paths."""

    issues = _IssueCollector()
    root = _as_object(config, "<root>", issues)
    if root is None:
        return ConfigValidationResult(config=None, issues=issues.items())

    normalized = _validate_root(root, "", issues)

    selected_profile = active_profile.strip() if isinstance(active_profile, str) else None
    if selected_profile:
        profiles = normalized.get("profiles")
        if not isinstance(profiles, Mapping) or selected_profile not in profiles:
            issues.add("profiles", f"profile {selected_profile!r} is not defined")

    if issues.has_issues:
        return ConfigValidationResult(config=None, issues=issues.items())

    return ConfigValidationResult(config=normalized, issues=issues.items())


def assert_valid_config(
    config: Mapping[str, object] | object,
    *,
    active_profile: str | None = None,
) -> dict[str, Any]:
    """Validate config and raise ``ConfigValidationError`` on failure."""

    result = validate_config(config, active_profile=active_profile)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Return deterministic redacted representation for logs and ``taskwave config``."""

    if not isinstance(config, Mapping):
        return {}
    redacted = _redact_value(config, parent_key=None)
    if isinstance(redacted, dict):
        return redacted
    return {}


def _validate_root(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
) -> dict[str, Any]:
    allowed = {*_SECTION_VALIDATORS, "meta", "profiles"}
    required = {*_SECTION_VALIDATORS, "meta"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, required, path, issues)

    out: dict[str, Any] = {}
    _section(payload, key="meta", path=path, issues=issues, partial=False, out=out)
    for key in _SECTION_ORDER:
        _section(payload, key=key, path=path, issues=issues, partial=False, out=out)

    profiles_raw = payload.get("profiles")
    if profiles_raw is not None:
        profiles_path = _join(path, "profiles")
        profiles_obj = _as_object(profiles_raw, profiles_path, issues)
        if profiles_obj is not None:
            out["profiles"] = _validate_profiles(profiles_obj, profiles_path, issues)

    return out


def _section(
    payload: Mapping[str, object],
    *,
    key: str,
    path: str,
    issues: _IssueCollector,
    partial: bool,
    out: dict[str, Any],
) -> None:
    raw = payload.get(key)
    if raw is None:
        return
    section_path = _join(path, key)
    section_obj = _as_object(raw, section_path, issues)
    if section_obj is None:
        return
    validator = _validate_meta if key == "meta" else _SECTION_VALIDATORS[key]
    out[key] = validator(section_obj, section_path, issues, partial)


def _validate_meta(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    _reject_unknown_keys(payload, {"schema_version"}, path, issues)
    if not partial:
        _require_keys(payload, {"schema_version"}, path, issues)

    out: dict[str, Any] = {}
    if "schema_version" in payload:
        parsed = _as_int(payload["schema_version"], _join(path, "schema_version"), issues, minimum=1)
        if parsed is not None:
            out["schema_version"] = parsed
            if parsed != ConfigSchemaVersion:
                issues.add(_join(path, "schema_version"), migration_guidance(parsed))
    return out


def _validate_parallel(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    fields: dict[str, Callable[[object, str], object | None]] = {
        "enabled": lambda value, p: _as_bool(value, p, issues),
        "max_concurrent": lambda value, p: _as_int(value, p, issues, minimum=1),
        "min_tasks_for_parallel": lambda value, p: _as_int(value, p, issues, minimum=1),
        "overlap_policy": lambda value, p: _as_enum(
            value, p, issues, allowed_values=OVERLAP_POLICIES
        ),
        "require_isolation": lambda value, p: _as_bool(value, p, issues),
    }
    return _validate_flat(payload, path, issues, partial=partial, fields=fields)


def _validate_isolation(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    fields: dict[str, Callable[[object, str], object | None]] = {
        "branch_prefix": lambda value, p: _as_branch_prefix(value, p, issues),
        "squash": lambda value, p: _as_bool(value, p, issues),
        "push": lambda value, p: _as_bool(value, p, issues),
        "stale_after_hours": lambda value, p: _as_float(value, p, issues, minimum=0.0),
        "keep_on_failure": lambda value, p: _as_bool(value, p, issues),
    }
    out = _validate_flat(
        payload, path, issues, partial=partial, fields=fields, optional_keys={"root"}
    )
    if "root" in payload:
        parsed = _as_path_text(payload["root"], _join(path, "root"), issues)
        if parsed is not None:
            out["root"] = parsed
    return out


def _validate_safety(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    allowed = {"enabled", "on_violation", "limits", "files", "commands"}
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    if "enabled" in payload:
        enabled = _as_bool(payload["enabled"], _join(path, "enabled"), issues)
        if enabled is not None:
            out["enabled"] = enabled
    if "on_violation" in payload:
        policy = _as_enum(
            payload["on_violation"],
            _join(path, "on_violation"),
            issues,
            allowed_values=VIOLATION_POLICIES,
        )
        if policy is not None:
            out["on_violation"] = policy

    if "limits" in payload:
        limits_path = _join(path, "limits")
        limits = _as_object(payload["limits"], limits_path, issues)
        if limits is not None:
            out["limits"] = _validate_limits(limits, limits_path, issues, partial=partial)

    for key in ("files", "commands"):
        if key not in payload:
            continue
        rules_path = _join(path, key)
        rules = _as_object(payload[key], rules_path, issues)
        if rules is None:
            continue
        _reject_unknown_keys(rules, {"allow", "deny"}, rules_path, issues)
        if not partial:
            _require_keys(rules, {"allow", "deny"}, rules_path, issues)
        validated: dict[str, Any] = {}
        for list_key in ("allow", "deny"):
            if list_key in rules:
                parsed_list = _as_str_list(rules[list_key], _join(rules_path, list_key), issues)
                if parsed_list is not None:
                    validated[list_key] = parsed_list
        out[key] = validated
    return out


def _validate_limits(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, *, partial: bool
) -> dict[str, Any]:
    _reject_unknown_keys(payload, set(_LIMIT_KEYS), path, issues)
    if not partial:
        _require_keys(payload, set(_LIMIT_KEYS) - {"max_tokens"}, path, issues)

    out: dict[str, Any] = {}
    for key in _LIMIT_KEYS:
        if key not in payload:
            continue
        value = payload[key]
        if value is None and key == "max_tokens":
            out[key] = None
            continue
        minimum = 1 if key == "checkpoint_interval" else 0
        parsed = _as_int(value, _join(path, key), issues, minimum=minimum)
        if parsed is not None:
            out[key] = parsed
    return out


def _validate_loops(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    fields: dict[str, Callable[[object, str], object | None]] = {
        "enforced": lambda value, p: _as_bool(value, p, issues),
        "max_retries": lambda value, p: _as_int(value, p, issues, minimum=1),
        "max_iterations": lambda value, p: _as_int(value, p, issues, minimum=1),
        "block_on_skip": lambda value, p: _as_bool(value, p, issues),
        "recheck_all_after_fix": lambda value, p: _as_bool(value, p, issues),
        "regression_on_recheck": lambda value, p: _as_enum(
            value, p, issues, allowed_values=REGRESSION_MODES
        ),
        "fallback_to_manual": lambda value, p: _as_bool(value, p, issues),
        "history_limit": lambda value, p: _as_int(value, p, issues, minimum=1),
    }
    return _validate_flat(payload, path, issues, partial=partial, fields=fields)


def _validate_verification(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    fields: dict[str, Callable[[object, str], object | None]] = {
        "fail_fast": lambda value, p: _as_bool(value, p, issues),
        "timeout_seconds": lambda value, p: _as_positive_float(value, p, issues),
        "max_output_chars": lambda value, p: _as_int(value, p, issues, minimum=1),
    }
    out = _validate_flat(
        payload, path, issues, partial=partial, fields=fields, extra_keys={"commands"}
    )
    if not partial and "commands" not in payload:
        issues.add(_join(path, "commands"), "missing required field")

    if "commands" in payload:
        commands_path = _join(path, "commands")
        commands = _as_object(payload["commands"], commands_path, issues)
        if commands is not None:
            _reject_unknown_keys(commands, set(VERIFICATION_PHASES), commands_path, issues)
            validated: dict[str, Any] = {}
            for phase in VERIFICATION_PHASES:
                if phase in commands:
                    parsed = _as_command_list(commands[phase], _join(commands_path, phase), issues)
                    if parsed is not None:
                        validated[phase] = parsed
            out["commands"] = validated
    return out


def _validate_paths(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    fields: dict[str, Callable[[object, str], object | None]] = {
        "task_queue": lambda value, p: _as_path_text(value, p, issues),
        "state_dir": lambda value, p: _as_path_text(value, p, issues),
        "verifications_dir": lambda value, p: _as_path_text(value, p, issues),
    }
    return _validate_flat(payload, path, issues, partial=partial, fields=fields)


def _validate_observability(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    fields: dict[str, Callable[[object, str], object | None]] = {
        "log_level": lambda value, p: _as_enum(
            value.upper() if isinstance(value, str) else value,
            p,
            issues,
            allowed_values=LOG_LEVELS,
        ),
        "log_format": lambda value, p: _as_enum(value, p, issues, allowed_values=LOG_FORMATS),
        "redact_secrets": lambda value, p: _as_bool(value, p, issues),
    }
    out = _validate_flat(
        payload, path, issues, partial=partial, fields=fields, optional_keys={"log_file"}
    )
    if "log_file" in payload:
        parsed = _as_path_text(payload["log_file"], _join(path, "log_file"), issues)
        if parsed is not None:
            out["log_file"] = parsed
    return out


_SECTION_VALIDATORS: Final[dict[str, _SectionValidator]] = {
    "parallel": _validate_parallel,
    "isolation": _validate_isolation,
    "safety": _validate_safety,
    "loops": _validate_loops,
    "verification": _validate_verification,
    "paths": _validate_paths,
    "observability": _validate_observability,
}
_SECTION_ORDER: Final[tuple[str, ...]] = tuple(sorted(_SECTION_VALIDATORS))


def _validate_profiles(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for profile_name in sorted(payload):
        profile_path = _join(path, profile_name)
        if not _PROFILE_NAME_PATTERN.fullmatch(profile_name):
            issues.add(profile_path, "profile name must match ^[a-z][a-z0-9_-]*$")
            continue
        profile_obj = _as_object(payload[profile_name], profile_path, issues)
        if profile_obj is None:
            continue
        _reject_unknown_keys(profile_obj, set(_SECTION_VALIDATORS), profile_path, issues)
        overlay: dict[str, Any] = {}
        for section in _SECTION_ORDER:
            _section(
                profile_obj, key=section, path=profile_path, issues=issues, partial=True, out=overlay
            )
        out[profile_name] = overlay
    return out


def _validate_flat(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
    *,
    partial: bool,
    fields: Mapping[str, Callable[[object, str], object | None]],
    optional_keys: set[str] | None = None,
    extra_keys: set[str] | None = None,
) -> dict[str, Any]:
    allowed = set(fields) | (optional_keys or set()) | (extra_keys or set())
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, set(fields), path, issues)

    out: dict[str, Any] = {}
    for key in sorted(fields):
        if key not in payload:
            continue
        parsed = fields[key](payload[key], _join(path, key))
        if parsed is not None:
            out[key] = parsed
    return out


def _as_object(value: object, path: str, issues: _IssueCollector) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected object, got {type(value).__name__}")
        return None
    out: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            issues.add(path, f"object key must be string, got {type(key).__name__}")
            continue
        out[key] = item
    return out


def _as_str(value: object, path: str, issues: _IssueCollector) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    parsed = value.strip()
    if not parsed:
        issues.add(path, "must not be empty")
        return None
    return parsed


def _as_path_text(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if "\x00" in parsed:
        issues.add(path, "must not contain NUL bytes")
        return None
    return parsed


def _as_branch_prefix(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if not _BRANCH_PREFIX_PATTERN.fullmatch(parsed) or ".." in parsed or parsed.startswith("-"):
        issues.add(path, "must be a safe git branch prefix")
        return None
    return parsed


def _as_str_list(value: object, path: str, issues: _IssueCollector) -> list[str] | None:
    if not isinstance(value, (list, tuple)):
        issues.add(path, f"expected list of strings, got {type(value).__name__}")
        return None
    out: list[str] = []
    for index, item in enumerate(value):
        parsed = _as_str(item, f"{path}[{index}]", issues)
        if parsed is not None:
            out.append(parsed)
    return out


def _as_command_list(
    value: object, path: str, issues: _IssueCollector
) -> list[dict[str, Any]] | None:
    if not isinstance(value, (list, tuple)):
        issues.add(path, f"expected list of command tables, got {type(value).__name__}")
        return None
    out: list[dict[str, Any]] = []
    for index, item in enumerate(value):
        item_path = f"{path}[{index}]"
        if isinstance(item, str):
            parsed_command = _as_str(item, item_path, issues)
            if parsed_command is not None:
                out.append({"command": parsed_command})
            continue
        entry = _as_object(item, item_path, issues)
        if entry is None:
            continue
        _reject_unknown_keys(
            entry, {"command", "description", "required", "expected_exit_code"}, item_path, issues
        )
        _require_keys(entry, {"command"}, item_path, issues)
        validated: dict[str, Any] = {}
        if "command" in entry:
            command = _as_str(entry["command"], _join(item_path, "command"), issues)
            if command is not None:
                validated["command"] = command
        if "description" in entry:
            description = _as_str(entry["description"], _join(item_path, "description"), issues)
            if description is not None:
                validated["description"] = description
        if "required" in entry:
            required = _as_bool(entry["required"], _join(item_path, "required"), issues)
            if required is not None:
                validated["required"] = required
        if "expected_exit_code" in entry:
            code = _as_int(
                entry["expected_exit_code"], _join(item_path, "expected_exit_code"), issues
            )
            if code is not None:
                validated["expected_exit_code"] = code
        out.append(validated)
    return out


def _as_bool(value: object, path: str, issues: _IssueCollector) -> bool | None:
    if isinstance(value, bool):
        return value
    issues.add(path, f"expected boolean, got {type(value).__name__}")
    return None


def _as_int(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: int | None = None,
) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        issues.add(path, f"expected integer, got {type(value).__name__}")
        return None
    if minimum is not None and value < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return value


def _as_float(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: float | None = None,
) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        issues.add(path, f"expected number, got {type(value).__name__}")
        return None
    parsed = float(value)
    if not math.isfinite(parsed):
        issues.add(path, "must be finite")
        return None
    if minimum is not None and parsed < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return parsed


def _as_positive_float(value: object, path: str, issues: _IssueCollector) -> float | None:
    parsed = _as_float(value, path, issues)
    if parsed is None:
        return None
    if parsed <= 0:
        issues.add(path, "must be > 0")
        return None
    return parsed


def _as_enum(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    allowed_values: tuple[str, ...],
) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if parsed not in allowed_values:
        expected = ", ".join(sorted(allowed_values))
        issues.add(path, f"invalid value {parsed!r}; expected one of: {expected}")
        return None
    return parsed


def _reject_unknown_keys(
    payload: Mapping[str, object],
    allowed: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(payload):
        if key in allowed:
            continue
        key_path = _join(path, key)
        if _looks_sensitive_key(key):
            issues.add(key_path, "embedded secret values are forbidden in taskwave config")
        else:
            issues.add(key_path, "unknown field")


def _require_keys(
    payload: Mapping[str, object],
    required: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(required):
        if key not in payload:
            issues.add(_join(path, key), "missing required field")


def _looks_sensitive_key(key: str) -> bool:
    normalized = _normalize_key(key)
    if any(phrase in normalized for phrase in _SENSITIVE_KEY_PHRASES):
        return True
    tokens = tuple(token for token in normalized.split("_") if token)
    return any(token in _SENSITIVE_KEY_TOKENS for token in tokens)


def _normalize_key(key: str) -> str:
    with_boundaries = _CAMEL_CASE_BOUNDARY.sub(r"\1_\2", key.strip())
    return _NON_ALNUM.sub("_", with_boundaries.lower()).strip("_")


def _join(path: str, key: str) -> str:
    if not path:
        return key
    return f"{path}.{key}"


def _merge_into(target: dict[str, Any], overlay: Mapping[str, object]) -> None:
    for key in sorted(overlay):
        value = overlay[key]
        if isinstance(value, Mapping):
            existing = target.get(key)
            if isinstance(existing, dict):
                _merge_into(existing, value)
            else:
                nested: dict[str, Any] = (
                    _deep_copy_mapping(existing) if isinstance(existing, Mapping) else {}
                )
                _merge_into(nested, value)
                target[key] = nested
        else:
            target[key] = copy.deepcopy(value)


def _deep_copy_mapping(value: Mapping[str, object]) -> dict[str, Any]:
    return {key: copy.deepcopy(value[key]) for key in sorted(value)}


def _redact_value(value: object, parent_key: str | None) -> object:
    if isinstance(value, Mapping):
        out: dict[str, object] = {}
        for key in sorted(value):
            item = value[key]
            if _looks_sensitive_key(key):
                out[key] = "<redacted>"
            else:
                out[key] = _redact_value(item, key)
        return out
    if isinstance(value, (list, tuple)):
        return [_redact_value(item, parent_key) for item in value]
    return value


__all__ = [
    "BUILTIN_PROFILE_NAMES",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_COMMAND_DENY",
    "DEFAULT_CONFIG",
    "DEFAULT_FILE_ALLOW",
    "DEFAULT_FILE_DENY",
    "LOG_FORMATS",
    "LOG_LEVELS",
    "OVERLAP_POLICIES",
    "PATH_FIELDS",
    "ProfileOverlay",
    "REGRESSION_MODES",
    "TaskwaveConfig",
    "VIOLATION_POLICIES",
    "apply_profile_overlay",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "migration_guidance",
    "redact_config",
    "validate_config",
]
