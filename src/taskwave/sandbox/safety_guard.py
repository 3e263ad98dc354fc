"""
taskwave — safety guard.

File: src/taskwave/sandbox/safety_guard.py
Last updated: 2026-10-18

Purpose
- Bound a task's side effects with path/command allow-deny lists and numeric ceilings.

What should be included in this file
- Violation taxonomy (file permission, command permission, limit exceeded).
- Immutable policy objects built from the ``[safety]`` config section.
- A per-task guard with distinct-resource counters and checkpoint cadence.

Functional requirements
- Deny patterns take precedence over allow patterns.
- Files default to deny-unless-allowed; commands default to allow-unless-denied.
- Every record call checks permission first, counts each distinct resource once,
  then re-checks every ceiling.
- The guard only detects. Callers decide whether to abort, warn or log.

Non-functional requirements
- The policy is cooperative, not an adversarial security boundary.
"""

from __future__ import annotations

import os
import re
import shlex
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, fields
from enum import StrEnum
from pathlib import Path, PurePosixPath
from typing import Any

from taskwave.config.schema import DEFAULT_COMMAND_DENY, DEFAULT_FILE_ALLOW, DEFAULT_FILE_DENY
from taskwave.sandbox.glob_matcher import DEFAULT_MATCHER, GlobMatcher

_COMMAND_SEPARATORS = re.compile(r"&&|\|\||;|\||\n")
_SUBSTITUTION = re.compile(r"\$\(([^()]*)\)|`([^`]*)`")
_SHELLS = frozenset({"sh", "bash", "zsh", "dash", "ksh"})
_SHELL_COMMAND_FLAG = re.compile(r"-[a-z]*c[a-z]*")
_MAX_NESTING = 4


class ViolationCategory(StrEnum):
    FILE_PERMISSION = "file_permission"
    COMMAND_PERMISSION = "command_permission"
    LIMIT_EXCEEDED = "limit_exceeded"


class ViolationPolicy(StrEnum):
    ABORT = "abort"
    WARN = "warn"
    LOG = "log"


class FileOperation(StrEnum):
    READ = "read"
    MODIFY = "modify"
    CREATE = "create"
    DELETE = "delete"


class SafetyViolation(PermissionError):
    """Raised when a file, command, or counter crosses the safety policy."""

    def __init__(
        self,
        message: str,
        *,
        category: ViolationCategory,
        resource: str,
        pattern: str | None = None,
        limit_name: str | None = None,
        limit: int | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.category = category
        self.resource = resource
        self.pattern = pattern
        self.limit_name = limit_name
        self.limit = limit

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "category": self.category.value,
            "resource": self.resource,
            "message": self.message,
        }
        if self.pattern is not None:
            payload["pattern"] = self.pattern
        if self.limit_name is not None:
            payload["limit_name"] = self.limit_name
            payload["limit"] = self.limit
        return payload


@dataclass(frozen=True, slots=True)
class SafetyLimits:
    """Numeric ceilings. ``None`` or ``0`` disables a ceiling."""

    max_steps: int | None = 50
    max_files_modified: int | None = 20
    max_files_created: int | None = 10
    max_files_deleted: int | None = 5
    max_commands_run: int | None = 30
    max_tokens: int | None = None
    checkpoint_interval: int = 5

    def __post_init__(self) -> None:
        for item in fields(self):
            value = getattr(self, item.name)
            if value is None:
                continue
            if isinstance(value, bool) or not isinstance(value, int):
                raise TypeError(f"{item.name} must be an integer or None")
            if value < 0:
                raise ValueError(f"{item.name} must be >= 0")
        if self.checkpoint_interval < 1:
            raise ValueError("checkpoint_interval must be >= 1")

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> SafetyLimits:
        known = {item.name for item in fields(cls)}
        return cls(**{key: value for key, value in payload.items() if key in known})

    def to_dict(self) -> dict[str, int | None]:
        return {item.name: getattr(self, item.name) for item in fields(self)}


@dataclass(frozen=True, slots=True)
class PermissionRules:
    allow: tuple[str, ...] = ()
    deny: tuple[str, ...] = ()

    @classmethod
    def from_mapping(
        cls, payload: Mapping[str, Any] | None, *, default: PermissionRules
    ) -> PermissionRules:
        if not payload:
            return default
        return cls(
            allow=tuple(payload.get("allow", default.allow)),
            deny=tuple(payload.get("deny", default.deny)),
        )


DEFAULT_FILE_RULES = PermissionRules(allow=DEFAULT_FILE_ALLOW, deny=DEFAULT_FILE_DENY)
DEFAULT_COMMAND_RULES = PermissionRules(allow=("*",), deny=DEFAULT_COMMAND_DENY)


@dataclass(frozen=True, slots=True)
class SafetyPolicy:
    enabled: bool = True
    limits: SafetyLimits = field(default_factory=SafetyLimits)
    files: PermissionRules = DEFAULT_FILE_RULES
    commands: PermissionRules = DEFAULT_COMMAND_RULES
    on_violation: ViolationPolicy = ViolationPolicy.ABORT

    def __post_init__(self) -> None:
        object.__setattr__(self, "on_violation", ViolationPolicy(self.on_violation))

    @classmethod
    def from_config(cls, safety: Mapping[str, Any] | None) -> SafetyPolicy:
        """Build from the ``[safety]`` config section; absent keys use documented defaults."""
        section = safety or {}
        return cls(
            enabled=bool(section.get("enabled", True)),
            limits=SafetyLimits.from_mapping(section.get("limits") or {}),
            files=PermissionRules.from_mapping(section.get("files"), default=DEFAULT_FILE_RULES),
            commands=PermissionRules.from_mapping(
                section.get("commands"), default=DEFAULT_COMMAND_RULES
            ),
            on_violation=ViolationPolicy(section.get("on_violation", ViolationPolicy.ABORT)),
        )


@dataclass(slots=True)
class SafetyCounters:
    steps: int = 0
    files_modified: int = 0
    files_created: int = 0
    files_deleted: int = 0
    commands_run: int = 0
    tokens_used: int = 0

    def to_dict(self) -> dict[str, int]:
        return {item.name: getattr(self, item.name) for item in fields(self)}


@dataclass(frozen=True, slots=True)
class SafetyStatus:
    enabled: bool
    counters: dict[str, int]
    limits: dict[str, int | None]
    files_modified: tuple[str, ...]
    files_created: tuple[str, ...]
    files_deleted: tuple[str, ...]
    needs_checkpoint: bool

    def to_dict(self) -> dict[str, object]:
        return {
            "enabled": self.enabled,
            "counters": dict(self.counters),
            "limits": dict(self.limits),
            "files_modified": list(self.files_modified),
            "files_created": list(self.files_created),
            "files_deleted": list(self.files_deleted),
            "needs_checkpoint": self.needs_checkpoint,
        }


# (counter attribute, limit attribute, human label)
_CEILINGS: tuple[tuple[str, str, str], ...] = (
    ("steps", "max_steps", "Step"),
    ("files_modified", "max_files_modified", "File modification"),
    ("files_created", "max_files_created", "File creation"),
    ("files_deleted", "max_files_deleted", "File deletion"),
    ("commands_run", "max_commands_run", "Command execution"),
    ("tokens_used", "max_tokens", "Token"),
)


class SafetyGuard:
    """Per-task detector. Counters are owned by one task and never shared."""

    def __init__(
        self,
        policy: SafetyPolicy | None = None,
        *,
        project_root: str | Path | None = None,
        matcher: GlobMatcher | None = None,
    ) -> None:
        self._policy = policy or SafetyPolicy()
        self._root = Path(project_root if project_root is not None else Path.cwd()).resolve()
        self._matcher = matcher or DEFAULT_MATCHER
        self._counters = SafetyCounters()
        self._modified: set[str] = set()
        self._created: set[str] = set()
        self._deleted: set[str] = set()

    @property
    def policy(self) -> SafetyPolicy:
        return self._policy

    @property
    def enabled(self) -> bool:
        return self._policy.enabled

    @property
    def project_root(self) -> Path:
        return self._root

    @property
    def counters(self) -> SafetyCounters:
        return self._counters

    def check_file_permission(
        self, path: str | Path, operation: FileOperation = FileOperation.READ
    ) -> str:
        """Return the root-relative path when allowed, else raise ``SafetyViolation``."""
        normalized = self._relative_path(path)
        if not self.enabled:
            return normalized if normalized is not None else str(path)

        if normalized is None:
            raise SafetyViolation(
                f"File access denied: {path} ({operation.value} outside project root)",
                category=ViolationCategory.FILE_PERMISSION,
                resource=str(path),
            )

        for pattern in self._policy.files.deny:
            if self._matcher.matches(normalized, pattern):
                raise SafetyViolation(
                    f"File access denied by safety policy: {normalized} "
                    f"(matches deny pattern: {pattern})",
                    category=ViolationCategory.FILE_PERMISSION,
                    resource=normalized,
                    pattern=pattern,
                )

        if not any(self._matcher.matches(normalized, pattern) for pattern in self._policy.files.allow):
            raise SafetyViolation(
                f"File access denied: {normalized} (not in allow list)",
                category=ViolationCategory.FILE_PERMISSION,
                resource=normalized,
            )
        return normalized

    def check_command_permission(self, command: str) -> bool:
        if not self.enabled:
            return True

        stripped = command.strip()
        segments = _command_segments(stripped)

        for pattern in self._policy.commands.deny:
            pattern_tokens = _tokenize(pattern)
            if not pattern_tokens:
                continue
            if any(_matches_run(tokens, pattern_tokens) for tokens in segments):
                raise SafetyViolation(
                    f'Command blocked by safety policy: "{stripped}" '
                    f'(matches deny pattern: "{pattern}")',
                    category=ViolationCategory.COMMAND_PERMISSION,
                    resource=stripped,
                    pattern=pattern,
                )

        allow = self._policy.commands.allow
        if "*" in allow:
            return True
        for tokens in segments:
            base = tokens[0]
            if not any(self._matcher.matches(base, entry) for entry in allow):
                raise SafetyViolation(
                    f'Command not allowed: "{base}" (not in allow list)',
                    category=ViolationCategory.COMMAND_PERMISSION,
                    resource=stripped,
                )
        return True

    def check_limits(self) -> bool:
        if not self.enabled:
            return True
        limits = self._policy.limits
        for counter_name, limit_name, label in _CEILINGS:
            limit = getattr(limits, limit_name)
            current = getattr(self._counters, counter_name)
            if limit and current > limit:
                raise SafetyViolation(
                    f"{label} limit exceeded ({current} > {limit})",
                    category=ViolationCategory.LIMIT_EXCEEDED,
                    resource=counter_name,
                    limit_name=limit_name,
                    limit=limit,
                )
        return True

    def record_step(self) -> int:
        self._counters.steps += 1
        self.check_limits()
        return self._counters.steps

    def record_file_modification(self, path: str | Path, *, is_new: bool = False) -> None:
        operation = FileOperation.CREATE if is_new else FileOperation.MODIFY
        normalized = self.check_file_permission(path, operation)
        if is_new:
            if normalized not in self._created:
                self._created.add(normalized)
                self._counters.files_created += 1
        elif normalized not in self._modified:
            self._modified.add(normalized)
            self._counters.files_modified += 1
        self.check_limits()

    def record_file_deletion(self, path: str | Path) -> None:
        normalized = self.check_file_permission(path, FileOperation.DELETE)
        if normalized not in self._deleted:
            self._deleted.add(normalized)
            self._counters.files_deleted += 1
        self.check_limits()

    def record_command(self, command: str) -> None:
        self.check_command_permission(command)
        self._counters.commands_run += 1
        self.check_limits()

    def record_tokens(self, count: int) -> None:
        if isinstance(count, bool) or not isinstance(count, int) or count < 0:
            raise ValueError("token count must be a non-negative integer")
        self._counters.tokens_used += count
        self.check_limits()

    def needs_checkpoint(self) -> bool:
        interval = self._policy.limits.checkpoint_interval
        return self._counters.steps > 0 and self._counters.steps % interval == 0

    def status(self) -> SafetyStatus:
        return SafetyStatus(
            enabled=self.enabled,
            counters=self._counters.to_dict(),
            limits=self._policy.limits.to_dict(),
            files_modified=tuple(sorted(self._modified)),
            files_created=tuple(sorted(self._created)),
            files_deleted=tuple(sorted(self._deleted)),
            needs_checkpoint=self.needs_checkpoint(),
        )

    def reset(self) -> None:
        self._counters = SafetyCounters()
        self._modified.clear()
        self._created.clear()
        self._deleted.clear()

    def _relative_path(self, path: str | Path) -> str | None:
        raw = str(path).replace("\\", "/")
        candidate = Path(raw)
        if candidate.is_absolute():
            resolved = candidate.resolve(strict=False)
            try:
                relative = resolved.relative_to(self._root)
            except ValueError:
                return None
            return relative.as_posix()
        pure = PurePosixPath(os.path.normpath(raw).replace("\\", "/"))
        if pure.parts and pure.parts[0] == "..":
            return None
        return pure.as_posix()


def _tokenize(command: str) -> list[str]:
    try:
        tokens = shlex.split(command)
    except ValueError:
        # Unbalanced quotes still get a best-effort whitespace split.
        tokens = command.split()
    if tokens:
        tokens[0] = os.path.basename(tokens[0]) or tokens[0]
    return tokens


def _command_segments(command: str, depth: int = 0) -> list[list[str]]:
    """Token lists for every chained segment, including nested shell payloads."""
    segments: list[list[str]] = []
    if depth > _MAX_NESTING:
        return segments
    for payload in _SUBSTITUTION.findall(command):
        inner = payload[0] or payload[1]
        segments.extend(_command_segments(inner, depth + 1))
    for part in _COMMAND_SEPARATORS.split(command):
        tokens = _tokenize(part)
        if not tokens:
            continue
        segments.append(tokens)
        if tokens[0] in _SHELLS:
            for index, token in enumerate(tokens[1:-1], start=1):
                if _SHELL_COMMAND_FLAG.fullmatch(token):
                    segments.extend(_command_segments(tokens[index + 1], depth + 1))
                    break
    return segments


def _matches_run(tokens: Iterable[str], run: list[str]) -> bool:
    # With arguments, the last pattern token is a prefix: "rm -rf /" also covers "/home".
    items = list(tokens)
    width = len(run)
    head, last = run[:-1], run[-1]
    for index in range(len(items) - width + 1):
        window = items[index : index + width]
        if window[:-1] != head:
            continue
        if window[-1] == last or (width > 1 and window[-1].startswith(last)):
            return True
    return False


__all__ = [
    "DEFAULT_COMMAND_RULES",
    "DEFAULT_FILE_RULES",
    "FileOperation",
    "PermissionRules",
    "SafetyCounters",
    "SafetyGuard",
    "SafetyLimits",
    "SafetyPolicy",
    "SafetyStatus",
    "SafetyViolation",
    "ViolationCategory",
    "ViolationPolicy",
]
