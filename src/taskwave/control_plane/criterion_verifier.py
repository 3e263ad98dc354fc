"""Best-effort classification of free-text acceptance criteria.

A ``CriterionVerifier`` maps one criterion description plus a
``VerificationContext`` to a tri-state ``CriterionCheck``: ``True`` (verified),
``False`` (verified failing) or ``None`` (cannot auto-verify). ``None`` is never a
failure; callers fall back to manual confirmation.

``HeuristicCriterionVerifier`` is an ordered list of named rules. The first rule
that recognises the description decides; when none does the verifier returns the
manual fallback (or a failure when ``fallback_to_manual`` is disabled).
"""

from __future__ import annotations

import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol, runtime_checkable

from taskwave.utils.fs import is_within

_QUOTE = "[\"`']"
_FILE_PATTERNS = (
    re.compile(
        rf"(?:create|created|add|added|new)\s+(?:a\s+)?(?:file\s+)?{_QUOTE}?([^\s\"`']+\.[a-z]{{1,4}}){_QUOTE}?",
        re.IGNORECASE,
    ),
    re.compile(
        rf"file\s+{_QUOTE}?([^\s\"`']+\.[a-z]{{1,4}}){_QUOTE}?\s+(?:created|exists|should exist)",
        re.IGNORECASE,
    ),
    re.compile(
        rf"{_QUOTE}([^\s\"`']+\.[a-z]{{1,4}}){_QUOTE}?\s+(?:file\s+)?(?:created|exists)",
        re.IGNORECASE,
    ),
)
# (pattern, symbol group, file group)
_SYMBOL_PATTERNS = (
    (
        re.compile(
            rf"(?:function|export|method|class)\s+{_QUOTE}?(\w+){_QUOTE}?\s+(?:exists?\s+)?(?:in|from)\s+{_QUOTE}?([^\s\"`']+){_QUOTE}?",
            re.IGNORECASE,
        ),
        1,
        2,
    ),
    (
        re.compile(
            rf"{_QUOTE}?([^\s\"`']+){_QUOTE}?\s+(?:should\s+)?(?:export|exports|have|has|contain|contains)\s+{_QUOTE}?(\w+){_QUOTE}?",
            re.IGNORECASE,
        ),
        2,
        1,
    ),
)
_CONFIG_PATTERNS = (
    re.compile(
        rf"(?:config(?:uration)?|settings?)\s+(?:has|contains|includes)\s+{_QUOTE}?(\w+(?:\.\w+)*){_QUOTE}?",
        re.IGNORECASE,
    ),
    re.compile(rf"{_QUOTE}?(\w+(?:\.\w+)*){_QUOTE}?\s+(?:in|enabled in)\s+config", re.IGNORECASE),
)
_INTEGRATION_PATTERNS = (
    re.compile(
        rf"{_QUOTE}?(\w+){_QUOTE}?\s+(?:integrated|wired|connected)\s+(?:into|to|with)\s+{_QUOTE}?([^\s\"`']+){_QUOTE}?",
        re.IGNORECASE,
    ),
    re.compile(
        rf"{_QUOTE}?([^\s\"`']+){_QUOTE}?\s+(?:requires?|imports?|uses?)\s+{_QUOTE}?(\w+){_QUOTE}?",
        re.IGNORECASE,
    ),
)


@dataclass(frozen=True, slots=True)
class CriterionCheck:
    """Outcome of verifying one criterion."""

    passed: bool | None
    message: str
    verification: str

    @property
    def unknown(self) -> bool:
        return self.passed is None

    def to_dict(self) -> dict[str, object]:
        return {"passed": self.passed, "message": self.message, "verification": self.verification}


@dataclass(frozen=True, slots=True)
class VerificationContext:
    """Evidence available to criterion rules."""

    project_root: Path = field(default_factory=Path.cwd)
    changed_files: tuple[str, ...] = ()
    config: Mapping[str, object] | None = None
    test_failures: int | None = None
    lint_errors: int | None = None


@runtime_checkable
class CriterionVerifier(Protocol):
    def verify(self, description: str, context: VerificationContext) -> CriterionCheck: ...


RuleFn = Callable[[str, VerificationContext], "CriterionCheck | None"]


@dataclass(frozen=True, slots=True)
class CriterionRule:
    """Named rule; ``check`` returns ``None`` when the description is not its shape."""

    name: str
    check: RuleFn


def file_exists_rule(description: str, context: VerificationContext) -> CriterionCheck | None:
    for pattern in _FILE_PATTERNS:
        match = pattern.search(description)
        if match is None:
            continue
        relative = match.group(1)
        target = _resolve_in_project(context.project_root, relative)
        if target is None:
            return CriterionCheck(None, f"Path outside project: {relative}", "file-exists")
        exists = target.exists()
        message = f"File exists: {relative}" if exists else f"File not found: {relative}"
        return CriterionCheck(exists, message, "file-exists")
    return None


def symbol_in_file_rule(description: str, context: VerificationContext) -> CriterionCheck | None:
    for pattern, symbol_group, file_group in _SYMBOL_PATTERNS:
        match = pattern.search(description)
        if match is None:
            continue
        symbol = match.group(symbol_group)
        relative = match.group(file_group)
        target = _resolve_in_project(context.project_root, relative)
        if target is None or not target.is_file():
            continue
        found = symbol in _read_text(target)
        message = f'Found "{symbol}" in {relative}' if found else f'"{symbol}" not found in {relative}'
        return CriterionCheck(found, message, "function-exists")
    return None


def config_key_rule(description: str, context: VerificationContext) -> CriterionCheck | None:
    if context.config is None:
        return None
    for pattern in _CONFIG_PATTERNS:
        match = pattern.search(description)
        if match is None:
            continue
        key = match.group(1)
        found, value = _lookup_dotted(context.config, key)
        if found:
            return CriterionCheck(True, f'Config "{key}" exists (value: {str(value)[:50]})', "config-exists")
        return CriterionCheck(False, f'Config "{key}" not found', "config-exists")
    return None


def integration_rule(description: str, context: VerificationContext) -> CriterionCheck | None:
    for pattern in _INTEGRATION_PATTERNS:
        match = pattern.search(description)
        if match is None:
            continue
        module_name, relative = match.group(1), match.group(2)
        if pattern is _INTEGRATION_PATTERNS[1]:
            relative, module_name = module_name, relative
        target = _resolve_in_project(context.project_root, relative)
        if target is None or not target.is_file():
            continue
        found = module_name in _read_text(target)
        message = f'"{module_name}" found in {relative}' if found else f'"{module_name}" not found in {relative}'
        return CriterionCheck(found, message, "integration")
    return None


def tests_pass_rule(description: str, context: VerificationContext) -> CriterionCheck | None:
    lowered = description.lower()
    if "test" not in lowered or not ("pass" in lowered or "succeed" in lowered):
        return None
    if context.test_failures is None:
        return CriterionCheck(None, "Test results unavailable", "tests")
    if context.test_failures == 0:
        return CriterionCheck(True, "All tests pass", "tests")
    return CriterionCheck(False, f"{context.test_failures} tests failing", "tests")


def lint_clean_rule(description: str, context: VerificationContext) -> CriterionCheck | None:
    lowered = description.lower()
    if "lint" not in lowered:
        return None
    if not any(marker in lowered for marker in ("pass", "clean", "no error")):
        return None
    if context.lint_errors is None:
        return None
    if context.lint_errors == 0:
        return CriterionCheck(True, "No lint errors", "lint")
    return CriterionCheck(False, f"{context.lint_errors} lint errors", "lint")


DEFAULT_RULES: tuple[CriterionRule, ...] = (
    CriterionRule("file-exists", file_exists_rule),
    CriterionRule("function-exists", symbol_in_file_rule),
    CriterionRule("config-exists", config_key_rule),
    CriterionRule("integration", integration_rule),
    CriterionRule("tests", tests_pass_rule),
    CriterionRule("lint", lint_clean_rule),
)


class HeuristicCriterionVerifier:
    """Pattern-based default verifier composed of ordered named rules."""

    def __init__(
        self,
        rules: Sequence[CriterionRule] = DEFAULT_RULES,
        *,
        fallback_to_manual: bool = True,
    ) -> None:
        self._rules = tuple(rules)
        self._fallback_to_manual = fallback_to_manual

    @property
    def rules(self) -> tuple[CriterionRule, ...]:
        return self._rules

    def verify(self, description: str, context: VerificationContext) -> CriterionCheck:
        for rule in self._rules:
            result = rule.check(description, context)
            if result is not None:
                return result
        if self._fallback_to_manual:
            return CriterionCheck(None, "Could not auto-verify - manual check required", "manual")
        return CriterionCheck(False, "Could not verify and fallback_to_manual is disabled", "failed")


def _resolve_in_project(project_root: Path, relative: str) -> Path | None:
    root = project_root.resolve()
    candidate = (root / relative).resolve(strict=False)
    if not is_within(candidate, root):
        return None
    return candidate


def _read_text(path: Path) -> str:
    return path.read_text(encoding="utf-8", errors="replace")


def _lookup_dotted(config: Mapping[str, object], key: str) -> tuple[bool, object]:
    current: object = config
    for part in key.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return False, None
        current = current[part]
    return True, current


__all__ = [
    "CriterionCheck",
    "CriterionRule",
    "CriterionVerifier",
    "DEFAULT_RULES",
    "HeuristicCriterionVerifier",
    "VerificationContext",
    "config_key_rule",
    "file_exists_rule",
    "integration_rule",
    "lint_clean_rule",
    "symbol_in_file_rule",
    "tests_pass_rule",
]
