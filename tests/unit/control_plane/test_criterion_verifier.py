"""Unit tests for heuristic acceptance-criterion verification."""

from __future__ import annotations

from pathlib import Path

import pytest

from taskwave.control_plane.criterion_verifier import (
    CriterionCheck,
    CriterionRule,
    CriterionVerifier,
    HeuristicCriterionVerifier,
    VerificationContext,
)


@pytest.fixture
def project(tmp_path: Path) -> Path:
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "auth.py").write_text(
        "import bcrypt\n\n\ndef login(user):\n    return user\n", encoding="utf-8"
    )
    return tmp_path


def _verify(description: str, **context: object) -> CriterionCheck:
    return HeuristicCriterionVerifier().verify(description, VerificationContext(**context))  # type: ignore[arg-type]


def test_default_verifier_satisfies_protocol() -> None:
    assert isinstance(HeuristicCriterionVerifier(), CriterionVerifier)


def test_file_exists_rule(project: Path) -> None:
    found = _verify("Create file src/auth.py", project_root=project)
    missing = _verify("Create file src/session.py", project_root=project)

    assert found.passed is True
    assert found.verification == "file-exists"
    assert missing.passed is False
    assert missing.message == "File not found: src/session.py"


def test_file_rule_never_looks_outside_the_project(project: Path) -> None:
    check = _verify("Create file ../outside.txt", project_root=project)
    assert check.passed is None
    assert "outside project" in check.message


def test_symbol_in_file_rule(project: Path) -> None:
    assert _verify("function login in src/auth.py", project_root=project).passed is True
    absent = _verify("function logout in src/auth.py", project_root=project)
    assert absent.passed is False
    assert absent.verification == "function-exists"


def test_config_key_rule_uses_dotted_lookup(project: Path) -> None:
    config = {"parallel": {"enabled": True}}
    assert _verify("config has parallel.enabled", project_root=project, config=config).passed is True
    assert _verify("config has parallel.turbo", project_root=project, config=config).passed is False


def test_integration_rule(project: Path) -> None:
    check = _verify("src/auth.py imports bcrypt", project_root=project)
    assert check.passed is True
    assert check.verification == "integration"


def test_tests_rule_reports_unknown_without_results(project: Path) -> None:
    assert _verify("All tests pass", project_root=project).unknown
    assert _verify("All tests pass", project_root=project, test_failures=0).passed is True
    failing = _verify("All tests pass", project_root=project, test_failures=3)
    assert failing.passed is False
    assert failing.message == "3 tests failing"


def test_lint_rule(project: Path) -> None:
    assert _verify("Lint is clean", project_root=project, lint_errors=0).passed is True
    assert _verify("Lint is clean", project_root=project, lint_errors=2).passed is False


def test_unrecognised_descriptions_fall_back_to_manual(project: Path) -> None:
    context = VerificationContext(project_root=project)
    manual = HeuristicCriterionVerifier().verify("UX feels snappy", context)
    strict = HeuristicCriterionVerifier(fallback_to_manual=False).verify("UX feels snappy", context)

    assert manual.passed is None
    assert manual.verification == "manual"
    assert strict.passed is False


def test_custom_rules_are_consulted_in_order(project: Path) -> None:
    always = CriterionRule("always", lambda description, context: CriterionCheck(True, "yes", "always"))
    verifier = HeuristicCriterionVerifier((always,))
    assert verifier.verify("anything", VerificationContext(project_root=project)).verification == "always"
    assert verifier.rules == (always,)
