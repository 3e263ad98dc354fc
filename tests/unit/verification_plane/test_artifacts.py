"""Unit tests for verification artifact persistence."""

from __future__ import annotations

from pathlib import Path

import pytest

from taskwave.verification_plane.artifacts import (
    LOG_HEADER,
    ArtifactError,
    VerificationArtifactStore,
    format_log_entry,
)
from taskwave.verification_plane.runner import CommandOutcome, VerificationRecord


def _record(task_id: str = "T-1", phase: str = "test", *, passed: bool = True) -> VerificationRecord:
    outcome = CommandOutcome(
        command="pytest -q tests/unit | tee out.log --with-a-very-long-argument",
        description="unit tests",
        required=True,
        expected_exit_code=0,
        exit_code=0 if passed else 1,
        passed=passed,
        stdout="",
        stderr="",
        duration_ms=120,
    )
    return VerificationRecord(
        task_id=task_id,
        phase=phase,
        timestamp="2026-10-18T12:00:00Z",
        results=(outcome,),
        all_passed=passed,
        duration_ms=125,
    )


def test_save_record_writes_json_and_appends_log(tmp_path: Path) -> None:
    store = VerificationArtifactStore(tmp_path)

    path = store.save_record(_record())
    store.save_record(_record(phase="final", passed=False))

    assert path == tmp_path / "T-1-test.json"
    assert store.load_record_payload("T-1", "test")["all_passed"] is True  # type: ignore[index]
    log = store.log_path.read_text(encoding="utf-8")
    assert log.startswith(LOG_HEADER)
    assert log.count(LOG_HEADER) == 1
    assert "## T-1 - test [✓ PASSED]" in log
    assert "## T-1 - final [✗ FAILED]" in log


def test_rerun_replaces_the_record_but_keeps_log_history(tmp_path: Path) -> None:
    store = VerificationArtifactStore(tmp_path)
    store.save_record(_record(passed=False))
    store.save_record(_record(passed=True))

    assert store.load_record_payload("T-1", "test")["all_passed"] is True  # type: ignore[index]
    assert store.log_path.read_text(encoding="utf-8").count("## T-1 - test") == 2


def test_log_entry_table_escapes_and_truncates_commands() -> None:
    entry = format_log_entry(_record())
    row = [line for line in entry.splitlines() if line.startswith("| `")][0]

    assert row == "| `pytest -q tests/unit \\| tee out.log --wit...` | ✓ | 0 | 120ms |"
    assert entry.rstrip().endswith("---")


def test_records_for_task_ignore_other_tasks(tmp_path: Path) -> None:
    store = VerificationArtifactStore(tmp_path)
    store.save_record(_record("T-1"))
    store.save_record(_record("T-10"))

    assert [item["task_id"] for item in store.record_payloads_for_task("T-1")] == ["T-1"]
    assert VerificationArtifactStore(tmp_path / "missing").record_payloads_for_task("T-1") == []


def test_loop_summary_round_trip(tmp_path: Path) -> None:
    store = VerificationArtifactStore(tmp_path)
    path = store.save_loop_summary("feature/x", {"success": True})

    assert path == tmp_path / "loops" / "feature_x-loop.json"
    assert store.load_loop_summary("feature/x") == {"success": True}


def test_corrupt_artifacts_raise(tmp_path: Path) -> None:
    store = VerificationArtifactStore(tmp_path)
    store.record_path("T-1", "test").write_text("[1, 2]", encoding="utf-8")
    with pytest.raises(ArtifactError, match="JSON object"):
        store.load_record_payload("T-1", "test")
    store.record_path("T-1", "test").write_text("{", encoding="utf-8")
    with pytest.raises(ArtifactError, match="corrupt"):
        store.load_record_payload("T-1", "test")
