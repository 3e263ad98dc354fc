"""
taskwave — isolation context lifecycle against real git worktrees

File: tests/integration/test_isolation_lifecycle.py
Last updated: 2026-10-18

Purpose
- Exercise create, merge-back, discard, listing, stale sweep, and conflict recovery
  of isolation contexts over a throwaway repository.
- Drive the orchestration driver end to end with isolation enabled.
"""

from __future__ import annotations

import os
import subprocess
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from taskwave.constants import ISOLATION_BRANCH_PREFIX, ISOLATION_METADATA_FILE
from taskwave.control_plane.criterion_verifier import CriterionCheck
from taskwave.control_plane.driver import (
    DriverSettings,
    IterationReport,
    OrchestrationDriver,
    OutcomeStatus,
    TaskWork,
)
from taskwave.domain.models import Task
from taskwave.integration_plane.git_engine import MergeError, VCSError
from taskwave.integration_plane.isolation_manager import IsolationManager


class Clock:
    def __init__(self) -> None:
        self.now = datetime(2026, 10, 18, 8, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now


def _git(cwd: Path, *args: str) -> str:
    completed = subprocess.run(
        ["git", *args],
        cwd=cwd,
        env=os.environ.copy(),
        text=True,
        capture_output=True,
        check=False,
    )
    if completed.returncode != 0:
        raise AssertionError(f"git {' '.join(args)} failed:\n{completed.stderr}")
    return completed.stdout


@pytest.fixture(autouse=True)
def isolated_git_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("XDG_CONFIG_HOME", str(home / ".config"))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("GIT_TERMINAL_PROMPT", "0")
    monkeypatch.setenv("GIT_AUTHOR_NAME", "Test")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "test@example.invalid")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "Test")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "test@example.invalid")


@pytest.fixture
def repo(tmp_path: Path) -> Path:
    root = tmp_path / "repo"
    root.mkdir()
    _git(root, "init", "--quiet", "-b", "main")
    (root / "app.txt").write_text("v1\n", encoding="utf-8")
    _git(root, "add", "--all")
    _git(root, "commit", "-q", "-m", "seed")
    return root


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def manager(repo: Path, tmp_path: Path, clock: Clock) -> IsolationManager:
    return IsolationManager(repo, tmp_path / "worktrees", now_fn=clock)


def test_create_uses_prefixed_branch_and_writes_metadata(manager: IsolationManager, clock: Clock) -> None:
    context = manager.create("Feature/Login 1")

    epoch_ms = int(clock.now.timestamp() * 1000)
    assert context.branch_name == f"{ISOLATION_BRANCH_PREFIX}feature-login-1-{epoch_ms}"
    assert context.base_branch == "main"
    assert context.isolation_path.is_dir()
    assert (context.isolation_path / "app.txt").read_text(encoding="utf-8") == "v1\n"
    assert (context.isolation_path / ISOLATION_METADATA_FILE).is_file()
    assert [item.task_id for item in manager.list_contexts()] == ["Feature/Login 1"]


def test_create_clears_stale_symlink_at_target_path(
    manager: IsolationManager, tmp_path: Path, clock: Clock
) -> None:
    elsewhere = tmp_path / "elsewhere"
    elsewhere.mkdir()
    (elsewhere / "keep.txt").write_text("keep\n", encoding="utf-8")
    worktrees = tmp_path / "worktrees"
    worktrees.mkdir()
    epoch_ms = int(clock.now.timestamp() * 1000)
    stale = worktrees / manager.branch_name_for("T-1", epoch_ms)
    stale.symlink_to(elsewhere, target_is_directory=True)

    context = manager.create("T-1")

    assert context.isolation_path.name == stale.name
    assert not context.isolation_path.is_symlink()
    assert (context.isolation_path / "app.txt").is_file()
    assert (elsewhere / "keep.txt").is_file()


def test_discard_unlinks_symlinked_context_path(manager: IsolationManager, tmp_path: Path) -> None:
    context = manager.create("T-1")
    manager.discard(context)
    elsewhere = tmp_path / "elsewhere"
    elsewhere.mkdir()
    context.isolation_path.symlink_to(elsewhere, target_is_directory=True)

    outcome = manager.discard(context)

    assert outcome.path_removed
    assert not context.isolation_path.is_symlink()
    assert elsewhere.is_dir()


def test_same_task_twice_gets_distinct_branches(manager: IsolationManager) -> None:
    first = manager.create("T-1")
    second = manager.create("T-1")
    assert first.branch_name != second.branch_name
    assert len(manager.list_contexts()) == 2


def test_commit_and_merge_squashes_into_base(manager: IsolationManager, repo: Path) -> None:
    context = manager.create("T-1")
    (context.isolation_path / "app.txt").write_text("v2\n", encoding="utf-8")
    (context.isolation_path / "new.txt").write_text("added\n", encoding="utf-8")

    outcome = manager.commit_and_merge(context, "T-1: update app")

    assert outcome.merged
    assert outcome.commit_sha == _git(repo, "rev-parse", "HEAD").strip()
    assert (repo / "app.txt").read_text(encoding="utf-8") == "v2\n"
    assert (repo / "new.txt").is_file()
    assert not (repo / ISOLATION_METADATA_FILE).exists()
    assert _git(repo, "log", "-1", "--format=%s").strip() == "T-1: update app"
    assert not context.isolation_path.exists()
    assert manager.list_contexts() == ()
    assert context.branch_name not in _git(repo, "branch", "--list")


def test_merge_without_changes_is_reported_not_committed(manager: IsolationManager, repo: Path) -> None:
    head = _git(repo, "rev-parse", "HEAD").strip()
    context = manager.create("T-1")

    outcome = manager.commit_and_merge(context, "T-1: nothing")

    assert not outcome.merged
    assert outcome.reason == "no-changes"
    assert _git(repo, "rev-parse", "HEAD").strip() == head
    assert not context.isolation_path.exists()


def test_discard_is_idempotent(manager: IsolationManager) -> None:
    context = manager.create("T-1")

    first = manager.discard(context)
    second = manager.discard(context)

    assert first.path_removed and first.branch_deleted
    assert second.discarded
    assert not second.path_removed
    assert not second.branch_deleted


def test_discard_can_keep_the_branch(manager: IsolationManager, repo: Path) -> None:
    context = manager.create("T-1")
    outcome = manager.discard(context, delete_branch=False)
    assert outcome.path_removed
    assert not outcome.branch_deleted
    assert context.branch_name in _git(repo, "branch", "--list")


def test_merge_conflict_preserves_branch_and_restores_primary_tree(
    manager: IsolationManager, repo: Path
) -> None:
    context = manager.create("T-1")
    (context.isolation_path / "app.txt").write_text("from task\n", encoding="utf-8")
    (repo / "app.txt").write_text("from main\n", encoding="utf-8")
    _git(repo, "commit", "-q", "-am", "main moved on")

    with pytest.raises(MergeError) as error:
        manager.commit_and_merge(context, "T-1: conflicting")

    assert error.value.branch_name == context.branch_name
    assert error.value.base_branch == "main"
    assert _git(repo, "branch", "--show-current").strip() == "main"
    assert _git(repo, "status", "--porcelain").strip() == ""
    assert (repo / "app.txt").read_text(encoding="utf-8") == "from main\n"
    assert context.branch_name in _git(repo, "branch", "--list")


def test_sweep_discards_only_stale_contexts(manager: IsolationManager, clock: Clock) -> None:
    old = manager.create("old")
    clock.now += timedelta(hours=30)
    fresh = manager.create("fresh")

    assert manager.sweep_stale(24, dry_run=True) == (old.branch_name,)
    assert old.isolation_path.exists()

    assert manager.sweep_stale(24) == (old.branch_name,)
    assert not old.isolation_path.exists()
    assert [item.branch_name for item in manager.list_contexts()] == [fresh.branch_name]

    with pytest.raises(ValueError):
        manager.sweep_stale(-1)


def test_run_in_isolation_merges_or_discards(manager: IsolationManager, repo: Path) -> None:
    def write_file(path: Path, _context: object) -> str:
        (path / "result.txt").write_text("done\n", encoding="utf-8")
        return "ok"

    def explode(path: Path, _context: object) -> None:
        raise RuntimeError("executor failed")

    success = manager.run_in_isolation("T-1", write_file, commit_message="T-1: result")
    failure = manager.run_in_isolation("T-2", explode)

    assert success.success and success.result == "ok"
    assert success.merge is not None and success.merge.merged
    assert (repo / "result.txt").is_file()
    assert not failure.success
    assert failure.error == "executor failed"
    assert manager.list_contexts() == ()


def test_create_outside_a_repository_fails(tmp_path: Path) -> None:
    plain = tmp_path / "plain"
    plain.mkdir()
    with pytest.raises(VCSError):
        IsolationManager(plain, tmp_path / "worktrees").create("T-1")


def test_driver_merges_parallel_wave_back_into_base(repo: Path, manager: IsolationManager) -> None:
    def executor(work: TaskWork) -> IterationReport:
        target = work.workdir / f"{work.task.id.lower()}.txt"
        work.guard.check_file_permission(target)
        work.guard.record_file_modification(target, is_new=True)
        target.write_text(f"{work.task.id}\n", encoding="utf-8")
        return IterationReport(
            results={item.id: CriterionCheck(None, "unknown", "executor") for item in work.session.criteria}
        )

    tasks = [
        Task(id="A", files=frozenset({"a.txt"}), acceptance_criteria=("Create file a.txt",)),
        Task(id="B", files=frozenset({"b.txt"}), acceptance_criteria=("Create file b.txt",)),
        Task(id="C", depends_on=frozenset({"A", "B"})),
    ]
    driver = OrchestrationDriver(repo, executor, isolation=manager, settings=DriverSettings(max_concurrent=2))

    report = driver.run(tasks)

    assert report.succeeded, [item.to_dict() for item in report.outcomes]
    assert report.analysis.waves == (("A", "B"), ("C",))
    assert [item.status for item in report.outcomes] == [
        OutcomeStatus.MERGED,
        OutcomeStatus.MERGED,
        OutcomeStatus.MERGED,
    ]
    assert {(repo / name).read_text(encoding="utf-8") for name in ("a.txt", "b.txt", "c.txt")} == {
        "A\n",
        "B\n",
        "C\n",
    }
    assert manager.list_contexts() == ()
