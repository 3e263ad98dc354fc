"""
taskwave — test suite for integration plane git engine.

File: tests/unit/integration_plane/test_git_engine.py
Last updated: 2026-10-18

Purpose
- Validate GitEngine primitives over local temporary repositories.
"""

from __future__ import annotations

import os
import subprocess
from pathlib import Path

import pytest

from taskwave.integration_plane.git_engine import (
    GitCommandError,
    GitEngine,
    NotARepositoryError,
    VCSError,
    WorktreeRecord,
)


def run_git(cwd: Path, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
    env = os.environ.copy()
    env["GIT_TERMINAL_PROMPT"] = "0"
    env.setdefault("GIT_CONFIG_NOSYSTEM", "1")
    completed = subprocess.run(
        ["git", *args],
        cwd=cwd,
        env=env,
        text=True,
        capture_output=True,
        check=False,
    )
    if check and completed.returncode != 0:
        msg = f"git command failed: git {' '.join(args)}\nstdout:\n{completed.stdout}\nstderr:\n{completed.stderr}"
        raise AssertionError(msg)
    return completed


@pytest.fixture(autouse=True)
def isolated_git_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    home = tmp_path / "home"
    xdg = tmp_path / "xdg"
    home.mkdir()
    xdg.mkdir()

    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("XDG_CONFIG_HOME", str(xdg))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("GIT_TERMINAL_PROMPT", "0")


def init_repo(tmp_path: Path) -> Path:
    repo = tmp_path / "repo"
    repo.mkdir()
    run_git(repo, "init", "--quiet", "-b", "main")
    (repo / "README.md").write_text("hello\n", encoding="utf-8")
    run_git(repo, "add", "--all")
    run_git(repo, "-c", "user.name=Seed", "-c", "user.email=seed@example.invalid", "commit", "-q", "-m", "seed")
    return repo


def test_toplevel_and_repository_detection(tmp_path: Path) -> None:
    repo = init_repo(tmp_path)
    nested = repo / "pkg"
    nested.mkdir()

    assert GitEngine(nested).toplevel() == repo.resolve()
    assert GitEngine(repo).is_repository()

    outside = tmp_path / "plain"
    outside.mkdir()
    with pytest.raises(NotARepositoryError):
        GitEngine(outside).toplevel()
    assert not GitEngine(outside).is_repository()


def test_branch_queries(tmp_path: Path) -> None:
    engine = GitEngine(init_repo(tmp_path))

    assert engine.current_branch() == "main"
    assert engine.branch_exists("main")
    assert not engine.branch_exists("feature")
    assert len(engine.rev_parse("HEAD")) == 40


def test_changed_paths_honours_ignore_list(tmp_path: Path) -> None:
    repo = init_repo(tmp_path)
    engine = GitEngine(repo)
    (repo / "README.md").write_text("changed\n", encoding="utf-8")
    (repo / "notes").mkdir()
    (repo / "notes" / "todo.txt").write_text("x\n", encoding="utf-8")
    (repo / ".meta.json").write_text("{}\n", encoding="utf-8")

    assert set(engine.changed_paths(repo, ignore=(".meta.json",))) == {"README.md", "notes/todo.txt"}


def test_commit_all_skips_ignored_paths_and_sets_fallback_identity(tmp_path: Path) -> None:
    repo = init_repo(tmp_path)
    engine = GitEngine(repo)
    (repo / "src.py").write_text("print(1)\n", encoding="utf-8")
    (repo / ".meta.json").write_text("{}\n", encoding="utf-8")

    sha = engine.commit_all(repo, "  add src  ", ignore=(".meta.json",))

    assert sha == engine.rev_parse("HEAD")
    committed = run_git(repo, "show", "--name-only", "--format=%s", "HEAD").stdout.split()
    assert committed == ["add", "src", "src.py"]
    assert engine.changed_paths(repo) == (".meta.json",)
    assert run_git(repo, "config", "--local", "user.name").stdout.strip() == "taskwave"


def test_existing_identity_is_left_alone(tmp_path: Path) -> None:
    repo = init_repo(tmp_path)
    run_git(repo, "config", "--global", "user.name", "Dev")
    run_git(repo, "config", "--global", "user.email", "dev@example.invalid")

    GitEngine(repo).ensure_identity()

    assert run_git(repo, "config", "--local", "user.name", check=False).returncode != 0


def test_empty_commit_message_is_rejected(tmp_path: Path) -> None:
    repo = init_repo(tmp_path)
    with pytest.raises(VCSError, match="cannot be empty"):
        GitEngine(repo).commit_all(repo, "   ")


def test_worktree_lifecycle_and_records(tmp_path: Path) -> None:
    repo = init_repo(tmp_path)
    engine = GitEngine(repo)
    worktree = tmp_path / "wt" / "task-1"

    engine.add_worktree(worktree, "task-1", "main")
    records = engine.worktree_records()

    assert WorktreeRecord(path=worktree.resolve(), branch_ref="refs/heads/task-1") in records
    assert engine.current_branch(cwd=worktree) == "task-1"

    assert engine.remove_worktree(worktree)
    assert not engine.remove_worktree(worktree)
    engine.prune_worktrees()
    assert engine.delete_branch("task-1")
    assert not engine.delete_branch("task-1")


def test_failed_command_raises_with_stderr(tmp_path: Path) -> None:
    engine = GitEngine(init_repo(tmp_path))
    with pytest.raises(GitCommandError) as error:
        engine.checkout("does-not-exist")
    assert error.value.returncode != 0
    assert error.value.command[:2] == ("git", "checkout")
    assert "git command failed" in str(error.value)


def test_missing_working_directory_is_a_vcs_error(tmp_path: Path) -> None:
    with pytest.raises(VCSError, match="unable to run git"):
        GitEngine(tmp_path / "missing").is_repository()


def test_record_branch_name() -> None:
    assert WorktreeRecord(Path("/x"), "refs/heads/a/b").branch_name == "a/b"
    assert WorktreeRecord(Path("/x"), None).branch_name is None
