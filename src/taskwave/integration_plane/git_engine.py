"""Deterministic Git CLI wrapper used by the isolation manager."""

from __future__ import annotations

import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

_FALLBACK_USER_NAME = "taskwave"
_FALLBACK_USER_EMAIL = "taskwave@example.invalid"


class VCSError(RuntimeError):
    """Base error for version-control failures."""


class NotARepositoryError(VCSError):
    """Raised when the project root is not inside a git work tree."""


class MergeError(VCSError):
    """Raised when merging an isolated branch back fails; the branch is preserved."""

    def __init__(self, message: str, *, branch_name: str, base_branch: str) -> None:
        super().__init__(message)
        self.branch_name = branch_name
        self.base_branch = base_branch


class GitCommandError(VCSError):
    """Raised when a git subprocess command exits non-zero."""

    def __init__(
        self,
        *,
        command: Sequence[str],
        returncode: int,
        stdout: str,
        stderr: str,
    ) -> None:
        self.command = tuple(command)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        message = f"git command failed ({returncode}): {' '.join(command)}"
        if stderr.strip():
            message = f"{message}: {stderr.strip()}"
        super().__init__(message)


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Normalized subprocess result for deterministic git wrapper behavior."""

    command: tuple[str, ...]
    cwd: str
    returncode: int
    stdout: str
    stderr: str


@dataclass(frozen=True, slots=True)
class WorktreeRecord:
    path: Path
    branch_ref: str | None

    @property
    def branch_name(self) -> str | None:
        if self.branch_ref and self.branch_ref.startswith("refs/heads/"):
            return self.branch_ref.removeprefix("refs/heads/")
        return None


class GitEngine:
    """Thin wrapper around the git CLI rooted at one repository."""

    def __init__(
        self,
        repo_path: Path | str,
        *,
        env_overrides: Mapping[str, str] | None = None,
    ) -> None:
        self.repo_path = Path(repo_path).expanduser().resolve()
        self._env_overrides = dict(env_overrides or {})

    def toplevel(self) -> Path:
        """Return the work-tree root or raise ``NotARepositoryError``."""
        result = self._run_git(["rev-parse", "--show-toplevel"], check=False)
        if result.returncode != 0 or not result.stdout.strip():
            raise NotARepositoryError(f"not a git repository: {self.repo_path}")
        return Path(result.stdout.strip()).resolve()

    def is_repository(self) -> bool:
        return self._run_git(["rev-parse", "--git-dir"], check=False).returncode == 0

    def current_branch(self, cwd: Path | None = None) -> str | None:
        """Current branch name, or ``None`` on a detached HEAD."""
        branch = self._run_git(["branch", "--show-current"], cwd=cwd).stdout.strip()
        return branch or None

    def branch_exists(self, branch: str) -> bool:
        ref = f"refs/heads/{branch}"
        return self._run_git(["show-ref", "--verify", "--quiet", ref], check=False).returncode == 0

    def rev_parse(self, ref: str, *, cwd: Path | None = None) -> str:
        return self._run_git(["rev-parse", ref], cwd=cwd).stdout.strip()

    def changed_paths(self, cwd: Path, *, ignore: Sequence[str] = ()) -> tuple[str, ...]:
        """Paths reported by ``git status --porcelain`` minus ``ignore``."""
        output = self._run_git(["status", "--porcelain", "--untracked-files=all"], cwd=cwd).stdout
        paths: list[str] = []
        for line in output.splitlines():
            if len(line) < 4:
                continue
            path = line[3:]
            if " -> " in path:
                path = path.split(" -> ", 1)[1]
            path = path.strip().strip('"')
            if path in ignore:
                continue
            paths.append(path)
        return tuple(paths)

    def commit_all(self, cwd: Path, message: str, *, ignore: Sequence[str] = ()) -> str:
        """Stage everything except ``ignore`` and commit. Returns the new HEAD sha."""
        title = message.strip()
        if not title:
            raise VCSError("Commit message cannot be empty.")
        self.ensure_identity()
        self._run_git(["add", "--all"], cwd=cwd)
        for path in ignore:
            self._run_git(["reset", "--quiet", "HEAD", "--", path], cwd=cwd, check=False)
        self._run_git(["commit", "--no-gpg-sign", "-m", title], cwd=cwd)
        return self.rev_parse("HEAD", cwd=cwd)

    def checkout(self, branch: str) -> None:
        self._run_git(["checkout", "--quiet", branch])

    def merge(self, branch: str, message: str, *, squash: bool) -> str:
        """Merge ``branch`` into the checked-out branch of the primary tree."""
        self.ensure_identity()
        if squash:
            self._run_git(["merge", "--squash", branch])
            self._run_git(["commit", "--no-gpg-sign", "-m", message])
        else:
            self._run_git(["merge", "--no-ff", "--no-edit", "-m", message, branch])
        return self.rev_parse("HEAD")

    def abort_merge(self) -> None:
        self._run_git(["reset", "--merge"], check=False)

    def push(self, branch: str, *, remote: str = "origin") -> None:
        self._run_git(["push", remote, branch])

    def add_worktree(self, path: Path, branch: str, base: str) -> None:
        self._run_git(["worktree", "add", "--quiet", "-b", branch, str(path), base])

    def remove_worktree(self, path: Path) -> bool:
        result = self._run_git(["worktree", "remove", "--force", str(path)], check=False)
        return result.returncode == 0

    def prune_worktrees(self) -> None:
        self._run_git(["worktree", "prune"], check=False)

    def delete_branch(self, branch: str) -> bool:
        if not self.branch_exists(branch):
            return False
        return self._run_git(["branch", "-D", branch], check=False).returncode == 0

    def worktree_records(self) -> tuple[WorktreeRecord, ...]:
        result = self._run_git(["worktree", "list", "--porcelain"])
        records: list[WorktreeRecord] = []

        path_value: Path | None = None
        branch_ref: str | None = None
        for line in result.stdout.splitlines():
            if not line.strip():
                if path_value is not None:
                    records.append(WorktreeRecord(path=path_value, branch_ref=branch_ref))
                path_value = None
                branch_ref = None
                continue

            field, _, value = line.partition(" ")
            if field == "worktree":
                path_value = Path(value.strip()).expanduser().resolve(strict=False)
            elif field == "branch":
                branch_ref = value.strip()

        if path_value is not None:
            records.append(WorktreeRecord(path=path_value, branch_ref=branch_ref))

        records.sort(key=lambda record: record.path.as_posix())
        return tuple(records)

    def ensure_identity(self) -> None:
        """Configure a repo-local identity only when none is configured anywhere."""
        if self._run_git(["config", "--get", "user.name"], check=False).returncode != 0:
            self._run_git(["config", "--local", "user.name", _FALLBACK_USER_NAME])
        if self._run_git(["config", "--get", "user.email"], check=False).returncode != 0:
            self._run_git(["config", "--local", "user.email", _FALLBACK_USER_EMAIL])

    def _run_git(
        self,
        args: Sequence[str],
        *,
        cwd: Path | None = None,
        check: bool = True,
        input_text: str | None = None,
    ) -> CommandResult:
        command = ("git", *args)
        run_cwd = (cwd if cwd is not None else self.repo_path).resolve()
        env = os.environ.copy()
        env["GIT_TERMINAL_PROMPT"] = "0"
        env.setdefault("GIT_CONFIG_NOSYSTEM", "1")
        env.update(self._env_overrides)

        try:
            completed = subprocess.run(
                command,
                cwd=run_cwd,
                env=env,
                text=True,
                capture_output=True,
                input=input_text,
                check=False,
            )
        except FileNotFoundError as exc:
            # Missing cwd or missing git binary.
            raise VCSError(f"unable to run git in {run_cwd}: {exc}") from exc

        result = CommandResult(
            command=command,
            cwd=run_cwd.as_posix(),
            returncode=completed.returncode,
            stdout=completed.stdout,
            stderr=completed.stderr,
        )

        if check and result.returncode != 0:
            raise GitCommandError(
                command=result.command,
                returncode=result.returncode,
                stdout=result.stdout,
                stderr=result.stderr,
            )

        return result


__all__ = [
    "CommandResult",
    "GitCommandError",
    "GitEngine",
    "MergeError",
    "NotARepositoryError",
    "VCSError",
    "WorktreeRecord",
]
