"""
taskwave — per-task isolation contexts backed by git worktrees.

File: src/taskwave/integration_plane/isolation_manager.py
Last updated: 2026-10-18

Purpose
- Give every running task its own branch-scoped working copy and merge it back.

What should be included in this file
- Context creation with deterministic branch naming and recovery metadata.
- Commit-and-merge back into the base branch (squash or standard).
- Idempotent discard, stale sweep, listing, and a run-in-isolation helper.

Functional requirements
- A stale directory at the target path is force-cleaned, never reused.
- A failed merge restores the primary tree to its prior branch and preserves
  the isolated branch for manual recovery.
- Discard may be called any number of times.

Non-functional requirements
- Never delete anything outside the isolation root.
- All git operations on one repository are serialized.
"""

from __future__ import annotations

import json
import re
import tempfile
import threading
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any, Generic, TypeVar

import structlog

from taskwave.constants import (
    ISOLATION_BRANCH_PREFIX,
    ISOLATION_DIR_NAME,
    ISOLATION_METADATA_FILE,
)
from taskwave.integration_plane.git_engine import (
    GitCommandError,
    GitEngine,
    MergeError,
    NotARepositoryError,
    VCSError,
)
from taskwave.utils.fs import entry_within, safe_delete

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

logger = structlog.get_logger(__name__)

T = TypeVar("T")

_UNSAFE_BRANCH_CHARS = re.compile(r"[^a-zA-Z0-9-]")


@dataclass(frozen=True, slots=True)
class IsolationContext:
    """One task's isolated working copy. Owned by exactly one running task."""

    task_id: str
    isolation_path: Path
    branch_name: str
    base_branch: str
    repo_root: Path
    created_at: datetime | None

    def to_dict(self) -> dict[str, object]:
        return {
            "task_id": self.task_id,
            "path": self.isolation_path.as_posix(),
            "branch_name": self.branch_name,
            "base_branch": self.base_branch,
            "repo_root": self.repo_root.as_posix(),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass(frozen=True, slots=True)
class MergeOutcome:
    merged: bool
    reason: str | None = None
    commit_message: str | None = None
    commit_sha: str | None = None
    pushed: bool = False

    def to_dict(self) -> dict[str, object]:
        return {
            "merged": self.merged,
            "reason": self.reason,
            "commit_message": self.commit_message,
            "commit_sha": self.commit_sha,
            "pushed": self.pushed,
        }


@dataclass(frozen=True, slots=True)
class DiscardOutcome:
    discarded: bool = True
    path_removed: bool = False
    branch_deleted: bool = False

    def to_dict(self) -> dict[str, bool]:
        return {
            "discarded": self.discarded,
            "path_removed": self.path_removed,
            "branch_deleted": self.branch_deleted,
        }


@dataclass(frozen=True, slots=True)
class IsolationRunResult(Generic[T]):
    success: bool
    result: T | None = None
    error: str | None = None
    context: IsolationContext | None = None
    merge: MergeOutcome | None = None


class IsolationManager:
    """Create, merge, and discard git-worktree isolation contexts."""

    def __init__(
        self,
        repo_root: str | Path,
        isolation_root: str | Path | None = None,
        *,
        branch_prefix: str = ISOLATION_BRANCH_PREFIX,
        now_fn: Callable[[], datetime] | None = None,
        env_overrides: Mapping[str, str] | None = None,
    ) -> None:
        self._git = GitEngine(repo_root, env_overrides=env_overrides)
        if isolation_root is None:
            isolation_root = Path(tempfile.gettempdir()) / ISOLATION_DIR_NAME
        self._isolation_root = Path(isolation_root).expanduser().resolve(strict=False)
        self._branch_prefix = branch_prefix
        self._now_fn: Callable[[], datetime] = now_fn if now_fn is not None else _utc_now
        self._lock = threading.RLock()

    @classmethod
    def from_config(
        cls, repo_root: str | Path, isolation: Mapping[str, Any] | None = None
    ) -> IsolationManager:
        """Build from the ``[isolation]`` config section."""
        section = isolation or {}
        return cls(
            repo_root,
            section.get("root"),
            branch_prefix=str(section.get("branch_prefix", ISOLATION_BRANCH_PREFIX)),
        )

    @property
    def isolation_root(self) -> Path:
        return self._isolation_root

    @property
    def branch_prefix(self) -> str:
        return self._branch_prefix

    def create(self, task_id: str, base_branch: str | None = None) -> IsolationContext:
        """Create a fresh worktree on a new branch for ``task_id``."""
        if not task_id or not task_id.strip():
            raise ValueError("task_id must not be empty")

        with self._lock:
            repo_root = self._git.toplevel()
            base = base_branch or self._git.current_branch() or "main"
            created_at = _ensure_aware_utc(self._now_fn())
            epoch_ms = int(created_at.timestamp() * 1000)

            branch_name = self.branch_name_for(task_id, epoch_ms)
            while self._git.branch_exists(branch_name):
                epoch_ms += 1
                branch_name = self.branch_name_for(task_id, epoch_ms)

            self._isolation_root.mkdir(parents=True, exist_ok=True)
            isolation_path = self._isolation_root / branch_name
            if isolation_path.exists() or isolation_path.is_symlink():
                logger.warning("isolation_stale_path_removed", path=isolation_path.as_posix())
                self._git.remove_worktree(isolation_path)
                if isolation_path.exists() or isolation_path.is_symlink():
                    safe_delete(isolation_path, self._isolation_root)
                self._git.prune_worktrees()

            try:
                self._git.add_worktree(isolation_path, branch_name, base)
            except GitCommandError as exc:
                raise VCSError(f"Failed to create isolation context: {exc}") from exc

            context = IsolationContext(
                task_id=task_id,
                isolation_path=isolation_path.resolve(strict=False),
                branch_name=branch_name,
                base_branch=base,
                repo_root=repo_root,
                created_at=created_at,
            )
            try:
                self._write_metadata(context)
            except OSError:
                self._discard_internal(context, delete_branch=True)
                raise

        logger.info(
            "isolation_created",
            task_id=task_id,
            branch=branch_name,
            base=base,
            path=context.isolation_path.as_posix(),
        )
        return context

    def branch_name_for(self, task_id: str, epoch_ms: int) -> str:
        sanitized = _UNSAFE_BRANCH_CHARS.sub("-", task_id).lower()
        return f"{self._branch_prefix}{sanitized}-{epoch_ms}"

    def has_changes(self, context: IsolationContext) -> bool:
        return bool(self._git.changed_paths(context.isolation_path, ignore=(ISOLATION_METADATA_FILE,)))

    def commit_and_merge(
        self,
        context: IsolationContext,
        message: str,
        *,
        squash: bool = True,
        push: bool = False,
        cleanup: bool = True,
    ) -> MergeOutcome:
        """Commit inside the context and merge it into its base branch."""
        with self._lock:
            if not self.has_changes(context):
                if cleanup:
                    self._discard_internal(context, delete_branch=True)
                logger.info("isolation_merge_skipped", task_id=context.task_id, reason="no-changes")
                return MergeOutcome(merged=False, reason="no-changes")

            self._git.commit_all(
                context.isolation_path, message, ignore=(ISOLATION_METADATA_FILE,)
            )
            original_branch = self._git.current_branch()

            try:
                self._git.checkout(context.base_branch)
            except VCSError as exc:
                raise MergeError(
                    f"Merge failed: cannot switch to {context.base_branch}: {exc}",
                    branch_name=context.branch_name,
                    base_branch=context.base_branch,
                ) from exc

            try:
                commit_sha = self._git.merge(context.branch_name, message, squash=squash)
            except VCSError as exc:
                self._git.abort_merge()
                if original_branch is not None and original_branch != context.base_branch:
                    try:
                        self._git.checkout(original_branch)
                    except GitCommandError as restore_exc:
                        logger.error(
                            "isolation_restore_failed",
                            branch=original_branch,
                            error=str(restore_exc),
                        )
                logger.error(
                    "isolation_merge_failed",
                    task_id=context.task_id,
                    branch=context.branch_name,
                    base=context.base_branch,
                    error=str(exc),
                )
                raise MergeError(
                    f"Merge failed: {exc}",
                    branch_name=context.branch_name,
                    base_branch=context.base_branch,
                ) from exc

            if push:
                self._git.push(context.base_branch)

            if cleanup:
                self._discard_internal(context, delete_branch=True)

        logger.info(
            "isolation_merged",
            task_id=context.task_id,
            branch=context.branch_name,
            base=context.base_branch,
            squash=squash,
            commit=commit_sha,
        )
        return MergeOutcome(
            merged=True, commit_message=message, commit_sha=commit_sha, pushed=push
        )

    def discard(self, context: IsolationContext, *, delete_branch: bool = True) -> DiscardOutcome:
        """Remove the worktree (and by default its branch). Safe to repeat."""
        with self._lock:
            outcome = self._discard_internal(context, delete_branch=delete_branch)
        logger.info(
            "isolation_discarded",
            task_id=context.task_id,
            branch=context.branch_name,
            path_removed=outcome.path_removed,
            branch_deleted=outcome.branch_deleted,
        )
        return outcome

    def list_contexts(self) -> tuple[IsolationContext, ...]:
        """Every live worktree whose branch carries the isolation prefix."""
        with self._lock:
            repo_root = self._git.toplevel()
            records = self._git.worktree_records()

        contexts: list[IsolationContext] = []
        for record in records:
            branch = record.branch_name
            if branch is None or not branch.startswith(self._branch_prefix):
                continue
            metadata = _read_metadata(record.path)
            if metadata is not None:
                contexts.append(metadata)
                continue
            contexts.append(
                IsolationContext(
                    task_id=branch.removeprefix(self._branch_prefix),
                    isolation_path=record.path,
                    branch_name=branch,
                    base_branch="",
                    repo_root=repo_root,
                    created_at=None,
                )
            )
        return tuple(contexts)

    def sweep_stale(self, max_age_hours: float = 24, *, dry_run: bool = False) -> tuple[str, ...]:
        """Discard contexts older than ``max_age_hours`` or missing metadata."""
        if max_age_hours < 0:
            raise ValueError("max_age_hours must be >= 0")

        cutoff = _ensure_aware_utc(self._now_fn()) - timedelta(hours=max_age_hours)
        removed: list[str] = []
        for context in self.list_contexts():
            if context.created_at is not None and context.created_at > cutoff:
                continue
            if not dry_run:
                try:
                    self.discard(context)
                except (VCSError, OSError, ValueError) as exc:
                    logger.warning(
                        "isolation_sweep_failed", branch=context.branch_name, error=str(exc)
                    )
                    continue
            removed.append(context.branch_name)

        logger.info("isolation_swept", removed=removed, dry_run=dry_run)
        return tuple(removed)

    def run_in_isolation(
        self,
        task_id: str,
        fn: Callable[[Path, IsolationContext], T],
        *,
        base_branch: str | None = None,
        commit_message: str | None = None,
        keep_on_failure: bool = False,
        squash: bool = True,
    ) -> IsolationRunResult[T]:
        """Run ``fn`` inside a fresh context; merge on success when a message is given."""
        context = self.create(task_id, base_branch)
        try:
            value = fn(context.isolation_path, context)
            merge: MergeOutcome | None = None
            if commit_message:
                merge = self.commit_and_merge(context, commit_message, squash=squash)
            else:
                self.discard(context)
        except Exception as exc:
            logger.warning("isolation_run_failed", task_id=task_id, error=str(exc))
            if not keep_on_failure:
                self.discard(context)
            return IsolationRunResult(
                success=False,
                error=str(exc),
                context=context if keep_on_failure else None,
            )
        return IsolationRunResult(success=True, result=value, context=context, merge=merge)

    def _discard_internal(self, context: IsolationContext, *, delete_branch: bool) -> DiscardOutcome:
        path = context.isolation_path
        existed = path.exists() or path.is_symlink()

        self._git.remove_worktree(path)
        if path.exists() or path.is_symlink():
            if entry_within(path, self._isolation_root):
                safe_delete(path, self._isolation_root)
            else:
                logger.warning("isolation_path_outside_root", path=path.as_posix())
        self._git.prune_worktrees()

        branch_deleted = False
        if delete_branch and context.branch_name:
            branch_deleted = self._git.delete_branch(context.branch_name)

        path_removed = existed and not (path.exists() or path.is_symlink())
        return DiscardOutcome(discarded=True, path_removed=path_removed, branch_deleted=branch_deleted)

    def _write_metadata(self, context: IsolationContext) -> None:
        metadata_path = context.isolation_path / ISOLATION_METADATA_FILE
        metadata_path.write_text(
            json.dumps(context.to_dict(), sort_keys=True, indent=2) + "\n",
            encoding="utf-8",
        )


def _read_metadata(path: Path) -> IsolationContext | None:
    metadata_path = path / ISOLATION_METADATA_FILE
    if not metadata_path.is_file() or metadata_path.is_symlink():
        return None
    try:
        payload = json.loads(metadata_path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None
    if not isinstance(payload, dict):
        return None

    created_raw = payload.get("created_at")
    created_at: datetime | None = None
    if isinstance(created_raw, str):
        try:
            created_at = _ensure_aware_utc(datetime.fromisoformat(created_raw))
        except ValueError:
            created_at = None

    fields = ("task_id", "branch_name", "base_branch", "repo_root")
    if not all(isinstance(payload.get(name), str) for name in fields):
        return None
    return IsolationContext(
        task_id=payload["task_id"],
        isolation_path=path,
        branch_name=payload["branch_name"],
        base_branch=payload["base_branch"],
        repo_root=Path(payload["repo_root"]),
        created_at=created_at,
    )


def _ensure_aware_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


__all__ = [
    "DiscardOutcome",
    "GitCommandError",
    "IsolationContext",
    "IsolationManager",
    "IsolationRunResult",
    "MergeError",
    "MergeOutcome",
    "NotARepositoryError",
    "VCSError",
]
