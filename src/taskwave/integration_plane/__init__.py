"""
taskwave — integration plane.

File: src/taskwave/integration_plane/__init__.py
Last updated: 2026-10-18

Purpose
- Git primitives and per-task isolation contexts with merge-back.
"""

from taskwave.integration_plane.git_engine import (
    CommandResult,
    GitCommandError,
    GitEngine,
    MergeError,
    NotARepositoryError,
    VCSError,
)
from taskwave.integration_plane.isolation_manager import (
    DiscardOutcome,
    IsolationContext,
    IsolationManager,
    IsolationRunResult,
    MergeOutcome,
)

__all__ = [
    "CommandResult",
    "DiscardOutcome",
    "GitCommandError",
    "GitEngine",
    "IsolationContext",
    "IsolationManager",
    "IsolationRunResult",
    "MergeError",
    "MergeOutcome",
    "NotARepositoryError",
    "VCSError",
]
