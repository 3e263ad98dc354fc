"""Stable constants shared across orchestrator planes."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

# Isolation naming.
ISOLATION_BRANCH_PREFIX: Final[str] = "taskwave-task-"
ISOLATION_DIR_NAME: Final[str] = "taskwave-worktrees"
ISOLATION_METADATA_FILE: Final[str] = ".taskwave-isolation.json"

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
VERIFICATION_RECORD_SCHEMA_VERSION: Final[int] = 1
LOOP_SESSION_SCHEMA_VERSION: Final[int] = 1

# Default runtime paths (relative to the project root unless overridden by config).
WORKFLOW_DIR: Final[PurePosixPath] = PurePosixPath(".workflow")
TASK_QUEUE_PATH: Final[PurePosixPath] = WORKFLOW_DIR / "state" / "ready.json"
STATE_DIR: Final[PurePosixPath] = WORKFLOW_DIR / "state"
VERIFICATIONS_DIR: Final[PurePosixPath] = WORKFLOW_DIR / "verifications"

# Loop bookkeeping.
LOOP_HISTORY_LIMIT: Final[int] = 50

# Verification phases in structured-loop order.
VERIFICATION_PHASES: Final[tuple[str, ...]] = ("spec", "test", "implementation", "final")

__all__ = [
    "CONFIG_SCHEMA_VERSION",
    "ISOLATION_BRANCH_PREFIX",
    "ISOLATION_DIR_NAME",
    "ISOLATION_METADATA_FILE",
    "LOOP_HISTORY_LIMIT",
    "LOOP_SESSION_SCHEMA_VERSION",
    "STATE_DIR",
    "TASK_QUEUE_PATH",
    "VERIFICATIONS_DIR",
    "VERIFICATION_PHASES",
    "VERIFICATION_RECORD_SCHEMA_VERSION",
    "WORKFLOW_DIR",
]
