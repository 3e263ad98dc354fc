"""
taskwave — verification plane.

File: src/taskwave/verification_plane/__init__.py
Last updated: 2026-10-18

Purpose
- Phase verification commands, their persisted records and the structured loop.
"""

from taskwave.verification_plane.artifacts import ArtifactError, VerificationArtifactStore
from taskwave.verification_plane.runner import (
    CommandExecutor,
    CommandOutcome,
    ExecutionResult,
    ShellCommandExecutor,
    VerificationCommand,
    VerificationFailure,
    VerificationPhase,
    VerificationRecord,
    VerificationRunner,
    VerificationSettings,
    format_record,
)
from taskwave.verification_plane.structured_loop import StructuredLoopResult, run_structured_loop

__all__ = [
    "ArtifactError",
    "CommandExecutor",
    "CommandOutcome",
    "ExecutionResult",
    "ShellCommandExecutor",
    "StructuredLoopResult",
    "VerificationArtifactStore",
    "VerificationCommand",
    "VerificationFailure",
    "VerificationPhase",
    "VerificationRecord",
    "VerificationRunner",
    "VerificationSettings",
    "format_record",
    "run_structured_loop",
]
