"""
taskwave — control plane.

File: src/taskwave/control_plane/__init__.py
Last updated: 2026-10-18

Purpose
- Loop enforcement over acceptance criteria and the wave-by-wave orchestration driver.
"""

from taskwave.control_plane.criterion_verifier import (
    CriterionCheck,
    CriterionRule,
    CriterionVerifier,
    HeuristicCriterionVerifier,
    VerificationContext,
)
from taskwave.control_plane.driver import (
    DriverReport,
    DriverSettings,
    IterationReport,
    OrchestrationDriver,
    OutcomeStatus,
    TaskExecutor,
    TaskOutcome,
    TaskWork,
)
from taskwave.control_plane.loop_enforcer import (
    AcceptanceCriterion,
    CriterionStatus,
    ExitDecision,
    ExitReason,
    LoopEnforcer,
    LoopEnforcerError,
    LoopExhaustedError,
    LoopPolicy,
    LoopSession,
    LoopStateError,
    LoopStats,
    LoopStatus,
    SkipDecision,
)
from taskwave.control_plane.session_store import (
    InMemorySessionStore,
    JsonFileSessionStore,
    SessionStore,
    SessionStoreError,
)

__all__ = [
    "AcceptanceCriterion",
    "CriterionCheck",
    "CriterionRule",
    "CriterionStatus",
    "CriterionVerifier",
    "DriverReport",
    "DriverSettings",
    "ExitDecision",
    "ExitReason",
    "HeuristicCriterionVerifier",
    "InMemorySessionStore",
    "IterationReport",
    "JsonFileSessionStore",
    "LoopEnforcer",
    "LoopEnforcerError",
    "LoopExhaustedError",
    "LoopPolicy",
    "LoopSession",
    "LoopStateError",
    "LoopStats",
    "LoopStatus",
    "OrchestrationDriver",
    "OutcomeStatus",
    "SessionStore",
    "SessionStoreError",
    "SkipDecision",
    "TaskExecutor",
    "TaskOutcome",
    "TaskWork",
    "VerificationContext",
]
