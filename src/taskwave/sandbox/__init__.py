"""
taskwave — sandbox plane.

File: src/taskwave/sandbox/__init__.py
Last updated: 2026-10-18

Purpose
- Cooperative side-effect policy: glob matching and the per-task safety guard.
"""

from taskwave.sandbox.glob_matcher import GlobMatcher, RegexGlobMatcher, matches
from taskwave.sandbox.safety_guard import (
    FileOperation,
    PermissionRules,
    SafetyGuard,
    SafetyLimits,
    SafetyPolicy,
    SafetyStatus,
    SafetyViolation,
    ViolationCategory,
    ViolationPolicy,
)

__all__ = [
    "FileOperation",
    "GlobMatcher",
    "PermissionRules",
    "RegexGlobMatcher",
    "SafetyGuard",
    "SafetyLimits",
    "SafetyPolicy",
    "SafetyStatus",
    "SafetyViolation",
    "ViolationCategory",
    "ViolationPolicy",
    "matches",
]
