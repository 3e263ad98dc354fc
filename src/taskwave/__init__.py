"""
taskwave — task orchestration and isolation core.

File: src/taskwave/__init__.py
Last updated: 2026-10-18

Purpose
- Package root. Defines package-level metadata and import boundaries.

What should be included in this file
- Version export only. Subpackages are imported explicitly by callers.

Functional requirements
- Must not have side effects at import time (no config loading, no logging init).
"""

__version__ = "0.3.0"

__all__ = ["__version__"]
