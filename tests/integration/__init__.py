"""
taskwave — integration test package

File: tests/integration/__init__.py
Last updated: 2026-10-18

Purpose
- Test package marker file.

Functional requirements
- Must not import heavy modules at import time; keep test collection fast.
- Must not trigger network access. Git is used only against temporary repositories.
"""
