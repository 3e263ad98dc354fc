"""
taskwave — domain layer.

File: src/taskwave/domain/__init__.py
Last updated: 2026-10-18

Purpose
- Domain types shared across planes: Task and its lifecycle status.

Non-functional requirements
- Domain layer stays free of IO side effects.
"""

from taskwave.domain.models import Task, TaskStatus

__all__ = ["Task", "TaskStatus"]
