"""Persistence layer: task queue file access."""

from taskwave.persistence.task_queue import TaskQueue, TaskQueueError

__all__ = ["TaskQueue", "TaskQueueError"]
