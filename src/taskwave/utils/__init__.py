"""Utility exports for filesystem helpers."""

from taskwave.utils.fs import (
    append_text,
    atomic_write,
    atomic_write_json,
    entry_within,
    is_within,
    read_json,
    safe_delete,
)

__all__ = [
    "append_text",
    "atomic_write",
    "atomic_write_json",
    "entry_within",
    "is_within",
    "read_json",
    "safe_delete",
]
