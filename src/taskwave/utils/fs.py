"""
taskwave — filesystem utilities

File: src/taskwave/utils/fs.py
Last updated: 2026-10-18

Purpose
- Provide small filesystem helpers for atomic artifact writes, append-only logs,
  and guarded deletion of isolation directories.

Functional requirements
- Atomic writes use temp files in the destination directory and replace in a single step.
- Appends never rewrite existing content.
- Deletion refuses paths outside the configured root.

Non-functional requirements
- Standard library only and cross-platform behavior where feasible.
"""

from __future__ import annotations

import contextlib
import json
import os
import shutil
import tempfile
from pathlib import Path
from typing import Any

PathLike = str | os.PathLike[str]

__all__ = [
    "append_text",
    "atomic_write",
    "atomic_write_json",
    "entry_within",
    "is_within",
    "read_json",
    "safe_delete",
]


def atomic_write(path: PathLike, data: bytes | str, *, encoding: str = "utf-8") -> None:
    """
    Atomically write ``data`` to ``path``, creating parent directories.

    The write strategy is:
    1. create temp file in the same directory,
    2. write + flush + fsync file data,
    3. replace target via ``os.replace``.
    """

    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target_parent = target.parent.resolve(strict=True)

    fd, temp_name = tempfile.mkstemp(
        prefix=f".{target.name}.",
        suffix=".tmp",
        dir=str(target_parent),
    )
    temp_path = Path(temp_name)

    try:
        mode = "wb" if isinstance(data, bytes) else "w"
        kwargs: dict[str, Any] = {} if isinstance(data, bytes) else {"encoding": encoding}
        with os.fdopen(fd, mode, **kwargs) as file_handle:
            file_handle.write(data)
            file_handle.flush()
            os.fsync(file_handle.fileno())

        os.replace(temp_path, target)
        _fsync_directory(target_parent)
    except Exception:
        with contextlib.suppress(OSError):
            temp_path.unlink(missing_ok=True)
        raise


def atomic_write_json(path: PathLike, payload: object, *, sort_keys: bool = True) -> None:
    """Write ``payload`` as indented JSON through :func:`atomic_write`."""

    text = json.dumps(payload, indent=2, sort_keys=sort_keys, ensure_ascii=False) + "\n"
    atomic_write(path, text)


def read_json(path: PathLike) -> Any | None:
    """Return parsed JSON from ``path`` or ``None`` when the file is missing."""

    target = Path(path)
    if not target.exists():
        return None
    return json.loads(target.read_text(encoding="utf-8"))


def append_text(path: PathLike, text: str, *, header: str = "", encoding: str = "utf-8") -> None:
    """Append ``text`` to ``path``; ``header`` is written first when the file is new."""

    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    is_new = not target.exists() or target.stat().st_size == 0
    with target.open("a", encoding=encoding) as handle:
        if is_new and header:
            handle.write(header)
        handle.write(text)
        handle.flush()
        os.fsync(handle.fileno())


def is_within(child: PathLike, parent: PathLike) -> bool:
    """Return ``True`` if resolved ``child`` is within resolved ``parent``."""

    resolved_parent = Path(parent).resolve(strict=False)
    resolved_child = Path(child).resolve(strict=False)
    return _is_relative_to(resolved_child, resolved_parent)


def entry_within(path: PathLike, root: PathLike) -> bool:
    """
    Return ``True`` if the directory entry ``path`` sits inside ``root``.

    Only the parent directory is resolved, so a symlink is judged by where the
    link lives, not by where it points.
    """

    target = Path(path)
    candidate = target.parent.resolve(strict=False) / target.name
    return _is_relative_to(candidate, Path(root).resolve(strict=False))


def safe_delete(path: PathLike, root: PathLike) -> None:
    """
    Delete ``path`` only if it is contained within ``root``.

    Symlinks are unlinked without traversing into their targets. Missing paths
    are ignored so callers can use this from idempotent cleanup code.
    """

    target = Path(path)
    if not target.exists() and not target.is_symlink():
        return

    if not entry_within(target, root):
        raise ValueError(f"refusing to delete path outside root: {target!s}")

    if target.is_symlink():
        target.unlink()
        return

    if not is_within(target, root):
        raise ValueError(f"refusing to delete path outside root: {target!s}")

    if target.is_dir():
        shutil.rmtree(target)
        return

    target.unlink()


def _fsync_directory(path: Path) -> None:
    """
    Best-effort directory fsync for metadata durability after ``os.replace``.

    Some platforms/filesystems do not support fsync on directories.
    """

    if os.name == "nt":
        return

    flags = os.O_RDONLY
    if hasattr(os, "O_DIRECTORY"):
        flags |= os.O_DIRECTORY

    try:
        dir_fd = os.open(path, flags)
    except OSError:
        return

    try:
        os.fsync(dir_fd)
    except OSError:
        return
    finally:
        os.close(dir_fd)


def _is_relative_to(path: Path, parent: Path) -> bool:
    try:
        path.relative_to(parent)
    except ValueError:
        return False
    return True
