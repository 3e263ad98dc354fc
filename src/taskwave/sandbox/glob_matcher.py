"""Path glob matching used by the safety guard's allow/deny lists."""

from __future__ import annotations

import re
from functools import lru_cache
from typing import Protocol, runtime_checkable


@runtime_checkable
class GlobMatcher(Protocol):
    """Anything that can decide whether a relative POSIX path matches a pattern."""

    def matches(self, path: str, pattern: str) -> bool: ...


class RegexGlobMatcher:
    """Translate globs to anchored regular expressions.

    ``**`` crosses directory separators, ``*`` stays within one segment and
    ``?`` matches exactly one character. A leading ``**/`` also matches zero
    directories, so ``**/.env`` matches ``.env`` at the root.
    """

    __slots__ = ()

    def matches(self, path: str, pattern: str) -> bool:
        return _compile(pattern).fullmatch(_normalize(path)) is not None


DEFAULT_MATCHER: GlobMatcher = RegexGlobMatcher()


def matches(path: str, pattern: str) -> bool:
    """Module-level convenience over :data:`DEFAULT_MATCHER`."""
    return DEFAULT_MATCHER.matches(path, pattern)


def translate(pattern: str) -> str:
    """Return the regular expression source for ``pattern``."""
    out: list[str] = []
    index = 0
    length = len(pattern)
    while index < length:
        char = pattern[index]
        if char == "*":
            if index + 1 < length and pattern[index + 1] == "*":
                index += 2
                if index < length and pattern[index] == "/":
                    # "**/" may also match nothing at all.
                    out.append("(?:.*/)?")
                    index += 1
                else:
                    out.append(".*")
                continue
            out.append("[^/]*")
        elif char == "?":
            out.append("[^/]")
        else:
            out.append(re.escape(char))
        index += 1
    return "".join(out)


@lru_cache(maxsize=1024)
def _compile(pattern: str) -> re.Pattern[str]:
    return re.compile(translate(_normalize(pattern)))


def _normalize(path: str) -> str:
    normalized = path.replace("\\", "/")
    while normalized.startswith("./"):
        normalized = normalized[2:]
    return normalized


__all__ = ["DEFAULT_MATCHER", "GlobMatcher", "RegexGlobMatcher", "matches", "translate"]
