"""Glob-based exclusion matching.

Patterns use shell glob syntax where ``*`` and ``?`` never cross a ``/``
and ``**`` spans any number of path segments. A path is tested in several
forms (full path, basename, host-relative path, staging-relative path) so
the same pattern excludes a file both at its source and at its staging
destination.
"""

from __future__ import annotations

import os
import re
import threading
from contextlib import contextmanager
from functools import lru_cache
from typing import Iterable, Iterator

DEFAULT_EXCLUDE_PATTERNS = (
    "**/node_modules/**",
    "**/.vscode/**",
    "**/.cursor*",
    "**/.cursor-server*",
)


def validate_pattern(pattern: str) -> None:
    """Raise ValueError if ``pattern`` is not a usable glob."""
    if not pattern or not pattern.strip():
        raise ValueError("empty pattern")
    i = 0
    while i < len(pattern):
        ch = pattern[i]
        if ch == "\\":
            if i + 1 >= len(pattern):
                raise ValueError(f"trailing escape in {pattern!r}")
            i += 2
            continue
        if ch == "[":
            j = i + 1
            if j < len(pattern) and pattern[j] in "!^":
                j += 1
            if j < len(pattern) and pattern[j] == "]":
                raise ValueError(f"empty character class in {pattern!r}")
            while j < len(pattern) and pattern[j] != "]":
                j += 1
            if j >= len(pattern):
                raise ValueError(f"unterminated character class in {pattern!r}")
            i = j
        i += 1


def glob_to_regex(pattern: str) -> str:
    """Translate a glob into an anchored regular expression string."""
    out = ["^"]
    i = 0
    n = len(pattern)
    while i < n:
        ch = pattern[i]
        if ch == "*":
            if i + 1 < n and pattern[i + 1] == "*":
                out.append(".*")
                i += 1
            else:
                out.append("[^/]*")
        elif ch == "?":
            out.append("[^/]")
        elif ch == "[":
            j = i + 1
            body = []
            if j < n and pattern[j] in "!^":
                body.append("^")
                j += 1
            while j < n and pattern[j] != "]":
                body.append("\\\\" if pattern[j] == "\\" else pattern[j])
                j += 1
            if j >= n:
                out.append("\\[")
            else:
                out.append("[" + "".join(body) + "]")
                i = j
        elif ch == "\\" and i + 1 < n:
            out.append(re.escape(pattern[i + 1]))
            i += 1
        else:
            out.append(re.escape(ch))
        i += 1
    out.append("$")
    return "".join(out)


@lru_cache(maxsize=512)
def _compile(pattern: str) -> re.Pattern[str] | None:
    try:
        validate_pattern(pattern)
        return re.compile(glob_to_regex(pattern.replace(os.sep, "/")))
    except (ValueError, re.error):
        return None


def matches_glob(pattern: str, candidate: str) -> bool:
    compiled = _compile(pattern)
    if compiled is None:
        return False
    return compiled.match(candidate.replace(os.sep, "/")) is not None


def _relative_to(path: str, root: str) -> str | None:
    root = root.rstrip("/") or "/"
    if root == "/":
        return path.lstrip("/") or None
    if path == root:
        return None
    if path.startswith(root + "/"):
        return path[len(root) + 1:]
    return None


def candidate_forms(
    path: str,
    staging_root: str = "",
    system_root_prefix: str = "",
) -> list[str]:
    """Return the unique forms of ``path`` a pattern is tested against."""
    path = os.path.normpath(str(path)) if path else ""
    candidates = [path]

    base = os.path.basename(path)
    if base not in ("", ".", "/"):
        candidates.append(base)

    host_path = path
    if system_root_prefix and system_root_prefix != "/":
        stripped = _relative_to(path, os.path.normpath(system_root_prefix))
        if stripped is not None:
            host_path = "/" + stripped
    host_rel = _relative_to(host_path, "/")
    if host_rel:
        candidates.append(host_rel)
        candidates.append("/" + host_rel)

    if staging_root:
        staged_rel = _relative_to(path, os.path.normpath(str(staging_root)))
        if staged_rel and staged_rel != "..":
            candidates.append(staged_rel)
            candidates.append("/" + staged_rel)

    seen: set[str] = set()
    unique = []
    for cand in candidates:
        if not cand or cand in (".", "..") or cand in seen:
            continue
        seen.add(cand)
        unique.append(cand)
    return unique


def match(
    path: str,
    patterns: Iterable[str],
    staging_root: str = "",
    system_root_prefix: str = "",
) -> tuple[bool, str]:
    """Decide whether ``path`` is excluded.

    Returns:
        (excluded, matching_pattern); the first pattern in list order wins.
    """
    patterns = list(patterns)
    if not patterns:
        return False, ""
    candidates = candidate_forms(path, staging_root, system_root_prefix)
    for pattern in patterns:
        for candidate in candidates:
            if matches_glob(pattern, candidate):
                return True, pattern
    return False, ""


class ExclusionSet:
    """Exclude patterns for one engine run.

    The list is only changed through ``scoped``, which restores the previous
    patterns when the block exits, including on exceptions.
    """

    def __init__(
        self,
        patterns: Iterable[str] = (),
        staging_root: str = "",
        system_root_prefix: str = "",
    ):
        self._patterns: list[str] = list(patterns)
        self._scoped_tags: dict[str, str] = {}
        self.staging_root = str(staging_root)
        self.system_root_prefix = system_root_prefix
        self._lock = threading.Lock()

    @property
    def patterns(self) -> list[str]:
        with self._lock:
            return list(self._patterns)

    @contextmanager
    def scoped(self, extra: Iterable[str], tag: str = "") -> Iterator[None]:
        """Temporarily add patterns; ``tag`` is reported by ``tag_for``."""
        extra = [p for p in extra if p]
        with self._lock:
            saved_patterns = list(self._patterns)
            saved_tags = dict(self._scoped_tags)
            for pattern in extra:
                self._patterns.append(pattern)
                if tag:
                    self._scoped_tags[pattern] = tag
        try:
            yield
        finally:
            with self._lock:
                self._patterns = saved_patterns
                self._scoped_tags = saved_tags

    def tag_for(self, pattern: str) -> str:
        with self._lock:
            return self._scoped_tags.get(pattern, "")

    def match(self, path: str) -> tuple[bool, str]:
        return match(
            path,
            self.patterns,
            staging_root=self.staging_root,
            system_root_prefix=self.system_root_prefix,
        )
