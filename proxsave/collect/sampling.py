"""Bounded directory and file sampling for datastore metadata reports."""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional

from proxsave.context import RunContext
from proxsave.fs.exclusion import matches_glob


@dataclass(frozen=True)
class FileSummary:
    path: str
    name: str
    size_bytes: int
    mod_time: str

    def to_dict(self) -> dict:
        return asdict(self)


def relative_depth(root: Path, path: Path) -> int:
    try:
        rel = path.relative_to(root)
    except ValueError:
        return 0
    return 0 if str(rel) == "." else len(rel.parts)


def matches_any(patterns: Iterable[str], name: str, relative: str) -> bool:
    for pattern in patterns:
        if matches_glob(pattern, name) or matches_glob(pattern, relative):
            return True
    return False


def sample_directories(
    ctx: RunContext, root: Path | str, max_depth: int, limit: int
) -> list[str]:
    """Relative directory paths under ``root`` up to ``max_depth`` levels deep."""
    root = Path(root)
    results: list[str] = []
    if limit <= 0:
        return results
    for dirpath, dirnames, _filenames in os.walk(root):
        ctx.check()
        current = Path(dirpath)
        depth = relative_depth(root, current)
        dirnames.sort()
        if depth >= max_depth:
            dirnames[:] = []
        for name in dirnames:
            results.append((current / name).relative_to(root).as_posix())
            if len(results) >= limit:
                return results
    return results


def sample_files(
    ctx: RunContext,
    root: Path | str,
    include: Iterable[str],
    exclude: Iterable[str] = (),
    max_depth: int = 3,
    limit: int = 100,
    skip_dirs: Optional[Iterable[str]] = None,
) -> list[FileSummary]:
    """Files under ``root`` whose name or relative path matches ``include``."""
    root = Path(root)
    include = list(include)
    exclude = list(exclude)
    skip = set(skip_dirs or ())
    results: list[FileSummary] = []
    if limit <= 0:
        return results

    for dirpath, dirnames, filenames in os.walk(root):
        ctx.check()
        current = Path(dirpath)
        depth = relative_depth(root, current)
        dirnames[:] = sorted(d for d in dirnames if d not in skip)
        if depth >= max_depth:
            dirnames[:] = []
        for name in sorted(filenames):
            path = current / name
            relative = path.relative_to(root).as_posix()
            if include and not matches_any(include, name, relative):
                continue
            if exclude and matches_any(exclude, name, relative):
                continue
            try:
                st = path.lstat()
            except OSError:
                continue
            results.append(
                FileSummary(
                    path=relative,
                    name=name,
                    size_bytes=st.st_size,
                    mod_time=datetime.fromtimestamp(st.st_mtime, timezone.utc).isoformat(),
                )
            )
            if len(results) >= limit:
                return results
    return results
