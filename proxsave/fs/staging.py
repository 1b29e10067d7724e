"""Scoped staging directory.

Usage:
    with StagingDirectory("pve01") as staging:
        collect_into(staging.path)
        if keep_for_inspection:
            staging.retain()
"""

from __future__ import annotations

import re
import shutil
import tempfile
from datetime import datetime, timezone
from pathlib import Path

from proxsave.logging import get_logger

log = get_logger(source=__name__, tags=["fs", "staging"])


def _safe_component(value: str) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "_", value).strip("._")
    return cleaned or "host"


class StagingDirectory:
    """Exclusively owned temporary directory, deleted on exit unless retained."""

    def __init__(
        self,
        hostname: str,
        base_dir: str | Path | None = None,
        now: datetime | None = None,
    ):
        self.hostname = hostname
        self.base_dir = Path(base_dir) if base_dir else None
        self.created_at = now or datetime.now(timezone.utc)
        self.path: Path | None = None
        self._retained = False

    @property
    def prefix(self) -> str:
        stamp = self.created_at.strftime("%Y%m%dT%H%M%SZ")
        return f"proxsave-{_safe_component(self.hostname)}-{stamp}-"

    def acquire(self) -> Path:
        if self.base_dir is not None:
            self.base_dir.mkdir(parents=True, exist_ok=True)
        self.path = Path(tempfile.mkdtemp(prefix=self.prefix, dir=self.base_dir))
        log.debug(f"Created staging directory {self.path}")
        return self.path

    def retain(self) -> None:
        """Keep the directory on release."""
        self._retained = True

    @property
    def retained(self) -> bool:
        return self._retained

    def release(self) -> None:
        if self.path is None:
            return
        if self._retained:
            log.info(f"Keeping staging directory {self.path}")
            return
        shutil.rmtree(self.path, ignore_errors=True)
        log.debug(f"Removed staging directory {self.path}")
        self.path = None

    def __enter__(self) -> StagingDirectory:
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
