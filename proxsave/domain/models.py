"""Domain objects shared by the collectors, the manifest and the archiver."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


# ==============================================================================
# Host Type
# ==============================================================================


class ProxmoxType(str, Enum):
    PVE = "pve"
    PBS = "pbs"
    UNKNOWN = "unknown"


# ==============================================================================
# Manifest Entries
# ==============================================================================


class ManifestStatus(str, Enum):
    """Outcome of one file considered by a collector.

    COLLECTED: written to the staging tree
    NOT_FOUND: source does not exist on this host
    FAILED: I/O or process error
    SKIPPED: exclusion pattern or unprivileged-container downgrade
    DISABLED: turned off by a feature flag (not part of the file counters)
    """

    COLLECTED = "collected"
    NOT_FOUND = "not_found"
    FAILED = "failed"
    SKIPPED = "skipped"
    DISABLED = "disabled"


class ManifestSection(str, Enum):
    PBS = "pbs_configs"
    PVE = "pve_configs"
    SYSTEM = "system_files"


@dataclass(frozen=True)
class ManifestEntry:
    status: ManifestStatus
    size: int = 0
    error: str | None = None

    @classmethod
    def collected(cls, size: int) -> ManifestEntry:
        return cls(ManifestStatus.COLLECTED, size=size)

    @classmethod
    def not_found(cls, error: str | None = None) -> ManifestEntry:
        return cls(ManifestStatus.NOT_FOUND, error=error)

    @classmethod
    def failed(cls, error: str) -> ManifestEntry:
        return cls(ManifestStatus.FAILED, error=error)

    @classmethod
    def skipped(cls, reason: str | None = None) -> ManifestEntry:
        return cls(ManifestStatus.SKIPPED, error=reason)

    @classmethod
    def disabled(cls, reason: str | None = None) -> ManifestEntry:
        return cls(ManifestStatus.DISABLED, error=reason)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"status": self.status.value}
        if self.status is ManifestStatus.COLLECTED:
            data["size"] = self.size
        if self.error:
            data["error"] = self.error
        return data


# ==============================================================================
# Collection Statistics
# ==============================================================================


@dataclass
class CollectionStats:
    """Counters shared by every collector of a run.

    All mutations go through the lock so concurrent datastore scans can
    record files safely.
    """

    files_processed: int = 0
    files_failed: int = 0
    files_not_found: int = 0
    files_skipped: int = 0
    dirs_created: int = 0
    bytes_collected: int = 0
    _lock: threading.Lock = field(
        default_factory=threading.Lock, repr=False, compare=False
    )

    def apply(self, entry: ManifestEntry, sign: int = 1) -> None:
        """Count (or, with sign=-1, uncount) one manifest entry."""
        with self._lock:
            if entry.status is ManifestStatus.COLLECTED:
                self.files_processed += sign
                self.bytes_collected += sign * entry.size
            elif entry.status is ManifestStatus.FAILED:
                self.files_failed += sign
            elif entry.status is ManifestStatus.NOT_FOUND:
                self.files_not_found += sign
            elif entry.status is ManifestStatus.SKIPPED:
                self.files_skipped += sign

    def add_dirs_created(self, count: int = 1) -> None:
        with self._lock:
            self.dirs_created += count

    @property
    def files_considered(self) -> int:
        return (
            self.files_processed
            + self.files_failed
            + self.files_not_found
            + self.files_skipped
        )

    def to_dict(self) -> dict[str, int]:
        with self._lock:
            return {
                "files_processed": self.files_processed,
                "files_failed": self.files_failed,
                "files_not_found": self.files_not_found,
                "files_skipped": self.files_skipped,
                "dirs_created": self.dirs_created,
                "bytes_collected": self.bytes_collected,
            }
