"""Manifest recording and the manifest.json document."""

from __future__ import annotations

import json
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from proxsave.domain.models import (
    CollectionStats,
    ManifestEntry,
    ManifestSection,
    ProxmoxType,
)
from proxsave.logging import get_logger

log = get_logger(source=__name__, tags=["manifest"])

MANIFEST_FILENAME = "manifest.json"


class ManifestRecorder:
    """Per-section map of file outcomes backed by the shared counters.

    Every outcome is applied to ``stats`` as it is recorded. Recording the
    same key again first retracts the previous outcome, so the counters
    always equal the sum over the recorded entries.
    """

    def __init__(self, stats: CollectionStats):
        self.stats = stats
        self._sections: dict[ManifestSection, dict[str, ManifestEntry]] = {}
        self._lock = threading.Lock()

    def open_section(self, section: ManifestSection) -> None:
        with self._lock:
            self._sections.setdefault(section, {})

    def record(self, section: ManifestSection, key: str, entry: ManifestEntry) -> None:
        with self._lock:
            entries = self._sections.setdefault(section, {})
            previous = entries.get(key)
            entries[key] = entry
        if previous is not None:
            self.stats.apply(previous, sign=-1)
        self.stats.apply(entry)

    def get(self, section: ManifestSection, key: str) -> Optional[ManifestEntry]:
        with self._lock:
            return self._sections.get(section, {}).get(key)

    def entries(self, section: ManifestSection) -> Optional[dict[str, ManifestEntry]]:
        """Copy of one section, or None if no collector opened it."""
        with self._lock:
            entries = self._sections.get(section)
            return dict(entries) if entries is not None else None

    def sections(self) -> list[ManifestSection]:
        with self._lock:
            return [s for s in ManifestSection if s in self._sections]


def format_timestamp(moment: datetime) -> str:
    """RFC 3339 UTC timestamp with a trailing Z."""
    moment = moment.astimezone(timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def build_manifest(
    recorder: ManifestRecorder,
    *,
    hostname: str,
    proxmox_type: ProxmoxType,
    created_at: datetime,
    compression: dict[str, str] | None = None,
) -> dict[str, Any]:
    document: dict[str, Any] = {
        "created_at": format_timestamp(created_at),
        "hostname": hostname,
        "proxmox_type": proxmox_type.value,
    }
    for section in recorder.sections():
        entries = recorder.entries(section) or {}
        document[section.value] = {
            key: entries[key].to_dict() for key in sorted(entries)
        }
    document["stats"] = recorder.stats.to_dict()
    if compression:
        document["compression"] = dict(compression)
    return document


def render_manifest(document: dict[str, Any]) -> str:
    return json.dumps(document, indent=2, sort_keys=True) + "\n"


def write_manifest(staging_root: Path, document: dict[str, Any]) -> Path:
    """Write manifest.json at the staging root.

    The output depends only on ``document``; writing twice produces the
    same bytes.
    """
    path = Path(staging_root) / MANIFEST_FILENAME
    data = render_manifest(document)
    tmp_path = path.with_name(f".{MANIFEST_FILENAME}.tmp")
    tmp_path.write_text(data, encoding="utf-8")
    tmp_path.chmod(0o640)
    tmp_path.replace(path)
    log.debug(f"Wrote manifest {path} ({len(data)} bytes)")
    return path


def load_manifest(path: Path) -> dict[str, Any]:
    return json.loads(Path(path).read_text(encoding="utf-8"))
