"""PBS datastore discovery, namespace enumeration and PXAR metadata.

Datastores are scanned concurrently, bounded by ``datastore_concurrency``.
A failure on one datastore is reported for that datastore only; the
others continue.
"""

from __future__ import annotations

import json
import os
import re
import stat
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Optional

from proxsave.collect.sampling import FileSummary, sample_directories, sample_files
from proxsave.domain.models import ManifestEntry
from proxsave.exceptions import CommandNotFoundError, OperationCancelledError

if TYPE_CHECKING:
    from proxsave.collect.pbs import PBSCollector

DEFAULT_PXAR_PATTERNS = ("*.pxar", "*.pxar.*", "catalog.pxar", "catalog.pxar.*")
NAMESPACE_MARKER_DIRS = ("vm", "ct", "host", "ns")
PXAR_DIR_DEPTH = 2
PXAR_DIR_LIMIT = 30
PXAR_FILE_DEPTH = 8
PXAR_FILE_LIMIT = 200

_VALID_NAME = re.compile(r"^[A-Za-z0-9_-]+$")


@dataclass
class PBSDatastore:
    name: str
    path: str = ""
    comment: str = ""


@dataclass
class Namespace:
    ns: str
    path: str = ""
    parent: str = ""
    comment: str = ""
    ctime: int = 0


def parse_datastore_list(data: bytes | str) -> list[PBSDatastore]:
    """Parse ``proxmox-backup-manager datastore list --output-format=json``."""
    raw = json.loads(data)
    datastores = []
    for item in raw if isinstance(raw, list) else []:
        if not isinstance(item, dict):
            continue
        name = str(item.get("name") or "").strip()
        if not name:
            continue
        datastores.append(
            PBSDatastore(
                name=name,
                path=str(item.get("path") or "").strip(),
                comment=str(item.get("comment") or "").strip(),
            )
        )
    return datastores


def override_name(path: str, index: int) -> str:
    """Name for a configured datastore path; ``datastore_<index>`` if unusable."""
    name = os.path.basename(os.path.normpath(path))
    if not name or not _VALID_NAME.match(name):
        return f"datastore_{index}"
    return name


def append_override_paths(
    datastores: list[PBSDatastore], overrides: list[str]
) -> list[PBSDatastore]:
    """Append configured datastore paths not already detected."""
    result = list(datastores)
    existing = {ds.path for ds in datastores if ds.path}
    for index, override in enumerate(overrides, start=1):
        override = override.strip()
        if not override or override in existing:
            continue
        existing.add(override)
        result.append(
            PBSDatastore(
                name=override_name(override, index),
                path=override,
                comment="configured via pbs_datastore_paths",
            )
        )
    return result


def parse_namespace_list(data: bytes | str) -> list[Namespace]:
    raw = json.loads(data)
    if isinstance(raw, dict):
        raw = raw.get("data", [])
    if not isinstance(raw, list):
        raise ValueError("namespace list is not an array")
    namespaces = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        namespaces.append(
            Namespace(
                ns=str(item.get("ns") or ""),
                path=str(item.get("path") or ""),
                parent=str(item.get("parent") or ""),
                comment=str(item.get("comment") or ""),
                ctime=int(item.get("ctime") or 0),
            )
        )
    return namespaces


def discover_namespaces_from_filesystem(path: str, display_path: str = "") -> list[Namespace]:
    """Infer namespaces from the datastore layout.

    Always reports the root namespace, plus every top-level directory that
    contains one of the backup-group directories.

    Raises:
        OSError: The datastore path cannot be read
    """
    if not path:
        raise OSError("datastore path is empty")
    display_path = display_path or path
    entries = sorted(os.scandir(path), key=lambda e: e.name)
    namespaces = [Namespace(ns="", path=display_path, comment="root namespace")]
    for entry in entries:
        if not entry.is_dir(follow_symlinks=False):
            continue
        if any(os.path.isdir(os.path.join(entry.path, marker)) for marker in NAMESPACE_MARKER_DIRS):
            namespaces.append(
                Namespace(ns=entry.name, path=os.path.join(display_path, entry.name))
            )
    return namespaces


def run_bounded(
    items: list, worker: Callable, limit: int
) -> list[tuple[Any, Optional[BaseException]]]:
    """Run ``worker(item)`` for each item with at most ``limit`` in flight.

    Returns ``(item, exception or None)`` pairs in input order.
    Cancellation is re-raised once all workers have finished.
    """
    if not items:
        return []
    with ThreadPoolExecutor(max_workers=max(1, limit), thread_name_prefix="datastore") as pool:
        futures = [(item, pool.submit(worker, item)) for item in items]
        results = [(item, future.exception()) for item, future in futures]
    for _item, error in results:
        if isinstance(error, OperationCancelledError):
            raise error
    return results


class DatastoreScanner:
    """Datastore-level collection on behalf of the PBS collector."""

    def __init__(self, collector: PBSCollector):
        self.collector = collector
        self.session = collector.session
        self.tuning = collector.tuning
        self.log = collector.log

    @property
    def datastores_dir(self) -> Path:
        return self.collector.runtime_dir("pbs") / "datastores"

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    def discover(self, datastore_list: Optional[bytes]) -> list[PBSDatastore]:
        datastores: list[PBSDatastore] = []
        if datastore_list:
            try:
                datastores = parse_datastore_list(datastore_list)
            except ValueError as error:
                self.log.warning(f"Failed to parse datastore list JSON: {error}")
        datastores = append_override_paths(
            datastores, self.collector.paths.pbs_datastore_paths
        )
        if datastores:
            summary = ", ".join(
                f"{ds.name} ({ds.path})" if ds.path else ds.name for ds in datastores
            )
            self.log.info(f"Found {len(datastores)} PBS datastore(s) via auto-detection: {summary}")
        else:
            self.log.info("Found 0 PBS datastore(s) via auto-detection")
        return datastores

    # ------------------------------------------------------------------
    # Namespaces
    # ------------------------------------------------------------------

    def _namespaces_via_cli(self, ds: PBSDatastore) -> Optional[list[Namespace]]:
        if self.session.dry_run or not self.collector.command_available("proxmox-backup-manager"):
            return None
        try:
            result = self.session.runner.run(
                self.collector.ctx.with_timeout(self.tuning.pvesh_timeout_seconds),
                "proxmox-backup-manager",
                "datastore",
                "namespace",
                "list",
                ds.name,
                "--output-format=json",
            )
        except (CommandNotFoundError, OperationCancelledError):
            self.collector.ctx.check()
            return None
        if not result.ok:
            self.log.debug(f"Namespace list command failed for {ds.name}: exit {result.exit_code}")
            return None
        try:
            return parse_namespace_list(result.output)
        except ValueError as error:
            self.log.debug(f"Namespace list parsing failed for {ds.name}: {error}")
            return None

    def list_namespaces(self, ds: PBSDatastore) -> tuple[list[Namespace], bool]:
        """Namespaces of ``ds`` and whether the filesystem fallback was used."""
        namespaces = self._namespaces_via_cli(ds)
        if namespaces is not None:
            return namespaces, False
        self.collector.ctx.check()
        path = self.collector.system_path(ds.path) if ds.path else ""
        return discover_namespaces_from_filesystem(path, ds.path), True

    def _collect_namespaces_for(self, ds: PBSDatastore) -> None:
        target = self.datastores_dir / f"{ds.name}_namespaces.json"
        try:
            namespaces, fallback = self.list_namespaces(ds)
        except OSError as error:
            self.collector.record(target, ManifestEntry.failed(f"namespace listing: {error}"))
            raise
        payload = json.dumps([asdict(ns) for ns in namespaces], indent=2) + "\n"
        self.collector.write_report(target, payload)
        source = "filesystem fallback" if fallback else "CLI"
        self.log.debug(f"Collected {len(namespaces)} namespaces for datastore {ds.name} via {source}")

    def collect_namespaces(
        self, datastores: list[PBSDatastore]
    ) -> list[tuple[PBSDatastore, Optional[BaseException]]]:
        results = run_bounded(
            datastores, self._collect_namespaces_for, self.tuning.datastore_concurrency
        )
        for ds, error in results:
            if error is not None:
                self.log.warning(
                    f"Failed to collect namespaces for datastore {ds.name} ({ds.path or 'no path'}): {error}"
                )
        return results

    def collect_datastore_details(self, datastores: list[PBSDatastore]) -> None:
        for ds in datastores:
            self.collector.collect_command(
                ["proxmox-backup-manager", "datastore", "show", ds.name, "--output-format=json"],
                self.datastores_dir / f"{ds.name}_config.json",
                description=f"Datastore {ds.name} configuration",
            )
        self.collect_namespaces(datastores)

    # ------------------------------------------------------------------
    # PXAR metadata
    # ------------------------------------------------------------------

    @property
    def pxar_root(self) -> Path:
        return self.collector.staging_root / "var/lib/proxmox-backup/pxar_metadata"

    def _sample_pxar_files(self, root: Path) -> list[FileSummary]:
        """Sample PXAR files, splitting top-level subdirectories across workers."""
        ctx = self.collector.ctx
        include = list(DEFAULT_PXAR_PATTERNS)
        exclude = list(self.tuning.pxar_exclude_patterns)
        try:
            subdirs = sorted(
                entry.name
                for entry in os.scandir(root)
                if entry.is_dir(follow_symlinks=False)
            )
        except OSError as error:
            self.log.debug(f"PXAR: cannot list {root}: {error}")
            return []
        subdirs = subdirs[: self.tuning.pxar_max_roots]

        top_level = sample_files(
            ctx, root, include, exclude, max_depth=0, limit=PXAR_FILE_LIMIT
        )

        def scan(name: str) -> list[FileSummary]:
            found = sample_files(
                ctx, root / name, include, exclude, max_depth=PXAR_FILE_DEPTH - 1, limit=PXAR_FILE_LIMIT
            )
            return [
                FileSummary(
                    path=f"{name}/{item.path}",
                    name=item.name,
                    size_bytes=item.size_bytes,
                    mod_time=item.mod_time,
                )
                for item in found
            ]

        workers = max(1, self.tuning.intra_concurrency)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="pxar-scan") as pool:
            nested = list(pool.map(scan, subdirs))

        files = list(top_level)
        for chunk in nested:
            files.extend(chunk)
        files.sort(key=lambda item: item.path)
        return files[:PXAR_FILE_LIMIT]

    def _pxar_list_report(self, ds: PBSDatastore, root: Path, sub_dir: str) -> str:
        base = root / sub_dir
        now = datetime.now(timezone.utc).strftime("%a, %d %b %Y %H:%M:%S %Z")
        lines = [
            f"# List of .pxar files in {os.path.join(ds.path, sub_dir)} generated on {now}",
            f"# Datastore: {ds.name}, Subdirectory: {sub_dir}",
            "# Format: permissions size date name",
        ]
        try:
            entries = sorted(os.scandir(base), key=lambda e: e.name)
        except OSError as error:
            lines.append(f"# Unable to read directory: {error}")
            return "\n".join(lines) + "\n"
        count = 0
        for entry in entries:
            if entry.is_dir(follow_symlinks=False) or not entry.name.endswith(".pxar"):
                continue
            try:
                st = entry.stat(follow_symlinks=False)
            except OSError:
                continue
            modified = datetime.fromtimestamp(st.st_mtime).strftime("%Y-%m-%d %H:%M:%S")
            lines.append(f"{stat.filemode(st.st_mode)} {st.st_size} {modified} {entry.name}")
            count += 1
        if not count:
            lines.append("# No .pxar files found")
        self.log.info(f"PXAR: datastore {ds.name}/{sub_dir} -> {count} .pxar file(s)")
        return "\n".join(lines) + "\n"

    def _subdir_report(self, ds: PBSDatastore, root: Path) -> str:
        now = datetime.now(timezone.utc).strftime("%a, %d %b %Y %H:%M:%S %Z")
        lines = [
            f"# Datastore subdirectories in {ds.path} generated on {now}",
            f"# Datastore: {ds.name}",
        ]
        try:
            names = sorted(e.name for e in os.scandir(root) if e.is_dir(follow_symlinks=False))
        except OSError as error:
            lines.append(f"# Unable to read datastore path: {error}")
            return "\n".join(lines) + "\n"
        lines.extend(names or ["# No subdirectories found"])
        return "\n".join(lines) + "\n"

    def _process_pxar_datastore(self, ds: PBSDatastore) -> None:
        ctx = self.collector.ctx
        ctx.check()
        root = Path(self.collector.system_path(ds.path))
        if not root.is_dir():
            self.log.debug(f"Skipping PXAR metadata for datastore {ds.name} (path not accessible: {ds.path})")
            return

        self.log.debug(f"PXAR: scanning datastore {ds.name} at {ds.path}")
        out_dir = self.pxar_root / ds.name
        files = self._sample_pxar_files(root)
        meta = {
            "name": ds.name,
            "path": ds.path,
            "comment": ds.comment,
            "scanned_at": datetime.now(timezone.utc).isoformat(),
            "sample_directories": sample_directories(ctx, root, PXAR_DIR_DEPTH, PXAR_DIR_LIMIT),
            "sample_pxar_files": [item.to_dict() for item in files],
        }
        self.collector.write_report(out_dir / "metadata.json", json.dumps(meta, indent=2) + "\n")
        self.collector.write_report(out_dir / f"{ds.name}_subdirs.txt", self._subdir_report(ds, root))
        for sub_dir in ("vm", "ct"):
            self.collector.write_report(
                out_dir / f"{ds.name}_{sub_dir}_pxar_list.txt",
                self._pxar_list_report(ds, root, sub_dir),
            )

    def collect_pxar_metadata(
        self, datastores: list[PBSDatastore]
    ) -> list[tuple[PBSDatastore, Optional[BaseException]]]:
        candidates = [ds for ds in datastores if ds.path]
        workers = self.tuning.datastore_concurrency
        mode = f"parallel ({workers} workers)" if workers > 1 else "sequential"
        self.log.debug(
            f"PXAR metadata concurrency: datastores={mode}, "
            f"per-datastore workers={self.tuning.intra_concurrency}"
        )
        results = run_bounded(candidates, self._process_pxar_datastore, workers)
        for ds, error in results:
            if error is not None:
                self.log.warning(f"PXAR metadata collection failed for datastore {ds.name} ({ds.path}): {error}")
        return results
