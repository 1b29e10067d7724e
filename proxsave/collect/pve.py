"""Proxmox VE configuration collector."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from proxsave.collect.base import BaseCollector, sanitize_filename
from proxsave.collect.sampling import FileSummary, sample_directories, sample_files
from proxsave.domain.models import ManifestSection
from proxsave.exceptions import (
    CommandNotFoundError,
    DeadlineExceededError,
    PreconditionError,
)
from proxsave.logging import log_skip

PVE_INFO_DIR = "var/lib/pve-cluster/info"

DEFAULT_PVE_BACKUP_PATTERNS = (
    "*.vma",
    "*.vma.gz",
    "*.vma.lz4",
    "*.vma.zst",
    "*.tar",
    "*.tar.gz",
    "*.tar.lz4",
    "*.tar.zst",
    "*.log",
    "*.notes",
)

CEPH_COMMANDS = (
    (["ceph", "-s"], "ceph_status.txt", "Ceph status"),
    (["ceph", "osd", "df"], "ceph_osd_df.txt", "Ceph OSD DF"),
    (["ceph", "osd", "tree"], "ceph_osd_tree.txt", "Ceph OSD tree"),
    (["ceph", "mon", "stat"], "ceph_mon_stat.txt", "Ceph mon stat"),
    (["ceph", "pg", "stat"], "ceph_pg_stat.txt", "Ceph PG stat"),
    (["ceph", "health", "detail"], "ceph_health.txt", "Ceph health"),
)

# Files inside /etc/pve that belong to a feature flag
FEATURE_EXCLUDES = (
    ("vm_configs", ("qemu-server", "lxc")),
    ("pve_firewall", ("firewall", "*.fw")),
    ("pve_acl", ("user.cfg", "acl.cfg", "domains.cfg")),
    ("pve_jobs", ("jobs.cfg", "vzdump.cron")),
    ("pve_replication", ("replication.cfg",)),
    ("ceph_config", ("ceph.conf",)),
)


@dataclass
class PVEStorage:
    name: str
    path: str = ""
    type: str = ""
    content: str = ""


def parse_storage_list(data: bytes | str) -> list[PVEStorage]:
    """Parse ``pvesh get /nodes/<node>/storage`` JSON output."""
    raw = json.loads(data)
    storages: list[PVEStorage] = []
    seen: set[str] = set()
    for item in raw if isinstance(raw, list) else []:
        if not isinstance(item, dict):
            continue
        name = str(item.get("storage") or item.get("name") or "").strip()
        if not name or name in seen:
            continue
        seen.add(name)
        storages.append(
            PVEStorage(
                name=name,
                path=str(item.get("path") or "").strip(),
                type=str(item.get("type") or "").strip(),
                content=str(item.get("content") or "").strip(),
            )
        )
    return storages


def parse_storage_cfg(text: str) -> list[PVEStorage]:
    """Parse /etc/pve/storage.cfg sections (``type: name`` plus indented keys)."""
    storages: list[PVEStorage] = []
    current: Optional[PVEStorage] = None
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        if not line[0].isspace() and ":" in stripped:
            storage_type, _, name = stripped.partition(":")
            current = PVEStorage(name=name.strip(), type=storage_type.strip())
            storages.append(current)
            continue
        if current is None:
            continue
        key, _, value = stripped.partition(" ")
        if key == "path":
            current.path = value.strip()
        elif key == "content":
            current.content = value.strip()
    return [s for s in storages if s.name]


def merge_storages(
    detected: list[PVEStorage], configured: list[PVEStorage]
) -> list[PVEStorage]:
    """Fill gaps in the runtime storage list from storage.cfg."""
    merged: dict[str, PVEStorage] = {}
    for storage in detected:
        merged[storage.name.lower()] = storage
    for storage in configured:
        key = storage.name.lower()
        existing = merged.get(key)
        if existing is None:
            merged[key] = storage
            continue
        existing.path = existing.path or storage.path
        existing.type = existing.type or storage.type
        existing.content = existing.content or storage.content
    return [merged[key] for key in sorted(merged)]


def merge_json_arrays(documents: list[bytes]) -> bytes:
    """Concatenate JSON array documents into one array."""
    items: list = []
    for data in documents:
        try:
            value = json.loads(data)
        except ValueError:
            continue
        if isinstance(value, list):
            items.extend(value)
        else:
            items.append(value)
    return json.dumps(items, indent=2).encode("utf-8")


class PVECollector(BaseCollector):
    """Collects /etc/pve, cluster state, guest configs and PVE command output."""

    name = "pve"
    section = ManifestSection.PVE

    def __init__(self, session):
        super().__init__(session)
        self.clustered = False
        self.nodes: list[str] = []
        self.storages: list[PVEStorage] = []

    @property
    def node_name(self) -> str:
        return self.session.hostname

    def pve_info_dir(self, *parts: str) -> Path:
        return self.staging_root.joinpath(PVE_INFO_DIR, *parts)

    def collect(self) -> None:
        self.log.info("Collecting PVE configurations")
        config_path = self.paths.pve_config_path
        if not os.path.isdir(self.system_path(config_path)):
            raise PreconditionError("pve", f"not a PVE system: {config_path} not found")

        self.clustered = self.detect_cluster()
        self.log.debug(f"Cluster detection completed: clustered={self.clustered}")

        self.collect_directories()
        self.collect_commands()

        if self.features.vm_configs:
            self.collect_guest_lists()
        else:
            log_skip(self.log, "VM/container configuration backup disabled.")

        if self.features.pve_jobs:
            self.collect_jobs()
        if self.features.pve_schedules:
            self.collect_schedules()
        if self.features.pve_replication:
            self.collect_replication()
        if self.features.pve_backup_files:
            self.collect_storage_metadata()
        else:
            log_skip(self.log, "PVE backup file analysis disabled.")
        if self.features.ceph_config:
            self.collect_ceph()
        self.create_info_aliases()
        self.log.info("PVE configuration collection completed")

    # ------------------------------------------------------------------
    # Cluster detection
    # ------------------------------------------------------------------

    def _corosync_path(self) -> str:
        path = self.paths.corosync_config_path or "corosync.conf"
        if not os.path.isabs(path):
            path = os.path.join(self.paths.pve_config_path, path)
        return path

    def detect_cluster(self) -> bool:
        try:
            text = Path(self.system_path(self._corosync_path())).read_text(
                encoding="utf-8", errors="replace"
            ).lower()
        except OSError:
            text = ""
        if any(key in text for key in ("cluster_name", "nodelist", "ring0_addr")):
            self.log.debug("Detected cluster via corosync configuration")
            return True

        nodes_dir = Path(self.system_path(os.path.join(self.paths.pve_config_path, "nodes")))
        try:
            node_dirs = [p for p in nodes_dir.iterdir() if p.is_dir()]
        except OSError:
            node_dirs = []
        if len(node_dirs) > 1:
            self.log.debug("Detected cluster via nodes directory count")
            return True

        if self.command_available("pvecm") and not self.session.dry_run:
            try:
                result = self.session.runner.run(
                    self.ctx.with_timeout(self.tuning.pvesh_timeout_seconds), "pvecm", "status"
                )
            except (CommandNotFoundError, DeadlineExceededError) as error:
                self.ctx.check()
                self.log.debug(f"pvecm status failed: {error}")
                return False
            if result.ok and "Cluster information" in result.text:
                self.log.debug("Detected cluster via pvecm status")
                return True
        return False

    # ------------------------------------------------------------------
    # Directories
    # ------------------------------------------------------------------

    def _feature_excludes(self) -> list[str]:
        patterns: list[str] = []
        for flag, names in FEATURE_EXCLUDES:
            if not getattr(self.features, flag):
                patterns.extend(names)
        if not self.features.cluster_config:
            patterns.append("corosync.conf")
        return patterns

    def collect_directories(self) -> None:
        config_path = self.paths.pve_config_path
        with self.temporary_excludes(self._feature_excludes()):
            self.copy_dir(config_path, description="PVE configuration")

        cluster_path = self.paths.pve_cluster_path
        if self.features.cluster_config and self.clustered:
            self.copy_file(self._corosync_path(), description="Corosync configuration")
            self.copy_file("/etc/corosync/authkey", description="Corosync authkey")
            self.copy_dir(cluster_path, description="PVE cluster data")
        elif not self.features.cluster_config:
            log_skip(self.log, "PVE cluster backup disabled")
        else:
            self.log.info("PVE cluster not configured (single node) - skipping Corosync configuration")

        config_db = os.path.join(cluster_path, "config.db")
        if os.path.isfile(self.system_path(config_db)):
            self.copy_file(config_db, description="PVE cluster database")

        if self.features.vzdump_config:
            vzdump_path = self.paths.vzdump_config_path or "/etc/vzdump.conf"
            self.copy_file(vzdump_path, description="VZDump configuration")
        else:
            self.record_disabled(
                self.target_path(self.paths.vzdump_config_path or "/etc/vzdump.conf"),
                "vzdump_config",
            )

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def _pvesh(self, path: str, output: Path, description: str, *mirrors: Path) -> Optional[bytes]:
        data = self.capture_command(
            ["pvesh", "get", path, "--output-format=json"],
            output,
            description=description,
            timeout=self.tuning.pvesh_timeout_seconds,
        )
        if data is not None:
            for mirror in mirrors:
                self.write_report(mirror, data)
        return data

    def collect_commands(self) -> None:
        commands = self.commands_dir("pve")
        node = self.node_name

        self.collect_command(
            ["pveversion", "-v"],
            commands / "pveversion.txt",
            description="PVE version",
            critical=True,
        )
        self.collect_command(
            ["pvenode", "config", "get"], commands / "node_config.txt", description="Node configuration"
        )
        self._pvesh("/version", commands / "api_version.json", "API version")

        node_data = self._pvesh("/nodes", commands / "nodes_status.json", "node status")
        nodes: list[str] = []
        if node_data:
            try:
                parsed = json.loads(node_data)
            except ValueError as error:
                self.log.debug(f"Failed to parse node status JSON: {error}")
                parsed = None
            if isinstance(parsed, list):
                nodes = sorted(
                    {
                        str(item.get("node", "")).strip()
                        for item in parsed
                        if isinstance(item, dict) and str(item.get("node", "")).strip()
                    }
                )
            elif parsed is not None:
                self.log.debug(f"Unexpected node status JSON: {type(parsed).__name__}")
        self.nodes = nodes or [node]

        if self.features.pve_acl:
            for kind in ("user", "group", "role"):
                self.collect_command(
                    ["pveum", kind, "list", "--output-format=json"],
                    commands / f"pve_{kind}s.json",
                    description=f"PVE {kind}s",
                )
        else:
            for kind in ("user", "group", "role"):
                self.record_disabled(commands / f"pve_{kind}s.json", "pve_acl")

        if self.clustered:
            self.collect_command(["pvecm", "status"], commands / "cluster_status.txt", description="Cluster status")
            self.collect_command(["pvecm", "nodes"], commands / "cluster_nodes.txt", description="Cluster nodes")
            self._pvesh("/cluster/ha/status", commands / "ha_status.json", "HA status")

        storage_data = self._pvesh(
            f"/nodes/{node}/storage", commands / "storage_status.json", "Storage status"
        )
        if storage_data:
            try:
                self.storages = parse_storage_list(storage_data)
            except ValueError as error:
                self.log.debug(f"Failed to parse storage status JSON: {error}")
        self._pvesh(f"/nodes/{node}/disks/list", commands / "disks_list.json", "Disks list")
        self.collect_command(["pvesm", "status"], commands / "pvesm_status.txt", description="Storage manager status")
        self.log.debug(
            f"PVE command output collection finished: {len(self.nodes)} nodes, {len(self.storages)} storages"
        )

    def collect_guest_lists(self) -> None:
        commands = self.commands_dir("pve")
        node = self.node_name
        self._pvesh(f"/nodes/{node}/qemu", commands / "qemu_vms.json", "QEMU VMs list")
        self._pvesh(f"/nodes/{node}/lxc", commands / "lxc_containers.json", "LXC containers list")

    def collect_jobs(self) -> None:
        jobs_dir = self.pve_info_dir("jobs")
        self._pvesh("/cluster/backup", jobs_dir / "backup_jobs.json", "backup jobs")
        for node in self.nodes:
            self.capture_command(
                ["pvesh", "get", f"/nodes/{node}/tasks", "--output-format=json", "--typefilter=vzdump"],
                jobs_dir / f"{sanitize_filename(node)}_backup_history.json",
                description=f"{node} backup history",
                timeout=self.tuning.pvesh_timeout_seconds,
            )
        self.copy_file("/etc/cron.d/vzdump", description="VZDump cron schedule")

    def collect_schedules(self) -> None:
        schedules = self.pve_info_dir("schedules")
        self.collect_command(["crontab", "-l"], schedules / "root_crontab.txt", description="root crontab")
        self.collect_command(
            ["systemctl", "list-timers", "--all", "--no-pager"],
            schedules / "systemd_timers.txt",
            description="systemd timers",
        )
        cron_dir = Path(self.system_path("/etc/cron.d"))
        try:
            names = sorted(entry.name for entry in cron_dir.iterdir() if not entry.is_dir())
        except OSError:
            names = []
        for name in names:
            lowered = name.lower()
            if any(marker in lowered for marker in ("pve", "proxmox", "vzdump")):
                self.copy_file(f"/etc/cron.d/{name}", description=f"cron job {name}")

    def collect_replication(self) -> None:
        replication = self.pve_info_dir("replication")
        self._pvesh("/cluster/replication", replication / "replication_jobs.json", "replication jobs")
        for node in self.nodes:
            self.capture_command(
                ["pvesh", "get", f"/nodes/{node}/replication", "--output-format=json"],
                replication / f"{sanitize_filename(node)}_replication_status.json",
                description=f"{node} replication status",
                timeout=self.tuning.pvesh_timeout_seconds,
            )

    # ------------------------------------------------------------------
    # Storage metadata
    # ------------------------------------------------------------------

    def _configured_storages(self) -> list[PVEStorage]:
        storage_cfg = Path(self.system_path(os.path.join(self.paths.pve_config_path, "storage.cfg")))
        try:
            return parse_storage_cfg(storage_cfg.read_text(encoding="utf-8", errors="replace"))
        except OSError:
            return []

    def collect_storage_metadata(self) -> None:
        storages = merge_storages(self.storages, self._configured_storages())
        self.log.info(f"Found {len(storages)} PVE datastore(s) via auto-detection")
        base = self.pve_info_dir("datastores")

        lines = [
            f"# PVE datastores detected on {self.session.created_at.isoformat()}",
            "# Format: NAME|PATH|TYPE|CONTENT",
            "",
        ]
        processed = 0
        for storage in storages:
            self.ctx.check()
            if not storage.path or not os.path.isdir(self.system_path(storage.path)):
                self.log.debug(f"Skipping datastore {storage.name} (path not accessible: {storage.path})")
                continue
            processed += 1
            lines.append(f"{storage.name}|{storage.path}|{storage.type}|{storage.content}")
            self._write_storage_summary(storage, base)

        if processed:
            lines.append("")
            lines.append(f"# Total datastores processed: {processed}")
            self.write_report(base / "detected_datastores.txt", "\n".join(lines) + "\n")

    def _write_storage_summary(self, storage: PVEStorage, base: Path) -> None:
        root = self.system_path(storage.path)
        patterns = list(DEFAULT_PVE_BACKUP_PATTERNS)
        backups = sample_files(
            self.ctx,
            root,
            include=patterns,
            exclude=self.tuning.pxar_exclude_patterns,
            max_depth=3,
            limit=1000,
        )
        summary = {
            "name": storage.name,
            "path": storage.path,
            "type": storage.type,
            "content": storage.content,
            "scanned_at": datetime.now(timezone.utc).isoformat(),
            "sample_directories": sample_directories(self.ctx, root, 2, 20),
            "backup_files": [item.to_dict() for item in backups],
            "total_files": len(backups),
            "total_size_bytes": sum(item.size_bytes for item in backups),
        }
        name = sanitize_filename(storage.name)
        self.write_report(
            base / f"{name}_backup_summary.json", json.dumps(summary, indent=2) + "\n"
        )
        if backups:
            self.log.info(f"Found {len(backups)} backup files in datastore: {storage.name}")
        if self.features.small_pve_backups and self.tuning.max_pve_backup_size_bytes > 0:
            self._copy_small_backups(storage, backups)

    def _copy_small_backups(self, storage: PVEStorage, backups: list[FileSummary]) -> None:
        limit = self.tuning.max_pve_backup_size_bytes
        dest_dir = self.staging_root / "var/lib/pve-cluster/small_backups" / sanitize_filename(storage.name)
        for item in backups:
            if item.size_bytes > limit:
                continue
            self.copy_file(
                os.path.join(storage.path, item.path),
                dest_dir / item.path,
                description=f"small PVE backup {item.name}",
            )

    # ------------------------------------------------------------------
    # Ceph
    # ------------------------------------------------------------------

    def _ceph_paths(self) -> list[str]:
        paths: list[str] = []
        for path in (
            self.paths.ceph_config_path,
            os.path.join(self.paths.pve_config_path, "ceph"),
            "/etc/ceph",
        ):
            if path and path not in paths:
                paths.append(path)
        return paths

    def ceph_configured(self) -> bool:
        for path in self._ceph_paths():
            root = Path(self.system_path(path))
            try:
                text = (root / "ceph.conf").read_text(encoding="utf-8", errors="replace").lower()
            except OSError:
                text = ""
            if any(key in text for key in ("fsid", "mon_host", "mon_initial_members")):
                return True
            try:
                if any(p.name.endswith(".keyring") for p in root.iterdir()):
                    return True
            except OSError:
                continue
        return False

    def collect_ceph(self) -> None:
        if not self.ceph_configured():
            self.log.debug("Ceph not detected on this node, skipping Ceph collection")
            return
        for path in self._ceph_paths():
            self.copy_dir(path, description=f"Ceph configuration ({path})")
        if not self.command_available("ceph"):
            self.log.debug("Ceph CLI not available, skipping Ceph command outputs")
            return
        ceph_dir = self.pve_info_dir("ceph")
        for cmd, filename, description in CEPH_COMMANDS:
            self.collect_command(cmd, ceph_dir / filename, description=description)

    # ------------------------------------------------------------------
    # Aliases
    # ------------------------------------------------------------------

    def _alias(self, source: Path, target: Path) -> None:
        try:
            data = source.read_bytes()
        except OSError:
            return
        self.write_report(target, data)

    def _aggregate(self, directory: Path, suffix: str, target: Path) -> None:
        try:
            parts = sorted(p for p in directory.iterdir() if p.name.endswith(suffix))
        except OSError:
            return
        if not parts:
            return
        self.write_report(target, merge_json_arrays([p.read_bytes() for p in parts]))

    def create_info_aliases(self) -> None:
        commands = self.commands_dir("pve")
        info = self.pve_info_dir()
        for source, target in (
            ("nodes_status.json", "nodes_status.json"),
            ("storage_status.json", "storage_status.json"),
            ("pve_users.json", "user_list.json"),
            ("pve_groups.json", "group_list.json"),
            ("pve_roles.json", "role_list.json"),
        ):
            self._alias(commands / source, info / target)
        self._aggregate(info / "jobs", "_backup_history.json", info / "jobs" / "backup_history.json")
        self._aggregate(
            info / "replication",
            "_replication_status.json",
            info / "replication" / "replication_status.json",
        )
        self.collect_command(["pveversion"], info / "pve_version.txt", description="PVE version info")
