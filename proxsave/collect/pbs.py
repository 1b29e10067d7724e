"""Proxmox Backup Server configuration collector."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Optional

from proxsave.collect.base import BaseCollector, build_pbs_env, sanitize_filename
from proxsave.collect.pbs_datastore import DatastoreScanner, PBSDatastore
from proxsave.domain.models import ManifestSection
from proxsave.exceptions import PreconditionError
from proxsave.logging import log_skip

PBS_STATE_DIR = "var/lib/proxmox-backup"

# Files in /etc/proxmox-backup owned by a feature flag
FEATURE_EXCLUDES = (
    ("datastore_configs", ("datastore.cfg",)),
    ("user_configs", ("user.cfg", "acl.cfg", "domains.cfg")),
    ("remote_configs", ("remote.cfg",)),
    ("sync_jobs", ("sync.cfg",)),
    ("verification_jobs", ("verification.cfg",)),
    ("tape_configs", ("tape.cfg", "tape-job.cfg", "media-pool.cfg")),
    ("network_configs", ("network.cfg",)),
    ("prune_schedules", ("prune.cfg",)),
)


class PBSCollector(BaseCollector):
    """Collects /etc/proxmox-backup, PBS command output and datastore metadata."""

    name = "pbs"
    section = ManifestSection.PBS

    def __init__(self, session):
        super().__init__(session)
        self.scanner = DatastoreScanner(self)
        self.datastores: list[PBSDatastore] = []

    @property
    def state_dir(self) -> Path:
        return self.staging_root / PBS_STATE_DIR

    def feature_excludes(self) -> list[str]:
        patterns: list[str] = []
        for flag, names in FEATURE_EXCLUDES:
            if not getattr(self.features, flag):
                patterns.extend(names)
        return patterns

    def collect(self) -> None:
        self.log.info("Collecting PBS configurations")
        config_path = self.paths.pbs_config_path
        if not os.path.isdir(self.system_path(config_path)):
            raise PreconditionError("pbs", f"not a PBS system: {config_path} not found")

        with self.temporary_excludes(self.feature_excludes()):
            self.copy_dir(config_path, self.target_path("/etc/proxmox-backup"), description="PBS configuration")

        self.collect_commands()

        if self.features.datastore_configs:
            self.scanner.collect_datastore_details(self.datastores)
            self.collect_datastore_snapshots()
        else:
            log_skip(self.log, "PBS datastore configuration backup disabled.")

        if self.features.user_configs:
            self.collect_user_tokens()
        else:
            log_skip(self.log, "PBS user/ACL backup disabled.")

        if self.features.pxar_files:
            self.scanner.collect_pxar_metadata(self.datastores)
        else:
            log_skip(self.log, "PBS PXAR metadata collection disabled.")

        self.log.info("PBS configuration collection completed")

    def _manager(
        self,
        args: list[str],
        filename: str,
        description: str,
        *,
        flag: Optional[str] = None,
        mirror: Optional[str] = None,
        critical: bool = False,
    ) -> Optional[bytes]:
        output = self.commands_dir("pbs") / filename
        if flag is not None and not getattr(self.features, flag):
            self.record_disabled(output, flag)
            return None
        mirrors = [self.state_dir / mirror] if mirror else []
        data = self.capture_command(
            ["proxmox-backup-manager", *args], output, description=description, critical=critical
        )
        if data is not None:
            for target in mirrors:
                self.write_report(target, data)
        return data

    def collect_commands(self) -> None:
        json_flag = "--output-format=json"
        self._manager(["version"], "pbs_version.txt", "PBS version", mirror="version.txt", critical=True)
        self._manager(["node", "show", json_flag], "node_config.json", "Node configuration")

        datastore_list = self._manager(
            ["datastore", "list", json_flag],
            "datastore_list.json",
            "Datastore list",
            mirror="datastore_list.json",
        )
        self.datastores = self.scanner.discover(datastore_list)

        if self.features.datastore_configs:
            for ds in self.datastores:
                self._manager(
                    ["datastore", "show", ds.name, json_flag],
                    f"datastore_{sanitize_filename(ds.name)}_status.json",
                    f"Datastore {ds.name} status",
                )

        self._manager(["user", "list", json_flag], "user_list.json", "User list", flag="user_configs", mirror="user_list.json")
        self._manager(["acl", "list", json_flag], "acl_list.json", "ACL list", flag="user_configs", mirror="acl_list.json")
        self._manager(["remote", "list", json_flag], "remote_list.json", "Remote list", flag="remote_configs", mirror="remote_list.json")
        self._manager(["sync-job", "list", json_flag], "sync_jobs.json", "Sync jobs", flag="sync_jobs", mirror="sync_jobs.json")
        self._manager(
            ["verify-job", "list", json_flag],
            "verification_jobs.json",
            "Verification jobs",
            flag="verification_jobs",
            mirror="verify_jobs.json",
        )
        self._manager(["prune-job", "list", json_flag], "prune_jobs.json", "Prune jobs", flag="prune_schedules", mirror="prune_jobs.json")
        self._manager(["garbage-collection", "list", json_flag], "gc_jobs.json", "Garbage collection jobs")

        if self.features.tape_configs and self.has_tape_support():
            for kind, filename in (("drive", "tape_drives.json"), ("changer", "tape_changers.json"), ("pool", "tape_pools.json")):
                self.collect_command(
                    ["proxmox-tape", kind, "list", json_flag],
                    self.commands_dir("pbs") / filename,
                    description=f"Tape {kind}s",
                )

        self._manager(["network", "list", json_flag], "network_list.json", "Network configuration", flag="network_configs")
        self._manager(["disk", "list", json_flag], "disk_list.json", "Disk list")
        self._manager(["cert", "info"], "cert_info.txt", "Certificate information", mirror="cert_info.txt")
        self._manager(["traffic-control", "list", json_flag], "traffic_control.json", "Traffic control rules")
        self._manager(["task", "list", "--limit", "50", json_flag], "recent_tasks.json", "Recent tasks")

    def has_tape_support(self) -> bool:
        tape_cfg = os.path.join(self.paths.pbs_config_path, "tape.cfg")
        if self.exists(tape_cfg):
            self.log.debug(f"Detected {tape_cfg}, tape support enabled")
            return True
        if not self.command_available("proxmox-tape") or self.session.dry_run:
            return False
        data = self.capture_command(["proxmox-tape", "drive", "list"], description="tape drive inventory", optional=True)
        return bool(data and data.strip())

    def collect_datastore_snapshots(self) -> None:
        """Per-datastore snapshot listing through the PBS client."""
        if not self.datastores or not self.command_available("proxmox-backup-client"):
            return
        if not self.config.pbs_auth.configured():
            self.log.warning(
                "Skipping datastore snapshot lists: PBS credentials not configured. "
                "Set PBS_REPOSITORY and PBS_PASSWORD in config or environment."
            )
            return
        for ds in self.datastores:
            self.collect_command(
                ["proxmox-backup-client", "snapshot", "list", "--output-format=json"],
                self.scanner.datastores_dir / f"{ds.name}_snapshots.json",
                description=f"Datastore {ds.name} snapshots",
                env=build_pbs_env(self.config.pbs_auth, ds.name),
            )

    def collect_user_tokens(self) -> None:
        user_list = self.commands_dir("pbs") / "user_list.json"
        try:
            entries = json.loads(user_list.read_bytes())
        except (OSError, ValueError) as error:
            self.log.debug(f"User list not available for token export: {error}")
            return

        users_dir = self.runtime_dir("pbs") / "users"
        aggregated: dict[str, object] = {}
        for entry in entries if isinstance(entries, list) else []:
            user_id = str(entry.get("userid", "")).strip() if isinstance(entry, dict) else ""
            if not user_id:
                continue
            data = self.capture_command(
                ["proxmox-backup-manager", "user", "list-tokens", user_id, "--output-format=json"],
                users_dir / f"{sanitize_filename(user_id)}_tokens.json",
                description=f"API tokens for {user_id}",
            )
            if not data:
                continue
            try:
                aggregated[user_id] = json.loads(data)
            except ValueError:
                aggregated[user_id] = data.decode("utf-8", errors="replace")

        if not aggregated:
            self.log.debug("No PBS user tokens exported")
            return
        self.write_report(users_dir / "tokens.json", json.dumps(aggregated, indent=2, sort_keys=True) + "\n")
        self.log.debug(f"Aggregated PBS token export completed ({len(aggregated)} users)")
