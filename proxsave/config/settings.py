"""Engine configuration: defaults, JSON loading and validation."""

from __future__ import annotations

import json
import os
import re
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any

from proxsave.archive.compression import (
    CompressionMode,
    normalize_mode,
    parse_compression_type,
)
from proxsave.exceptions import ConfigurationError
from proxsave.fs.exclusion import validate_pattern
from proxsave.logging import LoggerFactory

log = LoggerFactory.for_system()

CONFIG_PATH = Path(
    os.environ.get(
        "PROXSAVE_CONFIG",
        "/etc/proxsave/config.json",
    )
)

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_DATASTORE_CONCURRENCY = 3
DEFAULT_INTRA_CONCURRENCY = 4
DEFAULT_PXAR_MAX_ROOTS = 2048
DEFAULT_PVESH_TIMEOUT_SECONDS = 15
DEFAULT_CHUNK_SIZE_BYTES = 10 * 1024 * 1024
DEFAULT_CHUNK_THRESHOLD_BYTES = 50 * 1024 * 1024
DEFAULT_MAX_PVE_BACKUP_SIZE_BYTES = 100 * 1024 * 1024

_AGE_RECIPIENT = re.compile(r"^age1[0-9a-z]{20,}$")
_SSH_RECIPIENT = re.compile(r"^(ssh-ed25519|ssh-rsa) [A-Za-z0-9+/=]{16,}( .*)?$")


@dataclass
class FeatureFlags:
    """Which classes of host state to include."""

    # PVE
    vm_configs: bool = True
    cluster_config: bool = True
    pve_firewall: bool = True
    vzdump_config: bool = True
    pve_acl: bool = True
    pve_jobs: bool = True
    pve_schedules: bool = True
    pve_replication: bool = True
    pve_backup_files: bool = True
    small_pve_backups: bool = False
    ceph_config: bool = True

    # PBS
    datastore_configs: bool = True
    user_configs: bool = True
    remote_configs: bool = True
    sync_jobs: bool = True
    verification_jobs: bool = True
    tape_configs: bool = True
    prune_schedules: bool = True
    pxar_files: bool = True

    # System
    network_configs: bool = True
    apt_sources: bool = True
    cron_jobs: bool = True
    systemd_services: bool = True
    ssl_certs: bool = True
    ssl_private_keys: bool = False
    sysctl_config: bool = True
    kernel_modules: bool = True
    firewall_rules: bool = True
    installed_packages: bool = True
    zfs_config: bool = True
    critical_files: bool = True
    ssh_keys: bool = True
    script_dirs: bool = True
    root_home: bool = True
    config_file: bool = True

    def any_enabled(self) -> bool:
        return any(getattr(self, f.name) for f in fields(self))


@dataclass
class PathOverrides:
    system_root_prefix: str = ""
    pve_config_path: str = "/etc/pve"
    pve_cluster_path: str = "/var/lib/pve-cluster"
    corosync_config_path: str = "/etc/pve/corosync.conf"
    vzdump_config_path: str = "/etc/vzdump.conf"
    pbs_config_path: str = "/etc/proxmox-backup"
    ceph_config_path: str = "/etc/ceph"
    pbs_datastore_paths: list[str] = field(default_factory=list)
    custom_backup_paths: list[str] = field(default_factory=list)
    config_file_path: str = ""
    output_dir: str = "/var/backups/proxsave"
    staging_base_dir: str = ""
    log_dir: str = ""

    def system_path(self, path: str) -> str:
        """Map a logical host path under ``system_root_prefix``."""
        prefix = self.system_root_prefix
        if not prefix or prefix == "/":
            return path
        return os.path.join(prefix, path.lstrip("/"))


@dataclass
class TuningOptions:
    compression: str = "xz"
    compression_level: int = 6
    compression_mode: str = "standard"
    compression_threads: int = 0
    datastore_concurrency: int = DEFAULT_DATASTORE_CONCURRENCY
    intra_concurrency: int = DEFAULT_INTRA_CONCURRENCY
    pxar_max_roots: int = DEFAULT_PXAR_MAX_ROOTS
    pvesh_timeout_seconds: int = DEFAULT_PVESH_TIMEOUT_SECONDS
    command_timeout_seconds: int = 0
    chunking_enabled: bool = True
    chunk_size_bytes: int = DEFAULT_CHUNK_SIZE_BYTES
    chunk_threshold_bytes: int = DEFAULT_CHUNK_THRESHOLD_BYTES
    max_pve_backup_size_bytes: int = DEFAULT_MAX_PVE_BACKUP_SIZE_BYTES
    exclude_patterns: list[str] = field(default_factory=list)
    pxar_exclude_patterns: list[str] = field(default_factory=list)
    verify_archive: bool = True
    min_free_space_gb: float = 0.0
    space_safety_factor: float = 1.0


@dataclass
class EncryptionOptions:
    enabled: bool = False
    recipients: list[str] = field(default_factory=list)


@dataclass
class PBSAuth:
    repository: str = ""
    password: str = field(default="", repr=False)
    fingerprint: str = ""

    def configured(self) -> bool:
        return bool(self.repository or self.password)


@dataclass
class EngineConfig:
    features: FeatureFlags = field(default_factory=FeatureFlags)
    paths: PathOverrides = field(default_factory=PathOverrides)
    tuning: TuningOptions = field(default_factory=TuningOptions)
    encryption: EncryptionOptions = field(default_factory=EncryptionOptions)
    pbs_auth: PBSAuth = field(default_factory=PBSAuth)
    dry_run: bool = False
    keep_staging_on_failure: bool = False

    def validate(self) -> EngineConfig:
        """Reject invalid combinations; normalize fallback values in place.

        Raises:
            ConfigurationError: On the first invalid setting found
        """
        if not self.features.any_enabled():
            raise ConfigurationError("features", "at least one feature must be enabled")

        tuning = self.tuning
        for name in (
            "max_pve_backup_size_bytes",
            "chunk_size_bytes",
            "chunk_threshold_bytes",
            "pvesh_timeout_seconds",
            "command_timeout_seconds",
        ):
            if getattr(tuning, name) < 0:
                raise ConfigurationError(name, "must not be negative")
        if tuning.chunking_enabled and tuning.chunk_size_bytes == 0:
            raise ConfigurationError("chunk_size_bytes", "must be positive when chunking")
        if tuning.min_free_space_gb < 0 or tuning.space_safety_factor < 0:
            raise ConfigurationError("min_free_space_gb", "must not be negative")

        prefix = self.paths.system_root_prefix
        if prefix and not os.path.isabs(prefix):
            raise ConfigurationError(
                "system_root_prefix", f"must be an absolute path, got {prefix!r}"
            )

        for group_name in ("exclude_patterns", "pxar_exclude_patterns"):
            for pattern in getattr(tuning, group_name):
                try:
                    validate_pattern(pattern)
                except ValueError as error:
                    raise ConfigurationError(group_name, str(error)) from error

        try:
            parse_compression_type(tuning.compression)
        except ValueError as error:
            raise ConfigurationError("compression", str(error)) from error
        mode = (tuning.compression_mode or "").strip().lower()
        if mode and mode not in {m.value for m in CompressionMode}:
            raise ConfigurationError("compression_mode", f"unknown mode {mode!r}")
        tuning.compression_mode = normalize_mode(mode).value
        if tuning.compression_threads < 0:
            tuning.compression_threads = 0

        for name, default in (
            ("datastore_concurrency", 1),
            ("intra_concurrency", 1),
            ("pxar_max_roots", DEFAULT_PXAR_MAX_ROOTS),
        ):
            if getattr(tuning, name) <= 0:
                setattr(tuning, name, default)

        if self.encryption.enabled:
            recipients = [r.strip() for r in self.encryption.recipients if r.strip()]
            if not recipients:
                raise ConfigurationError(
                    "encryption.recipients", "encryption enabled without recipients"
                )
            for recipient in recipients:
                if not (_AGE_RECIPIENT.match(recipient) or _SSH_RECIPIENT.match(recipient)):
                    raise ConfigurationError(
                        "encryption.recipients", f"malformed recipient {recipient!r}"
                    )
            self.encryption.recipients = recipients

        return self

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["pbs_auth"]["password"] = "***" if self.pbs_auth.password else ""
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EngineConfig:
        config = cls()
        if not isinstance(data, dict):
            raise ConfigurationError("config", "top-level JSON value must be an object")
        for key, value in data.items():
            current = getattr(config, key, None)
            if current is None or key.startswith("_"):
                log.warning(f"Ignoring unknown configuration key: {key}")
                continue
            if hasattr(current, "__dataclass_fields__"):
                if not isinstance(value, dict):
                    raise ConfigurationError(key, "expected an object")
                _apply_group(key, current, value)
            else:
                setattr(config, key, value)
        return config


def _apply_group(group_name: str, target: Any, values: dict[str, Any]) -> None:
    known = {f.name: f for f in fields(target)}
    for key, value in values.items():
        if key not in known:
            log.warning(f"Ignoring unknown configuration key: {group_name}.{key}")
            continue
        current = getattr(target, key)
        if isinstance(current, bool):
            if not isinstance(value, bool):
                raise ConfigurationError(f"{group_name}.{key}", "expected true or false")
        elif isinstance(current, (int, float)):
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ConfigurationError(f"{group_name}.{key}", "expected a number")
        elif isinstance(current, list):
            if isinstance(value, str):
                value = [item.strip() for item in value.split(",") if item.strip()]
            elif not isinstance(value, list):
                raise ConfigurationError(f"{group_name}.{key}", "expected a list")
            value = [str(item) for item in value]
        elif isinstance(current, str) and not isinstance(value, str):
            raise ConfigurationError(f"{group_name}.{key}", "expected a string")
        setattr(target, key, value)


def apply_environment(config: EngineConfig, environ: dict[str, str] | None = None) -> None:
    """Fill PBS credentials from the environment when the file leaves them empty."""
    environ = os.environ if environ is None else environ
    auth = config.pbs_auth
    auth.repository = auth.repository or environ.get("PBS_REPOSITORY", "").strip()
    auth.password = auth.password or environ.get("PBS_PASSWORD", "")
    auth.fingerprint = auth.fingerprint or environ.get("PBS_FINGERPRINT", "").strip()


def load_config(path: Path | str | None = None) -> EngineConfig:
    """Load a JSON config file over the defaults.

    A missing file yields the defaults; an unreadable or malformed file
    raises ConfigurationError.
    """
    path = Path(path) if path is not None else CONFIG_PATH
    if not path.exists():
        log.debug(f"Config file {path} not found, using defaults")
        config = EngineConfig()
    else:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as error:
            raise ConfigurationError(str(path), f"cannot read config: {error}") from error
        config = EngineConfig.from_dict(data)
        if not config.paths.config_file_path:
            config.paths.config_file_path = str(path)
    apply_environment(config)
    return config


def save_config(config: EngineConfig, path: Path | str) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    data = asdict(config)
    path.write_text(json.dumps(data, indent=2, sort_keys=True), encoding="utf-8")
