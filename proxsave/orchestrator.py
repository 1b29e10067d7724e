"""Top-level backup sequence.

validate config -> staging -> detect host type -> PVE/PBS collector ->
system collector -> chunking -> manifest -> archive, verify, sidecars ->
release staging.

Collector failures are logged and the run continues; archive failures are
fatal for the run.
"""

from __future__ import annotations

import os
import shutil
import subprocess
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

from proxsave.__version__ import __version__
from proxsave.archive.archiver import Archiver, archive_name, check_free_space, directory_size
from proxsave.archive.checksum import (
    ArchiveMetadata,
    checksum_path,
    metadata_path,
    write_checksum,
    write_metadata,
)
from proxsave.archive.compression import CompressionSettings, Which, build_compression_settings
from proxsave.archive.verification import verify_archive
from proxsave.collect.base import BaseCollector, CollectionSession, CollectorDeps, short_hostname
from proxsave.collect.manifest import build_manifest, format_timestamp, write_manifest
from proxsave.collect.pbs import PBSCollector
from proxsave.collect.pve import PVECollector
from proxsave.collect.system import SystemCollector
from proxsave.config.settings import EngineConfig
from proxsave.context import RunContext
from proxsave.domain.models import CollectionStats, ProxmoxType
from proxsave.exceptions import CollectionError, OperationCancelledError, PreconditionError
from proxsave.fs.chunker import chunk_large_files
from proxsave.fs.staging import StagingDirectory
from proxsave.logging import LoggerFactory, new_job_id, operation_context
from proxsave.process.runner import ensure_system_path


@dataclass
class BackupResult:
    hostname: str
    proxmox_type: ProxmoxType
    created_at: datetime
    stats: CollectionStats
    compression: Optional[CompressionSettings] = None
    manifest: dict = field(default_factory=dict)
    archive_path: Optional[Path] = None
    checksum: str = ""
    dry_run: bool = False
    chunked_files: int = 0
    collector_errors: dict[str, str] = field(default_factory=dict)
    staging_dir: Optional[Path] = None
    duration_seconds: float = 0.0

    def summary(self) -> dict:
        data = {
            "hostname": self.hostname,
            "proxmox_type": self.proxmox_type.value,
            "dry_run": self.dry_run,
            "archive": str(self.archive_path) if self.archive_path else None,
            "sha256": self.checksum or None,
            "chunked_files": self.chunked_files,
            "collector_errors": dict(self.collector_errors),
            "duration_seconds": round(self.duration_seconds, 2),
            "stats": self.stats.to_dict(),
        }
        if self.compression is not None:
            data["compression"] = {
                "requested": self.compression.requested.value,
                "effective": self.compression.effective.value,
            }
        return data


class Orchestrator:
    """Runs one backup from configuration to finished archive."""

    def __init__(
        self,
        config: EngineConfig,
        *,
        ctx: Optional[RunContext] = None,
        deps: Optional[CollectorDeps] = None,
        hostname: Optional[str] = None,
        now: Optional[datetime] = None,
        job_id: Optional[str] = None,
        which: Which = shutil.which,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
    ):
        self.config = config
        self.ctx = ctx or RunContext.background()
        self.deps = deps or CollectorDeps()
        self.hostname = hostname or short_hostname()
        self.now = now
        self.job_id = job_id or new_job_id("backup")
        self.which = which
        self.popen = popen
        self.log = LoggerFactory.for_orchestrator(self.job_id)

    def detect_proxmox_type(self) -> ProxmoxType:
        paths = self.config.paths
        if os.path.isdir(paths.system_path(paths.pve_config_path)):
            return ProxmoxType.PVE
        if os.path.isdir(paths.system_path(paths.pbs_config_path)):
            return ProxmoxType.PBS
        return ProxmoxType.UNKNOWN

    def run(self) -> BackupResult:
        """Execute the full backup sequence.

        Raises:
            ConfigurationError: Invalid engine configuration
            ArchiveError: Archive creation, verification or space check failed
            OperationCancelledError: Run cancelled or deadline passed
        """
        config = self.config.validate()
        ensure_system_path()
        created_at = self.now or datetime.now(timezone.utc)
        started = time.monotonic()
        tuning = config.tuning

        with operation_context("backup", job_id=self.job_id, hostname=self.hostname) as log:
            proxmox_type = self.detect_proxmox_type()
            log.info(f"Detected host type: {proxmox_type.value}")

            staging = StagingDirectory(
                self.hostname, base_dir=config.paths.staging_base_dir or None, now=created_at
            )
            staging_root = staging.acquire()
            session = CollectionSession(
                config,
                staging_root,
                ctx=self.ctx,
                deps=self.deps,
                hostname=self.hostname,
                created_at=created_at,
                job_id=self.job_id,
            )
            session.proxmox_type = proxmox_type
            result = BackupResult(
                hostname=self.hostname,
                proxmox_type=proxmox_type,
                created_at=created_at,
                stats=session.stats,
                dry_run=session.dry_run,
            )

            succeeded = False
            try:
                self._collect(session, result)
                compression = build_compression_settings(
                    tuning.compression,
                    tuning.compression_level,
                    tuning.compression_mode,
                    tuning.compression_threads,
                    which=self.which,
                )
                result.compression = compression

                if tuning.chunking_enabled:
                    result.chunked_files = self._chunk(staging_root)

                result.manifest = build_manifest(
                    session.recorder,
                    hostname=self.hostname,
                    proxmox_type=proxmox_type,
                    created_at=created_at,
                    compression={
                        "requested": compression.requested.value,
                        "effective": compression.effective.value,
                    },
                )
                write_manifest(staging_root, result.manifest)

                if session.dry_run:
                    log.info("[DRY RUN] Skipping archive creation")
                else:
                    self._archive(staging_root, result, compression)
                succeeded = True
            finally:
                if not succeeded and config.keep_staging_on_failure:
                    staging.retain()
                    result.staging_dir = staging_root
                    log.warning(f"Backup failed; staging directory kept at {staging_root}")
                staging.release()

            result.duration_seconds = time.monotonic() - started
            stats = result.stats
            log.info(
                f"Collected {stats.files_processed} files ({stats.bytes_collected} bytes), "
                f"{stats.files_failed} failed, {stats.files_not_found} not found, "
                f"{stats.files_skipped} skipped"
            )
        return result

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _run_collector(self, collector: BaseCollector, result: BackupResult) -> None:
        try:
            collector.collect()
        except PreconditionError as error:
            self.log.warning(f"{collector.name} collector skipped: {error}")
            result.collector_errors[collector.name] = str(error)
        except CollectionError as error:
            self.log.error(f"{collector.name} collector aborted: {error}")
            result.collector_errors[collector.name] = str(error)
        except OSError as error:
            self.log.error(f"{collector.name} collector failed: {error}")
            result.collector_errors[collector.name] = str(error)
        except OperationCancelledError:
            raise
        except Exception as error:
            self.log.exception(f"{collector.name} collector crashed: {error}")
            result.collector_errors[collector.name] = f"{type(error).__name__}: {error}"

    def _collect(self, session: CollectionSession, result: BackupResult) -> None:
        if session.proxmox_type is ProxmoxType.PVE:
            self._run_collector(PVECollector(session), result)
        elif session.proxmox_type is ProxmoxType.PBS:
            self._run_collector(PBSCollector(session), result)
        else:
            self.log.warning("No Proxmox installation detected; collecting system files only")
        self.ctx.check()
        self._run_collector(SystemCollector(session), result)

    def _chunk(self, staging_root: Path) -> int:
        tuning = self.config.tuning
        try:
            return chunk_large_files(
                staging_root,
                chunk_size=tuning.chunk_size_bytes,
                threshold=tuning.chunk_threshold_bytes,
                ctx=self.ctx,
            )
        except OSError as error:
            self.log.error(f"Chunking failed: {error}")
            return 0

    def _archive(
        self, staging_root: Path, result: BackupResult, compression: CompressionSettings
    ) -> None:
        config = self.config
        archiver = Archiver(
            compression,
            config.encryption,
            ctx=self.ctx,
            job_id=self.job_id,
            which=self.which,
            popen=self.popen,
        )
        output_dir = Path(config.paths.output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        when = result.created_at.astimezone()
        output = output_dir / archive_name(
            self.hostname, result.proxmox_type.value, archiver.extension, when
        )

        check_free_space(
            output_dir,
            directory_size(staging_root),
            config.tuning.min_free_space_gb,
            config.tuning.space_safety_factor,
        )

        try:
            archiver.create(staging_root, output)
            if config.tuning.verify_archive:
                verify_archive(
                    output,
                    compression.effective,
                    encrypted=archiver.encrypted,
                    runner=self.deps.runner,
                    ctx=self.ctx,
                    job_id=self.job_id,
                )
            _sidecar, digest = write_checksum(output, self.ctx)
            write_metadata(
                output,
                ArchiveMetadata(
                    archive_path=str(output),
                    archive_size=output.stat().st_size,
                    sha256=digest,
                    created_at=format_timestamp(result.created_at),
                    requested_compression=compression.requested.value,
                    compression_type=compression.effective.value,
                    compression_level=compression.level,
                    compression_mode=compression.mode.value,
                    proxmox_type=result.proxmox_type.value,
                    hostname=self.hostname,
                    script_version=__version__,
                    encryption_mode="age" if archiver.encrypted else "plain",
                ),
            )
        except BaseException:
            self._remove_partial(output)
            raise
        result.archive_path = output
        result.checksum = digest

    def _remove_partial(self, output: Path) -> None:
        for path in (output, checksum_path(output), metadata_path(output)):
            try:
                path.unlink()
                self.log.debug(f"Removed partial output {path}")
            except FileNotFoundError:
                continue
            except OSError as error:
                self.log.warning(f"Could not remove partial output {path}: {error}")
