"""Shared state and helpers for the source collectors.

A ``CollectionSession`` holds everything one run shares between
collectors: the staging root, the statistics, the manifest recorder, the
exclusion patterns and the injected capabilities (process runner, lstat,
privilege detector). Collectors subclass ``BaseCollector`` and only
describe *what* to capture; the helpers here decide how outcomes are
recorded.
"""

from __future__ import annotations

import os
import socket
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable, Iterator, Mapping, Optional, Sequence

from proxsave.collect.manifest import ManifestRecorder
from proxsave.config.settings import EngineConfig, PBSAuth
from proxsave.context import RunContext
from proxsave.domain.models import (
    CollectionStats,
    ManifestEntry,
    ManifestSection,
    ManifestStatus,
    ProxmoxType,
)
from proxsave.exceptions import (
    CommandFailedError,
    CommandNotFoundError,
    DeadlineExceededError,
)
from proxsave.fs.exclusion import DEFAULT_EXCLUDE_PATTERNS, ExclusionSet
from proxsave.fs.writer import FilesystemWriter
from proxsave.logging import LoggerFactory, log_skip
from proxsave.process.privilege import (
    PrivilegeDetector,
    UnprivilegedInfo,
    classify_privilege_failure,
)
from proxsave.process.runner import ProcessRunner, summarize_output

INFO_DIR = "var/lib/proxsave-info"
DISABLED_TAG = "disabled"


@dataclass
class CollectorDeps:
    """Capabilities the collectors use to touch the host."""

    runner: ProcessRunner = field(default_factory=ProcessRunner)
    lstat: Callable[[str], os.stat_result] = os.lstat
    privilege: Callable[[], UnprivilegedInfo] = field(default_factory=PrivilegeDetector)


def short_hostname() -> str:
    return socket.gethostname().split(".")[0] or "localhost"


def sanitize_filename(name: str) -> str:
    """Make an identifier safe for use as a single path component."""
    if not name:
        return "entry"
    clean = name
    for ch in ("/", "\\", "@", ":"):
        clean = clean.replace(ch, "_")
    clean = clean.replace("..", "_")
    return clean or "entry"


def build_pbs_env(auth: PBSAuth, datastore: str | None = None) -> Optional[dict[str, str]]:
    """Environment for PBS client commands, or None without credentials.

    With ``datastore`` the repository is pointed at that datastore,
    replacing any datastore already present in the configured repository.
    """
    if not auth.configured():
        return None
    env: dict[str, str] = {}
    repository = auth.repository
    if datastore:
        if repository:
            if ":" in repository:
                repository = f"{repository.split(':', 1)[0]}:{datastore}"
            else:
                repository = f"{repository}:{datastore}"
        else:
            repository = f"root@pam@localhost:{datastore}"
    if repository:
        env["PBS_REPOSITORY"] = repository
    if auth.password:
        env["PBS_PASSWORD"] = auth.password
    if auth.fingerprint:
        env["PBS_FINGERPRINT"] = auth.fingerprint
    return env


class CollectionSession:
    """State shared by every collector of one run."""

    def __init__(
        self,
        config: EngineConfig,
        staging_root: Path | str,
        *,
        ctx: RunContext | None = None,
        deps: CollectorDeps | None = None,
        hostname: str | None = None,
        created_at: datetime | None = None,
        job_id: str | None = None,
        dry_run: bool | None = None,
    ):
        self.config = config
        self.staging_root = Path(staging_root)
        self.ctx = ctx or RunContext.background()
        self.deps = deps or CollectorDeps()
        self.hostname = hostname or short_hostname()
        self.created_at = created_at or datetime.now(timezone.utc)
        self.job_id = job_id
        self.dry_run = config.dry_run if dry_run is None else dry_run
        self.proxmox_type = ProxmoxType.UNKNOWN

        self.stats = CollectionStats()
        self.recorder = ManifestRecorder(self.stats)
        self.exclusions = ExclusionSet(
            [*config.tuning.exclude_patterns, *DEFAULT_EXCLUDE_PATTERNS],
            staging_root=str(self.staging_root),
            system_root_prefix=config.paths.system_root_prefix,
        )
        self.writer = FilesystemWriter(self.stats, lstat=self.deps.lstat)

    @property
    def runner(self) -> ProcessRunner:
        return self.deps.runner

    def system_path(self, path: str) -> str:
        return self.config.paths.system_path(path)

    def unprivileged(self) -> UnprivilegedInfo:
        return self.deps.privilege()


class BaseCollector:
    """Helpers shared by the PVE, PBS and system collectors."""

    name = "collector"
    section = ManifestSection.SYSTEM

    def __init__(self, session: CollectionSession):
        self.session = session
        self.config = session.config
        self.features = session.config.features
        self.paths = session.config.paths
        self.tuning = session.config.tuning
        self.ctx = session.ctx
        self.log = LoggerFactory.for_collector(self.name, session.job_id)
        session.recorder.open_section(self.section)

    def collect(self) -> None:
        raise NotImplementedError

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    @property
    def staging_root(self) -> Path:
        return self.session.staging_root

    def system_path(self, path: str) -> str:
        return self.session.system_path(path)

    def target_path(self, path: str) -> Path:
        """Staging location mirroring the logical host ``path``."""
        return self.staging_root / path.lstrip("/")

    def info_dir(self, *parts: str) -> Path:
        return self.staging_root.joinpath(INFO_DIR, *parts)

    def commands_dir(self, component: str) -> Path:
        return self.info_dir("commands", component)

    def runtime_dir(self, component: str) -> Path:
        return self.info_dir("runtime", component)

    def key_for(self, target: Path | str) -> str:
        target = Path(target)
        try:
            return target.relative_to(self.staging_root).as_posix()
        except ValueError:
            return target.as_posix()

    def exists(self, path: str) -> bool:
        """True when the logical host ``path`` exists (symlinks included)."""
        try:
            self.session.deps.lstat(self.system_path(path))
        except OSError:
            return False
        return True

    # ------------------------------------------------------------------
    # Manifest
    # ------------------------------------------------------------------

    def record(self, target: Path | str, entry: ManifestEntry) -> None:
        self.session.recorder.record(self.section, self.key_for(target), entry)

    def record_disabled(self, target: Path | str, reason: str) -> None:
        log_skip(self.log, f"Skipping {self.key_for(target)}: disabled by {reason}")
        self.record(target, ManifestEntry.disabled(f"disabled by {reason}"))

    @contextmanager
    def temporary_excludes(self, patterns: Iterable[str]) -> Iterator[None]:
        """Exclude ``patterns`` as feature-disabled for the enclosed copies only."""
        patterns = list(patterns)
        if patterns:
            self.log.debug(f"Temporary exclusions: {', '.join(patterns)}")
        with self.session.exclusions.scoped(patterns, tag=DISABLED_TAG):
            yield

    def exclusion_entry(self, source: str, dest: str) -> Optional[ManifestEntry]:
        """Manifest entry for an excluded path, or None if it is to be copied."""
        exclusions = self.session.exclusions
        for candidate in (source, dest):
            excluded, pattern = exclusions.match(candidate)
            if not excluded:
                continue
            if exclusions.tag_for(pattern) == DISABLED_TAG:
                return ManifestEntry.disabled(f"feature disabled ({pattern})")
            return ManifestEntry.skipped(f"excluded by {pattern}")
        return None

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    def copy_file(
        self, src: str, dest: Path | str | None = None, *, description: str = ""
    ) -> ManifestEntry:
        """Copy one logical host file into the staging tree and record it."""
        self.ctx.check()
        description = description or src
        target = Path(dest) if dest is not None else self.target_path(src)
        source = self.system_path(src)

        entry = self.exclusion_entry(source, str(target))
        if entry is None:
            entry = self.session.writer.copy_file(source, target)

        if entry.status is ManifestStatus.NOT_FOUND:
            self.log.debug(f"{description} not found: {source} (skipping)")
        elif entry.status is ManifestStatus.FAILED:
            self.log.warning(f"Failed to collect {description}: {entry.error}")
        elif entry.status is ManifestStatus.COLLECTED:
            self.log.trace(f"Collected {description}: {source}")
        self.record(target, entry)
        return entry

    def copy_files(self, paths: Sequence[str], description: str = "") -> None:
        for path in paths:
            self.copy_file(path, description=description or path)

    def copy_dir(
        self, src: str, dest: Path | str | None = None, *, description: str = ""
    ) -> bool:
        """Copy a logical host directory; returns False if it does not exist."""
        self.ctx.check()
        description = description or src
        target = Path(dest) if dest is not None else self.target_path(src)
        source = self.system_path(src)

        entry = self.exclusion_entry(source, str(target))
        if entry is not None:
            self.log.debug(f"Skipping directory {source} due to exclusion pattern")
            self.record(target, entry)
            return False

        copied = self.session.writer.copy_tree(
            self.ctx, source, target, record=self.record, exclude=self.exclusion_entry
        )
        if not copied:
            self.log.debug(f"{description} not found: {source} (skipping)")
        return copied

    def write_report(self, target: Path | str, data: bytes | str) -> bool:
        """Write generated content into the staging tree and record it."""
        target = Path(target)
        try:
            size = self.session.writer.write_report(target, data)
        except OSError as error:
            self.log.warning(f"Failed to write report {target}: {error}")
            self.record(target, ManifestEntry.failed(f"write {self.key_for(target)}: {error}"))
            return False
        self.record(target, ManifestEntry.collected(size))
        return True

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def _command_timeout(self, timeout: float | None) -> float | None:
        if timeout is not None:
            return timeout
        return self.tuning.command_timeout_seconds or None

    def capture_command(
        self,
        cmd: Sequence[str],
        output: Path | str | None = None,
        *,
        description: str,
        critical: bool = False,
        optional: bool = False,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
    ) -> Optional[bytes]:
        """Run ``cmd`` once and return its output, writing it to ``output``.

        Returns None when the command is unavailable, was not executed
        (dry run) or failed without being critical.

        Raises:
            CommandNotFoundError: Critical command is not on PATH
            CommandFailedError: Critical command exited non-zero
        """
        self.ctx.check()
        cmd = [str(part) for part in cmd]
        name = cmd[0]
        command_line = " ".join(cmd)
        target = Path(output) if output is not None else None

        _path, available = self.session.runner.locate(name)
        if not available:
            return self._command_unavailable(name, target, description, critical, optional)

        if self.session.dry_run:
            self.log.debug(f"[DRY RUN] Would execute command: {command_line}")
            return None

        run_ctx = self.ctx.with_timeout(self._command_timeout(timeout))
        try:
            result = self.session.runner.run_with_env(run_ctx, env, *cmd)
        except CommandNotFoundError:
            return self._command_unavailable(name, target, description, critical, optional)
        except DeadlineExceededError:
            self.ctx.check()
            return self._command_failed(
                cmd, target, description, critical, optional, -1, "command timed out"
            )

        if not result.ok:
            return self._command_failed(
                cmd, target, description, critical, optional, result.exit_code, result.text
            )

        if target is not None:
            self.write_report(target, result.output)
        self.log.trace(f"Collected {description} via `{command_line}`")
        return result.output

    def _command_unavailable(
        self,
        name: str,
        target: Path | None,
        description: str,
        critical: bool,
        optional: bool,
    ) -> None:
        if critical:
            if target is not None:
                self.record(target, ManifestEntry.failed(f"command not available: {name}"))
            raise CommandNotFoundError(name)
        self.log.debug(f"Command not available: {name} (skipping {description})")
        if target is not None and not optional:
            self.record(target, ManifestEntry.not_found(f"command not available: {name}"))
        return None

    def _command_failed(
        self,
        cmd: list[str],
        target: Path | None,
        description: str,
        critical: bool,
        optional: bool,
        exit_code: int,
        text: str,
    ) -> None:
        command_line = " ".join(cmd)
        summary = summarize_output(text)

        reason = ""
        if self.session.unprivileged().detected:
            reason = classify_privilege_failure(cmd[0], exit_code, text)
        if reason:
            log_skip(
                self.log,
                f"Skipping {description}: {reason} (unprivileged container, exit {exit_code})",
            )
            if target is not None:
                self.record(target, ManifestEntry.skipped(reason))
            return None

        if critical:
            if target is not None:
                self.record(target, ManifestEntry.failed(f"exit code {exit_code}: {summary}"))
            raise CommandFailedError(command_line, exit_code, summary)

        if optional:
            self.log.debug(
                f"Optional command {description} skipped: `{command_line}` exited {exit_code}"
            )
            return None

        self.log.warning(
            f"Skipping {description}: command `{command_line}` failed (exit {exit_code}). "
            f"Non-critical; backup continues. Output: {summary}"
        )
        if target is not None:
            self.record(target, ManifestEntry.failed(f"exit code {exit_code}: {summary}"))
        return None

    def collect_command(
        self,
        cmd: Sequence[str],
        output: Path | str,
        *mirrors: Path | str,
        description: str,
        critical: bool = False,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
    ) -> bool:
        """Run ``cmd`` once; write the bytes to ``output`` and every mirror."""
        data = self.capture_command(
            cmd, output, description=description, critical=critical, env=env, timeout=timeout
        )
        if data is None:
            return False
        for mirror in mirrors:
            self.write_report(mirror, data)
        return True

    def collect_command_optional(
        self,
        cmd: Sequence[str],
        output: Path | str,
        *mirrors: Path | str,
        description: str,
        timeout: float | None = None,
    ) -> bool:
        """Like ``collect_command`` but failures only reach the debug log."""
        data = self.capture_command(
            cmd, output, description=description, optional=True, timeout=timeout
        )
        if not data:
            return False
        for mirror in mirrors:
            self.write_report(mirror, data)
        return True

    def command_available(self, name: str) -> bool:
        return self.session.runner.locate(name)[1]
