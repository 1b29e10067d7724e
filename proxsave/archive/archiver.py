"""Stream the staging tree into a compressed, optionally encrypted tar archive.

Pipeline:

    tar writer (thread) -> compressor (child) -> age (child) -> output file

In-process gzip and uncompressed archives skip the compressor child. The
tar writer only ever reads from the staging tree.
"""

from __future__ import annotations

import gzip
import os
import shutil
import subprocess
import tarfile
import threading
from datetime import datetime
from pathlib import Path
from typing import IO, Callable, Iterator, Optional, Sequence

import psutil

from proxsave.archive.compression import (
    CompressionSettings,
    CompressionType,
    Which,
    build_compressor_command,
)
from proxsave.config.settings import EncryptionOptions
from proxsave.context import RunContext
from proxsave.exceptions import (
    CompressionError,
    EncryptionError,
    InsufficientSpaceError,
)
from proxsave.logging import LoggerFactory, operation_context

ARCHIVE_MODE = 0o640
ENCRYPTED_SUFFIX = ".age"
GIB = 1024 ** 3
STDERR_TAIL_LINES = 20


def archive_name(
    hostname: str,
    proxmox_type: str,
    extension: str,
    when: Optional[datetime] = None,
) -> str:
    """``<hostname>-<type>-backup-<YYYYmmdd-HHMMSS><ext>``"""
    when = when or datetime.now()
    return f"{hostname}-{proxmox_type}-backup-{when.strftime('%Y%m%d-%H%M%S')}{extension}"


def directory_size(root: Path | str) -> int:
    total = 0
    for dirpath, _dirnames, filenames in os.walk(root):
        for name in filenames:
            try:
                total += os.lstat(os.path.join(dirpath, name)).st_size
            except OSError:
                continue
    return total


def check_free_space(
    output_dir: Path | str,
    staging_size: int,
    min_free_space_gb: float = 0.0,
    safety_factor: float = 1.0,
) -> int:
    """Require enough room in ``output_dir`` for the archive; returns free bytes.

    Raises:
        InsufficientSpaceError: Free space below the larger of both limits
    """
    required = max(int(min_free_space_gb * GIB), int(staging_size * safety_factor))
    free = psutil.disk_usage(str(output_dir)).free
    if free < required:
        raise InsufficientSpaceError(str(output_dir), free, required)
    return free


def iter_staging_entries(root: Path) -> Iterator[tuple[Path, str]]:
    """Yield ``(path, arcname)`` for every entry below ``root`` in sorted order."""
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        current = Path(dirpath)
        names = sorted([*dirnames, *filenames])
        for name in names:
            path = current / name
            rel = path.relative_to(root).as_posix()
            yield path, f"./{rel}"


def _pax_info(tar: tarfile.TarFile, path: Path, arcname: str) -> Optional[tarfile.TarInfo]:
    info = tar.gettarinfo(str(path), arcname=arcname)
    if info is None:
        return None
    st = path.lstat()
    info.mtime = st.st_mtime
    info.pax_headers = {
        "atime": repr(st.st_atime or st.st_mtime),
        "ctime": repr(st.st_ctime or st.st_mtime),
    }
    return info


def write_tar(ctx: RunContext, root: Path | str, fileobj: IO[bytes], log=None) -> int:
    """Write the tree below ``root`` as a PAX tar stream; returns the entry count."""
    root = Path(root)
    count = 0
    with tarfile.open(fileobj=fileobj, mode="w|", format=tarfile.PAX_FORMAT) as tar:
        for path, arcname in iter_staging_entries(root):
            ctx.check()
            info = _pax_info(tar, path, arcname)
            if info is None:
                if log is not None:
                    log.warning(f"Skipping unsupported file type: {path}")
                continue
            if info.isreg():
                with open(path, "rb") as handle:
                    tar.addfile(info, handle)
            else:
                tar.addfile(info)
            count += 1
    return count


def _drain_stderr(stream: IO[bytes], label: str, tail: list[str], log) -> None:
    for raw in iter(stream.readline, b""):
        line = raw.decode("utf-8", errors="replace").rstrip()
        if not line:
            continue
        tail.append(line)
        del tail[:-STDERR_TAIL_LINES]
        log.info(f"[{label.upper()}] {line}")
    stream.close()


class _Stage:
    """One child process of the pipeline plus its stderr drainer."""

    def __init__(self, label: str, process: subprocess.Popen, log):
        self.label = label
        self.process = process
        self.stderr_tail: list[str] = []
        self.drainer = threading.Thread(
            target=_drain_stderr,
            args=(process.stderr, label, self.stderr_tail, log),
            name=f"{label}-stderr",
            daemon=True,
        )
        self.drainer.start()

    @property
    def stderr(self) -> str:
        return "\n".join(self.stderr_tail)

    def kill(self) -> None:
        if self.process.poll() is None:
            self.process.kill()

    def wait(self, ctx: RunContext, poll_interval: float = 0.1) -> int:
        while True:
            try:
                code = self.process.wait(timeout=poll_interval)
                break
            except subprocess.TimeoutExpired:
                err = ctx.error()
                if err is not None:
                    self.kill()
                    self.process.wait()
                    self.drainer.join()
                    raise err
        self.drainer.join()
        return code


class Archiver:
    """Builds one archive from a staging tree."""

    def __init__(
        self,
        settings: CompressionSettings,
        encryption: Optional[EncryptionOptions] = None,
        *,
        ctx: Optional[RunContext] = None,
        job_id: Optional[str] = None,
        which: Which = shutil.which,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
    ):
        self.settings = settings
        self.encryption = encryption or EncryptionOptions()
        self.ctx = ctx or RunContext.background()
        self.job_id = job_id
        self.which = which
        self.popen = popen
        self.log = LoggerFactory.for_archive(job_id)
        self.stderr_log = LoggerFactory.for_compressor(settings.effective.value, job_id)

    @property
    def encrypted(self) -> bool:
        return self.encryption.enabled

    @property
    def extension(self) -> str:
        ext = self.settings.extension
        return ext + ENCRYPTED_SUFFIX if self.encrypted else ext

    def age_command(self) -> list[str]:
        if not self.encryption.recipients:
            raise EncryptionError("no age recipients configured")
        if self.which("age") is None:
            raise EncryptionError("age not found on PATH")
        cmd = ["age"]
        for recipient in self.encryption.recipients:
            cmd.extend(["-r", recipient])
        return cmd

    def create(self, staging_root: Path | str, output_path: Path | str) -> Path:
        """Write the archive for ``staging_root`` to ``output_path``.

        Raises:
            CompressionError: Compressor exited non-zero
            EncryptionError: age missing, unconfigured or failed
            OperationCancelledError: Run cancelled or deadline passed
        """
        staging_root = Path(staging_root)
        output_path = Path(output_path)
        settings = self.settings
        age_cmd = self.age_command() if self.encrypted else None

        with operation_context(
            "archive",
            job_id=self.job_id,
            output=str(output_path),
            compression=settings.effective.value,
        ) as log:
            if settings.fallback:
                log.warning(
                    f"Requested {settings.requested.value} compression unavailable; "
                    f"using {settings.effective.value}"
                )
            output_path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(output_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, ARCHIVE_MODE)
            os.fchmod(fd, ARCHIVE_MODE)
            with os.fdopen(fd, "wb") as out:
                self._stream(staging_root, out, age_cmd)
            log.info(f"Archive written: {output_path} ({output_path.stat().st_size} bytes)")
        return output_path

    def _spawn(self, label: str, cmd: Sequence[str], stdout) -> _Stage:
        self.log.debug(f"Starting {label}: {' '.join(cmd)}")
        try:
            process = self.popen(
                list(cmd),
                stdin=subprocess.PIPE,
                stdout=stdout,
                stderr=subprocess.PIPE,
            )
        except FileNotFoundError as error:
            if label == "age":
                raise EncryptionError(f"age not executable: {error}") from error
            raise CompressionError(label, -1, str(error)) from error
        return _Stage(label, process, self.stderr_log)

    def _tar_into(self, root: Path, sink: IO[bytes]) -> None:
        if self.settings.effective is CompressionType.GZIP:
            with gzip.GzipFile(
                filename="", mode="wb", fileobj=sink, compresslevel=self.settings.level
            ) as gz:
                count = write_tar(self.ctx, root, gz, self.log)
        else:
            count = write_tar(self.ctx, root, sink, self.log)
        self.log.debug(f"Tar stream complete ({count} entries)")

    def _stream(self, root: Path, out: IO[bytes], age_cmd: Optional[list[str]]) -> None:
        stages: list[_Stage] = []
        downstream = out
        try:
            if age_cmd is not None:
                age = self._spawn("age", age_cmd, downstream)
                stages.append(age)
                downstream = age.process.stdin
            if self.settings.effective.external:
                cmd = build_compressor_command(self.settings, self.which)
                compressor = self._spawn(self.settings.effective.value, cmd, downstream)
                if downstream is not out:
                    # the compressor holds its own copy of age's stdin
                    downstream.close()
                stages.append(compressor)
                downstream = compressor.process.stdin
        except BaseException:
            for stage in stages:
                stage.kill()
            raise

        if not stages:
            self._tar_into(root, out)
            return

        writer_errors: list[BaseException] = []
        head = downstream

        def worker() -> None:
            try:
                self._tar_into(root, head)
            except BaseException as error:  # reported by the waiting thread
                writer_errors.append(error)
            finally:
                try:
                    head.close()
                except OSError:
                    pass

        writer = threading.Thread(target=worker, name="tar-writer", daemon=True)
        writer.start()
        writer.join()

        if writer_errors and not isinstance(writer_errors[0], BrokenPipeError):
            for stage in stages:
                stage.kill()
            for stage in stages:
                stage.process.wait()
                stage.drainer.join()
            raise writer_errors[0]

        self._finish(stages)
        if writer_errors:
            raise writer_errors[0]

    def _finish(self, stages: list[_Stage]) -> None:
        """Wait for the children, upstream first, and map failures to errors."""
        error: Optional[Exception] = None
        for stage in reversed(stages):
            code = stage.wait(self.ctx)
            if code == 0:
                continue
            if stage.label == "age":
                failure = EncryptionError(f"age exited with code {code}: {stage.stderr or 'no output'}")
                if error is not None:
                    self.log.warning(f"Encryption finalization also failed: {failure}")
                    continue
                error = failure
            elif error is None:
                error = CompressionError(stage.label, code, stage.stderr)
        if error is not None:
            raise error
