"""Metadata-preserving file and directory copies into the staging tree."""

from __future__ import annotations

import os
import shutil
import stat
from pathlib import Path
from typing import Callable, Optional

from proxsave.context import RunContext
from proxsave.domain.models import CollectionStats, ManifestEntry, ManifestStatus
from proxsave.logging import get_logger

log = get_logger(source=__name__, tags=["fs"])

COPY_BUFFER_SIZE = 1024 * 1024
REPORT_FILE_MODE = 0o640
STAGING_DIR_MODE = 0o755

# Returns an exclusion entry (skipped/disabled) or None to copy the path
ExclusionDecider = Callable[[str, str], Optional[ManifestEntry]]
EntryRecorder = Callable[[Path, ManifestEntry], None]


def _remove_existing(path: Path) -> None:
    if not os.path.lexists(path):
        return
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink()


class FilesystemWriter:
    """Writes into the staging tree and counts directories it creates.

    File outcomes are returned as ``ManifestEntry`` values; the caller
    records them so that every file is counted exactly once.
    """

    def __init__(
        self,
        stats: CollectionStats,
        *,
        lstat: Callable[[str], os.stat_result] = os.lstat,
        privileged: bool | None = None,
    ):
        self.stats = stats
        self._lstat = lstat
        self.privileged = os.geteuid() == 0 if privileged is None else privileged

    def ensure_dir(self, path: Path | str) -> int:
        """Create ``path`` and missing parents; return how many were created."""
        path = Path(path)
        missing = []
        current = path
        while not current.exists():
            missing.append(current)
            if current.parent == current:
                break
            current = current.parent

        created = 0
        for directory in reversed(missing):
            try:
                os.mkdir(directory, STAGING_DIR_MODE)
                created += 1
            except FileExistsError:
                continue
        if created:
            self.stats.add_dirs_created(created)
        return created

    def copy_file(self, src: Path | str, dest: Path | str) -> ManifestEntry:
        """Copy one entry, preserving symlinks, mode, owner and timestamps."""
        src = str(src)
        dest = Path(dest)
        try:
            st = self._lstat(src)
        except FileNotFoundError:
            return ManifestEntry.not_found()
        except OSError as error:
            return ManifestEntry.failed(f"stat {src}: {error}")

        if stat.S_ISLNK(st.st_mode):
            return self._copy_symlink(src, dest, st)

        if not stat.S_ISREG(st.st_mode):
            log.debug(f"Skipping non-regular file {src}")
            return ManifestEntry.skipped("not a regular file")

        try:
            self.ensure_dir(dest.parent)
            _remove_existing(dest)
            written = 0
            fd = os.open(dest, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
            with open(fd, "wb") as out, open(src, "rb") as source:
                while True:
                    block = source.read(COPY_BUFFER_SIZE)
                    if not block:
                        break
                    out.write(block)
                    written += len(block)
            self._apply_metadata(dest, st)
        except FileNotFoundError:
            self._discard(dest)
            return ManifestEntry.not_found()
        except OSError as error:
            self._discard(dest)
            return ManifestEntry.failed(f"copy {src}: {error}")
        return ManifestEntry.collected(written)

    def _copy_symlink(self, src: str, dest: Path, st: os.stat_result) -> ManifestEntry:
        try:
            target = os.readlink(src)
            self.ensure_dir(dest.parent)
            _remove_existing(dest)
            os.symlink(target, dest)
            self._apply_owner(dest, st, follow_symlinks=False)
        except OSError as error:
            return ManifestEntry.failed(f"symlink {src}: {error}")
        return ManifestEntry.collected(0)

    def _apply_owner(self, dest: Path, st: os.stat_result, follow_symlinks: bool = True) -> None:
        if not self.privileged:
            return
        try:
            if follow_symlinks:
                os.chown(dest, st.st_uid, st.st_gid)
            else:
                os.lchown(dest, st.st_uid, st.st_gid)
        except OSError as error:
            log.debug(f"Could not set owner {st.st_uid}:{st.st_gid} on {dest}: {error}")

    def _apply_metadata(self, dest: Path, st: os.stat_result) -> None:
        self._apply_owner(dest, st)
        os.chmod(dest, stat.S_IMODE(st.st_mode))
        os.utime(dest, ns=(st.st_atime_ns, st.st_mtime_ns))

    def _discard(self, dest: Path) -> None:
        try:
            if os.path.lexists(dest):
                dest.unlink()
        except OSError as error:
            log.debug(f"Could not remove partial copy {dest}: {error}")

    def copy_tree(
        self,
        ctx: RunContext,
        src: Path | str,
        dest: Path | str,
        *,
        record: EntryRecorder,
        exclude: ExclusionDecider | None = None,
    ) -> bool:
        """Walk ``src`` and copy it under ``dest``.

        Excluded directories are pruned. Errors on single entries are logged
        and the walk continues. Returns False when ``src`` is not a directory.
        """
        src = Path(src)
        dest = Path(dest)
        if not src.is_dir() or src.is_symlink():
            return False

        def on_walk_error(error: OSError) -> None:
            log.warning(f"Cannot read {error.filename}: {error.strerror or error}")

        copied_dirs: list[tuple[Path, Path]] = [(src, dest)]
        self.ensure_dir(dest)

        for root, dirnames, filenames in os.walk(src, onerror=on_walk_error):
            ctx.check()
            root_path = Path(root)
            target_root = dest / root_path.relative_to(src)

            files = sorted(filenames)
            kept_dirs = []
            for name in sorted(dirnames):
                source_path = root_path / name
                if source_path.is_symlink():
                    files.append(name)
                    continue
                excluded = exclude(str(source_path), str(target_root / name)) if exclude else None
                if excluded is not None:
                    record(target_root / name, excluded)
                    continue
                kept_dirs.append(name)
                try:
                    self.ensure_dir(target_root / name)
                    copied_dirs.append((source_path, target_root / name))
                except OSError as error:
                    log.warning(f"Cannot create {target_root / name}: {error}")
                    kept_dirs.remove(name)
            dirnames[:] = kept_dirs

            for name in files:
                ctx.check()
                source_path = root_path / name
                target_path = target_root / name
                excluded = exclude(str(source_path), str(target_path)) if exclude else None
                if excluded is not None:
                    record(target_path, excluded)
                    continue
                entry = self.copy_file(source_path, target_path)
                if entry.status is ManifestStatus.FAILED:
                    log.warning(f"Failed to copy {source_path}: {entry.error}")
                record(target_path, entry)

        for source_dir, target_dir in reversed(copied_dirs):
            try:
                st = os.stat(source_dir)
                os.chmod(target_dir, stat.S_IMODE(st.st_mode))
                os.utime(target_dir, ns=(st.st_atime_ns, st.st_mtime_ns))
            except OSError as error:
                log.debug(f"Could not apply directory metadata to {target_dir}: {error}")
        return True

    def write_report(
        self, path: Path | str, data: bytes | str, mode: int = REPORT_FILE_MODE
    ) -> int:
        """Write generated content, creating parents on demand."""
        path = Path(path)
        if isinstance(data, str):
            data = data.encode("utf-8")
        self.ensure_dir(path.parent)
        _remove_existing(path)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, mode)
        with open(fd, "wb") as out:
            out.write(data)
        os.chmod(path, mode)
        return len(data)
