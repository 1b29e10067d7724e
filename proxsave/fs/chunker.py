"""Large-file chunking for the staging tree.

Files above the threshold are split into ``chunked_files/<rel>.NNN.chunk``
(1-based, zero padded to three digits) and replaced in place by a
``<file>.chunked`` JSON marker. Reassembly verifies the chunk set against the
marker before anything is written at the original path.
"""

from __future__ import annotations

import hashlib
import json
import os
import stat
import tempfile
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Optional

from proxsave.context import RunContext
from proxsave.exceptions import ChunkIntegrityError
from proxsave.logging import get_logger

log = get_logger(source=__name__, tags=["fs", "chunker"])

CHUNK_DIR_NAME = "chunked_files"
MARKER_SUFFIX = ".chunked"
CHUNK_SUFFIX = ".chunk"
METADATA_VERSION = 1

DEFAULT_CHUNK_SIZE = 10 * 1024 * 1024
DEFAULT_CHUNK_THRESHOLD = 50 * 1024 * 1024
CHUNK_BUFFER_SIZE = 1024 * 1024
CHUNK_DIR_PERM = 0o755
CHUNK_FILE_PERM = 0o640


@dataclass
class ChunkedFileMetadata:
    version: int
    size_bytes: int
    chunk_size_bytes: int
    chunk_count: int
    sha256: str
    mode: int
    uid: int
    gid: int
    mod_time_unix_nano: int

    def to_json(self) -> str:
        return json.dumps(asdict(self)) + "\n"

    @classmethod
    def from_dict(cls, data: dict) -> ChunkedFileMetadata:
        meta = cls(
            version=int(data.get("version", 0)),
            size_bytes=int(data.get("size_bytes", 0)),
            chunk_size_bytes=int(data.get("chunk_size_bytes", 0)),
            chunk_count=int(data.get("chunk_count", 0)),
            sha256=str(data.get("sha256", "")),
            mode=int(data.get("mode", 0o640)),
            uid=int(data.get("uid", -1)),
            gid=int(data.get("gid", -1)),
            mod_time_unix_nano=int(data.get("mod_time_unix_nano", 0)),
        )
        if meta.version != METADATA_VERSION:
            raise ValueError(f"unsupported chunk metadata version {meta.version}")
        if meta.chunk_count <= 0 or meta.chunk_size_bytes <= 0 or meta.size_bytes <= 0:
            raise ValueError(
                f"invalid chunk metadata (count={meta.chunk_count} "
                f"chunk_size={meta.chunk_size_bytes} size={meta.size_bytes})"
            )
        return meta


@dataclass(frozen=True)
class ChunkInfo:
    index: int
    path: Path


def chunk_path(base: Path, index: int) -> Path:
    return base.parent / f"{base.name}.{index:03d}{CHUNK_SUFFIX}"


def discover_chunks(base: Path) -> list[ChunkInfo]:
    """Return chunks for ``base`` sorted by numeric index."""
    prefix = base.name + "."
    try:
        entries = list(os.scandir(base.parent))
    except FileNotFoundError:
        return []
    chunks = []
    for entry in entries:
        name = entry.name
        if not name.startswith(prefix) or not name.endswith(CHUNK_SUFFIX):
            continue
        index_text = name[len(prefix):-len(CHUNK_SUFFIX)]
        if not index_text.isdigit():
            continue
        index = int(index_text)
        if index <= 0:
            continue
        chunks.append(ChunkInfo(index=index, path=Path(entry.path)))
    chunks.sort(key=lambda c: c.index)
    return chunks


def split_file(path: Path, dest_base: Path, chunk_size: int) -> tuple[int, int, str]:
    """Write ``path`` as numbered chunks; return (count, size, sha256)."""
    dest_base.parent.mkdir(parents=True, exist_ok=True, mode=CHUNK_DIR_PERM)
    hasher = hashlib.sha256()
    created: list[Path] = []
    total = 0
    try:
        with open(path, "rb") as source:
            index = 0
            while True:
                block = source.read(min(CHUNK_BUFFER_SIZE, chunk_size))
                if not block:
                    break
                index += 1
                target = chunk_path(dest_base, index)
                created.append(target)
                written = 0
                fd = os.open(target, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, CHUNK_FILE_PERM)
                with open(fd, "wb") as out:
                    while block:
                        out.write(block)
                        hasher.update(block)
                        written += len(block)
                        if written >= chunk_size:
                            break
                        block = source.read(min(CHUNK_BUFFER_SIZE, chunk_size - written))
                total += written
    except OSError:
        for target in created:
            _remove_quietly(target)
        raise
    if not created:
        raise OSError(f"chunking produced no output for {path}")
    return len(created), total, hasher.hexdigest()


def _remove_quietly(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as error:
        log.debug(f"Could not remove {path}: {error}")


def chunk_large_files(
    root: Path,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    threshold: int = DEFAULT_CHUNK_THRESHOLD,
    ctx: RunContext | None = None,
) -> int:
    """Split every regular file larger than ``threshold`` under ``root``.

    Returns the number of files chunked. A file that cannot be chunked is
    left untouched with a warning.
    """
    root = Path(root)
    chunk_size = chunk_size if chunk_size > 0 else DEFAULT_CHUNK_SIZE
    threshold = threshold if threshold > 0 else DEFAULT_CHUNK_THRESHOLD
    chunk_dir = root / CHUNK_DIR_NAME
    log.debug(f"Scanning {root} for files larger than {threshold} bytes")

    candidates: list[tuple[Path, os.stat_result]] = []
    for dirpath, dirnames, filenames in os.walk(root):
        if ctx is not None:
            ctx.check()
        current = Path(dirpath)
        if current == root and CHUNK_DIR_NAME in dirnames:
            dirnames.remove(CHUNK_DIR_NAME)
        dirnames.sort()
        for name in sorted(filenames):
            path = current / name
            try:
                st = path.lstat()
            except OSError:
                continue
            if stat.S_ISREG(st.st_mode) and st.st_size > threshold:
                candidates.append((path, st))

    processed = 0
    for path, st in candidates:
        if ctx is not None:
            ctx.check()
        rel = path.relative_to(root)
        dest_base = chunk_dir / rel
        try:
            count, size, digest = split_file(path, dest_base, chunk_size)
        except OSError as error:
            log.warning(f"Failed to chunk {path}: {error}")
            continue

        meta = ChunkedFileMetadata(
            version=METADATA_VERSION,
            size_bytes=size,
            chunk_size_bytes=chunk_size,
            chunk_count=count,
            sha256=digest,
            mode=stat.S_IMODE(st.st_mode),
            uid=st.st_uid,
            gid=st.st_gid,
            mod_time_unix_nano=st.st_mtime_ns,
        )
        marker = path.with_name(path.name + MARKER_SUFFIX)
        try:
            fd = os.open(marker, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, CHUNK_FILE_PERM)
            with open(fd, "w", encoding="utf-8") as out:
                out.write(meta.to_json())
            os.utime(marker, ns=(st.st_mtime_ns, st.st_mtime_ns))
            path.unlink()
        except OSError as error:
            log.warning(f"Failed to replace {path} with chunk marker: {error}")
            _remove_quietly(marker)
            for chunk in discover_chunks(dest_base):
                _remove_quietly(chunk.path)
            continue
        processed += 1
        log.debug(f"Chunked {rel} into {count} chunks")

    if processed:
        log.info(f"Chunking completed: {processed} large files processed")
    return processed


def read_marker(marker: Path) -> Optional[ChunkedFileMetadata]:
    """Parse a marker; an empty marker (legacy format) returns None."""
    text = marker.read_text(encoding="utf-8").strip()
    if not text:
        return None
    return ChunkedFileMetadata.from_dict(json.loads(text))


def validate_chunk_set(
    meta: Optional[ChunkedFileMetadata], chunks: list[ChunkInfo]
) -> None:
    """Raise ValueError if ``chunks`` cannot reproduce the original file."""
    if not chunks:
        raise ValueError("no chunk files present")
    for expected, chunk in enumerate(chunks, start=1):
        if chunk.index != expected:
            raise ValueError(
                f"missing or out-of-order chunk: expected index {expected}, got {chunk.index}"
            )

    sizes = []
    for chunk in chunks:
        st = chunk.path.stat()
        if not stat.S_ISREG(st.st_mode):
            raise ValueError(f"chunk is not a regular file: {chunk.path}")
        sizes.append(st.st_size)

    if meta is None:
        inferred = max(sizes)
        if inferred <= 0:
            raise ValueError("invalid chunk size inferred")
        for index, size in enumerate(sizes[:-1], start=1):
            if size != inferred:
                raise ValueError(
                    f"chunk size mismatch for index {index}: got {size}, expected {inferred}"
                )
        if sizes[-1] <= 0:
            raise ValueError(f"last chunk size invalid: {sizes[-1]}")
        return

    if meta.chunk_count != len(chunks):
        raise ValueError(
            f"chunk count mismatch: expected {meta.chunk_count}, found {len(chunks)}"
        )
    for index, size in enumerate(sizes, start=1):
        expected = meta.chunk_size_bytes
        if index == meta.chunk_count:
            expected = meta.size_bytes - meta.chunk_size_bytes * (meta.chunk_count - 1)
        if expected <= 0 or size != expected:
            raise ValueError(
                f"chunk size mismatch for index {index}: got {size}, expected {expected}"
            )


def _concatenate(dest: Path, chunks: list[ChunkInfo], meta: Optional[ChunkedFileMetadata]) -> None:
    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{dest.name}.reassemble-", suffix=".tmp", dir=dest.parent
    )
    tmp_path = Path(tmp_name)
    try:
        os.chmod(tmp_path, CHUNK_FILE_PERM)
        hasher = hashlib.sha256()
        written = 0
        with open(fd, "wb") as out:
            for chunk in chunks:
                with open(chunk.path, "rb") as source:
                    while True:
                        block = source.read(CHUNK_BUFFER_SIZE)
                        if not block:
                            break
                        out.write(block)
                        hasher.update(block)
                        written += len(block)
        if meta is not None:
            if written != meta.size_bytes:
                raise ChunkIntegrityError(
                    str(dest), f"size mismatch: got {written} bytes, expected {meta.size_bytes}"
                )
            if meta.sha256 and hasher.hexdigest() != meta.sha256:
                raise ChunkIntegrityError(str(dest), "sha256 mismatch after reassembly")
        os.replace(tmp_path, dest)
    except BaseException:
        _remove_quietly(tmp_path)
        raise


def _apply_metadata(path: Path, meta: ChunkedFileMetadata) -> None:
    if meta.uid >= 0 or meta.gid >= 0:
        try:
            os.chown(path, meta.uid, meta.gid)
        except OSError as error:
            log.debug(f"Failed to chown reassembled file {path}: {error}")
    try:
        os.chmod(path, meta.mode)
        os.utime(path, ns=(meta.mod_time_unix_nano, meta.mod_time_unix_nano))
    except OSError as error:
        log.debug(f"Failed to restore metadata on {path}: {error}")


def reassemble_file(root: Path, marker: Path) -> Path:
    """Rebuild the original file for one marker.

    Raises:
        ChunkIntegrityError: The chunk set or the rebuilt content does not
            match the marker; nothing is written at the original path.
    """
    root = Path(root)
    original = marker.with_name(marker.name[: -len(MARKER_SUFFIX)])
    rel = original.relative_to(root)
    chunks = discover_chunks(root / CHUNK_DIR_NAME / rel)
    try:
        meta = read_marker(marker)
        validate_chunk_set(meta, chunks)
    except (OSError, ValueError) as error:
        raise ChunkIntegrityError(str(rel), str(error)) from error
    if meta is None:
        log.warning(f"Legacy chunk marker without metadata for {rel}; completeness not verifiable")

    try:
        _concatenate(original, chunks, meta)
    except OSError as error:
        raise ChunkIntegrityError(str(rel), str(error)) from error
    if meta is not None:
        _apply_metadata(original, meta)

    _remove_quietly(marker)
    for chunk in chunks:
        _remove_quietly(chunk.path)
    return original


def _remove_empty_dirs(root: Path) -> None:
    for dirpath, _dirnames, _filenames in os.walk(root, topdown=False):
        try:
            os.rmdir(dirpath)
        except OSError:
            continue


def reassemble_chunked_files(root: Path) -> int:
    """Rebuild every chunked file under ``root``; return how many succeeded.

    Markers that fail validation are left in place with a warning.
    """
    root = Path(root)
    chunk_dir = root / CHUNK_DIR_NAME
    if not chunk_dir.is_dir():
        return 0

    markers = []
    for dirpath, dirnames, filenames in os.walk(root):
        if Path(dirpath) == root and CHUNK_DIR_NAME in dirnames:
            dirnames.remove(CHUNK_DIR_NAME)
        markers.extend(
            Path(dirpath) / name for name in sorted(filenames) if name.endswith(MARKER_SUFFIX)
        )

    reassembled = 0
    incomplete = False
    for marker in markers:
        try:
            reassemble_file(root, marker)
        except ChunkIntegrityError as error:
            log.warning(str(error))
            incomplete = True
            continue
        reassembled += 1

    if reassembled and not incomplete:
        _remove_empty_dirs(chunk_dir)
    return reassembled
