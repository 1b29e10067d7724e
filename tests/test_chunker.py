"""Tests for large-file chunking and reassembly."""

import hashlib
import json
import os
import stat

import pytest

from proxsave.context import RunContext
from proxsave.exceptions import ChunkIntegrityError, OperationCancelledError
from proxsave.fs.chunker import (
    CHUNK_DIR_NAME,
    MARKER_SUFFIX,
    ChunkedFileMetadata,
    chunk_large_files,
    chunk_path,
    discover_chunks,
    read_marker,
    reassemble_chunked_files,
    reassemble_file,
)


BIG_MTIME_NS = 1_700_000_000_123_456_789


@pytest.fixture
def staged(tmp_path):
    """A staging tree with one large and one small file."""
    root = tmp_path / "stage"
    (root / "var" / "lib").mkdir(parents=True)
    big = root / "var" / "lib" / "config.db"
    big.write_bytes(bytes(range(256)) * 10)  # 2560 bytes
    os.chmod(big, 0o600)
    os.utime(big, ns=(BIG_MTIME_NS, BIG_MTIME_NS))
    (root / "etc").mkdir()
    (root / "etc" / "hosts").write_text("127.0.0.1 localhost\n")
    return root


class TestChunkLargeFiles:
    """Tests for chunk_large_files()."""

    def test_splits_files_above_threshold(self, staged):
        original = (staged / "var/lib/config.db").read_bytes()

        count = chunk_large_files(staged, chunk_size=1000, threshold=2000)

        assert count == 1
        assert not (staged / "var/lib/config.db").exists()
        base = staged / CHUNK_DIR_NAME / "var/lib/config.db"
        chunks = discover_chunks(base)
        assert [c.index for c in chunks] == [1, 2, 3]
        assert chunks[0].path.name == "config.db.001.chunk"
        assert b"".join(c.path.read_bytes() for c in chunks) == original

    def test_marker_describes_original(self, staged):
        original = (staged / "var/lib/config.db").read_bytes()

        chunk_large_files(staged, chunk_size=1000, threshold=2000)

        marker = staged / "var/lib" / ("config.db" + MARKER_SUFFIX)
        meta = read_marker(marker)
        assert meta.version == 1
        assert meta.size_bytes == len(original)
        assert meta.chunk_size_bytes == 1000
        assert meta.chunk_count == 3
        assert meta.sha256 == hashlib.sha256(original).hexdigest()
        assert meta.mode == 0o600

    def test_small_files_are_untouched(self, staged):
        chunk_large_files(staged, chunk_size=1000, threshold=2000)
        assert (staged / "etc/hosts").read_text() == "127.0.0.1 localhost\n"

    def test_nothing_to_chunk(self, staged):
        assert chunk_large_files(staged, chunk_size=1000, threshold=10_000) == 0
        assert not (staged / CHUNK_DIR_NAME).exists()

    def test_cancelled_context(self, staged):
        ctx = RunContext.background()
        ctx.cancel()
        with pytest.raises(OperationCancelledError):
            chunk_large_files(staged, chunk_size=1000, threshold=2000, ctx=ctx)


class TestDiscoverChunks:
    """Tests for discover_chunks()."""

    def test_orders_by_numeric_index(self, tmp_path):
        base = tmp_path / "x"
        for index in (1000, 2, 10, 999, 1, 9):
            (tmp_path / f"x.{index}.chunk").write_bytes(b"")
        (tmp_path / "x.0.chunk").write_bytes(b"")
        (tmp_path / "x.abc.chunk").write_bytes(b"")
        (tmp_path / "y.3.chunk").write_bytes(b"")

        chunks = discover_chunks(base)

        assert [c.index for c in chunks] == [1, 2, 9, 10, 999, 1000]
        assert chunks[-1].path == tmp_path / "x.1000.chunk"

    def test_missing_directory(self, tmp_path):
        assert discover_chunks(tmp_path / "absent" / "x") == []


class TestReassemble:
    """Tests for reassembly."""

    def test_round_trip_restores_content_mode_and_mtime(self, staged):
        original = (staged / "var/lib/config.db").read_bytes()
        chunk_large_files(staged, chunk_size=1000, threshold=2000)

        restored = reassemble_chunked_files(staged)

        big = staged / "var/lib/config.db"
        assert restored == 1
        assert big.read_bytes() == original
        assert stat.S_IMODE(big.stat().st_mode) == 0o600
        assert big.stat().st_mtime_ns == BIG_MTIME_NS
        assert not (staged / "var/lib" / ("config.db" + MARKER_SUFFIX)).exists()
        assert not (staged / CHUNK_DIR_NAME).exists()

    def test_missing_chunk_is_rejected(self, staged):
        chunk_large_files(staged, chunk_size=1000, threshold=2000)
        base = staged / CHUNK_DIR_NAME / "var/lib/config.db"
        chunk_path(base, 2).unlink()
        marker = staged / "var/lib" / ("config.db" + MARKER_SUFFIX)

        with pytest.raises(ChunkIntegrityError, match="expected index 2"):
            reassemble_file(staged, marker)
        assert marker.exists()
        assert not (staged / "var/lib/config.db").exists()

    def test_tampered_chunk_fails_checksum(self, staged):
        chunk_large_files(staged, chunk_size=1000, threshold=2000)
        first = chunk_path(staged / CHUNK_DIR_NAME / "var/lib/config.db", 1)
        first.write_bytes(b"\xff" * 1000)
        marker = staged / "var/lib" / ("config.db" + MARKER_SUFFIX)

        with pytest.raises(ChunkIntegrityError, match="sha256"):
            reassemble_file(staged, marker)
        assert not (staged / "var/lib/config.db").exists()

    def test_invalid_set_is_left_in_place(self, staged):
        chunk_large_files(staged, chunk_size=1000, threshold=2000)
        chunk_path(staged / CHUNK_DIR_NAME / "var/lib/config.db", 3).unlink()

        assert reassemble_chunked_files(staged) == 0
        assert (staged / "var/lib" / ("config.db" + MARKER_SUFFIX)).exists()

    def test_legacy_empty_marker(self, tmp_path):
        root = tmp_path / "stage"
        base = root / CHUNK_DIR_NAME / "data.bin"
        base.parent.mkdir(parents=True)
        chunk_path(base, 1).write_bytes(b"a" * 4)
        chunk_path(base, 2).write_bytes(b"b" * 2)
        marker = root / ("data.bin" + MARKER_SUFFIX)
        marker.write_text("")

        reassemble_file(root, marker)

        assert (root / "data.bin").read_bytes() == b"aaaabb"


class TestChunkedFileMetadata:
    """Tests for marker parsing."""

    def test_rejects_unknown_version(self):
        with pytest.raises(ValueError, match="version"):
            ChunkedFileMetadata.from_dict({"version": 9, "size_bytes": 1, "chunk_size_bytes": 1, "chunk_count": 1})

    def test_rejects_zero_counts(self):
        with pytest.raises(ValueError):
            ChunkedFileMetadata.from_dict({"version": 1, "size_bytes": 0, "chunk_size_bytes": 1, "chunk_count": 1})

    def test_json_round_trip(self):
        meta = ChunkedFileMetadata(1, 10, 4, 3, "abc", 0o640, 0, 0, 123)
        assert ChunkedFileMetadata.from_dict(json.loads(meta.to_json())) == meta
