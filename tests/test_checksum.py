"""Tests for the checksum and metadata sidecars."""

import hashlib
import json
import stat

import pytest

from proxsave.archive.checksum import (
    SIDECAR_MODE,
    ArchiveMetadata,
    checksum_path,
    metadata_path,
    parse_legacy_metadata,
    read_metadata,
    verify_checksum,
    write_checksum,
    write_metadata,
)
from proxsave.exceptions import VerificationError


@pytest.fixture
def archive(tmp_path):
    path = tmp_path / "pve01-pve-backup-20240517-083000.tar.xz"
    path.write_bytes(b"archive-bytes" * 100)
    return path


class TestChecksum:
    """Tests for the .sha256 sidecar."""

    def test_sidecar_uses_sha256sum_format(self, archive):
        sidecar, digest = write_checksum(archive)

        assert sidecar == checksum_path(archive)
        assert digest == hashlib.sha256(archive.read_bytes()).hexdigest()
        assert sidecar.read_text() == f"{digest}  {archive.name}\n"
        assert stat.S_IMODE(sidecar.stat().st_mode) == SIDECAR_MODE

    def test_verify_matches(self, archive):
        _sidecar, digest = write_checksum(archive)
        assert verify_checksum(archive) == digest

    def test_verify_detects_modification(self, archive):
        write_checksum(archive)
        archive.write_bytes(b"tampered")
        with pytest.raises(VerificationError, match="sha256 mismatch"):
            verify_checksum(archive)

    def test_verify_without_sidecar(self, archive):
        with pytest.raises(VerificationError, match="sidecar unreadable"):
            verify_checksum(archive)


class TestMetadata:
    """Tests for the .metadata sidecar."""

    def test_json_round_trip(self, archive):
        meta = ArchiveMetadata(
            archive_path=str(archive),
            archive_size=1300,
            sha256="ab" * 32,
            requested_compression="xz",
            compression_type="xz",
            compression_level=6,
            compression_mode="standard",
            proxmox_type="pve",
            hostname="pve01",
            script_version="0.9.0",
        )

        path = write_metadata(archive, meta)

        assert path == metadata_path(archive)
        assert json.loads(path.read_text())["hostname"] == "pve01"
        assert read_metadata(path) == meta

    def test_unknown_json_keys_are_ignored(self, tmp_path):
        path = tmp_path / "a.tar.gz.metadata"
        path.write_text(json.dumps({"hostname": "pbs01", "future_field": 1, "compression_level": "9"}))

        meta = read_metadata(path)

        assert meta.hostname == "pbs01"
        assert meta.compression_level == 9

    def test_legacy_key_value_format(self, tmp_path):
        path = tmp_path / "pbs01-pbs-backup-20230101-000000.tar.zst.metadata"
        path.write_text(
            "# written by an older release\n"
            "COMPRESSION_TYPE=zstd\n"
            "COMPRESSION_LEVEL=19\n"
            'HOSTNAME="pbs01"\n'
            "PROXMOX_TYPE=pbs\n"
            "UNKNOWN=1\n"
        )

        meta = read_metadata(path)

        assert meta.compression_type == "zstd"
        assert meta.compression_level == 19
        assert meta.hostname == "pbs01"
        assert meta.proxmox_type == "pbs"
        assert meta.encryption_mode == "plain"
        assert meta.archive_path == "pbs01-pbs-backup-20230101-000000.tar.zst"

    def test_legacy_encrypted_archive_name(self):
        meta = parse_legacy_metadata("COMPRESSION_LEVEL=fast\n", "host.tar.xz.age")

        assert meta.encryption_mode == "age"
        assert meta.compression_level == 0
