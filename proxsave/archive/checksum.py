"""Checksum and metadata sidecars written next to an archive.

``<archive>.sha256`` uses the ``sha256sum`` line format. ``<archive>.metadata``
is JSON; older archives carry a ``KEY=VALUE`` file instead, which
``read_metadata`` still understands.
"""

from __future__ import annotations

import hashlib
import json
import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Optional

from proxsave.context import RunContext
from proxsave.exceptions import VerificationError
from proxsave.logging import get_logger

log = get_logger(source=__name__, tags=["archive", "checksum"])

CHECKSUM_SUFFIX = ".sha256"
METADATA_SUFFIX = ".metadata"
SIDECAR_MODE = 0o640
HASH_BUFFER_SIZE = 1024 * 1024

# Legacy KEY=VALUE names mapped onto ArchiveMetadata fields
LEGACY_KEYS = {
    "COMPRESSION_TYPE": "compression_type",
    "COMPRESSION_LEVEL": "compression_level",
    "COMPRESSION_MODE": "compression_mode",
    "PROXMOX_TYPE": "proxmox_type",
    "HOSTNAME": "hostname",
    "SCRIPT_VERSION": "script_version",
    "ENCRYPTION_MODE": "encryption_mode",
}


@dataclass
class ArchiveMetadata:
    archive_path: str = ""
    archive_size: int = 0
    sha256: str = ""
    created_at: str = ""
    requested_compression: str = ""
    compression_type: str = ""
    compression_level: int = 0
    compression_mode: str = ""
    proxmox_type: str = "unknown"
    hostname: str = ""
    script_version: str = ""
    encryption_mode: str = "plain"

    def to_json(self) -> str:
        return json.dumps(asdict(self), indent=2, sort_keys=True) + "\n"

    @classmethod
    def from_dict(cls, data: dict) -> ArchiveMetadata:
        known = {f.name for f in fields(cls)}
        values = {key: value for key, value in data.items() if key in known}
        if "compression_level" in values:
            values["compression_level"] = int(values["compression_level"] or 0)
        if "archive_size" in values:
            values["archive_size"] = int(values["archive_size"] or 0)
        return cls(**values)


def checksum_path(archive: Path | str) -> Path:
    return Path(f"{archive}{CHECKSUM_SUFFIX}")


def metadata_path(archive: Path | str) -> Path:
    return Path(f"{archive}{METADATA_SUFFIX}")


def sha256_file(path: Path | str, ctx: Optional[RunContext] = None) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as handle:
        while True:
            if ctx is not None:
                ctx.check()
            block = handle.read(HASH_BUFFER_SIZE)
            if not block:
                break
            digest.update(block)
    return digest.hexdigest()


def _write_sidecar(path: Path, text: str) -> Path:
    tmp = path.with_name(f".{path.name}.tmp")
    with open(tmp, "w", encoding="utf-8") as handle:
        handle.write(text)
    os.chmod(tmp, SIDECAR_MODE)
    os.replace(tmp, path)
    return path


def write_checksum(archive: Path | str, ctx: Optional[RunContext] = None) -> tuple[Path, str]:
    """Hash ``archive`` and write ``<archive>.sha256``; returns (sidecar, digest)."""
    archive = Path(archive)
    digest = sha256_file(archive, ctx)
    sidecar = _write_sidecar(checksum_path(archive), f"{digest}  {archive.name}\n")
    log.debug(f"SHA-256 for {archive.name}: {digest}")
    return sidecar, digest


def read_checksum(sidecar: Path | str) -> str:
    text = Path(sidecar).read_text(encoding="utf-8").strip()
    if not text:
        raise ValueError(f"empty checksum file: {sidecar}")
    return text.split()[0].lower()


def verify_checksum(archive: Path | str, ctx: Optional[RunContext] = None) -> str:
    """Re-hash ``archive`` and compare with its ``.sha256`` sidecar.

    Raises:
        VerificationError: Sidecar missing or unreadable, or digest mismatch
    """
    archive = Path(archive)
    try:
        expected = read_checksum(checksum_path(archive))
    except (OSError, ValueError) as error:
        raise VerificationError(str(archive), f"checksum sidecar unreadable: {error}") from error
    actual = sha256_file(archive, ctx)
    if actual != expected:
        raise VerificationError(str(archive), f"sha256 mismatch: expected {expected}, got {actual}")
    return actual


def write_metadata(archive: Path | str, metadata: ArchiveMetadata) -> Path:
    return _write_sidecar(metadata_path(archive), metadata.to_json())


def parse_legacy_metadata(text: str, archive_name: str = "") -> ArchiveMetadata:
    values: dict[str, str] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        field_name = LEGACY_KEYS.get(key.strip().upper())
        if field_name:
            values[field_name] = value.strip().strip('"')
    if archive_name.endswith(".age"):
        values["encryption_mode"] = "age"
    elif not values.get("encryption_mode"):
        values["encryption_mode"] = "plain"
    if values.get("compression_level"):
        try:
            int(values["compression_level"])
        except ValueError:
            values["compression_level"] = "0"
    meta = ArchiveMetadata.from_dict(values)
    meta.archive_path = archive_name
    return meta


def read_metadata(path: Path | str) -> ArchiveMetadata:
    """Read a metadata sidecar in either the JSON or the legacy format."""
    path = Path(path)
    text = path.read_text(encoding="utf-8")
    archive_name = path.name[: -len(METADATA_SUFFIX)] if path.name.endswith(METADATA_SUFFIX) else ""
    stripped = text.lstrip()
    if stripped.startswith("{"):
        return ArchiveMetadata.from_dict(json.loads(stripped))
    return parse_legacy_metadata(text, archive_name)
