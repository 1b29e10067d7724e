"""Compression algorithm selection and compressor command construction."""

from __future__ import annotations

import shutil
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from proxsave.logging import get_logger

log = get_logger(source=__name__, tags=["archive", "compression"])

DEFAULT_LEVEL = 6

Which = Callable[[str], Optional[str]]


class CompressionType(str, Enum):
    GZIP = "gzip"
    PIGZ = "pigz"
    BZIP2 = "bzip2"
    XZ = "xz"
    LZMA = "lzma"
    ZSTD = "zstd"
    NONE = "none"

    @property
    def extension(self) -> str:
        return _EXTENSIONS[self]

    @property
    def external(self) -> bool:
        """True when the stream goes through a child process."""
        return self not in (CompressionType.GZIP, CompressionType.NONE)


_EXTENSIONS = {
    CompressionType.GZIP: ".tar.gz",
    CompressionType.PIGZ: ".tar.gz",
    CompressionType.BZIP2: ".tar.bz2",
    CompressionType.XZ: ".tar.xz",
    CompressionType.LZMA: ".tar.lzma",
    CompressionType.ZSTD: ".tar.zst",
    CompressionType.NONE: ".tar",
}

_ALIASES = {
    "gz": CompressionType.GZIP,
    "gzip": CompressionType.GZIP,
    "pigz": CompressionType.PIGZ,
    "bz2": CompressionType.BZIP2,
    "bzip2": CompressionType.BZIP2,
    "xz": CompressionType.XZ,
    "lzma": CompressionType.LZMA,
    "zst": CompressionType.ZSTD,
    "zstd": CompressionType.ZSTD,
    "none": CompressionType.NONE,
    "": CompressionType.NONE,
}

_LEVEL_RANGES = {
    CompressionType.GZIP: (1, 9),
    CompressionType.PIGZ: (1, 9),
    CompressionType.BZIP2: (1, 9),
    CompressionType.XZ: (0, 9),
    CompressionType.LZMA: (0, 9),
    CompressionType.ZSTD: (1, 22),
}


class CompressionMode(str, Enum):
    FAST = "fast"
    STANDARD = "standard"
    MAXIMUM = "maximum"
    ULTRA = "ultra"

    @property
    def extreme(self) -> bool:
        return self in (CompressionMode.MAXIMUM, CompressionMode.ULTRA)


def parse_compression_type(value: str | CompressionType) -> CompressionType:
    if isinstance(value, CompressionType):
        return value
    try:
        return _ALIASES[str(value).strip().lower()]
    except KeyError:
        raise ValueError(f"Unknown compression type: {value}") from None


def normalize_mode(value: str | CompressionMode | None) -> CompressionMode:
    if isinstance(value, CompressionMode):
        return value
    text = (value or "").strip().lower()
    for mode in CompressionMode:
        if mode.value == text:
            return mode
    return CompressionMode.STANDARD


def normalize_level(compression: CompressionType, level: int) -> int:
    """Clamp ``level`` to what the algorithm accepts, defaulting to 6."""
    if compression is CompressionType.NONE:
        return 0
    low, high = _LEVEL_RANGES[compression]
    if low <= level <= high:
        return level
    return DEFAULT_LEVEL


def tool_for(compression: CompressionType, which: Which = shutil.which) -> Optional[str]:
    """Return the executable used for ``compression`` or None if missing."""
    if compression is CompressionType.BZIP2:
        return which("pbzip2") or which("bzip2")
    if compression.external:
        return which(compression.value)
    return None


def resolve_compression(
    requested: CompressionType, which: Which = shutil.which
) -> CompressionType:
    """Pick the algorithm that will actually be used.

    Falls back to in-process gzip when the external tool is missing.
    """
    if not requested.external:
        return requested
    if tool_for(requested, which) is None:
        log.warning(
            f"{requested.value} not found on PATH, falling back to gzip compression"
        )
        return CompressionType.GZIP
    return requested


@dataclass(frozen=True)
class CompressionSettings:
    requested: CompressionType
    effective: CompressionType
    level: int
    mode: CompressionMode
    threads: int = 0

    @property
    def fallback(self) -> bool:
        return self.requested is not self.effective

    @property
    def extension(self) -> str:
        return self.effective.extension


def build_compression_settings(
    compression: str | CompressionType,
    level: int = DEFAULT_LEVEL,
    mode: str | CompressionMode | None = None,
    threads: int = 0,
    which: Which = shutil.which,
) -> CompressionSettings:
    requested = parse_compression_type(compression)
    effective = resolve_compression(requested, which)
    return CompressionSettings(
        requested=requested,
        effective=effective,
        level=normalize_level(effective, level),
        mode=normalize_mode(mode),
        threads=max(threads, 0),
    )


def build_compressor_command(
    settings: CompressionSettings, which: Which = shutil.which
) -> list[str]:
    """Build argv for the external compressor reading tar on stdin."""
    compression = settings.effective
    level = settings.level
    threads = settings.threads
    extreme = settings.mode.extreme

    if compression is CompressionType.PIGZ:
        args = ["pigz"]
        if threads > 0:
            args.append(f"-p{threads}")
        args.append(f"-{level}")
        if extreme:
            args.append("--best")
        args.append("-c")
        return args

    if compression is CompressionType.XZ:
        args = ["xz", f"-{level}", f"-T{threads}" if threads > 0 else "-T0"]
        if extreme:
            args.append("--extreme")
        args.append("-c")
        return args

    if compression is CompressionType.ZSTD:
        args = ["zstd"]
        if level > 19:
            args.append("--ultra")
        args.extend([f"-{level}", f"-T{threads}" if threads > 0 else "-T0", "-q", "-c"])
        return args

    if compression is CompressionType.BZIP2:
        if threads > 1 and which("pbzip2"):
            return ["pbzip2", f"-{level}", f"-p{threads}", "-c"]
        if which("bzip2") is None and which("pbzip2"):
            return ["pbzip2", f"-{level}", "-c"]
        return ["bzip2", f"-{level}", "-c"]

    if compression is CompressionType.LZMA:
        flag = f"-{level}e" if extreme else f"-{level}"
        return ["lzma", flag, "-c"]

    raise ValueError(f"{compression.value} does not use an external compressor")
