"""Post-archival integrity checks."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from proxsave.archive.compression import CompressionType
from proxsave.context import RunContext
from proxsave.exceptions import CommandNotFoundError, VerificationError
from proxsave.logging import LoggerFactory
from proxsave.process.runner import ProcessRunner, summarize_output


def verification_commands(compression: CompressionType, archive: str) -> list[list[str]]:
    """Commands that must all succeed for ``archive`` to be considered intact."""
    if compression is CompressionType.XZ:
        return [["xz", "--test", archive], ["tar", "-tJf", archive]]
    if compression is CompressionType.ZSTD:
        return [["zstd", "--test", archive], ["tar", "--use-compress-program=zstd", "-tf", archive]]
    if compression in (CompressionType.GZIP, CompressionType.PIGZ):
        return [["tar", "-tzf", archive]]
    if compression is CompressionType.BZIP2:
        return [["tar", "-tjf", archive]]
    if compression is CompressionType.LZMA:
        return [["tar", "--lzma", "-tf", archive]]
    return [["tar", "-tf", archive]]


def verify_archive(
    archive: Path | str,
    compression: CompressionType,
    *,
    encrypted: bool = False,
    runner: Optional[ProcessRunner] = None,
    ctx: Optional[RunContext] = None,
    job_id: Optional[str] = None,
) -> None:
    """Check ``archive`` with the tools matching its compression.

    Encrypted archives cannot be inspected without the identity, so only
    existence and a non-zero size are checked for them.

    Raises:
        VerificationError: Archive missing, empty or rejected by a tool
    """
    log = LoggerFactory.for_archive(job_id)
    path = Path(archive)
    try:
        size = path.stat().st_size
    except OSError as error:
        raise VerificationError(str(path), f"cannot stat archive: {error}") from error
    if size == 0:
        raise VerificationError(str(path), "archive is empty")

    if encrypted:
        log.info(f"Encrypted archive {path.name}: verified existence and size ({size} bytes) only")
        return

    runner = runner or ProcessRunner()
    ctx = ctx or RunContext.background()
    for cmd in verification_commands(compression, str(path)):
        log.debug(f"Verifying archive: {' '.join(cmd)}")
        try:
            result = runner.run(ctx, *cmd)
        except CommandNotFoundError as error:
            raise VerificationError(str(path), f"{cmd[0]} not available") from error
        if not result.ok:
            raise VerificationError(
                str(path), f"`{' '.join(cmd)}` exited {result.exit_code}: {summarize_output(result.output)}"
            )
    log.info(f"Archive verified: {path.name}")
