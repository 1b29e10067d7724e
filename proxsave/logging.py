from __future__ import annotations

import os
import sys
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from loguru import Logger

from loguru import logger

DEFAULT_LOG_DIR = Path(
    os.environ.get(
        "PROXSAVE_LOG_DIR",
        Path.home() / ".local" / "state" / "proxsave" / "logs",
    )
)

# Sits between DEBUG (10) and INFO (20)
SKIP_LEVEL = "SKIP"
SKIP_LEVEL_NO = 15


def _ensure_skip_level() -> None:
    try:
        logger.level(SKIP_LEVEL)
    except ValueError:
        logger.level(SKIP_LEVEL, no=SKIP_LEVEL_NO, color="<yellow>", icon="~")


_ensure_skip_level()


def log_skip(log: Logger, message: str, **kwargs) -> None:
    """Log a disabled or intentionally skipped item at SKIP level."""
    log.log(SKIP_LEVEL, message, **kwargs)


def _is_compressor_noise(record) -> bool:
    """Compressor progress chatter only reaches the console in debug mode."""
    tags = record["extra"].get("tags", [])
    if "compressor" in tags and record["level"].no < logger.level("WARNING").no:
        return False
    return True


def setup_logging(
    *,
    debug: bool = False,
    trace: bool = False,
    log_dir: Path | None = None,
    file_logging: bool = True,
) -> Logger:
    """
    Configure console and file sinks for a backup run.

    Log Files:
    - operations.log: INFO+ events (14 day retention)
    - debug.log: DEBUG+ events when --debug is enabled (3 day retention)
    - structured.jsonl: JSON records for log shippers (14 day retention)

    Args:
        debug: Enable DEBUG level logging
        trace: Enable TRACE level logging (very verbose)
        log_dir: Custom log directory (defaults to ~/.local/state/proxsave/logs)
        file_logging: Disable to keep output on the console only
    """
    logger.remove()
    logger.configure(extra={"job_id": "-", "tags": [], "source": "proxsave"})
    _ensure_skip_level()

    if trace:
        console_level = "TRACE"
    elif debug:
        console_level = "DEBUG"
    else:
        console_level = "INFO"

    logger.add(
        sys.stderr,
        level=console_level,
        enqueue=True,
        backtrace=False,
        diagnose=False,
        filter=None if (debug or trace) else _is_compressor_noise,
        colorize=True,
        format=(
            "<green>{time:HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{extra[source]: <15}</cyan> | "
            "{message}"
        ),
    )

    if not file_logging:
        return logger

    log_dir = log_dir or DEFAULT_LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)

    logger.add(
        log_dir / "operations.log",
        level="INFO",
        rotation="10 MB",
        retention="14 days",
        compression="zip",
        enqueue=True,
        backtrace=False,
        diagnose=False,
        format=(
            "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
            "{level: <8} | "
            "{extra[source]: <15} | "
            "{extra[job_id]: <20} | "
            "{message}"
        ),
    )

    if debug or trace:
        logger.add(
            log_dir / "debug.log",
            level="TRACE" if trace else "DEBUG",
            rotation="20 MB",
            retention="3 days",
            compression="zip",
            enqueue=True,
            backtrace=True,
            diagnose=False,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{level: <8} | "
                "{extra[source]: <15} | "
                "{extra[job_id]: <20} | "
                "{extra[tags]} | "
                "{message}"
            ),
        )

    logger.add(
        log_dir / "structured.jsonl",
        level="INFO",
        rotation="10 MB",
        retention="14 days",
        compression="zip",
        enqueue=True,
        serialize=True,
        format="{message}",
    )

    return logger


def get_logger(
    *,
    job_id: str | None = None,
    tags: Iterable[str] | None = None,
    source: str | None = None,
) -> Logger:
    """
    Get a logger with bound context.

    Args:
        job_id: Run identifier shared by every record of one backup
        tags: Tags for filtering (e.g., ["collector", "pbs"])
        source: Source component (e.g., "archiver", "pbs")

    Returns:
        Logger with bound context
    """
    extras: dict[str, object] = {}
    if job_id is not None:
        extras["job_id"] = job_id
    if tags is not None:
        extras["tags"] = list(tags)
    if source is not None:
        extras["source"] = source
    return logger.bind(**extras)


def new_job_id(operation: str) -> str:
    return f"{operation}-{uuid.uuid4().hex[:8]}"


@contextmanager
def operation_context(operation: str, job_id: str | None = None, **details):
    """
    Context manager for tracking long-running operations with automatic timing.

    Logs operation start, completion, and failure with duration tracking.

    Args:
        operation: Operation name (e.g., "backup", "archive")
        job_id: Reuse an existing run identifier instead of generating one
        **details: Operation-specific details to log

    Yields:
        Logger bound with job_id and operation context

    Example:
        with operation_context("archive", output="/var/backups/x.tar.xz") as log:
            log.debug("Starting tar writer")
    """
    job_id = job_id or new_job_id(operation)

    with logger.contextualize(job_id=job_id, operation=operation, **details):
        start_time = time.time()
        log = logger.bind(source=operation, job_id=job_id, tags=[operation])

        log.info(f"{operation.capitalize()} started", **details)

        try:
            yield log
            duration = time.time() - start_time
            log.success(
                f"{operation.capitalize()} completed",
                duration_seconds=round(duration, 2),
            )
        except Exception as e:
            duration = time.time() - start_time
            log.error(
                f"{operation.capitalize()} failed",
                error=str(e),
                error_type=type(e).__name__,
                duration_seconds=round(duration, 2),
            )
            raise


class LoggerFactory:
    """
    Factory for creating domain-specific loggers with automatic context.

    Each factory method returns a logger pre-configured with appropriate
    source, tags, and context for the domain.
    """

    @staticmethod
    def for_collector(name: str, job_id: str | None = None) -> Logger:
        """Logger for a source collector (pve, pbs, system)."""
        extras: dict[str, object] = {}
        if job_id is not None:
            extras["job_id"] = job_id
        return logger.bind(source=name, tags=["collector", name], **extras)

    @staticmethod
    def for_archive(job_id: str | None = None) -> Logger:
        """Logger for archive creation and verification."""
        if job_id is None:
            job_id = new_job_id("archive")
        return logger.bind(job_id=job_id, source="archiver", tags=["archive"])

    @staticmethod
    def for_compressor(algorithm: str, job_id: str | None = None) -> Logger:
        """Logger for the stderr stream of an external compressor."""
        extras: dict[str, object] = {}
        if job_id is not None:
            extras["job_id"] = job_id
        return logger.bind(
            source=algorithm, tags=["archive", "compressor"], **extras
        )

    @staticmethod
    def for_orchestrator(job_id: str | None = None) -> Logger:
        """Logger for the top-level backup sequence."""
        if job_id is None:
            job_id = new_job_id("backup")
        return logger.bind(job_id=job_id, source="orchestrator", tags=["backup"])

    @staticmethod
    def for_process() -> Logger:
        """Logger for external command execution."""
        return logger.bind(source="process", tags=["process"])

    @staticmethod
    def for_system() -> Logger:
        """Logger for startup, configuration and environment handling."""
        return logger.bind(source="system", tags=["system"])
