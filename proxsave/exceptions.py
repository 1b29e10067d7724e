"""Custom exceptions for snapshot operations.

This module defines a hierarchy of exceptions so callers can tell apart
configuration mistakes, collector preconditions, archive failures and
cancellation.

Exception Hierarchy:
    ProxsaveError (base)
        ├── ConfigurationError
        ├── OperationCancelledError
        │   └── DeadlineExceededError
        ├── CollectionError
        │   ├── PreconditionError
        │   ├── CommandNotFoundError
        │   └── CommandFailedError
        ├── ChunkError
        │   └── ChunkIntegrityError
        └── ArchiveError
            ├── CompressionError
            ├── EncryptionError
            ├── VerificationError
            └── InsufficientSpaceError

Usage:
    from proxsave.exceptions import PreconditionError

    if not pbs_config_dir.exists():
        raise PreconditionError("pbs", f"{pbs_config_dir} not found")
"""


class ProxsaveError(Exception):
    """Base exception for all snapshot operations."""



class ConfigurationError(ProxsaveError):
    """Engine configuration is invalid."""

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid configuration for {field}: {reason}")


class OperationCancelledError(ProxsaveError):
    """The run context was cancelled."""

    def __init__(self, message: str = "operation cancelled"):
        super().__init__(message)


class DeadlineExceededError(OperationCancelledError):
    """The run context deadline passed."""

    def __init__(self, message: str = "deadline exceeded"):
        super().__init__(message)


class CollectionError(ProxsaveError):
    """Base exception for collector failures."""



class PreconditionError(CollectionError):
    """A collector was invoked on a host that does not satisfy it."""

    def __init__(self, collector: str, reason: str):
        self.collector = collector
        self.reason = reason
        super().__init__(f"{collector} collector precondition failed: {reason}")


class CommandNotFoundError(CollectionError):
    """A required executable is not on PATH."""

    def __init__(self, command: str):
        self.command = command
        super().__init__(f"Command not available: {command}")


class CommandFailedError(CollectionError):
    """A critical command exited with an error."""

    def __init__(self, command: str, exit_code: int, output: str = ""):
        self.command = command
        self.exit_code = exit_code
        self.output = output
        msg = f"Critical command `{command}` failed with exit code {exit_code}"
        if output:
            msg += f" (output: {output})"
        super().__init__(msg)


class ChunkError(ProxsaveError):
    """Base exception for chunking and reassembly."""



class ChunkIntegrityError(ChunkError):
    """Chunks on disk do not match their metadata."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Chunked file {path} failed integrity check: {reason}")


class ArchiveError(ProxsaveError):
    """Base exception for archive creation."""



class CompressionError(ArchiveError):
    """External compressor exited with an error."""

    def __init__(self, algorithm: str, exit_code: int, stderr: str = ""):
        self.algorithm = algorithm
        self.exit_code = exit_code
        self.stderr = stderr
        msg = f"{algorithm} compression failed with exit code {exit_code}"
        if stderr:
            msg += f": {stderr}"
        super().__init__(msg)


class EncryptionError(ArchiveError):
    """Age encryption stage failed."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Encryption failed: {reason}")


class VerificationError(ArchiveError):
    """Archive did not pass its integrity check."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Archive verification failed for {path}: {reason}")


class InsufficientSpaceError(ArchiveError):
    """Output directory cannot hold the archive."""

    def __init__(self, path: str, available_bytes: int, required_bytes: int):
        self.path = path
        self.available_bytes = available_bytes
        self.required_bytes = required_bytes
        super().__init__(
            f"Not enough free space in {path}: "
            f"{available_bytes} bytes available, {required_bytes} bytes required"
        )
