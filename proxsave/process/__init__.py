"""External process execution and privilege detection."""

from .privilege import PrivilegeDetector, UnprivilegedInfo, classify_privilege_failure
from .runner import CommandResult, ProcessRunner, ensure_system_path, summarize_output

__all__ = [
    "CommandResult",
    "PrivilegeDetector",
    "ProcessRunner",
    "UnprivilegedInfo",
    "classify_privilege_failure",
    "ensure_system_path",
    "summarize_output",
]
