"""Unprivileged-container detection and expected-failure classification.

Inside a user-namespaced container, root is mapped to an unprivileged host
UID and hardware introspection tools fail in predictable ways. Those
failures are recorded as ``skipped`` instead of producing warnings.
"""

from __future__ import annotations

import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from proxsave.logging import get_logger

log = get_logger(source=__name__, tags=["privilege"])

PRIVILEGE_SENSITIVE_COMMANDS = frozenset({"dmidecode", "blkid", "sensors", "smartctl"})

REASON_DMI = "DMI tables not accessible"
REASON_BLKID = "block devices not accessible (restore hint: fstab remap may be limited)"
REASON_SENSORS = "hardware sensors not accessible"
REASON_SMART = "SMART devices not accessible"

_PERMISSION_MARKERS = ("permission denied", "operation not permitted")


@dataclass(frozen=True)
class UnprivilegedInfo:
    detected: bool = False
    uid_shifted: bool = False
    gid_shifted: bool = False
    euid: int = 0
    container_runtime: str = ""
    details: str = ""


def parse_id_map(text: str) -> tuple[int | None, bool]:
    """Return the outside ID that inside ID 0 maps to.

    Each line of /proc/self/uid_map is ``inside outside length``.
    """
    for line in text.splitlines():
        fields = line.split()
        if len(fields) < 3:
            continue
        try:
            inside, outside, length = (int(f) for f in fields[:3])
        except ValueError:
            continue
        if inside == 0 and length > 0:
            return outside, True
    return None, False


def _runtime_from_cgroup(text: str) -> str:
    lowered = text.lower()
    for marker, runtime in (
        ("kubepods", "kubernetes"),
        ("docker", "docker"),
        ("libpod", "podman"),
        ("podman", "podman"),
        ("lxc", "lxc"),
        ("containerd", "containerd"),
    ):
        if marker in lowered:
            return runtime
    return ""


def _read(path: Path) -> str | None:
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return None


def detect_container_runtime(
    root: Path = Path("/"), environ: dict[str, str] | None = None
) -> str:
    environ = os.environ if environ is None else environ

    marker = _read(root / "run/systemd/container")
    if marker and marker.strip():
        return marker.strip()
    if environ.get("container", "").strip():
        return environ["container"].strip()
    if (root / ".dockerenv").exists():
        return "docker"
    if (root / "run/.containerenv").exists():
        return "podman"
    cgroup = _read(root / "proc/self/cgroup")
    if cgroup:
        return _runtime_from_cgroup(cgroup)
    return ""


def detect_unprivileged(
    root: Path = Path("/"),
    environ: dict[str, str] | None = None,
    geteuid: Callable[[], int] = os.geteuid,
) -> UnprivilegedInfo:
    uid_outside, uid_found = parse_id_map(_read(root / "proc/self/uid_map") or "")
    gid_outside, gid_found = parse_id_map(_read(root / "proc/self/gid_map") or "")
    uid_shifted = uid_found and uid_outside != 0
    gid_shifted = gid_found and gid_outside != 0
    euid = geteuid()
    runtime = detect_container_runtime(root, environ)

    detected = uid_shifted or gid_shifted or euid != 0 or bool(runtime)

    parts = []
    if uid_found:
        parts.append(f"uid 0 -> {uid_outside}")
    if gid_found:
        parts.append(f"gid 0 -> {gid_outside}")
    parts.append(f"euid={euid}")
    if runtime:
        parts.append(f"container={runtime}")

    return UnprivilegedInfo(
        detected=detected,
        uid_shifted=uid_shifted,
        gid_shifted=gid_shifted,
        euid=euid,
        container_runtime=runtime,
        details=", ".join(parts),
    )


class PrivilegeDetector:
    """Run detection once and reuse the answer for the rest of the run."""

    def __init__(self, detect: Callable[[], UnprivilegedInfo] = detect_unprivileged):
        self._detect = detect
        self._info: UnprivilegedInfo | None = None
        self._lock = threading.Lock()

    def __call__(self) -> UnprivilegedInfo:
        with self._lock:
            if self._info is None:
                self._info = self._detect()
                if self._info.detected:
                    log.debug(f"Restricted execution environment: {self._info.details}")
            return self._info


def classify_privilege_failure(command: str, exit_code: int, output: str) -> str:
    """Return a stable skip reason for known unprivileged failures, else ''."""
    name = os.path.basename(command.strip())
    if name not in PRIVILEGE_SENSITIVE_COMMANDS:
        return ""
    text = (output or "").strip()
    lowered = text.lower()
    denied = any(marker in lowered for marker in _PERMISSION_MARKERS)

    if name == "dmidecode":
        if "/dev/mem" in lowered or denied or (exit_code != 0 and not text):
            return REASON_DMI
    elif name == "blkid":
        if (exit_code == 2 and not text) or denied:
            return REASON_BLKID
    elif name == "sensors":
        if denied or "no sensors found" in lowered:
            return REASON_SENSORS
    elif name == "smartctl":
        if denied:
            return REASON_SMART
    return ""
