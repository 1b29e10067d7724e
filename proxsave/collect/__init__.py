"""Source collectors that populate the staging tree."""

from .base import BaseCollector, CollectionSession, CollectorDeps
from .manifest import ManifestRecorder, build_manifest, write_manifest
from .pbs import PBSCollector
from .pve import PVECollector
from .system import SystemCollector

__all__ = [
    "BaseCollector",
    "CollectionSession",
    "CollectorDeps",
    "ManifestRecorder",
    "PBSCollector",
    "PVECollector",
    "SystemCollector",
    "build_manifest",
    "write_manifest",
]
