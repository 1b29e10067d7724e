"""Domain models for proxsave."""

from .models import (
    CollectionStats,
    ManifestEntry,
    ManifestSection,
    ManifestStatus,
    ProxmoxType,
)

__all__ = [
    "CollectionStats",
    "ManifestEntry",
    "ManifestSection",
    "ManifestStatus",
    "ProxmoxType",
]
