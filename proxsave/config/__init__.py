"""Engine configuration."""

from .settings import (
    EncryptionOptions,
    EngineConfig,
    FeatureFlags,
    PathOverrides,
    PBSAuth,
    TuningOptions,
    load_config,
)

__all__ = [
    "EncryptionOptions",
    "EngineConfig",
    "FeatureFlags",
    "PathOverrides",
    "PBSAuth",
    "TuningOptions",
    "load_config",
]
