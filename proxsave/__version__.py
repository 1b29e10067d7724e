"""Version information for proxsave."""

__version__ = "0.9.0"
