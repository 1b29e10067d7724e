"""Configuration snapshot engine for Proxmox VE and Proxmox Backup Server hosts."""

from .__version__ import __version__

__all__ = ["__version__"]
