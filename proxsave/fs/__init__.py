"""Staging tree handling: exclusions, safe copies, chunking."""
