"""Archive creation, verification and sidecar files."""
