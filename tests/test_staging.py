"""Tests for the scoped staging directory."""

from datetime import datetime, timezone

from proxsave.fs.staging import StagingDirectory

NOW = datetime(2024, 5, 17, 8, 30, 0, tzinfo=timezone.utc)


class TestStagingDirectory:
    """Tests for StagingDirectory."""

    def test_acquire_creates_prefixed_directory(self, tmp_path):
        staging = StagingDirectory("pve01", base_dir=tmp_path / "base", now=NOW)

        path = staging.acquire()

        assert path.is_dir()
        assert path.parent == tmp_path / "base"
        assert path.name.startswith("proxsave-pve01-20240517T083000Z-")

    def test_release_removes_directory(self, tmp_path):
        staging = StagingDirectory("pve01", base_dir=tmp_path, now=NOW)
        path = staging.acquire()
        (path / "file").write_text("x")

        staging.release()

        assert not path.exists()
        assert staging.path is None

    def test_retained_directory_survives_release(self, tmp_path):
        staging = StagingDirectory("pve01", base_dir=tmp_path, now=NOW)
        path = staging.acquire()
        staging.retain()

        staging.release()

        assert staging.retained
        assert path.exists()

    def test_context_manager_cleans_up_on_error(self, tmp_path):
        captured = {}
        try:
            with StagingDirectory("pve01", base_dir=tmp_path, now=NOW) as staging:
                captured["path"] = staging.path
                raise RuntimeError("collector exploded")
        except RuntimeError:
            pass

        assert not captured["path"].exists()

    def test_hostname_is_sanitized(self, tmp_path):
        staging = StagingDirectory("bad/host name", base_dir=tmp_path, now=NOW)
        assert "/" not in staging.prefix
        assert " " not in staging.prefix

    def test_release_without_acquire_is_noop(self):
        StagingDirectory("pve01").release()
