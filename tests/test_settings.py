"""Tests for engine configuration loading and validation."""

import json

import pytest
from helpers import AGE_RECIPIENT

from proxsave.config.settings import (
    DEFAULT_PXAR_MAX_ROOTS,
    EngineConfig,
    apply_environment,
    load_config,
    save_config,
)
from proxsave.exceptions import ConfigurationError


class TestLoadConfig:
    """Tests for load_config()."""

    def test_missing_file_yields_defaults(self, tmp_path, monkeypatch):
        for name in ("PBS_REPOSITORY", "PBS_PASSWORD", "PBS_FINGERPRINT"):
            monkeypatch.delenv(name, raising=False)
        config = load_config(tmp_path / "missing.json")

        assert config.tuning.compression == "xz"
        assert config.features.ssl_private_keys is False
        assert config.paths.output_dir == "/var/backups/proxsave"
        assert config.paths.config_file_path == ""

    def test_values_override_defaults(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(
            json.dumps(
                {
                    "features": {"vm_configs": False},
                    "tuning": {"compression": "zstd", "compression_level": 19},
                    "paths": {"custom_backup_paths": "/opt/app, /srv/data"},
                    "dry_run": True,
                }
            )
        )

        config = load_config(path)

        assert config.features.vm_configs is False
        assert config.tuning.compression == "zstd"
        assert config.tuning.compression_level == 19
        assert config.paths.custom_backup_paths == ["/opt/app", "/srv/data"]
        assert config.dry_run is True
        assert config.paths.config_file_path == str(path)

    def test_unknown_keys_are_ignored(self, tmp_path, log_records):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"features": {"telepathy": True}, "colour": "blue"}))

        load_config(path)

        messages = [r["message"] for r in log_records]
        assert "Ignoring unknown configuration key: features.telepathy" in messages
        assert "Ignoring unknown configuration key: colour" in messages

    def test_malformed_json_raises(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("{not json")
        with pytest.raises(ConfigurationError, match="cannot read config"):
            load_config(path)

    @pytest.mark.parametrize(
        "data",
        [
            {"features": {"vm_configs": "yes"}},
            {"tuning": {"compression_level": "high"}},
            {"paths": {"output_dir": 5}},
            {"tuning": {"exclude_patterns": 3}},
            {"features": []},
        ],
    )
    def test_wrong_types_raise(self, tmp_path, data):
        path = tmp_path / "config.json"
        path.write_text(json.dumps(data))
        with pytest.raises(ConfigurationError):
            load_config(path)

    def test_environment_fills_pbs_credentials(self, tmp_path, monkeypatch):
        monkeypatch.setenv("PBS_REPOSITORY", "backup@pbs@10.0.0.2:main")
        monkeypatch.setenv("PBS_PASSWORD", "s3cret")
        config = load_config(tmp_path / "missing.json")

        assert config.pbs_auth.repository == "backup@pbs@10.0.0.2:main"
        assert config.pbs_auth.password == "s3cret"


class TestApplyEnvironment:
    """Tests for apply_environment()."""

    def test_file_values_win(self):
        config = EngineConfig()
        config.pbs_auth.repository = "file@pbs@host:ds"
        apply_environment(config, {"PBS_REPOSITORY": "env@pbs@host:ds", "PBS_FINGERPRINT": " aa:bb "})

        assert config.pbs_auth.repository == "file@pbs@host:ds"
        assert config.pbs_auth.fingerprint == "aa:bb"


class TestValidate:
    """Tests for EngineConfig.validate()."""

    def test_defaults_are_valid(self):
        assert EngineConfig().validate() is not None

    def test_all_features_disabled(self):
        config = EngineConfig()
        for name in vars(config.features):
            setattr(config.features, name, False)
        with pytest.raises(ConfigurationError, match="at least one feature"):
            config.validate()

    def test_negative_sizes_are_rejected(self):
        config = EngineConfig()
        config.tuning.chunk_threshold_bytes = -1
        with pytest.raises(ConfigurationError) as excinfo:
            config.validate()
        assert excinfo.value.field == "chunk_threshold_bytes"

    def test_zero_chunk_size_with_chunking(self):
        config = EngineConfig()
        config.tuning.chunk_size_bytes = 0
        with pytest.raises(ConfigurationError):
            config.validate()

    def test_relative_root_prefix(self):
        config = EngineConfig()
        config.paths.system_root_prefix = "mnt/host"
        with pytest.raises(ConfigurationError, match="absolute"):
            config.validate()

    def test_invalid_exclude_pattern(self):
        config = EngineConfig()
        config.tuning.exclude_patterns = ["/etc/[broken"]
        with pytest.raises(ConfigurationError) as excinfo:
            config.validate()
        assert excinfo.value.field == "exclude_patterns"

    def test_unknown_compression(self):
        config = EngineConfig()
        config.tuning.compression = "rar"
        with pytest.raises(ConfigurationError, match="compression"):
            config.validate()

    def test_unknown_mode(self):
        config = EngineConfig()
        config.tuning.compression_mode = "insane"
        with pytest.raises(ConfigurationError):
            config.validate()

    def test_fallback_values_are_normalized(self):
        config = EngineConfig()
        config.tuning.compression_mode = ""
        config.tuning.compression_threads = -4
        config.tuning.datastore_concurrency = 0
        config.tuning.pxar_max_roots = 0

        config.validate()

        assert config.tuning.compression_mode == "standard"
        assert config.tuning.compression_threads == 0
        assert config.tuning.datastore_concurrency == 1
        assert config.tuning.pxar_max_roots == DEFAULT_PXAR_MAX_ROOTS

    def test_encryption_requires_recipients(self):
        config = EngineConfig()
        config.encryption.enabled = True
        with pytest.raises(ConfigurationError, match="without recipients"):
            config.validate()

    def test_malformed_recipient(self):
        config = EngineConfig()
        config.encryption.enabled = True
        config.encryption.recipients = ["not-a-key"]
        with pytest.raises(ConfigurationError, match="malformed recipient"):
            config.validate()

    def test_valid_recipients_are_trimmed(self):
        config = EngineConfig()
        config.encryption.enabled = True
        config.encryption.recipients = [f"  {AGE_RECIPIENT} ", "", "ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIHf0 root@pve01"]

        config.validate()

        assert config.encryption.recipients[0] == AGE_RECIPIENT
        assert len(config.encryption.recipients) == 2


class TestSerialization:
    """Tests for to_dict() and save_config()."""

    def test_password_is_masked(self):
        config = EngineConfig()
        config.pbs_auth.password = "hunter2"
        assert config.to_dict()["pbs_auth"]["password"] == "***"
        assert "hunter2" not in repr(config.pbs_auth)

    def test_save_and_load(self, tmp_path):
        config = EngineConfig()
        config.tuning.compression = "zstd"
        path = tmp_path / "etc" / "config.json"

        save_config(config, path)

        assert load_config(path).tuning.compression == "zstd"
