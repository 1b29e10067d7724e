"""Tests for the Proxmox VE collector."""

import json

import pytest
from helpers import write_tree

from proxsave.collect.pve import (
    PVECollector,
    PVEStorage,
    merge_json_arrays,
    merge_storages,
    parse_storage_cfg,
    parse_storage_list,
)
from proxsave.domain.models import ManifestSection, ManifestStatus
from proxsave.exceptions import CommandFailedError, PreconditionError

INFO = "var/lib/pve-cluster/info"
COMMANDS = "var/lib/proxsave-info/commands/pve"


def pve_entry(session, key):
    return session.recorder.get(ManifestSection.PVE, key)


class TestParsing:
    """Tests for storage parsing and JSON merging."""

    def test_parse_storage_cfg(self):
        text = (
            "# comment\n"
            "dir: local\n"
            "\tpath /var/lib/vz\n"
            "\tcontent iso,backup\n"
            "\n"
            "zfspool: local-zfs\n"
            "\tpool rpool/data\n"
        )

        storages = parse_storage_cfg(text)

        assert storages == [
            PVEStorage(name="local", path="/var/lib/vz", type="dir", content="iso,backup"),
            PVEStorage(name="local-zfs", type="zfspool"),
        ]

    def test_parse_storage_list_deduplicates(self):
        data = json.dumps(
            [
                {"storage": "local", "type": "dir", "path": "/var/lib/vz"},
                {"storage": "local", "type": "dir"},
                {"name": "nfs", "type": "nfs"},
                "garbage",
            ]
        )

        names = [s.name for s in parse_storage_list(data)]

        assert names == ["local", "nfs"]

    def test_parse_storage_list_rejects_invalid_json(self):
        with pytest.raises(ValueError):
            parse_storage_list("not json")

    def test_merge_fills_missing_fields(self):
        detected = [PVEStorage(name="Local", type="dir")]
        configured = [PVEStorage(name="local", path="/var/lib/vz"), PVEStorage(name="nfs", path="/mnt/nfs")]

        merged = merge_storages(detected, configured)

        assert [s.name for s in merged] == ["Local", "nfs"]
        assert merged[0].path == "/var/lib/vz"
        assert merged[0].type == "dir"

    def test_merge_json_arrays(self):
        merged = json.loads(merge_json_arrays([b"[1, 2]", b'{"a": 1}', b"broken"]))
        assert merged == [1, 2, {"a": 1}]


class TestPVECollector:
    """Tests for PVECollector.collect()."""

    def test_collects_configuration_tree(self, session, fake_runner):
        PVECollector(session).collect()

        staged = session.staging_root
        assert (staged / "etc/pve/storage.cfg").exists()
        assert (staged / "etc/pve/qemu-server/100.conf").read_text() == "memory: 2048\nname: web\n"
        assert (staged / "etc/vzdump.conf").exists()
        assert (staged / COMMANDS / "pveversion.txt").exists()
        assert (staged / INFO / "nodes_status.json").exists()
        assert pve_entry(session, "etc/pve/lxc/200.conf").status is ManifestStatus.COLLECTED
        assert fake_runner.ran("pveversion -v")
        assert not fake_runner.ran("pvecm nodes")

    def test_requires_pve_config_dir(self, pbs_config, make_session):
        with pytest.raises(PreconditionError):
            PVECollector(make_session(pbs_config)).collect()

    def test_critical_version_failure(self, session, fake_runner):
        fake_runner.set("pveversion -v", "pveversion: not a PVE node", exit_code=1)
        with pytest.raises(CommandFailedError):
            PVECollector(session).collect()

    def test_guest_configs_disabled(self, engine_config, make_session, fake_runner):
        engine_config.features.vm_configs = False
        session = make_session(engine_config)

        PVECollector(session).collect()

        assert not (session.staging_root / "etc/pve/qemu-server").exists()
        assert pve_entry(session, "etc/pve/qemu-server").status is ManifestStatus.DISABLED
        assert pve_entry(session, "etc/pve/lxc").status is ManifestStatus.DISABLED
        assert not fake_runner.ran("pvesh get /nodes/pve01/qemu")
        assert (session.staging_root / "etc/pve/datacenter.cfg").exists()

    def test_acl_disabled(self, engine_config, make_session, fake_runner):
        engine_config.features.pve_acl = False
        session = make_session(engine_config)

        PVECollector(session).collect()

        assert pve_entry(session, "etc/pve/user.cfg").status is ManifestStatus.DISABLED
        assert pve_entry(session, f"{COMMANDS}/pve_users.json").status is ManifestStatus.DISABLED
        assert not fake_runner.ran("pveum")

    def test_vzdump_disabled(self, engine_config, make_session):
        engine_config.features.vzdump_config = False
        session = make_session(engine_config)

        PVECollector(session).collect()

        assert pve_entry(session, "etc/vzdump.conf").status is ManifestStatus.DISABLED
        assert not (session.staging_root / "etc/vzdump.conf").exists()

    def test_cluster_detected_from_corosync(self, host_root, session, fake_runner):
        write_tree(host_root, {"etc/pve/corosync.conf": "totem {\n  cluster_name: lab\n}\n"})
        collector = PVECollector(session)

        collector.collect()

        assert collector.clustered
        assert fake_runner.ran("pvecm status")
        assert fake_runner.ran("pvecm nodes")
        assert (session.staging_root / COMMANDS / "cluster_status.txt").exists()

    def test_node_list_drives_per_node_commands(self, session, fake_runner):
        fake_runner.set(
            "pvesh get /nodes --output-format=json",
            json.dumps([{"node": "pve02"}, {"node": "pve01"}]),
        )
        collector = PVECollector(session)

        collector.collect()

        assert collector.nodes == ["pve01", "pve02"]
        assert fake_runner.ran("pvesh get /nodes/pve02/tasks")
        assert (session.staging_root / INFO / "jobs/pve02_backup_history.json").exists()

    @pytest.mark.parametrize("payload", ["null", "42", '{"node": "pve02"}', '"pve02"', "not json"])
    def test_unexpected_node_list_falls_back_to_local_node(self, session, fake_runner, payload):
        fake_runner.set("pvesh get /nodes --output-format=json", payload)
        collector = PVECollector(session)

        collector.collect()

        assert collector.nodes == ["pve01"]
        assert fake_runner.ran("pvesh get /nodes/pve01/tasks")

    def test_storage_summary(self, session, fake_runner):
        fake_runner.set(
            "pvesh get /nodes/pve01/storage --output-format=json",
            json.dumps([{"storage": "offsite", "type": "nfs", "path": "/mnt/pve/offsite"}]),
        )

        PVECollector(session).collect()

        datastores = session.staging_root / INFO / "datastores"
        listing = (datastores / "detected_datastores.txt").read_text()
        summary = json.loads((datastores / "local_backup_summary.json").read_text())
        assert "local|/var/lib/vz|dir|iso,vztmpl,backup" in listing
        assert "offsite" not in listing
        assert summary["total_files"] == 2
        assert {item["name"] for item in summary["backup_files"]} == {
            "vzdump-qemu-100-2024_05_16-00_00_01.vma.zst",
            "vzdump-qemu-100-2024_05_16-00_00_01.log",
        }
        assert summary["sample_directories"] == ["dump"]

    def test_small_backups_are_copied(self, engine_config, make_session):
        engine_config.features.small_pve_backups = True
        engine_config.tuning.max_pve_backup_size_bytes = 100
        session = make_session(engine_config)

        PVECollector(session).collect()

        copied = session.staging_root / "var/lib/pve-cluster/small_backups/local/dump"
        assert (copied / "vzdump-qemu-100-2024_05_16-00_00_01.vma.zst").read_text() == "backup-bytes"

    def test_backup_analysis_disabled(self, engine_config, make_session):
        engine_config.features.pve_backup_files = False
        session = make_session(engine_config)

        PVECollector(session).collect()

        assert not (session.staging_root / INFO / "datastores").exists()

    def test_ceph_collected_when_configured(self, host_root, session, fake_runner):
        write_tree(host_root, {"etc/ceph/ceph.conf": "[global]\nfsid = 1234\n"})

        PVECollector(session).collect()

        assert (session.staging_root / "etc/ceph/ceph.conf").exists()
        assert fake_runner.ran("ceph -s")

    def test_no_ceph_commands_without_ceph(self, session, fake_runner):
        PVECollector(session).collect()
        assert not fake_runner.ran("ceph")

    def test_dry_run_runs_nothing(self, engine_config, make_session, fake_runner):
        session = make_session(engine_config, dry_run=True)

        PVECollector(session).collect()

        assert fake_runner.calls == []
        assert (session.staging_root / "etc/pve/storage.cfg").exists()
