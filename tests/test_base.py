"""Tests for the shared collector helpers."""

import pytest

from proxsave.collect.base import (
    BaseCollector,
    CollectorDeps,
    build_pbs_env,
    sanitize_filename,
)
from proxsave.config.settings import PBSAuth
from proxsave.domain.models import ManifestSection, ManifestStatus
from proxsave.exceptions import (
    CommandFailedError,
    CommandNotFoundError,
    DeadlineExceededError,
)
from proxsave.process.privilege import REASON_DMI
from proxsave.process.runner import CommandResult


class SampleCollector(BaseCollector):
    name = "sample"
    section = ManifestSection.SYSTEM

    def collect(self):
        pass


@pytest.fixture
def collector(session):
    return SampleCollector(session)


def entry_for(collector, key):
    return collector.session.recorder.get(ManifestSection.SYSTEM, key)


UNAME_KEY = "var/lib/proxsave-info/commands/system/uname.txt"


class TestHelpers:
    """Tests for module-level helpers."""

    @pytest.mark.parametrize(
        "name,expected",
        [
            ("backup@pbs!token", "backup_pbs!token"),
            ("a/b\\c:d", "a_b_c_d"),
            ("..", "_"),
            ("", "entry"),
        ],
    )
    def test_sanitize_filename(self, name, expected):
        assert sanitize_filename(name) == expected

    def test_pbs_env_without_credentials(self):
        assert build_pbs_env(PBSAuth()) is None

    def test_pbs_env_replaces_datastore(self):
        auth = PBSAuth(repository="backup@pbs@10.0.0.2:old", password="pw", fingerprint="aa:bb")

        env = build_pbs_env(auth, "main")

        assert env == {
            "PBS_REPOSITORY": "backup@pbs@10.0.0.2:main",
            "PBS_PASSWORD": "pw",
            "PBS_FINGERPRINT": "aa:bb",
        }

    def test_pbs_env_with_password_only(self):
        env = build_pbs_env(PBSAuth(password="pw"), "main")
        assert env["PBS_REPOSITORY"] == "root@pam@localhost:main"


class TestCaptureCommand:
    """Tests for BaseCollector.capture_command()."""

    def target(self, collector):
        return collector.commands_dir("system") / "uname.txt"

    def test_success_writes_and_records(self, collector, fake_runner):
        fake_runner.set("uname -a", "Linux pve01\n")

        data = collector.capture_command(["uname", "-a"], self.target(collector), description="kernel")

        assert data == b"Linux pve01\n"
        assert self.target(collector).read_bytes() == b"Linux pve01\n"
        entry = entry_for(collector, UNAME_KEY)
        assert entry.status is ManifestStatus.COLLECTED
        assert entry.size == 12

    def test_missing_command_is_not_found(self, collector, fake_runner):
        fake_runner.missing.add("uname")

        assert collector.capture_command(["uname", "-a"], self.target(collector), description="kernel") is None

        assert entry_for(collector, UNAME_KEY).status is ManifestStatus.NOT_FOUND
        assert fake_runner.calls == []

    def test_missing_critical_command_raises(self, collector, fake_runner):
        fake_runner.missing.add("uname")

        with pytest.raises(CommandNotFoundError):
            collector.capture_command(
                ["uname", "-a"], self.target(collector), description="kernel", critical=True
            )

        assert entry_for(collector, UNAME_KEY).status is ManifestStatus.FAILED

    def test_missing_optional_command_records_nothing(self, collector, fake_runner):
        fake_runner.missing.add("uname")

        collector.capture_command(["uname", "-a"], self.target(collector), description="kernel", optional=True)

        assert entry_for(collector, UNAME_KEY) is None

    def test_failure_is_recorded(self, collector, fake_runner):
        fake_runner.set("uname -a", "uname: boom\n", exit_code=2)

        assert collector.capture_command(["uname", "-a"], self.target(collector), description="kernel") is None

        entry = entry_for(collector, UNAME_KEY)
        assert entry.status is ManifestStatus.FAILED
        assert entry.error == "exit code 2: uname: boom"
        assert not self.target(collector).exists()

    def test_critical_failure_raises(self, collector, fake_runner):
        fake_runner.set("uname -a", "boom", exit_code=2)

        with pytest.raises(CommandFailedError) as excinfo:
            collector.capture_command(
                ["uname", "-a"], self.target(collector), description="kernel", critical=True
            )

        assert excinfo.value.exit_code == 2
        assert excinfo.value.command == "uname -a"

    def test_optional_failure_records_nothing(self, collector, fake_runner):
        fake_runner.set("uname -a", "boom", exit_code=1)

        collector.capture_command(["uname", "-a"], self.target(collector), description="kernel", optional=True)

        assert entry_for(collector, UNAME_KEY) is None

    def test_timeout_is_a_failure(self, collector, fake_runner):
        fake_runner.responses["uname"] = DeadlineExceededError()

        assert collector.capture_command(["uname", "-a"], self.target(collector), description="kernel") is None

        assert entry_for(collector, UNAME_KEY).error == "exit code -1: command timed out"

    def test_dry_run_does_not_execute(self, engine_config, make_session, fake_runner):
        collector = SampleCollector(make_session(engine_config, dry_run=True))

        assert collector.capture_command(["uname", "-a"], self.target(collector), description="kernel") is None

        assert fake_runner.calls == []
        assert entry_for(collector, UNAME_KEY) is None

    def test_passes_environment(self, collector, fake_runner):
        collector.capture_command(["env"], description="env", env={"PBS_PASSWORD": "pw"})
        assert fake_runner.calls == [("env", {"PBS_PASSWORD": "pw"})]


class TestUnprivilegedDowngrade:
    """Known container failures are recorded as skipped."""

    DMI_KEY = "var/lib/proxsave-info/commands/system/dmidecode.txt"

    def run_dmidecode(self, collector):
        collector.capture_command(
            ["dmidecode"],
            collector.commands_dir("system") / "dmidecode.txt",
            description="hardware info",
        )

    def test_container_skips_dmidecode(self, engine_config, make_session, fake_runner, unprivileged):
        fake_runner.set("dmidecode", "/dev/mem: Permission denied\n", exit_code=1)
        session = make_session(engine_config, deps=CollectorDeps(runner=fake_runner, privilege=unprivileged))
        collector = SampleCollector(session)

        self.run_dmidecode(collector)

        entry = entry_for(collector, self.DMI_KEY)
        assert entry.status is ManifestStatus.SKIPPED
        assert entry.error == REASON_DMI
        assert session.stats.files_failed == 0
        assert session.stats.files_skipped == 1

    def test_privileged_host_reports_failure(self, collector, fake_runner):
        fake_runner.set("dmidecode", "/dev/mem: Permission denied\n", exit_code=1)

        self.run_dmidecode(collector)

        assert entry_for(collector, self.DMI_KEY).status is ManifestStatus.FAILED


class TestCollectCommand:
    """Tests for collect_command() and collect_command_optional()."""

    def test_mirrors_receive_identical_bytes(self, collector, fake_runner):
        fake_runner.set("ip addr", "1: lo\n")
        primary = collector.commands_dir("network") / "ip_addr.txt"
        mirror = collector.runtime_dir("network") / "ip_addr.txt"

        assert collector.collect_command(["ip", "addr"], primary, mirror, description="addresses")

        assert mirror.read_bytes() == primary.read_bytes() == b"1: lo\n"
        assert fake_runner.commands == ["ip addr"]

    def test_optional_empty_output(self, collector, fake_runner):
        fake_runner.set("zpool list", b"")
        target = collector.commands_dir("zfs") / "zpool_list.txt"

        assert collector.collect_command_optional(["zpool", "list"], target, description="pools") is False


class TestCopyAndExclusions:
    """File copies, exclusions and disabled features."""

    def test_copy_file_records_collected(self, collector):
        entry = collector.copy_file("/etc/hostname")

        assert entry.status is ManifestStatus.COLLECTED
        assert (collector.staging_root / "etc/hostname").read_text() == "pve01\n"

    def test_copy_missing_file(self, collector):
        assert collector.copy_file("/etc/absent.conf").status is ManifestStatus.NOT_FOUND

    def test_user_exclusion_is_skipped(self, engine_config, make_session):
        engine_config.tuning.exclude_patterns = ["**/*.key"]
        collector = SampleCollector(make_session(engine_config))

        entry = collector.copy_file("/etc/ssl/private/server.key")

        assert entry.status is ManifestStatus.SKIPPED
        assert entry.error == "excluded by **/*.key"

    def test_temporary_exclusion_is_disabled(self, collector):
        with collector.temporary_excludes(["**/private/**"]):
            inside = collector.copy_file("/etc/ssl/private/server.key")
        after = collector.exclusion_entry("/etc/ssl/private/server.key", "")

        assert inside.status is ManifestStatus.DISABLED
        assert after is None
        assert collector.session.stats.files_skipped == 0

    def test_record_disabled(self, collector):
        collector.record_disabled(collector.target_path("/etc/pve/qemu-server"), "vm_configs")

        entry = entry_for(collector, "etc/pve/qemu-server")
        assert entry.status is ManifestStatus.DISABLED
        assert entry.error == "disabled by vm_configs"

    def test_copy_dir(self, collector):
        assert collector.copy_dir("/etc/ssl")
        assert (collector.staging_root / "etc/ssl/certs/ca.pem").exists()

    def test_copy_missing_dir(self, collector):
        assert collector.copy_dir("/etc/nonexistent") is False

    def test_write_report(self, collector):
        target = collector.info_dir("summary.json")
        assert collector.write_report(target, '{"ok": true}')
        assert entry_for(collector, "var/lib/proxsave-info/summary.json").size == 12
