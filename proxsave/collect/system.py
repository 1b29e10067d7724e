"""Host-level configuration, command output, kernel and hardware inventory.

Runs on every host type after the PVE or PBS collector. Everything here is
best effort apart from the OS release and kernel version, which abort the
collector when they cannot be captured.
"""

from __future__ import annotations

import glob
import os
import posixpath
from typing import Optional

from proxsave.collect.base import BaseCollector
from proxsave.collect.network import NetworkReporter
from proxsave.domain.models import ManifestSection, ManifestStatus
from proxsave.logging import log_skip

NETWORK_FILES = (
    ("/etc/network/interfaces", "Network interfaces"),
    ("/etc/cloud/cloud.cfg.d/99-disable-network-config.cfg", "Cloud-init network override"),
    ("/etc/dnsmasq.d/lxc-vmbr1.conf", "LXC bridge DNSMasq configuration"),
)
NETWORK_DIRS = (
    ("/etc/network/interfaces.d", "Network interfaces.d"),
    ("/etc/netplan", "Netplan configuration"),
    ("/etc/systemd/network", "systemd-networkd configuration"),
    ("/etc/NetworkManager/system-connections", "NetworkManager connections"),
)
IDENTITY_FILES = (
    ("/etc/hostname", "Hostname"),
    ("/etc/hosts", "Hosts file"),
    ("/etc/resolv.conf", "DNS resolver"),
    ("/etc/timezone", "Timezone configuration"),
)
APT_FILES = ("/etc/apt/sources.list", "/etc/apt/preferences", "/etc/apt/listchanges.conf")
APT_DIRS = (
    "/etc/apt/sources.list.d",
    "/etc/apt/preferences.d",
    "/etc/apt/trusted.gpg.d",
    "/etc/apt/apt.conf.d",
    "/etc/apt/auth.conf.d",
    "/etc/apt/keyrings",
    "/etc/apt/listchanges.conf.d",
)
CRON_DIRS = (
    "/etc/cron.d",
    "/etc/cron.daily",
    "/etc/cron.hourly",
    "/etc/cron.monthly",
    "/etc/cron.weekly",
    "/var/spool/cron/crontabs",
)
# Lease files are runtime state, kept apart from the restorable tree
LEASE_DIRS = ("/var/lib/dhcp", "/var/lib/NetworkManager", "/run/systemd/netif/leases")
SSL_PRIVATE_PATTERNS = ("/etc/ssl/private", "/etc/ssl/private/**", "*.key")
CRITICAL_FILES = (
    "/etc/fstab",
    "/etc/crypttab",
    "/etc/passwd",
    "/etc/group",
    "/etc/shadow",
    "/etc/gshadow",
    "/etc/sudoers",
)
SCRIPT_DIRS = ("/usr/local/bin", "/usr/local/sbin")
ROOT_HOME_FILES = (
    ".bashrc",
    ".profile",
    ".bash_logout",
    ".lesshst",
    ".selected_editor",
    ".forward",
    ".wget-hsts",
    "pkg-list.txt",
)
ROOT_HISTORY_PATTERNS = (".bash_history", ".bash_history-*")


class SystemCollector(BaseCollector):
    """Collects host configuration shared by PVE and PBS installations."""

    name = "system"
    section = ManifestSection.SYSTEM

    def __init__(self, session):
        super().__init__(session)
        self.network = NetworkReporter(self)

    @property
    def out(self):
        return self.commands_dir("system")

    def collect(self) -> None:
        self.log.info("Collecting system information")
        self.collect_directories()
        self.collect_commands()
        self.collect_kernel_info()
        self.collect_hardware_info()

        optional_steps = (
            ("critical_files", self.collect_critical_files),
            ("config_file", self.collect_config_file),
            ("script_dirs", self.collect_script_directories),
            ("ssh_keys", self.collect_ssh_keys),
            ("root_home", self.collect_root_home),
        )
        for flag, step in optional_steps:
            if getattr(self.features, flag):
                step()
            else:
                log_skip(self.log, f"System {flag.replace('_', ' ')} backup disabled.")

        if self.paths.custom_backup_paths:
            self.collect_custom_paths()
        self.log.info("System information collection completed")

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    def collect_directories(self) -> None:
        self.log.debug(f"Collecting system directories into {self.staging_root}")
        if self.features.network_configs:
            for path, description in NETWORK_FILES:
                self.copy_file(path, description=description)
            for path, description in NETWORK_DIRS:
                self.copy_dir(path, description=description)

        for path, description in IDENTITY_FILES:
            self.copy_file(path, description=description)

        if self.features.apt_sources:
            self.copy_files(APT_FILES)
            for path in APT_DIRS:
                self.copy_dir(path)

        if self.features.cron_jobs:
            self.copy_file("/etc/crontab", description="System crontab")
            for path in CRON_DIRS:
                self.copy_dir(path)

        if self.features.systemd_services:
            self.copy_dir("/etc/systemd/system", description="Systemd services")

        if self.features.ssl_certs:
            self.collect_ssl()

        if self.features.sysctl_config:
            self.copy_file("/etc/sysctl.conf", description="Sysctl configuration")
            self.copy_dir("/etc/sysctl.d")

        if self.features.kernel_modules:
            self.copy_file("/etc/modules", description="Kernel modules")
            self.copy_dir("/etc/modprobe.d")

        if self.features.zfs_config:
            self.copy_dir("/etc/zfs", description="ZFS configuration")
            self.copy_file("/etc/hostid", description="ZFS host identifier")

        if self.features.firewall_rules:
            self.copy_dir("/etc/iptables", description="iptables rules")
            self.copy_dir("/etc/nftables.d", description="nftables rules")
            self.copy_file("/etc/nftables.conf", description="nftables configuration")

        self.copy_dir("/etc/logrotate.d", description="logrotate configuration")
        for path in LEASE_DIRS:
            self.copy_dir(path, self.runtime_dir(path.lstrip("/")), description=f"{path} (runtime snapshot)")

    def collect_ssl(self) -> None:
        excludes = [] if self.features.ssl_private_keys else list(SSL_PRIVATE_PATTERNS)
        if excludes:
            log_skip(self.log, "SSL private keys excluded (ssl_private_keys disabled)")
        with self.temporary_excludes(excludes):
            self.copy_dir("/etc/ssl/certs", description="SSL certificates")
            self.copy_dir("/etc/ssl/private", description="SSL private keys")
            self.copy_file("/etc/ssl/openssl.cnf", description="OpenSSL configuration")

    def collect_critical_files(self) -> None:
        self.copy_files(CRITICAL_FILES)
        self.copy_dir("/etc/sudoers.d")

    def collect_config_file(self) -> None:
        path = self.paths.config_file_path.strip()
        if not path:
            self.log.debug("No configuration file path set; nothing to collect")
            return
        if not os.path.isabs(path):
            path = os.path.abspath(path)
        # The config file lives on the running host, not under the system root
        target = self.target_path(path)
        entry = self.exclusion_entry(path, str(target)) or self.session.writer.copy_file(path, target)
        if entry.status is not ManifestStatus.COLLECTED:
            self.log.debug(f"Configuration file {path} not collected: {entry.status.value}")
        self.record(target, entry)

    def collect_custom_paths(self) -> None:
        seen: set[str] = set()
        for raw in self.paths.custom_backup_paths:
            self.ctx.check()
            path = raw.strip()
            if not path:
                continue
            logical = posixpath.normpath(posixpath.join("/", path))
            if logical in seen:
                continue
            seen.add(logical)

            physical = self.system_path(logical)
            if os.path.isdir(physical) and not os.path.islink(physical):
                self.copy_dir(logical, description=f"custom directory {logical}")
            elif self.exists(logical):
                self.copy_file(logical, description=f"custom file {posixpath.basename(logical)}")
            else:
                self.log.debug(f"Custom path {physical} not found (skipping)")

    def collect_script_directories(self) -> None:
        for path in SCRIPT_DIRS:
            self.copy_dir(path)

    def _home_users(self) -> list[str]:
        home = self.system_path("/home")
        try:
            return sorted(name for name in os.listdir(home) if os.path.isdir(os.path.join(home, name)))
        except OSError:
            return []

    def collect_ssh_keys(self) -> None:
        self.copy_dir("/etc/ssh", description="SSH configuration")
        self.copy_dir("/root/.ssh", description="root SSH keys")
        for user in self._home_users():
            if os.path.isdir(self.system_path(f"/home/{user}/.ssh")):
                self.copy_dir(f"/home/{user}/.ssh", description=f"{user} SSH keys")

    def collect_root_home(self) -> None:
        root = self.system_path("/root")
        if not os.path.isdir(root):
            return
        for name in ROOT_HOME_FILES:
            if self.exists(f"/root/{name}"):
                self.copy_file(f"/root/{name}", description=f"root file {name}")
        for pattern in ROOT_HISTORY_PATTERNS:
            for match in sorted(glob.glob(os.path.join(root, pattern))):
                name = os.path.basename(match)
                self.copy_file(f"/root/{name}", description=f"root history {name}")
        if self.features.ssh_keys:
            self.copy_dir("/root/.ssh", description="root SSH directory")
        else:
            self.log.debug("Skipping /root/.ssh in root home: ssh_keys disabled")
        self.copy_dir("/root/.config", description="root config directory")

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def collect_commands(self) -> None:
        out = self.out
        self.collect_command(
            ["cat", self.system_path("/etc/os-release")],
            out / "os_release.txt",
            description="OS release",
            critical=True,
        )
        self.collect_command(["uname", "-a"], out / "uname.txt", description="Kernel version", critical=True)
        self.collect_command(["hostname", "-f"], out / "hostname.txt", description="Hostname")

        self.collect_network_state()

        self.collect_command(["df", "-h"], out / "df.txt", description="Disk usage")
        self.collect_command(["mount"], out / "mount.txt", description="Mounted filesystems")
        self.collect_command(["lsblk", "-f"], out / "lsblk.txt", description="Block devices")
        self.collect_command_optional(["lsblk", "-J", "-O"], out / "lsblk_json.json", description="Block devices (JSON)")
        self.collect_command_optional(["blkid"], out / "blkid.txt", description="Block device identifiers")
        self.collect_command(["free", "-h"], out / "free.txt", description="Memory usage")
        self.collect_command(["lscpu"], out / "lscpu.txt", description="CPU information")
        self.collect_command(["lspci", "-v"], out / "lspci.txt", description="PCI devices")
        self.collect_command_optional(["lsusb"], out / "lsusb.txt", description="USB devices")

        if self.features.systemd_services:
            self.collect_command(
                ["systemctl", "list-units", "--type=service", "--all"],
                out / "systemctl_services.txt",
                description="Systemd services",
            )
            self.collect_command_optional(
                ["systemctl", "list-unit-files", "--type=service"],
                out / "systemctl_service_files.txt",
                description="Systemd service files",
            )

        if self.features.installed_packages:
            self.collect_command(["dpkg", "-l"], out / "packages" / "dpkg_list.txt", description="Installed packages")
            self.collect_command_optional(["apt-cache", "policy"], out / "apt_policy.txt", description="APT policy")
        else:
            self.record_disabled(out / "packages" / "dpkg_list.txt", "installed_packages")

        if self.features.firewall_rules:
            self.collect_firewall_state()

        if self.features.kernel_modules:
            self.collect_command(["lsmod"], out / "lsmod.txt", description="Loaded kernel modules")
        if self.features.sysctl_config:
            self.collect_command(["sysctl", "-a"], out / "sysctl.txt", description="Sysctl values")
        if self.features.zfs_config:
            self.collect_zfs_state()

        if self.exists("/sbin/pvs"):
            for cmd in ("pvs", "vgs", "lvs"):
                self.collect_command([cmd], out / f"lvm_{cmd}.txt", description=f"LVM {cmd}")

        self.network.build_report()
        self.log.debug("System command output collection finished")

    def collect_network_state(self) -> None:
        out = self.out
        self.collect_command(["ip", "addr", "show"], out / "ip_addr.txt", description="IP addresses")
        addr_json = self.capture_command(
            ["ip", "-j", "addr", "show"], out / "ip_addr.json", description="IP addresses (JSON)", optional=True
        )
        self.collect_command(["ip", "rule", "show"], out / "ip_rule.txt", description="IP rules")
        self.collect_command_optional(["ip", "-j", "rule", "show"], out / "ip_rule.json", description="IP rules (JSON)")
        self.collect_command(["ip", "route", "show"], out / "ip_route.txt", description="IP routes")
        self.collect_command_optional(["ip", "-j", "route", "show"], out / "ip_route.json", description="IP routes (JSON)")
        self.collect_command_optional(
            ["ip", "-4", "route", "show", "table", "all"], out / "ip_route_all_v4.txt", description="IPv4 routes (all tables)"
        )
        self.collect_command_optional(
            ["ip", "-6", "route", "show", "table", "all"], out / "ip_route_all_v6.txt", description="IPv6 routes (all tables)"
        )
        self.collect_command_optional(["ip", "-s", "link"], out / "ip_link.txt", description="IP links")
        link_json = self.capture_command(
            ["ip", "-j", "link"], out / "ip_link.json", description="IP links (JSON)", optional=True
        )
        self.collect_command(["ip", "neigh", "show"], out / "ip_neigh.txt", description="Neighbors")
        self.collect_command(["ip", "-6", "neigh", "show"], out / "ip6_neigh.txt", description="IPv6 neighbors")

        for kind in ("link", "vlan", "fdb", "mdb"):
            cmd = ["bridge", "-d", "link", "show"] if kind == "link" else ["bridge", kind, "show"]
            self.collect_command_optional(cmd, out / f"bridge_{kind}.txt", description=f"Bridge {kind}")

        self.network.collect_inventory(link_json, addr_json)
        self.collect_bonding_status()

    def collect_bonding_status(self) -> None:
        bonding = self.system_path("/proc/net/bonding")
        try:
            names = sorted(os.listdir(bonding))
        except OSError:
            self.log.debug("No bonding interfaces found")
            return
        for name in names:
            if os.path.isfile(os.path.join(bonding, name)):
                self.copy_file(f"/proc/net/bonding/{name}", self.out / f"bonding_{name}.txt", description="Bonding status")

    def collect_firewall_state(self) -> None:
        out = self.out
        self.collect_command(["iptables-save"], out / "iptables.txt", description="iptables rules")
        self.collect_command_optional(
            ["iptables", "-t", "nat", "-vnL", "--line-numbers"], out / "iptables_nat.txt", description="iptables NAT table"
        )
        self.collect_command(["ip6tables-save"], out / "ip6tables.txt", description="ip6tables rules")
        self.collect_command_optional(
            ["ip6tables", "-t", "nat", "-vnL", "--line-numbers"], out / "ip6tables_nat.txt", description="ip6tables NAT table"
        )
        self.collect_command_optional(["nft", "list", "ruleset"], out / "nftables.txt", description="nftables rules")
        self.collect_command_optional(["ufw", "status", "verbose"], out / "ufw_status.txt", description="UFW status")
        self.collect_command_optional(["firewall-cmd", "--state"], out / "firewalld_state.txt", description="firewalld state")
        self.collect_command_optional(
            ["firewall-cmd", "--list-all"], out / "firewalld_list_all.txt", description="firewalld rules"
        )
        for unit in ("ufw", "firewalld"):
            self.collect_command_optional(
                ["systemctl", "status", "--no-pager", unit], out / f"systemctl_{unit}.txt", description=f"systemctl {unit}"
            )

    def detect_zfs_usage(self) -> tuple[bool, list[str]]:
        """Look for mounted ZFS, a pool cache, fstab or PVE storage references."""
        indicators: list[str] = []

        def fstype_lines(path: str) -> bool:
            text = self._read_text(path)
            for line in (text or "").splitlines():
                line = line.strip()
                if not line or line.startswith("#"):
                    continue
                fields = line.split()
                if len(fields) >= 3 and fields[2] == "zfs":
                    return True
            return False

        if fstype_lines("/proc/mounts"):
            indicators.append("mounted_zfs")
        if os.path.exists(self.system_path("/etc/zfs/zpool.cache")):
            indicators.append("zpool_cache")
        if fstype_lines("/etc/fstab"):
            indicators.append("fstab_zfs")
        if "zfspool" in (self._read_text("/etc/pve/storage.cfg") or "").lower():
            indicators.append("pve_storage_zfspool")
        return bool(indicators), indicators

    def _read_text(self, path: str) -> Optional[str]:
        try:
            with open(self.system_path(path), "r", encoding="utf-8", errors="replace") as handle:
                return handle.read()
        except OSError:
            return None

    def collect_zfs_state(self) -> None:
        uses_zfs, indicators = self.detect_zfs_usage()
        self.log.debug(f"ZFS usage detected={uses_zfs} (indicators={','.join(indicators) or 'none'})")
        if not uses_zfs:
            log_skip(self.log, "Skipping ZFS collection: not detected")
            return
        zfs_dir = self.out / "zfs"
        if self.command_available("zpool"):
            self.collect_command_optional(["zpool", "status"], zfs_dir / "zpool_status.txt", description="ZFS pool status")
            self.collect_command_optional(["zpool", "list"], zfs_dir / "zpool_list.txt", description="ZFS pool list")
        if self.command_available("zfs"):
            self.collect_command_optional(["zfs", "list"], zfs_dir / "zfs_list.txt", description="ZFS filesystem list")
            self.collect_command_optional(["zfs", "get", "all"], zfs_dir / "zfs_get_all.txt", description="ZFS properties")

    def collect_kernel_info(self) -> None:
        self.collect_command(
            ["cat", self.system_path("/proc/cmdline")], self.out / "kernel_cmdline.txt", description="Kernel command line"
        )
        self.collect_command(
            ["cat", self.system_path("/proc/version")], self.out / "kernel_version.txt", description="Kernel version details"
        )

    def collect_hardware_info(self) -> None:
        """DMI tables, sensors and the SMART device scan."""
        self.collect_command(["dmidecode"], self.out / "dmidecode.txt", description="Hardware DMI information")
        if self.exists("/usr/bin/sensors"):
            self.collect_command(["sensors"], self.out / "sensors.txt", description="Hardware sensors")
        if self.exists("/usr/sbin/smartctl"):
            self.collect_command(["smartctl", "--scan"], self.out / "smartctl_scan.txt", description="SMART scan")
