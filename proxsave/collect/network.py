"""Network inventory and the aggregated network report.

The inventory merges ``ip -j link`` / ``ip -j addr`` output with what sysfs
knows about each interface (MAC, driver, bridge and bond membership). It is
what a restore uses to map old NIC names onto new hardware.
"""

from __future__ import annotations

import glob
import json
import os
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from proxsave.exceptions import CommandNotFoundError, DeadlineExceededError

if TYPE_CHECKING:
    from proxsave.collect.system import SystemCollector

INVENTORY_FILENAME = "network_inventory.json"
REPORT_FILENAME = "network_report.txt"

# (title, file under commands/system) in report order
REPORT_COMMAND_FILES = (
    ("IP addresses", "ip_addr.txt"),
    ("IP routes", "ip_route.txt"),
    ("IP routes (all tables v4)", "ip_route_all_v4.txt"),
    ("IP routes (all tables v6)", "ip_route_all_v6.txt"),
    ("IP rules", "ip_rule.txt"),
    ("IP links (stats)", "ip_link.txt"),
    ("Network inventory", INVENTORY_FILENAME),
    ("Neighbors (ARP/NDP)", "ip_neigh.txt"),
    ("Neighbors (IPv6)", "ip6_neigh.txt"),
    ("Bridge links", "bridge_link.txt"),
    ("Bridge VLANs", "bridge_vlan.txt"),
    ("Bridge FDB", "bridge_fdb.txt"),
    ("Bridge MDB", "bridge_mdb.txt"),
    ("iptables-save", "iptables.txt"),
    ("iptables NAT table", "iptables_nat.txt"),
    ("ip6tables-save", "ip6tables.txt"),
    ("ip6tables NAT table", "ip6tables_nat.txt"),
    ("nftables ruleset", "nftables.txt"),
    ("UFW status", "ufw_status.txt"),
    ("firewalld state", "firewalld_state.txt"),
    ("firewalld rules", "firewalld_list_all.txt"),
    ("systemctl ufw", "systemctl_ufw.txt"),
    ("systemctl firewalld", "systemctl_firewalld.txt"),
)


def _read_line(path: str, limit: int = 256) -> str:
    try:
        with open(path, "r", encoding="utf-8", errors="replace") as handle:
            return handle.read(limit).strip()
    except OSError:
        return ""


def _read_int(path: str) -> int:
    value = _read_line(path, 32)
    try:
        number = int(value)
    except ValueError:
        return 0
    return number if number > 0 else 0


def _load_json_list(data: Optional[bytes]) -> list[dict]:
    if not data:
        return []
    try:
        raw = json.loads(data)
    except ValueError:
        return []
    return [item for item in raw if isinstance(item, dict)] if isinstance(raw, list) else []


def parse_ip_link(data: Optional[bytes]) -> dict[str, dict]:
    """Index ``ip -j link`` output by interface name."""
    links: dict[str, dict] = {}
    for item in _load_json_list(data):
        name = str(item.get("ifname") or "").strip()
        if not name:
            continue
        info = item.get("linkinfo") if isinstance(item.get("linkinfo"), dict) else {}
        links[name] = {
            "ifindex": item.get("ifindex") or 0,
            "mac": str(item.get("address") or "").lower(),
            "mtu": item.get("mtu") or 0,
            "oper_state": str(item.get("operstate") or "").lower(),
            "master": str(item.get("master") or ""),
            "kind": str(info.get("info_kind") or ""),
        }
    return links


def parse_ip_addr(data: Optional[bytes]) -> dict[str, list[str]]:
    """Map interface name to its ``address/prefix`` list from ``ip -j addr``."""
    addresses: dict[str, list[str]] = {}
    for item in _load_json_list(data):
        name = str(item.get("ifname") or "").strip()
        if not name:
            continue
        entries = []
        for addr in item.get("addr_info") or []:
            if not isinstance(addr, dict) or not addr.get("local"):
                continue
            prefix = addr.get("prefixlen")
            entries.append(f"{addr['local']}/{prefix}" if prefix is not None else str(addr["local"]))
        addresses[name] = entries
    return addresses


def parse_ethtool_permanent_mac(output: str) -> str:
    prefix = "permanent address:"
    for line in output.splitlines():
        line = line.strip()
        if line.lower().startswith(prefix):
            return line[len(prefix):].strip().lower()
    return ""


def read_sysfs_interface(sys_net: str, name: str) -> dict:
    """Interface facts available from ``/sys/class/net/<name>``."""
    net_path = os.path.join(sys_net, name)
    profile: dict = {
        "name": name,
        "mac": _read_line(os.path.join(net_path, "address"), 64).lower(),
        "ifindex": _read_int(os.path.join(net_path, "ifindex")),
        "oper_state": _read_line(os.path.join(net_path, "operstate"), 32),
        "speed_mbps": _read_int(os.path.join(net_path, "speed")),
        "system_net_path": net_path,
        "is_virtual": False,
    }
    try:
        if "/virtual/" in os.readlink(net_path):
            profile["is_virtual"] = True
    except OSError:
        pass

    device = os.path.join(net_path, "device")
    if os.path.exists(device):
        profile["pci_path"] = os.path.realpath(device)
    driver = os.path.join(device, "driver")
    if os.path.exists(driver):
        profile["driver"] = os.path.basename(os.path.realpath(driver))

    master = os.path.join(net_path, "master")
    if os.path.islink(master):
        profile["master"] = os.path.basename(os.readlink(master))

    brif = os.path.join(net_path, "brif")
    if os.path.isdir(brif):
        profile["kind"] = "bridge"
        profile["members"] = sorted(os.listdir(brif))

    slaves = _read_line(os.path.join(net_path, "bonding", "slaves"), 4096)
    if os.path.isdir(os.path.join(net_path, "bonding")):
        profile["kind"] = "bond"
        profile["members"] = sorted(slaves.split())
    return profile


def build_inventory(
    sys_net: str,
    link_json: Optional[bytes],
    addr_json: Optional[bytes],
    *,
    hostname: str,
    generated_at: datetime,
) -> dict:
    """Merge sysfs facts with ``ip`` JSON output into one inventory document."""
    links = parse_ip_link(link_json)
    addresses = parse_ip_addr(addr_json)

    try:
        names = set(os.listdir(sys_net))
    except OSError:
        names = set()
    names.update(links)

    interfaces = []
    for name in sorted(n for n in names if n.strip()):
        if os.path.exists(os.path.join(sys_net, name)):
            profile = read_sysfs_interface(sys_net, name)
        else:
            profile = {"name": name, "is_virtual": False}
        link = links.get(name, {})
        for key in ("mac", "ifindex", "oper_state", "master", "kind"):
            if link.get(key) and not profile.get(key):
                profile[key] = link[key]
        if link.get("mtu"):
            profile["mtu"] = link["mtu"]
        if addresses.get(name):
            profile["addresses"] = addresses[name]
        interfaces.append({key: value for key, value in profile.items() if value not in ("", 0, None, [])})

    return {
        "generated_at": generated_at.isoformat(),
        "hostname": hostname,
        "interfaces": interfaces,
    }


def _report_block(title: str, path: str) -> str:
    try:
        with open(path, "r", encoding="utf-8", errors="replace") as handle:
            data = handle.read()
    except OSError:
        return ""
    if not data:
        return ""
    if not data.endswith("\n"):
        data += "\n"
    return f"## {title} ({path})\n{data}\n"


class NetworkReporter:
    """Writes the network inventory and report for a ``SystemCollector``."""

    def __init__(self, collector: SystemCollector):
        self.collector = collector
        self.log = collector.log

    @property
    def commands_dir(self) -> Path:
        return self.collector.commands_dir("system")

    def _host_commands_allowed(self) -> bool:
        root = self.collector.paths.system_root_prefix.strip()
        return root in ("", "/") and not self.collector.session.dry_run

    def _quiet_output(self, *cmd: str) -> str:
        collector = self.collector
        if not collector.command_available(cmd[0]):
            return ""
        try:
            result = collector.session.runner.run(collector.ctx.with_timeout(10), *cmd)
        except (CommandNotFoundError, DeadlineExceededError):
            collector.ctx.check()
            return ""
        return result.text if result.ok else ""

    def _enrich(self, profile: dict) -> None:
        name = profile["name"]
        mac = parse_ethtool_permanent_mac(self._quiet_output("ethtool", "-P", name))
        if mac and mac != "00:00:00:00:00:00":
            profile["permanent_mac"] = mac
        if not profile.get("driver"):
            for line in self._quiet_output("ethtool", "-i", name).splitlines():
                if line.strip().startswith("driver:"):
                    profile["driver"] = line.split(":", 1)[1].strip()
                    break

    def collect_inventory(self, link_json: Optional[bytes], addr_json: Optional[bytes]) -> Optional[dict]:
        collector = self.collector
        collector.ctx.check()
        sys_net = collector.system_path("/sys/class/net")
        inventory = build_inventory(
            sys_net,
            link_json,
            addr_json,
            hostname=collector.session.hostname,
            generated_at=collector.session.created_at,
        )
        if not inventory["interfaces"]:
            self.log.debug(f"Network inventory skipped: no interfaces found under {sys_net}")
            return None
        if self._host_commands_allowed():
            for profile in inventory["interfaces"]:
                self._enrich(profile)
        data = json.dumps(inventory, indent=2, sort_keys=True) + "\n"
        collector.write_report(self.commands_dir / INVENTORY_FILENAME, data)
        collector.write_report(collector.info_dir(INVENTORY_FILENAME), data)
        self.log.debug(f"Network inventory written ({len(inventory['interfaces'])} interfaces)")
        return inventory

    def build_report(self) -> bool:
        """Aggregate network config files and command outputs into one report."""
        collector = self.collector
        collector.ctx.check()
        blocks = [
            "Proxsave Network Report\n",
            f"Timestamp: {collector.session.created_at.isoformat()}\n",
            f"Hostname: {collector.session.hostname}\n\n",
        ]

        def add_glob(title: str, pattern: str) -> None:
            for match in sorted(glob.glob(collector.system_path(pattern))):
                if os.path.isfile(match):
                    blocks.append(_report_block(title, match))

        blocks.append(_report_block("interfaces", collector.system_path("/etc/network/interfaces")))
        add_glob("interfaces.d", "/etc/network/interfaces.d/*")
        blocks.append(_report_block("hostname", collector.system_path("/etc/hostname")))
        blocks.append(_report_block("hosts", collector.system_path("/etc/hosts")))
        blocks.append(_report_block("resolv.conf", collector.system_path("/etc/resolv.conf")))
        add_glob("netplan", "/etc/netplan/*.yaml")
        for suffix in ("network", "netdev", "link"):
            add_glob("systemd-networkd", f"/etc/systemd/network/*.{suffix}")
        add_glob("NetworkManager connection", "/etc/NetworkManager/system-connections/*")

        for title, filename in REPORT_COMMAND_FILES:
            blocks.append(_report_block(title, str(self.commands_dir / filename)))
        for bonding in sorted(self.commands_dir.glob("bonding_*.txt")):
            blocks.append(_report_block("Bonding status", str(bonding)))

        return collector.write_report(self.commands_dir / REPORT_FILENAME, "".join(blocks))
