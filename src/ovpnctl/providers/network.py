"""Host network configuration for an instance: forwarding, NAT and rule inspection.

Rule installation is idempotent: every rule is probed with ``iptables -C``
and appended only when the probe reports it missing, so repeated setup runs
never duplicate rules.
"""
from __future__ import annotations

import hashlib
import ipaddress
import json
import re
from dataclasses import dataclass, field
from pathlib import Path

from ..config import NetworkConfig
from ..errors import AdvisoryResult, ExternalCommandError, NotFoundError, ValidationError
from ..state.records import validate_netmask
from .process import CommandResult, CommandRunner

IFNAME_MAX = 15
ALLOWED_CHAINS = ("POSTROUTING", "FORWARD")
ALLOWED_TARGETS = ("MASQUERADE", "ACCEPT", "DROP")
_NAT_CHAINS = {"POSTROUTING", "PREROUTING", "OUTPUT"}
_DEV_PATTERN = re.compile(r"\bdev\s+(\S+)")
_SIZE_SUFFIXES = {"K": 1000, "M": 1000**2, "G": 1000**3, "T": 1000**4}


def virtual_interface_name(dev_type: str, instance: str) -> str:
    """Return the kernel interface name for *instance* (at most 15 characters)."""
    candidate = f"{dev_type}_{instance}"
    if len(candidate) <= IFNAME_MAX:
        return candidate
    digest = hashlib.sha1(instance.encode("utf-8")).hexdigest()[:4]  # noqa: S324
    keep = IFNAME_MAX - len(dev_type) - 1 - len(digest)
    return f"{dev_type}_{instance[:keep]}{digest}"


def prefix_length(mask: str) -> int:
    """Return the CIDR prefix length of a dotted netmask."""
    return ipaddress.IPv4Network(f"0.0.0.0/{validate_netmask(mask)}").prefixlen


def _parse_counter(value: str) -> int:
    if value.isdigit():
        return int(value)
    suffix = value[-1:].upper()
    if suffix in _SIZE_SUFFIXES and value[:-1].isdigit():
        return int(value[:-1]) * _SIZE_SUFFIXES[suffix]
    return 0


@dataclass(frozen=True, slots=True)
class FirewallRule:
    """One row of ``iptables -L --line-numbers`` output."""

    chain: str
    num: int
    packet_count: int
    byte_count: int
    target: str
    protocol: str
    in_interface: str
    out_interface: str
    source: str
    destination: str
    extra: str = ""

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "chain": self.chain,
            "num": self.num,
            "packets": self.packet_count,
            "bytes": self.byte_count,
            "target": self.target,
            "protocol": self.protocol,
            "in": self.in_interface,
            "out": self.out_interface,
            "source": self.source,
            "destination": self.destination,
            "extra": self.extra,
        }


@dataclass(frozen=True, slots=True)
class NetworkInterface:
    """A host interface reported by ``ip -j addr show``."""

    name: str
    state: str
    mtu: int | None
    addresses: tuple[str, ...]

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "state": self.state,
            "mtu": self.mtu,
            "addresses": list(self.addresses),
        }


def parse_rule_listing(chain: str, output: str) -> list[FirewallRule]:
    """Parse verbose, numbered ``iptables -L`` output for *chain*."""
    rules: list[FirewallRule] = []
    for line in output.splitlines():
        parts = line.split()
        if not parts or not parts[0].isdigit():
            continue
        # Newer iptables builds omit the "opt" column.
        if len(parts) >= 10 and (parts[5] == "--" or parts[5].lstrip("!").startswith("-")):
            fields_ = parts[:6] + parts[6:10]
            extra = parts[10:]
        elif len(parts) >= 9:
            fields_ = parts[:5] + ["--"] + parts[5:9]
            extra = parts[9:]
        else:
            continue
        num, pkts, size, target, prot, _opt, in_iface, out_iface, source, destination = fields_
        rules.append(
            FirewallRule(
                chain=chain,
                num=int(num),
                packet_count=_parse_counter(pkts),
                byte_count=_parse_counter(size),
                target=target,
                protocol=prot,
                in_interface=in_iface,
                out_interface=out_iface,
                source=source,
                destination=destination,
                extra=" ".join(extra),
            )
        )
    return rules


def parse_interfaces(output: str) -> list[NetworkInterface]:
    """Parse the JSON emitted by ``ip -j addr show``."""
    try:
        payload = json.loads(output or "[]")
    except json.JSONDecodeError as exc:
        raise ValidationError(f"Unexpected interface listing: {exc}") from exc
    interfaces: list[NetworkInterface] = []
    for entry in payload if isinstance(payload, list) else []:
        if not isinstance(entry, dict):
            continue
        addresses = tuple(
            f"{info.get('local')}/{info.get('prefixlen')}"
            for info in entry.get("addr_info", [])
            if isinstance(info, dict) and info.get("local")
        )
        mtu = entry.get("mtu")
        interfaces.append(
            NetworkInterface(
                name=str(entry.get("ifname", "")),
                state=str(entry.get("operstate", "UNKNOWN")),
                mtu=int(mtu) if isinstance(mtu, int) else None,
                addresses=addresses,
            )
        )
    return interfaces


@dataclass(slots=True)
class NetworkConfigurator:
    """Apply forwarding and NAT for the virtual interface of one instance."""

    device: str
    runner: CommandRunner = field(default_factory=CommandRunner)
    settings: NetworkConfig = field(default_factory=NetworkConfig)

    # Forwarding -------------------------------------------------------
    def enable_forwarding(self) -> None:
        """Enable IPv4 forwarding now and across reboots."""
        self.runner.run([self.settings.sysctl_bin, "-w", "net.ipv4.ip_forward=1"])
        conf = Path(self.settings.sysctl_conf)
        conf.parent.mkdir(parents=True, exist_ok=True)
        conf.write_text("net.ipv4.ip_forward = 1\n", encoding="utf-8")

    def disable_forwarding(self) -> None:
        """Disable IPv4 forwarding host-wide and remove the persisted setting."""
        self.runner.run([self.settings.sysctl_bin, "-w", "net.ipv4.ip_forward=0"])
        Path(self.settings.sysctl_conf).unlink(missing_ok=True)

    def forwarding_enabled(self) -> bool:
        """Return ``True`` when the kernel forwards IPv4."""
        result = self.runner.run([self.settings.sysctl_bin, "-n", "net.ipv4.ip_forward"])
        return result.stdout.strip() == "1"

    # Interfaces -------------------------------------------------------
    def default_interface(self) -> str:
        """Return the egress interface of the default route."""
        result = self.runner.run([self.settings.ip_bin, "route", "show", "default"])
        match = _DEV_PATTERN.search(result.stdout)
        return match.group(1) if match else self.settings.fallback_interface

    def list_interfaces(self) -> list[NetworkInterface]:
        """Return the host interfaces and their addresses."""
        result = self.runner.run([self.settings.ip_bin, "-j", "addr", "show"])
        return parse_interfaces(result.stdout)

    # NAT --------------------------------------------------------------
    def nat_rules(self, subnet: str, mask: str, egress: str) -> list[tuple[str, ...]]:
        """Return the (table, chain, *match) rules installed for *subnet*."""
        source = f"{subnet}/{prefix_length(mask)}"
        return [
            ("nat", "POSTROUTING", "-s", source, "-o", egress, "-j", "MASQUERADE"),
            ("filter", "FORWARD", "-i", self.device, "-o", egress, "-j", "ACCEPT"),
            (
                "filter",
                "FORWARD",
                "-i",
                egress,
                "-o",
                self.device,
                "-m",
                "state",
                "--state",
                "RELATED,ESTABLISHED",
                "-j",
                "ACCEPT",
            ),
        ]

    def setup_nat(self, subnet: str, mask: str) -> int:
        """Install masquerading and forwarding rules; return how many were appended."""
        egress = self.default_interface()
        appended = 0
        for table, chain, *match in self.nat_rules(subnet, mask, egress):
            probe = self._iptables(table, "-C", chain, *match, check=False)
            if probe.ok:
                continue
            self._iptables(table, "-A", chain, *match)
            appended += 1
        return appended

    def remove_nat(self, subnet: str, mask: str) -> AdvisoryResult[int]:
        """Delete the rules installed by :meth:`setup_nat`, reporting failures as warnings."""
        result: AdvisoryResult[int] = AdvisoryResult(value=0)
        egress = self.default_interface()
        for table, chain, *match in self.nat_rules(subnet, mask, egress):
            try:
                self._iptables(table, "-D", chain, *match)
                result.value = (result.value or 0) + 1
            except ExternalCommandError as exc:
                result.warn(f"{chain} rule not removed: {exc.stderr or exc}")
        return result

    # Manual rules -----------------------------------------------------
    def list_rules(self, chain: str) -> list[FirewallRule]:
        """Return the numbered rules of *chain*."""
        chain = _check_chain(chain)
        result = self._iptables(
            _table_for(chain), "-L", chain, "-n", "-v", "--line-numbers"
        )
        return parse_rule_listing(chain, result.stdout)

    def delete_rule(self, chain: str, index: int) -> None:
        """Delete rule number *index* from *chain*."""
        chain = _check_chain(chain)
        if index not in {rule.num for rule in self.list_rules(chain)}:
            raise NotFoundError(f"Rule {index} not found in chain {chain}.")
        self._iptables(_table_for(chain), "-D", chain, str(index))

    def add_rule(
        self,
        chain: str,
        source: str,
        *,
        target: str = "MASQUERADE",
        destination: str | None = None,
        out_interface: str | None = None,
    ) -> None:
        """Append a rule matching *source* to *chain*."""
        chain = _check_chain(chain)
        if target not in ALLOWED_TARGETS:
            raise ValidationError(f"Target must be one of {', '.join(ALLOWED_TARGETS)}.")
        if target == "MASQUERADE" and chain != "POSTROUTING":
            raise ValidationError("MASQUERADE is only valid in the POSTROUTING chain.")
        match: list[str] = ["-s", _check_network(source, "source")]
        if destination:
            match.extend(["-d", _check_network(destination, "destination")])
        if out_interface:
            match.extend(["-o", out_interface])
        match.extend(["-j", target])
        self._iptables(_table_for(chain), "-A", chain, *match)

    def persist(self) -> Path:
        """Save the live ruleset to the rules file restored at boot."""
        result = self.runner.run([self.settings.iptables_save_bin])
        rules_file = Path(self.settings.rules_file)
        rules_file.parent.mkdir(parents=True, exist_ok=True)
        rules_file.write_text(result.stdout, encoding="utf-8")
        return rules_file

    def _iptables(self, table: str, *args: str, check: bool = True) -> CommandResult:
        command: list[str] = [self.settings.iptables_bin]
        if table != "filter":
            command.extend(["-t", table])
        command.extend(args)
        return self.runner.run(command, check=check)


def _table_for(chain: str) -> str:
    return "nat" if chain in _NAT_CHAINS else "filter"


def _check_chain(chain: str) -> str:
    normalised = chain.strip().upper()
    if normalised not in ALLOWED_CHAINS:
        raise ValidationError(f"Chain must be one of {', '.join(ALLOWED_CHAINS)}.")
    return normalised


def _check_network(value: str, label: str) -> str:
    try:
        return str(ipaddress.IPv4Network(value.strip(), strict=False))
    except ValueError as exc:
        raise ValidationError(f"Invalid {label} network: {value!r}.") from exc


__all__ = [
    "ALLOWED_CHAINS",
    "ALLOWED_TARGETS",
    "FirewallRule",
    "NetworkConfigurator",
    "NetworkInterface",
    "parse_interfaces",
    "parse_rule_listing",
    "prefix_length",
    "virtual_interface_name",
]
