"""The node-local DNS cache application: parameters, network rules and Corefile upkeep."""

from __future__ import annotations

import ipaddress
import logging
import os
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional, Union

from .corefile import DEFAULT_TTL, DNSConfig, render_corefile, render_stub_domains
from .kubedns_options import KubeDNSConfig, _expand_env

logger = logging.getLogger(__name__)

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

LOCKED_ERROR_TEXT = "holding the xtables lock"
REGISTERED_ERROR_TYPES = (
    "iptables",
    "iptables_lock",
    "interface_add",
    "interface_check",
    "configmap",
)


@dataclass
class ConfigParams:
    """Configuration options of node-cache."""

    local_ip_str: str = ""
    local_ips: list[IPAddress] = field(default_factory=list)
    local_port: str = "53"
    metrics_listen_address: str = "0.0.0.0:9353"
    setup_interface: bool = True
    interface_name: str = "nodelocaldns"
    interval: int = 60
    base_core_file: str = "/etc/coredns/Corefile.base"
    core_file: str = "/etc/Corefile"
    kubedns_cm_path: str = ""
    upstream_svc_name: str = "kube-dns"
    health_port: str = "8080"
    setup_iptables: bool = True
    setup_ebtables: bool = False
    skip_teardown: bool = False


@dataclass(frozen=True)
class IptablesRule:
    """A rule in an iptables table and chain."""

    table: str
    chain: str
    args: tuple[str, ...]


@dataclass(frozen=True)
class EbtablesRule:
    """A rule in an ebtables table and chain."""

    table: str
    chain: str
    args: tuple[str, ...]


class SetupErrorCounter:
    """Counts errors met during network and configuration setup, by type."""

    def __init__(self) -> None:
        self._counts: Counter[str] = Counter({name: 0 for name in REGISTERED_ERROR_TYPES})

    def inc(self, error_type: str) -> int:
        """Count one error of ``error_type`` and return the new total."""
        self._counts[error_type] += 1
        return self._counts[error_type]

    def __getitem__(self, error_type: str) -> int:
        return self._counts[error_type]

    def as_dict(self) -> dict[str, int]:
        return dict(self._counts)


def to_svc_env(svc_name: str) -> str:
    """The environment reference holding the cluster IP of a service."""
    return "$" + svc_name.replace("-", "_").upper() + "_SERVICE_HOST"


def expand_env(text: str, environ: Optional[Mapping[str, str]] = None) -> str:
    """Replace ``$VAR`` and ``${VAR}`` references; unknown variables become empty."""
    return _expand_env(text, os.environ if environ is None else environ)


def is_locked_error(message: object) -> bool:
    """Whether an iptables failure was caused by another holder of the xtables lock."""
    return LOCKED_ERROR_TEXT in str(message)


def build_iptables_rules(local_ip_str: str, local_port: str, health_port: str) -> list[IptablesRule]:
    """The iptables rules that let traffic reach the local cache untracked."""
    rules: list[IptablesRule] = []
    for ip in local_ip_str.split(","):
        specs = [
            # Skip connection tracking for traffic to the cache.
            ("raw", "PREROUTING", "tcp", "-d", "--dport", local_port, "NOTRACK"),
            ("raw", "PREROUTING", "udp", "-d", "--dport", local_port, "NOTRACK"),
            # Untracked traffic needs explicit accept rules in the filter table.
            ("filter", "INPUT", "tcp", "-d", "--dport", local_port, "ACCEPT"),
            ("filter", "INPUT", "udp", "-d", "--dport", local_port, "ACCEPT"),
            # Replies from the cache.
            ("raw", "OUTPUT", "tcp", "-s", "--sport", local_port, "NOTRACK"),
            ("raw", "OUTPUT", "udp", "-s", "--sport", local_port, "NOTRACK"),
            ("filter", "OUTPUT", "tcp", "-s", "--sport", local_port, "ACCEPT"),
            ("filter", "OUTPUT", "udp", "-s", "--sport", local_port, "ACCEPT"),
            # Locally generated queries, e.g. from host-network pods.
            ("raw", "OUTPUT", "tcp", "-d", "--dport", local_port, "NOTRACK"),
            ("raw", "OUTPUT", "udp", "-d", "--dport", local_port, "NOTRACK"),
            # Liveness probes against the health plugin.
            ("raw", "OUTPUT", "tcp", "-d", "--dport", health_port, "NOTRACK"),
            ("raw", "OUTPUT", "tcp", "-s", "--sport", health_port, "NOTRACK"),
        ]
        rules.extend(
            IptablesRule(table, chain, ("-p", proto, addr_flag, ip, port_flag, port, "-j", target))
            for table, chain, proto, addr_flag, port_flag, port, target in specs
        )
    return rules


def build_ebtables_rules(local_ip_str: str, ipv6: bool) -> list[EbtablesRule]:
    """The ebtables rules that redirect bridged traffic for the local addresses."""
    protocol = "IPv6" if ipv6 else "IPv4"
    return [
        EbtablesRule("broute", "BROUTING", ("-p", protocol, "--ip-dst", ip, "-j", "redirect"))
        for ip in local_ip_str.split(",")
    ]


def _parse_ip(text: str) -> Optional[IPAddress]:
    if "%" in text:
        return None
    try:
        address = ipaddress.ip_address(text)
    except ValueError:
        return None
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
        return address.ipv4_mapped
    return address


class CacheApp:
    """State of a node-cache instance."""

    def __init__(self, params: ConfigParams, environ: Optional[Mapping[str, str]] = None) -> None:
        self.params = params
        self.kubedns_config = KubeDNSConfig()
        self.errors = SetupErrorCounter()
        env = os.environ if environ is None else environ
        reference = to_svc_env(params.upstream_svc_name)
        expanded = expand_env(reference, env)
        self.cluster_dns_ip = _parse_ip(expanded)
        if self.cluster_dns_ip is None:
            logger.warning(
                "Unable to lookup IP address of Upstream service %s, env %s `%s`",
                params.upstream_svc_name,
                reference,
                expanded,
            )
        self.iptables_rules: list[IptablesRule] = []
        self.ebtables_rules: list[EbtablesRule] = []
        if params.setup_iptables:
            self.iptables_rules = build_iptables_rules(
                params.local_ip_str, params.local_port, params.health_port
            )
        if params.setup_ebtables:
            self.ebtables_rules = build_ebtables_rules(params.local_ip_str, self.is_ipv6())

    def is_ipv6(self) -> bool:
        """Whether the cache listens on IPv6; all local addresses share one family."""
        return bool(self.params.local_ips) and self.params.local_ips[0].version == 6

    def update_corefile(self, dns_config: DNSConfig) -> None:
        """Rewrite the Corefile from the template and ``dns_config``.

        Failures are logged and counted under ``configmap``.
        """
        base_path = Path(self.params.base_core_file)
        try:
            base = base_path.read_bytes().decode("utf-8", errors="surrogateescape")
        except OSError as exc:
            logger.error("Failed to read node-cache coreFile %s - %s", base_path, exc)
            self.errors.inc("configmap")
            return

        listen_ips = self.params.local_ip_str.replace(",", " ")
        stubs = render_stub_domains(
            dns_config.stub_domains, listen_ips, self.params.local_port, DEFAULT_TTL
        )
        content = render_corefile(base, dns_config, self.params.local_ip_str, self.cluster_dns_ip)
        content += stubs

        try:
            Path(self.params.core_file).write_bytes(
                content.encode("utf-8", errors="surrogateescape")
            )
        except OSError as exc:
            logger.error("Failed to write config file %s - err %s", self.params.core_file, exc)
            self.errors.inc("configmap")
            return

        upstreams = " ".join(dns_config.upstream_nameservers) or "/etc/resolv.conf"
        logger.info(
            "Updated Corefile with %d custom stubdomains and upstream servers %s",
            len(dns_config.stub_domains),
            upstreams,
        )
        logger.info("Using config file:\n%s", content)