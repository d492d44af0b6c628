"""Rendering of the node-cache Corefile from its template and DNS config."""

from __future__ import annotations

import ipaddress
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, List, Mapping, Optional, Sequence, Union

logger = logging.getLogger(__name__)

DEFAULT_TTL = 30
UPSTREAM_TCP_BLOCK = (
    "\n"
    "    forward . __PILLAR__UPSTREAM__SERVERS__ {\n"
    "            force_tcp\n"
    "    }\n"
)
UPSTREAM_UDP_BLOCK = "\n    forward . __PILLAR__UPSTREAM__SERVERS__\n"
DEFAULT_CONFIG_SYNC_PERIOD = timedelta(seconds=10)
UPSTREAM_SERVER_VAR = "__PILLAR__UPSTREAM__SERVERS__"
UPSTREAM_CLUSTER_DNS_VAR = "__PILLAR__CLUSTER__DNS__"
LOCAL_LISTEN_IPS_VAR = "__PILLAR__LOCAL__DNS__"
LOCAL_DNS_SERVER_VAR = "__PILLAR__DNS__SERVER__"
DEFAULT_KUBEDNS_CM_PATH = "/etc/kube-dns"
DEFAULT_RESOLV_CONF = "/etc/resolv.conf"

IPAddress = Optional[Union[ipaddress.IPv4Address, ipaddress.IPv6Address, str]]


@dataclass
class DNSConfig:
    """DNS settings taken from the kube-dns configuration."""

    stub_domains: Dict[str, List[str]] = field(default_factory=dict)
    upstream_nameservers: List[str] = field(default_factory=list)


def _stub_domain_block(domain: str, port: str, cache_ttl: int, local_ip: str, servers: str) -> str:
    return (
        "\n"
        + domain
        + ":"
        + str(port)
        + " {\n"
        + "    errors\n"
        + "    cache "
        + str(cache_ttl)
        + "\n"
        + "    bind "
        + local_ip
        + "\n"
        + "    forward . "
        + servers
        + "\n"
        + "}\n"
    )


def render_stub_domains(
    stub_domains: Mapping[str, Sequence[str]],
    local_ip: str,
    port: str,
    cache_ttl: int = DEFAULT_TTL,
) -> str:
    """Render one server block per stub domain, in the mapping's order."""
    return "".join(
        _stub_domain_block(domain, port, cache_ttl, local_ip, " ".join(servers))
        for domain, servers in stub_domains.items()
    )


def render_corefile(
    base: str,
    dns_config: DNSConfig,
    local_ip_str: str,
    cluster_dns_ip: IPAddress,
) -> str:
    """Substitute the template variables in ``base``.

    Stub domain blocks are not included; append the output of
    :func:`render_stub_domains` to get the complete Corefile.
    """
    upstream_servers = " ".join(dns_config.upstream_nameservers)
    if not upstream_servers:
        # Default to resolv.conf, reached over TCP as the template says.
        base = base.replace(UPSTREAM_SERVER_VAR, DEFAULT_RESOLV_CONF)
    else:
        # Custom upstreams are reached over UDP.
        upstream_udp = UPSTREAM_UDP_BLOCK.replace(UPSTREAM_SERVER_VAR, upstream_servers)
        base = base.replace(UPSTREAM_TCP_BLOCK, upstream_udp)
        if UPSTREAM_SERVER_VAR in base:
            logger.warning(
                "Did not find TCP upstream block to replace, assuming upstreams already use UDP."
            )
            base = base.replace(UPSTREAM_SERVER_VAR, upstream_servers)

    cluster_ip = "<nil>" if cluster_dns_ip is None else str(cluster_dns_ip)
    base = base.replace(UPSTREAM_CLUSTER_DNS_VAR, cluster_ip)
    base = base.replace(LOCAL_LISTEN_IPS_VAR, local_ip_str.replace(",", " "))
    # Every listen address is covered by the variable above; drop the leftover.
    return base.replace(LOCAL_DNS_SERVER_VAR, "")