"""Command-line entry point of the node-local DNS cache."""

from __future__ import annotations

import argparse
import json
import logging
import re
import sys
from typing import Optional, Sequence

from .cache_app import CacheApp, ConfigParams, _parse_ip
from .corefile import DNSConfig
from .kubedns_options import OptionError, _parse_duration

logger = logging.getLogger(__name__)

DEFAULT_DNS_PORT = "53"
DESCRIPTION = (
    "Runs CoreDNS as a nodelocal cache listening on the specified ip:port"
)

_INTEGER_RE = re.compile(r"[+-]?[0-9]+")
_BOOL_TRUE = {"1", "t", "T", "TRUE", "true", "True"}
_BOOL_FALSE = {"0", "f", "F", "FALSE", "false", "False"}


class ArgumentValidationError(ValueError):
    """Raised when node-cache arguments are missing or invalid."""


class _Parser(argparse.ArgumentParser):
    def error(self, message: str):
        raise ArgumentValidationError(message)


def _quote(text: str) -> str:
    return json.dumps(text, ensure_ascii=False)


def _parse_bool(text: str) -> bool:
    if text in _BOOL_TRUE:
        return True
    if text in _BOOL_FALSE:
        return False
    raise argparse.ArgumentTypeError(f"invalid boolean value {text!r}")


def _parse_interval(text: str) -> int:
    try:
        return int(_parse_duration(text).total_seconds())
    except OptionError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from None


def _build_parser() -> argparse.ArgumentParser:
    parser = _Parser(prog="node-cache", description=DESCRIPTION)

    def add(name: str, **kwargs) -> None:
        parser.add_argument(f"-{name}", f"--{name}", **kwargs)

    def add_bool(name: str, dest: str, default: bool, help_text: str) -> None:
        add(name, dest=dest, nargs="?", const=True, default=default,
            type=_parse_bool, help=help_text)

    add("localip", dest="local_ip_str", default="",
        help="comma-separated string of ip addresses to bind dnscache to")
    add_bool("setupinterface", "setup_interface", True,
             "indicates whether network interface should be setup")
    add("interfacename", dest="interface_name", default="nodelocaldns",
        help="name of the interface to be created")
    add("syncinterval", dest="interval", default=60, type=_parse_interval,
        help="interval to check for iptables rules, e.g. 60s")
    add("metrics-listen-address", dest="metrics_listen_address",
        default="0.0.0.0:9353", help="address to serve metrics on")
    add_bool("setupiptables", "setup_iptables", True,
             "indicates whether iptables rules should be setup")
    add_bool("setupebtables", "setup_ebtables", False,
             "indicates whether ebtables rules should be setup")
    add("basecorefile", dest="base_core_file", default="/etc/coredns/Corefile.base",
        help="Path to the template Corefile for node-cache")
    add("corefile", dest="core_file", default="/etc/Corefile",
        help="Path to the Corefile to be used by node-cache")
    add("kubednscm", dest="kubedns_cm_path", default="",
        help="Path where the kube-dns configmap will be mounted")
    add("upstreamsvc", dest="upstream_svc_name", default="kube-dns",
        help="Service name whose cluster IP is upstream for node-cache")
    add("health-port", dest="health_port", default="8080",
        help="port used by health plugin")
    add_bool("skipteardown", "skip_teardown", False,
             "indicates whether iptables rules should be torn down on exit")
    add("dns.port", dest="dns_port", default=DEFAULT_DNS_PORT,
        help="port to serve DNS requests on")
    add("conf", dest="conf", default=None,
        help="Corefile to load; overrides -corefile")
    return parser


def parse_and_validate_args(argv: Optional[Sequence[str]] = None) -> ConfigParams:
    """Parse node-cache arguments and validate addresses and ports."""
    args = _build_parser().parse_args(list(sys.argv[1:] if argv is None else argv))

    params = ConfigParams(
        local_ip_str=args.local_ip_str,
        setup_interface=args.setup_interface,
        interface_name=args.interface_name,
        interval=args.interval,
        metrics_listen_address=args.metrics_listen_address,
        setup_iptables=args.setup_iptables,
        setup_ebtables=args.setup_ebtables,
        base_core_file=args.base_core_file,
        core_file=args.core_file,
        kubedns_cm_path=args.kubedns_cm_path,
        upstream_svc_name=args.upstream_svc_name,
        health_port=args.health_port,
        skip_teardown=args.skip_teardown,
    )

    for text in params.local_ip_str.split(","):
        address = _parse_ip(text)
        if address is None:
            raise ArgumentValidationError(f"invalid localip specified - {_quote(text)}")
        params.local_ips.append(address)

    want_ipv6 = params.local_ips[0].version == 6
    for address in params.local_ips:
        if (address.version == 6) != want_ipv6:
            raise ArgumentValidationError(
                f"unexpected IP Family for localIP - {_quote(str(address))}, "
                f"want IPv6={'true' if want_ipv6 else 'false'}"
            )

    params.local_port = args.dns_port
    if not _INTEGER_RE.fullmatch(params.local_port):
        raise ArgumentValidationError(
            f"invalid port specified - {_quote(params.local_port)}"
        )
    if not _INTEGER_RE.fullmatch(params.health_port):
        raise ArgumentValidationError(
            f"invalid healthcheck port specified - {_quote(params.health_port)}"
        )
    if args.conf is not None:
        params.core_file = args.conf
        logger.info("Using Corefile %s", params.core_file)
    return params


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Validate arguments and write the initial Corefile; returns an exit status."""
    try:
        params = parse_and_validate_args(argv)
    except ArgumentValidationError as exc:
        logger.error("Error parsing flags - %s, Exiting", exc)
        print(f"Error parsing flags - {exc}, Exiting", file=sys.stderr)
        return 1
    app = CacheApp(params)
    app.update_corefile(DNSConfig())
    return 0 if app.errors["configmap"] == 0 else 1