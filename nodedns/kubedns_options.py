"""Command-line configuration of the kube-dns server."""

from __future__ import annotations

import argparse
import enum
import logging
import os
import platform
import re
import sys
from dataclasses import dataclass, field, fields
from datetime import timedelta
from fractions import Fraction
from typing import Mapping, Optional, Sequence
from urllib.parse import urlsplit

logger = logging.getLogger(__name__)

NAMESPACE_SYSTEM = "kube-system"
DNS1123_LABEL_MAX_LENGTH = 63
DNS1123_LABEL_FORMAT = "[a-z0-9]([-a-z0-9]*[a-z0-9])?"
PROTOBUF_CONTENT_TYPE = "application/vnd.kubernetes.protobuf"
PROFILING_PORT = "6060"

_DNS1123_LABEL_RE = re.compile(DNS1123_LABEL_FORMAT)
_SHELL_SPECIAL = set("*#$@!?-0123456789")

_GOARCH = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "i386": "386",
    "i686": "386",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv7l": "arm",
    "armv6l": "arm",
    "ppc64le": "ppc64le",
    "s390x": "s390x",
}
_GOOS = {"win32": "windows", "cygwin": "windows", "darwin": "darwin"}

_DURATION_UNIT_NS = {
    "ns": 1,
    "us": 1_000,
    "\u00b5s": 1_000,
    "\u03bcs": 1_000,
    "ms": 1_000_000,
    "s": 1_000_000_000,
    "m": 60 * 1_000_000_000,
    "h": 3600 * 1_000_000_000,
}
_DURATION_PART = r"(\d+(?:\.\d*)?|\.\d+)(ns|us|\u00b5s|\u03bcs|ms|s|m|h)"
_DURATION_RE = re.compile(f"(?:{_DURATION_PART})+")
_DURATION_PART_RE = re.compile(_DURATION_PART)

_BOOL_TRUE = {"1", "t", "T", "TRUE", "true", "True"}
_BOOL_FALSE = {"0", "f", "F", "FALSE", "false", "False"}


class OptionError(ValueError):
    """Raised when a kube-dns option is invalid."""


@dataclass
class KubeDNSConfig:
    """Settings of a kube-dns server."""

    cluster_domain: str = "cluster.local."
    kube_config_file: str = ""
    kube_master_url: str = ""
    initial_sync_timeout: timedelta = timedelta(seconds=60)
    healthz_port: int = 8081
    dns_bind_address: str = "0.0.0.0"
    dns_port: int = 53
    federations: dict[str, str] = field(default_factory=dict)
    config_map_ns: str = NAMESPACE_SYSTEM
    config_map: str = ""
    config_dir: str = ""
    config_period: timedelta = timedelta(seconds=10)
    name_servers: str = ""
    profiling: bool = False


@dataclass
class ConfigSource:
    """Where the server takes its dynamic DNS configuration from."""

    class Kind(enum.Enum):
        CONFIG_MAP = "configmap"
        CONFIG_DIR = "configdir"
        FLAGS = "flags"

    kind: "ConfigSource.Kind"
    namespace: str = ""
    name: str = ""
    directory: str = ""
    period: timedelta = timedelta(0)
    federations: dict[str, str] = field(default_factory=dict)
    upstream_nameservers: list[str] = field(default_factory=list)


def _dns1123_label_errors(label: str) -> list[str]:
    errors = []
    if len(label) > DNS1123_LABEL_MAX_LENGTH:
        errors.append(f"must be no more than {DNS1123_LABEL_MAX_LENGTH} characters")
    if not _DNS1123_LABEL_RE.fullmatch(label):
        errors.append(
            "a DNS-1123 label must consist of lower case alphanumeric characters "
            "or '-', and must start and end with an alphanumeric character "
            f"(regex used for validation is '{DNS1123_LABEL_FORMAT}')"
        )
    return errors


def parse_cluster_domain(value: str) -> str:
    """Validate a cluster domain and return it with a trailing dot."""
    trimmed = value[:-1] if value.endswith(".") else value
    for segment in trimmed.split("."):
        errors = _dns1123_label_errors(segment)
        if errors:
            raise OptionError(f"Not a valid DNS label. {errors}")
    return trimmed + "."


def _shell_name(text: str) -> tuple[str, int]:
    if text[0] == "{":
        if len(text) > 2 and text[1] in _SHELL_SPECIAL and text[2] == "}":
            return text[1], 3
        closing = text.find("}", 1)
        if closing == -1:
            return "", 1
        if closing == 1:
            return "", 2
        return text[1:closing], closing + 1
    if text[0] in _SHELL_SPECIAL:
        return text[0], 1
    match = re.match(r"[A-Za-z0-9_]*", text)
    name = match.group(0) if match else ""
    return name, len(name)


def _expand_env(text: str, environ: Mapping[str, str]) -> str:
    out: list[str] = []
    start = 0
    pos = 0
    while pos < len(text):
        if text[pos] == "$" and pos + 1 < len(text):
            out.append(text[start:pos])
            name, width = _shell_name(text[pos + 1:])
            if not name and width == 0:
                out.append("$")
            elif name:
                out.append(environ.get(name, ""))
            pos += width
            start = pos + 1
        pos += 1
    out.append(text[start:])
    return "".join(out)


def validate_kube_master_url(value: str, environ: Optional[Mapping[str, str]] = None) -> str:
    """Check that ``value``, after expanding variables, names a scheme and a host.

    The unexpanded value is returned.
    """
    expanded = _expand_env(value, os.environ if environ is None else environ)
    try:
        parsed = urlsplit(expanded)
    except ValueError:
        raise OptionError("failed to parse kube-master-url") from None
    if not parsed.scheme or not parsed.netloc or parsed.netloc == ":":
        raise OptionError("invalid kube-master-url specified")
    return value


def format_federations(federations: Mapping[str, str]) -> str:
    """Render federations as ``name=domain`` pairs separated by commas."""
    return ",".join(f"{name}={domain}" for name, domain in federations.items())


def user_agent(version: str) -> str:
    """The user agent sent to the API server."""
    goos = _GOOS.get(sys.platform, "linux" if sys.platform.startswith("linux") else sys.platform)
    machine = platform.machine()
    goarch = _GOARCH.get(machine.lower(), machine.lower() or "unknown")
    return f"kube-dns/{version} ({goos}/{goarch})"


def choose_config_source(config: KubeDNSConfig) -> ConfigSource:
    """Decide where dynamic configuration comes from."""
    if config.config_map and config.config_dir:
        raise OptionError("Cannot use both ConfigMap and ConfigDir")
    if config.config_map:
        logger.info(
            "Using configuration read from ConfigMap: %s:%s",
            config.config_map_ns,
            config.config_map,
        )
        return ConfigSource(
            ConfigSource.Kind.CONFIG_MAP,
            namespace=config.config_map_ns,
            name=config.config_map,
        )
    if config.config_dir:
        logger.info(
            "Using configuration read from directory: %s with period %s",
            config.config_dir,
            config.config_period,
        )
        return ConfigSource(
            ConfigSource.Kind.CONFIG_DIR,
            directory=config.config_dir,
            period=config.config_period,
        )
    logger.info("ConfigMap and ConfigDir not configured, using values from command line flags")
    upstreams = config.name_servers.split(",") if config.name_servers else []
    return ConfigSource(
        ConfigSource.Kind.FLAGS,
        federations=dict(config.federations),
        upstream_nameservers=upstreams,
    )


def _parse_duration(text: str) -> timedelta:
    body = text
    negative = False
    if body[:1] in ("+", "-"):
        negative = body[0] == "-"
        body = body[1:]
    if body == "0":
        return timedelta(0)
    if not body or not _DURATION_RE.fullmatch(body):
        raise OptionError(f"invalid duration {text!r}")
    total_ns = sum(
        Fraction(number) * _DURATION_UNIT_NS[unit]
        for number, unit in _DURATION_PART_RE.findall(body)
    )
    result = timedelta(microseconds=int(total_ns / 1000))
    return -result if negative else result


def _parse_bool(text: str) -> bool:
    if text in _BOOL_TRUE:
        return True
    if text in _BOOL_FALSE:
        return False
    raise OptionError(f"invalid boolean value {text!r}")


def _argtype(func):
    def convert(text: str):
        try:
            return func(text)
        except OptionError as exc:
            raise argparse.ArgumentTypeError(str(exc)) from None

    convert.__name__ = func.__name__.lstrip("_")
    return convert


class _Parser(argparse.ArgumentParser):
    def error(self, message: str):
        raise OptionError(message)


def _build_parser() -> argparse.ArgumentParser:
    parser = _Parser(prog="kube-dns", argument_default=argparse.SUPPRESS)
    add = parser.add_argument
    add("--domain", dest="cluster_domain", type=_argtype(parse_cluster_domain),
        help="domain under which to create names")
    add("--nameservers", dest="name_servers",
        help="comma separated ip:port list of nameservers to forward queries to")
    add("--kubecfg-file", dest="kube_config_file",
        help="location of kubecfg file for access to the kubernetes master service")
    add("--kube-master-url", dest="kube_master_url",
        type=_argtype(validate_kube_master_url),
        help="URL to reach kubernetes master; environment variables are expanded")
    add("--healthz-port", dest="healthz_port", type=int,
        help="port on which to serve a kube-dns HTTP readiness probe")
    add("--dns-bind-address", dest="dns_bind_address",
        help="address on which to serve DNS requests")
    add("--dns-port", dest="dns_port", type=int,
        help="port on which to serve DNS requests")
    add("--config-map-namespace", dest="config_map_ns",
        help="namespace for the config-map")
    add("--config-map", dest="config_map",
        help="config-map name; cannot be used together with config-dir")
    add("--initial-sync-timeout", dest="initial_sync_timeout",
        type=_argtype(_parse_duration), help="timeout for initial resource sync")
    add("--config-dir", dest="config_dir",
        help="directory to read config values from; cannot be used with config-map")
    add("--config-period", dest="config_period", type=_argtype(_parse_duration),
        help="period at which to check for updates in config-dir")
    add("--profiling", dest="profiling", nargs="?", const=True,
        type=_argtype(_parse_bool), help="specifies whether to enable profiling")
    return parser


def parse_args(argv: Optional[Sequence[str]] = None) -> KubeDNSConfig:
    """Build a :class:`KubeDNSConfig` from command-line arguments."""
    args = _build_parser().parse_args(list(sys.argv[1:] if argv is None else argv))
    config = KubeDNSConfig()
    for item in fields(config):
        if hasattr(args, item.name):
            setattr(config, item.name, getattr(args, item.name))
    return config