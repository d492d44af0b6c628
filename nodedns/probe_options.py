"""Parsing of ``--probe`` specifications for the DNS sidecar."""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Iterator

DEFAULT_PROBE_INTERVAL = timedelta(seconds=5)
LABEL_PATTERN = "^[a-zA-Z0-9_]+$"

_LABEL_RE = re.compile(LABEL_PATTERN)
_INTEGER_RE = re.compile(r"[+-]?[0-9]+")


class RecordType(enum.IntEnum):
    """DNS record types a probe may query."""

    A = 1
    AAAA = 28
    SRV = 33
    ANY = 255


class ProbeOptionError(ValueError):
    """Raised when a probe specification cannot be parsed."""


@dataclass(frozen=True)
class DNSProbeOption:
    """One DNS probe: which server to ask, for what name, and how often."""

    label: str
    server: str
    name: str
    interval: timedelta = DEFAULT_PROBE_INTERVAL
    type: RecordType = RecordType.ANY


def _parse_interval(text: str) -> timedelta:
    if not _INTEGER_RE.fullmatch(text):
        raise ProbeOptionError(f"parsing {text!r} as interval: invalid syntax")
    return timedelta(seconds=int(text))


def _parse_type(text: str) -> RecordType:
    try:
        return RecordType[text]
    except KeyError:
        raise ProbeOptionError(f"invalid type for DNS: {text}") from None


def parse_probe_option(value: str) -> DNSProbeOption:
    """Parse ``<label>,<server>,<name>[,<interval_seconds>][,<type>]``."""
    splits = value.split(",")
    if not 3 <= len(splits) <= 5:
        raise ProbeOptionError("invalid format to --probe")

    label, server, name = splits[0], splits[1], splits[2]
    if not _LABEL_RE.fullmatch(label):
        raise ProbeOptionError(f"label must be of format {LABEL_PATTERN}")

    if ":" not in server:
        server += ":53"
    if not name.endswith("."):
        # Queries need a fully qualified name.
        name += "."

    interval = _parse_interval(splits[3]) if len(splits) >= 4 else DEFAULT_PROBE_INTERVAL
    record_type = _parse_type(splits[4]) if len(splits) >= 5 else RecordType.ANY

    return DNSProbeOption(
        label=label, server=server, name=name, interval=interval, type=record_type
    )


@dataclass
class ProbeOptions:
    """An ordered collection of probes built up from repeated ``--probe`` flags."""

    options: list[DNSProbeOption] = field(default_factory=list)

    def add(self, value: str) -> DNSProbeOption:
        """Parse ``value`` and append the resulting probe."""
        option = parse_probe_option(value)
        self.options.append(option)
        return option

    def __iter__(self) -> Iterator[DNSProbeOption]:
        return iter(self.options)

    def __len__(self) -> int:
        return len(self.options)

    def __getitem__(self, index: int) -> DNSProbeOption:
        return self.options[index]

    def __str__(self) -> str:
        return str(self.options)