"""End-to-end check of the DNS sidecar against a local dnsmasq.

In ``harness`` mode the test image is built and run in docker and the
metrics it collected are validated. In ``test`` mode (inside the container)
dnsmasq and the sidecar are started, queried, and their output is dumped
to the output directory.
"""

from __future__ import annotations

import argparse
import logging
import math
import os
import re
import shutil
import socket
import subprocess
import sys
import tempfile
import threading
import time
import urllib.request
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterator, Optional, Sequence

logger = logging.getLogger(__name__)

DOCKERFILE = "Dockerfile.e2e"
DNSMASQ_PORT = 10053
SIDECAR_PORT = 10054
IMAGE_NAME = "k8s-dns-sidecar-e2e-test"
HITS_METRIC = "kubedns_dnsmasq_hits"
HITS_THRESHOLD = 100
DIG_RUNS = 100

DEFAULT_METRICS = (
    "kubedns_dnsmasq_hits",
    "kubedns_dnsmasq_max_size",
    "kubedns_probe_notpresent_errors",
    "kubedns_probe_nxdomain_errors",
    "kubedns_probe_ok_errors",
)

EXPECTATIONS = (
    ("kubedns_dnsmasq_hits", ">", 100.0),
    ("kubedns_dnsmasq_max_size", "==", 1337.0),
    ("kubedns_probe_notpresent_errors", ">=", 5.0),
    ("kubedns_probe_nxdomain_errors", ">=", 5.0),
    ("kubedns_probe_ok_errors", "==", 0.0),
)

_OPERATORS: dict[str, Callable[[float, float], bool]] = {
    "<": lambda a, b: a < b,
    "<=": lambda a, b: a <= b,
    ">": lambda a, b: a > b,
    ">=": lambda a, b: a >= b,
    "==": lambda a, b: a == b,
    "!=": lambda a, b: a != b,
}

_INTEGER_RE = re.compile(r"[+-]?[0-9]+")
_BOOL_TRUE = {"1", "t", "T", "TRUE", "true", "True"}
_BOOL_FALSE = {"0", "f", "F", "FALSE", "false", "False"}

Runner = Callable[[Sequence[str]], "subprocess.CompletedProcess[bytes]"]
Predicate = Callable[[], "tuple[bool, Optional[BaseException]]"]


class E2EError(RuntimeError):
    """A fatal failure of the end-to-end run."""


@dataclass
class E2EOptions:
    """Settings of an end-to-end run."""

    mode: str = "harness"
    cleanup: bool = False
    base_dir: str = "."
    dockerfile: str = DOCKERFILE
    dnsmasq_binary: str = "/usr/sbin/dnsmasq"
    sidecar_binary: str = "/sidecar"
    dig_binary: str = "/usr/bin/dig"
    output_dir: str = "/test"


def _run_command(args: Sequence[str]) -> "subprocess.CompletedProcess[bytes]":
    return subprocess.run(list(args), stdout=subprocess.PIPE, stderr=subprocess.STDOUT)


def _format_number(value: float) -> str:
    if math.isfinite(value) and value.is_integer() and abs(value) < 1e21:
        return str(int(value))
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    return repr(value)


def _parse_float(text: str) -> float:
    if not text or text != text.strip() or "_" in text:
        raise ValueError(text)
    return float(text)


def log_with_prefix(prefix: str, text: str) -> list[str]:
    """Log every line of ``text`` under ``prefix``; returns the logged lines."""
    lines = [f"{prefix} | {line}" for line in text.split("\n")]
    for line in lines:
        logger.info("%s", line)
    return lines


def wait_for_predicate(predicate: Predicate, duration: float, interval: float) -> None:
    """Call ``predicate`` every ``interval`` seconds until it says stop.

    The predicate returns ``(stop, error)``. When it stops with an error,
    that error is raised. If ``duration`` seconds pass first,
    :class:`TimeoutError` is raised naming the last error seen.
    """
    error: Optional[BaseException] = None
    start = time.monotonic()
    while time.monotonic() - start < duration:
        stop, error = predicate()
        if stop:
            if error is not None:
                raise error
            return
        time.sleep(interval)
    last = "<nil>" if error is None else str(error)
    raise TimeoutError(f"timeout (last error was {last})")


def parse_metrics(text: str) -> tuple[dict[str, float], list[str]]:
    """Read the checked metrics from Prometheus text output.

    Returns the metric values (zero when absent) and the parse errors met.
    """
    metrics = {name: 0.0 for name in DEFAULT_METRICS}
    errors: list[str] = []
    for line in text.split("\n"):
        if line.startswith("#"):
            continue
        items = line.split(" ")
        if len(items) < 2:
            continue
        key = items[0]
        if key not in metrics:
            continue
        try:
            metrics[key] = _parse_float(items[1])
        except ValueError:
            errors.append(f"metric {key} is not a number ({items[1]})")
    return metrics, errors


def check_metrics(metrics: dict[str, float]) -> list[str]:
    """Compare ``metrics`` with the expected values; returns the failures."""
    errors = []
    for name, op, value in EXPECTATIONS:
        actual = metrics.get(name, 0.0)
        if not _OPERATORS[op](actual, value):
            errors.append(
                f"expected {name} {op} {_format_number(value)} "
                f"but got {_format_number(actual)}"
            )
    return errors


def parse_hits(text: str) -> Iterator[int]:
    """Yield the values of the dnsmasq hits metric found in ``text``.

    Raises :class:`ValueError` when a value is not an integer.
    """
    for line in text.split("\n"):
        if not line.startswith(HITS_METRIC + " "):
            continue
        parts = line.split(" ")
        if len(parts) < 2 or not _INTEGER_RE.fullmatch(parts[1]):
            raise ValueError(f"invalid output for {HITS_METRIC} metric")
        yield int(parts[1])


def _wait_for_tcp_or_exit(process: subprocess.Popen, host: str, port: int) -> None:
    def predicate() -> tuple[bool, Optional[BaseException]]:
        code = process.poll()
        if code is not None:
            return True, E2EError(f"process died: exit status {code}")
        try:
            with socket.create_connection((host, port), timeout=1):
                return True, None
        except OSError as exc:
            return False, exc

    wait_for_predicate(predicate, 10.0, 1.0)


def _fetch(url: str) -> str:
    try:
        with urllib.request.urlopen(url, timeout=10) as response:
            return response.read().decode("utf-8", errors="replace")
    except OSError as exc:
        raise E2EError(f"fetching {url}: {exc}") from exc


@dataclass
class Harness:
    """Builds the test image, runs it, and validates the collected metrics."""

    tmp_dir: str
    image: str = IMAGE_NAME
    options: E2EOptions = field(default_factory=E2EOptions)
    runner: Runner = _run_command

    def run(self) -> int:
        """Run the whole harness; returns the exit status."""
        logger.info("Running as harness (tmpdir = %s)", self.tmp_dir)
        self.build()
        try:
            self.run_tests()
            return self.validate()
        finally:
            self.cleanup()

    def build(self) -> None:
        self.docker(
            "build",
            "-f", f"{self.options.base_dir}/test/e2e/sidecar/{DOCKERFILE}",
            "-t", self.image,
            self.options.base_dir,
        )

    def cleanup(self) -> None:
        self.docker("rmi", "-f", self.image)
        if self.options.cleanup:
            shutil.rmtree(self.tmp_dir, ignore_errors=True)

    def run_tests(self) -> None:
        directory = os.path.abspath(self.tmp_dir)
        output = self.docker(
            "run", "--rm=true", "-v", f"{directory}:{self.options.output_dir}", self.image
        )
        log_with_prefix("test", output)

    def validate(self) -> int:
        """Check ``metrics.log`` in the temporary directory; 0 when all pass."""
        path = Path(self.tmp_dir) / "metrics.log"
        try:
            text = path.read_text(errors="replace")
        except OSError as exc:
            raise E2EError(f"reading {path}: {exc}") from exc

        metrics, errors = parse_metrics(text)
        errors.extend(check_metrics(metrics))
        if not errors:
            logger.info("All tests passed")
            return 0
        logger.info("Tests failed")
        for error in errors:
            logger.info("error | %s", error)
        return 1

    def docker(self, *args: str) -> str:
        """Run docker with ``args`` and return its combined output."""
        logger.info("docker %s", list(args))
        try:
            result = self.runner(["docker", *args])
        except OSError as exc:
            raise E2EError(f"running docker: {exc}") from exc
        output = (result.stdout or b"").decode("utf-8", errors="replace")
        if result.returncode != 0:
            log_with_prefix("docker", output)
            raise E2EError(f"docker {args[0] if args else ''}: exit status {result.returncode}")
        return output


class _OutputBuffer:
    """Text collected from a process's pipes by background threads."""

    def __init__(self, lock: threading.Lock) -> None:
        self._lock = lock
        self._parts: list[str] = []

    def attach(self, stream) -> None:
        thread = threading.Thread(target=self._pump, args=(stream,), daemon=True)
        thread.start()

    def _pump(self, stream) -> None:
        for chunk in iter(lambda: stream.read1(4096), b""):
            with self._lock:
                self._parts.append(chunk.decode("utf-8", errors="replace"))

    def text(self) -> str:
        return "".join(self._parts)


@dataclass
class SidecarTest:
    """Runs dnsmasq and the sidecar, queries them, and dumps their output."""

    options: E2EOptions = field(default_factory=E2EOptions)
    runner: Runner = _run_command
    dig_output: str = ""
    metrics_output: str = ""
    errors: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        self._lock = threading.Lock()
        self._dnsmasq_output = _OutputBuffer(self._lock)
        self._sidecar_output = _OutputBuffer(self._lock)
        self.dnsmasq: Optional[subprocess.Popen] = None
        self.sidecar: Optional[subprocess.Popen] = None

    def run(self) -> None:
        """Run every step of the in-container test."""
        logger.info("Running as test")
        self.run_dnsmasq()
        self.run_sidecar()
        self.run_dig()
        self.wait_for_metrics()
        self.get_metrics()
        self.dump()

    def _start(self, binary: str, args: list[str], buffer: _OutputBuffer) -> subprocess.Popen:
        try:
            process = subprocess.Popen(
                [binary, *args], stdout=subprocess.PIPE, stderr=subprocess.PIPE
            )
        except OSError as exc:
            raise E2EError(f"starting {binary}: {exc}") from exc
        buffer.attach(process.stdout)
        buffer.attach(process.stderr)
        return process

    def run_dnsmasq(self) -> None:
        args = [
            "-q", "-k",
            "-a", "127.0.0.1",
            "-p", str(DNSMASQ_PORT),
            "-c", "1337",
            "-8", "-",
            "-A", "/ok.local/1.2.3.4",
            "-A", "/nxdomain.local/",
        ]
        logger.info("Starting dnsmasq %s", args)
        self.dnsmasq = self._start(self.options.dnsmasq_binary, args, self._dnsmasq_output)
        _wait_for_tcp_or_exit(self.dnsmasq, "127.0.0.1", DNSMASQ_PORT)
        logger.info("dnsmasq started")

    def run_sidecar(self) -> None:
        args = [
            "-v", "4",
            "--prometheus-port", str(SIDECAR_PORT),
            "--dnsmasq-port", str(DNSMASQ_PORT),
            "--probe", f"ok,127.0.0.1:{DNSMASQ_PORT},ok.local,1",
            "--probe", f"nxdomain,127.0.0.1:{DNSMASQ_PORT},nx.local,1",
            "--probe", f"notpresent,127.0.0.1:{DNSMASQ_PORT + 1},notpresent.local,1",
        ]
        logger.info("Starting sidecar %s", args)
        self.sidecar = self._start(self.options.sidecar_binary, args, self._sidecar_output)
        _wait_for_tcp_or_exit(self.sidecar, "127.0.0.1", SIDECAR_PORT)
        logger.info("sidecar started")

    def run_dig(self) -> None:
        """Query dnsmasq repeatedly, collecting output and failures."""
        logger.info("running `dig`")
        command = [self.options.dig_binary, "@127.0.0.1", "-p", str(DNSMASQ_PORT), "localhost"]
        for _ in range(DIG_RUNS):
            try:
                result = self.runner(command)
            except OSError as exc:
                self.errors.append(f"error running dig: {exc}")
                continue
            if result.returncode == 0:
                self.dig_output += (result.stdout or b"").decode("utf-8", errors="replace")
            else:
                self.errors.append(f"error running dig: exit status {result.returncode}")

    def _metrics_url(self) -> str:
        return f"http://127.0.0.1:{SIDECAR_PORT}/metrics"

    def wait_for_metrics(self) -> None:
        logger.info("Waiting for hits to be reported to be greater than %d", HITS_THRESHOLD)

        def predicate() -> tuple[bool, Optional[BaseException]]:
            text = _fetch(self._metrics_url())
            try:
                if any(value >= HITS_THRESHOLD for value in parse_hits(text)):
                    return True, None
            except ValueError as exc:
                return False, exc
            return False, None

        try:
            wait_for_predicate(predicate, 10.0, 1.0)
        except TimeoutError as exc:
            logger.info("%s", exc)

    def get_metrics(self) -> None:
        self.metrics_output = _fetch(self._metrics_url())

    def dump(self) -> None:
        """Write every collected output and the errors to the output directory."""
        outputs = {
            "dnsmasq": self._dnsmasq_output,
            "sidecar": self._sidecar_output,
        }
        out_dir = Path(self.options.output_dir)
        with self._lock:
            try:
                for name, buffer in outputs.items():
                    (out_dir / f"{name}.log").write_text(buffer.text())
                (out_dir / "dig.log").write_text(self.dig_output)
                (out_dir / "metrics.log").write_text(self.metrics_output)
                (out_dir / "errors.log").write_text("".join(self.errors))
            except OSError as exc:
                raise E2EError(f"writing output: {exc}") from exc


def _parse_bool(text: str) -> bool:
    if text in _BOOL_TRUE:
        return True
    if text in _BOOL_FALSE:
        return False
    raise argparse.ArgumentTypeError(f"invalid boolean value {text!r}")


class _Parser(argparse.ArgumentParser):
    def error(self, message: str):
        raise E2EError(message)


def _parse_options(argv: Sequence[str]) -> E2EOptions:
    defaults = E2EOptions()
    parser = _Parser(prog="sidecar-e2e")

    def add(name: str, dest: str, help_text: str, **kwargs) -> None:
        parser.add_argument(f"-{name}", f"--{name}", dest=dest,
                            default=getattr(defaults, dest), help=help_text, **kwargs)

    add("mode", "mode", "harness or test. Harness runs the test (builds the image, etc)"
        " and test runs actual tests inside the container.")
    add("cleanup", "cleanup", "Set to false to not cleanup tmp directory",
        nargs="?", const=True, type=_parse_bool)
    add("baseDir", "base_dir", "base directory for the e2e test")
    add("dockerfile", "dockerfile", "Dockerfile for e2e test")
    add("dnsmasqBinary", "dnsmasq_binary", "location of dnsmasq")
    add("sidecarBinary", "sidecar_binary", "location of sidecar")
    add("digBinary", "dig_binary", "location of dig")
    add("outputDir", "output_dir", "location of output dir inside container")
    args = parser.parse_args(list(argv))
    return E2EOptions(**vars(args))


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run in the mode chosen by ``-mode``; returns the exit status."""
    try:
        options = _parse_options(sys.argv[1:] if argv is None else argv)
        logger.info("opts=%s", options)
        if options.mode == "harness":
            tmp_dir = tempfile.mkdtemp(prefix="k8s-dns-sidecar-e2e")
            return Harness(tmp_dir=tmp_dir, image=IMAGE_NAME, options=options).run()
        if options.mode == "test":
            SidecarTest(options=options).run()
            return 0
        raise E2EError(f"invalid --mode: {options.mode}")
    except E2EError as exc:
        logger.error("%s", exc)
        return 1