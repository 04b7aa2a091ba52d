"""Prometheus-style metrics for the tape node and a small HTTP exporter."""

from __future__ import annotations

import bisect
import itertools
import logging
import math
import threading
import time
from enum import Enum
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Callable, Iterable, Sequence, TypeVar

from .rpc_types import RpcError, RpcMethod

log = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_BUCKETS: tuple[float, ...] = (
    0.001, 0.005, 0.010, 0.025, 0.050, 0.100, 0.250, 0.500,
    1.000, 2.500, 5.000, 10.000, 30.000, 60.000,
)

STATUS_OK = "OK"


def _format_number(value: float) -> str:
    if value == math.inf:
        return "+Inf"
    if value == -math.inf:
        return "-Inf"
    if isinstance(value, int) or float(value).is_integer():
        return str(int(value))
    return repr(float(value))


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def _label_text(pairs: Iterable[tuple[str, str]]) -> str:
    body = ",".join(f'{name}="{_escape(value)}"' for name, value in pairs)
    return f"{{{body}}}" if body else ""


class _Metric:
    kind = "untyped"

    def __init__(self, name: str, help: str, labels: Sequence[str] = ()) -> None:
        self.name = name
        self.help = help
        self.labels = tuple(labels)
        self._lock = threading.Lock()

    def _key(self, values: Sequence[object]) -> tuple[str, ...]:
        if len(values) != len(self.labels):
            raise ValueError(
                f"{self.name}: expected {len(self.labels)} label values, got {len(values)}"
            )
        return tuple(str(v) for v in values)

    def _header(self) -> str:
        return f"# HELP {self.name} {self.help}\n# TYPE {self.name} {self.kind}\n"


class IntCounter(_Metric):
    """A monotonically increasing integer, optionally split by label values."""

    kind = "counter"

    def __init__(self, name: str, help: str, labels: Sequence[str] = ()) -> None:
        super().__init__(name, help, labels)
        self._values: dict[tuple[str, ...], int] = {} if self.labels else {(): 0}

    def inc(self, amount: int = 1, *args: object) -> None:
        """Add ``amount`` to the series picked out by the label values in ``args``."""
        if amount < 0:
            raise ValueError("counters can only increase")
        key = self._key(args)
        with self._lock:
            self._values[key] = self._values.get(key, 0) + int(amount)

    def value(self, *args: object) -> int:
        key = self._key(args)
        with self._lock:
            return self._values.get(key, 0)

    def render(self) -> str:
        with self._lock:
            samples = sorted(self._values.items())
        if not samples:
            return ""
        lines = [
            f"{self.name}{_label_text(zip(self.labels, key))} {value}\n"
            for key, value in samples
        ]
        return self._header() + "".join(lines)


class IntGauge(_Metric):
    """An integer that can be set to any value."""

    kind = "gauge"

    def __init__(self, name: str, help: str) -> None:
        super().__init__(name, help)
        self._value = 0

    def set(self, value: int) -> None:
        with self._lock:
            self._value = int(value)

    def render(self) -> str:
        with self._lock:
            value = self._value
        return self._header() + f"{self.name} {value}\n"


class Histogram(_Metric):
    """Observations counted into cumulative buckets, optionally split by labels."""

    kind = "histogram"

    def __init__(
        self,
        name: str,
        help: str,
        buckets: Sequence[float] = DEFAULT_BUCKETS,
        labels: Sequence[str] = (),
    ) -> None:
        super().__init__(name, help, labels)
        bounds = [float(b) for b in buckets]
        if not bounds or any(a >= b for a, b in zip(bounds, bounds[1:])):
            raise ValueError("histogram buckets must be non-empty and strictly increasing")
        self.buckets = tuple(b for b in bounds if b != math.inf)
        self._series: dict[tuple[str, ...], list] = {}
        if not self.labels:
            self._series[()] = self._empty()

    def _empty(self) -> list:
        return [[0] * (len(self.buckets) + 1), 0.0, 0]

    def observe(self, value: float, *args: object) -> None:
        key = self._key(args)
        slot = bisect.bisect_left(self.buckets, value)
        with self._lock:
            series = self._series.setdefault(key, self._empty())
            series[0][slot] += 1
            series[1] += value
            series[2] += 1

    def count(self, *args: object) -> int:
        key = self._key(args)
        with self._lock:
            series = self._series.get(key)
            return series[2] if series else 0

    def render(self) -> str:
        with self._lock:
            samples = sorted(
                (key, list(counts), total, count)
                for key, (counts, total, count) in self._series.items()
            )
        if not samples:
            return ""
        lines = []
        bounds = list(self.buckets) + [math.inf]
        for key, counts, total, count in samples:
            pairs = list(zip(self.labels, key))
            for bound, cumulative in zip(bounds, itertools.accumulate(counts)):
                le = _label_text(pairs + [("le", _format_number(bound))])
                lines.append(f"{self.name}_bucket{le} {cumulative}\n")
            plain = _label_text(pairs)
            lines.append(f"{self.name}_sum{plain} {_format_number(total)}\n")
            lines.append(f"{self.name}_count{plain} {count}\n")
        return self._header() + "".join(lines)


class Registry:
    """A named set of collectors rendered together in text exposition format."""

    def __init__(self) -> None:
        self._collectors: dict[str, _Metric] = {}
        self._lock = threading.Lock()

    def register(self, collector: _Metric) -> None:
        with self._lock:
            if collector.name in self._collectors:
                raise ValueError(f"collector {collector.name!r} is already registered")
            self._collectors[collector.name] = collector

    @property
    def names(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._collectors)

    def encode(self) -> str:
        with self._lock:
            collectors = [self._collectors[n] for n in sorted(self._collectors)]
        return "".join(c.render() for c in collectors)


REGISTRY = Registry()

TAPE_RPC_REQUESTS_TOTAL = IntCounter(
    "tape_rpc_requests_total",
    "Total number of Tape RPC calls, labelled by method and status",
    labels=("method", "status"),
)
TAPE_RPC_REQUEST_DURATION_SECONDS = Histogram(
    "tape_rpc_request_duration_seconds",
    "RPC request latency in seconds, labeled by method.",
    DEFAULT_BUCKETS,
    labels=("method",),
)
TAPE_MINING_CHALLENGES_SOLVED_TOTAL = IntCounter(
    "tape_mining_challenges_solved_total",
    "Total number of mining challenges solved successfully",
)
TAPE_MINING_ATTEMPTS_TOTAL = IntCounter(
    "tape_mining_attempts_total",
    "Total number of mining attempts",
)
TAPE_MINING_DURATION_SECONDS = Histogram(
    "tape_mining_iteration_duration_seconds",
    "Time taken per mining iteration in seconds",
    DEFAULT_BUCKETS,
)
TAPE_CURRENT_MINING_ITERATION = IntGauge(
    "tape_current_mining_iteration",
    "Current mining iteration",
)
TAPE_TOTAL_TAPES_WRITTEN = IntCounter(
    "tape_total_tapes_written",
    "Tape total tapes written",
)
TAPE_TOTAL_SEGMENTS_WRITTEN = IntCounter(
    "tape_total_segments_written",
    "Tape total segments written",
)


class Process(Enum):
    MINE = "mine"
    ARCHIVE = "archive"
    WEB = "web"

    def metrics_port(self) -> int:
        return _PORTS[self]


_PORTS = {Process.ARCHIVE: 8875, Process.MINE: 8874, Process.WEB: 8873}

PROCESS_COLLECTORS: dict[Process, tuple[_Metric, ...]] = {
    Process.ARCHIVE: (TAPE_TOTAL_TAPES_WRITTEN, TAPE_TOTAL_SEGMENTS_WRITTEN),
    Process.MINE: (
        TAPE_MINING_ATTEMPTS_TOTAL,
        TAPE_MINING_CHALLENGES_SOLVED_TOTAL,
        TAPE_MINING_DURATION_SECONDS,
        TAPE_CURRENT_MINING_ITERATION,
    ),
    Process.WEB: (TAPE_RPC_REQUESTS_TOTAL, TAPE_RPC_REQUEST_DURATION_SECONDS),
}

_register_lock = threading.Lock()
_registered = False


def register_process_metrics(process: Process) -> bool:
    """Register the collectors for ``process``; only the first call in a process does so.

    Returns True when this call performed the registration.
    """
    global _registered
    with _register_lock:
        if _registered:
            return False
        for collector in PROCESS_COLLECTORS[process]:
            REGISTRY.register(collector)
        _registered = True
        return True


class _MetricsHandler(BaseHTTPRequestHandler):
    def do_GET(self) -> None:  # noqa: N802
        if self.path.split("?", 1)[0] == "/metrics":
            status, content_type, body = 200, "text/plain", REGISTRY.encode()
        else:
            status, content_type, body = 404, "text/plain", "Not Found"
        payload = body.encode("utf-8")
        self.send_response(status)
        self.send_header("content-type", content_type)
        self.send_header("content-length", str(len(payload)))
        self.end_headers()
        self.wfile.write(payload)

    def log_message(self, format: str, *args: object) -> None:
        log.debug("metrics: " + format, *args)


def run_metrics_server(
    process: Process, host: str = "0.0.0.0", port: int | None = None
) -> ThreadingHTTPServer | None:
    """Register the process's metrics and serve them at /metrics in a background thread.

    The port defaults to the process's own. A bind failure is logged and None returned.
    """
    register_process_metrics(process)
    bind_port = process.metrics_port() if port is None else port
    try:
        server = ThreadingHTTPServer((host, bind_port), _MetricsHandler)
    except OSError as exc:
        log.error("Failed to bind Prometheus server: %r", exc)
        return None
    server.daemon_threads = True
    address, actual_port = server.server_address[:2]
    log.info("Prometheus server started at http://%s:%s/metrics", address, actual_port)
    threading.Thread(target=server.serve_forever, name="metrics-server", daemon=True).start()
    return server


def _status_label(status: RpcError | str | None) -> str:
    if status is None:
        return STATUS_OK
    if isinstance(status, RpcError):
        return str(status.code)
    return str(status)


def inc_td_api_status_total(method: RpcMethod | str, status: RpcError | str | None) -> None:
    """Count one RPC call; ``status`` None means success, an RpcError its code."""
    TAPE_RPC_REQUESTS_TOTAL.inc(1, str(method), _status_label(status))


def record_td_api_latency(method: RpcMethod | str, time_elapsed: float) -> None:
    TAPE_RPC_REQUEST_DURATION_SECONDS.observe(time_elapsed, str(method))


def inc_tape_mining_challenges_solved_total() -> None:
    TAPE_MINING_CHALLENGES_SOLVED_TOTAL.inc()


def inc_tape_mining_attempts_total() -> None:
    TAPE_MINING_ATTEMPTS_TOTAL.inc()


def observe_tape_mining_duration(duration_secs: float) -> None:
    TAPE_MINING_DURATION_SECONDS.observe(duration_secs)


def set_current_mining_iteration(current_iteration: int) -> None:
    TAPE_CURRENT_MINING_ITERATION.set(current_iteration)


def inc_total_tapes_written() -> None:
    TAPE_TOTAL_TAPES_WRITTEN.inc()


def inc_total_tapes_written_batch(n: int) -> None:
    TAPE_TOTAL_TAPES_WRITTEN.inc(n)


def inc_total_segments_written() -> None:
    TAPE_TOTAL_SEGMENTS_WRITTEN.inc()


def inc_total_segments_written_batch(n: int) -> None:
    TAPE_TOTAL_SEGMENTS_WRITTEN.inc(n)


def record_metrics(method: RpcMethod | str, func: Callable[[], T]) -> T:
    """Run ``func``, recording its latency and its outcome for ``method``.

    An RpcError raised by ``func`` is counted under its code and raised again.
    """
    start = time.perf_counter()
    try:
        result = func()
    except RpcError as err:
        record_td_api_latency(method, time.perf_counter() - start)
        inc_td_api_status_total(method, err)
        raise
    record_td_api_latency(method, time.perf_counter() - start)
    inc_td_api_status_total(method, None)
    return result