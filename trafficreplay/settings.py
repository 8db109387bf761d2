"""Application settings and the command-line parser that fills them.

Durations are held as float seconds and sizes as integer byte counts.
"""

from __future__ import annotations

import argparse
import re
import sys
import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field, fields, is_dataclass
from typing import Any

from .size import parse_size

VERSION = "1.3.0"
PRO = False
DEMO = ""

_DEFAULT_SIZE_LIMIT = 33554432
_DEFAULT_MAX_SIZE = 1099511627776
_DEFAULT_COPY_BUFFER = 5242880


def _json(key: str) -> dict[str, str]:
    return {"json": key}


@dataclass
class FileOutputConfig:
    """Options of the file output."""

    flush_interval: float = field(default=0.0, metadata=_json("output-file-flush-interval"))
    size_limit: int = field(default=0, metadata=_json("output-file-size-limit"))
    output_file_max_size: int = field(default=0, metadata=_json("output-file-max-size-limit"))
    queue_limit: int = field(default=0, metadata=_json("output-file-queue-limit"))
    append: bool = field(default=False, metadata=_json("output-file-append"))
    buffer_path: str = field(default="", metadata=_json("output-file-buffer"))
    on_close: Callable[[str], None] | None = field(
        default=None, repr=False, compare=False, metadata=_json("-")
    )


@dataclass
class TCPOutputConfig:
    """Options of the TCP output."""

    secure: bool = field(default=False, metadata=_json("output-tcp-secure"))
    sticky: bool = field(default=False, metadata=_json("output-tcp-sticky"))
    skip_verify: bool = field(default=False, metadata=_json("output-tcp-skip-verify"))
    workers: int = field(default=0, metadata=_json("output-tcp-workers"))


@dataclass
class HTTPOutputConfig:
    """Options of the HTTP output."""

    track_responses: bool = field(default=False, metadata=_json("output-http-track-response"))
    stats: bool = field(default=False, metadata=_json("output-http-stats"))
    original_host: bool = field(default=False, metadata=_json("output-http-original-host"))
    redirect_limit: int = field(default=0, metadata=_json("output-http-redirect-limit"))
    workers_min: int = field(default=0, metadata=_json("output-http-workers-min"))
    workers_max: int = field(default=0, metadata=_json("output-http-workers"))
    stats_ms: int = field(default=0, metadata=_json("output-http-stats-ms"))
    queue_len: int = field(default=0, metadata=_json("output-http-queue-len"))
    elastic_search: str = field(default="", metadata=_json("output-http-elasticsearch"))
    timeout: float = field(default=0.0, metadata=_json("output-http-timeout"))
    worker_timeout: float = field(default=0.0, metadata=_json("output-http-worker-timeout"))
    buffer_size: int = field(default=0, metadata=_json("output-http-response-buffer"))
    skip_verify: bool = field(default=False, metadata=_json("output-http-skip-verify"))


def _default_file_output() -> FileOutputConfig:
    return FileOutputConfig(
        flush_interval=1.0,
        size_limit=_DEFAULT_SIZE_LIMIT,
        output_file_max_size=_DEFAULT_MAX_SIZE,
        queue_limit=256,
        buffer_path="/tmp",
    )


def _default_tcp_output() -> TCPOutputConfig:
    return TCPOutputConfig(workers=10)


def _default_http_output() -> HTTPOutputConfig:
    return HTTPOutputConfig(stats_ms=5000, queue_len=1000, timeout=5.0, worker_timeout=2.0)


def _as_dict(obj: Any) -> dict[str, Any]:
    result: dict[str, Any] = {}
    for f in fields(obj):
        key = f.metadata.get("json", f.name)
        if key == "-":
            continue
        value = getattr(obj, f.name)
        if is_dataclass(value):
            value = _as_dict(value)
        elif isinstance(value, list):
            value = list(value)
        result[key] = value
    return result


@dataclass
class AppSettings:
    """The main configuration, with the command-line defaults."""

    verbose: int = field(default=0, metadata=_json("verbose"))
    stats: bool = field(default=False, metadata=_json("stats"))
    exit_after: float = field(
        default_factory=lambda: 300.0 if DEMO else 0.0, metadata=_json("exit-after")
    )

    split_output: bool = field(default=False, metadata=_json("split-output"))
    recognize_tcp_sessions: bool = field(default=False, metadata=_json("recognize-tcp-sessions"))
    pprof: str = field(default="", metadata=_json("http-pprof"))

    input_dummy: list[str] = field(default_factory=list, metadata=_json("input-dummy"))
    output_dummy: list[str] = field(default_factory=list, metadata=_json("output-dummy"))
    output_stdout: bool = field(default=False, metadata=_json("output-stdout"))
    output_null: bool = field(default=False, metadata=_json("output-null"))

    input_tcp: list[str] = field(default_factory=list, metadata=_json("input-tcp"))
    output_tcp: list[str] = field(default_factory=list, metadata=_json("output-tcp"))
    output_tcp_config: TCPOutputConfig = field(
        default_factory=_default_tcp_output, metadata=_json("output-tcp-config")
    )
    output_tcp_stats: bool = field(default=False, metadata=_json("output-tcp-stats"))

    input_file: list[str] = field(default_factory=list, metadata=_json("input-file"))
    input_file_loop: bool = field(default=False, metadata=_json("input-file-loop"))
    input_file_read_depth: int = field(default=100, metadata=_json("input-file-read-depth"))
    input_file_dry_run: bool = field(default=False, metadata=_json("input-file-dry-run"))
    input_file_max_wait: float = field(default=0.0, metadata=_json("input-file-max-wait"))
    output_file: list[str] = field(default_factory=list, metadata=_json("output-file"))
    output_file_config: FileOutputConfig = field(
        default_factory=_default_file_output, metadata=_json("output-file-config")
    )

    input_raw: list[str] = field(default_factory=list, metadata=_json("input_raw"))
    copy_buffer_size: int = field(default=_DEFAULT_COPY_BUFFER, metadata=_json("copy-buffer-size"))

    middleware: str = field(default="", metadata=_json("middleware"))

    input_http: list[str] = field(default_factory=list, metadata=_json("input-http"))
    output_http: list[str] = field(default_factory=list, metadata=_json("output-http"))
    prettify_http: bool = field(default=False, metadata=_json("prettify-http"))
    output_http_config: HTTPOutputConfig = field(
        default_factory=_default_http_output, metadata=_json("output-http-config")
    )

    def to_dict(self) -> dict[str, Any]:
        """Return the settings as plain data keyed by option names."""
        return _as_dict(self)


SETTINGS = AppSettings()

_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "μs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)")


def _parse_duration(text: str) -> float:
    """Parse a duration such as ``1h30m`` or ``100ms`` into seconds."""
    rest = text
    sign = 1.0
    if rest[:1] in ("+", "-"):
        sign = -1.0 if rest[0] == "-" else 1.0
        rest = rest[1:]
    if rest == "0":
        return 0.0
    if not rest:
        raise argparse.ArgumentTypeError(f"invalid duration {text!r}")
    total = 0.0
    pos = 0
    while pos < len(rest):
        match = _DURATION_PART.match(rest, pos)
        if match is None:
            raise argparse.ArgumentTypeError(f"invalid duration {text!r}")
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    return sign * total


def _parse_size_arg(text: str) -> int:
    try:
        return parse_size(text)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from None


def _parse_int_arg(text: str) -> int:
    try:
        return int(text, 0)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid integer {text!r}") from None


_TRUE = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE = {"0", "f", "F", "FALSE", "false", "False"}


def _parse_bool_arg(text: str) -> bool:
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise argparse.ArgumentTypeError(f"invalid boolean {text!r}")


@dataclass(frozen=True)
class _Flag:
    name: str
    target: str
    kind: str
    help: str


_FLAGS: tuple[_Flag, ...] = (
    _Flag("http-pprof", "pprof", "str",
          "Enable profiling on the given address, e.g. `:8181`."),
    _Flag("verbose", "verbose", "int",
          "Level of verbosity; above zero turns on debug output."),
    _Flag("stats", "stats", "bool", "Turn on queue stats output."),
    _Flag("exit-after", "exit_after", "duration", "Exit after the given duration."),
    _Flag("split-output", "split_output", "bool",
          "Split traffic equally among all outputs instead of copying it to each."),
    _Flag("recognize-tcp-sessions", "recognize_tcp_sessions", "bool",
          "Create a separate HTTP output worker for each TCP session."),
    _Flag("input-dummy", "input_dummy", "multi",
          "Used for testing outputs. Emits 'GET /' request every 1s."),
    _Flag("output-stdout", "output_stdout", "bool",
          "Used for testing inputs. Prints incoming data to the console."),
    _Flag("output-null", "output_null", "bool",
          "Used for testing inputs. Drops all requests."),
    _Flag("input-tcp", "input_tcp", "multi",
          "Receive payloads from other instances, e.g. `:28020`."),
    _Flag("output-tcp", "output_tcp", "multi",
          "Forward payloads to another instance, e.g. `replay.local:28020`."),
    _Flag("output-tcp-secure", "output_tcp_config.secure", "bool",
          "Use a TLS connection for the TCP output."),
    _Flag("output-tcp-skip-verify", "output_tcp_config.skip_verify", "bool",
          "Don't verify the hostname on a TLS connection."),
    _Flag("output-tcp-sticky", "output_tcp_config.sticky", "bool",
          "Send a request and its response over the same connection."),
    _Flag("output-tcp-workers", "output_tcp_config.workers", "int",
          "Number of parallel TCP connections."),
    _Flag("output-tcp-stats", "output_tcp_stats", "bool",
          "Report TCP output queue stats every 5 seconds."),
    _Flag("input-file", "input_file", "multi", "Read requests from a file."),
    _Flag("input-file-loop", "input_file_loop", "bool",
          "Loop input files, useful for performance testing."),
    _Flag("input-file-read-depth", "input_file_read_depth", "int",
          "Number of records read and sorted in advance."),
    _Flag("input-file-dry-run", "input_file_dry_run", "bool",
          "Read the data source without replaying it."),
    _Flag("input-file-max-wait", "input_file_max_wait", "duration",
          "Maximum time between requests."),
    _Flag("output-file", "output_file", "multi", "Write incoming requests to a file."),
    _Flag("output-file-flush-interval", "output_file_config.flush_interval", "duration",
          "Interval for forcing a buffer flush to the file."),
    _Flag("output-file-append", "output_file_config.append", "bool",
          "Append to the existing file instead of writing chunks."),
    _Flag("output-file-size-limit", "output_file_config.size_limit", "size",
          "Size of each chunk."),
    _Flag("output-file-queue-limit", "output_file_config.queue_limit", "int",
          "Number of records in each chunk."),
    _Flag("output-file-max-size-limit", "output_file_config.output_file_max_size", "size",
          "Maximum size of the output file."),
    _Flag("output-file-buffer", "output_file_config.buffer_path", "str",
          "Path for temporarily storing the current buffer."),
    _Flag("prettify-http", "prettify_http", "bool",
          "Decode gzip and chunked HTTP bodies."),
    _Flag("input-raw", "input_raw", "multi", "Capture traffic from the given port."),
    _Flag("copy-buffer-size", "copy_buffer_size", "size",
          "Buffer size for an individual request."),
    _Flag("middleware", "middleware", "str",
          "External command used for modifying traffic."),
    _Flag("output-http", "output_http", "multi",
          "Forward incoming requests to the given HTTP address."),
    _Flag("output-http-response-buffer", "output_http_config.buffer_size", "size",
          "HTTP response buffer size; data beyond it is discarded."),
    _Flag("output-http-workers-min", "output_http_config.workers_min", "int",
          "Minimum number of HTTP workers."),
    _Flag("output-http-workers", "output_http_config.workers_max", "int",
          "Maximum number of HTTP workers; 0 means unlimited."),
    _Flag("output-http-queue-len", "output_http_config.queue_len", "int",
          "Number of requests that can be queued when all workers are busy."),
    _Flag("output-http-skip-verify", "output_http_config.skip_verify", "bool",
          "Don't verify the hostname on a TLS connection."),
    _Flag("output-http-worker-timeout", "output_http_config.worker_timeout", "duration",
          "Idle time after which extra workers are stopped."),
    _Flag("output-http-redirects", "output_http_config.redirect_limit", "int",
          "How many redirects to follow."),
    _Flag("output-http-timeout", "output_http_config.timeout", "duration",
          "HTTP request/response timeout."),
    _Flag("output-http-track-response", "output_http_config.track_responses", "bool",
          "Pass HTTP output responses on to the other outputs."),
    _Flag("output-http-stats", "output_http_config.stats", "bool",
          "Report HTTP output queue stats periodically."),
    _Flag("output-http-stats-ms", "output_http_config.stats_ms", "int",
          "Interval of HTTP output queue stats in milliseconds."),
    _Flag("http-original-host", "output_http_config.original_host", "bool",
          "Keep the original Host header instead of the output's host."),
    _Flag("output-http-elasticsearch", "output_http_config.elastic_search", "str",
          "Send request and response stats to ElasticSearch."),
)

_TYPES: dict[str, Callable[[str], Any]] = {
    "str": str,
    "int": _parse_int_arg,
    "bool": _parse_bool_arg,
    "duration": _parse_duration,
    "size": _parse_size_arg,
    "multi": str,
}


def _active_flags() -> list[_Flag]:
    return [f for f in _FLAGS if not (DEMO and f.name == "exit-after")]


def _dest(flag: _Flag) -> str:
    return flag.name.replace("-", "_")


def _resolve(obj: Any, target: str) -> tuple[Any, str]:
    *parents, attr = target.split(".")
    for parent in parents:
        obj = getattr(obj, parent)
    return obj, attr


def build_parser() -> argparse.ArgumentParser:
    """Return the command-line parser for all settings."""
    parser = argparse.ArgumentParser(
        prog="trafficreplay",
        description=(
            "Replays HTTP traffic from production servers to staging and "
            f"development environments. Current version: v{VERSION}"
        ),
    )
    defaults = AppSettings()
    for flag in _active_flags():
        owner, attr = _resolve(defaults, flag.target)
        options: dict[str, Any] = {
            "dest": _dest(flag),
            "type": _TYPES[flag.kind],
            "default": None,
            "help": flag.help,
        }
        if flag.kind == "multi":
            options["action"] = "append"
        else:
            options["help"] = f"{flag.help} (default: {getattr(owner, attr)!r})"
            if flag.kind == "bool":
                options.update(nargs="?", const=True, metavar="BOOL")
        parser.add_argument("-" + flag.name, "--" + flag.name, **options)
    return parser


def parse_settings(argv: Sequence[str] | None = None) -> AppSettings:
    """Parse command-line arguments into a new AppSettings."""
    namespace = build_parser().parse_args(argv)
    result = AppSettings()
    for flag in _active_flags():
        value = getattr(namespace, _dest(flag))
        if value is None:
            continue
        owner, attr = _resolve(result, flag.target)
        if flag.kind == "multi":
            getattr(owner, attr).extend(value)
        else:
            setattr(owner, attr, value)
    return result


def check_settings(settings: AppSettings) -> AppSettings:
    """Replace unset size limits with their defaults; returns ``settings``."""
    if settings.output_file_config.size_limit < 1:
        settings.output_file_config.size_limit = parse_size("32mb")
    if settings.output_file_config.output_file_max_size < 1:
        settings.output_file_config.output_file_max_size = parse_size("1tb")
    if settings.copy_buffer_size < 1:
        settings.copy_buffer_size = parse_size("5mb")
    return settings


_debug_lock = threading.Lock()
_previous_debug_time = time.monotonic()


def _format_elapsed(seconds: float) -> str:
    if seconds < 1e-6:
        return f"{round(seconds * 1e9)}ns"
    if seconds < 1e-3:
        return f"{seconds * 1e6:.3f}µs"
    if seconds < 1:
        return f"{seconds * 1e3:.3f}ms"
    return f"{seconds:.3f}s"


def debug(level: int, *args: Any) -> None:
    """Write a debug line to stderr if the verbosity reaches ``level``."""
    global _previous_debug_time
    if SETTINGS.verbose < level:
        return
    with _debug_lock:
        now = time.monotonic()
        elapsed = now - _previous_debug_time
        _previous_debug_time = now
        sys.stderr.write(
            f"[DEBUG][elapsed {_format_elapsed(elapsed)}]: "
            + " ".join(str(arg) for arg in args)
            + "\n"
        )