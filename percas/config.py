"""Server configuration: typed sections, defaults, validation and environment option table."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field, fields, is_dataclass
from datetime import timedelta
from enum import Enum
from pathlib import Path
from typing import Any, ClassVar

from percas.newtype import DiskThrottle, IopsCounter, format_duration, parse_duration

DEFAULT_LISTEN_ADDR = "0.0.0.0:7654"
DEFAULT_LISTEN_PEER_ADDR = "0.0.0.0:7655"
DEFAULT_CLUSTER_ID = "percas-cluster"
DEFAULT_METRICS_PUSH_INTERVAL = timedelta(seconds=30)
DEFAULT_DISK_CAPACITY = 512 * 1024 * 1024
_DEFAULT_OTLP_ENDPOINT = "http://127.0.0.1:4317"
_DEFAULT_FILTER = "INFO"

_U64_MAX = 2**64 - 1
_REQUIRED = object()


class ConfigError(ValueError):
    """Raised when a configuration document is malformed."""


def default_dir() -> Path:
    return Path("/var/lib/percas")


def default_data_dir() -> Path:
    return Path("/var/lib/percas/data")


def node_file_path(base_dir: str | os.PathLike[str]) -> Path:
    """Where the persistent node identity is stored inside `base_dir`."""
    return Path(base_dir) / "node.json"


class ServerMode(Enum):
    STANDALONE = "standalone"
    CLUSTER = "cluster"


@dataclass
class StandaloneServerConfig:
    dir: Path = field(default_factory=default_dir)
    listen_addr: str = DEFAULT_LISTEN_ADDR
    advertise_addr: str | None = None

    mode: ClassVar[ServerMode] = ServerMode.STANDALONE


@dataclass
class ClusterServerConfig:
    dir: Path = field(default_factory=default_dir)
    listen_addr: str = DEFAULT_LISTEN_ADDR
    advertise_addr: str | None = None
    listen_peer_addr: str = DEFAULT_LISTEN_PEER_ADDR
    advertise_peer_addr: str | None = None
    initial_advertise_peer_addrs: list[str] | None = None
    cluster_id: str = DEFAULT_CLUSTER_ID

    mode: ClassVar[ServerMode] = ServerMode.CLUSTER


ServerConfig = StandaloneServerConfig | ClusterServerConfig


@dataclass(kw_only=True)
class StorageConfig:
    data_dir: Path = field(default_factory=default_data_dir)
    disk_capacity: int
    disk_throttle: DiskThrottle | None = None
    memory_capacity: int | None = None


@dataclass
class FileAppenderConfig:
    filter: str
    dir: str
    max_files: int


@dataclass
class StderrAppenderConfig:
    filter: str


@dataclass
class OpentelemetryAppenderConfig:
    filter: str
    otlp_endpoint: str


@dataclass
class LogsConfig:
    file: FileAppenderConfig | None = None
    stderr: StderrAppenderConfig | None = None
    opentelemetry: OpentelemetryAppenderConfig | None = None

    @classmethod
    def disabled(cls) -> LogsConfig:
        return cls()


@dataclass
class OpentelemetryTracesConfig:
    otlp_endpoint: str


@dataclass
class TracesConfig:
    capture_log_filter: str
    opentelemetry: OpentelemetryTracesConfig | None = None


@dataclass
class OpentelemetryMetricsConfig:
    otlp_endpoint: str
    push_interval: timedelta = DEFAULT_METRICS_PUSH_INTERVAL


@dataclass
class MetricsConfig:
    opentelemetry: OpentelemetryMetricsConfig | None = None


@dataclass
class TelemetryConfig:
    logs: LogsConfig = field(default_factory=LogsConfig.disabled)
    traces: TracesConfig | None = None
    metrics: MetricsConfig | None = None


@dataclass
class Config:
    server: ServerConfig
    storage: StorageConfig
    telemetry: TelemetryConfig

    @classmethod
    def default(cls) -> Config:
        return cls(
            server=StandaloneServerConfig(),
            storage=StorageConfig(disk_capacity=DEFAULT_DISK_CAPACITY),
            telemetry=TelemetryConfig(
                logs=LogsConfig(
                    file=FileAppenderConfig(filter=_DEFAULT_FILTER, dir="logs", max_files=64),
                    stderr=StderrAppenderConfig(filter=_DEFAULT_FILTER),
                    opentelemetry=OpentelemetryAppenderConfig(
                        filter=_DEFAULT_FILTER, otlp_endpoint=_DEFAULT_OTLP_ENDPOINT
                    ),
                ),
                traces=TracesConfig(
                    capture_log_filter=_DEFAULT_FILTER,
                    opentelemetry=OpentelemetryTracesConfig(otlp_endpoint=_DEFAULT_OTLP_ENDPOINT),
                ),
                metrics=MetricsConfig(
                    opentelemetry=OpentelemetryMetricsConfig(
                        otlp_endpoint=_DEFAULT_OTLP_ENDPOINT,
                        push_interval=DEFAULT_METRICS_PUSH_INTERVAL,
                    )
                ),
            ),
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Config:
        """Build a configuration from a parsed document, rejecting unknown fields."""
        reader = _Fields(data, "", ("server", "storage", "telemetry"))
        return cls(
            server=parse_server_config(reader.table("server")),
            storage=_parse_storage(reader.table("storage")),
            telemetry=_parse_telemetry(reader.table("telemetry")),
        )

    def to_dict(self) -> dict[str, Any]:
        """A plain document form of the configuration; unset options are left out."""
        return {
            "server": _dump(self.server),
            "storage": _dump(self.storage),
            "telemetry": _dump(self.telemetry),
        }


@dataclass(frozen=True, order=True)
class OptionEntry:
    """An option that can be overridden through an environment variable."""

    env_name: str
    ent_path: str
    ent_type: str


_KNOWN_OPTIONS: tuple[tuple[str, str], ...] = (
    ("server.advertise_addr", "string"),
    ("server.advertise_peer_addr", "string"),
    ("server.cluster_id", "string"),
    ("server.dir", "string"),
    ("server.initial_advertise_peer_addrs", "array"),
    ("server.listen_addr", "string"),
    ("server.listen_peer_addr", "string"),
    ("server.mode", "string"),
    ("storage.data_dir", "string"),
    ("storage.disk_capacity", "integer"),
    ("storage.disk_throttle.iops_counter.mode", "string"),
    ("storage.disk_throttle.iops_counter.size", "integer"),
    ("storage.disk_throttle.read_iops", "integer"),
    ("storage.disk_throttle.read_throughput", "integer"),
    ("storage.disk_throttle.write_iops", "integer"),
    ("storage.disk_throttle.write_throughput", "integer"),
    ("storage.memory_capacity", "integer"),
    ("telemetry.logs.file.dir", "string"),
    ("telemetry.logs.file.filter", "string"),
    ("telemetry.logs.file.max_files", "integer"),
    ("telemetry.logs.opentelemetry.filter", "string"),
    ("telemetry.logs.opentelemetry.otlp_endpoint", "string"),
    ("telemetry.logs.stderr.filter", "string"),
    ("telemetry.metrics.opentelemetry.otlp_endpoint", "string"),
    ("telemetry.metrics.opentelemetry.push_interval", "string"),
    ("telemetry.traces.capture_log_filter", "string"),
    ("telemetry.traces.opentelemetry.otlp_endpoint", "string"),
)

_OPTION_ENTRIES: tuple[OptionEntry, ...] = tuple(
    OptionEntry(
        env_name="PERCAS_CONFIG_" + path.upper().replace(".", "_"),
        ent_path=path,
        ent_type=kind,
    )
    for path, kind in _KNOWN_OPTIONS
)


def known_option_entries() -> tuple[OptionEntry, ...]:
    """Every option that an environment variable can set, ordered by path."""
    return _OPTION_ENTRIES


class _Fields:
    """Reads typed values out of one table of a configuration document."""

    def __init__(self, data: Any, where: str, allowed: tuple[str, ...]) -> None:
        label = where or "config"
        if not isinstance(data, Mapping):
            raise ConfigError(f"{label}: expected a table, got {type(data).__name__}")
        for key in data:
            if key not in allowed:
                expected = ", ".join(f"`{name}`" for name in allowed)
                raise ConfigError(f"{label}: unknown field `{key}`, expected one of {expected}")
        self._data = data
        self._where = where

    def name(self, key: str) -> str:
        return f"{self._where}.{key}" if self._where else key

    def _lookup(self, key: str, default: Any) -> tuple[bool, Any]:
        value = self._data.get(key)
        if value is None:
            if default is _REQUIRED:
                raise ConfigError(f"{self.name(key)}: missing field")
            return True, default
        return False, value

    def string(self, key: str, default: Any = _REQUIRED) -> Any:
        is_default, value = self._lookup(key, default)
        if not is_default and not isinstance(value, str):
            raise ConfigError(f"{self.name(key)}: expected a string, got {value!r}")
        return value

    def path(self, key: str, default: Any = _REQUIRED) -> Any:
        is_default, value = self._lookup(key, default)
        if is_default:
            return value
        if not isinstance(value, (str, os.PathLike)):
            raise ConfigError(f"{self.name(key)}: expected a path string, got {value!r}")
        return Path(value)

    def uint(self, key: str, default: Any = _REQUIRED) -> Any:
        is_default, value = self._lookup(key, default)
        if is_default:
            return value
        if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= _U64_MAX:
            raise ConfigError(f"{self.name(key)}: expected a non-negative integer, got {value!r}")
        return value

    def string_list(self, key: str) -> list[str] | None:
        _, value = self._lookup(key, None)
        if value is None:
            return None
        if not isinstance(value, (list, tuple)) or not all(isinstance(v, str) for v in value):
            raise ConfigError(f"{self.name(key)}: expected an array of strings, got {value!r}")
        return list(value)

    def duration(self, key: str, default: timedelta) -> timedelta:
        is_default, value = self._lookup(key, default)
        if is_default or isinstance(value, timedelta):
            return value
        try:
            return parse_duration(value)
        except ValueError as exc:
            raise ConfigError(f"{self.name(key)}: {exc}") from exc

    def table(self, key: str, default: Any = _REQUIRED) -> Any:
        _, value = self._lookup(key, default)
        return value


_STANDALONE_FIELDS = ("mode", "dir", "listen_addr", "advertise_addr")
_CLUSTER_FIELDS = (
    *_STANDALONE_FIELDS,
    "listen_peer_addr",
    "advertise_peer_addr",
    "initial_advertise_peer_addrs",
    "cluster_id",
)


def parse_server_config(data: Mapping[str, Any]) -> ServerConfig:
    """Parse the `server` table, whose `mode` picks standalone or cluster settings."""
    if not isinstance(data, Mapping):
        raise ConfigError(f"server: expected a table, got {type(data).__name__}")
    name = data.get("mode")
    if name is None:
        raise ConfigError("server.mode: missing field")
    try:
        mode = ServerMode(name)
    except ValueError:
        raise ConfigError(
            f"server.mode: unknown variant `{name}`, expected `standalone` or `cluster`"
        ) from None

    if mode is ServerMode.STANDALONE:
        reader = _Fields(data, "server", _STANDALONE_FIELDS)
        return StandaloneServerConfig(
            dir=reader.path("dir", default_dir()),
            listen_addr=reader.string("listen_addr", DEFAULT_LISTEN_ADDR),
            advertise_addr=reader.string("advertise_addr", None),
        )

    reader = _Fields(data, "server", _CLUSTER_FIELDS)
    return ClusterServerConfig(
        dir=reader.path("dir", default_dir()),
        listen_addr=reader.string("listen_addr", DEFAULT_LISTEN_ADDR),
        advertise_addr=reader.string("advertise_addr", None),
        listen_peer_addr=reader.string("listen_peer_addr", DEFAULT_LISTEN_PEER_ADDR),
        advertise_peer_addr=reader.string("advertise_peer_addr", None),
        initial_advertise_peer_addrs=reader.string_list("initial_advertise_peer_addrs"),
        cluster_id=reader.string("cluster_id", DEFAULT_CLUSTER_ID),
    )


def _parse_storage(data: Any) -> StorageConfig:
    reader = _Fields(
        data, "storage", ("data_dir", "disk_capacity", "disk_throttle", "memory_capacity")
    )
    throttle_data = reader.table("disk_throttle", None)
    throttle = None
    if throttle_data is not None:
        try:
            throttle = DiskThrottle.from_dict(throttle_data)
        except ValueError as exc:
            raise ConfigError(f"storage.disk_throttle: {exc}") from exc
    return StorageConfig(
        data_dir=reader.path("data_dir", default_data_dir()),
        disk_capacity=reader.uint("disk_capacity"),
        disk_throttle=throttle,
        memory_capacity=reader.uint("memory_capacity", None),
    )


def _parse_logs(data: Any) -> LogsConfig:
    reader = _Fields(data, "telemetry.logs", ("file", "stderr", "opentelemetry"))

    file_config = None
    if (file_data := reader.table("file", None)) is not None:
        sub = _Fields(file_data, "telemetry.logs.file", ("filter", "dir", "max_files"))
        file_config = FileAppenderConfig(
            filter=sub.string("filter"), dir=sub.string("dir"), max_files=sub.uint("max_files")
        )

    stderr_config = None
    if (stderr_data := reader.table("stderr", None)) is not None:
        sub = _Fields(stderr_data, "telemetry.logs.stderr", ("filter",))
        stderr_config = StderrAppenderConfig(filter=sub.string("filter"))

    otel_config = None
    if (otel_data := reader.table("opentelemetry", None)) is not None:
        sub = _Fields(otel_data, "telemetry.logs.opentelemetry", ("filter", "otlp_endpoint"))
        otel_config = OpentelemetryAppenderConfig(
            filter=sub.string("filter"), otlp_endpoint=sub.string("otlp_endpoint")
        )

    return LogsConfig(file=file_config, stderr=stderr_config, opentelemetry=otel_config)


def _parse_traces(data: Any) -> TracesConfig:
    reader = _Fields(data, "telemetry.traces", ("capture_log_filter", "opentelemetry"))
    otel_config = None
    if (otel_data := reader.table("opentelemetry", None)) is not None:
        sub = _Fields(otel_data, "telemetry.traces.opentelemetry", ("otlp_endpoint",))
        otel_config = OpentelemetryTracesConfig(otlp_endpoint=sub.string("otlp_endpoint"))
    return TracesConfig(
        capture_log_filter=reader.string("capture_log_filter"), opentelemetry=otel_config
    )


def _parse_metrics(data: Any) -> MetricsConfig:
    reader = _Fields(data, "telemetry.metrics", ("opentelemetry",))
    otel_config = None
    if (otel_data := reader.table("opentelemetry", None)) is not None:
        sub = _Fields(
            otel_data, "telemetry.metrics.opentelemetry", ("otlp_endpoint", "push_interval")
        )
        otel_config = OpentelemetryMetricsConfig(
            otlp_endpoint=sub.string("otlp_endpoint"),
            push_interval=sub.duration("push_interval", DEFAULT_METRICS_PUSH_INTERVAL),
        )
    return MetricsConfig(opentelemetry=otel_config)


def _parse_telemetry(data: Any) -> TelemetryConfig:
    reader = _Fields(data, "telemetry", ("logs", "traces", "metrics"))
    logs_data = reader.table("logs", None)
    traces_data = reader.table("traces", None)
    metrics_data = reader.table("metrics", None)
    return TelemetryConfig(
        logs=LogsConfig.disabled() if logs_data is None else _parse_logs(logs_data),
        traces=None if traces_data is None else _parse_traces(traces_data),
        metrics=None if metrics_data is None else _parse_metrics(metrics_data),
    )


def _dump_value(value: Any) -> Any:
    if isinstance(value, (DiskThrottle, IopsCounter)):
        return value.to_dict()
    if is_dataclass(value):
        return _dump(value)
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, timedelta):
        return format_duration(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (list, tuple)):
        return [_dump_value(item) for item in value]
    return value


def _dump(obj: Any) -> dict[str, Any]:
    result: dict[str, Any] = {}
    if isinstance(obj, (StandaloneServerConfig, ClusterServerConfig)):
        result["mode"] = obj.mode.value
    for item in fields(obj):
        value = getattr(obj, item.name)
        if value is not None:
            result[item.name] = _dump_value(value)
    return result