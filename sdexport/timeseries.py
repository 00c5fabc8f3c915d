"""Building monitoring API time series from kubelet stats."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from sdexport.kubelet_stats import CPUStats, FsStats, MemoryStats

__all__ = [
    "TranslationError",
    "MetricMetadata",
    "TimeSeriesFactory",
    "format_rfc3339",
    "translate_cpu",
    "container_translate_fs",
    "translate_fs",
    "translate_memory",
    "DAEMON_CPU_CORE_USAGE_TIME_MD",
    "DAEMON_MEM_USED_MD",
    "CONTAINER_UPTIME_MD",
    "CONTAINER_CPU_CORE_USAGE_TIME_MD",
    "CONTAINER_MEM_TOTAL_MD",
    "CONTAINER_MEM_USED_MD",
    "CONTAINER_PAGE_FAULTS_MD",
    "CONTAINER_EPHEMERAL_STORAGE_USED_MD",
    "NODE_CPU_CORE_USAGE_TIME_MD",
    "NODE_MEM_TOTAL_MD",
    "NODE_MEM_USED_MD",
    "NODE_EPHEMERAL_STORAGE_TOTAL_MD",
    "NODE_EPHEMERAL_STORAGE_USED_MD",
    "LEGACY_USAGE_TIME_MD",
    "LEGACY_DISK_TOTAL_MD",
    "LEGACY_DISK_USED_MD",
    "LEGACY_MEM_TOTAL_MD",
    "LEGACY_MEM_USED_MD",
    "LEGACY_PAGE_FAULTS_MD",
    "LEGACY_UPTIME_MD",
]


class TranslationError(ValueError):
    """Raised when stats lack the data needed for a time series."""


@dataclass(frozen=True)
class MetricMetadata:
    """Kind, value type and name of a metric."""

    metric_kind: str
    value_type: str
    name: str


DAEMON_CPU_CORE_USAGE_TIME_MD = MetricMetadata(
    "CUMULATIVE", "DOUBLE", "kubernetes.io/node_daemon/cpu/core_usage_time")
DAEMON_MEM_USED_MD = MetricMetadata(
    "GAUGE", "INT64", "kubernetes.io/node_daemon/memory/used_bytes")

CONTAINER_UPTIME_MD = MetricMetadata("GAUGE", "DOUBLE", "kubernetes.io/container/uptime")
CONTAINER_CPU_CORE_USAGE_TIME_MD = MetricMetadata(
    "CUMULATIVE", "DOUBLE", "kubernetes.io/container/cpu/core_usage_time")
CONTAINER_MEM_TOTAL_MD = MetricMetadata(
    "GAUGE", "INT64", "kubernetes.io/container/memory/limit_bytes")
CONTAINER_MEM_USED_MD = MetricMetadata(
    "GAUGE", "INT64", "kubernetes.io/container/memory/used_bytes")
CONTAINER_PAGE_FAULTS_MD = MetricMetadata(
    "CUMULATIVE", "INT64", "kubernetes.io/container/memory/page_fault_count")
CONTAINER_EPHEMERAL_STORAGE_USED_MD = MetricMetadata(
    "GAUGE", "INT64", "kubernetes.io/container/ephemeral_storage/used_bytes")

NODE_CPU_CORE_USAGE_TIME_MD = MetricMetadata(
    "CUMULATIVE", "DOUBLE", "kubernetes.io/node/cpu/core_usage_time")
NODE_MEM_TOTAL_MD = MetricMetadata("GAUGE", "INT64", "kubernetes.io/node/memory/total_bytes")
NODE_MEM_USED_MD = MetricMetadata("GAUGE", "INT64", "kubernetes.io/node/memory/used_bytes")
NODE_EPHEMERAL_STORAGE_TOTAL_MD = MetricMetadata(
    "GAUGE", "INT64", "kubernetes.io/node/ephemeral_storage/total_bytes")
NODE_EPHEMERAL_STORAGE_USED_MD = MetricMetadata(
    "GAUGE", "INT64", "kubernetes.io/node/ephemeral_storage/used_bytes")

LEGACY_USAGE_TIME_MD = MetricMetadata(
    "CUMULATIVE", "DOUBLE", "container.googleapis.com/container/cpu/usage_time")
LEGACY_DISK_TOTAL_MD = MetricMetadata(
    "GAUGE", "INT64", "container.googleapis.com/container/disk/bytes_total")
LEGACY_DISK_USED_MD = MetricMetadata(
    "GAUGE", "INT64", "container.googleapis.com/container/disk/bytes_used")
LEGACY_MEM_TOTAL_MD = MetricMetadata(
    "GAUGE", "INT64", "container.googleapis.com/container/memory/bytes_total")
LEGACY_MEM_USED_MD = MetricMetadata(
    "GAUGE", "INT64", "container.googleapis.com/container/memory/bytes_used")
LEGACY_PAGE_FAULTS_MD = MetricMetadata(
    "CUMULATIVE", "INT64", "container.googleapis.com/container/memory/page_fault_count")
LEGACY_UPTIME_MD = MetricMetadata(
    "CUMULATIVE", "DOUBLE", "container.googleapis.com/container/uptime")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_rfc3339(t: datetime) -> str:
    """Format a moment as an RFC 3339 UTC timestamp with whole seconds."""
    if t.tzinfo is None:
        t = t.replace(tzinfo=timezone.utc)
    t = t.astimezone(timezone.utc)
    return (
        f"{t.year:04d}-{t.month:02d}-{t.day:02d}"
        f"T{t.hour:02d}:{t.minute:02d}:{t.second:02d}Z"
    )


def _int64_value(value: int) -> dict[str, Any]:
    return {"int64Value": str(int(value))}


def _double_value(value: float) -> dict[str, Any]:
    return {"doubleValue": float(value)}


@dataclass
class TimeSeriesFactory:
    """Creates points and time series for one monitored resource."""

    monitored_resource: dict[str, Any]
    resolution: timedelta = timedelta(0)
    clock: Callable[[], datetime] = field(default=_utc_now)

    @property
    def resource_type(self) -> str:
        return self.monitored_resource.get("type", "")

    def new_point(
        self,
        value: dict[str, Any],
        collection_start_time: datetime,
        sample_time: datetime,
        metric_kind: str,
    ) -> dict[str, Any]:
        """A point over the given interval; gauges start at the sample time."""
        if metric_kind == "GAUGE":
            collection_start_time = sample_time
        return {
            "interval": {
                "endTime": format_rfc3339(sample_time),
                "startTime": format_rfc3339(collection_start_time),
            },
            "value": value,
        }

    def new_time_series(
        self,
        metric_labels: dict[str, str],
        metadata: MetricMetadata,
        point: dict[str, Any],
    ) -> dict[str, Any]:
        """A time series of one point for this factory's resource."""
        return {
            "metric": {"labels": dict(metric_labels), "type": metadata.name},
            "metricKind": metadata.metric_kind,
            "valueType": metadata.value_type,
            "resource": self.monitored_resource,
            "points": [point],
        }


def translate_cpu(
    cpu: CPUStats | None,
    ts_factory: TimeSeriesFactory,
    start_time: datetime,
    usage_time_md: MetricMetadata,
    component: str,
) -> list[dict[str, Any]]:
    """Time series for CPU usage; empty while the sample is not after the start."""
    if cpu is None:
        raise TranslationError("CPU information missing.")
    if cpu.usage_core_nano_seconds is None:
        raise TranslationError(f"UsageCoreNanoSeconds missing from CPUStats {cpu}")
    # Right after a container starts the kubelet may report start == sample time.
    if not cpu.time > start_time:
        return []

    point = ts_factory.new_point(
        _double_value(cpu.usage_core_nano_seconds / 1e9),
        start_time,
        cpu.time,
        usage_time_md.metric_kind,
    )
    labels = {"component": component} if component else {}
    return [ts_factory.new_time_series(labels, usage_time_md, point)]


def container_translate_fs(
    volume: str,
    rootfs: FsStats | None,
    logs: FsStats | None,
    ts_factory: TimeSeriesFactory,
    start_time: datetime,
) -> list[dict[str, Any]]:
    """Ephemeral storage used by a container: root and log file systems combined."""
    if rootfs is None and logs is None:
        combined = None
    else:
        used = 0
        for fs in (rootfs, logs):
            if fs is not None:
                if fs.used_bytes is None:
                    raise TranslationError(f"UsedBytes is missing from FsStats {fs}")
                used += fs.used_bytes
        combined = FsStats(used_bytes=used)
    return translate_fs(
        volume, combined, ts_factory, start_time, CONTAINER_EPHEMERAL_STORAGE_USED_MD, None
    )


def translate_fs(
    volume: str,
    fs: FsStats | None,
    ts_factory: TimeSeriesFactory,
    start_time: datetime,
    disk_used_md: MetricMetadata | None,
    disk_total_md: MetricMetadata | None,
) -> list[dict[str, Any]]:
    """Time series for the capacity and usage of one file system."""
    if fs is None:
        raise TranslationError("File-system information missing.")

    # The kubelet does not say when file system stats were sampled.
    now = ts_factory.clock()
    series = []

    def labels() -> dict[str, str]:
        if ts_factory.resource_type == "gke_container":
            return {"device_name": volume}
        return {}

    if disk_total_md is not None:
        if fs.capacity_bytes is None:
            raise TranslationError(f"CapacityBytes is missing from FsStats {fs}")
        point = ts_factory.new_point(
            _int64_value(fs.capacity_bytes), start_time, now, disk_total_md.metric_kind
        )
        series.append(ts_factory.new_time_series(labels(), disk_total_md, point))

    if disk_used_md is not None:
        if fs.used_bytes is None:
            raise TranslationError(f"UsedBytes is missing from FsStats {fs}")
        point = ts_factory.new_point(
            _int64_value(fs.used_bytes), start_time, now, disk_used_md.metric_kind
        )
        series.append(ts_factory.new_time_series(labels(), disk_used_md, point))
    return series


def translate_memory(
    memory: MemoryStats | None,
    ts_factory: TimeSeriesFactory,
    start_time: datetime,
    mem_used_md: MetricMetadata | None,
    mem_total_md: MetricMetadata | None,
    page_faults_md: MetricMetadata | None,
    component: str,
) -> list[dict[str, Any]]:
    """Time series for page faults, used memory and available memory."""
    if memory is None:
        raise TranslationError("Memory information missing.")
    series = []

    # Page faults are cumulative, so they need a sample later than the start.
    if page_faults_md is not None and memory.time > start_time:
        if memory.major_page_faults is None:
            raise TranslationError(f"MajorPageFaults missing in MemoryStats {memory}")
        if memory.page_faults is None:
            raise TranslationError(f"PageFaults missing in MemoryStats {memory}")
        major = ts_factory.new_point(
            _int64_value(memory.major_page_faults),
            start_time, memory.time, page_faults_md.metric_kind,
        )
        series.append(ts_factory.new_time_series({"fault_type": "major"}, page_faults_md, major))
        minor = ts_factory.new_point(
            _int64_value(memory.page_faults - memory.major_page_faults),
            start_time, memory.time, page_faults_md.metric_kind,
        )
        series.append(ts_factory.new_time_series({"fault_type": "minor"}, page_faults_md, minor))

    if mem_used_md is not None:
        if memory.working_set_bytes is None:
            raise TranslationError(
                f"WorkingSetBytes information missing in MemoryStats {memory}")
        if memory.usage_bytes is None:
            raise TranslationError(f"UsageBytes information missing in MemoryStats {memory}")
        for memory_type, amount in (
            ("non-evictable", memory.working_set_bytes),
            ("evictable", memory.usage_bytes - memory.working_set_bytes),
        ):
            point = ts_factory.new_point(
                _int64_value(amount), start_time, memory.time, mem_used_md.metric_kind
            )
            labels = {"memory_type": memory_type}
            if component:
                labels["component"] = component
            series.append(ts_factory.new_time_series(labels, mem_used_md, point))

    # Available memory may be absent; that is not an error.
    if mem_total_md is not None and memory.available_bytes is not None:
        point = ts_factory.new_point(
            _int64_value(memory.available_bytes),
            start_time, memory.time, mem_total_md.metric_kind,
        )
        series.append(ts_factory.new_time_series({}, mem_total_md, point))
    return series