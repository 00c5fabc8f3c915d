"""Data model of the kubelet stats summary and its JSON decoding."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

__all__ = [
    "ZERO_TIME",
    "CPUStats",
    "MemoryStats",
    "FsStats",
    "ContainerStats",
    "PodReference",
    "PodStats",
    "NodeStats",
    "Summary",
    "parse_time",
    "parse_summary",
]

# Stands in for an unset timestamp; earlier than any real sample.
ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)

_RFC3339 = re.compile(
    r"(\d{4})-(\d{2})-(\d{2})[Tt](\d{2}):(\d{2}):(\d{2})"
    r"(?:\.(\d+))?([Zz]|[+-]\d{2}:\d{2})$"
)


def parse_time(value: str | None) -> datetime:
    """Parse an RFC 3339 timestamp into an aware UTC datetime.

    ``None`` and the empty string give :data:`ZERO_TIME`.
    """
    if value is None or value == "":
        return ZERO_TIME
    if not isinstance(value, str):
        raise ValueError(f"timestamp must be a string, got {value!r}")
    match = _RFC3339.match(value)
    if not match:
        raise ValueError(f"invalid RFC 3339 timestamp {value!r}")
    year, month, day, hour, minute, second, fraction, offset = match.groups()
    microsecond = int((fraction or "0")[:6].ljust(6, "0"))
    if offset in ("Z", "z"):
        tz = timezone.utc
    else:
        sign = -1 if offset[0] == "-" else 1
        hours, minutes = int(offset[1:3]), int(offset[4:6])
        tz = timezone(sign * timedelta(hours=hours, minutes=minutes))
    moment = datetime(
        int(year), int(month), int(day), int(hour), int(minute), int(second),
        microsecond, tzinfo=tz,
    )
    return moment.astimezone(timezone.utc)


@dataclass
class CPUStats:
    """CPU usage of a node or container."""

    time: datetime = ZERO_TIME
    usage_nano_cores: int | None = None
    usage_core_nano_seconds: int | None = None


@dataclass
class MemoryStats:
    """Memory usage of a node or container."""

    time: datetime = ZERO_TIME
    available_bytes: int | None = None
    usage_bytes: int | None = None
    working_set_bytes: int | None = None
    rss_bytes: int | None = None
    page_faults: int | None = None
    major_page_faults: int | None = None


@dataclass
class FsStats:
    """Usage of one file system."""

    available_bytes: int | None = None
    capacity_bytes: int | None = None
    used_bytes: int | None = None


@dataclass
class ContainerStats:
    """Stats of one container."""

    name: str = ""
    start_time: datetime = ZERO_TIME
    cpu: CPUStats | None = None
    memory: MemoryStats | None = None
    rootfs: FsStats | None = None
    logs: FsStats | None = None


@dataclass
class PodReference:
    """Identifies a pod."""

    name: str = ""
    namespace: str = ""
    uid: str = ""


@dataclass
class PodStats:
    """Stats of one pod and its containers."""

    pod_ref: PodReference = field(default_factory=PodReference)
    start_time: datetime = ZERO_TIME
    containers: list[ContainerStats] = field(default_factory=list)


@dataclass
class NodeStats:
    """Stats of the node itself and its system containers."""

    node_name: str = ""
    start_time: datetime = ZERO_TIME
    cpu: CPUStats | None = None
    memory: MemoryStats | None = None
    fs: FsStats | None = None
    system_containers: list[ContainerStats] = field(default_factory=list)


def _mapping(data: Any, what: str) -> dict[str, Any]:
    if not isinstance(data, dict):
        raise ValueError(f"{what} must be a JSON object, got {data!r}")
    return data


def _opt_int(data: dict[str, Any], key: str) -> int | None:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{key} must be a number, got {value!r}")
    return int(value)


def _cpu(data: Any) -> CPUStats | None:
    if data is None:
        return None
    data = _mapping(data, "cpu")
    return CPUStats(
        time=parse_time(data.get("time")),
        usage_nano_cores=_opt_int(data, "usageNanoCores"),
        usage_core_nano_seconds=_opt_int(data, "usageCoreNanoSeconds"),
    )


def _memory(data: Any) -> MemoryStats | None:
    if data is None:
        return None
    data = _mapping(data, "memory")
    return MemoryStats(
        time=parse_time(data.get("time")),
        available_bytes=_opt_int(data, "availableBytes"),
        usage_bytes=_opt_int(data, "usageBytes"),
        working_set_bytes=_opt_int(data, "workingSetBytes"),
        rss_bytes=_opt_int(data, "rssBytes"),
        page_faults=_opt_int(data, "pageFaults"),
        major_page_faults=_opt_int(data, "majorPageFaults"),
    )


def _fs(data: Any) -> FsStats | None:
    if data is None:
        return None
    data = _mapping(data, "fs")
    return FsStats(
        available_bytes=_opt_int(data, "availableBytes"),
        capacity_bytes=_opt_int(data, "capacityBytes"),
        used_bytes=_opt_int(data, "usedBytes"),
    )


def _container(data: Any) -> ContainerStats:
    data = _mapping(data, "container")
    return ContainerStats(
        name=data.get("name") or "",
        start_time=parse_time(data.get("startTime")),
        cpu=_cpu(data.get("cpu")),
        memory=_memory(data.get("memory")),
        rootfs=_fs(data.get("rootfs")),
        logs=_fs(data.get("logs")),
    )


def _pod(data: Any) -> PodStats:
    data = _mapping(data, "pod")
    ref = _mapping(data.get("podRef") or {}, "podRef")
    return PodStats(
        pod_ref=PodReference(
            name=ref.get("name") or "",
            namespace=ref.get("namespace") or "",
            uid=ref.get("uid") or "",
        ),
        start_time=parse_time(data.get("startTime")),
        containers=[_container(c) for c in data.get("containers") or []],
    )


def _node(data: Any) -> NodeStats:
    data = _mapping(data, "node")
    return NodeStats(
        node_name=data.get("nodeName") or "",
        start_time=parse_time(data.get("startTime")),
        cpu=_cpu(data.get("cpu")),
        memory=_memory(data.get("memory")),
        fs=_fs(data.get("fs")),
        system_containers=[_container(c) for c in data.get("systemContainers") or []],
    )


@dataclass
class Summary:
    """The kubelet's stats summary: the node and all its pods."""

    node: NodeStats = field(default_factory=NodeStats)
    pods: list[PodStats] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Summary:
        """Build a summary from its decoded JSON form."""
        data = _mapping(data, "summary")
        return cls(
            node=_node(data.get("node") or {}),
            pods=[_pod(p) for p in data.get("pods") or []],
        )


def parse_summary(text: str | bytes) -> Summary:
    """Decode a kubelet ``/stats/summary`` JSON document."""
    return Summary.from_dict(json.loads(text))