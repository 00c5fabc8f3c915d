"""Scraping the kubelet stats summary and translating it into time series."""

from __future__ import annotations

import logging
import ssl
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import httpx

from sdexport.kubelet_stats import (
    ZERO_TIME,
    ContainerStats,
    NodeStats,
    PodStats,
    Summary,
    parse_summary,
)
from sdexport.monitor import SourceConfig
from sdexport.timeseries import (
    CONTAINER_CPU_CORE_USAGE_TIME_MD,
    CONTAINER_EPHEMERAL_STORAGE_USED_MD,
    CONTAINER_MEM_TOTAL_MD,
    CONTAINER_MEM_USED_MD,
    CONTAINER_PAGE_FAULTS_MD,
    CONTAINER_UPTIME_MD,
    DAEMON_CPU_CORE_USAGE_TIME_MD,
    DAEMON_MEM_USED_MD,
    LEGACY_DISK_TOTAL_MD,
    LEGACY_DISK_USED_MD,
    LEGACY_MEM_TOTAL_MD,
    LEGACY_MEM_USED_MD,
    LEGACY_PAGE_FAULTS_MD,
    LEGACY_UPTIME_MD,
    LEGACY_USAGE_TIME_MD,
    NODE_CPU_CORE_USAGE_TIME_MD,
    NODE_EPHEMERAL_STORAGE_TOTAL_MD,
    NODE_EPHEMERAL_STORAGE_USED_MD,
    NODE_MEM_TOTAL_MD,
    NODE_MEM_USED_MD,
    MetricMetadata,
    TimeSeriesFactory,
    TranslationError,
    container_translate_fs,
    format_rfc3339,
    translate_cpu,
    translate_fs,
    translate_memory,
)

__all__ = [
    "KubeletTranslator",
    "KubeletClient",
    "KubeletSource",
    "new_kubelet_source",
]

log = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class KubeletTranslator:
    """Translates kubelet summaries into monitoring API time series."""

    def __init__(
        self,
        zone: str,
        project: str,
        cluster: str,
        cluster_location: str,
        instance: str,
        instance_id: str,
        schema_prefix: str,
        monitored_resource_labels: dict[str, str] | None,
        resolution: timedelta,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.zone = zone
        self.project = project
        self.cluster = cluster
        self.cluster_location = cluster_location
        self.instance = instance
        self.instance_id = instance_id
        self.schema_prefix = schema_prefix
        self.monitored_resource_labels = dict(monitored_resource_labels or {})
        self.resolution = resolution
        self.use_old_resource_model = schema_prefix == ""
        self._clock = clock

    def translate(self, summary: Summary) -> dict[str, Any]:
        """Return a creation request with the node's and all pods' series."""
        node_series = self.translate_node(summary.node)
        pod_series = self.translate_containers(summary.pods)
        return {"timeSeries": [*node_series, *pod_series]}

    def _factory(self, labels: dict[str, str]) -> TimeSeriesFactory:
        return TimeSeriesFactory(
            self.get_monitored_resource(labels), self.resolution, self._clock
        )

    def translate_node(self, node: NodeStats) -> list[dict[str, Any]]:
        """Time series of the node itself and of its system containers."""
        factory = self._factory({"pod": "machine"})
        start = node.start_time
        series = [
            factory.new_time_series({}, self._uptime_md(), self._uptime_point(start))
        ]

        series += translate_memory(
            node.memory, factory, start, *self._memory_md(factory.resource_type), ""
        )
        series += translate_fs(
            "/", node.fs, factory, start, *self._fs_md(factory.resource_type)
        )
        series += translate_cpu(
            node.cpu, factory, start, self._cpu_md(factory.resource_type), ""
        )

        # System containers have no duplicates, no pod or namespace, no fs stats.
        for container in node.system_containers:
            if self.use_old_resource_model:
                try:
                    series += self.translate_container("", "", container, False)
                except TranslationError as err:
                    log.warning(
                        "Failed to translate system container stats for %r: %s",
                        container.name, err,
                    )
                continue
            try:
                series += translate_cpu(
                    container.cpu, factory, start,
                    DAEMON_CPU_CORE_USAGE_TIME_MD, container.name,
                )
            except TranslationError as err:
                log.warning(
                    "Failed to translate system container CPU stats for %r: %s",
                    container.name, err,
                )
            try:
                series += translate_memory(
                    container.memory, factory, start,
                    DAEMON_MEM_USED_MD, None, None, container.name,
                )
            except TranslationError as err:
                log.warning(
                    "Failed to translate system container memory stats for %r: %s",
                    container.name, err,
                )
        return series

    def translate_containers(self, pods: list[PodStats]) -> list[dict[str, Any]]:
        """Time series of all containers, keeping the latest of duplicates."""
        series: list[dict[str, Any]] = []
        for pod in pods:
            seen: dict[str, datetime] = {}
            per_container: dict[str, list[dict[str, Any]]] = {}
            namespace = pod.pod_ref.namespace
            pod_id = pod.pod_ref.name
            for container in pod.containers:
                name = container.name
                if container.start_time <= seen.get(name, ZERO_TIME):
                    continue
                seen[name] = container.start_time
                try:
                    per_container[name] = self.translate_container(
                        pod_id, namespace, container, True
                    )
                except TranslationError as err:
                    log.warning(
                        "Failed to translate container stats for container %r "
                        "in pod %r(%r): %s", name, pod_id, namespace, err,
                    )
            for container_series in per_container.values():
                series += container_series
        return series

    def translate_container(
        self,
        pod_id: str,
        namespace: str,
        container: ContainerStats,
        require_fs_stats: bool,
    ) -> list[dict[str, Any]]:
        """Time series of one container; raises TranslationError on missing data."""
        labels = {"namespace": namespace, "pod": pod_id, "container": container.name}
        factory = self._factory(labels)
        start = container.start_time
        series = [
            factory.new_time_series({}, self._uptime_md(), self._uptime_point(start))
        ]

        try:
            series += translate_memory(
                container.memory, factory, start,
                *self._memory_md(factory.resource_type), "",
            )
        except TranslationError as err:
            raise TranslationError(f"failed to translate memory stats: {err}") from err

        disk_used_md, disk_total_md = self._fs_md(factory.resource_type)
        try:
            if self.use_old_resource_model:
                series += translate_fs(
                    "/", container.rootfs, factory, start, disk_used_md, disk_total_md
                )
            else:
                series += container_translate_fs(
                    "/", container.rootfs, container.logs, factory, start
                )
        except TranslationError as err:
            if require_fs_stats:
                raise TranslationError(f"failed to translate rootfs stats: {err}") from err

        if self.use_old_resource_model:
            try:
                series += translate_fs(
                    "logs", container.logs, factory, start, disk_used_md, disk_total_md
                )
            except TranslationError as err:
                if require_fs_stats:
                    raise TranslationError(
                        f"failed to translate log stats: {err}"
                    ) from err

        try:
            series += translate_cpu(
                container.cpu, factory, start, self._cpu_md(factory.resource_type), ""
            )
        except TranslationError as err:
            raise TranslationError(f"failed to translate cpu stats: {err}") from err
        return series

    def _uptime_md(self) -> MetricMetadata:
        return LEGACY_UPTIME_MD if self.use_old_resource_model else CONTAINER_UPTIME_MD

    def _uptime_point(self, start_time: datetime) -> dict[str, Any]:
        now = self._clock()
        interval_start = start_time if self.use_old_resource_model else now
        return {
            "interval": {
                "endTime": format_rfc3339(now),
                "startTime": format_rfc3339(interval_start),
            },
            "value": {"doubleValue": (now - start_time).total_seconds()},
        }

    def _cpu_md(self, resource_type: str) -> MetricMetadata:
        if resource_type == self.schema_prefix + "node":
            return NODE_CPU_CORE_USAGE_TIME_MD
        if resource_type == self.schema_prefix + "container":
            return CONTAINER_CPU_CORE_USAGE_TIME_MD
        return LEGACY_USAGE_TIME_MD

    def _fs_md(
        self, resource_type: str
    ) -> tuple[MetricMetadata, MetricMetadata | None]:
        if resource_type == self.schema_prefix + "node":
            return NODE_EPHEMERAL_STORAGE_USED_MD, NODE_EPHEMERAL_STORAGE_TOTAL_MD
        if resource_type == self.schema_prefix + "container":
            return CONTAINER_EPHEMERAL_STORAGE_USED_MD, None
        return LEGACY_DISK_USED_MD, LEGACY_DISK_TOTAL_MD

    def _memory_md(
        self, resource_type: str
    ) -> tuple[MetricMetadata, MetricMetadata, MetricMetadata | None]:
        if resource_type == self.schema_prefix + "node":
            return NODE_MEM_USED_MD, NODE_MEM_TOTAL_MD, None
        if resource_type == self.schema_prefix + "container":
            return CONTAINER_MEM_USED_MD, CONTAINER_MEM_TOTAL_MD, CONTAINER_PAGE_FAULTS_MD
        return LEGACY_MEM_USED_MD, LEGACY_MEM_TOTAL_MD, LEGACY_PAGE_FAULTS_MD

    def get_monitored_resource(self, labels: dict[str, str]) -> dict[str, Any]:
        """The monitored resource for a node (no ``container`` label) or a container."""
        resource_labels = {"project_id": self.project, "cluster_name": self.cluster}

        if self.use_old_resource_model:
            resource_labels.update(
                zone=self.zone,
                instance_id=self.instance,
                namespace_id=labels.get("namespace", ""),
                pod_id=labels.get("pod", ""),
                container_name=labels.get("container", ""),
            )
            return {"type": "gke_container", "labels": resource_labels}

        resource_labels["location"] = self.cluster_location
        if self.schema_prefix != "k8s_":
            resource_labels["instance_id"] = self.instance_id
        resource_labels.update(self.monitored_resource_labels)

        if "container" not in labels:
            if self.instance:
                resource_labels["node_name"] = self.instance
            return {"type": self.schema_prefix + "node", "labels": resource_labels}

        resource_labels["namespace_name"] = labels.get("namespace", "")
        resource_labels["pod_name"] = labels.get("pod", "")
        resource_labels["container_name"] = labels["container"]
        return {"type": self.schema_prefix + "container", "labels": resource_labels}


class KubeletClient:
    """Fetches the stats summary from a kubelet."""

    def __init__(
        self,
        host: str,
        port: int,
        client: httpx.Client | None = None,
        use_auth_port: bool = False,
    ) -> None:
        protocol = "https" if use_auth_port else "http"
        self.summary_url = str(httpx.URL(f"{protocol}://{host}:{port}/stats/summary"))
        self._client = client if client is not None else httpx.Client()

    def get_summary(self) -> Summary:
        """Return the kubelet's current stats summary."""
        response = self._client.get(self.summary_url)
        body = response.content
        if response.status_code == 404:
            raise RuntimeError(f'"{self.summary_url}" not found')
        if response.status_code != 200:
            raise RuntimeError(
                f'request failed - "{response.status_code} {response.reason_phrase}", '
                f"response: {response.text!r}"
            )
        try:
            return parse_summary(body)
        except ValueError as err:
            raise ValueError(
                f"failed to parse output. Response: {body!r}. Error: {err}"
            ) from err


class KubeletSource:
    """Scrapes a kubelet and translates its summary."""

    def __init__(
        self, translator: KubeletTranslator, client: KubeletClient, project_path: str
    ) -> None:
        self._translator = translator
        self._client = client
        self._project_path = project_path

    def get_time_series_req(self) -> dict[str, Any]:
        """Scrape the kubelet and return a time series creation request."""
        try:
            summary = self._client.get_summary()
        except (httpx.HTTPError, RuntimeError, ValueError) as err:
            raise RuntimeError(f"Failed to get summary from kubelet: {err}") from err
        try:
            return self._translator.translate(summary)
        except TranslationError as err:
            raise RuntimeError(
                f"Failed to translate data from summary {summary}: {err}"
            ) from err

    def name(self) -> str:
        return "kubelet"

    def project_path(self) -> str:
        return self._project_path


def _secured_http_client(cert_location: str) -> httpx.Client:
    try:
        pem = Path(cert_location).read_text()
    except (OSError, UnicodeDecodeError) as err:
        raise ValueError(f"failed to read file with kubelet certificate: {err}") from err
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    try:
        context.load_verify_locations(cadata=pem)
    except (ssl.SSLError, ValueError) as err:
        raise ValueError("failed to parse kubelet certificate") from err
    return httpx.Client(verify=context)


def new_kubelet_source(cfg: SourceConfig) -> KubeletSource:
    """Build a :class:`KubeletSource` from a source configuration."""
    translator = KubeletTranslator(
        cfg.zone, cfg.project, cfg.cluster, cfg.cluster_location, cfg.instance,
        cfg.instance_id, cfg.schema_prefix, cfg.monitored_resource_labels,
        cfg.resolution,
    )
    use_auth_port = False
    if cfg.certificate_location:
        try:
            http_client = _secured_http_client(cfg.certificate_location)
        except ValueError as err:
            raise ValueError(f"failed to create secure http client: {err}") from err
        use_auth_port = True
    else:
        http_client = httpx.Client()
    try:
        client = KubeletClient(cfg.host, cfg.port, http_client, use_auth_port)
    except httpx.InvalidURL as err:
        raise ValueError(
            f"Failed to create a kubelet client with config {cfg}: {err}"
        ) from err
    return KubeletSource(translator, client, f"projects/{cfg.project}")