"""Scraping and translation of kube-controller-manager metrics."""

from __future__ import annotations

import math
import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx

from sdexport.monitor import SourceConfig

__all__ = [
    "Metrics",
    "parse_metrics",
    "new_metrics",
    "ControllerClient",
    "ControllerTranslator",
    "ControllerSource",
    "new_controller_source",
]

_METRIC_NAME = re.compile(r"[a-zA-Z_:][a-zA-Z0-9_:]*")
_LABEL_NAME = re.compile(r"[a-zA-Z_][a-zA-Z0-9_]*")
_ESCAPES = {"\\": "\\", '"': '"', "n": "\n"}
_SPECIAL_FLOATS = {"+Inf": math.inf, "Inf": math.inf, "-Inf": -math.inf, "NaN": math.nan}


@dataclass
class Metrics:
    """Values parsed from the kube-controller metrics endpoint."""

    create_time: int = 0
    node_evictions: int = 0


def _skip_spaces(line: str, pos: int) -> int:
    while pos < len(line) and line[pos] in " \t":
        pos += 1
    return pos


def _parse_quoted(line: str, pos: int) -> tuple[str, int]:
    if line[pos] != '"':
        raise ValueError(f"expected '\"' at position {pos}")
    pos += 1
    chars = []
    while line[pos] != '"':
        if line[pos] == "\\":
            escaped = line[pos + 1]
            if escaped not in _ESCAPES:
                raise ValueError(f"invalid escape sequence '\\{escaped}'")
            chars.append(_ESCAPES[escaped])
            pos += 2
        else:
            chars.append(line[pos])
            pos += 1
    return "".join(chars), pos + 1


def _parse_labels(line: str, pos: int) -> tuple[dict[str, str], int]:
    labels: dict[str, str] = {}
    pos += 1
    while True:
        pos = _skip_spaces(line, pos)
        if line[pos] == "}":
            return labels, pos + 1
        match = _LABEL_NAME.match(line, pos)
        if not match:
            raise ValueError(f"invalid label name at position {pos}")
        pos = _skip_spaces(line, match.end())
        if line[pos] != "=":
            raise ValueError(f"expected '=' after label name {match.group()}")
        pos = _skip_spaces(line, pos + 1)
        value, pos = _parse_quoted(line, pos)
        labels[match.group()] = value
        pos = _skip_spaces(line, pos)
        if line[pos] == ",":
            pos += 1
        elif line[pos] != "}":
            raise ValueError(f"expected ',' or '}}' at position {pos}")


def _parse_float(token: str) -> float:
    if token in _SPECIAL_FLOATS:
        return _SPECIAL_FLOATS[token]
    if "_" in token or token.lower().lstrip("+-") in ("inf", "infinity", "nan"):
        raise ValueError(f"invalid sample value {token!r}")
    return float(token)


def _parse_sample(line: str) -> tuple[str, dict[str, str], float]:
    match = _METRIC_NAME.match(line)
    if not match:
        raise ValueError(f"invalid metric name in line {line!r}")
    pos = match.end()
    labels: dict[str, str] = {}
    try:
        if pos < len(line) and line[pos] == "{":
            labels, pos = _parse_labels(line, pos)
    except IndexError:
        raise ValueError(f"unexpected end of line {line!r}") from None
    rest = line[pos:].split()
    if not rest or len(rest) > 2 or (line[pos:pos + 1] not in (" ", "\t")):
        raise ValueError(f"malformed sample line {line!r}")
    value = _parse_float(rest[0])
    if len(rest) == 2:
        int(rest[1])
    return match.group(), labels, value


def parse_metrics(data: str) -> Metrics:
    """Parse the Prometheus text format into a :class:`Metrics`."""
    metrics = Metrics()
    for raw_line in data.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        try:
            name, _, value = _parse_sample(line)
        except ValueError as err:
            raise ValueError(f"Invalid decode: {err}") from err
        if name not in ("node_collector_evictions_number", "process_start_time_seconds"):
            continue
        if not math.isfinite(value):
            raise ValueError(f"Invalid decode: non-finite value for {name}")
        if name == "node_collector_evictions_number":
            metrics.node_evictions = int(value)
        else:
            metrics.create_time = int(value)
    return metrics


def new_metrics(body: bytes) -> Metrics:
    """Create :class:`Metrics` from a Prometheus response body."""
    try:
        return parse_metrics(body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as err:
        raise ValueError(f"Failed to create a new Metrics object: {err}") from err


class ControllerClient:
    """Fetches metrics from the kube-controller process."""

    def __init__(self, host: str, port: int, client: httpx.Client | None = None) -> None:
        url = httpx.URL(f"http://{host}:{port}/metrics")
        self.metrics_url = str(url)
        self._client = client if client is not None else httpx.Client()

    def get_metrics(self) -> Metrics:
        """Return the latest metrics parsed from the controller endpoint."""
        response = self._client.get(self.metrics_url)
        if response.status_code == 404:
            raise RuntimeError(f'"{self.metrics_url}" not found')
        if response.status_code != 200:
            raise RuntimeError(
                f'request failed - "{response.status_code} {response.reason_phrase}", '
                f"response: {response.text!r}"
            )
        return new_metrics(response.content)


def _rfc3339(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ControllerTranslator:
    """Turns controller metrics into monitoring API time series."""

    def __init__(
        self,
        zone: str,
        project: str,
        cluster: str,
        instance_id: str,
        resolution: timedelta,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.zone = zone
        self.project = project
        self.cluster = cluster
        self.instance_id = instance_id
        self.resolution = resolution
        self._clock = clock

    def translate(self, metrics: Metrics) -> dict[str, Any]:
        """Return a creation request holding the node eviction series."""
        return {"timeSeries": [self._translate_eviction(metrics)]}

    def _translate_eviction(self, metrics: Metrics) -> dict[str, Any]:
        resource_labels = {
            "project_id": self.project,
            "cluster_name": self.cluster,
            "zone": self.zone,
            "instance_id": self.instance_id,
            "namespace_id": "",
            "pod_id": "machine",
            "container_name": "",
        }
        created = datetime.fromtimestamp(metrics.create_time, timezone.utc)
        point = {
            "interval": {
                "startTime": _rfc3339(created),
                "endTime": _rfc3339(self._clock()),
            },
            "value": {"int64Value": str(metrics.node_evictions)},
        }
        return {
            "metric": {
                "labels": {},
                "type": "container.googleapis.com/master/node_controller/node_eviction_count",
            },
            "metricKind": "CUMULATIVE",
            "valueType": "INT64",
            "resource": {"labels": resource_labels, "type": "gke_container"},
            "points": [point],
        }


class ControllerSource:
    """Scrapes the kube-controller and translates its metrics."""

    def __init__(
        self,
        translator: ControllerTranslator,
        client: ControllerClient,
        project_path: str,
    ) -> None:
        self._translator = translator
        self._client = client
        self._project_path = project_path

    def get_time_series_req(self) -> dict[str, Any]:
        """Scrape the controller and return a time series creation request."""
        try:
            metrics = self._client.get_metrics()
        except (httpx.HTTPError, RuntimeError, ValueError) as err:
            raise RuntimeError(f"Failed to get metrics from controller: {err}") from err
        return self._translator.translate(metrics)

    def name(self) -> str:
        return "kube-controller-manager"

    def project_path(self) -> str:
        return self._project_path


def new_controller_source(cfg: SourceConfig) -> ControllerSource:
    """Build a :class:`ControllerSource` from a source configuration."""
    translator = ControllerTranslator(
        cfg.zone, cfg.project, cfg.cluster, cfg.instance, cfg.resolution
    )
    try:
        client = ControllerClient(cfg.host, cfg.port, httpx.Client())
    except httpx.InvalidURL as err:
        raise ValueError(
            f"Failed to create a controller client with config {cfg}: {err}"
        ) from err
    return ControllerSource(translator, client, f"projects/{cfg.project}")