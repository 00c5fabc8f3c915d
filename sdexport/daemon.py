"""Daemon that polls the kubelet and kube-controller and pushes their metrics."""

from __future__ import annotations

import argparse
import logging
import re
import sys
import threading
import time
from collections.abc import Callable, Sequence
from datetime import timedelta
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any
from urllib.parse import parse_qs

import httpx

from sdexport import monitor, telemetry
from sdexport.controller import new_controller_source
from sdexport.gce_config import MetadataError, metadata_uri, new_configs
from sdexport.kubelet import new_kubelet_source

__all__ = [
    "DEFAULT_GCM_ENDPOINT",
    "HttpGcmService",
    "parse_monitored_resource_labels",
    "main",
]

log = logging.getLogger(__name__)

SCOPE = "https://www.googleapis.com/auth/monitoring.write"
DEFAULT_GCM_ENDPOINT = "https://monitoring.googleapis.com/"

_BAD_ESCAPE = re.compile(r"%(?![0-9A-Fa-f]{2})")


class _MetadataTokenProvider:
    """Access tokens of the instance's default service account, cached until expiry."""

    def __init__(self) -> None:
        self._token = ""
        self._expires = 0.0
        self._lock = threading.Lock()

    def __call__(self) -> str:
        with self._lock:
            if self._token and time.monotonic() < self._expires:
                return self._token
            response = httpx.get(
                metadata_uri("/instance/service-accounts/default/token"),
                params={"scopes": SCOPE},
                headers={"Metadata-Flavor": "Google"},
            )
            response.raise_for_status()
            data = response.json()
            self._token = data["access_token"]
            # Refresh a little before the token actually expires.
            self._expires = time.monotonic() + max(float(data.get("expires_in", 0)) - 60, 0)
            return self._token


class HttpGcmService:
    """Writes time series to the monitoring v3 REST API."""

    def __init__(
        self,
        base_url: str = DEFAULT_GCM_ENDPOINT,
        client: httpx.Client | None = None,
        token_provider: Callable[[], str] | None = None,
    ) -> None:
        self.base_url = base_url
        self._client = client if client is not None else httpx.Client()
        self._token_provider = token_provider or _MetadataTokenProvider()

    def create_time_series(self, project_path: str, request: dict[str, Any]) -> Any:
        """POST one creation request; raises on transport or HTTP errors."""
        url = f"{self.base_url.rstrip('/')}/v3/{project_path}/timeSeries"
        response = self._client.post(
            url,
            json=request,
            headers={"Authorization": f"Bearer {self._token_provider()}"},
        )
        response.raise_for_status()
        return response.json() if response.content else {}


def parse_monitored_resource_labels(value: str) -> dict[str, str]:
    """Parse ``key=value&...`` into labels; each key must have exactly one value."""
    if ";" in value or _BAD_ESCAPE.search(value):
        raise ValueError(
            f"Error parsing 'monitored-resource-labels' field: {value!r}"
        )
    labels = {}
    for key, values in parse_qs(value, keep_blank_values=True).items():
        if len(values) != 1:
            raise ValueError(
                f"Key {key!r} in 'monitored-resource-labels' doesn't have exactly "
                f"one value (it has {values!r} now)."
            )
        labels[key] = values[0]
    return labels


def _uint(text: str) -> int:
    number = int(text)
    if number < 0:
        raise argparse.ArgumentTypeError(f"{text!r} is not a non-negative integer")
    return number


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="kubelet-to-gcm",
        description="Push kubelet and kube-controller metrics to the monitoring API.",
    )

    def add(name: str, **kwargs: Any) -> None:
        parser.add_argument(f"--{name}", f"-{name}", **kwargs)

    add("schema-prefix", default="", help="MonitoredResource type prefix; empty "
        "selects the old resource model (gke_container), k8s_ the new one.")
    add("monitored-resource-labels", default="",
        help="Manually specified MonitoredResource labels.")
    add("zone", default="use-gce", help="The zone where this kubelet lives.")
    add("project", default="use-gce", help="The project where this kubelet's host lives.")
    add("cluster", default="use-gce",
        help="The cluster where this kubelet holds membership.")
    add("cluster-location", default="use-gce",
        help="The location of the cluster where this kubelet holds membership.")
    add("kubelet-instance", default="use-gce",
        help="The instance name the kubelet resides on.")
    add("kubelet-host", default="use-gce", help="The kubelet's host name.")
    add("kubelet-port", type=_uint, default=10255, help="The kubelet's port.")
    add("controller-manager-port", type=_uint, default=10252,
        help="The kube-controller's port; 0 disables its metrics collection.")
    add("certificate-location", default="",
        help="Kubelet certificate location, needed for the secure kubelet port.")
    add("resolution", type=_uint, default=10,
        help="The time, in seconds, to poll the Kubelet.")
    add("gcm-endpoint", default="", help="The GCM endpoint to hit.")
    add("port", type=_uint, default=6062, help="Port number used to expose metrics.")
    return parser


class _MetricsHandler(BaseHTTPRequestHandler):
    def do_GET(self) -> None:  # noqa: N802
        if self.path.split("?")[0] != "/metrics":
            self.send_error(404)
            return
        body = telemetry.REGISTRY.render().encode()
        self.send_response(200)
        self.send_header("Content-Type", "text/plain; version=0.0.4")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format: str, *args: Any) -> None:
        log.debug(format, *args)


def _serve_metrics(port: int) -> None:
    try:
        with ThreadingHTTPServer(("", port), _MetricsHandler) as server:
            server.serve_forever()
    except OSError as err:
        log.error("Metrics endpoint failed: %s", err)


def main(argv: Sequence[str] | None = None) -> int:
    """Run the daemon; returns 1 when it cannot start."""
    logging.basicConfig(level=logging.INFO, stream=sys.stderr)
    args = _build_parser().parse_args(argv)
    log.info("Invoked by %s", sys.argv if argv is None else list(argv))

    resolution = timedelta(seconds=args.resolution)
    try:
        labels = parse_monitored_resource_labels(args.monitored_resource_labels)
    except ValueError as err:
        log.error("%s", err)
        return 1

    try:
        kubelet_cfg, ctrl_cfg = new_configs(
            args.zone, args.project, args.cluster, args.cluster_location,
            args.kubelet_host, args.kubelet_instance, args.schema_prefix,
            args.certificate_location, labels, args.kubelet_port,
            args.controller_manager_port, resolution,
        )
    except MetadataError as err:
        log.error("Failed to initialize configuration: %s", err)
        return 1

    try:
        kubelet_src = new_kubelet_source(kubelet_cfg)
    except ValueError as err:
        log.error("Failed to create a kubelet source with config %s: %s", kubelet_cfg, err)
        return 1
    log.info("The kubelet source is initialized with config %s.", kubelet_cfg)
    sources: list[monitor.MetricsSource] = [kubelet_src]

    if args.controller_manager_port != 0:
        try:
            ctrl_src = new_controller_source(ctrl_cfg)
        except ValueError as err:
            log.error(
                "Failed to create a kube-controller source with config %s: %s",
                ctrl_cfg, err,
            )
            return 1
        log.info("The kube-controller source is initialized with config %s.", ctrl_cfg)
        sources.append(ctrl_src)

    service = HttpGcmService(args.gcm_endpoint or DEFAULT_GCM_ENDPOINT)
    log.info("Using GCM endpoint %r", service.base_url)

    threading.Thread(target=_serve_metrics, args=(args.port,), daemon=True).start()

    while True:
        for src in sources:
            threading.Thread(target=monitor.once, args=(src, service), daemon=True).start()
        time.sleep(resolution.total_seconds())


if __name__ == "__main__":
    sys.exit(main())