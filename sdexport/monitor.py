"""Polling of metric sources and pushing their time series to the monitoring API."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Protocol

from sdexport import telemetry

__all__ = [
    "MAX_TIME_SERIES_PER_REQUEST",
    "SourceConfig",
    "MetricsSource",
    "GcmService",
    "once",
    "sub_requests",
]

log = logging.getLogger(__name__)

MAX_TIME_SERIES_PER_REQUEST = 200


@dataclass
class SourceConfig:
    """Everything needed to configure one monitored kubernetes component."""

    zone: str = ""
    project: str = ""
    cluster: str = ""
    cluster_location: str = ""
    host: str = ""
    instance: str = ""
    instance_id: str = ""
    schema_prefix: str = ""
    certificate_location: str = ""
    monitored_resource_labels: dict[str, str] = field(default_factory=dict)
    port: int = 0
    resolution: timedelta = timedelta(0)


class MetricsSource(Protocol):
    """Provides kubernetes metrics as a time series creation request."""

    def get_time_series_req(self) -> dict[str, Any]:
        """Scrape the component and return ``{"timeSeries": [...]}``."""

    def name(self) -> str:
        """Name of the monitored component."""

    def project_path(self) -> str:
        """Project path in the form ``projects/<id>``."""


class GcmService(Protocol):
    """Writes time series to the monitoring API; raises on failure."""

    def create_time_series(self, project_path: str, request: dict[str, Any]) -> Any:
        """Send one creation request for the given project."""


def sub_requests(req: dict[str, Any]) -> list[dict[str, Any]]:
    """Split a request into requests of at most 200 time series each."""
    series = req.get("timeSeries") or []
    if len(series) <= MAX_TIME_SERIES_PER_REQUEST:
        return [req]
    chunks = [
        {"timeSeries": series[start : start + MAX_TIME_SERIES_PER_REQUEST]}
        for start in range(0, len(series), MAX_TIME_SERIES_PER_REQUEST)
    ]
    log.debug("Splitting CreateTimeSeriesRequest into %d requests", len(chunks))
    return chunks


def once(src: MetricsSource, gcm: GcmService) -> None:
    """Scrape ``src`` once and push the result through ``gcm``."""
    scrape_started = time.monotonic()
    try:
        req = src.get_time_series_req()
    except Exception as err:
        telemetry.observe_failed_scrape(src.name())
        log.warning("Failed to create time series request: %s", err)
        return
    telemetry.observe_successful_scrape(src.name())

    for sub_req in sub_requests(req):
        batch_size = len(sub_req.get("timeSeries") or [])
        try:
            gcm.create_time_series(src.project_path(), sub_req)
        except Exception as err:
            log.warning("Failed to write time series data, err: %s", err)
            telemetry.observe_failed_request(batch_size)
            try:
                payload = json.dumps(sub_req)
            except (TypeError, ValueError):
                log.warning("Failed to marshal time series as JSON")
                return
            log.warning("JSON GCM: %s", payload)
            return
        log.debug("Successfully wrote TimeSeries data for %s to GCM v3 API.", src.name())
        telemetry.observe_successful_request(batch_size)
        telemetry.observe_ingestion_latency(batch_size, time.monotonic() - scrape_started)