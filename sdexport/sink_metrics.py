"""Self-monitoring metrics of the Stackdriver logging sink."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any

from sdexport.kubelet_stats import parse_time
from sdexport.telemetry import REGISTRY, Counter, Histogram, exponential_buckets

__all__ = [
    "received_entry_count",
    "request_count",
    "successfully_sent_entry_count",
    "record_latency",
    "measure_latency_on_success",
]

log = logging.getLogger(__name__)

_SUBSYSTEM = "stackdriver_sink"

received_entry_count = Counter(
    "received_entry_count",
    "Number of entries received by the Stackdriver sink",
    subsystem=_SUBSYSTEM,
)
request_count = Counter(
    "request_count",
    "Number of request, issued to Stackdriver API",
    ["code"],
    subsystem=_SUBSYSTEM,
)
successfully_sent_entry_count = Counter(
    "successfully_sent_entry_count",
    "Number of entries successfully ingested by Stackdriver",
    subsystem=_SUBSYSTEM,
)
# The highest bucket starts at 2 s * 1.5^19, about 4433.68 s.
record_latency = Histogram(
    "records_latency_seconds",
    "Log entry latency between log timestamp and delivery to StackDriver.",
    exponential_buckets(2, 1.5, 20),
    subsystem=_SUBSYSTEM,
)

REGISTRY.register(
    received_entry_count,
    successfully_sent_entry_count,
    request_count,
    record_latency,
)


def measure_latency_on_success(entries: Iterable[Any]) -> None:
    """Record the delay between each entry's timestamp and now."""
    samples = []
    for entry in entries:
        timestamp = getattr(entry, "timestamp", "")
        # Entries without a timestamp are not measured.
        if not timestamp:
            continue
        try:
            samples.append(parse_time(timestamp))
        except ValueError:
            log.warning("Failed to parse timestamp: %s", timestamp)
    now = datetime.now(timezone.utc)
    for sample in samples:
        record_latency.observe((now - sample).total_seconds())