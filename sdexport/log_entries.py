"""Log entries built from kubernetes events and from plain messages."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sdexport.event_handler import Event
from sdexport.resources import MonitoredResource, MonitoredResourceFactory

__all__ = [
    "FIELD_BLACKLIST",
    "LogEntry",
    "LogEntryFactory",
    "format_rfc3339_nano",
    "serialize_event",
]

log = logging.getLogger(__name__)

# Fields left out of the payload: events are already demultiplexed.
FIELD_BLACKLIST = ("count", "firstTimestamp")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_rfc3339_nano(t: datetime) -> str:
    """RFC 3339 UTC timestamp with the fraction trimmed of trailing zeros."""
    if t.tzinfo is None:
        t = t.replace(tzinfo=timezone.utc)
    t = t.astimezone(timezone.utc)
    fraction = f"{t.microsecond:06d}".rstrip("0")
    return (
        f"{t.year:04d}-{t.month:02d}-{t.day:02d}"
        f"T{t.hour:02d}:{t.minute:02d}:{t.second:02d}"
        + (f".{fraction}" if fraction else "")
        + "Z"
    )


@dataclass
class LogEntry:
    """One entry of the logging API."""

    json_payload: dict[str, Any] | None = None
    text_payload: str = ""
    severity: str = ""
    timestamp: str = ""
    resource: MonitoredResource | None = None

    def to_dict(self) -> dict[str, Any]:
        """The entry in the logging API's JSON form, empty fields left out."""
        data: dict[str, Any] = {}
        if self.json_payload is not None:
            data["jsonPayload"] = self.json_payload
        if self.text_payload:
            data["textPayload"] = self.text_payload
        if self.severity:
            data["severity"] = self.severity
        if self.timestamp:
            data["timestamp"] = self.timestamp
        if self.resource is not None:
            data["resource"] = self.resource.to_dict()
        return data


def serialize_event(event: Event) -> dict[str, Any]:
    """The event's JSON form without the blacklisted fields."""
    data = json.loads(json.dumps(event.to_dict()))
    for name in FIELD_BLACKLIST:
        data.pop(name, None)
    return data


class LogEntryFactory:
    """Constructs log entries from events or messages."""

    def __init__(
        self,
        resource_factory: MonitoredResourceFactory,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.resource_factory = resource_factory
        self._clock = clock or _utc_now

    def from_event(self, event: Event) -> LogEntry:
        """An entry for ``event`` with its payload, severity and resource."""
        try:
            payload: dict[str, Any] | None = serialize_event(event)
        except (TypeError, ValueError) as err:
            log.warning("Failed to encode event %r: %s", event, err)
            payload = None

        entry = LogEntry(
            json_payload=payload,
            severity="WARNING" if event.type == "Warning" else "INFO",
            resource=self.resource_factory.resource_from_event(event),
        )
        if event.last_timestamp is not None:
            # Emitted through the core/v1 API.
            entry.timestamp = format_rfc3339_nano(event.last_timestamp)
        elif event.series is not None and event.series.last_observed_time is not None:
            # Emitted through the events/v1 API.
            entry.timestamp = format_rfc3339_nano(event.series.last_observed_time)
        return entry

    def from_message(self, msg: str) -> LogEntry:
        """A warning entry carrying ``msg``, stamped with the current time."""
        return LogEntry(
            text_payload=msg,
            severity="WARNING",
            timestamp=format_rfc3339_nano(self._clock()),
        )