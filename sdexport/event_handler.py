"""Kubernetes event objects and the adapter that feeds watch signals to handlers."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

from sdexport.timeseries import format_rfc3339

__all__ = [
    "ObjectReference",
    "EventSeries",
    "Event",
    "EventList",
    "DeletedFinalStateUnknown",
    "EventHandler",
    "EventHandlerWrapper",
]

log = logging.getLogger(__name__)


def _format_time(t: datetime | None) -> str | None:
    return None if t is None else format_rfc3339(t)


def _format_micro_time(t: datetime | None) -> str | None:
    if t is None:
        return None
    if t.tzinfo is None:
        t = t.replace(tzinfo=timezone.utc)
    t = t.astimezone(timezone.utc)
    return format_rfc3339(t)[:-1] + f".{t.microsecond:06d}Z"


def _omit_empty(data: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in data.items() if value not in ("", 0, None)}


@dataclass
class ObjectReference:
    """The object an event is about."""

    kind: str = ""
    namespace: str = ""
    name: str = ""
    uid: str = ""
    api_version: str = ""
    resource_version: str = ""
    field_path: str = ""

    def to_dict(self) -> dict[str, Any]:
        return _omit_empty({
            "kind": self.kind,
            "namespace": self.namespace,
            "name": self.name,
            "uid": self.uid,
            "apiVersion": self.api_version,
            "resourceVersion": self.resource_version,
            "fieldPath": self.field_path,
        })


@dataclass
class EventSeries:
    """Repetition data of an event emitted through the events/v1 API."""

    count: int = 0
    last_observed_time: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.count:
            data["count"] = self.count
        data["lastObservedTime"] = _format_micro_time(self.last_observed_time)
        return data


@dataclass
class Event:
    """A core/v1 kubernetes event."""

    name: str = ""
    namespace: str = ""
    uid: str = ""
    resource_version: str = ""
    involved_object: ObjectReference = field(default_factory=ObjectReference)
    reason: str = ""
    message: str = ""
    source_component: str = ""
    source_host: str = ""
    first_timestamp: datetime | None = None
    last_timestamp: datetime | None = None
    count: int = 0
    type: str = ""
    event_time: datetime | None = None
    series: EventSeries | None = None
    action: str = ""
    reporting_component: str = ""
    reporting_instance: str = ""

    def to_dict(self) -> dict[str, Any]:
        """The event in the v1 JSON form served by the API server."""
        metadata = _omit_empty({
            "name": self.name,
            "namespace": self.namespace,
            "uid": self.uid,
            "resourceVersion": self.resource_version,
        })
        metadata["creationTimestamp"] = None
        data: dict[str, Any] = {
            "kind": "Event",
            "apiVersion": "v1",
            "metadata": metadata,
            "involvedObject": self.involved_object.to_dict(),
        }
        data.update(_omit_empty({"reason": self.reason, "message": self.message}))
        data["source"] = _omit_empty(
            {"component": self.source_component, "host": self.source_host}
        )
        data["firstTimestamp"] = _format_time(self.first_timestamp)
        data["lastTimestamp"] = _format_time(self.last_timestamp)
        data.update(_omit_empty({"count": self.count, "type": self.type}))
        data["eventTime"] = _format_micro_time(self.event_time)
        if self.series is not None:
            data["series"] = self.series.to_dict()
        data.update(_omit_empty({"action": self.action}))
        data["reportingComponent"] = self.reporting_component
        data["reportingInstance"] = self.reporting_instance
        return data


@dataclass
class EventList:
    """A page of events returned by a list request."""

    items: list[Event] = field(default_factory=list)
    resource_version: str = ""


@dataclass
class DeletedFinalStateUnknown:
    """Tombstone left when a deletion was missed; ``obj`` may be stale."""

    key: str
    obj: Any


class EventHandler(Protocol):
    """Reacts to events observed by a watcher of the events resource."""

    def on_add(self, event: Event) -> None:
        """Called for an event added while watching."""

    def on_update(self, old_event: Event | None, new_event: Event) -> None:
        """Called for an updated event; the old version may be unknown."""

    def on_delete(self, event: Event) -> None:
        """Called for a deleted event."""


class EventHandlerWrapper:
    """Accepts arbitrary watch objects and passes only events to the handler."""

    def __init__(self, handler: EventHandler) -> None:
        self.handler = handler

    @staticmethod
    def _convert(obj: Any) -> Event | None:
        if isinstance(obj, Event):
            return obj
        log.debug("Event watch handler received not an event, but %r", obj)
        return None

    def on_add(self, obj: Any) -> None:
        event = self._convert(obj)
        if event is not None:
            self.handler.on_add(event)

    def on_update(self, old_obj: Any, new_obj: Any) -> None:
        old_event = self._convert(old_obj) if old_obj is not None else None
        new_event = self._convert(new_obj)
        if new_event is not None and (old_obj is None or old_event is not None):
            self.handler.on_update(old_event, new_event)

    def on_delete(self, obj: Any) -> None:
        if isinstance(obj, Event):
            event = obj
        elif isinstance(obj, DeletedFinalStateUnknown):
            if not isinstance(obj.obj, Event):
                log.debug("Tombstone contains object that is not an event: %r", obj)
                return
            event = obj.obj
        else:
            log.debug("Object is neither event nor tombstone: %r", obj)
            return
        self.handler.on_delete(event)