"""The Stackdriver sink: batches log entries of events and writes them concurrently."""

from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Protocol

import httpx

from sdexport.event_handler import Event, EventList
from sdexport.gce_config import GCE_METADATA_ENDPOINT, MetadataError, metadata_uri
from sdexport.log_entries import LogEntry, LogEntryFactory
from sdexport.resources import MonitoredResource, MonitoredResourceFactory
from sdexport.sink_metrics import received_entry_count

__all__ = [
    "DEFAULT_FLUSH_DELAY",
    "DEFAULT_MAX_BUFFER_SIZE",
    "DEFAULT_MAX_CONCURRENCY",
    "DEFAULT_ENDPOINT",
    "EVENTS_LOG_NAME",
    "Sink",
    "SinkConfig",
    "SinkWriter",
    "new_gce_sink_config",
    "StackdriverSink",
]

log = logging.getLogger(__name__)

DEFAULT_FLUSH_DELAY = timedelta(seconds=5)
DEFAULT_MAX_BUFFER_SIZE = 100
DEFAULT_MAX_CONCURRENCY = 10
DEFAULT_ENDPOINT = ""
EVENTS_LOG_NAME = "events"

_POLL_INTERVAL = 0.05
_STARTED_MESSAGE = (
    "Event exporter started watching. Some events may have been lost up to this point."
)


class Sink(Protocol):
    """Handles watched events, the initial event list, and runs until stopped.

    ``on_add`` only sees events added while watching; events that existed
    before must be dealt with in ``on_list``.
    """

    def on_add(self, event: Event) -> None: ...

    def on_update(self, old_event: Event | None, new_event: Event) -> None: ...

    def on_delete(self, event: Event) -> None: ...

    def on_list(self, event_list: EventList) -> None: ...

    def run(self, stop: threading.Event) -> None: ...


class SinkWriter(Protocol):
    """Delivers a batch of log entries."""

    def write(
        self,
        entries: list[LogEntry],
        log_name: str,
        resource: MonitoredResource | None,
    ) -> None: ...


@dataclass
class SinkConfig:
    """Batching and delivery settings of the sink."""

    flush_delay: timedelta = DEFAULT_FLUSH_DELAY
    max_buffer_size: int = DEFAULT_MAX_BUFFER_SIZE
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    log_name: str = ""
    endpoint: str = DEFAULT_ENDPOINT


def _on_gce() -> bool:
    try:
        response = httpx.get(
            GCE_METADATA_ENDPOINT + "/", headers={"Metadata-Flavor": "Google"}, timeout=2.0
        )
    except httpx.HTTPError:
        return False
    return response.headers.get("Metadata-Flavor") == "Google"


def _project_id() -> str:
    uri = metadata_uri("/project/project-id")
    try:
        response = httpx.get(uri, headers={"Metadata-Flavor": "Google"})
    except httpx.HTTPError as err:
        raise MetadataError(f"request {uri!r} for GCE metadata failed: {err}") from err
    if response.status_code != 200:
        raise MetadataError(f"GCE metadata {uri!r} returned status {response.status_code}")
    return response.text.strip()


def new_gce_sink_config() -> SinkConfig:
    """Default sink settings for a GCE instance, logging to its project."""
    if not _on_gce():
        raise RuntimeError("not running on GCE, which is not supported for Stackdriver sink")
    try:
        project_id = _project_id()
    except MetadataError as err:
        raise MetadataError(f"failed to get project id: {err}") from err
    return SinkConfig(log_name=f"projects/{project_id}/logs/{EVENTS_LOG_NAME}")


class StackdriverSink:
    """Buffers entries and flushes them when full or after the flush delay."""

    def __init__(
        self,
        writer: SinkWriter,
        config: SinkConfig,
        resource_factory: MonitoredResourceFactory,
        log_entry_factory: LogEntryFactory | None = None,
    ) -> None:
        self.writer = writer
        self.config = config
        self.log_name = config.log_name
        self.resource_factory = resource_factory
        self.log_entry_factory = log_entry_factory or LogEntryFactory(resource_factory)
        self._entries: queue.Queue[LogEntry] = queue.Queue(maxsize=config.max_buffer_size)
        self._buffer: list[LogEntry] = []
        self._deadline: float | None = None
        # Each running request holds a slot; extra requests wait for one.
        self._slots = threading.Semaphore(config.max_concurrency)
        self._before_first_list = True

    def on_add(self, event: Event) -> None:
        received_entry_count.inc()
        self._entries.put(self.log_entry_factory.from_event(event))

    def on_update(self, old_event: Event | None, new_event: Event) -> None:
        received_entry_count.inc()
        self._entries.put(self.log_entry_factory.from_event(new_event))

    def on_delete(self, event: Event) -> None:
        """Deleted events are not exported."""

    def on_list(self, event_list: EventList) -> None:
        """Log, on the first list only, that watching has started."""
        if not self._before_first_list:
            return
        received_entry_count.inc()
        entry = self.log_entry_factory.from_message(_STARTED_MESSAGE)
        self.writer.write([entry], self.log_name, self.resource_factory.default_resource)
        self._before_first_list = False

    def run(self, stop: threading.Event) -> None:
        """Batch and send entries until ``stop`` is set, then wait for all requests."""
        log.info("Starting Stackdriver sink")
        while not stop.is_set():
            timeout = _POLL_INTERVAL
            if self._deadline is not None:
                timeout = max(0.0, min(timeout, self._deadline - time.monotonic()))
            try:
                entry: LogEntry | None = self._entries.get(timeout=timeout)
            except queue.Empty:
                entry = None
            if entry is not None:
                self._buffer.append(entry)
                if len(self._buffer) >= self.config.max_buffer_size:
                    self._flush_buffer()
                elif len(self._buffer) == 1:
                    self._deadline = time.monotonic() + self.config.flush_delay.total_seconds()
            if self._deadline is not None and time.monotonic() >= self._deadline:
                self._deadline = None
                if self._buffer:
                    self._flush_buffer()

        log.info("Stackdriver sink received stop signal, waiting for all requests to finish")
        for _ in range(self.config.max_concurrency):
            self._slots.acquire()
        log.info("All requests to Stackdriver finished, exiting Stackdriver sink")

    def _flush_buffer(self) -> None:
        entries, self._buffer = self._buffer, []
        self._slots.acquire()
        threading.Thread(target=self._send_entries, args=(entries,), daemon=True).start()

    def _send_entries(self, entries: list[LogEntry]) -> None:
        log.debug("Sending %d entries to Stackdriver", len(entries))
        try:
            self.writer.write(entries, self.log_name, self.resource_factory.default_resource)
        finally:
            self._slots.release()
        log.debug("Successfully sent %d entries to Stackdriver", len(entries))