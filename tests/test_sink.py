import queue
import threading
import time
from datetime import timedelta
from unittest import mock

import httpx
import pytest

from sdexport.event_handler import Event, EventList
from sdexport.gce_config import MetadataError
from sdexport.log_entries import LogEntry
from sdexport.resources import MonitoredResourceFactory, MonitoredResourceFactoryConfig
from sdexport.sink import SinkConfig, StackdriverSink, new_gce_sink_config

DEFAULT_TEST_FLUSH_DELAY = timedelta(milliseconds=10)
DEFAULT_TEST_MAX_CONCURRENCY = 10
DEFAULT_TEST_MAX_BUFFER_SIZE = 10


class FakeWriter:
    def __init__(self, blocking, done):
        self.calls = queue.Queue()
        self.blocking = blocking
        self.done = done

    def write(self, entries, log_name, resource):
        self.calls.put((list(entries), log_name, resource))
        if self.blocking:
            self.done.wait()


@pytest.fixture
def make_sink():
    started = []

    def build(buffer_size=DEFAULT_TEST_MAX_BUFFER_SIZE,
              flush_delay=DEFAULT_TEST_FLUSH_DELAY, blocking=False):
        done = threading.Event()
        config = SinkConfig(
            flush_delay=flush_delay,
            max_buffer_size=buffer_size,
            max_concurrency=DEFAULT_TEST_MAX_CONCURRENCY,
            log_name="logname",
        )
        writer = FakeWriter(blocking, done)
        factory = MonitoredResourceFactory(MonitoredResourceFactoryConfig())
        sink = StackdriverSink(writer, config, factory)
        thread = threading.Thread(target=sink.run, args=(done,), daemon=True)
        thread.start()
        started.append((done, thread))
        return config, sink, writer, done, thread

    yield build
    for done, thread in started:
        done.set()
        thread.join(timeout=5)


def wait_writes_count(writer, want):
    deadline = time.monotonic() + 1.0
    while time.monotonic() < deadline and writer.calls.qsize() != want:
        time.sleep(0.01)
    # Wait a little more to make sure the number does not grow.
    time.sleep(0.1)
    return writer.calls.qsize()


def test_max_concurrency(make_sink):
    config, sink, writer, _, _ = make_sink(blocking=True)
    for _ in range(config.max_concurrency * (config.max_buffer_size + 2)):
        sink.on_add(Event())
    assert wait_writes_count(writer, config.max_concurrency) == config.max_concurrency


def test_batch_timeout(make_sink):
    _, sink, writer, _, _ = make_sink()
    sink.on_add(Event())
    assert wait_writes_count(writer, 1) == 1


def test_batch_size_limit(make_sink):
    _, sink, writer, _, _ = make_sink(flush_delay=timedelta(hours=1))
    for _ in range(15):
        sink.on_add(Event())
    assert wait_writes_count(writer, 1) == 1
    entries, _, _ = writer.calls.get()
    assert len(entries) == DEFAULT_TEST_MAX_BUFFER_SIZE


def test_initial_list(make_sink):
    _, sink, writer, _, _ = make_sink(buffer_size=1)
    sink.on_list(EventList())
    assert wait_writes_count(writer, 1) == 1
    sink.on_list(EventList())
    assert wait_writes_count(writer, 1) == 1


def test_initial_list_entry_content(make_sink):
    _, sink, writer, _, _ = make_sink()
    sink.on_list(EventList())
    entries, log_name, _ = writer.calls.get(timeout=1)
    assert log_name == "logname"
    assert entries[0].severity == "WARNING"
    assert entries[0].text_payload.startswith("Event exporter started watching.")


@pytest.mark.parametrize("old", [None, Event()], ids=["old=nil", "old=event"])
def test_on_update(make_sink, old):
    _, sink, writer, _, _ = make_sink()
    sink.on_update(old, Event())
    assert wait_writes_count(writer, 1) == 1


def test_on_delete_writes_nothing(make_sink):
    _, sink, writer, _, _ = make_sink()
    sink.on_delete(Event())
    assert wait_writes_count(writer, 0) == 0


def test_flushed_entries_are_log_entries(make_sink):
    _, sink, writer, _, _ = make_sink()
    sink.on_add(Event(type="Warning"))
    entries, log_name, _ = writer.calls.get(timeout=1)
    assert log_name == "logname"
    assert isinstance(entries[0], LogEntry)
    assert entries[0].severity == "WARNING"


def test_run_returns_after_stop(make_sink):
    _, sink, writer, done, thread = make_sink()
    sink.on_add(Event())
    assert wait_writes_count(writer, 1) == 1
    done.set()
    thread.join(timeout=5)
    assert not thread.is_alive()


def test_default_config_values():
    config = SinkConfig()
    assert config.flush_delay == timedelta(seconds=5)
    assert config.max_buffer_size == 100
    assert config.max_concurrency == 10
    assert config.endpoint == ""


def _metadata(project_status=200):
    def fake_get(url, **kwargs):
        request = httpx.Request("GET", url)
        headers = {"Metadata-Flavor": "Google"}
        if url.endswith("/project/project-id"):
            return httpx.Response(project_status, text="test_project_id",
                                  headers=headers, request=request)
        return httpx.Response(200, text="", headers=headers, request=request)

    return fake_get


def test_gce_config_log_name():
    with mock.patch("httpx.get", side_effect=_metadata()):
        config = new_gce_sink_config()
    assert config.log_name == "projects/test_project_id/logs/events"
    assert config.max_buffer_size == 100


def test_gce_config_not_on_gce():
    def unreachable(url, **kwargs):
        raise httpx.ConnectError("unreachable", request=httpx.Request("GET", url))

    with mock.patch("httpx.get", side_effect=unreachable):
        with pytest.raises(RuntimeError, match="not running on GCE"):
            new_gce_sink_config()


def test_gce_config_project_failure():
    with mock.patch("httpx.get", side_effect=_metadata(project_status=500)):
        with pytest.raises(MetadataError, match="failed to get project id"):
            new_gce_sink_config()