from datetime import datetime, timedelta, timezone

import httpx
import pytest

from sdexport.controller import (
    ControllerClient,
    ControllerSource,
    ControllerTranslator,
    Metrics,
    new_controller_source,
    new_metrics,
    parse_metrics,
)
from sdexport.monitor import SourceConfig

METRICS_TEXT = """\
# HELP node_collector_evictions_number Number of evictions.
# TYPE node_collector_evictions_number counter
node_collector_evictions_number{zone="us-central1-f"} 3
# HELP process_start_time_seconds Start time.
# TYPE process_start_time_seconds gauge
process_start_time_seconds 1.5e+09
other_metric{a="x",b="y\\"z"} 42 1600000000000
"""


def _client_with(handler):
    return ControllerClient("localhost", 10252, httpx.Client(transport=httpx.MockTransport(handler)))


def test_parse_metrics_extracts_values():
    metrics = parse_metrics(METRICS_TEXT)
    assert metrics == Metrics(create_time=1500000000, node_evictions=3)


def test_parse_metrics_empty_input_gives_defaults():
    assert parse_metrics("") == Metrics()


@pytest.mark.parametrize(
    "text",
    ["node_collector_evictions_number{zone=\"a\" 3\n", "bad metric line\n", "name notanumber\n"],
)
def test_parse_metrics_rejects_invalid_input(text):
    with pytest.raises(ValueError):
        parse_metrics(text)


def test_new_metrics_from_bytes():
    assert new_metrics(METRICS_TEXT.encode()).node_evictions == 3


def test_new_metrics_wraps_errors():
    with pytest.raises(ValueError, match="Failed to create a new Metrics object"):
        new_metrics(b"}{ nonsense")


def test_client_url():
    client = ControllerClient("localhost", 10252)
    assert client.metrics_url == "http://localhost:10252/metrics"


def test_client_get_metrics_success():
    seen = []

    def handler(request):
        seen.append(str(request.url))
        return httpx.Response(200, text=METRICS_TEXT)

    metrics = _client_with(handler).get_metrics()
    assert metrics.node_evictions == 3
    assert seen == ["http://localhost:10252/metrics"]


def test_client_not_found():
    client = _client_with(lambda request: httpx.Response(404))
    with pytest.raises(RuntimeError, match="not found"):
        client.get_metrics()


def test_client_server_error():
    client = _client_with(lambda request: httpx.Response(500, text="broken"))
    with pytest.raises(RuntimeError, match="request failed"):
        client.get_metrics()


def test_translator_builds_eviction_series():
    fixed = datetime(2020, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    translator = ControllerTranslator(
        "us-central1-f", "test-project", "unit-test-clus", "this-instance",
        timedelta(seconds=10), clock=lambda: fixed,
    )
    req = translator.translate(Metrics(create_time=0, node_evictions=3))
    assert len(req["timeSeries"]) == 1
    ts = req["timeSeries"][0]
    assert ts["metric"]["type"] == "container.googleapis.com/master/node_controller/node_eviction_count"
    assert ts["metricKind"] == "CUMULATIVE"
    assert ts["valueType"] == "INT64"
    assert ts["resource"]["type"] == "gke_container"
    assert ts["resource"]["labels"]["pod_id"] == "machine"
    assert ts["resource"]["labels"]["instance_id"] == "this-instance"
    point = ts["points"][0]
    assert point["value"]["int64Value"] == "3"
    assert point["interval"]["startTime"] == "1970-01-01T00:00:00Z"
    assert point["interval"]["endTime"] == "2020-01-02T03:04:05Z"


def test_source_get_time_series_req():
    translator = ControllerTranslator("z", "p", "c", "i", timedelta(seconds=1))
    client = _client_with(lambda request: httpx.Response(200, text=METRICS_TEXT))
    source = ControllerSource(translator, client, "projects/p")
    req = source.get_time_series_req()
    assert req["timeSeries"][0]["points"][0]["value"]["int64Value"] == "3"
    assert source.name() == "kube-controller-manager"
    assert source.project_path() == "projects/p"


def test_source_wraps_scrape_failures():
    translator = ControllerTranslator("z", "p", "c", "i", timedelta(seconds=1))
    client = _client_with(lambda request: httpx.Response(404))
    source = ControllerSource(translator, client, "projects/p")
    with pytest.raises(RuntimeError, match="Failed to get metrics from controller"):
        source.get_time_series_req()


def test_new_controller_source_from_config():
    cfg = SourceConfig(zone="z", project="my-project", cluster="c", host="localhost", port=10252)
    source = new_controller_source(cfg)
    assert source.project_path() == "projects/my-project"
    assert source.name() == "kube-controller-manager"