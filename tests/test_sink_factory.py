from datetime import timedelta
from unittest import mock

import httpx
import pytest

from sdexport.resources import ResourceModelVersion
from sdexport.sink_factory import SinkFactory, SinkOptions, parse_sink_opts


def test_defaults_for_empty_option():
    options = parse_sink_opts([""])
    assert options == SinkOptions()
    assert options.flush_delay == timedelta(seconds=5)
    assert options.max_buffer_size == 100
    assert options.max_concurrency == 10


def test_equals_and_separate_values():
    options = parse_sink_opts(
        ["-max-buffer-size=7", "--max-concurrency", "3", "-endpoint=https://logs.example.com"]
    )
    assert options.max_buffer_size == 7
    assert options.max_concurrency == 3
    assert options.endpoint == "https://logs.example.com"


def test_duration_flag():
    assert parse_sink_opts(["-flush-delay=1m30s"]).flush_delay == timedelta(seconds=90)
    assert parse_sink_opts(["-flush-delay", "0"]).flush_delay == timedelta(0)


def test_resource_model_flag():
    options = parse_sink_opts(["-stackdriver-resource-model=new"])
    assert options.stackdriver_resource_model == "new"


def test_parsing_stops_at_first_non_flag():
    options = parse_sink_opts(["x", "-max-concurrency=3"])
    assert options.max_concurrency == SinkOptions().max_concurrency


def test_parsing_stops_after_terminator():
    options = parse_sink_opts(["--", "-max-concurrency=3"])
    assert options.max_concurrency == SinkOptions().max_concurrency


@pytest.mark.parametrize(
    "opts",
    [
        ["-bogus=1"],
        ["-max-buffer-size"],
        ["-max-buffer-size=lots"],
        ["-flush-delay=5"],
        ["---flush-delay=5s"],
    ],
)
def test_invalid_options(opts):
    with pytest.raises(ValueError):
        parse_sink_opts(opts)


def test_create_new_rejects_bad_opts():
    with pytest.raises(ValueError, match="failed to parse sink opts"):
        SinkFactory().create_new(["-bogus"])


def test_create_new_off_gce():
    def unreachable(url, **kwargs):
        raise httpx.ConnectError("unreachable", request=httpx.Request("GET", url))

    with mock.patch("httpx.get", side_effect=unreachable):
        with pytest.raises(RuntimeError, match="failed to build sink config"):
            SinkFactory().create_new([""])


def _metadata(url, **kwargs):
    answers = {
        "/project/project-id": "test_project_id",
        "/instance/attributes/cluster-name": "test_cluster_name",
        "/instance/attributes/cluster-location": "test_cluster_location",
    }
    request = httpx.Request("GET", url)
    text = next((value for path, value in answers.items() if url.endswith(path)), "")
    return httpx.Response(200, text=text, headers={"Metadata-Flavor": "Google"}, request=request)


def test_create_new_builds_configured_sink():
    with mock.patch("httpx.get", side_effect=_metadata):
        sink = SinkFactory().create_new(
            ["-max-buffer-size=7", "-stackdriver-resource-model=new"]
        )
    assert sink.config.max_buffer_size == 7
    assert sink.log_name == "projects/test_project_id/logs/events"
    assert sink.resource_factory.resource_model == ResourceModelVersion.NEW
    assert sink.resource_factory.default_resource.labels["cluster_name"] == "test_cluster_name"