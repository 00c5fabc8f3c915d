from datetime import timedelta

import pytest

from sdexport import telemetry
from sdexport.monitor import (
    MAX_TIME_SERIES_PER_REQUEST,
    SourceConfig,
    once,
    sub_requests,
)


def _request(n):
    return {"timeSeries": [{"id": i} for i in range(n)]}


class FakeSource:
    def __init__(self, req=None, error=None, name="fake-source"):
        self._req = req
        self._error = error
        self._name = name

    def get_time_series_req(self):
        if self._error is not None:
            raise self._error
        return self._req

    def name(self):
        return self._name

    def project_path(self):
        return "projects/test-project"


class FakeGcm:
    def __init__(self, fail=False):
        self.calls = []
        self.fail = fail

    def create_time_series(self, project_path, request):
        self.calls.append((project_path, request))
        if self.fail:
            raise RuntimeError("write failed")
        return {}


@pytest.mark.parametrize("count", [0, 1, MAX_TIME_SERIES_PER_REQUEST])
def test_small_request_is_returned_as_is(count):
    req = _request(count)
    result = sub_requests(req)
    assert len(result) == 1
    assert result[0] is req


@pytest.mark.parametrize("count", [MAX_TIME_SERIES_PER_REQUEST + 1, 450, 1000])
def test_large_request_is_split(count):
    req = _request(count)
    parts = sub_requests(req)
    assert len(parts) == (count - 1) // MAX_TIME_SERIES_PER_REQUEST + 1
    assert all(len(p["timeSeries"]) <= MAX_TIME_SERIES_PER_REQUEST for p in parts)
    flattened = [ts for p in parts for ts in p["timeSeries"]]
    assert flattened == req["timeSeries"]


def test_source_config_defaults():
    cfg = SourceConfig(project="p", port=10252)
    assert cfg.project == "p"
    assert cfg.port == 10252
    assert cfg.monitored_resource_labels == {}
    assert cfg.resolution == timedelta(0)


def test_once_pushes_all_chunks():
    src = FakeSource(req=_request(450), name="once-ok")
    gcm = FakeGcm()
    pushed_before = telemetry.timeseries_pushed.value()
    scrapes_before = telemetry.successful_scrapes.value("once-ok")

    once(src, gcm)

    assert len(gcm.calls) == 3
    assert all(path == "projects/test-project" for path, _ in gcm.calls)
    assert telemetry.timeseries_pushed.value() == pushed_before + 450
    assert telemetry.successful_scrapes.value("once-ok") == scrapes_before + 1


def test_once_records_failed_scrape():
    src = FakeSource(error=RuntimeError("boom"), name="once-scrape-fail")
    gcm = FakeGcm()
    before = telemetry.failed_scrapes.value("once-scrape-fail")

    once(src, gcm)

    assert gcm.calls == []
    assert telemetry.failed_scrapes.value("once-scrape-fail") == before + 1


def test_once_stops_after_failed_write():
    src = FakeSource(req=_request(450), name="once-write-fail")
    gcm = FakeGcm(fail=True)
    dropped_before = telemetry.timeseries_dropped.value()

    once(src, gcm)

    assert len(gcm.calls) == 1
    assert (
        telemetry.timeseries_dropped.value()
        == dropped_before + MAX_TIME_SERIES_PER_REQUEST
    )