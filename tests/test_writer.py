import httpx

from sdexport.log_entries import LogEntry
from sdexport.resources import MonitoredResource
from sdexport.sink_metrics import request_count, successfully_sent_entry_count
from sdexport.writer import ApiError, LoggingWriter


def _writer(statuses, requests, sleeps):
    replies = iter(statuses)

    def handler(request):
        requests.append(request)
        return httpx.Response(next(replies), json={})

    client = httpx.Client(transport=httpx.MockTransport(handler))
    return LoggingWriter(
        endpoint="https://logging.example.com/",
        client=client,
        token_provider=lambda: "token",
        retry_delay=10.0,
        sleep=sleeps.append,
    )


def _entries():
    return [LogEntry(text_payload="hello", severity="INFO")]


def test_success_sends_one_request():
    requests, sleeps = [], []
    writer = _writer([200], requests, sleeps)
    before = successfully_sent_entry_count.value()

    writer.write(_entries(), "logname", MonitoredResource("k8s_cluster", {"a": "b"}))

    assert len(requests) == 1
    assert sleeps == []
    assert successfully_sent_entry_count.value() - before == 1


def test_request_body_and_headers():
    requests, sleeps = [], []
    writer = _writer([200], requests, sleeps)

    writer.write(_entries(), "logname", MonitoredResource("k8s_cluster", {"a": "b"}))

    request = requests[0]
    assert request.url.path == "/v2/entries:write"
    assert request.headers["Authorization"] == "Bearer token"
    body = httpx.Response(200, content=request.content).json()
    assert body["logName"] == "logname"
    assert body["entries"] == [{"textPayload": "hello", "severity": "INFO"}]
    assert body["resource"] == {"type": "k8s_cluster", "labels": {"a": "b"}}


def test_bad_request_is_not_retried():
    requests, sleeps = [], []
    writer = _writer([400, 400], requests, sleeps)

    writer.write(_entries(), "logname", None)
    first = request_count.value("400")
    writer.write(_entries(), "logname", None)

    assert len(requests) == 2
    assert sleeps == []
    assert request_count.value("400") - first == 1


def test_server_error_is_retried_after_delay():
    requests, sleeps = [], []
    writer = _writer([500, 503, 200], requests, sleeps)

    writer.write(_entries(), "logname", None)

    assert len(requests) == 3
    assert sleeps == [10.0, 10.0]


def test_transport_error_is_retried():
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) == 1:
            raise httpx.ConnectError("down", request=request)
        return httpx.Response(200, json={})

    sleeps = []
    writer = LoggingWriter(
        client=httpx.Client(transport=httpx.MockTransport(handler)),
        token_provider=lambda: "token",
        retry_delay=1.5,
        sleep=sleeps.append,
    )

    writer.write(_entries(), "logname", None)

    assert len(calls) == 2
    assert sleeps == [1.5]


def test_api_error_carries_code():
    err = ApiError(400, "bad")
    assert err.code == 400
    assert "400" in str(err)