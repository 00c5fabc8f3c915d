# sdexport

Collects Kubernetes resource usage and cluster events and ships them to
Google Cloud Monitoring (time series) and Cloud Logging (log entries).

It has two halves:

- **Metrics**: scrapes the kubelet `/stats/summary` endpoint and the
  kube-controller-manager `/metrics` endpoint, translates the data into
  Cloud Monitoring time series and pushes them in requests of at most 200
  series each.
- **Events**: turns Kubernetes events into Cloud Logging entries, batches
  them and writes them with bounded concurrency, retrying until the request
  succeeds or the API answers 400 Bad Request.

## Installation

```
pip install .
```

For running the tests:

```
pip install ".[test]"
pytest
```

## Running the metrics daemon

```
kubelet-to-gcm --schema-prefix k8s_ --resolution 10
```

Every option can also be written with a single dash (`-zone`, `-port`, ...).
Each value left at `use-gce` (`--zone`, `--project`, `--cluster`,
`--cluster-location`, `--kubelet-host`, `--kubelet-instance`) is read from
the GCE metadata server; `--kubelet-host use-instance-name` uses the
instance's short host name. The instance id is always read from the
metadata server. Other options:

- `--schema-prefix`: empty (the default) selects the old resource model
  (`gke_container`); `k8s_` selects `k8s_node` / `k8s_container`.
- `--kubelet-port` (default 10255) and `--controller-manager-port`
  (default 10252; 0 skips controller metrics).
- `--certificate-location` switches the kubelet client to HTTPS, trusting
  the given PEM certificate.
- `--monitored-resource-labels` takes a query string such as `a=1&b=2`;
  each key must have exactly one value. These labels are added to the
  resources of the new resource model.
- `--resolution` (default 10): seconds between polls.
- `--gcm-endpoint` overrides the Cloud Monitoring API base URL
  (default `https://monitoring.googleapis.com/`).
- `--port` (default 6062) serves the daemon's own counters and the
  ingestion-latency histogram in the Prometheus text format at `/metrics`.

Access tokens are fetched from the metadata server's default service
account. `main()` returns 1 when configuration or source creation fails;
otherwise it polls forever.

## Using it as a library

Translating a kubelet summary:

```python
from datetime import timedelta

from sdexport.kubelet import KubeletTranslator
from sdexport.kubelet_stats import parse_summary

with open("summary.json") as f:
    summary = parse_summary(f.read())
translator = KubeletTranslator(
    "us-central1-f", "my-project", "my-cluster", "us-central1",
    "node-1", "1234", "k8s_", {}, timedelta(seconds=10),
)
request = translator.translate(summary)   # {"timeSeries": [...]}
```

`new_kubelet_source(cfg)` and `new_controller_source(cfg)` build sources
from a `sdexport.monitor.SourceConfig`; `sdexport.gce_config.new_configs(...)`
builds the kubelet and controller configurations, filling `use-gce` values
from the metadata server.

Polling a source once and pushing the result:

```python
from sdexport.daemon import HttpGcmService
from sdexport.monitor import once

service = HttpGcmService(token_provider=lambda: "token")
once(source, service)   # any MetricsSource and GcmService
```

Failures are logged and counted in `sdexport.telemetry.REGISTRY`; `once`
does not raise.

Building event log entries:

```python
from sdexport.event_handler import Event, ObjectReference
from sdexport.log_entries import LogEntryFactory
from sdexport.resources import (
    MonitoredResourceFactory,
    MonitoredResourceFactoryConfig,
    ResourceModelVersion,
)

config = MonitoredResourceFactoryConfig(
    ResourceModelVersion.NEW, "my-cluster", "us-central1", "my-project"
)
factory = LogEntryFactory(MonitoredResourceFactory(config))
entry = factory.from_event(Event(
    type="Warning",
    involved_object=ObjectReference(kind="Pod", name="web-1", namespace="default"),
))
entry.to_dict()
```

`StackdriverSink(writer, config, resource_factory)` buffers entries given to
`on_add` / `on_update` and flushes them when `max_buffer_size` is reached or
`flush_delay` has passed since the first buffered entry; at most
`max_concurrency` writes run at once. `run(stop)` blocks until the
`threading.Event` is set and then waits for running writes.
`sdexport.runner.run_concurrently_until(stop, *funcs)` runs several such
functions side by side. `LoggingWriter` is the writer for the Cloud Logging
API. `SinkFactory().create_new(opts)` builds a sink from option strings such
as `--flush-delay=5s --max-buffer-size=100 --max-concurrency=10`
(also `--stackdriver-resource-model` and `--endpoint`); it must run on GCE,
since it reads the project, cluster name and location from the metadata
server.

## What it does not do

- There is no command for exporting events and nothing that lists or
  watches events on the Kubernetes API server. The caller feeds `Event`
  objects to the sink (directly or through `EventHandlerWrapper`) and
  calls `on_list` itself.
- Authentication uses only metadata-server tokens by default; other
  credentials must be supplied as a `token_provider` callable.