"""In-process counters and histograms exposed in the Prometheus text format."""

from __future__ import annotations

import bisect
import math
import threading
from collections.abc import Iterator, Sequence

__all__ = [
    "Counter",
    "Histogram",
    "Registry",
    "REGISTRY",
    "exponential_buckets",
    "observe_successful_scrape",
    "observe_failed_scrape",
    "observe_successful_request",
    "observe_failed_request",
    "observe_ingestion_latency",
]


def _full_name(name: str, subsystem: str) -> str:
    return f"{subsystem}_{name}" if subsystem else name


def _format_value(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if value == int(value) and abs(value) < 1e15:
        return str(int(value))
    return repr(float(value))


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def _format_labels(labels: dict[str, str]) -> str:
    if not labels:
        return ""
    body = ",".join(f'{key}="{_escape(val)}"' for key, val in labels.items())
    return "{" + body + "}"


def exponential_buckets(start: float, factor: float, count: int) -> list[float]:
    """Return ``count`` bucket bounds, the first ``start``, each ``factor`` times the last."""
    if count < 1:
        raise ValueError("exponential_buckets needs a positive count")
    if start <= 0:
        raise ValueError("exponential_buckets needs a positive start value")
    if factor <= 1:
        raise ValueError("exponential_buckets needs a factor greater than 1")
    buckets = []
    bound = float(start)
    for _ in range(count):
        buckets.append(bound)
        bound *= factor
    return buckets


class Counter:
    """A monotonically increasing value, optionally split by label values."""

    type_name = "counter"

    def __init__(
        self,
        name: str,
        help: str,
        labelnames: Sequence[str] = (),
        subsystem: str = "",
    ) -> None:
        self.name = _full_name(name, subsystem)
        self.help = help
        self.labelnames = tuple(labelnames)
        self._values: dict[tuple[str, ...], float] = {}
        self._lock = threading.Lock()

    def _key(self, label_values: tuple) -> tuple[str, ...]:
        if len(label_values) != len(self.labelnames):
            raise ValueError(
                f"{self.name}: expected {len(self.labelnames)} label values, "
                f"got {len(label_values)}"
            )
        return tuple(str(value) for value in label_values)

    def inc(self, *args: str) -> None:
        """Add one to the series selected by the label values."""
        self.add(1.0, *args)

    def add(self, amount: float, *args: str) -> None:
        """Add a non-negative amount to the series selected by the label values."""
        if amount < 0:
            raise ValueError(f"{self.name}: counter cannot decrease")
        key = self._key(args)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + float(amount)

    def value(self, *args: str) -> float:
        """Current value of the series selected by the label values."""
        key = self._key(args)
        with self._lock:
            return self._values.get(key, 0.0)

    def samples(self) -> Iterator[tuple[str, dict[str, str], float]]:
        with self._lock:
            items = sorted(self._values.items())
        if not self.labelnames and not items:
            items = [((), 0.0)]
        for key, value in items:
            yield self.name, dict(zip(self.labelnames, key)), value


class Histogram:
    """Counts observations into cumulative buckets."""

    type_name = "histogram"

    def __init__(
        self,
        name: str,
        help: str,
        buckets: Sequence[float],
        subsystem: str = "",
    ) -> None:
        bounds = [float(b) for b in buckets if not math.isinf(b)]
        if any(later <= earlier for earlier, later in zip(bounds, bounds[1:])):
            raise ValueError(f"{name}: histogram buckets must be strictly increasing")
        self.name = _full_name(name, subsystem)
        self.help = help
        self.buckets = bounds
        self._counts = [0] * (len(bounds) + 1)
        self.sum = 0.0
        self.count = 0
        self._lock = threading.Lock()

    def observe(self, value: float) -> None:
        """Record one observation."""
        index = bisect.bisect_left(self.buckets, value)
        with self._lock:
            self._counts[index] += 1
            self.sum += value
            self.count += 1

    def bucket_counts(self) -> list[tuple[float, int]]:
        """Cumulative ``(upper_bound, count)`` pairs, ending with ``+inf``."""
        with self._lock:
            counts = list(self._counts)
        result = []
        running = 0
        for bound, count in zip([*self.buckets, math.inf], counts):
            running += count
            result.append((bound, running))
        return result

    def samples(self) -> Iterator[tuple[str, dict[str, str], float]]:
        for bound, count in self.bucket_counts():
            yield f"{self.name}_bucket", {"le": _format_value(bound)}, count
        with self._lock:
            total, count = self.sum, self.count
        yield f"{self.name}_sum", {}, total
        yield f"{self.name}_count", {}, count


class Registry:
    """A set of uniquely named metrics that can be rendered together."""

    def __init__(self) -> None:
        self._collectors: dict[str, Counter | Histogram] = {}
        self._lock = threading.Lock()

    def register(self, *args: Counter | Histogram) -> None:
        """Add metrics; a name may be registered only once."""
        with self._lock:
            for collector in args:
                if collector.name in self._collectors:
                    raise ValueError(
                        "duplicate metrics collector registration attempted: "
                        f"{collector.name}"
                    )
                self._collectors[collector.name] = collector

    def render(self) -> str:
        """All registered metrics in the Prometheus text exposition format."""
        with self._lock:
            collectors = [self._collectors[name] for name in sorted(self._collectors)]
        lines = []
        for collector in collectors:
            lines.append(f"# HELP {collector.name} {collector.help}")
            lines.append(f"# TYPE {collector.name} {collector.type_name}")
            for name, labels, value in collector.samples():
                lines.append(f"{name}{_format_labels(labels)} {_format_value(value)}")
        return "\n".join(lines) + ("\n" if lines else "")


successful_scrapes = Counter(
    "successfull_scrapes_total",
    "Number of successfull scrapes of metrics from the endpoint",
    ["source"],
)
failed_scrapes = Counter(
    "failed_scrapes_total",
    "Number of failed scrapes of metrics from the endpoint",
    ["source"],
)
timeseries_pushed = Counter(
    "timeseries_pushed_total",
    "Number of timeseries successfully pushed to the Stackdriver",
)
timeseries_dropped = Counter(
    "timeseries_dropped_total",
    "Number of timeseries dropped during a push to the Stackdriver",
)
metric_ingestion_latency = Histogram(
    "metric_ingestion_latency_seconds",
    "Time passed from the moment, when metric was scraped from the monitored "
    "component till it was pushed to the Stackdriver",
    exponential_buckets(1.0, 1.5, 12),
)

REGISTRY = Registry()
REGISTRY.register(
    successful_scrapes,
    failed_scrapes,
    timeseries_pushed,
    timeseries_dropped,
    metric_ingestion_latency,
)


def observe_successful_scrape(source: str) -> None:
    successful_scrapes.inc(source)


def observe_failed_scrape(source: str) -> None:
    failed_scrapes.inc(source)


def observe_successful_request(batch_size: int) -> None:
    timeseries_pushed.add(float(batch_size))


def observe_failed_request(batch_size: int) -> None:
    timeseries_dropped.add(float(batch_size))


def observe_ingestion_latency(num_timeseries: int, latency: float) -> None:
    for _ in range(num_timeseries):
        metric_ingestion_latency.observe(latency)