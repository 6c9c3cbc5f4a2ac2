"""
Prometheus metrics for the shopwatch services.

Each service builds its own `MetricsRegistry` at startup and passes it to the
pieces that record samples (middleware, cache, handlers, peer clients).
Nothing here is a process-wide global, so tests can build as many
independent registries as they like.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Mapping, Optional

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    GCCollector,
    Gauge,
    Histogram,
    PlatformCollector,
    ProcessCollector,
    generate_latest,
)

from .errors import DuplicateMetricError, LabelMismatchError, MetricsError, UnknownMetricError


class MetricKind(str, Enum):
    COUNTER = "counter"
    HISTOGRAM = "histogram"
    GAUGE = "gauge"


@dataclass(frozen=True)
class MetricSpec:
    name: str
    kind: MetricKind
    help: str
    label_names: tuple[str, ...] = ()
    buckets: Optional[tuple[float, ...]] = None


def counter(name: str, help: str, labels: Iterable[str] = ()) -> MetricSpec:
    return MetricSpec(name, MetricKind.COUNTER, help, tuple(labels))


def gauge(name: str, help: str, labels: Iterable[str] = ()) -> MetricSpec:
    return MetricSpec(name, MetricKind.GAUGE, help, tuple(labels))


def histogram(name: str, help: str, labels: Iterable[str] = (),
              buckets: Iterable[float] = ()) -> MetricSpec:
    return MetricSpec(name, MetricKind.HISTOGRAM, help, tuple(labels), tuple(buckets) or None)


_FACTORIES = {
    MetricKind.COUNTER: Counter,
    MetricKind.GAUGE: Gauge,
    MetricKind.HISTOGRAM: Histogram,
}


@dataclass
class _Registered:
    spec: MetricSpec
    metric: object
    defaults: dict
    children: dict = field(default_factory=dict)


class MetricsRegistry:
    """Named counters, gauges and histograms with default labels merged in."""

    content_type = CONTENT_TYPE_LATEST

    def __init__(self, default_labels: Optional[Mapping[str, str]] = None,
                 runtime_metrics: bool = True):
        self.default_labels = dict(default_labels or {})
        self.registry = CollectorRegistry()
        self._metrics: dict[str, _Registered] = {}
        self._started = time.time()

        if runtime_metrics:
            # memory, cpu, open fds, start time, interpreter info, gc
            ProcessCollector(registry=self.registry)
            PlatformCollector(registry=self.registry)
            GCCollector(registry=self.registry)
            self.register(gauge("process_uptime_seconds", "Seconds since the service started"))
            self._child("process_uptime_seconds", None).set_function(self.uptime)

    def uptime(self) -> float:
        return time.time() - self._started

    def register(self, spec: MetricSpec) -> None:
        if spec.name in self._metrics:
            raise DuplicateMetricError(spec.name)
        if len(set(spec.label_names)) != len(spec.label_names):
            raise MetricsError(f"Duplicate label names for {spec.name}: {list(spec.label_names)}")
        if spec.buckets is not None and spec.kind is not MetricKind.HISTOGRAM:
            raise MetricsError(f"Buckets given for non-histogram metric {spec.name}")

        kwargs = {"registry": self.registry}
        if spec.buckets:
            kwargs["buckets"] = spec.buckets
        # a label declared by the metric itself overrides the default of the same name
        defaults = {k: v for k, v in self.default_labels.items() if k not in spec.label_names}
        labelnames = tuple(defaults) + spec.label_names
        metric = _FACTORIES[spec.kind](spec.name, spec.help, labelnames, **kwargs)
        self._metrics[spec.name] = _Registered(spec, metric, defaults)

    def register_all(self, specs: Iterable[MetricSpec]) -> None:
        for spec in specs:
            self.register(spec)

    def __contains__(self, name: str) -> bool:
        return name in self._metrics

    def _child(self, name: str, labels: Optional[Mapping[str, object]]):
        entry = self._metrics.get(name)
        if entry is None:
            raise UnknownMetricError(name)
        labels = labels or {}
        if set(labels) != set(entry.spec.label_names):
            raise LabelMismatchError(name, entry.spec.label_names, tuple(labels))

        values = tuple(str(labels[n]) for n in entry.spec.label_names)
        child = entry.children.get(values)
        if child is None:
            merged = {**entry.defaults, **dict(zip(entry.spec.label_names, values))}
            child = entry.metric.labels(**merged) if merged else entry.metric
            entry.children[values] = child
        return child

    def _check_kind(self, name: str, *kinds: MetricKind) -> None:
        entry = self._metrics.get(name)
        if entry is None:
            raise UnknownMetricError(name)
        if entry.spec.kind not in kinds:
            raise MetricsError(f"{name} is a {entry.spec.kind.value}")

    def inc(self, name: str, labels: Optional[Mapping[str, object]] = None, amount: float = 1) -> None:
        self._check_kind(name, MetricKind.COUNTER, MetricKind.GAUGE)
        self._child(name, labels).inc(amount)

    def dec(self, name: str, labels: Optional[Mapping[str, object]] = None, amount: float = 1) -> None:
        self._check_kind(name, MetricKind.GAUGE)
        self._child(name, labels).dec(amount)

    def set(self, name: str, labels: Optional[Mapping[str, object]] = None, value: float = 0) -> None:
        self._check_kind(name, MetricKind.GAUGE)
        self._child(name, labels).set(value)

    def observe(self, name: str, labels: Optional[Mapping[str, object]], value: float) -> None:
        self._check_kind(name, MetricKind.HISTOGRAM)
        self._child(name, labels).observe(value)

    def time(self, name: str, labels: Optional[Mapping[str, object]] = None):
        """Context manager observing the elapsed seconds into a histogram."""
        self._check_kind(name, MetricKind.HISTOGRAM)
        return self._child(name, labels).time()

    def sample(self, name: str, labels: Optional[Mapping[str, object]] = None,
               suffix: str = "") -> Optional[float]:
        """Current value of one exposed sample, e.g. suffix="_total" or "_count"."""
        entry = self._metrics.get(name)
        if entry is None:
            raise UnknownMetricError(name)
        sample_name = name if name.endswith(suffix) else name + suffix
        merged = {**entry.defaults, **{k: str(v) for k, v in (labels or {}).items()}}
        return self.registry.get_sample_value(sample_name, merged)

    def render(self) -> bytes:
        return generate_latest(self.registry)


# --- Metric sets ---

HTTP_BUCKETS = (0.1, 0.3, 0.5, 1, 2, 5)
ORDER_HTTP_BUCKETS = (0.1, 0.3, 0.5, 1, 2, 5, 10)
DB_BUCKETS = (0.01, 0.05, 0.1, 0.5, 1)


def common_metrics(http_buckets: Iterable[float] = HTTP_BUCKETS) -> list[MetricSpec]:
    return [
        counter("http_requests_total", "Total HTTP requests", ["method", "endpoint", "status"]),
        histogram(
            "http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["method", "endpoint", "status"],
            buckets=http_buckets,
        ),
        histogram(
            "database_query_duration_seconds",
            "Database query duration in seconds",
            ["operation", "collection"],
            buckets=DB_BUCKETS,
        ),
        gauge("database_connections_active", "Active database connections"),
        counter("cache_hits_total", "Total cache hits"),
        counter("cache_misses_total", "Total cache misses"),
    ]


USER_METRICS = [
    counter("user_registrations_total", "Total user registrations"),
    counter("user_logins_total", "Total user logins"),
    counter("user_logins_failed_total", "Total failed user logins"),
    gauge("database_connections_total", "Total database connections"),
    gauge("database_collections_total", "Total collections in database"),
]

PRODUCT_METRICS = [
    counter("products_created_total", "Total products created", ["category"]),
    counter("products_viewed_total", "Total product views"),
    counter("products_purchased_total", "Total products purchased", ["category"]),
    counter("stock_updates_total", "Total stock updates"),
]

ORDER_METRICS = [
    counter("orders_created_total", "Total orders created", ["status"]),
    counter("orders_completed_total", "Total orders completed"),
    counter("orders_failed_total", "Total orders failed"),
    counter("revenue_total", "Total revenue generated", ["currency"]),
    histogram(
        "external_api_latency_seconds",
        "External API call latency",
        ["service", "endpoint"],
        buckets=(0.1, 0.5, 1, 2, 5),
    ),
    histogram(
        "order_processing_time_seconds",
        "Order processing time in seconds",
        ["type"],
        buckets=(0.1, 1, 5, 10, 30, 60),
    ),
    gauge("pending_orders", "Number of pending orders"),
]


def build_registry(service_name: str, specs: Iterable[MetricSpec] = (),
                   http_buckets: Iterable[float] = HTTP_BUCKETS,
                   runtime_metrics: bool = True) -> MetricsRegistry:
    registry = MetricsRegistry({"service": service_name}, runtime_metrics=runtime_metrics)
    registry.register_all(common_metrics(http_buckets))
    registry.register_all(specs)
    return registry
