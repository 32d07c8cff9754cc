"""Prometheus-style metrics for the engine.

Exposed through the ``/metrics`` endpoint of :mod:`kanopy.api.app`.

Metric types:
- Counter: Monotonically increasing value
- Gauge: Value that can go up or down
- Histogram: Distribution of values

Example:
    >>> from kanopy.observability.metrics import get_engine_metrics
    >>>
    >>> metrics = get_engine_metrics()
    >>> metrics.phases.labels(func="Upload", state="succeeded").inc()
    >>> metrics.phase_duration.labels(func="Upload").observe(1.5)
"""

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class Labels:
    """Immutable label set for metrics."""

    _labels: tuple[tuple[str, str], ...]

    @classmethod
    def from_dict(cls, d: dict[str, str] | None) -> "Labels":
        if not d:
            return cls(())
        return cls(tuple(sorted(d.items())))

    def to_dict(self) -> dict[str, str]:
        return dict(self._labels)


class Metric(ABC):
    """Base class for metrics."""

    metric_type = "untyped"

    def __init__(self, name: str, description: str = ""):
        self.name = name
        self.description = description
        self._lock = threading.Lock()

    @abstractmethod
    def collect(self) -> list[dict[str, Any]]:
        """Collect metric values for export."""
        ...


class Counter(Metric):
    """A monotonically increasing counter."""

    metric_type = "counter"

    def __init__(self, name: str, description: str = "", labels: list[str] | None = None):
        super().__init__(name, description)
        self._label_names = labels or []
        self._values: dict[Labels, float] = {}

    def labels(self, **kwargs: str) -> "CounterChild":
        return CounterChild(self, Labels.from_dict(kwargs))

    def inc(self, value: float = 1.0) -> None:
        self.labels().inc(value)

    def _inc(self, labels: Labels, value: float) -> None:
        with self._lock:
            self._values[labels] = self._values.get(labels, 0.0) + value

    def _get(self, labels: Labels) -> float:
        with self._lock:
            return self._values.get(labels, 0.0)

    def collect(self) -> list[dict[str, Any]]:
        with self._lock:
            return [
                {"name": self.name, "type": "counter", "labels": labels.to_dict(), "value": value}
                for labels, value in self._values.items()
            ]


class CounterChild:
    """Counter with fixed labels."""

    def __init__(self, counter: Counter, labels: Labels):
        self._counter = counter
        self._labels = labels

    def inc(self, value: float = 1.0) -> None:
        if value < 0:
            raise ValueError("Counter can only increase")
        self._counter._inc(self._labels, value)

    @property
    def value(self) -> float:
        return self._counter._get(self._labels)


class Gauge(Metric):
    """A value that can go up or down."""

    metric_type = "gauge"

    def __init__(self, name: str, description: str = "", labels: list[str] | None = None):
        super().__init__(name, description)
        self._label_names = labels or []
        self._values: dict[Labels, float] = {}

    def labels(self, **kwargs: str) -> "GaugeChild":
        return GaugeChild(self, Labels.from_dict(kwargs))

    def inc(self, value: float = 1.0) -> None:
        self.labels().inc(value)

    def dec(self, value: float = 1.0) -> None:
        self.labels().dec(value)

    def _add(self, labels: Labels, value: float) -> None:
        with self._lock:
            self._values[labels] = self._values.get(labels, 0.0) + value

    def _get(self, labels: Labels) -> float:
        with self._lock:
            return self._values.get(labels, 0.0)

    def collect(self) -> list[dict[str, Any]]:
        with self._lock:
            return [
                {"name": self.name, "type": "gauge", "labels": labels.to_dict(), "value": value}
                for labels, value in self._values.items()
            ]


class GaugeChild:
    """Gauge with fixed labels."""

    def __init__(self, gauge: Gauge, labels: Labels):
        self._gauge = gauge
        self._labels = labels

    def inc(self, value: float = 1.0) -> None:
        self._gauge._add(self._labels, value)

    def dec(self, value: float = 1.0) -> None:
        self._gauge._add(self._labels, -value)

    @property
    def value(self) -> float:
        return self._gauge._get(self._labels)


class Histogram(Metric):
    """A distribution of values."""

    metric_type = "histogram"

    DEFAULT_BUCKETS = (0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0, 300.0, float("inf"))

    def __init__(
        self,
        name: str,
        description: str = "",
        labels: list[str] | None = None,
        buckets: tuple[float, ...] | None = None,
    ):
        super().__init__(name, description)
        self._label_names = labels or []
        self._buckets = buckets or self.DEFAULT_BUCKETS
        self._data: dict[Labels, dict[str, Any]] = {}

    def labels(self, **kwargs: str) -> "HistogramChild":
        return HistogramChild(self, Labels.from_dict(kwargs))

    def observe(self, value: float) -> None:
        self.labels().observe(value)

    def _observe(self, labels: Labels, value: float) -> None:
        with self._lock:
            if labels not in self._data:
                self._data[labels] = {
                    "buckets": dict.fromkeys(self._buckets, 0),
                    "sum": 0.0,
                    "count": 0,
                }

            data = self._data[labels]
            data["sum"] += value
            data["count"] += 1

            for bucket in self._buckets:
                if value <= bucket:
                    data["buckets"][bucket] += 1

    def _count(self, labels: Labels) -> int:
        with self._lock:
            data = self._data.get(labels)
            return data["count"] if data else 0

    def collect(self) -> list[dict[str, Any]]:
        with self._lock:
            return [
                {
                    "name": self.name,
                    "type": "histogram",
                    "labels": labels.to_dict(),
                    "buckets": dict(data["buckets"]),
                    "sum": data["sum"],
                    "count": data["count"],
                }
                for labels, data in self._data.items()
            ]


class HistogramChild:
    """Histogram with fixed labels."""

    def __init__(self, histogram: Histogram, labels: Labels):
        self._histogram = histogram
        self._labels = labels

    def observe(self, value: float) -> None:
        self._histogram._observe(self._labels, value)

    @property
    def count(self) -> int:
        return self._histogram._count(self._labels)


class MetricsRegistry:
    """Registry of all metrics for collection and export."""

    def __init__(self):
        self._metrics: dict[str, Metric] = {}
        self._lock = threading.Lock()

    def counter(self, name: str, description: str = "", labels: list[str] | None = None) -> Counter:
        with self._lock:
            if name not in self._metrics:
                self._metrics[name] = Counter(name, description, labels)
            return self._metrics[name]

    def gauge(self, name: str, description: str = "", labels: list[str] | None = None) -> Gauge:
        with self._lock:
            if name not in self._metrics:
                self._metrics[name] = Gauge(name, description, labels)
            return self._metrics[name]

    def histogram(
        self,
        name: str,
        description: str = "",
        labels: list[str] | None = None,
        buckets: tuple[float, ...] | None = None,
    ) -> Histogram:
        with self._lock:
            if name not in self._metrics:
                self._metrics[name] = Histogram(name, description, labels, buckets)
            return self._metrics[name]

    def collect(self) -> list[dict[str, Any]]:
        with self._lock:
            metrics = list(self._metrics.values())
        results = []
        for metric in metrics:
            results.extend(metric.collect())
        return results

    def export_prometheus(self) -> str:
        """Export metrics in Prometheus text format."""
        with self._lock:
            metrics = list(self._metrics.values())

        lines = []
        for metric in metrics:
            samples = metric.collect()
            if not samples:
                continue
            if metric.description:
                lines.append(f"# HELP {metric.name} {metric.description}")
            lines.append(f"# TYPE {metric.name} {metric.metric_type}")

            for data in samples:
                name = data["name"]
                labels = data.get("labels", {})
                if labels:
                    label_str = "{" + ",".join(f'{k}="{v}"' for k, v in labels.items()) + "}"
                else:
                    label_str = ""

                if data["type"] in ("counter", "gauge"):
                    lines.append(f"{name}{label_str} {data['value']}")
                elif data["type"] == "histogram":
                    for bucket, count in data["buckets"].items():
                        le = "+Inf" if bucket == float("inf") else bucket
                        bucket_labels = f'{label_str[:-1]},le="{le}"}}' if label_str else f'{{le="{le}"}}'
                        lines.append(f"{name}_bucket{bucket_labels} {count}")
                    lines.append(f"{name}_sum{label_str} {data['sum']}")
                    lines.append(f"{name}_count{label_str} {data['count']}")

        return "\n".join(lines) + ("\n" if lines else "")


# Global registry
_default_registry = MetricsRegistry()


def get_metrics_registry() -> MetricsRegistry:
    """Get the default metrics registry."""
    return _default_registry


class EngineMetrics:
    """Pre-defined metrics for blueprint execution."""

    def __init__(self, registry: MetricsRegistry | None = None):
        reg = registry or _default_registry

        self.phases = reg.counter(
            "kanopy_phases_total",
            "Phases that reached a terminal state",
            ["func", "state"],
        )
        self.phase_duration = reg.histogram(
            "kanopy_phase_duration_seconds",
            "Phase execution duration in seconds",
            ["func"],
        )
        self.actions = reg.counter(
            "kanopy_actions_total",
            "Actions that reached a terminal state",
            ["state"],
        )
        self.actionsets = reg.counter(
            "kanopy_actionsets_total",
            "ActionSets that reached a terminal state",
            ["state"],
        )
        self.active_actions = reg.gauge(
            "kanopy_active_actions",
            "Actions currently executing",
        )
        self.status_conflicts = reg.counter(
            "kanopy_status_conflicts_total",
            "Status writes that lost an optimistic-concurrency race",
        )


_engine_metrics: EngineMetrics | None = None


def get_engine_metrics() -> EngineMetrics:
    """Engine metrics bound to the default registry (created lazily)."""
    global _engine_metrics
    if _engine_metrics is None:
        _engine_metrics = EngineMetrics()
    return _engine_metrics
