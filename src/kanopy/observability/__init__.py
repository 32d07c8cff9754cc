"""Observability package: Prometheus-style engine metrics."""

from kanopy.observability.metrics import (
    EngineMetrics,
    MetricsRegistry,
    get_engine_metrics,
    get_metrics_registry,
)

__all__ = ["EngineMetrics", "MetricsRegistry", "get_engine_metrics", "get_metrics_registry"]
