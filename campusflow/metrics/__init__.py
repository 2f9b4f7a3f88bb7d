"""Cycle, flow and congestion metrics."""

from .collector import MetricSnapshot, MetricsCollector, summarize_status

__all__ = ["MetricSnapshot", "MetricsCollector", "summarize_status"]
