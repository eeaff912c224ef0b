"""Observability primitives: in-process metrics."""

from partner_pulse.observability.metrics import MetricsCollector, get_metrics

__all__ = ["MetricsCollector", "get_metrics"]
