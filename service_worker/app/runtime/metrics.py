"""Metrics collection facade for the worker pool.

Re-exports the shared metrics helpers. Workers record job outcomes,
inference latency, queue depth and scaling decisions.
"""

from libs.common.metrics import MetricsCollector, get_metrics_collector

__all__ = ["MetricsCollector", "get_metrics_collector"]
