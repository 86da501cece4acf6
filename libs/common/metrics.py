"""Metrics collection for platform services.

Provides a thin convenience wrapper around ``prometheus_client`` so the
gateway and workers record HTTP, job, queue, ledger, asset and scaling
metrics consistently. Queue depth gauges are the signal an external
autoscaler (KEDA, Karpenter provisioners) scrapes.

Design notes
- Metrics and labels are predeclared to avoid cardinality explosions;
  tenant ids are deliberately not used as labels
- A single registry is kept per collector (can be injected for tests)
- ``measure_time`` is provided for quick timing instrumentation
"""

import time
from functools import wraps
from typing import Any, Callable, Optional

import structlog
from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest

logger = structlog.get_logger("metrics")


class MetricsCollector:
    """Centralized metrics collection for platform services.

    Parameters
    - service_name: Logical name used for scoping
    - registry: Optional custom ``CollectorRegistry`` (e.g. for testing)
    """

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry or CollectorRegistry()

        self.request_count = Counter(
            'http_requests_total',
            'Total HTTP requests',
            ['method', 'endpoint', 'status'],
            registry=self.registry
        )

        self.request_duration = Histogram(
            'http_request_duration_seconds',
            'HTTP request duration',
            ['method', 'endpoint'],
            registry=self.registry
        )

        # Job lifecycle
        self.jobs_submitted = Counter(
            'platform_jobs_submitted_total',
            'Jobs accepted by the gateway',
            ['model_id', 'deduplicated'],
            registry=self.registry
        )

        self.jobs_processed = Counter(
            'platform_jobs_processed_total',
            'Job processing attempts partitioned by outcome',
            ['outcome'],
            registry=self.registry
        )

        self.job_duration = Histogram(
            'platform_job_duration_seconds',
            'Wall time of a single job processing attempt',
            ['outcome'],
            buckets=(0.5, 1, 2.5, 5, 10, 30, 60, 120, 300, 600, 1800),
            registry=self.registry
        )

        self.inference_duration = Histogram(
            'platform_inference_duration_seconds',
            'Inference backend call duration',
            ['backend', 'model_id'],
            buckets=(0.5, 1, 2.5, 5, 10, 30, 60, 120, 300, 600),
            registry=self.registry
        )

        # Queue
        self.queue_depth = Gauge(
            'platform_queue_messages',
            'Queue depth by message state',
            ['queue', 'state'],
            registry=self.registry
        )

        self.queue_redeliveries = Counter(
            'platform_queue_redeliveries_total',
            'Messages delivered more than once',
            ['queue'],
            registry=self.registry
        )

        # Provenance and storage
        self.ledger_appends = Counter(
            'platform_ledger_appends_total',
            'Ledger append calls partitioned by result',
            ['result'],
            registry=self.registry
        )

        self.asset_writes = Counter(
            'platform_asset_writes_total',
            'Asset writes partitioned by result',
            ['result'],
            registry=self.registry
        )

        # Scaling
        self.worker_replicas = Gauge(
            'platform_worker_replicas',
            'Running worker loops by capacity type',
            ['capacity_type'],
            registry=self.registry
        )

        self.scaling_decisions = Counter(
            'platform_scaling_decisions_total',
            'Autoscaler decisions partitioned by direction',
            ['direction', 'capacity_type'],
            registry=self.registry
        )

        self.spot_fallbacks = Counter(
            'platform_spot_fallbacks_total',
            'Times Spot capacity was unavailable and On-Demand was used',
            registry=self.registry
        )

    def record_http_request(
        self,
        method: str,
        endpoint: str,
        status: int,
        duration: float
    ) -> None:
        """Record HTTP request metrics.

        duration is expected in seconds to match Prometheus histogram units.
        """
        self.request_count.labels(method=method, endpoint=endpoint, status=status).inc()
        self.request_duration.labels(method=method, endpoint=endpoint).observe(duration)

    def record_job_submitted(self, model_id: str, deduplicated: bool = False) -> None:
        self.jobs_submitted.labels(model_id=model_id, deduplicated=str(deduplicated).lower()).inc()

    def record_job_processed(self, outcome: str, duration: Optional[float] = None) -> None:
        """Record one processing attempt.

        ``outcome`` is one of ``succeeded``, ``retrying``, ``failed``,
        ``dead_lettered``, ``released``, ``lost_lease`` or ``skipped``.
        """
        self.jobs_processed.labels(outcome=outcome).inc()
        if duration is not None:
            self.job_duration.labels(outcome=outcome).observe(duration)

    def record_inference(self, backend: str, model_id: str, duration: float) -> None:
        self.inference_duration.labels(backend=backend, model_id=model_id).observe(duration)

    def set_queue_depth(
        self,
        queue: str,
        visible: int,
        in_flight: int,
        delayed: int = 0,
        dead_letter: int = 0
    ) -> None:
        """Publish a depth snapshot for all message states."""
        self.queue_depth.labels(queue=queue, state="visible").set(visible)
        self.queue_depth.labels(queue=queue, state="in_flight").set(in_flight)
        self.queue_depth.labels(queue=queue, state="delayed").set(delayed)
        self.queue_depth.labels(queue=queue, state="dead_letter").set(dead_letter)

    def record_redelivery(self, queue: str) -> None:
        self.queue_redeliveries.labels(queue=queue).inc()

    def record_ledger_append(self, result: str) -> None:
        self.ledger_appends.labels(result=result).inc()

    def record_asset_write(self, result: str) -> None:
        self.asset_writes.labels(result=result).inc()

    def set_worker_replicas(self, capacity_type: str, count: int) -> None:
        self.worker_replicas.labels(capacity_type=capacity_type).set(count)

    def record_scaling_decision(self, direction: str, capacity_type: str) -> None:
        self.scaling_decisions.labels(direction=direction, capacity_type=capacity_type).inc()

    def record_spot_fallback(self) -> None:
        self.spot_fallbacks.inc()

    def get_metrics(self) -> str:
        """Get metrics in Prometheus exposition format for scraping."""
        return generate_latest(self.registry).decode('utf-8')


# Global metrics collector instance
_metrics_collector: Optional[MetricsCollector] = None


def get_metrics_collector(service_name: str) -> MetricsCollector:
    """Get or create metrics collector for a service.

    Returns a process-wide singleton to avoid duplicate collectors/labels.
    """
    global _metrics_collector
    if _metrics_collector is None:
        _metrics_collector = MetricsCollector(service_name)
    return _metrics_collector


def measure_time(operation: str, **labels: Any) -> Callable:
    """Decorator logging the execution time of a coroutine function.

    Example
    >>> @measure_time("ledger.verify", backend="postgres")
    ... async def verify(self):
    ...     ...
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            start_time = time.perf_counter()
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                logger.error(
                    f"Operation {operation} failed",
                    operation=operation,
                    duration_ms=(time.perf_counter() - start_time) * 1000,
                    error=str(e),
                    **labels
                )
                raise
            logger.info(
                f"Operation {operation} completed",
                operation=operation,
                duration_ms=(time.perf_counter() - start_time) * 1000,
                **labels
            )
            return result
        return wrapper
    return decorator
