"""Job queue factory.

Centralizes creation of concrete queue and status-store backends so services
only depend on the abstract interfaces.
"""

from enum import Enum

import structlog

from .base import JobQueue
from .memory import InMemoryJobQueue
from .redis_queue import RedisJobQueue
from .status import InMemoryJobStatusStore, JobStatusStore, RedisJobStatusStore

logger = structlog.get_logger("job_queue.factory")


class QueueBackend(Enum):
    """Supported queue backends."""
    MEMORY = "memory"
    REDIS = "redis"


def _backend(config) -> QueueBackend:
    try:
        return QueueBackend(config.ml_queue_backend.lower())
    except ValueError:
        raise ValueError(f"Unsupported queue backend: {config.ml_queue_backend}")


def create_job_queue_from_config(config) -> JobQueue:
    """Create the job queue selected by ``ml_queue_backend``."""
    backend = _backend(config)
    options = dict(
        name=config.ml_queue_name,
        visibility_timeout=config.ml_queue_visibility_timeout,
        max_receive_count=config.ml_queue_max_receive_count,
        dedup_window=config.ml_queue_dedup_window_seconds,
    )
    if backend == QueueBackend.REDIS:
        queue: JobQueue = RedisJobQueue(config.ml_redis_url, **options)
    else:
        queue = InMemoryJobQueue(**options)

    logger.info("Created job queue", backend=backend.value, queue=config.ml_queue_name)
    return queue


def create_status_store_from_config(config) -> JobStatusStore:
    """Status store colocated with the queue backend."""
    if _backend(config) == QueueBackend.REDIS:
        return RedisJobStatusStore(config.ml_redis_url, key_prefix=f"jobs:{config.ml_queue_name}")
    return InMemoryJobStatusStore()
