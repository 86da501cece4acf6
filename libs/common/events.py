"""Event system for job lifecycle notifications.

Producers publish JSON payloads on Redis pub/sub channels derived from
``EventType``; anything interested in job progress (dashboards, billing,
webhook fan-out) subscribes. Events are notifications only: the queue, the
status store and the ledger remain the sources of truth.

Key concepts
- ``EventType`` identifiers are versioned (``.v1`` suffix)
- ``EventPublisher`` composes channel names as ``{prefix}:{event_type}``
"""

import json
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

import redis
import structlog

logger = structlog.get_logger("events")


class EventType(Enum):
    """Event types for the dispatch platform."""
    JOB_SUBMITTED = "platform.job.submitted.v1"
    JOB_COMPLETED = "platform.job.completed.v1"
    JOB_FAILED = "platform.job.failed.v1"
    JOB_DEAD_LETTERED = "platform.job.dead_lettered.v1"
    WORKERS_SCALED = "platform.workers.scaled.v1"


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class BaseEvent:
    """Base event class.

    Child events set their ``event_type`` in ``__post_init__``.
    """
    timestamp: int = 0
    event_type: str = ""

    def __post_init__(self):
        if not self.timestamp:
            self.timestamp = _now_ms()

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


@dataclass
class JobSubmittedEvent(BaseEvent):
    """Emitted when the gateway accepts a new job."""
    job_id: str = ""
    tenant_id: str = ""
    user_id: str = ""
    model_id: str = ""

    def __post_init__(self):
        super().__post_init__()
        self.event_type = EventType.JOB_SUBMITTED.value


@dataclass
class JobCompletedEvent(BaseEvent):
    """Emitted once per job after its ledger record is written."""
    job_id: str = ""
    tenant_id: str = ""
    ledger_sequence: int = 0
    asset_keys: List[str] = field(default_factory=list)

    def __post_init__(self):
        super().__post_init__()
        self.event_type = EventType.JOB_COMPLETED.value


@dataclass
class JobFailedEvent(BaseEvent):
    """Emitted for a failed attempt; ``final`` marks terminal failures."""
    job_id: str = ""
    tenant_id: str = ""
    error: str = ""
    attempt: int = 0
    final: bool = False

    def __post_init__(self):
        super().__post_init__()
        self.event_type = EventType.JOB_FAILED.value


@dataclass
class JobDeadLetteredEvent(BaseEvent):
    """Emitted when a job is moved to the dead-letter queue."""
    job_id: str = ""
    tenant_id: str = ""
    reason: str = ""

    def __post_init__(self):
        super().__post_init__()
        self.event_type = EventType.JOB_DEAD_LETTERED.value


@dataclass
class WorkersScaledEvent(BaseEvent):
    """Emitted when the autoscaler changes the worker count."""
    previous_replicas: int = 0
    desired_replicas: int = 0
    capacity_type: str = ""
    reason: str = ""

    def __post_init__(self):
        super().__post_init__()
        self.event_type = EventType.WORKERS_SCALED.value


class EventPublisher:
    """Publishes events to Redis.

    Notes
    - Publishing retries with exponential backoff; after the last attempt
      the error is logged and re-raised to the caller.
    - Messages are serialized as JSON to keep consumers language-agnostic.
    """

    def __init__(
        self,
        redis_url: str,
        channel_prefix: str = "platform_events",
        max_retries: int = 3,
        base_delay: float = 0.5
    ):
        self.redis_client = redis.from_url(redis_url)
        self.channel_prefix = channel_prefix
        self.max_retries = max_retries
        self.base_delay = base_delay

    def channel_for(self, event: BaseEvent) -> str:
        return f"{self.channel_prefix}:{event.event_type}"

    def publish(self, event: BaseEvent) -> None:
        """Publish an event with retry logic."""
        channel = self.channel_for(event)
        message = event.to_json()

        for attempt in range(self.max_retries):
            try:
                self.redis_client.publish(channel, message)
                logger.debug("Event published", event_type=event.event_type, channel=channel)
                return
            except redis.RedisError as e:
                if attempt == self.max_retries - 1:
                    logger.error(
                        "Failed to publish event after all retries",
                        event_type=event.event_type,
                        error=str(e)
                    )
                    raise

                delay = self.base_delay * (2 ** attempt)
                logger.warning(
                    "Event publish failed, retrying",
                    event_type=event.event_type,
                    attempt=attempt + 1,
                    max_retries=self.max_retries,
                    delay=delay,
                    error=str(e)
                )
                time.sleep(delay)

    def close(self) -> None:
        self.redis_client.close()


def publish_safely(publisher: Optional[EventPublisher], event: BaseEvent) -> None:
    """Publish if a publisher is configured; never let notification failures escape.

    Job processing must not fail because pub/sub is down, so errors are
    logged here instead of propagated.
    """
    if publisher is None:
        return
    try:
        publisher.publish(event)
    except redis.RedisError as e:
        logger.warning("Dropped event notification", event_type=event.event_type, error=str(e))


def create_event_publisher(redis_url: str, channel_prefix: str = "platform_events") -> EventPublisher:
    """Create an event publisher."""
    return EventPublisher(redis_url, channel_prefix=channel_prefix)


def create_event_publisher_from_config(config) -> Optional[EventPublisher]:
    """Return a publisher when events are enabled, else ``None``."""
    if not config.ml_events_enabled:
        return None
    return create_event_publisher(config.ml_redis_url, config.ml_events_channel_prefix)
