"""Base job queue interface.

Defines the durable-queue contract the gateway and workers depend on,
independent of the backing implementation (in-memory, Redis, SQS).

Semantics
- Delivery is at-least-once. A received message stays invisible for its
  visibility timeout; if it is not deleted before the timeout lapses it
  becomes visible again and is redelivered with a higher receive count.
- Every delivery issues a new receipt handle. Only the current handle can
  delete or change the visibility of a message, so a worker that lost its
  lease cannot acknowledge work another worker has taken over.
- A message delivered ``max_receive_count`` times without being deleted is
  moved to the dead-letter queue on its next receive.

All methods are asynchronous to support concurrent workers.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional


class QueueError(Exception):
    """Base class for queue failures."""


class StaleReceiptError(QueueError):
    """Receipt handle no longer identifies an in-flight delivery."""


class JobValidationError(ValueError):
    """A job descriptor is malformed and can never be processed."""


@dataclass
class ReceivedMessage:
    """A single delivery of a queued message."""
    message_id: str
    body: str
    receipt_handle: str
    receive_count: int
    enqueued_at: float

    @property
    def is_redelivery(self) -> bool:
        return self.receive_count > 1


@dataclass
class DeadLetter:
    """A message parked in the dead-letter queue."""
    message_id: str
    body: str
    receive_count: int
    reason: str
    dead_lettered_at: float


@dataclass
class QueueDepth:
    """Snapshot of message counts by state."""
    visible: int = 0
    in_flight: int = 0
    delayed: int = 0
    dead_letter: int = 0

    @property
    def backlog(self) -> int:
        """Messages a worker pool still has to finish."""
        return self.visible + self.in_flight


class JobQueue(ABC):
    """Abstract base class for durable job queues.

    Parameters shared by implementations
    - name: Queue name, used as key prefix / metric label
    - visibility_timeout: Default seconds a received message stays hidden
    - max_receive_count: Deliveries allowed before dead-lettering
    - dedup_window: Seconds a ``dedup_id`` suppresses duplicate enqueues
    """

    def __init__(
        self,
        name: str,
        visibility_timeout: float = 300.0,
        max_receive_count: int = 5,
        dedup_window: float = 300.0
    ):
        if visibility_timeout <= 0:
            raise ValueError("visibility_timeout must be positive")
        if max_receive_count < 1:
            raise ValueError("max_receive_count must be at least 1")
        self.name = name
        self.visibility_timeout = visibility_timeout
        self.max_receive_count = max_receive_count
        self.dedup_window = dedup_window

    @abstractmethod
    async def enqueue(
        self,
        message_id: str,
        body: str,
        dedup_id: Optional[str] = None,
        delay_seconds: float = 0.0
    ) -> str:
        """Add a message.

        Returns the id of the stored message. When ``dedup_id`` was already
        used inside the dedup window, the original message id is returned and
        nothing new is stored.
        """

    @abstractmethod
    async def receive(
        self,
        max_messages: int = 1,
        visibility_timeout: Optional[float] = None,
        wait_seconds: float = 0.0
    ) -> List[ReceivedMessage]:
        """Receive up to ``max_messages`` visible messages.

        With ``wait_seconds > 0`` the call long-polls until at least one
        message is available or the wait elapses.
        """

    @abstractmethod
    async def delete(self, receipt_handle: str) -> None:
        """Acknowledge a delivery. Raises ``StaleReceiptError`` if stale."""

    @abstractmethod
    async def change_visibility(self, receipt_handle: str, timeout: float) -> None:
        """Reset the invisibility window to ``timeout`` seconds from now.

        ``0`` releases the message for immediate redelivery. Raises
        ``StaleReceiptError`` if the handle is stale.
        """

    @abstractmethod
    async def dead_letter(self, receipt_handle: str, reason: str) -> None:
        """Move an in-flight message to the dead-letter queue now."""

    @abstractmethod
    async def depth(self) -> QueueDepth:
        """Count messages by state."""

    @abstractmethod
    async def list_dead_letters(self, limit: int = 100) -> List[DeadLetter]:
        """Return dead-lettered messages, oldest first."""

    @abstractmethod
    async def redrive_dead_letters(self, limit: int = 100) -> int:
        """Move dead-lettered messages back to the queue with a fresh count."""

    async def close(self) -> None:
        """Release backend resources."""
        return None
