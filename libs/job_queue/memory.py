"""In-process job queue.

Implements the full visibility-timeout contract with an asyncio condition for
long polling. Suitable for a single-process deployment (gateway with an
embedded worker pool) and for tests; the clock is injectable so visibility
expiry can be exercised without sleeping.
"""

import asyncio
import itertools
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

import structlog

from .base import DeadLetter, JobQueue, QueueDepth, ReceivedMessage, StaleReceiptError

logger = structlog.get_logger("job_queue.memory")


@dataclass
class _StoredMessage:
    message_id: str
    body: str
    enqueued_at: float
    visible_at: float
    order: int
    receive_count: int = 0
    receipt_handle: Optional[str] = None


class InMemoryJobQueue(JobQueue):
    """Job queue held in process memory."""

    def __init__(
        self,
        name: str = "genai_jobs",
        visibility_timeout: float = 300.0,
        max_receive_count: int = 5,
        dedup_window: float = 300.0,
        clock: Callable[[], float] = time.time
    ):
        super().__init__(name, visibility_timeout, max_receive_count, dedup_window)
        self._clock = clock
        self._messages: Dict[str, _StoredMessage] = {}
        self._receipts: Dict[str, str] = {}
        self._dead: "OrderedDict[str, DeadLetter]" = OrderedDict()
        self._dedup: Dict[str, Tuple[str, float]] = {}
        self._sequence = itertools.count()
        self._lock = asyncio.Lock()
        self._changed = asyncio.Condition(self._lock)

    async def enqueue(
        self,
        message_id: str,
        body: str,
        dedup_id: Optional[str] = None,
        delay_seconds: float = 0.0
    ) -> str:
        async with self._changed:
            now = self._clock()
            self._purge_dedup(now)

            if dedup_id is not None:
                existing = self._dedup.get(dedup_id)
                if existing is not None:
                    logger.info(
                        "Duplicate enqueue suppressed",
                        queue=self.name,
                        dedup_id=dedup_id,
                        message_id=existing[0]
                    )
                    return existing[0]

            if message_id in self._messages or message_id in self._dead:
                return message_id

            self._messages[message_id] = _StoredMessage(
                message_id=message_id,
                body=body,
                enqueued_at=now,
                visible_at=now + max(delay_seconds, 0.0),
                order=next(self._sequence),
            )
            if dedup_id is not None and self.dedup_window > 0:
                self._dedup[dedup_id] = (message_id, now + self.dedup_window)

            self._changed.notify_all()
            return message_id

    async def receive(
        self,
        max_messages: int = 1,
        visibility_timeout: Optional[float] = None,
        wait_seconds: float = 0.0
    ) -> List[ReceivedMessage]:
        if max_messages < 1:
            raise ValueError("max_messages must be at least 1")
        timeout = self.visibility_timeout if visibility_timeout is None else visibility_timeout

        loop = asyncio.get_running_loop()
        deadline = loop.time() + max(wait_seconds, 0.0)

        async with self._changed:
            while True:
                delivered = self._receive_locked(max_messages, timeout)
                remaining = deadline - loop.time()
                if delivered or remaining <= 0:
                    return delivered

                # Wake early when an invisible message is due to reappear.
                wait = remaining
                next_due = self._seconds_until_next_visible()
                if next_due is not None:
                    wait = min(wait, max(next_due, 0.01))
                try:
                    await asyncio.wait_for(self._changed.wait(), wait)
                except asyncio.TimeoutError:
                    pass

    def _receive_locked(self, max_messages: int, timeout: float) -> List[ReceivedMessage]:
        now = self._clock()
        ready = sorted(
            (m for m in self._messages.values() if m.visible_at <= now),
            key=lambda m: (m.visible_at, m.order)
        )

        delivered: List[ReceivedMessage] = []
        for message in ready:
            if len(delivered) >= max_messages:
                break

            if message.receive_count >= self.max_receive_count:
                self._move_to_dead_letter(message, "max_receive_count_exceeded", now)
                continue

            if message.receipt_handle is not None:
                self._receipts.pop(message.receipt_handle, None)
            handle = uuid.uuid4().hex
            message.receipt_handle = handle
            message.receive_count += 1
            message.visible_at = now + timeout
            self._receipts[handle] = message.message_id

            delivered.append(ReceivedMessage(
                message_id=message.message_id,
                body=message.body,
                receipt_handle=handle,
                receive_count=message.receive_count,
                enqueued_at=message.enqueued_at,
            ))
        return delivered

    def _seconds_until_next_visible(self) -> Optional[float]:
        if not self._messages:
            return None
        now = self._clock()
        return min(m.visible_at for m in self._messages.values()) - now

    def _lookup(self, receipt_handle: str) -> _StoredMessage:
        message_id = self._receipts.get(receipt_handle)
        message = self._messages.get(message_id) if message_id else None
        if message is None or message.receipt_handle != receipt_handle:
            raise StaleReceiptError(f"Receipt handle {receipt_handle!r} is not current")
        return message

    def _move_to_dead_letter(self, message: _StoredMessage, reason: str, now: float) -> None:
        self._messages.pop(message.message_id, None)
        if message.receipt_handle is not None:
            self._receipts.pop(message.receipt_handle, None)
        self._dead[message.message_id] = DeadLetter(
            message_id=message.message_id,
            body=message.body,
            receive_count=message.receive_count,
            reason=reason,
            dead_lettered_at=now,
        )
        logger.warning(
            "Message moved to dead-letter queue",
            queue=self.name,
            message_id=message.message_id,
            receive_count=message.receive_count,
            reason=reason
        )

    def _purge_dedup(self, now: float) -> None:
        expired = [key for key, (_, expires_at) in self._dedup.items() if expires_at <= now]
        for key in expired:
            del self._dedup[key]

    async def delete(self, receipt_handle: str) -> None:
        async with self._changed:
            message = self._lookup(receipt_handle)
            del self._messages[message.message_id]
            del self._receipts[receipt_handle]

    async def change_visibility(self, receipt_handle: str, timeout: float) -> None:
        if timeout < 0:
            raise ValueError("timeout must not be negative")
        async with self._changed:
            message = self._lookup(receipt_handle)
            message.visible_at = self._clock() + timeout
            if timeout == 0:
                self._changed.notify_all()

    async def dead_letter(self, receipt_handle: str, reason: str) -> None:
        async with self._changed:
            message = self._lookup(receipt_handle)
            self._move_to_dead_letter(message, reason, self._clock())

    async def depth(self) -> QueueDepth:
        async with self._changed:
            now = self._clock()
            depth = QueueDepth(dead_letter=len(self._dead))
            for message in self._messages.values():
                if message.visible_at <= now:
                    depth.visible += 1
                elif message.receipt_handle is not None:
                    depth.in_flight += 1
                else:
                    depth.delayed += 1
            return depth

    async def list_dead_letters(self, limit: int = 100) -> List[DeadLetter]:
        async with self._changed:
            return list(itertools.islice(self._dead.values(), limit))

    async def redrive_dead_letters(self, limit: int = 100) -> int:
        async with self._changed:
            now = self._clock()
            ids = list(itertools.islice(self._dead.keys(), limit))
            for message_id in ids:
                dead = self._dead.pop(message_id)
                self._messages[message_id] = _StoredMessage(
                    message_id=message_id,
                    body=dead.body,
                    enqueued_at=now,
                    visible_at=now,
                    order=next(self._sequence),
                )
            if ids:
                logger.info("Redrove dead-lettered messages", queue=self.name, count=len(ids))
                self._changed.notify_all()
            return len(ids)
