"""Elastic pool of worker loops.

Each replica is an asyncio task that long-polls the queue and hands
deliveries to a shared ``JobWorker``. Scaling down stops the newest
replicas after their current job; draining stops all of them and, after a
grace period, cancels whatever is still running so those messages are
released for redelivery.

The pool is also the capacity provider the autoscaler applies decisions
to. It records the capacity type it runs on and refuses Spot capacity after
an interruption notice.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from libs.common.events import EventPublisher, JobDeadLetteredEvent, publish_safely
from libs.common.logging import ServiceLogger
from libs.common.metrics import MetricsCollector
from libs.job_queue.base import JobQueue
from libs.job_queue.models import JobStatus
from libs.job_queue.status import JobStatusStore, redrive_dead_lettered_jobs

from ..scaling.autoscaler import CapacityType, CapacityUnavailableError, ScalingDecision
from .job_worker import JobWorker


@dataclass
class _Replica:
    replica_id: int
    stop_event: asyncio.Event = field(default_factory=asyncio.Event)
    task: Optional[asyncio.Task] = None
    current_job: Optional[str] = None


class WorkerPool:
    """Runs N concurrent worker loops against one queue."""

    def __init__(
        self,
        worker: JobWorker,
        queue: JobQueue,
        status_store: JobStatusStore,
        poll_wait_seconds: float = 5.0,
        event_publisher: Optional[EventPublisher] = None,
        metrics: Optional[MetricsCollector] = None,
        capacity_type: CapacityType = CapacityType.ON_DEMAND
    ):
        self.worker = worker
        self.queue = queue
        self.status_store = status_store
        self.poll_wait_seconds = poll_wait_seconds
        self.event_publisher = event_publisher
        self.metrics = metrics
        self.capacity_type = capacity_type
        self.spot_available = True
        self.logger = ServiceLogger("worker_pool", queue=queue.name)

        self._replicas: Dict[int, _Replica] = {}
        self._next_id = 0

    @property
    def size(self) -> int:
        """Replicas that are running and not asked to stop."""
        return sum(1 for r in self._replicas.values() if not r.stop_event.is_set())

    def _start_replica(self) -> None:
        replica = _Replica(replica_id=self._next_id)
        self._next_id += 1
        replica.task = asyncio.create_task(self._run(replica), name=f"worker-{replica.replica_id}")
        self._replicas[replica.replica_id] = replica
        self.logger.info("Worker replica started", replica_id=replica.replica_id)

    async def _run(self, replica: _Replica) -> None:
        log = self.logger.bind(replica_id=replica.replica_id)
        try:
            while not replica.stop_event.is_set():
                try:
                    messages = await self.queue.receive(max_messages=1, wait_seconds=self.poll_wait_seconds)
                except Exception as e:
                    log.error("Failed to receive from queue", error=str(e))
                    await asyncio.sleep(1.0)
                    continue

                for message in messages:
                    replica.current_job = message.message_id
                    try:
                        outcome = await self.worker.process(message)
                        log.info("Delivery processed", message_id=message.message_id, outcome=outcome)
                    except asyncio.CancelledError:
                        raise
                    except Exception as e:
                        # A single job must never take down the loop; the
                        # message reappears after its visibility timeout.
                        log.exception("Unhandled error processing delivery", message_id=message.message_id, error=str(e))
                    finally:
                        replica.current_job = None
        finally:
            self._replicas.pop(replica.replica_id, None)
            log.info("Worker replica stopped")

    async def scale_to(self, replicas: int) -> int:
        """Start or stop replicas until ``size == replicas``."""
        replicas = max(replicas, 0)
        while self.size < replicas:
            self._start_replica()

        active = sorted((r for r in self._replicas.values() if not r.stop_event.is_set()),
                        key=lambda r: r.replica_id)
        for replica in reversed(active[replicas:]):
            replica.stop_event.set()
            self.logger.info("Worker replica stopping", replica_id=replica.replica_id)

        if self.metrics:
            self.metrics.set_worker_replicas(self.capacity_type.value, replicas)
        return replicas

    async def apply(self, decision: ScalingDecision) -> None:
        """Capacity provider hook used by the autoscaler."""
        if decision.capacity_type == CapacityType.SPOT and decision.desired_replicas > 0 and not self.spot_available:
            raise CapacityUnavailableError("Spot capacity unavailable after interruption notice")
        if decision.capacity_type != self.capacity_type and self.metrics:
            self.metrics.set_worker_replicas(self.capacity_type.value, 0)
        self.capacity_type = decision.capacity_type
        await self.scale_to(decision.desired_replicas)

    def mark_spot_unavailable(self) -> None:
        self.spot_available = False

    def _tasks(self) -> List[asyncio.Task]:
        return [r.task for r in self._replicas.values() if r.task is not None]

    async def drain(self, grace_seconds: float = 30.0) -> None:
        """Stop all replicas; cancel jobs still running after the grace period."""
        for replica in list(self._replicas.values()):
            replica.stop_event.set()
        tasks = self._tasks()
        if not tasks:
            return

        self.logger.info("Draining worker pool", replicas=len(tasks), grace_seconds=grace_seconds)
        _, pending = await asyncio.wait(tasks, timeout=grace_seconds)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            self.logger.warning("Cancelled in-flight jobs after grace period", cancelled=len(pending))

        if self.metrics:
            self.metrics.set_worker_replicas(self.capacity_type.value, 0)

    async def stop(self) -> None:
        """Stop immediately, releasing in-flight messages."""
        await self.drain(grace_seconds=0)

    async def reconcile_dead_letters(self, limit: int = 100) -> int:
        """Mark jobs the queue dead-lettered on its own (e.g. repeated crashes).

        Returns the number of jobs whose status changed.
        """
        updated = 0
        for dead in await self.queue.list_dead_letters(limit):
            state = await self.status_store.get(dead.message_id)
            if state is None or state.status.is_terminal:
                continue
            if await self.status_store.transition(dead.message_id, JobStatus.DEAD_LETTERED, error=dead.reason):
                updated += 1
                self.logger.warning("Job dead-lettered by queue", job_id=dead.message_id, reason=dead.reason)
                if self.event_publisher is not None:
                    await asyncio.to_thread(
                        publish_safely,
                        self.event_publisher,
                        JobDeadLetteredEvent(job_id=dead.message_id, tenant_id=state.tenant_id, reason=dead.reason),
                    )
        return updated

    async def redrive_dead_letters(self, limit: int = 100) -> int:
        """Give dead-lettered jobs another round of deliveries."""
        return await redrive_dead_lettered_jobs(self.queue, self.status_store, limit)

    def get_stats(self) -> Dict[str, object]:
        return {
            "replicas": self.size,
            "capacity_type": self.capacity_type.value,
            "spot_available": self.spot_available,
            "busy": sum(1 for r in self._replicas.values() if r.current_job is not None),
        }
