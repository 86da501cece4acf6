"""Job status store.

Tracks the caller-visible lifecycle of each job. The queue itself only knows
about messages; the gateway answers ``GET /jobs/{id}`` from here and workers
report progress here.

Transitions follow ``ALLOWED_TRANSITIONS``. Terminal states never change
through ``transition``, and a transition to the state a job is already in is
accepted so redelivered work can report the same outcome twice. The one way
out of a terminal state is ``reopen``, which puts a dead-lettered job back to
queued when an operator redrives its message.
"""

import asyncio
import json
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import redis.asyncio as redis_async
import structlog
from redis.exceptions import WatchError

from .base import JobQueue
from .models import JobState, JobStatus, can_transition

logger = structlog.get_logger("job_queue.status")

UPDATABLE_FIELDS = frozenset({"attempts", "error", "asset_keys", "ledger_sequence"})


def _apply_transition(state: JobState, status: JobStatus, fields: Dict[str, Any]) -> Optional[JobState]:
    """Return the updated state, or ``None`` when the transition is refused.

    A same-status transition on a terminal state returns the state untouched.
    """
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Cannot update job fields: {sorted(unknown)}")

    if state.status == status and status.is_terminal:
        return state
    if state.status != status and not can_transition(state.status, status):
        logger.warning(
            "Refused job status transition",
            job_id=state.job_id,
            current=state.status.value,
            requested=status.value
        )
        return None

    state.status = status
    for name, value in fields.items():
        setattr(state, name, value)
    state.updated_at = int(time.time() * 1000)
    return state


def _apply_reopen(state: JobState) -> Optional[JobState]:
    """Return the state moved back to queued, or ``None`` if it is not dead-lettered."""
    if state.status != JobStatus.DEAD_LETTERED:
        return None
    state.status = JobStatus.QUEUED
    state.error = None
    state.updated_at = int(time.time() * 1000)
    return state


class JobStatusStore(ABC):
    """Abstract job status store."""

    @abstractmethod
    async def create(self, state: JobState) -> bool:
        """Store a new job state. Returns ``False`` if the job already exists."""

    @abstractmethod
    async def get(self, job_id: str) -> Optional[JobState]:
        """Fetch the current state of a job."""

    @abstractmethod
    async def transition(self, job_id: str, status: JobStatus, **fields: Any) -> bool:
        """Move a job to ``status`` and update ``fields``.

        Returns ``True`` when the job is in ``status`` afterwards.
        """

    @abstractmethod
    async def reopen(self, job_id: str) -> bool:
        """Move a dead-lettered job back to queued ahead of a redrive.

        Returns ``False`` for unknown jobs and jobs in any other state.
        """

    @abstractmethod
    async def list_for_tenant(self, tenant_id: str, limit: int = 50) -> List[JobState]:
        """Most recently submitted jobs of a tenant, newest first."""

    async def close(self) -> None:
        return None


class InMemoryJobStatusStore(JobStatusStore):
    """Status store held in process memory."""

    def __init__(self):
        self._states: Dict[str, JobState] = {}
        self._lock = asyncio.Lock()

    async def create(self, state: JobState) -> bool:
        async with self._lock:
            if state.job_id in self._states:
                return False
            self._states[state.job_id] = JobState.from_dict(state.to_dict())
            return True

    async def get(self, job_id: str) -> Optional[JobState]:
        async with self._lock:
            state = self._states.get(job_id)
            return JobState.from_dict(state.to_dict()) if state else None

    async def transition(self, job_id: str, status: JobStatus, **fields: Any) -> bool:
        async with self._lock:
            state = self._states.get(job_id)
            if state is None:
                logger.warning("Status update for unknown job", job_id=job_id, status=status.value)
                return False
            return _apply_transition(state, status, fields) is not None

    async def reopen(self, job_id: str) -> bool:
        async with self._lock:
            state = self._states.get(job_id)
            return state is not None and _apply_reopen(state) is not None

    async def list_for_tenant(self, tenant_id: str, limit: int = 50) -> List[JobState]:
        async with self._lock:
            states = [s for s in self._states.values() if s.tenant_id == tenant_id]
        states.sort(key=lambda s: s.submitted_at, reverse=True)
        return [JobState.from_dict(s.to_dict()) for s in states[:limit]]


class RedisJobStatusStore(JobStatusStore):
    """Status store in Redis; transitions use optimistic WATCH/MULTI."""

    def __init__(
        self,
        redis_url: str,
        key_prefix: str = "jobs",
        ttl_seconds: int = 30 * 24 * 3600,
        client: Optional[redis_async.Redis] = None
    ):
        self.redis = client or redis_async.from_url(redis_url, decode_responses=True)
        self.key_prefix = key_prefix
        self.ttl_seconds = ttl_seconds

    def _state_key(self, job_id: str) -> str:
        return f"{self.key_prefix}:state:{job_id}"

    def _tenant_key(self, tenant_id: str) -> str:
        return f"{self.key_prefix}:tenant:{tenant_id}"

    async def create(self, state: JobState) -> bool:
        created = await self.redis.set(
            self._state_key(state.job_id),
            json.dumps(state.to_dict()),
            nx=True,
            ex=self.ttl_seconds,
        )
        if not created:
            return False
        await self.redis.zadd(self._tenant_key(state.tenant_id), {state.job_id: state.submitted_at})
        return True

    async def get(self, job_id: str) -> Optional[JobState]:
        raw = await self.redis.get(self._state_key(job_id))
        return JobState.from_dict(json.loads(raw)) if raw else None

    async def transition(self, job_id: str, status: JobStatus, **fields: Any) -> bool:
        key = self._state_key(job_id)
        async with self.redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    raw = await pipe.get(key)
                    if raw is None:
                        logger.warning("Status update for unknown job", job_id=job_id, status=status.value)
                        return False
                    updated = _apply_transition(JobState.from_dict(json.loads(raw)), status, fields)
                    if updated is None:
                        return False
                    pipe.multi()
                    pipe.set(key, json.dumps(updated.to_dict()), ex=self.ttl_seconds)
                    await pipe.execute()
                    return True
                except WatchError:
                    continue

    async def reopen(self, job_id: str) -> bool:
        key = self._state_key(job_id)
        async with self.redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    raw = await pipe.get(key)
                    if raw is None:
                        return False
                    updated = _apply_reopen(JobState.from_dict(json.loads(raw)))
                    if updated is None:
                        return False
                    pipe.multi()
                    pipe.set(key, json.dumps(updated.to_dict()), ex=self.ttl_seconds)
                    await pipe.execute()
                    return True
                except WatchError:
                    continue

    async def list_for_tenant(self, tenant_id: str, limit: int = 50) -> List[JobState]:
        job_ids = await self.redis.zrevrange(self._tenant_key(tenant_id), 0, limit - 1)
        if not job_ids:
            return []
        raws = await self.redis.mget([self._state_key(job_id) for job_id in job_ids])
        return [JobState.from_dict(json.loads(raw)) for raw in raws if raw]

    async def close(self) -> None:
        try:
            await self.redis.aclose()
        except Exception as e:
            logger.warning("Error closing redis client", error=str(e))


async def redrive_dead_lettered_jobs(queue: JobQueue, status_store: JobStatusStore, limit: int = 100) -> int:
    """Reopen dead-lettered jobs and move their messages back onto the queue.

    Statuses are reopened before the messages become visible so a worker never
    receives a redriven message while its job still reads as dead-lettered.
    """
    reopened = 0
    for dead in await queue.list_dead_letters(limit):
        if await status_store.reopen(dead.message_id):
            reopened += 1
    count = await queue.redrive_dead_letters(limit)
    logger.info("Redrove dead-lettered jobs", queue=queue.name, redriven=count, reopened=reopened)
    return count
