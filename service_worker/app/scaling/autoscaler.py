"""Queue-driven autoscaling for the worker pool.

Replica count follows queue backlog (visible plus in-flight messages)
divided by the backlog each worker is expected to hold, clamped to
``[min_replicas, max_replicas]``. Scale-up is immediate; scale-down only goes
as low as the highest recommendation seen during the stabilization window,
which keeps bursty traffic from thrashing GPU nodes.

Capacity type prefers Spot. When the provider reports Spot capacity as
unavailable the same decision is retried on On-Demand, and after
``spot_failure_threshold`` consecutive Spot failures the planner stays on
On-Demand for ``spot_retry_seconds``.
"""

import asyncio
import math
import time
from collections import deque
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Deque, Optional, Tuple

import structlog

from libs.common.events import EventPublisher, WorkersScaledEvent, publish_safely
from libs.common.metrics import MetricsCollector
from libs.job_queue.base import JobQueue, QueueDepth

logger = structlog.get_logger("autoscaler")


class CapacityType(str, Enum):
    """Kinds of compute capacity."""
    SPOT = "spot"
    ON_DEMAND = "on-demand"


class CapacityUnavailableError(Exception):
    """The provider could not obtain the requested capacity type."""


@dataclass
class ScalingDecision:
    """Outcome of one autoscaler evaluation."""
    previous_replicas: int
    desired_replicas: int
    capacity_type: CapacityType
    backlog: int
    reason: str = ""

    @property
    def direction(self) -> str:
        if self.desired_replicas > self.previous_replicas:
            return "up"
        if self.desired_replicas < self.previous_replicas:
            return "down"
        return "none"


class ScalingPolicy:
    """Backlog-proportional replica policy with scale-down stabilization."""

    def __init__(
        self,
        min_replicas: int = 0,
        max_replicas: int = 8,
        target_backlog_per_worker: int = 2,
        stabilization_seconds: float = 300.0
    ):
        if min_replicas < 0 or max_replicas < min_replicas:
            raise ValueError("Require 0 <= min_replicas <= max_replicas")
        if target_backlog_per_worker < 1:
            raise ValueError("target_backlog_per_worker must be at least 1")
        self.min_replicas = min_replicas
        self.max_replicas = max_replicas
        self.target_backlog_per_worker = target_backlog_per_worker
        self.stabilization_seconds = stabilization_seconds
        self._recommendations: Deque[Tuple[float, int]] = deque()

    def recommended_replicas(self, backlog: int) -> int:
        raw = math.ceil(max(backlog, 0) / self.target_backlog_per_worker)
        return min(max(raw, self.min_replicas), self.max_replicas)

    def desired_replicas(self, depth: QueueDepth, current: int, now: float) -> int:
        recommendation = self.recommended_replicas(depth.backlog)

        self._recommendations.append((now, recommendation))
        while self._recommendations and self._recommendations[0][0] < now - self.stabilization_seconds:
            self._recommendations.popleft()

        if recommendation >= current:
            return recommendation
        stabilized = max(value for _, value in self._recommendations)
        return min(current, stabilized)


class CapacityPlanner:
    """Chooses Spot or On-Demand capacity with failure-driven fallback."""

    def __init__(
        self,
        preference: CapacityType = CapacityType.SPOT,
        spot_failure_threshold: int = 1,
        spot_retry_seconds: float = 300.0
    ):
        self.preference = preference
        self.spot_failure_threshold = spot_failure_threshold
        self.spot_retry_seconds = spot_retry_seconds
        self.consecutive_spot_failures = 0
        self.fallback_until: Optional[float] = None

    def choose(self, now: float) -> CapacityType:
        if self.preference == CapacityType.ON_DEMAND:
            return CapacityType.ON_DEMAND
        if self.fallback_until is not None and now < self.fallback_until:
            return CapacityType.ON_DEMAND
        return CapacityType.SPOT

    def record_spot_failure(self, now: float) -> None:
        self.consecutive_spot_failures += 1
        if self.consecutive_spot_failures >= self.spot_failure_threshold:
            self.fallback_until = now + self.spot_retry_seconds
            self.consecutive_spot_failures = 0
            logger.warning("Falling back to On-Demand capacity", retry_spot_in_seconds=self.spot_retry_seconds)

    def record_spot_success(self) -> None:
        self.consecutive_spot_failures = 0
        self.fallback_until = None


class Autoscaler:
    """Reads queue depth and applies scaling decisions to a capacity provider.

    The provider is any object with ``async apply(decision)`` that raises
    ``CapacityUnavailableError`` when Spot capacity cannot be obtained; the
    in-process ``WorkerPool`` is one.
    """

    def __init__(
        self,
        queue: JobQueue,
        provider,
        policy: ScalingPolicy,
        planner: CapacityPlanner,
        initial_replicas: int = 0,
        metrics: Optional[MetricsCollector] = None,
        event_publisher: Optional[EventPublisher] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self.queue = queue
        self.provider = provider
        self.policy = policy
        self.planner = planner
        self.metrics = metrics
        self.event_publisher = event_publisher
        self._clock = clock
        self.current_replicas = initial_replicas
        self.current_capacity: Optional[CapacityType] = None

    async def evaluate(self) -> ScalingDecision:
        depth = await self.queue.depth()
        if self.metrics:
            self.metrics.set_queue_depth(
                self.queue.name, depth.visible, depth.in_flight, depth.delayed, depth.dead_letter
            )

        now = self._clock()
        decision = ScalingDecision(
            previous_replicas=self.current_replicas,
            desired_replicas=self.policy.desired_replicas(depth, self.current_replicas, now),
            capacity_type=self.planner.choose(now),
            backlog=depth.backlog,
            reason=f"backlog={depth.backlog}",
        )

        if decision.direction == "none" and decision.capacity_type == self.current_capacity:
            return decision

        try:
            await self.provider.apply(decision)
        except CapacityUnavailableError as e:
            if decision.capacity_type != CapacityType.SPOT:
                raise
            self.planner.record_spot_failure(now)
            if self.metrics:
                self.metrics.record_spot_fallback()
            logger.warning("Spot capacity unavailable; retrying on On-Demand", error=str(e))
            decision = replace(
                decision,
                capacity_type=CapacityType.ON_DEMAND,
                reason=f"{decision.reason}; spot unavailable",
            )
            await self.provider.apply(decision)
        else:
            if decision.capacity_type == CapacityType.SPOT:
                self.planner.record_spot_success()

        self.current_replicas = decision.desired_replicas
        self.current_capacity = decision.capacity_type
        if self.metrics:
            self.metrics.record_scaling_decision(decision.direction, decision.capacity_type.value)
        logger.info(
            "Applied scaling decision",
            previous_replicas=decision.previous_replicas,
            desired_replicas=decision.desired_replicas,
            capacity_type=decision.capacity_type.value,
            backlog=decision.backlog
        )
        if self.event_publisher is not None and decision.direction != "none":
            await asyncio.to_thread(publish_safely, self.event_publisher, WorkersScaledEvent(
                previous_replicas=decision.previous_replicas,
                desired_replicas=decision.desired_replicas,
                capacity_type=decision.capacity_type.value,
                reason=decision.reason,
            ))
        return decision
