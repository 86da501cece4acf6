"""Worker service entry point.

Runs a ``WorkerPool`` against the configured queue, with an autoscaler loop
resizing it from queue depth and, on EC2 Spot, a monitor that drains the
pool on an interruption notice.

Usage
    python -m service_worker.app.main [--replicas N] [--no-autoscale]
"""

import argparse
import asyncio
import signal
import socket
from typing import Optional

import structlog

from libs.common.config import WorkerConfig
from libs.common.logging import configure_logging
from libs.common.tracing import configure_tracing_from_config

from .runtime.components import PlatformComponents, build_components
from .runtime.interruption import SpotInterruptionMonitor
from .runtime.metrics import get_metrics_collector
from .scaling.autoscaler import Autoscaler, CapacityPlanner, CapacityType, ScalingPolicy
from .workers.job_worker import JobWorker
from .workers.pool import WorkerPool

logger = structlog.get_logger("worker")

SERVICE_NAME = "genai-worker"


def build_worker(config: WorkerConfig, components: PlatformComponents, tracer=None) -> JobWorker:
    return JobWorker(
        queue=components.queue,
        status_store=components.status_store,
        ledger=components.ledger,
        asset_store=components.asset_store,
        model_store=components.model_store,
        backend=components.backend,
        event_publisher=components.event_publisher,
        metrics=get_metrics_collector(SERVICE_NAME),
        tracer=tracer,
        retry_base_delay=config.ml_worker_retry_base_delay,
        retry_max_delay=config.ml_worker_retry_max_delay,
        heartbeat_interval=config.ml_worker_heartbeat_seconds,
    )


def build_autoscaler(config: WorkerConfig, components: PlatformComponents, pool: WorkerPool) -> Autoscaler:
    return Autoscaler(
        queue=components.queue,
        provider=pool,
        policy=ScalingPolicy(
            min_replicas=config.ml_worker_min_replicas,
            max_replicas=config.ml_worker_max_replicas,
            target_backlog_per_worker=config.ml_worker_target_backlog,
            stabilization_seconds=config.ml_scaling_stabilization_seconds,
        ),
        planner=CapacityPlanner(
            preference=CapacityType(config.ml_capacity_preference),
            spot_failure_threshold=config.ml_spot_failure_threshold,
            spot_retry_seconds=config.ml_spot_retry_seconds,
        ),
        initial_replicas=pool.size,
        metrics=get_metrics_collector(SERVICE_NAME),
        event_publisher=components.event_publisher,
    )


async def scaling_loop(autoscaler: Autoscaler, pool: WorkerPool, interval: float, stop_event: asyncio.Event) -> None:
    """Evaluate scaling and reconcile dead letters every ``interval`` seconds."""
    while not stop_event.is_set():
        try:
            await autoscaler.evaluate()
            await pool.reconcile_dead_letters()
        except Exception as e:
            logger.error("Scaling tick failed", error=str(e))
        try:
            await asyncio.wait_for(stop_event.wait(), interval)
        except asyncio.TimeoutError:
            pass


async def run(config: WorkerConfig, replicas: Optional[int] = None, autoscale: bool = True) -> None:
    tracer = configure_tracing_from_config(SERVICE_NAME, config)
    components = build_components(config)
    worker = build_worker(config, components, tracer)
    pool = WorkerPool(
        worker,
        components.queue,
        components.status_store,
        poll_wait_seconds=config.ml_worker_poll_wait_seconds,
        event_publisher=components.event_publisher,
        metrics=get_metrics_collector(SERVICE_NAME),
    )

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    backend_health = await components.backend.health_check()
    if backend_health.get("status") != "healthy":
        logger.warning("Inference backend is not healthy at startup", health=backend_health)

    await pool.scale_to(config.ml_worker_initial_replicas if replicas is None else replicas)
    logger.info("Worker service started", replicas=pool.size, autoscale=autoscale)

    background = []
    if autoscale:
        autoscaler = build_autoscaler(config, components, pool)
        background.append(asyncio.create_task(
            scaling_loop(autoscaler, pool, config.ml_scaling_interval_seconds, stop_event)
        ))

    monitor: Optional[SpotInterruptionMonitor] = None
    if config.ml_spot_monitor_enabled:
        async def on_interruption(notice):
            pool.mark_spot_unavailable()
            stop_event.set()

        monitor = SpotInterruptionMonitor(
            config.ml_instance_metadata_url,
            on_interruption,
            interval_seconds=config.ml_spot_monitor_interval_seconds,
        )
        background.append(asyncio.create_task(monitor.run(stop_event)))

    try:
        await stop_event.wait()
    finally:
        logger.info("Shutting down worker service")
        # Spot notices give about two minutes; keep well inside that.
        await pool.drain(grace_seconds=90.0)
        for task in background:
            task.cancel()
        await asyncio.gather(*background, return_exceptions=True)
        if monitor is not None:
            await monitor.close()
        await components.close()
        logger.info("Worker service shutdown complete")


def main() -> None:
    parser = argparse.ArgumentParser(description="Run GenAI job workers")
    parser.add_argument("--replicas", type=int, default=None, help="Initial worker replicas")
    parser.add_argument("--no-autoscale", action="store_true", help="Keep a fixed replica count")
    args = parser.parse_args()

    config = WorkerConfig()
    configure_logging(SERVICE_NAME, config.ml_log_level, config.ml_log_format, host=socket.gethostname())
    asyncio.run(run(config, replicas=args.replicas, autoscale=not args.no_autoscale))


if __name__ == "__main__":
    main()
