"""Wiring of the shared platform components from configuration.

The gateway and the worker CLI both build the same set of backends (queue,
status store, ledger, stores, inference backend, event publisher); this
module keeps that in one place.
"""

import asyncio
from dataclasses import dataclass
from typing import Optional

import structlog

from libs.common.events import EventPublisher, create_event_publisher_from_config
from libs.job_queue.base import JobQueue
from libs.job_queue.factory import create_job_queue_from_config, create_status_store_from_config
from libs.job_queue.status import JobStatusStore
from libs.ledger.base import ProvenanceLedger
from libs.ledger.factory import create_ledger_from_config
from libs.storage.base import AssetStore, ModelStore
from libs.storage.factory import create_asset_store_from_config, create_model_store_from_config

from ..inference.base import InferenceBackend
from ..inference.factory import create_inference_backend_from_config

logger = structlog.get_logger("components")


@dataclass
class PlatformComponents:
    """Backends shared by the gateway and the workers."""
    queue: JobQueue
    status_store: JobStatusStore
    ledger: ProvenanceLedger
    asset_store: AssetStore
    model_store: ModelStore
    backend: Optional[InferenceBackend] = None
    event_publisher: Optional[EventPublisher] = None

    async def close(self) -> None:
        for name in ("backend", "queue", "status_store", "ledger", "asset_store", "model_store"):
            component = getattr(self, name)
            if component is None:
                continue
            try:
                await component.close()
            except Exception as e:
                logger.warning("Failed to close component", component=name, error=str(e))
        if self.event_publisher is not None:
            await asyncio.to_thread(self.event_publisher.close)


def build_components(config, with_backend: bool = True) -> PlatformComponents:
    """Construct every backend selected by ``config``.

    ``with_backend`` is false for a gateway that only enqueues work.
    """
    components = PlatformComponents(
        queue=create_job_queue_from_config(config),
        status_store=create_status_store_from_config(config),
        ledger=create_ledger_from_config(config),
        asset_store=create_asset_store_from_config(config),
        model_store=create_model_store_from_config(config),
        backend=create_inference_backend_from_config(config) if with_backend else None,
        event_publisher=create_event_publisher_from_config(config),
    )
    logger.info(
        "Platform components ready",
        queue_backend=config.ml_queue_backend,
        ledger_backend=config.ml_ledger_backend,
        inference_backend=config.ml_inference_backend if with_backend else None
    )
    return components
