"""Inference backend factory."""

import structlog

from .base import InferenceBackend
from .comfyui import ComfyUIBackend
from .deterministic import DeterministicBackend

logger = structlog.get_logger("inference.factory")


def create_inference_backend_from_config(config) -> InferenceBackend:
    """Create the backend selected by ``ml_inference_backend``."""
    backend = config.ml_inference_backend.lower()
    if backend == "comfyui":
        instance: InferenceBackend = ComfyUIBackend(
            config.ml_comfyui_url,
            timeout_seconds=config.ml_inference_timeout_seconds,
            poll_interval_seconds=config.ml_inference_poll_interval_seconds,
        )
    elif backend == "deterministic":
        instance = DeterministicBackend()
    else:
        raise ValueError(f"Unsupported inference backend: {config.ml_inference_backend}")

    logger.info("Created inference backend", backend=backend)
    return instance
