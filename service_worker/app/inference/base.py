"""Inference backend interface.

Backends turn a job's prompt and parameters into image bytes. Errors are
classified so the worker knows whether to retry:

- ``RetryableInferenceError``: transient (server unreachable, timeout,
  GPU out of memory). The job is hidden for a backoff and redelivered.
- ``InferenceRejectedError``: the request itself is bad. Retrying cannot
  help, so the job fails immediately.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


class InferenceError(Exception):
    """Base class for inference failures."""


class RetryableInferenceError(InferenceError):
    """Transient failure; the job may succeed on another attempt."""


class GPUOutOfMemoryError(RetryableInferenceError):
    """The backend ran out of accelerator memory."""


class InferenceRejectedError(InferenceError):
    """The backend refused the request as invalid."""


@dataclass
class InferenceRequest:
    """Everything a backend needs to produce outputs for one job."""
    job_id: str
    prompt: str
    model_id: str
    model_hash: str
    negative_prompt: str = ""
    width: int = 1024
    height: int = 1024
    steps: int = 30
    cfg_scale: float = 7.0
    seed: int = 0
    denoise: float = 1.0
    input_image: Optional[bytes] = None
    input_image_name: Optional[str] = None


@dataclass
class InferenceOutput:
    """One produced file."""
    data: bytes
    content_type: str = "image/png"
    extension: str = "png"


@dataclass
class InferenceResult:
    """Outputs of a generation call."""
    outputs: List[InferenceOutput] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)


class InferenceBackend(ABC):
    """Abstract generation backend."""

    name = "base"

    @abstractmethod
    async def generate(self, request: InferenceRequest) -> InferenceResult:
        """Run generation; raises an ``InferenceError`` subclass on failure."""

    async def health_check(self) -> Dict[str, Any]:
        return {"backend": self.name, "status": "healthy"}

    async def close(self) -> None:
        return None
