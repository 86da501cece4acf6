"""ComfyUI inference backend.

Drives a ComfyUI server over its HTTP API:

1. ``POST /upload/image`` for img2img inputs
2. ``POST /prompt`` with an API-format node graph
3. ``GET /history/{prompt_id}`` until the prompt completes
4. ``GET /view`` for each produced image

Connection failures and 5xx responses are retried in-process by a
``RetryHandler`` and counted by a circuit breaker shared per server URL.
"""

import asyncio
import time
from typing import Any, Dict, List, Optional

import httpx
import structlog

from ..adapters.circuit_breaker import CircuitBreaker, get_circuit_breaker
from ..pipelines.retry_handler import RetryConfig, RetryHandler
from .base import (
    GPUOutOfMemoryError,
    InferenceBackend,
    InferenceError,
    InferenceOutput,
    InferenceRejectedError,
    InferenceRequest,
    InferenceResult,
    RetryableInferenceError,
)

logger = structlog.get_logger("inference.comfyui")

OOM_MARKERS = ("out of memory", "outofmemoryerror", "cuda error: out of memory", "allocation on device")

SAMPLER_NAME = "euler"
SCHEDULER = "normal"


class BackendUnavailableError(RetryableInferenceError):
    """The ComfyUI server could not be reached or answered with a 5xx."""


def build_workflow(request: InferenceRequest, input_image_name: Optional[str] = None) -> Dict[str, Any]:
    """API-format graph for txt2img, or img2img when an input image is given."""
    graph: Dict[str, Any] = {
        "4": {"class_type": "CheckpointLoaderSimple", "inputs": {"ckpt_name": request.model_id}},
        "6": {"class_type": "CLIPTextEncode", "inputs": {"text": request.prompt, "clip": ["4", 1]}},
        "7": {"class_type": "CLIPTextEncode", "inputs": {"text": request.negative_prompt, "clip": ["4", 1]}},
        "3": {
            "class_type": "KSampler",
            "inputs": {
                "seed": request.seed,
                "steps": request.steps,
                "cfg": request.cfg_scale,
                "sampler_name": SAMPLER_NAME,
                "scheduler": SCHEDULER,
                "denoise": request.denoise,
                "model": ["4", 0],
                "positive": ["6", 0],
                "negative": ["7", 0],
                "latent_image": ["5", 0],
            },
        },
        "8": {"class_type": "VAEDecode", "inputs": {"samples": ["3", 0], "vae": ["4", 2]}},
        "9": {"class_type": "SaveImage", "inputs": {"filename_prefix": request.job_id, "images": ["8", 0]}},
    }

    if input_image_name is None:
        graph["5"] = {
            "class_type": "EmptyLatentImage",
            "inputs": {"width": request.width, "height": request.height, "batch_size": 1},
        }
    else:
        graph["10"] = {"class_type": "LoadImage", "inputs": {"image": input_image_name}}
        graph["5"] = {"class_type": "VAEEncode", "inputs": {"pixels": ["10", 0], "vae": ["4", 2]}}
    return graph


def _is_oom(message: str) -> bool:
    lowered = message.lower()
    return any(marker in lowered for marker in OOM_MARKERS)


def _execution_error(status: Dict[str, Any]) -> Optional[str]:
    for message in status.get("messages") or []:
        if isinstance(message, list) and len(message) == 2 and message[0] == "execution_error":
            details = message[1] or {}
            return f"{details.get('exception_type', 'Error')}: {details.get('exception_message', '')}".strip()
    if status.get("status_str") == "error":
        return "execution failed"
    return None


class ComfyUIBackend(InferenceBackend):
    """Inference through a ComfyUI server."""

    name = "comfyui"

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 600.0,
        poll_interval_seconds: float = 1.0,
        client: Optional[httpx.AsyncClient] = None,
        retry_config: Optional[RetryConfig] = None,
        circuit_breaker: Optional[CircuitBreaker] = None
    ):
        """Configure the backend.

        Parameters
        - base_url: ComfyUI server URL, e.g. ``http://comfyui:8188``
        - timeout_seconds: Upper bound on one generation, including queueing
        - poll_interval_seconds: Delay between ``/history`` polls
        - client: Optional preconfigured ``httpx.AsyncClient`` (tests)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.client = client or httpx.AsyncClient(base_url=self.base_url, timeout=httpx.Timeout(30.0))
        self.retry_handler = RetryHandler(retry_config or RetryConfig(
            max_attempts=3,
            base_delay=1.0,
            max_delay=10.0,
            retryable_exceptions=(BackendUnavailableError,)
        ))
        self.circuit_breaker = circuit_breaker or get_circuit_breaker(
            f"comfyui:{self.base_url}",
            failure_threshold=5,
            recovery_timeout=30.0,
            expected_exception=(BackendUnavailableError,)
        )

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self.client.request(method, path, **kwargs)
        except httpx.TransportError as e:
            raise BackendUnavailableError(f"ComfyUI unreachable: {e}") from e
        if response.status_code >= 500:
            raise BackendUnavailableError(f"ComfyUI {method} {path} returned {response.status_code}")
        return response

    async def _call(self, method: str, path: str, operation: str, **kwargs: Any) -> httpx.Response:
        return await self.retry_handler.execute_with_retry(
            self._request, method, path, operation_name=operation, **kwargs
        )

    async def _upload_image(self, request: InferenceRequest) -> str:
        filename = request.input_image_name or f"{request.job_id}.png"
        response = await self._call(
            "POST",
            "/upload/image",
            "comfyui.upload",
            files={"image": (filename, request.input_image, "application/octet-stream")},
            data={"overwrite": "true"},
        )
        if response.status_code != 200:
            raise InferenceRejectedError(f"Input image upload rejected: {response.status_code} {response.text}")
        payload = response.json()
        name = payload["name"]
        return f"{payload['subfolder']}/{name}" if payload.get("subfolder") else name

    async def _queue_prompt(self, workflow: Dict[str, Any], client_id: str) -> str:
        response = await self._call(
            "POST", "/prompt", "comfyui.prompt", json={"prompt": workflow, "client_id": client_id}
        )
        if response.status_code != 200:
            detail = response.text
            if _is_oom(detail):
                raise GPUOutOfMemoryError(detail)
            raise InferenceRejectedError(f"Workflow rejected: {response.status_code} {detail}")
        payload = response.json()
        if payload.get("node_errors"):
            raise InferenceRejectedError(f"Workflow node errors: {payload['node_errors']}")
        return payload["prompt_id"]

    async def _wait_for_outputs(self, prompt_id: str) -> Dict[str, Any]:
        deadline = time.monotonic() + self.timeout_seconds
        while True:
            response = await self._call("GET", f"/history/{prompt_id}", "comfyui.history")
            if response.status_code == 200:
                entry = response.json().get(prompt_id)
                if entry:
                    status = entry.get("status") or {}
                    error = _execution_error(status)
                    if error is not None:
                        if _is_oom(error):
                            raise GPUOutOfMemoryError(error)
                        raise RetryableInferenceError(f"ComfyUI execution error: {error}")
                    if status.get("completed", True):
                        return entry.get("outputs") or {}

            if time.monotonic() >= deadline:
                raise RetryableInferenceError(f"Timed out after {self.timeout_seconds}s waiting for prompt {prompt_id}")
            await asyncio.sleep(self.poll_interval_seconds)

    async def _download_outputs(self, outputs: Dict[str, Any]) -> List[InferenceOutput]:
        results = []
        for node_id in sorted(outputs, key=str):
            for image in outputs[node_id].get("images") or []:
                if image.get("type", "output") != "output":
                    continue
                response = await self._call(
                    "GET",
                    "/view",
                    "comfyui.view",
                    params={
                        "filename": image["filename"],
                        "subfolder": image.get("subfolder", ""),
                        "type": image.get("type", "output"),
                    },
                )
                if response.status_code != 200:
                    raise RetryableInferenceError(f"Failed to fetch output {image['filename']}: {response.status_code}")
                extension = image["filename"].rsplit(".", 1)[-1].lower() if "." in image["filename"] else "png"
                content_type = response.headers.get("content-type", f"image/{extension}")
                results.append(InferenceOutput(data=response.content, content_type=content_type, extension=extension))
        return results

    async def _generate(self, request: InferenceRequest) -> InferenceResult:
        input_name = None
        if request.input_image is not None:
            input_name = await self._upload_image(request)

        prompt_id = await self._queue_prompt(build_workflow(request, input_name), client_id=request.job_id)
        logger.info("Queued ComfyUI prompt", job_id=request.job_id, prompt_id=prompt_id)

        outputs = await self._download_outputs(await self._wait_for_outputs(prompt_id))
        if not outputs:
            raise InferenceError(f"ComfyUI prompt {prompt_id} produced no images")
        return InferenceResult(outputs=outputs, metadata={"prompt_id": prompt_id})

    async def generate(self, request: InferenceRequest) -> InferenceResult:
        return await self.circuit_breaker.call(self._generate, request)

    async def health_check(self) -> Dict[str, Any]:
        """Server reachability plus GPU memory from ``/system_stats``."""
        try:
            response = await self._request("GET", "/system_stats")
        except BackendUnavailableError as e:
            return {"backend": self.name, "status": "unhealthy", "error": str(e)}

        devices = [
            {
                "name": device.get("name"),
                "type": device.get("type"),
                "vram_total": device.get("vram_total"),
                "vram_free": device.get("vram_free"),
            }
            for device in (response.json().get("devices") or [])
        ] if response.status_code == 200 else []
        return {
            "backend": self.name,
            "status": "healthy" if response.status_code == 200 else "degraded",
            "devices": devices,
            "circuit_breaker": self.circuit_breaker.get_stats(),
        }

    async def close(self) -> None:
        await self.client.aclose()
