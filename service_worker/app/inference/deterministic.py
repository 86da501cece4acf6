"""Deterministic local backend.

Produces a PNG whose pixels are derived from the request (prompt, model
hash, seed and parameters), so repeated runs of the same job yield the same
bytes. Used for local development and tests where no GPU server exists.
"""

import asyncio
import hashlib
import io
from typing import Optional

from PIL import Image

from .base import InferenceBackend, InferenceOutput, InferenceRequest, InferenceResult


def request_fingerprint(request: InferenceRequest) -> bytes:
    h = hashlib.sha256()
    for part in (
        request.prompt,
        request.negative_prompt,
        request.model_hash,
        str(request.seed),
        str(request.steps),
        repr(request.cfg_scale),
        repr(request.denoise),
        f"{request.width}x{request.height}",
    ):
        h.update(part.encode("utf-8"))
        h.update(b"\x00")
    if request.input_image is not None:
        h.update(hashlib.sha256(request.input_image).digest())
    return h.digest()


def render_png(fingerprint: bytes, width: int, height: int) -> bytes:
    row_length = width * 3
    repeats = row_length // len(fingerprint) + 2
    rows = []
    for y in range(height):
        shift = y % len(fingerprint)
        rotated = fingerprint[shift:] + fingerprint[:shift]
        rows.append((rotated * repeats)[:row_length])

    image = Image.frombytes("RGB", (width, height), b"".join(rows))
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


class DeterministicBackend(InferenceBackend):
    """Offline backend rendering a reproducible image per request."""

    name = "deterministic"

    def __init__(self, latency_seconds: float = 0.0, max_dimension: Optional[int] = 512):
        self.latency_seconds = latency_seconds
        self.max_dimension = max_dimension

    async def generate(self, request: InferenceRequest) -> InferenceResult:
        if self.latency_seconds:
            await asyncio.sleep(self.latency_seconds)

        width, height = request.width, request.height
        if self.max_dimension:
            width, height = min(width, self.max_dimension), min(height, self.max_dimension)

        data = await asyncio.to_thread(render_png, request_fingerprint(request), width, height)
        return InferenceResult(
            outputs=[InferenceOutput(data=data, content_type="image/png", extension="png")],
            metadata={"width": width, "height": height},
        )
