"""API routes for the request gateway.

Every route requires a bearer token. Tenant and user come only from the
verified token; a resource belonging to another tenant is reported as not
found.
"""

import asyncio
import io
import secrets
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response, status
from PIL import Image, UnidentifiedImageError
from pydantic import BaseModel, Field, field_validator

from libs.common.auth import ADMIN_SCOPE, Principal, get_current_principal, require_scope
from libs.common.events import JobSubmittedEvent, publish_safely
from libs.common.security import InputSanitizer
from libs.job_queue.models import Job, JobParameters, JobState
from libs.job_queue.status import redrive_dead_lettered_jobs
from libs.storage.base import InvalidAssetKeyError, sha256_hex, validate_key

logger = structlog.get_logger("gateway.api")

router = APIRouter()

MAX_SEED = 2 ** 32 - 1
MAX_IDEMPOTENCY_KEY_LENGTH = 128

# Pillow format name -> (content type, extension)
IMAGE_FORMATS = {
    "PNG": ("image/png", "png"),
    "JPEG": ("image/jpeg", "jpg"),
    "WEBP": ("image/webp", "webp"),
}


class JobParametersModel(BaseModel):
    """Generation parameters."""
    negative_prompt: str = Field("", max_length=4000, description="Negative prompt")
    width: int = Field(1024, ge=64, le=2048, description="Output width in pixels (multiple of 8)")
    height: int = Field(1024, ge=64, le=2048, description="Output height in pixels (multiple of 8)")
    steps: int = Field(30, ge=1, le=150, description="Sampling steps")
    cfg_scale: float = Field(7.0, ge=0.0, le=30.0, description="Classifier-free guidance scale")
    seed: Optional[int] = Field(None, ge=0, le=MAX_SEED, description="Seed; assigned when omitted")
    denoise: float = Field(1.0, ge=0.0, le=1.0, description="Denoising strength for img2img")

    @field_validator("width", "height")
    @classmethod
    def multiple_of_eight(cls, value: int) -> int:
        if value % 8:
            raise ValueError("must be a multiple of 8")
        return value


class SubmitJobRequest(BaseModel):
    """Request model for job submission."""
    prompt: str = Field(..., min_length=1, description="Text prompt")
    model_id: str = Field(..., min_length=1, description="Model id from /models")
    input_image_key: Optional[str] = Field(None, description="Key returned by /uploads for img2img")
    parameters: JobParametersModel = Field(default_factory=JobParametersModel)


class SubmitJobResponse(BaseModel):
    """Response model for job submission."""
    job_id: str = Field(..., description="Job identifier")
    status: str = Field(..., description="Job status")
    deduplicated: bool = Field(False, description="True when an earlier submission was returned")


class JobResponse(BaseModel):
    """Caller-visible job state."""
    job_id: str
    model_id: str
    status: str
    attempts: int
    submitted_at: int
    updated_at: int
    error: Optional[str] = None
    asset_keys: List[str] = Field(default_factory=list)
    ledger_sequence: Optional[int] = None

    @classmethod
    def from_state(cls, state: JobState) -> "JobResponse":
        return cls(
            job_id=state.job_id,
            model_id=state.model_id,
            status=state.status.value,
            attempts=state.attempts,
            submitted_at=state.submitted_at,
            updated_at=state.updated_at,
            error=state.error,
            asset_keys=list(state.asset_keys),
            ledger_sequence=state.ledger_sequence,
        )


class UploadResponse(BaseModel):
    """Stored input image."""
    key: str
    sha256: str
    size: int
    content_type: str


def get_components(request: Request):
    """Get platform components from application state."""
    return request.app.state.components


def get_metrics(request: Request):
    """Get metrics collector from application state."""
    return request.app.state.metrics_collector


def get_config(request: Request):
    """Get gateway config from application state."""
    return request.app.state.config


def get_sanitizer(request: Request) -> InputSanitizer:
    return request.app.state.input_sanitizer


def _unprocessable(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=detail)


def _not_found(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=detail)


@router.post("/jobs", response_model=SubmitJobResponse, status_code=status.HTTP_202_ACCEPTED)
async def submit_job(
    body: SubmitJobRequest,
    principal: Principal = Depends(get_current_principal),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    components=Depends(get_components),
    metrics=Depends(get_metrics),
    config=Depends(get_config),
    sanitizer: InputSanitizer = Depends(get_sanitizer)
):
    """Validate and enqueue a generation job."""
    try:
        prompt = sanitizer.sanitize_prompt(body.prompt, max_length=config.ml_max_prompt_length)
    except ValueError as e:
        raise _unprocessable(str(e))

    if idempotency_key is not None and not 0 < len(idempotency_key) <= MAX_IDEMPOTENCY_KEY_LENGTH:
        raise _unprocessable("Idempotency-Key must be 1-128 characters")

    if body.model_id not in await components.model_store.list_models():
        raise _unprocessable(f"Unknown model: {body.model_id}")

    if body.input_image_key is not None:
        try:
            input_ref = await components.asset_store.stat(principal.tenant_id, body.input_image_key)
        except InvalidAssetKeyError as e:
            raise _unprocessable(str(e))
        if input_ref is None:
            raise _unprocessable(f"Input image not found: {body.input_image_key}")

    params = body.parameters.model_dump()
    if params["seed"] is None:
        params["seed"] = secrets.randbelow(MAX_SEED + 1)

    job = Job.new(
        tenant_id=principal.tenant_id,
        user_id=principal.user_id,
        prompt=prompt,
        model_id=body.model_id,
        parameters=JobParameters(**params),
        input_image_key=body.input_image_key,
    )
    dedup_id = f"{principal.tenant_id}:{principal.user_id}:{idempotency_key}" if idempotency_key else None

    message_id = await components.queue.enqueue(job.job_id, job.to_json(), dedup_id=dedup_id)
    if message_id != job.job_id:
        existing = await components.status_store.get(message_id)
        metrics.record_job_submitted(body.model_id, deduplicated=True)
        logger.info("Duplicate submission", job_id=message_id)
        return SubmitJobResponse(
            job_id=message_id,
            status=existing.status.value if existing else "queued",
            deduplicated=True,
        )

    # A fast worker may already have created the state; that is fine.
    await components.status_store.create(JobState.for_job(job))
    metrics.record_job_submitted(body.model_id)
    if components.event_publisher is not None:
        await asyncio.to_thread(publish_safely, components.event_publisher, JobSubmittedEvent(
            job_id=job.job_id,
            tenant_id=job.tenant_id,
            user_id=job.user_id,
            model_id=job.model_id,
        ))
    logger.info("Job submitted", job_id=job.job_id, model_id=job.model_id)
    return SubmitJobResponse(job_id=job.job_id, status="queued")


@router.get("/jobs", response_model=List[JobResponse])
async def list_jobs(
    limit: int = Query(50, ge=1, le=200),
    principal: Principal = Depends(get_current_principal),
    components=Depends(get_components)
):
    """List the caller tenant's jobs, newest first."""
    states = await components.status_store.list_for_tenant(principal.tenant_id, limit=limit)
    return [JobResponse.from_state(state) for state in states]


@router.get("/jobs/{job_id}", response_model=JobResponse)
async def get_job(
    job_id: str,
    principal: Principal = Depends(get_current_principal),
    components=Depends(get_components)
):
    """Status of one job."""
    state = await components.status_store.get(job_id)
    if state is None or state.tenant_id != principal.tenant_id:
        raise _not_found(f"Job {job_id} not found")
    return JobResponse.from_state(state)


def _inspect_image(data: bytes) -> Optional[str]:
    """Pillow format name of ``data``, or ``None`` if it is not an image."""
    try:
        with Image.open(io.BytesIO(data)) as image:
            image.verify()
            return image.format
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError):
        return None


@router.post("/uploads", response_model=UploadResponse, status_code=status.HTTP_201_CREATED)
async def upload_image(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    components=Depends(get_components),
    metrics=Depends(get_metrics),
    config=Depends(get_config)
):
    """Store an input image (raw request body) under a content-addressed key."""
    declared = request.headers.get("content-length")
    if declared is not None and declared.isdigit() and int(declared) > config.ml_max_upload_bytes:
        raise HTTPException(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail="Upload too large")

    data = bytearray()
    async for chunk in request.stream():
        data.extend(chunk)
        if len(data) > config.ml_max_upload_bytes:
            raise HTTPException(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail="Upload too large")
    if not data:
        raise _unprocessable("Upload body is empty")

    image_format = await asyncio.to_thread(_inspect_image, bytes(data))
    if image_format not in IMAGE_FORMATS:
        raise _unprocessable("Upload must be a PNG, JPEG or WebP image")
    content_type, extension = IMAGE_FORMATS[image_format]

    key = f"inputs/{sha256_hex(bytes(data))}.{extension}"
    try:
        ref = await components.asset_store.put(principal.tenant_id, key, bytes(data), content_type)
    except InvalidAssetKeyError as e:
        raise _unprocessable(str(e))
    metrics.record_asset_write("written")
    logger.info("Input image uploaded", key=key, size=ref.size)
    return UploadResponse(key=ref.key, sha256=ref.sha256, size=ref.size, content_type=content_type)


@router.get("/assets/{key:path}")
async def download_asset(
    key: str,
    principal: Principal = Depends(get_current_principal),
    components=Depends(get_components)
):
    """Download one of the caller tenant's assets."""
    try:
        validate_key(key)
        ref = await components.asset_store.stat(principal.tenant_id, key)
    except InvalidAssetKeyError:
        raise _not_found(f"Asset {key} not found")
    if ref is None:
        raise _not_found(f"Asset {key} not found")

    data = await components.asset_store.get(principal.tenant_id, key)
    return Response(
        content=data,
        media_type=ref.content_type,
        headers={"ETag": f'"{ref.sha256}"', "X-Content-SHA256": ref.sha256},
    )


@router.get("/ledger/jobs/{job_id}")
async def get_ledger_record(
    job_id: str,
    principal: Principal = Depends(get_current_principal),
    components=Depends(get_components)
) -> Dict[str, Any]:
    """Ledger record of a job plus a check of that record against the chain."""
    record = await components.ledger.get_by_job(job_id)
    if record is None or record.tenant_id != principal.tenant_id:
        raise _not_found(f"No ledger record for job {job_id}")
    return {"record": record.to_dict(), "verified": await components.ledger.verify_record(record)}


@router.get("/ledger/digest")
async def get_ledger_digest(
    principal: Principal = Depends(get_current_principal),
    components=Depends(get_components)
) -> Dict[str, Any]:
    """Current chain length and tip hash, suitable for external anchoring."""
    digest = await components.ledger.digest()
    return {"length": digest.length, "tip_hash": digest.tip_hash}


@router.post("/ledger/verify")
async def verify_ledger(
    principal: Principal = Depends(require_scope(ADMIN_SCOPE)),
    components=Depends(get_components)
) -> Dict[str, Any]:
    """Verify the whole chain."""
    result = await components.ledger.verify()
    if not result.valid:
        logger.error("Ledger verification failed", first_invalid_sequence=result.first_invalid_sequence)
    return {
        "valid": result.valid,
        "length": result.length,
        "tip_hash": result.tip_hash,
        "first_invalid_sequence": result.first_invalid_sequence,
        "reason": result.reason,
    }


@router.get("/queue/stats")
async def queue_stats(
    principal: Principal = Depends(require_scope(ADMIN_SCOPE)),
    components=Depends(get_components),
    metrics=Depends(get_metrics)
) -> Dict[str, Any]:
    """Queue depth by message state."""
    queue = components.queue
    depth = await queue.depth()
    metrics.set_queue_depth(queue.name, depth.visible, depth.in_flight, depth.delayed, depth.dead_letter)
    return {
        "queue": queue.name,
        "visible": depth.visible,
        "in_flight": depth.in_flight,
        "delayed": depth.delayed,
        "dead_letter": depth.dead_letter,
        "backlog": depth.backlog,
    }


@router.post("/queue/redrive")
async def redrive_queue(
    limit: int = Query(100, ge=1, le=1000),
    principal: Principal = Depends(require_scope(ADMIN_SCOPE)),
    components=Depends(get_components)
) -> Dict[str, Any]:
    """Requeue dead-lettered jobs."""
    redriven = await redrive_dead_lettered_jobs(components.queue, components.status_store, limit)
    logger.info("Dead letters redriven", user_id=principal.user_id, redriven=redriven)
    return {"queue": components.queue.name, "redriven": redriven}


@router.get("/models")
async def list_models(
    principal: Principal = Depends(get_current_principal),
    components=Depends(get_components)
) -> Dict[str, Any]:
    """Available model ids."""
    return {"models": await components.model_store.list_models()}
