"""Job descriptors and job lifecycle state."""

import json
import time
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from .base import JobValidationError


@dataclass
class JobParameters:
    """Generation parameters forwarded to the inference backend."""
    negative_prompt: str = ""
    width: int = 1024
    height: int = 1024
    steps: int = 30
    cfg_scale: float = 7.0
    seed: Optional[int] = None
    denoise: float = 1.0


PARAMETER_TYPES = {
    "negative_prompt": (str,),
    "width": (int,),
    "height": (int,),
    "steps": (int,),
    "cfg_scale": (int, float),
    "seed": (int, type(None)),
    "denoise": (int, float),
}
POSITIVE_PARAMETERS = ("width", "height", "steps")


def _parse_parameters(raw: Dict[str, Any]) -> JobParameters:
    unknown = set(raw) - set(PARAMETER_TYPES)
    if unknown:
        raise JobValidationError(f"Unknown job parameters: {sorted(unknown)}")

    values: Dict[str, Any] = {}
    for name, value in raw.items():
        # bool is an int subclass but never a valid parameter.
        if isinstance(value, bool) or not isinstance(value, PARAMETER_TYPES[name]):
            raise JobValidationError(f"Job parameter '{name}' has the wrong type")
        if name in POSITIVE_PARAMETERS and value <= 0:
            raise JobValidationError(f"Job parameter '{name}' must be positive")
        if name in ("cfg_scale", "denoise"):
            value = float(value)
        values[name] = value
    return JobParameters(**values)


@dataclass
class Job:
    """A unit of generation work as carried on the queue."""
    job_id: str
    tenant_id: str
    user_id: str
    prompt: str
    model_id: str
    parameters: JobParameters = field(default_factory=JobParameters)
    input_image_key: Optional[str] = None
    submitted_at: int = 0

    @classmethod
    def new(
        cls,
        tenant_id: str,
        user_id: str,
        prompt: str,
        model_id: str,
        parameters: Optional[JobParameters] = None,
        input_image_key: Optional[str] = None
    ) -> "Job":
        return cls(
            job_id=uuid.uuid4().hex,
            tenant_id=tenant_id,
            user_id=user_id,
            prompt=prompt,
            model_id=model_id,
            parameters=parameters or JobParameters(),
            input_image_key=input_image_key,
            submitted_at=int(time.time() * 1000),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)

    @classmethod
    def from_json(cls, body: str) -> "Job":
        """Parse a queue body, raising ``JobValidationError`` on bad input."""
        try:
            data = json.loads(body)
        except (TypeError, ValueError) as e:
            raise JobValidationError(f"Job body is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise JobValidationError("Job body must be a JSON object")

        for name in ("job_id", "tenant_id", "user_id", "prompt", "model_id"):
            value = data.get(name)
            if not isinstance(value, str) or not value:
                raise JobValidationError(f"Job field '{name}' must be a non-empty string")

        raw_params = data.get("parameters") or {}
        if not isinstance(raw_params, dict):
            raise JobValidationError("Job field 'parameters' must be an object")
        parameters = _parse_parameters(raw_params)

        input_image_key = data.get("input_image_key")
        if input_image_key is not None and not isinstance(input_image_key, str):
            raise JobValidationError("Job field 'input_image_key' must be a string")

        submitted_at = data.get("submitted_at")
        if submitted_at is None:
            submitted_at = 0
        elif isinstance(submitted_at, bool) or not isinstance(submitted_at, int):
            raise JobValidationError("Job field 'submitted_at' must be an integer timestamp")

        return cls(
            job_id=data["job_id"],
            tenant_id=data["tenant_id"],
            user_id=data["user_id"],
            prompt=data["prompt"],
            model_id=data["model_id"],
            parameters=parameters,
            input_image_key=input_image_key,
            submitted_at=submitted_at,
        )


class JobStatus(str, Enum):
    """Lifecycle states visible to callers."""
    QUEUED = "queued"
    RUNNING = "running"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    DEAD_LETTERED = "dead_lettered"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.DEAD_LETTERED})

# RUNNING -> RUNNING covers redelivery after a worker crash; RUNNING -> QUEUED
# covers a message released on interruption.
ALLOWED_TRANSITIONS = {
    JobStatus.QUEUED: {JobStatus.RUNNING, JobStatus.FAILED, JobStatus.DEAD_LETTERED},
    JobStatus.RUNNING: {
        JobStatus.RUNNING,
        JobStatus.QUEUED,
        JobStatus.RETRYING,
        JobStatus.SUCCEEDED,
        JobStatus.FAILED,
        JobStatus.DEAD_LETTERED,
    },
    JobStatus.RETRYING: {JobStatus.RUNNING, JobStatus.FAILED, JobStatus.DEAD_LETTERED},
    JobStatus.SUCCEEDED: set(),
    JobStatus.FAILED: set(),
    JobStatus.DEAD_LETTERED: set(),
}


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


@dataclass
class JobState:
    """Status record for one job."""
    job_id: str
    tenant_id: str
    user_id: str
    model_id: str
    status: JobStatus = JobStatus.QUEUED
    attempts: int = 0
    submitted_at: int = 0
    updated_at: int = 0
    error: Optional[str] = None
    asset_keys: List[str] = field(default_factory=list)
    ledger_sequence: Optional[int] = None

    @classmethod
    def for_job(cls, job: Job) -> "JobState":
        return cls(
            job_id=job.job_id,
            tenant_id=job.tenant_id,
            user_id=job.user_id,
            model_id=job.model_id,
            submitted_at=job.submitted_at,
            updated_at=job.submitted_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobState":
        data = dict(data)
        data["status"] = JobStatus(data["status"])
        return cls(**data)
