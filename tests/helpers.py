"""Test helpers shared across modules."""

from libs.job_queue.models import Job, JobParameters

MODEL_ID = "sdxl/base-1.0.safetensors"
MODEL_BYTES = b"fake-weights-" * 64


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_job(tenant_id: str = "tenant-a", user_id: str = "user-1", **overrides) -> Job:
    parameters = overrides.pop("parameters", JobParameters(width=64, height=64, steps=4, seed=42))
    return Job.new(
        tenant_id=tenant_id,
        user_id=user_id,
        prompt=overrides.pop("prompt", "a lighthouse at dusk"),
        model_id=overrides.pop("model_id", MODEL_ID),
        parameters=parameters,
        **overrides
    )
