"""Tests for job processing: retries, dead letters, redelivery and release."""

import asyncio
import json
from unittest.mock import MagicMock

import pytest

from libs.common.events import EventType
from libs.common.metrics import MetricsCollector
from libs.job_queue.models import JobState, JobStatus
from libs.job_queue.status import redrive_dead_lettered_jobs
from libs.storage.base import sha256_hex
from service_worker.app.inference.base import (
    GPUOutOfMemoryError,
    InferenceBackend,
    InferenceRejectedError,
    InferenceResult,
)
from service_worker.app.inference.deterministic import DeterministicBackend
from service_worker.app.workers.job_worker import JobOutcome, JobWorker, output_prefix

from .helpers import MODEL_BYTES, make_job


class ScriptedBackend(InferenceBackend):
    """Raises the queued errors in order, then renders deterministically."""

    name = "scripted"

    def __init__(self, *errors: Exception):
        self.errors = list(errors)
        self.calls = 0
        self._delegate = DeterministicBackend()

    async def generate(self, request) -> InferenceResult:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return await self._delegate.generate(request)


class BlockingBackend(InferenceBackend):
    """Blocks until cancelled."""

    name = "blocking"

    def __init__(self):
        self.started = asyncio.Event()

    async def generate(self, request) -> InferenceResult:
        self.started.set()
        await asyncio.Event().wait()


@pytest.fixture
def backend():
    return ScriptedBackend()


@pytest.fixture
def publisher():
    return MagicMock()


@pytest.fixture
def worker(queue, status_store, ledger, asset_store, model_store, backend, publisher):
    return JobWorker(
        queue=queue,
        status_store=status_store,
        ledger=ledger,
        asset_store=asset_store,
        model_store=model_store,
        backend=backend,
        event_publisher=publisher,
        metrics=MetricsCollector("worker-test"),
        retry_base_delay=5.0,
        retry_max_delay=60.0,
    )


async def submit(queue, status_store, job):
    await queue.enqueue(job.job_id, job.to_json())
    await status_store.create(JobState.for_job(job))


async def receive_one(queue):
    messages = await queue.receive()
    assert len(messages) == 1
    return messages[0]


def published_types(publisher):
    return [c.args[0].event_type for c in publisher.publish.call_args_list]


@pytest.mark.asyncio
async def test_successful_job(worker, queue, status_store, ledger, asset_store, publisher):
    job = make_job()
    await submit(queue, status_store, job)

    assert await worker.process(await receive_one(queue)) == JobOutcome.SUCCEEDED

    state = await status_store.get(job.job_id)
    assert state.status == JobStatus.SUCCEEDED
    assert state.attempts == 1
    assert state.asset_keys == [f"outputs/{job.job_id}/0.png"]
    assert state.ledger_sequence == 0

    record = await ledger.get_by_job(job.job_id)
    assert record.model_hash == sha256_hex(MODEL_BYTES)
    assert record.prompt == job.prompt
    assert record.user_id == "user-1"
    assert record.input_image_hash is None
    stored = await asset_store.get(job.tenant_id, state.asset_keys[0])
    assert record.output_hashes[0].sha256 == sha256_hex(stored)

    assert (await queue.depth()).backlog == 0
    assert published_types(publisher) == [EventType.JOB_COMPLETED.value]
    assert 'outcome="succeeded"' in worker.metrics.get_metrics()


@pytest.mark.asyncio
async def test_img2img_records_input_hash(worker, queue, status_store, ledger, asset_store):
    await asset_store.put("tenant-a", "inputs/source.png", b"source-image", "image/png")
    job = make_job(input_image_key="inputs/source.png")
    await submit(queue, status_store, job)

    assert await worker.process(await receive_one(queue)) == JobOutcome.SUCCEEDED
    record = await ledger.get_by_job(job.job_id)
    assert record.input_image_hash == sha256_hex(b"source-image")


@pytest.mark.asyncio
async def test_crash_before_ack_yields_one_record(worker, queue, status_store, ledger, asset_store, backend, clock):
    job = make_job()
    await submit(queue, status_store, job)

    async def killed(handle):
        raise RuntimeError("worker killed")

    queue.delete = killed
    with pytest.raises(RuntimeError):
        await worker.process(await receive_one(queue))
    del queue.delete

    clock.advance(31)
    redelivered = await receive_one(queue)
    assert redelivered.receive_count == 2
    assert await worker.process(redelivered) == JobOutcome.SKIPPED

    assert (await ledger.digest()).length == 1
    assert len(await asset_store.list(job.tenant_id, output_prefix(job.job_id))) == 1
    assert backend.calls == 1
    assert (await queue.depth()).backlog == 0


@pytest.mark.asyncio
async def test_crash_after_ledger_append_finishes_on_redelivery(worker, queue, status_store, ledger, backend, clock):
    job = make_job()
    await submit(queue, status_store, job)

    async def killed(*args):
        raise RuntimeError("worker killed")

    worker._complete = killed
    with pytest.raises(RuntimeError):
        await worker.process(await receive_one(queue))
    del worker._complete
    assert (await status_store.get(job.job_id)).status == JobStatus.RUNNING

    clock.advance(31)
    assert await worker.process(await receive_one(queue)) == JobOutcome.SKIPPED

    state = await status_store.get(job.job_id)
    assert state.status == JobStatus.SUCCEEDED
    assert state.ledger_sequence == 0
    assert (await ledger.digest()).length == 1
    assert backend.calls == 1


@pytest.mark.asyncio
async def test_retry_reuses_stored_outputs(worker, queue, status_store, ledger, backend, clock):
    job = make_job()
    await submit(queue, status_store, job)

    original_append = ledger.append
    ledger.append = MagicMock(side_effect=ConnectionError("ledger unreachable"))
    assert await worker.process(await receive_one(queue)) == JobOutcome.RETRYING
    ledger.append = original_append

    clock.advance(10)
    assert await worker.process(await receive_one(queue)) == JobOutcome.SUCCEEDED
    assert backend.calls == 1
    assert (await ledger.get_by_job(job.job_id)).output_hashes[0].key == f"outputs/{job.job_id}/0.png"


@pytest.mark.asyncio
async def test_out_of_memory_retries_with_backoff(worker, queue, status_store, backend, publisher, clock):
    backend.errors.append(GPUOutOfMemoryError("CUDA out of memory"))
    job = make_job()
    await submit(queue, status_store, job)

    assert await worker.process(await receive_one(queue)) == JobOutcome.RETRYING
    state = await status_store.get(job.job_id)
    assert state.status == JobStatus.RETRYING
    assert "out of memory" in state.error

    # Hidden for roughly retry_base_delay.
    clock.advance(4)
    assert await queue.receive() == []
    clock.advance(2)
    message = await receive_one(queue)
    assert message.receive_count == 2

    assert await worker.process(message) == JobOutcome.SUCCEEDED
    state = await status_store.get(job.job_id)
    assert state.attempts == 2
    assert state.error is None
    assert published_types(publisher) == [EventType.JOB_FAILED.value, EventType.JOB_COMPLETED.value]


@pytest.mark.asyncio
async def test_exhausted_deliveries_dead_letter(worker, queue, status_store, backend, publisher, clock):
    backend.errors.extend(GPUOutOfMemoryError("CUDA out of memory") for _ in range(3))
    job = make_job()
    await submit(queue, status_store, job)

    outcomes = []
    for _ in range(3):
        outcomes.append(await worker.process(await receive_one(queue)))
        clock.advance(100)
    assert outcomes == [JobOutcome.RETRYING, JobOutcome.RETRYING, JobOutcome.DEAD_LETTERED]

    assert (await status_store.get(job.job_id)).status == JobStatus.DEAD_LETTERED
    depth = await queue.depth()
    assert (depth.backlog, depth.dead_letter) == (0, 1)
    assert published_types(publisher)[-1] == EventType.JOB_DEAD_LETTERED.value


@pytest.mark.asyncio
async def test_redriven_job_runs_to_success(worker, queue, status_store, ledger, backend, clock):
    backend.errors.extend(GPUOutOfMemoryError("CUDA out of memory") for _ in range(3))
    job = make_job()
    await submit(queue, status_store, job)
    for _ in range(3):
        await worker.process(await receive_one(queue))
        clock.advance(100)
    assert (await status_store.get(job.job_id)).status == JobStatus.DEAD_LETTERED

    assert await redrive_dead_lettered_jobs(queue, status_store) == 1
    state = await status_store.get(job.job_id)
    assert state.status == JobStatus.QUEUED
    assert state.error is None

    message = await receive_one(queue)
    assert message.receive_count == 1
    assert await worker.process(message) == JobOutcome.SUCCEEDED
    assert (await status_store.get(job.job_id)).status == JobStatus.SUCCEEDED
    assert (await ledger.digest()).length == 1
    assert (await queue.depth()).dead_letter == 0


@pytest.mark.asyncio
async def test_redrive_leaves_failed_jobs_failed(worker, queue, status_store, ledger):
    job = make_job(model_id="sdxl/missing.safetensors")
    await submit(queue, status_store, job)
    assert await worker.process(await receive_one(queue)) == JobOutcome.FAILED

    assert await redrive_dead_lettered_jobs(queue, status_store) == 1
    assert await worker.process(await receive_one(queue)) == JobOutcome.SKIPPED
    assert (await status_store.get(job.job_id)).status == JobStatus.FAILED
    assert (await ledger.digest()).length == 0


@pytest.mark.asyncio
async def test_unknown_model_fails_immediately(worker, queue, status_store, ledger):
    job = make_job(model_id="sdxl/missing.safetensors")
    await submit(queue, status_store, job)

    assert await worker.process(await receive_one(queue)) == JobOutcome.FAILED
    state = await status_store.get(job.job_id)
    assert state.status == JobStatus.FAILED
    assert "missing" in state.error
    assert (await queue.depth()).dead_letter == 1
    assert (await ledger.digest()).length == 0


@pytest.mark.asyncio
async def test_missing_input_image_fails(worker, queue, status_store):
    job = make_job(input_image_key="inputs/gone.png")
    await submit(queue, status_store, job)
    assert await worker.process(await receive_one(queue)) == JobOutcome.FAILED


@pytest.mark.asyncio
async def test_rejected_request_fails(worker, queue, status_store, backend):
    backend.errors.append(InferenceRejectedError("Workflow node errors"))
    job = make_job()
    await submit(queue, status_store, job)
    assert await worker.process(await receive_one(queue)) == JobOutcome.FAILED
    assert (await status_store.get(job.job_id)).status == JobStatus.FAILED


@pytest.mark.asyncio
async def test_malformed_body_dead_lettered(worker, queue):
    await queue.enqueue("bad-1", "{not json")
    assert await worker.process(await receive_one(queue)) == JobOutcome.FAILED
    dead = await queue.list_dead_letters()
    assert dead[0].message_id == "bad-1"
    assert dead[0].reason.startswith("invalid_job")


@pytest.mark.asyncio
@pytest.mark.parametrize("field,value", [
    ("submitted_at", "yesterday"),
    ("parameters", {"width": "big"}),
])
async def test_badly_typed_body_fails_without_retry(worker, queue, status_store, backend, field, value):
    job = make_job()
    await status_store.create(JobState.for_job(job))
    body = {**job.to_dict(), field: value}
    await queue.enqueue(job.job_id, json.dumps(body))

    assert await worker.process(await receive_one(queue)) == JobOutcome.FAILED
    assert (await status_store.get(job.job_id)).status == JobStatus.FAILED
    assert (await queue.depth()).dead_letter == 1
    assert backend.calls == 0


@pytest.mark.asyncio
async def test_missing_status_is_created(worker, queue, status_store):
    job = make_job()
    await queue.enqueue(job.job_id, job.to_json())
    assert await worker.process(await receive_one(queue)) == JobOutcome.SUCCEEDED
    assert (await status_store.get(job.job_id)).status == JobStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_cancellation_releases_message(queue, status_store, ledger, asset_store, model_store):
    backend = BlockingBackend()
    worker = JobWorker(queue, status_store, ledger, asset_store, model_store, backend)
    job = make_job()
    await submit(queue, status_store, job)

    task = asyncio.create_task(worker.process(await receive_one(queue)))
    await asyncio.wait_for(backend.started.wait(), 5)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert (await status_store.get(job.job_id)).status == JobStatus.QUEUED
    redelivered = await receive_one(queue)
    assert redelivered.receive_count == 2


@pytest.mark.asyncio
async def test_heartbeat_extends_visibility(queue, status_store, ledger, asset_store, model_store):
    worker = JobWorker(
        queue, status_store, ledger, asset_store, model_store,
        DeterministicBackend(latency_seconds=0.3),
        heartbeat_interval=0.05,
    )
    extensions = []
    original = queue.change_visibility

    async def recording(handle, timeout):
        extensions.append(timeout)
        await original(handle, timeout)

    queue.change_visibility = recording
    job = make_job()
    await submit(queue, status_store, job)

    assert await worker.process(await receive_one(queue)) == JobOutcome.SUCCEEDED
    assert len(extensions) >= 2
    assert set(extensions) == {queue.visibility_timeout}
