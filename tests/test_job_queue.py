"""Tests for the in-process job queue and job descriptors."""

import asyncio

import pytest

from libs.job_queue.base import JobValidationError, StaleReceiptError
from libs.job_queue.memory import InMemoryJobQueue
from libs.job_queue.models import Job

from .helpers import make_job


@pytest.mark.asyncio
async def test_receive_hides_message_until_timeout(queue, clock):
    await queue.enqueue("job-1", "body")

    first = await queue.receive()
    assert len(first) == 1
    assert first[0].receive_count == 1
    assert not first[0].is_redelivery
    assert await queue.receive() == []

    clock.advance(31)
    again = await queue.receive()
    assert [m.message_id for m in again] == ["job-1"]
    assert again[0].receive_count == 2
    assert again[0].receipt_handle != first[0].receipt_handle


@pytest.mark.asyncio
async def test_stale_receipt_cannot_acknowledge(queue, clock):
    await queue.enqueue("job-1", "body")
    stale = (await queue.receive())[0]
    clock.advance(31)
    current = (await queue.receive())[0]

    with pytest.raises(StaleReceiptError):
        await queue.delete(stale.receipt_handle)
    with pytest.raises(StaleReceiptError):
        await queue.change_visibility(stale.receipt_handle, 10)

    await queue.delete(current.receipt_handle)
    assert (await queue.depth()).backlog == 0


@pytest.mark.asyncio
async def test_expired_but_not_redelivered_receipt_still_valid(queue, clock):
    await queue.enqueue("job-1", "body")
    message = (await queue.receive())[0]
    clock.advance(60)
    await queue.delete(message.receipt_handle)
    assert await queue.receive() == []


@pytest.mark.asyncio
async def test_change_visibility_zero_releases(queue):
    await queue.enqueue("job-1", "body")
    message = (await queue.receive())[0]
    await queue.change_visibility(message.receipt_handle, 0)
    assert [m.message_id for m in await queue.receive()] == ["job-1"]


@pytest.mark.asyncio
async def test_dedup_window(queue, clock):
    assert await queue.enqueue("job-1", "a", dedup_id="t:u:key") == "job-1"
    assert await queue.enqueue("job-2", "b", dedup_id="t:u:key") == "job-1"
    assert (await queue.depth()).visible == 1

    clock.advance(61)
    assert await queue.enqueue("job-3", "c", dedup_id="t:u:key") == "job-3"


@pytest.mark.asyncio
async def test_enqueue_same_message_id_is_noop(queue):
    await queue.enqueue("job-1", "a")
    await queue.enqueue("job-1", "b")
    messages = await queue.receive(max_messages=10)
    assert len(messages) == 1
    assert messages[0].body == "a"


@pytest.mark.asyncio
async def test_exceeding_receive_limit_dead_letters(queue, clock):
    await queue.enqueue("job-1", "body")
    for _ in range(3):
        assert await queue.receive()
        clock.advance(31)

    assert await queue.receive() == []
    depth = await queue.depth()
    assert depth.dead_letter == 1
    assert depth.backlog == 0

    dead = await queue.list_dead_letters()
    assert dead[0].message_id == "job-1"
    assert dead[0].receive_count == 3
    assert dead[0].reason == "max_receive_count_exceeded"


@pytest.mark.asyncio
async def test_explicit_dead_letter_and_redrive(queue):
    await queue.enqueue("job-1", "body")
    message = (await queue.receive())[0]
    await queue.dead_letter(message.receipt_handle, "invalid_job")

    assert (await queue.list_dead_letters())[0].reason == "invalid_job"
    assert await queue.redrive_dead_letters() == 1

    redriven = (await queue.receive())[0]
    assert redriven.message_id == "job-1"
    assert redriven.receive_count == 1


@pytest.mark.asyncio
async def test_fifo_by_visibility(queue, clock):
    await queue.enqueue("job-1", "a")
    clock.advance(1)
    await queue.enqueue("job-2", "b")
    await queue.enqueue("job-0", "c", delay_seconds=5)

    assert [m.message_id for m in await queue.receive(max_messages=3)] == ["job-1", "job-2"]
    assert (await queue.depth()).delayed == 1


@pytest.mark.asyncio
async def test_depth_counts_states(queue):
    await queue.enqueue("job-1", "a")
    await queue.enqueue("job-2", "b")
    await queue.receive()
    depth = await queue.depth()
    assert (depth.visible, depth.in_flight, depth.backlog) == (1, 1, 2)


@pytest.mark.asyncio
async def test_long_poll_wakes_on_enqueue():
    queue = InMemoryJobQueue(visibility_timeout=30)

    async def producer():
        await asyncio.sleep(0.05)
        await queue.enqueue("job-1", "body")

    task = asyncio.create_task(producer())
    messages = await queue.receive(wait_seconds=2.0)
    await task
    assert [m.message_id for m in messages] == ["job-1"]


@pytest.mark.asyncio
async def test_long_poll_times_out_empty():
    queue = InMemoryJobQueue(visibility_timeout=30)
    assert await queue.receive(wait_seconds=0.05) == []


def test_invalid_queue_settings():
    with pytest.raises(ValueError):
        InMemoryJobQueue(visibility_timeout=0)
    with pytest.raises(ValueError):
        InMemoryJobQueue(max_receive_count=0)


def test_job_json_round_trip():
    job = make_job(input_image_key="inputs/abc.png")
    parsed = Job.from_json(job.to_json())
    assert parsed == job


@pytest.mark.parametrize("body", [
    "not json",
    "[]",
    '{"job_id": "j", "tenant_id": "t", "user_id": "u", "prompt": "", "model_id": "m"}',
    '{"job_id": "j", "tenant_id": "t", "user_id": "u", "prompt": "p", "model_id": "m", "parameters": {"bogus": 1}}',
    '{"job_id": "j", "tenant_id": "t", "user_id": "u", "prompt": "p", "model_id": "m", "input_image_key": 5}',
    '{"job_id": "j", "tenant_id": "t", "user_id": "u", "prompt": "p", "model_id": "m", "submitted_at": "yesterday"}',
    '{"job_id": "j", "tenant_id": "t", "user_id": "u", "prompt": "p", "model_id": "m", "submitted_at": 1.5}',
    '{"job_id": "j", "tenant_id": "t", "user_id": "u", "prompt": "p", "model_id": "m", "parameters": {"width": "big"}}',
    '{"job_id": "j", "tenant_id": "t", "user_id": "u", "prompt": "p", "model_id": "m", "parameters": {"steps": true}}',
    '{"job_id": "j", "tenant_id": "t", "user_id": "u", "prompt": "p", "model_id": "m", "parameters": {"seed": "42"}}',
    '{"job_id": "j", "tenant_id": "t", "user_id": "u", "prompt": "p", "model_id": "m", "parameters": {"height": -64}}',
])
def test_job_from_json_rejects_malformed(body):
    with pytest.raises(JobValidationError):
        Job.from_json(body)


def test_job_from_json_fills_defaults():
    job = Job.from_json(
        '{"job_id": "j", "tenant_id": "t", "user_id": "u", "prompt": "p", "model_id": "m",'
        ' "parameters": {"cfg_scale": 5, "seed": null}}'
    )
    assert job.submitted_at == 0
    assert job.parameters.cfg_scale == 5.0
    assert isinstance(job.parameters.cfg_scale, float)
    assert job.parameters.seed is None
