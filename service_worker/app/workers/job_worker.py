"""Job worker: turns one queue delivery into stored assets and a ledger record.

Processing a delivery
1. Parse the job; a malformed body is dead-lettered and marked ``failed``.
2. Mark the job ``running`` with ``attempts`` = receive count.
3. If the ledger already holds the job (a previous delivery finished but
   crashed before acknowledging), finish without running inference again.
4. Resolve the model weights hash and load/hash the input image.
5. Keep extending the message visibility while work is in progress.
6. Reuse outputs already stored for the job, otherwise run inference and
   write each output once to ``outputs/{job_id}/{n}.{ext}``.
7. Append the ledger record, mark ``succeeded``, publish, acknowledge.

Retryable failures hide the message for an exponential backoff and mark the
job ``retrying``; the last allowed delivery dead-letters it instead.
Non-retryable failures dead-letter immediately. Cancellation (drain, Spot
interruption) releases the message for immediate redelivery.
"""

import asyncio
import time
from typing import List, Optional, Tuple

import structlog

from libs.common.events import (
    BaseEvent,
    EventPublisher,
    JobCompletedEvent,
    JobDeadLetteredEvent,
    JobFailedEvent,
    publish_safely,
)
from libs.common.logging import job_log_context
from libs.common.metrics import MetricsCollector
from libs.common.tracing import TracingContext
from libs.job_queue.base import JobQueue, JobValidationError, ReceivedMessage, StaleReceiptError
from libs.job_queue.models import Job, JobState, JobStatus
from libs.job_queue.status import JobStatusStore
from libs.ledger.base import LedgerEntry, LedgerRecord, OutputHash, ProvenanceLedger
from libs.storage.base import (
    AssetExistsError,
    AssetNotFoundError,
    AssetRef,
    AssetStore,
    InvalidAssetKeyError,
    ModelNotFoundError,
    ModelStore,
    ModelWeights,
    sha256_hex,
)

from ..inference.base import InferenceBackend, InferenceRejectedError, InferenceRequest
from ..pipelines.retry_handler import backoff_delay

logger = structlog.get_logger("job_worker")

# Errors that no amount of retrying can fix.
NON_RETRYABLE_ERRORS = (
    JobValidationError,
    ModelNotFoundError,
    AssetNotFoundError,
    InvalidAssetKeyError,
    InferenceRejectedError,
)


class JobOutcome:
    """Outcome labels of one processing attempt."""
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    RETRYING = "retrying"
    FAILED = "failed"
    DEAD_LETTERED = "dead_lettered"
    RELEASED = "released"
    LOST_LEASE = "lost_lease"


def output_prefix(job_id: str) -> str:
    return f"outputs/{job_id}/"


class JobWorker:
    """Processes deliveries from a job queue.

    One instance may be shared by many concurrent loops; it keeps no state
    per delivery.
    """

    def __init__(
        self,
        queue: JobQueue,
        status_store: JobStatusStore,
        ledger: ProvenanceLedger,
        asset_store: AssetStore,
        model_store: ModelStore,
        backend: InferenceBackend,
        event_publisher: Optional[EventPublisher] = None,
        metrics: Optional[MetricsCollector] = None,
        tracer=None,
        retry_base_delay: float = 5.0,
        retry_max_delay: float = 300.0,
        heartbeat_interval: Optional[float] = None
    ):
        """Configure the worker.

        Parameters
        - retry_base_delay / retry_max_delay: Backoff bounds (seconds) for
          hiding a job after a retryable failure
        - heartbeat_interval: Seconds between visibility extensions; defaults
          to a third of the queue's visibility timeout
        """
        self.queue = queue
        self.status_store = status_store
        self.ledger = ledger
        self.asset_store = asset_store
        self.model_store = model_store
        self.backend = backend
        self.event_publisher = event_publisher
        self.metrics = metrics
        self.tracer = tracer
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self.heartbeat_interval = heartbeat_interval or queue.visibility_timeout / 3

    async def process(self, message: ReceivedMessage) -> str:
        """Process one delivery and return its outcome label."""
        start_time = time.perf_counter()
        if message.is_redelivery and self.metrics:
            self.metrics.record_redelivery(self.queue.name)

        try:
            job = Job.from_json(message.body)
        except JobValidationError as e:
            outcome = await self._reject_invalid(message, e)
        else:
            with job_log_context(job_id=job.job_id, tenant_id=job.tenant_id, attempt=message.receive_count):
                with TracingContext(
                    self.tracer,
                    "job.process",
                    job_id=job.job_id,
                    model_id=job.model_id,
                    attempt=message.receive_count
                ):
                    outcome = await self._process_job(job, message)

        if self.metrics:
            self.metrics.record_job_processed(outcome, time.perf_counter() - start_time)
        return outcome

    async def _reject_invalid(self, message: ReceivedMessage, error: JobValidationError) -> str:
        logger.error("Invalid job payload", message_id=message.message_id, error=str(error))
        await self._dead_letter_message(message, f"invalid_job: {error}")
        # The message id is the job id for gateway submissions.
        await self.status_store.transition(message.message_id, JobStatus.FAILED, error=str(error))
        return JobOutcome.FAILED

    async def _process_job(self, job: Job, message: ReceivedMessage) -> str:
        if await self.status_store.get(job.job_id) is None:
            await self.status_store.create(JobState.for_job(job))
        if not await self.status_store.transition(job.job_id, JobStatus.RUNNING, attempts=message.receive_count):
            logger.info("Job already in a terminal state; acknowledging")
            await self._acknowledge(message)
            return JobOutcome.SKIPPED

        existing = await self.ledger.get_by_job(job.job_id)
        if existing is not None:
            logger.info("Ledger already holds job; finishing without inference", sequence=existing.sequence)
            await self._complete(job, message, existing)
            return JobOutcome.SKIPPED

        heartbeat = asyncio.create_task(self._heartbeat(message))
        try:
            record = await self._execute(job)
        except asyncio.CancelledError:
            await asyncio.shield(self._release(job, message))
            raise
        except StaleReceiptError:
            logger.warning("Lost lease on message while processing")
            return JobOutcome.LOST_LEASE
        except NON_RETRYABLE_ERRORS as e:
            return await self._fail(job, message, e)
        except Exception as e:
            return await self._retry_or_dead_letter(job, message, e)
        finally:
            heartbeat.cancel()

        await self._complete(job, message, record)
        return JobOutcome.SUCCEEDED

    async def _execute(self, job: Job) -> LedgerRecord:
        weights = await self.model_store.resolve(job.model_id)

        input_image: Optional[bytes] = None
        input_hash: Optional[str] = None
        if job.input_image_key:
            input_image = await self.asset_store.get(job.tenant_id, job.input_image_key)
            input_hash = sha256_hex(input_image)

        refs = await self.asset_store.list(job.tenant_id, output_prefix(job.job_id))
        if refs:
            logger.info("Reusing stored outputs", outputs=len(refs))
            if self.metrics:
                self.metrics.record_asset_write("reused")
        else:
            refs = await self._generate(job, weights, input_image)

        record = await self.ledger.append(LedgerEntry(
            job_id=job.job_id,
            tenant_id=job.tenant_id,
            user_id=job.user_id,
            prompt=job.prompt,
            model_id=job.model_id,
            model_hash=weights.sha256,
            input_image_hash=input_hash,
            output_hashes=[OutputHash(key=ref.key, sha256=ref.sha256) for ref in refs],
        ))
        if self.metrics:
            self.metrics.record_ledger_append("appended")
        return record

    async def _generate(self, job: Job, weights: ModelWeights, input_image: Optional[bytes]) -> List[AssetRef]:
        params = job.parameters
        request = InferenceRequest(
            job_id=job.job_id,
            prompt=job.prompt,
            model_id=job.model_id,
            model_hash=weights.sha256,
            negative_prompt=params.negative_prompt,
            width=params.width,
            height=params.height,
            steps=params.steps,
            cfg_scale=params.cfg_scale,
            seed=params.seed or 0,
            denoise=params.denoise,
            input_image=input_image,
            input_image_name=job.input_image_key.rsplit("/", 1)[-1] if job.input_image_key else None,
        )

        start_time = time.perf_counter()
        result = await self.backend.generate(request)
        if self.metrics:
            self.metrics.record_inference(self.backend.name, job.model_id, time.perf_counter() - start_time)

        refs = []
        for n, output in enumerate(result.outputs):
            key = f"{output_prefix(job.job_id)}{n}.{output.extension}"
            ref, result_label = await self._store_output(job, key, output.data, output.content_type)
            if self.metrics:
                self.metrics.record_asset_write(result_label)
            refs.append(ref)
        logger.info("Stored job outputs", outputs=len(refs))
        return refs

    async def _store_output(self, job: Job, key: str, data: bytes, content_type: str) -> Tuple[AssetRef, str]:
        try:
            return await self.asset_store.put(job.tenant_id, key, data, content_type), "written"
        except AssetExistsError:
            # An earlier delivery stored this slot; the first write wins.
            existing = await self.asset_store.stat(job.tenant_id, key)
            if existing is None:
                raise
            logger.warning("Output slot already written by an earlier attempt", key=key)
            return existing, "reused"

    async def _heartbeat(self, message: ReceivedMessage) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await self.queue.change_visibility(message.receipt_handle, self.queue.visibility_timeout)
            except StaleReceiptError:
                logger.warning("Heartbeat lost the message lease")
                return
            except Exception as e:
                logger.warning("Heartbeat failed to extend visibility", error=str(e))

    async def _complete(self, job: Job, message: ReceivedMessage, record: LedgerRecord) -> None:
        asset_keys = [output.key for output in record.output_hashes]
        await self.status_store.transition(
            job.job_id,
            JobStatus.SUCCEEDED,
            asset_keys=asset_keys,
            ledger_sequence=record.sequence,
            error=None
        )
        await self._publish(JobCompletedEvent(
            job_id=job.job_id,
            tenant_id=job.tenant_id,
            ledger_sequence=record.sequence,
            asset_keys=asset_keys,
        ))
        await self._acknowledge(message)
        logger.info("Job succeeded", sequence=record.sequence, record_hash=record.record_hash)

    async def _fail(self, job: Job, message: ReceivedMessage, error: Exception) -> str:
        logger.error("Job failed permanently", error=str(error), error_type=type(error).__name__)
        await self._dead_letter_message(message, f"{type(error).__name__}: {error}")
        await self.status_store.transition(job.job_id, JobStatus.FAILED, error=str(error))
        await self._publish(JobFailedEvent(
            job_id=job.job_id,
            tenant_id=job.tenant_id,
            error=str(error),
            attempt=message.receive_count,
            final=True,
        ))
        return JobOutcome.FAILED

    async def _retry_or_dead_letter(self, job: Job, message: ReceivedMessage, error: Exception) -> str:
        if message.receive_count >= self.queue.max_receive_count:
            logger.error(
                "Job exhausted its deliveries",
                error=str(error),
                error_type=type(error).__name__,
                max_receive_count=self.queue.max_receive_count
            )
            reason = f"max_receive_count_exceeded: {error}"
            await self._dead_letter_message(message, reason)
            await self.status_store.transition(job.job_id, JobStatus.DEAD_LETTERED, error=str(error))
            await self._publish(JobDeadLetteredEvent(job_id=job.job_id, tenant_id=job.tenant_id, reason=reason))
            return JobOutcome.DEAD_LETTERED

        delay = backoff_delay(message.receive_count - 1, self.retry_base_delay, self.retry_max_delay)
        logger.warning(
            "Job attempt failed, will retry",
            error=str(error),
            error_type=type(error).__name__,
            retry_in_seconds=round(delay, 2)
        )
        try:
            await self.queue.change_visibility(message.receipt_handle, delay)
        except StaleReceiptError:
            logger.warning("Lost lease before scheduling retry")
            return JobOutcome.LOST_LEASE
        await self.status_store.transition(
            job.job_id,
            JobStatus.RETRYING,
            error=str(error),
            attempts=message.receive_count
        )
        await self._publish(JobFailedEvent(
            job_id=job.job_id,
            tenant_id=job.tenant_id,
            error=str(error),
            attempt=message.receive_count,
            final=False,
        ))
        return JobOutcome.RETRYING

    async def _release(self, job: Job, message: ReceivedMessage) -> None:
        logger.warning("Processing interrupted; releasing message")
        try:
            await self.queue.change_visibility(message.receipt_handle, 0)
        except StaleReceiptError:
            return
        await self.status_store.transition(job.job_id, JobStatus.QUEUED)
        if self.metrics:
            self.metrics.record_job_processed(JobOutcome.RELEASED)

    async def _acknowledge(self, message: ReceivedMessage) -> None:
        try:
            await self.queue.delete(message.receipt_handle)
        except StaleReceiptError:
            # Another delivery owns the message now; it will find the ledger
            # record and acknowledge.
            logger.warning("Could not acknowledge message; receipt is stale")

    async def _dead_letter_message(self, message: ReceivedMessage, reason: str) -> None:
        try:
            await self.queue.dead_letter(message.receipt_handle, reason)
        except StaleReceiptError:
            logger.warning("Could not dead-letter message; receipt is stale")

    async def _publish(self, event: BaseEvent) -> None:
        if self.event_publisher is not None:
            await asyncio.to_thread(publish_safely, self.event_publisher, event)
