"""In-process provenance ledger."""

import asyncio
from typing import Dict, List, Optional

import structlog

from libs.common.metrics import measure_time

from .base import (
    GENESIS_HASH,
    LedgerDigest,
    LedgerEntry,
    LedgerRecord,
    LedgerVerification,
    ProvenanceLedger,
    build_record,
    verify_chain,
)

logger = structlog.get_logger("ledger.memory")


class InMemoryLedger(ProvenanceLedger):
    """Hash-chained ledger kept in a list; appends are serialized by a lock.

    Records handed out are copies, so callers cannot alter the chain.
    """

    def __init__(self):
        self._records: List[LedgerRecord] = []
        self._by_job: Dict[str, int] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def _copy(record: LedgerRecord) -> LedgerRecord:
        return LedgerRecord.from_dict(record.to_dict())

    async def append(self, entry: LedgerEntry) -> LedgerRecord:
        async with self._lock:
            existing = self._by_job.get(entry.job_id)
            if existing is not None:
                logger.info("Ledger record already present", job_id=entry.job_id, sequence=existing)
                return self._copy(self._records[existing])

            previous_hash = self._records[-1].record_hash if self._records else GENESIS_HASH
            record = build_record(entry, len(self._records), previous_hash)
            self._records.append(record)
            self._by_job[entry.job_id] = record.sequence

            logger.info(
                "Ledger record appended",
                job_id=entry.job_id,
                sequence=record.sequence,
                record_hash=record.record_hash
            )
            return self._copy(record)

    async def get_by_job(self, job_id: str) -> Optional[LedgerRecord]:
        sequence = self._by_job.get(job_id)
        return None if sequence is None else self._copy(self._records[sequence])

    async def get(self, sequence: int) -> Optional[LedgerRecord]:
        if 0 <= sequence < len(self._records):
            return self._copy(self._records[sequence])
        return None

    async def list_records(
        self,
        tenant_id: Optional[str] = None,
        offset: int = 0,
        limit: int = 100
    ) -> List[LedgerRecord]:
        records = [r for r in self._records if tenant_id is None or r.tenant_id == tenant_id]
        return [self._copy(r) for r in records[offset:offset + limit]]

    async def digest(self) -> LedgerDigest:
        async with self._lock:
            tip = self._records[-1].record_hash if self._records else GENESIS_HASH
            return LedgerDigest(length=len(self._records), tip_hash=tip)

    @measure_time("ledger.verify", backend="memory")
    async def verify(self) -> LedgerVerification:
        async with self._lock:
            return verify_chain(list(self._records))
