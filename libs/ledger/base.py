"""Provenance ledger interface.

The ledger is the chain-of-title for generated assets: one immutable record
per completed job, naming the prompt, the exact model weights (by hash), the
input image (by hash), the requesting user and the produced outputs.

Records are hash-chained. Each record stores the hash of its predecessor and
its own hash over a canonical JSON encoding of every other field, so any
edit, deletion or reordering is detectable by ``verify()``. The pair
``(length, tip_hash)`` returned by ``digest()`` can be published externally;
a later digest that does not extend it proves tampering.
"""

import hashlib
import json
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

GENESIS_HASH = "0" * 64


class LedgerError(Exception):
    """Base class for ledger failures."""


class LedgerIntegrityError(LedgerError):
    """The stored chain does not verify."""


@dataclass
class OutputHash:
    """Content hash of one produced asset."""
    key: str
    sha256: str


@dataclass
class LedgerEntry:
    """What a worker submits for a completed job."""
    job_id: str
    tenant_id: str
    user_id: str
    prompt: str
    model_id: str
    model_hash: str
    input_image_hash: Optional[str] = None
    output_hashes: List[OutputHash] = field(default_factory=list)


@dataclass
class LedgerRecord:
    """An appended, chained ledger record."""
    sequence: int
    job_id: str
    tenant_id: str
    user_id: str
    prompt: str
    model_id: str
    model_hash: str
    input_image_hash: Optional[str]
    output_hashes: List[OutputHash]
    recorded_at: str
    previous_hash: str
    record_hash: str = ""

    def hash_payload(self) -> Dict[str, Any]:
        """All fields covered by ``record_hash``."""
        payload = asdict(self)
        payload.pop("record_hash")
        return payload

    def compute_hash(self) -> str:
        return compute_record_hash(self.hash_payload())

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LedgerRecord":
        data = dict(data)
        data["output_hashes"] = [
            item if isinstance(item, OutputHash) else OutputHash(**item)
            for item in data.get("output_hashes") or []
        ]
        return cls(**data)


@dataclass
class LedgerDigest:
    """Chain length and the hash of its last record."""
    length: int
    tip_hash: str


@dataclass
class LedgerVerification:
    """Result of walking the chain."""
    valid: bool
    length: int
    tip_hash: str
    first_invalid_sequence: Optional[int] = None
    reason: Optional[str] = None


def canonical_json(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def compute_record_hash(payload: Dict[str, Any]) -> str:
    return hashlib.sha256(canonical_json(payload).encode("utf-8")).hexdigest()


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def build_record(entry: LedgerEntry, sequence: int, previous_hash: str, recorded_at: Optional[str] = None) -> LedgerRecord:
    """Create the next record of the chain from an entry."""
    record = LedgerRecord(
        sequence=sequence,
        job_id=entry.job_id,
        tenant_id=entry.tenant_id,
        user_id=entry.user_id,
        prompt=entry.prompt,
        model_id=entry.model_id,
        model_hash=entry.model_hash,
        input_image_hash=entry.input_image_hash,
        output_hashes=[OutputHash(o.key, o.sha256) for o in entry.output_hashes],
        recorded_at=recorded_at or utc_timestamp(),
        previous_hash=previous_hash,
    )
    record.record_hash = record.compute_hash()
    return record


def verify_chain(records: Iterable[LedgerRecord]) -> LedgerVerification:
    """Check hashes, links and sequence contiguity of ordered records."""
    expected_previous = GENESIS_HASH
    length = 0
    for expected_sequence, record in enumerate(records):
        if record.sequence != expected_sequence:
            return LedgerVerification(
                valid=False,
                length=length,
                tip_hash=expected_previous,
                first_invalid_sequence=expected_sequence,
                reason=f"sequence gap: expected {expected_sequence}, found {record.sequence}",
            )
        if record.previous_hash != expected_previous:
            return LedgerVerification(
                valid=False,
                length=length,
                tip_hash=expected_previous,
                first_invalid_sequence=record.sequence,
                reason="previous_hash does not match predecessor",
            )
        if record.compute_hash() != record.record_hash:
            return LedgerVerification(
                valid=False,
                length=length,
                tip_hash=expected_previous,
                first_invalid_sequence=record.sequence,
                reason="record_hash does not match record contents",
            )
        expected_previous = record.record_hash
        length += 1

    return LedgerVerification(valid=True, length=length, tip_hash=expected_previous)


class ProvenanceLedger(ABC):
    """Abstract append-only provenance ledger."""

    @abstractmethod
    async def append(self, entry: LedgerEntry) -> LedgerRecord:
        """Append a record for ``entry.job_id``.

        Idempotent on ``job_id``: if the job already has a record it is
        returned unchanged and nothing is appended.
        """

    @abstractmethod
    async def get_by_job(self, job_id: str) -> Optional[LedgerRecord]:
        """Record for a job, if any."""

    @abstractmethod
    async def get(self, sequence: int) -> Optional[LedgerRecord]:
        """Record at a sequence number, if any."""

    @abstractmethod
    async def list_records(
        self,
        tenant_id: Optional[str] = None,
        offset: int = 0,
        limit: int = 100
    ) -> List[LedgerRecord]:
        """Records in sequence order, optionally limited to one tenant."""

    @abstractmethod
    async def digest(self) -> LedgerDigest:
        """Current chain length and tip hash."""

    @abstractmethod
    async def verify(self) -> LedgerVerification:
        """Verify the whole chain."""

    async def verify_record(self, record: LedgerRecord) -> bool:
        """Check a record's own hash and that the ledger holds it unchanged.

        Also confirms the link to its predecessor.
        """
        if record.compute_hash() != record.record_hash:
            return False
        stored = await self.get(record.sequence)
        if stored is None or stored.record_hash != record.record_hash:
            return False
        if record.sequence == 0:
            return record.previous_hash == GENESIS_HASH
        previous = await self.get(record.sequence - 1)
        return previous is not None and previous.record_hash == record.previous_hash

    async def close(self) -> None:
        return None
