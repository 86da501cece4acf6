"""PostgreSQL implementation of the provenance ledger.

Records live in a single table. A trigger rejects ``UPDATE``/``DELETE`` so
the table is append-only even for clients that bypass this class, and
appends take a transaction-scoped advisory lock so concurrent workers extend
the chain one record at a time.

Connection management
- A shared asyncpg pool is created on demand and reused across calls
- The schema is created lazily on first use
"""

import json
from typing import Any, List, Optional

import asyncpg
import structlog
from asyncpg import Pool

from libs.common.metrics import measure_time

from .base import (
    GENESIS_HASH,
    LedgerDigest,
    LedgerEntry,
    LedgerError,
    LedgerRecord,
    LedgerVerification,
    OutputHash,
    ProvenanceLedger,
    build_record,
    verify_chain,
)

logger = structlog.get_logger("ledger.postgres")

# Arbitrary constant shared by every appender.
APPEND_LOCK_KEY = 0x6C656467

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS {table} (
    sequence BIGINT PRIMARY KEY,
    job_id TEXT NOT NULL UNIQUE,
    tenant_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    prompt TEXT NOT NULL,
    model_id TEXT NOT NULL,
    model_hash TEXT NOT NULL,
    input_image_hash TEXT,
    output_hashes JSONB NOT NULL,
    recorded_at TEXT NOT NULL,
    previous_hash TEXT NOT NULL,
    record_hash TEXT NOT NULL UNIQUE
);
CREATE INDEX IF NOT EXISTS {table}_tenant_idx ON {table} (tenant_id, sequence);

CREATE OR REPLACE FUNCTION {table}_reject_mutation() RETURNS trigger AS $$
BEGIN
    RAISE EXCEPTION 'provenance ledger is append-only';
END;
$$ LANGUAGE plpgsql;

DROP TRIGGER IF EXISTS {table}_append_only ON {table};
CREATE TRIGGER {table}_append_only
    BEFORE UPDATE OR DELETE ON {table}
    FOR EACH ROW EXECUTE FUNCTION {table}_reject_mutation();
"""

COLUMNS = (
    "sequence, job_id, tenant_id, user_id, prompt, model_id, model_hash, "
    "input_image_hash, output_hashes, recorded_at, previous_hash, record_hash"
)


class PostgresLedger(ProvenanceLedger):
    """Provenance ledger stored in PostgreSQL."""

    def __init__(
        self,
        dsn: str,
        table: str = "provenance_ledger",
        pool_size: int = 5,
        command_timeout: int = 60,
        verify_batch_size: int = 1000
    ):
        """Configure the ledger.

        Parameters
        - dsn: PostgreSQL DSN including database and credentials
        - table: Table name (also prefixes the trigger and function)
        - pool_size: Max size of asyncpg connection pool
        - command_timeout: Seconds to allow per DB command
        - verify_batch_size: Rows fetched per round trip during ``verify``
        """
        if not table.replace("_", "").isalnum():
            raise ValueError(f"Invalid ledger table name: {table}")
        self.dsn = dsn
        self.table = table
        self.pool_size = pool_size
        self.command_timeout = command_timeout
        self.verify_batch_size = verify_batch_size
        self._pool: Optional[Pool] = None

    async def _get_pool(self) -> Pool:
        if self._pool is None:
            try:
                self._pool = await asyncpg.create_pool(
                    self.dsn,
                    min_size=1,
                    max_size=self.pool_size,
                    command_timeout=self.command_timeout,
                )
                async with self._pool.acquire() as conn:
                    await conn.execute(SCHEMA_SQL.format(table=self.table))
                logger.info("Created ledger connection pool", table=self.table, pool_size=self.pool_size)
            except (OSError, asyncpg.PostgresError) as e:
                logger.error("Failed to initialize ledger", error=str(e))
                raise LedgerError(f"Failed to initialize ledger: {e}") from e
        return self._pool

    @staticmethod
    def _row_to_record(row: Any) -> LedgerRecord:
        output_hashes = row["output_hashes"]
        if isinstance(output_hashes, str):
            output_hashes = json.loads(output_hashes)
        return LedgerRecord(
            sequence=row["sequence"],
            job_id=row["job_id"],
            tenant_id=row["tenant_id"],
            user_id=row["user_id"],
            prompt=row["prompt"],
            model_id=row["model_id"],
            model_hash=row["model_hash"],
            input_image_hash=row["input_image_hash"],
            output_hashes=[OutputHash(**item) for item in output_hashes],
            recorded_at=row["recorded_at"],
            previous_hash=row["previous_hash"],
            record_hash=row["record_hash"],
        )

    async def append(self, entry: LedgerEntry) -> LedgerRecord:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    await conn.execute("SELECT pg_advisory_xact_lock($1)", APPEND_LOCK_KEY)

                    existing = await conn.fetchrow(
                        f"SELECT {COLUMNS} FROM {self.table} WHERE job_id = $1", entry.job_id
                    )
                    if existing is not None:
                        logger.info("Ledger record already present", job_id=entry.job_id)
                        return self._row_to_record(existing)

                    tip = await conn.fetchrow(
                        f"SELECT sequence, record_hash FROM {self.table} ORDER BY sequence DESC LIMIT 1"
                    )
                    sequence = tip["sequence"] + 1 if tip else 0
                    previous_hash = tip["record_hash"] if tip else GENESIS_HASH
                    record = build_record(entry, sequence, previous_hash)

                    await conn.execute(
                        f"INSERT INTO {self.table} ({COLUMNS}) "
                        "VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9::jsonb, $10, $11, $12)",
                        record.sequence,
                        record.job_id,
                        record.tenant_id,
                        record.user_id,
                        record.prompt,
                        record.model_id,
                        record.model_hash,
                        record.input_image_hash,
                        json.dumps([{"key": o.key, "sha256": o.sha256} for o in record.output_hashes]),
                        record.recorded_at,
                        record.previous_hash,
                        record.record_hash,
                    )
        except asyncpg.PostgresError as e:
            logger.error("Ledger append failed", job_id=entry.job_id, error=str(e))
            raise LedgerError(f"Ledger append failed: {e}") from e

        logger.info(
            "Ledger record appended",
            job_id=entry.job_id,
            sequence=record.sequence,
            record_hash=record.record_hash
        )
        return record

    async def _fetchrow(self, query: str, *args: Any) -> Optional[LedgerRecord]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(query, *args)
        return self._row_to_record(row) if row else None

    async def get_by_job(self, job_id: str) -> Optional[LedgerRecord]:
        return await self._fetchrow(f"SELECT {COLUMNS} FROM {self.table} WHERE job_id = $1", job_id)

    async def get(self, sequence: int) -> Optional[LedgerRecord]:
        return await self._fetchrow(f"SELECT {COLUMNS} FROM {self.table} WHERE sequence = $1", sequence)

    async def list_records(
        self,
        tenant_id: Optional[str] = None,
        offset: int = 0,
        limit: int = 100
    ) -> List[LedgerRecord]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            if tenant_id is None:
                rows = await conn.fetch(
                    f"SELECT {COLUMNS} FROM {self.table} ORDER BY sequence OFFSET $1 LIMIT $2",
                    offset,
                    limit,
                )
            else:
                rows = await conn.fetch(
                    f"SELECT {COLUMNS} FROM {self.table} WHERE tenant_id = $1 "
                    "ORDER BY sequence OFFSET $2 LIMIT $3",
                    tenant_id,
                    offset,
                    limit,
                )
        return [self._row_to_record(row) for row in rows]

    async def digest(self) -> LedgerDigest:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            tip = await conn.fetchrow(
                f"SELECT sequence, record_hash FROM {self.table} ORDER BY sequence DESC LIMIT 1"
            )
        if tip is None:
            return LedgerDigest(length=0, tip_hash=GENESIS_HASH)
        return LedgerDigest(length=tip["sequence"] + 1, tip_hash=tip["record_hash"])

    async def _iter_records(self):
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction(isolation="repeatable_read", readonly=True):
                async for row in conn.cursor(
                    f"SELECT {COLUMNS} FROM {self.table} ORDER BY sequence",
                    prefetch=self.verify_batch_size,
                ):
                    yield self._row_to_record(row)

    @measure_time("ledger.verify", backend="postgres")
    async def verify(self) -> LedgerVerification:
        records = [record async for record in self._iter_records()]
        result = verify_chain(records)
        if not result.valid:
            logger.error(
                "Ledger verification failed",
                first_invalid_sequence=result.first_invalid_sequence,
                reason=result.reason
            )
        return result

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
