"""Ledger factory."""

import structlog

from .base import ProvenanceLedger
from .memory import InMemoryLedger
from .postgres import PostgresLedger

logger = structlog.get_logger("ledger.factory")


def create_ledger_from_config(config) -> ProvenanceLedger:
    """Create the ledger selected by ``ml_ledger_backend``."""
    backend = config.ml_ledger_backend.lower()
    if backend == "postgres":
        ledger: ProvenanceLedger = PostgresLedger(config.ml_ledger_dsn)
    elif backend == "memory":
        ledger = InMemoryLedger()
    else:
        raise ValueError(f"Unsupported ledger backend: {config.ml_ledger_backend}")

    logger.info("Created provenance ledger", backend=backend)
    return ledger
