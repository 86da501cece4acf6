"""Shared libraries for the GenAI dispatch platform.

Subpackages:
- ``libs.common``: configuration, logging, authentication, metrics, tracing and events.
- ``libs.job_queue``: visibility-timeout job queue and job status store.
- ``libs.ledger``: hash-chained provenance ledger.
- ``libs.storage``: tenant-scoped write-once asset store and model weight store.

Notes:
- Avoid service-specific logic; keep modules cohesive and broadly useful.
"""
