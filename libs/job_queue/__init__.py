"""Durable job queue and job lifecycle state.

Primary components:
- ``base``: abstract ``JobQueue`` with visibility-timeout semantics.
- ``memory`` / ``redis_queue``: in-process and Redis implementations.
- ``models``: ``Job`` descriptors and ``JobStatus``/``JobState``.
- ``status``: caller-visible job status store.
- ``factory``: construct backends from service config.

Guidance:
- Construct via ``factory.create_job_queue_from_config`` so services remain
  decoupled from specific backends.
"""
