"""Tests for the dispatch platform.

Unit tests run fully in-process against the in-memory queue and ledger and
local-filesystem stores. Integration tests live under ``tests/integration``.
"""
