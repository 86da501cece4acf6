"""Append-only, hash-chained provenance ledger (chain-of-title).

Primary components:
- ``base``: ``ProvenanceLedger`` interface, record types and chain hashing.
- ``memory`` / ``postgres``: in-process and PostgreSQL implementations.
- ``factory``: construct a ledger from service config.
"""
