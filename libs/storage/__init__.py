"""Tiered storage: read-only model weights and write-once tenant assets.

Primary components:
- ``base``: ``AssetStore`` / ``ModelStore`` interfaces, refs and key validation.
- ``local`` / ``s3``: filesystem and MinIO implementations.
- ``factory``: construct stores from service config.
"""
