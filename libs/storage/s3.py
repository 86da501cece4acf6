"""MinIO / S3 stores.

Objects follow the ``{bucket}/{tenant_id}/{key}`` path convention. The
``minio`` client is synchronous, so calls run in worker threads.

Write-once is enforced with a ``stat_object`` check before ``put_object``;
the content hash travels as ``x-amz-meta-sha256`` user metadata so later
reads can compare content without downloading it.

The check and the write are two requests, so two writers racing on one key
can both pass the check and the last write wins. Keys are laid out so such a
race carries the same bytes: uploads are keyed by their content hash, and an
output key belongs to a single job whose seeded render is repeatable. The
local store links files into place and has no such window.
"""

import asyncio
import io
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import structlog
from minio import Minio
from minio.error import S3Error

from .base import (
    DEFAULT_CONTENT_TYPE,
    AssetExistsError,
    AssetNotFoundError,
    AssetRef,
    AssetStore,
    ModelNotFoundError,
    ModelStore,
    ModelWeights,
    StorageError,
    object_name,
    sha256_hex,
    validate_model_id,
    validate_tenant_id,
)
from .local import WEIGHT_EXTENSIONS, hash_file

logger = structlog.get_logger("storage.s3")

SHA256_METADATA_KEY = "x-amz-meta-sha256"
NOT_FOUND_CODES = ("NoSuchKey", "NoSuchObject", "ResourceNotFound")


def create_minio_client(endpoint: str, access_key: str, secret_key: str) -> Minio:
    """Build a client from an endpoint URL or ``host:port``."""
    secure = endpoint.startswith("https://")
    host = endpoint.split("://", 1)[-1]
    return Minio(host, access_key=access_key, secret_key=secret_key, secure=secure)


def _metadata_sha256(metadata: Any) -> Optional[str]:
    if not metadata:
        return None
    for name, value in metadata.items():
        if name.lower() == SHA256_METADATA_KEY:
            return value
    return None


class MinioAssetStore(AssetStore):
    """Write-once asset store in a MinIO/S3 bucket."""

    def __init__(self, client: Minio, bucket: str):
        self.client = client
        self.bucket = bucket
        self._bucket_checked = False

    def _ensure_bucket(self) -> None:
        if self._bucket_checked:
            return
        if not self.client.bucket_exists(self.bucket):
            self.client.make_bucket(self.bucket)
            logger.info("Created asset bucket", bucket=self.bucket)
        self._bucket_checked = True

    def _uri(self, name: str) -> str:
        return f"s3://{self.bucket}/{name}"

    def _stat_sync(self, tenant_id: str, key: str) -> Optional[AssetRef]:
        name = object_name(tenant_id, key)
        try:
            stat = self.client.stat_object(self.bucket, name)
        except S3Error as e:
            if e.code in NOT_FOUND_CODES:
                return None
            raise StorageError(f"Failed to stat {name}: {e}") from e

        digest = _metadata_sha256(stat.metadata)
        if digest is None:
            digest = sha256_hex(self._get_sync(tenant_id, key))
        return AssetRef(
            tenant_id=tenant_id,
            key=key,
            uri=self._uri(name),
            sha256=digest,
            size=stat.size,
            content_type=stat.content_type or DEFAULT_CONTENT_TYPE,
        )

    def _put_sync(self, tenant_id: str, key: str, data: bytes, content_type: str) -> Tuple[AssetRef, bool]:
        self._ensure_bucket()
        name = object_name(tenant_id, key)
        digest = sha256_hex(data)

        existing = self._stat_sync(tenant_id, key)
        if existing is not None:
            if existing.sha256 != digest:
                raise AssetExistsError(f"Asset already exists with different content: {name}")
            return existing, False

        try:
            self.client.put_object(
                self.bucket,
                name,
                io.BytesIO(data),
                length=len(data),
                content_type=content_type,
                metadata={"sha256": digest},
            )
        except S3Error as e:
            raise StorageError(f"Failed to write {name}: {e}") from e

        return AssetRef(
            tenant_id=tenant_id,
            key=key,
            uri=self._uri(name),
            sha256=digest,
            size=len(data),
            content_type=content_type,
        ), True

    async def put(
        self,
        tenant_id: str,
        key: str,
        data: bytes,
        content_type: str = DEFAULT_CONTENT_TYPE
    ) -> AssetRef:
        ref, created = await asyncio.to_thread(self._put_sync, tenant_id, key, data, content_type)
        logger.info(
            "Asset stored" if created else "Asset already present",
            tenant_id=tenant_id,
            key=key,
            sha256=ref.sha256,
            size=ref.size
        )
        return ref

    def _get_sync(self, tenant_id: str, key: str) -> bytes:
        name = object_name(tenant_id, key)
        response = None
        try:
            response = self.client.get_object(self.bucket, name)
            return response.read()
        except S3Error as e:
            if e.code in NOT_FOUND_CODES:
                raise AssetNotFoundError(f"Asset not found: {name}") from e
            raise StorageError(f"Failed to read {name}: {e}") from e
        finally:
            if response is not None:
                response.close()
                response.release_conn()

    async def get(self, tenant_id: str, key: str) -> bytes:
        return await asyncio.to_thread(self._get_sync, tenant_id, key)

    async def stat(self, tenant_id: str, key: str) -> Optional[AssetRef]:
        return await asyncio.to_thread(self._stat_sync, tenant_id, key)

    def _list_sync(self, tenant_id: str, prefix: str) -> List[AssetRef]:
        tenant_prefix = f"{validate_tenant_id(tenant_id)}/"
        refs = []
        for obj in self.client.list_objects(self.bucket, prefix=tenant_prefix + prefix, recursive=True):
            if obj.is_dir:
                continue
            key = obj.object_name[len(tenant_prefix):]
            ref = self._stat_sync(tenant_id, key)
            if ref is not None:
                refs.append(ref)
        return sorted(refs, key=lambda r: r.key)

    async def list(self, tenant_id: str, prefix: str = "") -> List[AssetRef]:
        return await asyncio.to_thread(self._list_sync, tenant_id, prefix)


class MinioModelStore(ModelStore):
    """Read-only model catalog in a MinIO/S3 bucket.

    Weights are downloaded into ``cache_dir`` on first use. Hashes are cached
    per ``(object, size, etag)``.
    """

    def __init__(self, client: Minio, bucket: str, cache_dir: str):
        self.client = client
        self.bucket = bucket
        self.cache_dir = Path(cache_dir)
        self._hash_cache: Dict[Tuple[str, int, str], str] = {}

    def _stat(self, model_id: str) -> Any:
        validate_model_id(model_id)
        if not model_id.endswith(WEIGHT_EXTENSIONS):
            raise ModelNotFoundError(f"Unknown model: {model_id}")
        try:
            return self.client.stat_object(self.bucket, model_id)
        except S3Error as e:
            if e.code in NOT_FOUND_CODES:
                raise ModelNotFoundError(f"Unknown model: {model_id}") from e
            raise StorageError(f"Failed to stat model {model_id}: {e}") from e

    def _list_sync(self) -> List[str]:
        return sorted(
            obj.object_name
            for obj in self.client.list_objects(self.bucket, recursive=True)
            if not obj.is_dir and obj.object_name.endswith(WEIGHT_EXTENSIONS)
        )

    async def list_models(self) -> List[str]:
        return await asyncio.to_thread(self._list_sync)

    def _download_sync(self, model_id: str, stat: Any) -> Path:
        target = self.cache_dir / model_id
        if target.is_file() and target.stat().st_size == stat.size:
            return target
        target.parent.mkdir(parents=True, exist_ok=True)
        partial = target.with_name(target.name + ".part")
        try:
            self.client.fget_object(self.bucket, model_id, str(partial))
        except S3Error as e:
            raise StorageError(f"Failed to download model {model_id}: {e}") from e
        os.replace(partial, target)
        logger.info("Downloaded model weights", model_id=model_id, size=stat.size)
        return target

    def _resolve_sync(self, model_id: str) -> ModelWeights:
        stat = self._stat(model_id)
        cache_key = (model_id, stat.size, stat.etag or "")
        digest = self._hash_cache.get(cache_key) or _metadata_sha256(stat.metadata)
        if digest is None:
            digest = hash_file(self._download_sync(model_id, stat))
            logger.info("Hashed model weights", model_id=model_id, size=stat.size, sha256=digest)
        self._hash_cache[cache_key] = digest
        return ModelWeights(
            model_id=model_id,
            uri=f"s3://{self.bucket}/{model_id}",
            size=stat.size,
            sha256=digest,
        )

    async def resolve(self, model_id: str) -> ModelWeights:
        return await asyncio.to_thread(self._resolve_sync, model_id)

    def _local_path_sync(self, model_id: str) -> str:
        return str(self._download_sync(model_id, self._stat(model_id)))

    async def local_path(self, model_id: str) -> str:
        return await asyncio.to_thread(self._local_path_sync, model_id)
