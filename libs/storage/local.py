"""Local filesystem stores.

Assets are written to a temporary file in the destination directory and then
hard-linked into place. ``os.link`` fails if the target exists, which gives
an atomic create-if-absent without locks across processes. Stored files are
made read-only.
"""

import asyncio
import hashlib
import mimetypes
import os
import tempfile
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import structlog

from .base import (
    DEFAULT_CONTENT_TYPE,
    AssetExistsError,
    AssetNotFoundError,
    AssetRef,
    AssetStore,
    InvalidAssetKeyError,
    ModelNotFoundError,
    ModelStore,
    ModelWeights,
    object_name,
    sha256_hex,
    validate_model_id,
    validate_tenant_id,
)

logger = structlog.get_logger("storage.local")

WEIGHT_EXTENSIONS = (".safetensors", ".ckpt", ".pt", ".pth", ".bin")
HASH_CHUNK_SIZE = 1024 * 1024


def _content_type_for(path: str) -> str:
    guessed, _ = mimetypes.guess_type(path)
    return guessed or DEFAULT_CONTENT_TYPE


def hash_file(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(HASH_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


class LocalAssetStore(AssetStore):
    """Write-once asset store rooted at a directory."""

    def __init__(self, root: str):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, tenant_id: str, key: str) -> Path:
        path = (self.root / object_name(tenant_id, key)).resolve()
        tenant_root = (self.root / tenant_id).resolve()
        if tenant_root not in path.parents:
            raise InvalidAssetKeyError(f"Asset key escapes tenant space: {key!r}")
        return path

    def _ref(self, tenant_id: str, key: str, path: Path, digest: str, size: int) -> AssetRef:
        return AssetRef(
            tenant_id=tenant_id,
            key=key,
            uri=path.as_uri(),
            sha256=digest,
            size=size,
            content_type=_content_type_for(key),
        )

    def _put_sync(self, tenant_id: str, key: str, data: bytes) -> Tuple[AssetRef, bool]:
        path = self._path(tenant_id, key)
        path.parent.mkdir(parents=True, exist_ok=True)
        digest = sha256_hex(data)

        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".upload-")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_name, 0o444)
            try:
                os.link(tmp_name, path)
                created = True
            except FileExistsError:
                created = False
        finally:
            os.unlink(tmp_name)

        if not created:
            existing = hash_file(path)
            if existing != digest:
                raise AssetExistsError(f"Asset already exists with different content: {tenant_id}/{key}")
        return self._ref(tenant_id, key, path, digest, len(data)), created

    async def put(
        self,
        tenant_id: str,
        key: str,
        data: bytes,
        content_type: str = DEFAULT_CONTENT_TYPE
    ) -> AssetRef:
        ref, created = await asyncio.to_thread(self._put_sync, tenant_id, key, data)
        if content_type != DEFAULT_CONTENT_TYPE:
            ref.content_type = content_type
        logger.info(
            "Asset stored" if created else "Asset already present",
            tenant_id=tenant_id,
            key=key,
            sha256=ref.sha256,
            size=ref.size
        )
        return ref

    async def get(self, tenant_id: str, key: str) -> bytes:
        path = self._path(tenant_id, key)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except (FileNotFoundError, IsADirectoryError):
            raise AssetNotFoundError(f"Asset not found: {tenant_id}/{key}")

    def _stat_sync(self, tenant_id: str, key: str) -> Optional[AssetRef]:
        path = self._path(tenant_id, key)
        if not path.is_file():
            return None
        return self._ref(tenant_id, key, path, hash_file(path), path.stat().st_size)

    async def stat(self, tenant_id: str, key: str) -> Optional[AssetRef]:
        return await asyncio.to_thread(self._stat_sync, tenant_id, key)

    def _list_sync(self, tenant_id: str, prefix: str) -> List[AssetRef]:
        tenant_root = self.root / validate_tenant_id(tenant_id)
        if not tenant_root.is_dir():
            return []
        refs = []
        for path in sorted(tenant_root.rglob("*")):
            if not path.is_file() or path.name.startswith(".upload-"):
                continue
            key = path.relative_to(tenant_root).as_posix()
            if key.startswith(prefix):
                refs.append(self._ref(tenant_id, key, path, hash_file(path), path.stat().st_size))
        return refs

    async def list(self, tenant_id: str, prefix: str = "") -> List[AssetRef]:
        return await asyncio.to_thread(self._list_sync, tenant_id, prefix)


class LocalModelStore(ModelStore):
    """Read-only model catalog over a directory of weight files.

    A model id is the weight file's path relative to the root, e.g.
    ``sdxl/base-1.0.safetensors``. Hashes are cached per
    ``(path, size, mtime)`` so unchanged weights are hashed once.
    """

    def __init__(self, root: str):
        self.root = Path(root).resolve()
        self._hash_cache: Dict[Tuple[str, int, int], str] = {}

    def _path(self, model_id: str) -> Path:
        validate_model_id(model_id)
        path = (self.root / model_id).resolve()
        if self.root not in path.parents:
            raise ModelNotFoundError(f"Invalid model id: {model_id!r}")
        if not path.is_file() or path.suffix not in WEIGHT_EXTENSIONS:
            raise ModelNotFoundError(f"Unknown model: {model_id}")
        return path

    def _list_sync(self) -> List[str]:
        if not self.root.is_dir():
            return []
        return sorted(
            path.relative_to(self.root).as_posix()
            for path in self.root.rglob("*")
            if path.is_file() and path.suffix in WEIGHT_EXTENSIONS
        )

    async def list_models(self) -> List[str]:
        return await asyncio.to_thread(self._list_sync)

    def _resolve_sync(self, model_id: str) -> ModelWeights:
        path = self._path(model_id)
        st = path.stat()
        cache_key = (str(path), st.st_size, st.st_mtime_ns)
        digest = self._hash_cache.get(cache_key)
        if digest is None:
            digest = hash_file(path)
            self._hash_cache[cache_key] = digest
            logger.info("Hashed model weights", model_id=model_id, size=st.st_size, sha256=digest)
        return ModelWeights(model_id=model_id, uri=path.as_uri(), size=st.st_size, sha256=digest)

    async def resolve(self, model_id: str) -> ModelWeights:
        return await asyncio.to_thread(self._resolve_sync, model_id)

    async def local_path(self, model_id: str) -> str:
        return str(self._path(model_id))
