"""Tiered storage interfaces.

Two stores sit behind the platform:

- ``ModelStore``: read-only catalog of model weights. Workers resolve a
  ``model_id`` to its weights and content hash; the hash is what the
  provenance ledger records.
- ``AssetStore``: write-once, tenant-scoped storage for uploaded inputs and
  generated outputs. Objects live at ``{tenant_id}/{key}``. Once written an
  object never changes; re-writing identical bytes returns the existing
  reference so retried jobs stay idempotent.
"""

import hashlib
import re
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

TENANT_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,63}$")
KEY_SEGMENT_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")
MAX_KEY_LENGTH = 512

DEFAULT_CONTENT_TYPE = "application/octet-stream"


class StorageError(Exception):
    """Base class for storage failures."""


class AssetExistsError(StorageError):
    """A different object already exists at the key."""


class AssetNotFoundError(StorageError):
    """No object at the key."""


class InvalidAssetKeyError(StorageError, ValueError):
    """Tenant id or key is malformed or escapes the tenant space."""


class ModelNotFoundError(StorageError):
    """Unknown model id."""


@dataclass
class AssetRef:
    """Reference to a stored asset."""
    tenant_id: str
    key: str
    uri: str
    sha256: str
    size: int
    content_type: str = DEFAULT_CONTENT_TYPE

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ModelWeights:
    """Resolved model weights."""
    model_id: str
    uri: str
    size: int
    sha256: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def validate_tenant_id(tenant_id: str) -> str:
    if not isinstance(tenant_id, str) or not TENANT_ID_PATTERN.match(tenant_id):
        raise InvalidAssetKeyError(f"Invalid tenant id: {tenant_id!r}")
    return tenant_id


def validate_key(key: str) -> str:
    """Check a slash-separated relative key.

    Every segment must be a plain name; ``..``, empty segments and absolute
    paths are rejected so a key can never leave its tenant's prefix.
    """
    if not isinstance(key, str) or not key or len(key) > MAX_KEY_LENGTH:
        raise InvalidAssetKeyError(f"Invalid asset key: {key!r}")
    for segment in key.split("/"):
        if segment in ("", ".", "..") or ".." in segment or not KEY_SEGMENT_PATTERN.match(segment):
            raise InvalidAssetKeyError(f"Invalid asset key: {key!r}")
    return key


def validate_model_id(model_id: str) -> str:
    try:
        return validate_key(model_id)
    except InvalidAssetKeyError:
        raise ModelNotFoundError(f"Invalid model id: {model_id!r}")


def object_name(tenant_id: str, key: str) -> str:
    """Validated ``{tenant_id}/{key}`` object path."""
    return f"{validate_tenant_id(tenant_id)}/{validate_key(key)}"


class AssetStore(ABC):
    """Abstract write-once, tenant-scoped asset store."""

    @abstractmethod
    async def put(
        self,
        tenant_id: str,
        key: str,
        data: bytes,
        content_type: str = DEFAULT_CONTENT_TYPE
    ) -> AssetRef:
        """Write an object once.

        Returns the existing reference when identical bytes are already
        stored at the key; raises ``AssetExistsError`` when different bytes
        are.
        """

    @abstractmethod
    async def get(self, tenant_id: str, key: str) -> bytes:
        """Object bytes; ``AssetNotFoundError`` if absent."""

    @abstractmethod
    async def stat(self, tenant_id: str, key: str) -> Optional[AssetRef]:
        """Reference for an object, or ``None`` if absent."""

    @abstractmethod
    async def list(self, tenant_id: str, prefix: str = "") -> List[AssetRef]:
        """References under ``prefix`` within a tenant, sorted by key."""

    async def close(self) -> None:
        return None


class ModelStore(ABC):
    """Abstract read-only model weight store."""

    @abstractmethod
    async def list_models(self) -> List[str]:
        """Available model ids, sorted."""

    @abstractmethod
    async def resolve(self, model_id: str) -> ModelWeights:
        """Weights and content hash for a model id."""

    @abstractmethod
    async def local_path(self, model_id: str) -> str:
        """Filesystem path of the weights, fetching them if needed."""

    async def close(self) -> None:
        return None
