"""Storage factory."""

import structlog

from .base import AssetStore, ModelStore
from .local import LocalAssetStore, LocalModelStore
from .s3 import MinioAssetStore, MinioModelStore, create_minio_client

logger = structlog.get_logger("storage.factory")


def _minio_client(config):
    if not config.ml_minio_endpoint:
        raise ValueError("ML_MINIO_ENDPOINT is required for the minio storage backend")
    return create_minio_client(
        config.ml_minio_endpoint,
        config.ml_minio_access_key,
        config.ml_minio_secret_key,
    )


def create_asset_store_from_config(config) -> AssetStore:
    """Create the asset store selected by ``ml_asset_store_backend``."""
    backend = config.ml_asset_store_backend.lower()
    if backend == "local":
        store: AssetStore = LocalAssetStore(config.ml_asset_store_path)
    elif backend in ("minio", "s3"):
        store = MinioAssetStore(_minio_client(config), config.ml_asset_bucket)
    else:
        raise ValueError(f"Unsupported asset store backend: {config.ml_asset_store_backend}")

    logger.info("Created asset store", backend=backend)
    return store


def create_model_store_from_config(config) -> ModelStore:
    """Create the model store selected by ``ml_model_store_backend``."""
    backend = config.ml_model_store_backend.lower()
    if backend == "local":
        store: ModelStore = LocalModelStore(config.ml_model_store_path)
    elif backend in ("minio", "s3"):
        store = MinioModelStore(_minio_client(config), config.ml_model_bucket, config.ml_model_cache_dir)
    else:
        raise ValueError(f"Unsupported model store backend: {config.ml_model_store_backend}")

    logger.info("Created model store", backend=backend)
    return store
