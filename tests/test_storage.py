"""Tests for the local and MinIO asset and model stores."""

import os
import stat
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from minio.error import S3Error

from libs.common.config import BaseConfig
from libs.storage.base import (
    AssetExistsError,
    AssetNotFoundError,
    InvalidAssetKeyError,
    ModelNotFoundError,
    StorageError,
    object_name,
    sha256_hex,
    validate_key,
)
from libs.storage.factory import create_asset_store_from_config, create_model_store_from_config
from libs.storage.local import LocalAssetStore, LocalModelStore
from libs.storage.s3 import MinioAssetStore, MinioModelStore

from .helpers import MODEL_BYTES, MODEL_ID


class TestLocalAssetStore:
    """Write-once, tenant-scoped asset storage."""

    @pytest.mark.asyncio
    async def test_put_and_get(self, asset_store):
        ref = await asset_store.put("tenant-a", "outputs/job-1/0.png", b"png-bytes", "image/png")
        assert ref.sha256 == sha256_hex(b"png-bytes")
        assert ref.size == 9
        assert ref.content_type == "image/png"
        assert ref.uri.startswith("file://")
        assert await asset_store.get("tenant-a", "outputs/job-1/0.png") == b"png-bytes"

    @pytest.mark.asyncio
    async def test_write_once(self, asset_store):
        first = await asset_store.put("tenant-a", "outputs/job-1/0.png", b"one")
        again = await asset_store.put("tenant-a", "outputs/job-1/0.png", b"one")
        assert again.sha256 == first.sha256

        with pytest.raises(AssetExistsError):
            await asset_store.put("tenant-a", "outputs/job-1/0.png", b"two")
        assert await asset_store.get("tenant-a", "outputs/job-1/0.png") == b"one"

    @pytest.mark.asyncio
    async def test_stored_files_are_read_only(self, asset_store):
        await asset_store.put("tenant-a", "inputs/a.png", b"data")
        mode = os.stat(asset_store.root / "tenant-a" / "inputs" / "a.png").st_mode
        assert not mode & (stat.S_IWUSR | stat.S_IWGRP | stat.S_IWOTH)

    @pytest.mark.asyncio
    async def test_tenants_are_isolated(self, asset_store):
        await asset_store.put("tenant-a", "inputs/a.png", b"secret")
        assert await asset_store.stat("tenant-b", "inputs/a.png") is None
        with pytest.raises(AssetNotFoundError):
            await asset_store.get("tenant-b", "inputs/a.png")
        assert await asset_store.list("tenant-b") == []

    @pytest.mark.asyncio
    async def test_list_by_prefix(self, asset_store):
        await asset_store.put("tenant-a", "outputs/job-1/0.png", b"0")
        await asset_store.put("tenant-a", "outputs/job-1/1.png", b"1")
        await asset_store.put("tenant-a", "outputs/job-2/0.png", b"2")

        refs = await asset_store.list("tenant-a", "outputs/job-1/")
        assert [r.key for r in refs] == ["outputs/job-1/0.png", "outputs/job-1/1.png"]

    @pytest.mark.asyncio
    async def test_stat(self, asset_store):
        assert await asset_store.stat("tenant-a", "inputs/missing.png") is None
        await asset_store.put("tenant-a", "inputs/a.png", b"abc")
        ref = await asset_store.stat("tenant-a", "inputs/a.png")
        assert ref.sha256 == sha256_hex(b"abc")
        assert ref.content_type == "image/png"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("tenant_id,key", [
        ("tenant-a", "../tenant-b/inputs/a.png"),
        ("tenant-a", "/etc/passwd"),
        ("tenant-a", "inputs//a.png"),
        ("tenant-a", "inputs/.hidden"),
        ("../tenant-b", "inputs/a.png"),
        ("", "inputs/a.png"),
    ])
    async def test_rejects_unsafe_paths(self, asset_store, tenant_id, key):
        with pytest.raises(InvalidAssetKeyError):
            await asset_store.put(tenant_id, key, b"x")


def test_key_validation():
    assert validate_key("outputs/job-1/0.png") == "outputs/job-1/0.png"
    assert object_name("tenant-a", "inputs/a.png") == "tenant-a/inputs/a.png"
    for key in ("", "a/../b", "a/./b", "x" * 600, "a b"):
        with pytest.raises(InvalidAssetKeyError):
            validate_key(key)


class TestLocalModelStore:
    """Read-only model catalog."""

    @pytest.mark.asyncio
    async def test_list_and_resolve(self, model_store, model_root):
        (model_root / "README.txt").write_text("not a model")
        assert await model_store.list_models() == [MODEL_ID]

        weights = await model_store.resolve(MODEL_ID)
        assert weights.sha256 == sha256_hex(MODEL_BYTES)
        assert weights.size == len(MODEL_BYTES)
        assert await model_store.local_path(MODEL_ID) == str((model_root / MODEL_ID).resolve())

    @pytest.mark.asyncio
    async def test_hash_is_cached_until_file_changes(self, model_store, model_root):
        first = await model_store.resolve(MODEL_ID)
        assert len(model_store._hash_cache) == 1
        await model_store.resolve(MODEL_ID)
        assert len(model_store._hash_cache) == 1

        path = model_root / MODEL_ID
        path.write_bytes(b"retrained")
        os.utime(path, ns=(0, 1))
        changed = await model_store.resolve(MODEL_ID)
        assert changed.sha256 != first.sha256

    @pytest.mark.asyncio
    @pytest.mark.parametrize("model_id", ["missing.safetensors", "../outside.safetensors", "README.txt"])
    async def test_unknown_models(self, model_store, model_root, model_id):
        (model_root / "README.txt").write_text("not a model")
        with pytest.raises(ModelNotFoundError):
            await model_store.resolve(model_id)

    @pytest.mark.asyncio
    async def test_missing_root_lists_nothing(self, tmp_path):
        assert await LocalModelStore(str(tmp_path / "absent")).list_models() == []


def test_factories_build_local_stores(monkeypatch, tmp_path):
    monkeypatch.setenv("ML_ASSET_STORE_PATH", str(tmp_path / "assets"))
    monkeypatch.setenv("ML_MODEL_STORE_PATH", str(tmp_path / "models"))
    config = BaseConfig()
    assert isinstance(create_asset_store_from_config(config), LocalAssetStore)
    assert isinstance(create_model_store_from_config(config), LocalModelStore)

    monkeypatch.setenv("ML_ASSET_STORE_BACKEND", "tape")
    with pytest.raises(ValueError):
        create_asset_store_from_config(BaseConfig())


def s3_error(code):
    return S3Error(
        code=code, message="", resource="", request_id="", host_id="", response=MagicMock()
    )


def s3_stat(data=b"", digest=None, etag="etag-1", content_type="image/png"):
    metadata = {"X-Amz-Meta-Sha256": digest or sha256_hex(data)} if digest is not False else {}
    return SimpleNamespace(size=len(data), etag=etag, content_type=content_type, metadata=metadata)


@pytest.fixture
def minio_client():
    client = MagicMock()
    client.bucket_exists.return_value = True
    client.stat_object.side_effect = s3_error("NoSuchKey")
    return client


class TestMinioAssetStore:
    """Write-once semantics over a mocked MinIO client."""

    @pytest.mark.asyncio
    async def test_put_writes_hash_metadata(self, minio_client):
        store = MinioAssetStore(minio_client, "assets")
        ref = await store.put("tenant-a", "outputs/job-1/0.png", b"png-bytes", "image/png")

        assert ref.uri == "s3://assets/tenant-a/outputs/job-1/0.png"
        assert ref.sha256 == sha256_hex(b"png-bytes")
        args, kwargs = minio_client.put_object.call_args
        assert args[:2] == ("assets", "tenant-a/outputs/job-1/0.png")
        assert kwargs["metadata"] == {"sha256": sha256_hex(b"png-bytes")}
        assert kwargs["length"] == 9

    @pytest.mark.asyncio
    async def test_identical_content_returns_existing(self, minio_client):
        minio_client.stat_object.side_effect = None
        minio_client.stat_object.return_value = s3_stat(b"png-bytes")
        store = MinioAssetStore(minio_client, "assets")

        ref = await store.put("tenant-a", "outputs/job-1/0.png", b"png-bytes")
        assert ref.sha256 == sha256_hex(b"png-bytes")
        minio_client.put_object.assert_not_called()

    @pytest.mark.asyncio
    async def test_different_content_is_refused(self, minio_client):
        minio_client.stat_object.side_effect = None
        minio_client.stat_object.return_value = s3_stat(b"original")
        store = MinioAssetStore(minio_client, "assets")

        with pytest.raises(AssetExistsError):
            await store.put("tenant-a", "outputs/job-1/0.png", b"replacement")
        minio_client.put_object.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_hash_metadata_reads_content(self, minio_client):
        minio_client.stat_object.side_effect = None
        minio_client.stat_object.return_value = s3_stat(b"legacy", digest=False)
        minio_client.get_object.return_value.read.return_value = b"legacy"
        store = MinioAssetStore(minio_client, "assets")

        ref = await store.stat("tenant-a", "inputs/legacy.png")
        assert ref.sha256 == sha256_hex(b"legacy")

    @pytest.mark.asyncio
    async def test_bucket_created_once(self, minio_client):
        minio_client.bucket_exists.return_value = False
        store = MinioAssetStore(minio_client, "assets")
        await store.put("tenant-a", "outputs/job-1/0.png", b"one")
        await store.put("tenant-a", "outputs/job-1/1.png", b"two")
        minio_client.make_bucket.assert_called_once_with("assets")

    @pytest.mark.asyncio
    async def test_get_errors(self, minio_client):
        store = MinioAssetStore(minio_client, "assets")
        minio_client.get_object.side_effect = s3_error("NoSuchKey")
        with pytest.raises(AssetNotFoundError):
            await store.get("tenant-a", "outputs/job-1/0.png")
        minio_client.get_object.side_effect = s3_error("AccessDenied")
        with pytest.raises(StorageError):
            await store.get("tenant-a", "outputs/job-1/0.png")
        assert await store.stat("tenant-a", "outputs/job-1/0.png") is None

    @pytest.mark.asyncio
    async def test_list_strips_tenant_prefix(self, minio_client):
        minio_client.stat_object.side_effect = None
        minio_client.stat_object.return_value = s3_stat(b"png-bytes")
        minio_client.list_objects.return_value = [
            SimpleNamespace(object_name="tenant-a/outputs/job-1/1.png", is_dir=False),
            SimpleNamespace(object_name="tenant-a/outputs/job-1/", is_dir=True),
            SimpleNamespace(object_name="tenant-a/outputs/job-1/0.png", is_dir=False),
        ]
        store = MinioAssetStore(minio_client, "assets")

        refs = await store.list("tenant-a", "outputs/job-1/")
        assert [r.key for r in refs] == ["outputs/job-1/0.png", "outputs/job-1/1.png"]
        assert minio_client.list_objects.call_args.kwargs["prefix"] == "tenant-a/outputs/job-1/"

    @pytest.mark.asyncio
    async def test_rejects_unsafe_keys(self, minio_client):
        store = MinioAssetStore(minio_client, "assets")
        with pytest.raises(InvalidAssetKeyError):
            await store.put("tenant-a", "../tenant-b/x.png", b"x")
        with pytest.raises(InvalidAssetKeyError):
            await store.put("acme.corp", "inputs/x.png", b"x")
        minio_client.put_object.assert_not_called()


class TestMinioModelStore:
    """Model catalog over a mocked MinIO client."""

    @pytest.fixture
    def downloads(self, minio_client):
        def fget_object(bucket, name, path):
            with open(path, "wb") as f:
                f.write(MODEL_BYTES)

        minio_client.fget_object.side_effect = fget_object
        minio_client.stat_object.side_effect = None
        minio_client.stat_object.return_value = s3_stat(MODEL_BYTES, digest=False)
        return minio_client.fget_object

    @pytest.mark.asyncio
    async def test_hash_from_metadata_skips_download(self, minio_client, tmp_path):
        minio_client.stat_object.side_effect = None
        minio_client.stat_object.return_value = s3_stat(MODEL_BYTES)
        store = MinioModelStore(minio_client, "models", str(tmp_path))

        weights = await store.resolve(MODEL_ID)
        assert weights.sha256 == sha256_hex(MODEL_BYTES)
        assert weights.uri == f"s3://models/{MODEL_ID}"
        minio_client.fget_object.assert_not_called()

    @pytest.mark.asyncio
    async def test_hash_cached_per_etag(self, minio_client, downloads, tmp_path):
        store = MinioModelStore(minio_client, "models", str(tmp_path))

        assert (await store.resolve(MODEL_ID)).sha256 == sha256_hex(MODEL_BYTES)
        cached = tmp_path / MODEL_ID
        assert cached.read_bytes() == MODEL_BYTES
        assert not (tmp_path / "sdxl" / "base-1.0.safetensors.part").exists()

        cached.unlink()
        await store.resolve(MODEL_ID)
        assert downloads.call_count == 1

        minio_client.stat_object.return_value = s3_stat(MODEL_BYTES, digest=False, etag="etag-2")
        await store.resolve(MODEL_ID)
        assert downloads.call_count == 2

    @pytest.mark.asyncio
    async def test_local_path_reuses_cached_file(self, minio_client, downloads, tmp_path):
        store = MinioModelStore(minio_client, "models", str(tmp_path))
        path = await store.local_path(MODEL_ID)
        assert path == str(tmp_path / MODEL_ID)
        assert await store.local_path(MODEL_ID) == path
        assert downloads.call_count == 1

    @pytest.mark.asyncio
    async def test_unknown_models(self, minio_client, tmp_path):
        store = MinioModelStore(minio_client, "models", str(tmp_path))
        with pytest.raises(ModelNotFoundError):
            await store.resolve("sdxl/missing.safetensors")
        minio_client.stat_object.reset_mock()
        with pytest.raises(ModelNotFoundError):
            await store.resolve("sdxl/readme.txt")
        minio_client.stat_object.assert_not_called()

    @pytest.mark.asyncio
    async def test_list_models_filters_weights(self, minio_client, tmp_path):
        minio_client.list_objects.return_value = [
            SimpleNamespace(object_name="sdxl/readme.txt", is_dir=False),
            SimpleNamespace(object_name=MODEL_ID, is_dir=False),
            SimpleNamespace(object_name="sdxl/", is_dir=True),
        ]
        store = MinioModelStore(minio_client, "models", str(tmp_path))
        assert await store.list_models() == [MODEL_ID]
