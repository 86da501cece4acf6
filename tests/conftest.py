"""Shared fixtures for platform tests."""

import pytest

from libs.job_queue.memory import InMemoryJobQueue
from libs.job_queue.status import InMemoryJobStatusStore
from libs.ledger.memory import InMemoryLedger
from libs.storage.local import LocalAssetStore, LocalModelStore

from .helpers import MODEL_BYTES, MODEL_ID, FakeClock


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def queue(clock):
    return InMemoryJobQueue(
        name="test_jobs",
        visibility_timeout=30.0,
        max_receive_count=3,
        dedup_window=60.0,
        clock=clock,
    )


@pytest.fixture
def status_store():
    return InMemoryJobStatusStore()


@pytest.fixture
def ledger():
    return InMemoryLedger()


@pytest.fixture
def asset_store(tmp_path):
    return LocalAssetStore(str(tmp_path / "assets"))


@pytest.fixture
def model_root(tmp_path):
    root = tmp_path / "models"
    weights = root / MODEL_ID
    weights.parent.mkdir(parents=True)
    weights.write_bytes(MODEL_BYTES)
    return root


@pytest.fixture
def model_store(model_root):
    return LocalModelStore(str(model_root))
