"""Pytest configuration and fixtures."""

from datetime import datetime, timezone
from typing import Any, Dict, List

import pytest

from historian.lib.batch import SnapshotBatch
from historian.lib.config import BatchKind, DeletionPolicy, EngineConfig
from historian.lib.locks import KeyLockManager
from historian.lib.resilience import RetryConfig
from historian.lib.storage import MemoryStore

T1 = datetime(2025, 1, 1, tzinfo=timezone.utc)
T2 = datetime(2025, 1, 2, tzinfo=timezone.utc)
T3 = datetime(2025, 1, 3, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def state_dir(tmp_path, monkeypatch):
    """Keep run watermarks out of the working directory."""
    path = tmp_path / "state"
    monkeypatch.setenv("HISTORIAN_STATE_DIR", str(path))
    return path


@pytest.fixture
def engine_config():
    """Entities keyed by entity_id, tracking name and status."""
    return EngineConfig(
        key_attributes=["entity_id"],
        tracked_attributes=["name", "status"],
        deletion_policy=DeletionPolicy.CLOSE,
        target="test.entities",
    )


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def lock_manager():
    """A private lock manager so tests never share claims."""
    return KeyLockManager()


@pytest.fixture
def no_retry():
    return RetryConfig.none()


@pytest.fixture
def fast_retry():
    return RetryConfig(max_attempts=3, backoff_seconds=0.0, exponential=False, jitter=False)


def make_batch(rows: List[Dict[str, Any]], kind: BatchKind = BatchKind.FULL) -> SnapshotBatch:
    return SnapshotBatch.from_records(rows, kind)


def entity(entity_id: Any, name: str, status: str = "active", **extra: Any) -> Dict[str, Any]:
    row = {"entity_id": entity_id, "name": name, "status": status}
    row.update(extra)
    return row
