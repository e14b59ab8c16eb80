"""Temporal change tracking and incremental merges for snapshot data.

This package keeps an SCD Type 2 historical table and a flat current-state
table in step with a stream of full or partial snapshots, using
content-based identity (surrogate key + fingerprint).

Usage:
    python -m historian run ./tags.yaml --batch ./extracts/tags.csv --kind full
    python -m historian verify ./tags.yaml
"""

from historian.lib.batch import SnapshotBatch
from historian.lib.config import BatchKind, DeletionPolicy, EngineConfig, ScopePredicate
from historian.lib.runner import RunCoordinator, RunResult, RunStatus
from historian.lib.storage import get_store

__all__ = [
    "BatchKind",
    "DeletionPolicy",
    "EngineConfig",
    "RunCoordinator",
    "RunResult",
    "RunStatus",
    "ScopePredicate",
    "SnapshotBatch",
    "get_store",
]
