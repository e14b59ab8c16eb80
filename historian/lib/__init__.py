"""Engine library modules.

This package contains the core abstractions and utilities for keeping
SCD Type 2 history and a current-state table in step with snapshot batches.
"""

from historian.lib.batch import SnapshotBatch, read_batch
from historian.lib.config import BatchKind, DeletionPolicy, EngineConfig, ScopePredicate
from historian.lib.config_loader import LoadedConfig, YAMLConfigError, load_engine_config
from historian.lib.differ import ChangeType, DiffResult, diff_snapshot
from historian.lib.env import expand_env_vars, expand_options, load_env_file
from historian.lib.errors import (
    ConcurrentWriteError,
    ConfigurationError,
    DuplicateKeyInBatch,
    HistorianError,
    InvariantViolation,
    MissingKeyAttribute,
    RunCancelled,
    TransientStoreError,
)
from historian.lib.history import (
    HistoryMergeResult,
    TemporalMergeExecutor,
    assert_history_valid,
    verify_history,
)
from historian.lib.keys import KeyedBatch, fingerprint, key_batch, surrogate_key
from historian.lib.locks import KeyLockManager, file_lock
from historian.lib.logging import JSONFormatter, RunLogger, get_run_logger, setup_logging
from historian.lib.metrics import RunMetrics
from historian.lib.resilience import RetryConfig, retry_operation, with_retry
from historian.lib.runner import RunCoordinator, RunResult, RunStatus
from historian.lib.storage import DuckDBStore, MemoryStore, MergeStore, get_store
from historian.lib.upsert import IncrementalUpsertExecutor, UpsertResult
from historian.lib.watermark import delete_watermark, get_watermark, save_watermark

__all__ = [
    # Batches
    "SnapshotBatch",
    "read_batch",
    # Configuration
    "BatchKind",
    "DeletionPolicy",
    "EngineConfig",
    "ScopePredicate",
    "LoadedConfig",
    "YAMLConfigError",
    "load_engine_config",
    "expand_env_vars",
    "expand_options",
    "load_env_file",
    # Keys and classification
    "KeyedBatch",
    "fingerprint",
    "key_batch",
    "surrogate_key",
    "ChangeType",
    "DiffResult",
    "diff_snapshot",
    # Executors
    "HistoryMergeResult",
    "TemporalMergeExecutor",
    "assert_history_valid",
    "verify_history",
    "IncrementalUpsertExecutor",
    "UpsertResult",
    # Runs
    "RunCoordinator",
    "RunResult",
    "RunStatus",
    "KeyLockManager",
    "file_lock",
    "RetryConfig",
    "retry_operation",
    "with_retry",
    "delete_watermark",
    "get_watermark",
    "save_watermark",
    # Storage
    "DuckDBStore",
    "MemoryStore",
    "MergeStore",
    "get_store",
    # Errors
    "ConcurrentWriteError",
    "ConfigurationError",
    "DuplicateKeyInBatch",
    "HistorianError",
    "InvariantViolation",
    "MissingKeyAttribute",
    "RunCancelled",
    "TransientStoreError",
    # Observability
    "JSONFormatter",
    "RunLogger",
    "RunMetrics",
    "get_run_logger",
    "setup_logging",
]
