"""Run coordinator.

Drives one end-to-end merge: fix the run timestamp, key the batch, classify
it, and apply the classification to the historical relation and then to
the current-state relation.

Each relation is reconciled against its own persisted contents. If a run
fails after the history commit but before the current-state commit,
running it again with the same timestamp is a no-op for history and
completes the current state.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from contextlib import ExitStack
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import pandas as pd

from historian.lib.batch import SnapshotBatch
from historian.lib.config import BatchKind, EngineConfig
from historian.lib.differ import ChangeType, DiffResult, diff_snapshot
from historian.lib.errors import (
    HistorianError,
    InvariantViolation,
    MissingKeyAttribute,
    RunCancelled,
)
from historian.lib.history import HistoryMergeResult, TemporalMergeExecutor
from historian.lib.keys import KeyedBatch, key_batch
from historian.lib.locks import KeyLockManager, get_lock_manager
from historian.lib.logging import get_run_logger
from historian.lib.metrics import RunMetrics
from historian.lib.resilience import RetryConfig, retry_operation
from historian.lib.storage.base import MergeStore
from historian.lib.upsert import IncrementalUpsertExecutor, UpsertResult
from historian.lib.watermark import get_watermark, save_watermark

logger = logging.getLogger(__name__)

__all__ = ["RunCoordinator", "RunResult", "RunStatus"]


class RunStatus(Enum):
    """Outcome of one run."""

    SUCCEEDED = "succeeded"
    SUCCEEDED_WITH_REJECTIONS = "succeeded_with_rejections"
    FAILED = "failed"


@dataclass(frozen=True)
class RunResult:
    """Structured result from one merge run.

    ``inserted`` counts NEW entities, ``updated`` CHANGED ones, ``closed``
    historical records closed by deletion, and ``deleted`` current-state
    rows removed or tombstoned.
    """

    status: RunStatus
    target: str
    run_id: str
    run_timestamp: datetime
    kind: Optional[BatchKind] = None
    inserted: int = 0
    updated: int = 0
    closed: int = 0
    deleted: int = 0
    unchanged: int = 0
    rejected: Tuple[Dict[str, Any], ...] = ()
    error: Optional[BaseException] = None
    elapsed_seconds: float = 0.0
    metrics: Dict[str, Any] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.status != RunStatus.FAILED

    @property
    def rejected_count(self) -> int:
        return len(self.rejected)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        error: Optional[Dict[str, Any]] = None
        if isinstance(self.error, HistorianError):
            error = self.error.to_dict()
        elif self.error is not None:
            error = {"error_type": type(self.error).__name__, "message": str(self.error)}

        return {
            "status": self.status.value,
            "target": self.target,
            "run_id": self.run_id,
            "run_timestamp": self.run_timestamp.isoformat(),
            "kind": self.kind.value if self.kind else None,
            "inserted": self.inserted,
            "updated": self.updated,
            "closed": self.closed,
            "deleted": self.deleted,
            "unchanged": self.unchanged,
            "rejected": self.rejected_count,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            "error": error,
        }

    def __repr__(self) -> str:
        return (
            f"RunResult({self.status.name}, target={self.target}, "
            f"inserted={self.inserted}, updated={self.updated}, closed={self.closed}, "
            f"deleted={self.deleted}, unchanged={self.unchanged}, "
            f"rejected={self.rejected_count})"
        )


def _utc(value: datetime) -> datetime:
    """Naive timestamps are taken as UTC."""
    ts = pd.Timestamp(value)
    if ts.tzinfo is None:
        ts = ts.tz_localize("UTC")
    return ts.tz_convert("UTC").to_pydatetime()


class RunCoordinator:
    """Runs batches against one merge target.

    Example:
        coordinator = RunCoordinator(config, get_store("duckdb", path="tags.duckdb"))
        result = coordinator.run(SnapshotBatch.from_records(rows, BatchKind.FULL))
        print(result.to_dict())
    """

    def __init__(
        self,
        config: EngineConfig,
        store: MergeStore,
        lock_manager: Optional[KeyLockManager] = None,
        retry: Optional[RetryConfig] = None,
        *,
        cancel_event: Optional[threading.Event] = None,
        lock_timeout: float = 0.0,
        track_watermark: Optional[bool] = None,
    ) -> None:
        self.config = config
        self.store = store
        self.lock_manager = lock_manager or get_lock_manager()
        self.retry = retry or RetryConfig.default()
        self.cancel_event = cancel_event
        self.lock_timeout = lock_timeout
        # Watermarks only apply to stores whose relations persist
        if track_watermark is None:
            track_watermark = store.location is not None
        self.track_watermark = track_watermark

        self.history = TemporalMergeExecutor(store, config)
        self.current_state = IncrementalUpsertExecutor(store, config)

    def _check_cancelled(self, phase: str) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise RunCancelled(
                f"Run cancelled before {phase}",
                target=self.config.target,
            )

    def _check_watermark(self, run_timestamp: datetime) -> None:
        if not self.track_watermark:
            return
        last = get_watermark(self.config.target, self.store.location)
        if last is not None and run_timestamp < last:
            raise InvariantViolation(
                f"Run timestamp {run_timestamp.isoformat()} is earlier than the last "
                f"successful run at {last.isoformat()}",
                target=self.config.target,
                details={"last_run_timestamp": last.isoformat()},
                suggestion="Run timestamps must not move backwards for a target.",
            )

    def _diff(
        self,
        keyed: KeyedBatch,
        prior: pd.DataFrame,
        run_timestamp: datetime,
        timestamp_column: str,
    ) -> DiffResult:
        return diff_snapshot(
            keyed,
            prior,
            detect_missing=self.config.detects_missing,
            scope=self.config.scope_predicate,
            run_timestamp=run_timestamp,
            timestamp_column=timestamp_column,
            workers=self.config.workers,
        )

    def _claim_missing(self, locks: ExitStack, diff: DiffResult, run_id: str) -> None:
        missing = diff.keys(ChangeType.MISSING)
        if missing:
            locks.enter_context(
                self.lock_manager.claim(
                    self.config.target, missing, run_id, timeout=self.lock_timeout
                )
            )

    def _merge_history(
        self,
        keyed: KeyedBatch,
        run_timestamp: datetime,
        run_id: str,
        locks: ExitStack,
    ) -> Tuple[DiffResult, HistoryMergeResult]:
        prior = self.history.read_current()
        diff = self._diff(keyed, prior, run_timestamp, "valid_from")
        self._claim_missing(locks, diff, run_id)
        self._check_cancelled("history commit")
        return diff, self.history.apply(diff, run_timestamp, run_id)

    def _merge_current_state(
        self,
        keyed: KeyedBatch,
        run_timestamp: datetime,
        run_id: str,
        locks: ExitStack,
    ) -> Tuple[DiffResult, UpsertResult]:
        prior = self.current_state.read_current()
        diff = self._diff(keyed, prior, run_timestamp, "updated_at")
        self._claim_missing(locks, diff, run_id)
        self._check_cancelled("current-state commit")
        return diff, self.current_state.apply(diff, run_timestamp)

    def run(
        self,
        batch: SnapshotBatch,
        run_timestamp: Optional[datetime] = None,
        run_id: Optional[str] = None,
        strict: Optional[bool] = None,
    ) -> RunResult:
        """Merge one snapshot batch into both relations.

        Args:
            batch: Incoming snapshot with its FULL/PARTIAL flag
            run_timestamp: Logical instant of the run (default: now, UTC)
            run_id: Identifier stamped on new history records (default: uuid4)
            strict: Abort on any rejected row (default: config.strict)

        Returns:
            RunResult with SUCCEEDED or SUCCEEDED_WITH_REJECTIONS

        Raises:
            MissingKeyAttribute: In strict mode, if any row was rejected
            DuplicateKeyInBatch: If the batch holds a surrogate key twice
            InvariantViolation: If persisted state or the run timestamp is invalid
            ConcurrentWriteError: If another run holds overlapping keys
            TransientStoreError: If the store stays unavailable after retries
            RunCancelled: If the cancel event was set before a commit
        """
        start = time.perf_counter()
        run_timestamp = _utc(run_timestamp or datetime.now(timezone.utc))
        run_id = run_id or uuid.uuid4().hex
        strict = self.config.strict if strict is None else strict
        target = self.config.target

        run_log = get_run_logger(__name__, target=target, run_id=run_id)
        metrics = RunMetrics(target=target, run_id=run_id)

        run_log.info(
            "Run started: %d rows, %s batch, run timestamp %s",
            len(batch),
            batch.kind.value,
            run_timestamp.isoformat(),
        )

        self._check_watermark(run_timestamp)

        with metrics.time_phase("key"):
            keyed = key_batch(batch, self.config)
        metrics.record("rows_rejected", keyed.rejected_count, unit="rows")

        if keyed.rejected:
            run_log.warning("%d row(s) rejected for missing key attributes", keyed.rejected_count)
            if strict:
                raise MissingKeyAttribute(
                    keyed.rejected[0].attribute,
                    rejected=keyed.rejected,
                    target=target,
                )

        if batch.is_full and batch.rows.empty and self.config.detects_missing:
            run_log.warning("Empty FULL batch: every in-scope entity will be treated as deleted")

        self._check_cancelled("any write")

        with ExitStack() as locks:
            batch_keys: List[str] = list(keyed.frame["surrogate_key"]) if not keyed.frame.empty else []
            locks.enter_context(
                self.lock_manager.claim(target, batch_keys, run_id, timeout=self.lock_timeout)
            )

            with metrics.time_phase("history"):
                history_diff, history_result = retry_operation(
                    lambda: self._merge_history(keyed, run_timestamp, run_id, locks),
                    self.retry,
                    f"{target} history merge",
                )

            with metrics.time_phase("current_state"):
                _, upsert_result = retry_operation(
                    lambda: self._merge_current_state(keyed, run_timestamp, run_id, locks),
                    self.retry,
                    f"{target} current-state merge",
                )

        if self.track_watermark:
            save_watermark(target, run_timestamp, run_id, store=self.store.location)

        counts = history_diff.counts()
        for name, value in counts.items():
            metrics.record(f"rows_{name}", value, unit="rows")
        metrics.record("rows_deleted", upsert_result.deleted, unit="rows")
        metrics.finish()

        status = (
            RunStatus.SUCCEEDED_WITH_REJECTIONS if keyed.rejected else RunStatus.SUCCEEDED
        )
        result = RunResult(
            status=status,
            target=target,
            run_id=run_id,
            run_timestamp=run_timestamp,
            kind=batch.kind,
            inserted=history_result.inserted,
            updated=history_result.updated,
            closed=history_result.closed,
            deleted=upsert_result.deleted,
            unchanged=history_result.unchanged,
            rejected=tuple(keyed.rejected_rows()),
            elapsed_seconds=time.perf_counter() - start,
            metrics=metrics.summary(),
        )

        run_log.info(
            "Run %s: %d inserted, %d updated, %d closed, %d deleted, %d unchanged, %d rejected",
            status.value,
            result.inserted,
            result.updated,
            result.closed,
            result.deleted,
            result.unchanged,
            result.rejected_count,
            extra=metrics.to_log_dict(),
        )
        return result

    def run_safe(
        self,
        batch: SnapshotBatch,
        run_timestamp: Optional[datetime] = None,
        run_id: Optional[str] = None,
        strict: Optional[bool] = None,
    ) -> RunResult:
        """Like run(), but failures come back as a FAILED RunResult.

        Example:
            result = coordinator.run_safe(batch)
            if not result.success:
                print(result.error)
        """
        start = time.perf_counter()
        fixed_ts = _utc(run_timestamp or datetime.now(timezone.utc))
        run_id = run_id or uuid.uuid4().hex

        try:
            return self.run(batch, run_timestamp=fixed_ts, run_id=run_id, strict=strict)
        except HistorianError as e:
            logger.error("Run %s against %s failed: %s", run_id, self.config.target, e.message)
            error: BaseException = e
        except Exception as e:
            logger.exception("Run %s against %s failed unexpectedly", run_id, self.config.target)
            error = e

        return RunResult(
            status=RunStatus.FAILED,
            target=self.config.target,
            run_id=run_id,
            run_timestamp=fixed_ts,
            kind=batch.kind,
            error=error,
            elapsed_seconds=time.perf_counter() - start,
        )
