"""Incremental upsert executor.

Keeps a flat current-state table with one row per business key and no
history. NEW rows are inserted, CHANGED rows are replaced in place, and
MISSING rows are deleted or tombstoned according to the deletion policy.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict

import pandas as pd

from historian.lib.config import DeletionPolicy, EngineConfig
from historian.lib.differ import ChangeType, DiffResult
from historian.lib.storage.base import MergeStore, current_state_schema

logger = logging.getLogger(__name__)

__all__ = ["IncrementalUpsertExecutor", "UpsertResult", "build_current_rows"]


@dataclass(frozen=True)
class UpsertResult:
    """Counts from one incremental merge."""

    inserted: int = 0
    updated: int = 0
    deleted: int = 0  # Deleted or tombstoned
    unchanged: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "inserted": self.inserted,
            "updated": self.updated,
            "deleted": self.deleted,
            "unchanged": self.unchanged,
        }


def build_current_rows(
    rows: pd.DataFrame,
    columns: list,
    run_timestamp: datetime,
) -> pd.DataFrame:
    """Shape batch rows into current-state rows."""
    if rows.empty:
        return pd.DataFrame(columns=columns)

    current = rows.copy()
    current["updated_at"] = pd.Timestamp(run_timestamp)
    current["is_deleted"] = False
    return current[columns].reset_index(drop=True)


class IncrementalUpsertExecutor:
    """Sole writer of the current-state relation.

    Example:
        executor = IncrementalUpsertExecutor(store, config)
        diff = diff_snapshot(keyed, executor.read_current(), detect_missing=True)
        result = executor.apply(diff, run_timestamp)
    """

    def __init__(self, store: MergeStore, config: EngineConfig) -> None:
        self.store = store
        self.config = config
        self.table = config.current_table
        self.columns = current_state_schema(config.payload_columns)

    def read_current(self) -> pd.DataFrame:
        """Live current-state rows; tombstoned rows are excluded.

        A tombstoned key that reappears is therefore NEW and replaces the
        tombstone.
        """
        frame = self.store.read_current_state(self.table, include_deleted=False)
        if frame.empty:
            return pd.DataFrame(columns=self.columns)
        return frame

    def apply(self, diff: DiffResult, run_timestamp: datetime) -> UpsertResult:
        """Apply a classification to the current-state relation.

        Args:
            diff: Classification against the live current-state rows
            run_timestamp: Stamped as updated_at on every written row

        Returns:
            UpsertResult with counts
        """
        unchanged = len(diff.unchanged)
        if not diff.has_writes:
            logger.info("Current state %s: nothing to write (%d unchanged)", self.table, unchanged)
            return UpsertResult(unchanged=unchanged)

        writing = pd.concat(
            [f for f in (diff.new, diff.changed) if not f.empty] or [pd.DataFrame(columns=self.columns)],
            ignore_index=True,
        )
        upserts = build_current_rows(writing, self.columns, run_timestamp)

        missing = diff.keys(ChangeType.MISSING)
        deletes = missing if self.config.deletion_policy == DeletionPolicy.CLOSE else []
        tombstones = missing if self.config.deletion_policy == DeletionPolicy.TOMBSTONE else []
        if missing and self.config.deletion_policy == DeletionPolicy.NONE:
            # The differ never produces MISSING under NONE
            logger.warning("Ignoring %d MISSING keys: deletion_policy is NONE", len(missing))

        self.store.apply_current_state(
            self.table,
            self.columns,
            upserts=upserts,
            deletes=deletes,
            tombstones=tombstones,
            run_timestamp=run_timestamp,
        )

        result = UpsertResult(
            inserted=len(diff.new),
            updated=len(diff.changed),
            deleted=len(deletes) + len(tombstones),
            unchanged=unchanged,
        )
        logger.info(
            "Current state %s: %d inserted, %d updated, %d removed (%s), %d unchanged",
            self.table,
            result.inserted,
            result.updated,
            result.deleted,
            self.config.deletion_policy.value,
            result.unchanged,
        )
        return result
