"""Temporal merge executor (SCD Type 2).

Applies a snapshot classification to the historical relation:

- NEW: open a record at the run timestamp
- CHANGED: close the current record at the run timestamp and open a new one
- MISSING: close the current record, open nothing
- UNCHANGED: no write

Every close and insert of a run shares one run timestamp and lands in one
store transaction, so a reader never sees zero or two current records for
a key.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

import pandas as pd

from historian.lib.config import EngineConfig
from historian.lib.differ import ChangeType, DiffResult
from historian.lib.errors import InvariantViolation
from historian.lib.storage.base import CloseReason, MergeStore, history_schema

logger = logging.getLogger(__name__)

__all__ = [
    "HistoryMergeResult",
    "TemporalMergeExecutor",
    "assert_history_valid",
    "build_history_records",
    "verify_history",
]


@dataclass(frozen=True)
class HistoryMergeResult:
    """Counts from one temporal merge."""

    inserted: int = 0  # NEW entities opened
    updated: int = 0  # CHANGED entities closed and reopened
    closed: int = 0  # MISSING entities closed without replacement
    unchanged: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "inserted": self.inserted,
            "updated": self.updated,
            "closed": self.closed,
            "unchanged": self.unchanged,
        }


def build_history_records(
    rows: pd.DataFrame,
    columns: List[str],
    run_timestamp: datetime,
    run_id: Optional[str],
) -> pd.DataFrame:
    """Shape batch rows into new current historical records."""
    if rows.empty:
        return pd.DataFrame(columns=columns)

    records = rows.copy()
    records["valid_from"] = pd.Timestamp(run_timestamp)
    records["valid_to"] = pd.Series([None] * len(records), index=records.index, dtype=object)
    records["is_current"] = True
    records["close_reason"] = pd.Series([None] * len(records), index=records.index, dtype=object)
    records["run_id"] = run_id
    return records[columns].reset_index(drop=True)


class TemporalMergeExecutor:
    """Sole writer of the historical relation.

    Example:
        executor = TemporalMergeExecutor(store, config)
        diff = diff_snapshot(keyed, executor.read_current(), detect_missing=True)
        result = executor.apply(diff, run_timestamp)
    """

    def __init__(self, store: MergeStore, config: EngineConfig) -> None:
        self.store = store
        self.config = config
        self.table = config.history_table
        self.columns = history_schema(config.payload_columns)

    def read_current(self) -> pd.DataFrame:
        """Current historical records (is_current = true)."""
        frame = self.store.read_current_history(self.table)
        if frame.empty:
            return pd.DataFrame(columns=self.columns)
        return frame

    def _check_monotonic(self, diff: DiffResult, run_timestamp: datetime) -> None:
        """Closing must move time forward for every affected key."""
        keys = diff.keys(ChangeType.CHANGED) + diff.keys(ChangeType.MISSING)
        if not keys or diff.prior.empty:
            return

        ts = pd.Timestamp(run_timestamp)
        if ts.tzinfo is None:
            ts = ts.tz_localize("UTC")
        prior_from = pd.to_datetime(diff.prior.loc[keys, "valid_from"], utc=True)
        stale = prior_from[prior_from >= ts]
        if not stale.empty:
            raise InvariantViolation(
                f"Run timestamp {ts.isoformat()} is not after the current version "
                f"of {len(stale)} key(s)",
                keys=list(stale.index),
                target=self.config.target,
                details={"latest_valid_from": stale.max().isoformat()},
                suggestion=(
                    "Use a run timestamp later than the previous run. Re-delivering "
                    "an identical batch with the same timestamp is a no-op."
                ),
            )

    def apply(
        self,
        diff: DiffResult,
        run_timestamp: datetime,
        run_id: Optional[str] = None,
    ) -> HistoryMergeResult:
        """Apply a classification to the historical relation.

        Args:
            diff: Classification against the current historical records
            run_timestamp: The run's single logical instant
            run_id: Identifier stamped on every inserted record

        Returns:
            HistoryMergeResult with counts

        Raises:
            InvariantViolation: If the run timestamp does not move forward
                for a closed key, or the write would break the one-current-
                record rule. Nothing is committed.
        """
        unchanged = len(diff.unchanged)
        if not diff.has_writes:
            logger.info("History %s: nothing to write (%d unchanged)", self.table, unchanged)
            return HistoryMergeResult(unchanged=unchanged)

        self._check_monotonic(diff, run_timestamp)

        closes: Dict[str, str] = {}
        for key in diff.keys(ChangeType.CHANGED):
            closes[key] = CloseReason.SUPERSEDED
        for key in diff.keys(ChangeType.MISSING):
            closes[key] = CloseReason.DELETED

        opening = pd.concat(
            [f for f in (diff.new, diff.changed) if not f.empty] or [pd.DataFrame(columns=self.columns)],
            ignore_index=True,
        )
        inserts = build_history_records(opening, self.columns, run_timestamp, run_id)

        self.store.apply_history(
            self.table,
            self.columns,
            closes=closes,
            inserts=inserts,
            run_timestamp=run_timestamp,
        )

        result = HistoryMergeResult(
            inserted=len(diff.new),
            updated=len(diff.changed),
            closed=len(diff.missing),
            unchanged=unchanged,
        )
        logger.info(
            "History %s at %s: %d opened, %d superseded, %d closed, %d unchanged",
            self.table,
            pd.Timestamp(run_timestamp).isoformat(),
            result.inserted,
            result.updated,
            result.closed,
            result.unchanged,
        )
        return result


def verify_history(frame: pd.DataFrame) -> List[str]:
    """Audit a historical relation and describe every broken invariant.

    Checks, per surrogate key:
    - at most one record with valid_to = null
    - is_current agrees with valid_to being null
    - no empty or inverted intervals
    - no overlaps between consecutive records
    - no gaps, except after a record closed by deletion

    Never repairs anything.

    Returns:
        List of human-readable issues (empty if the relation is valid)
    """
    issues: List[str] = []
    if frame.empty:
        return issues

    history = frame.copy()
    history["valid_from"] = pd.to_datetime(history["valid_from"], utc=True)
    history["valid_to"] = pd.to_datetime(history["valid_to"], utc=True)

    for key, group in history.groupby("surrogate_key", sort=True):
        versions = group.sort_values("valid_from").to_dict(orient="records")

        open_count = sum(1 for v in versions if pd.isna(v["valid_to"]))
        if open_count > 1:
            issues.append(f"{key}: {open_count} records with valid_to = null")

        for v in versions:
            is_open = pd.isna(v["valid_to"])
            if bool(v["is_current"]) != is_open:
                issues.append(
                    f"{key}: is_current={bool(v['is_current'])} but valid_to="
                    f"{'null' if is_open else v['valid_to'].isoformat()}"
                )
            if not is_open and v["valid_to"] <= v["valid_from"]:
                issues.append(
                    f"{key}: empty interval [{v['valid_from'].isoformat()}, "
                    f"{v['valid_to'].isoformat()})"
                )

        for prev, nxt in zip(versions, versions[1:]):
            if pd.isna(prev["valid_to"]):
                issues.append(
                    f"{key}: open record from {prev['valid_from'].isoformat()} "
                    f"overlaps record from {nxt['valid_from'].isoformat()}"
                )
            elif prev["valid_to"] > nxt["valid_from"]:
                issues.append(
                    f"{key}: interval ending {prev['valid_to'].isoformat()} overlaps "
                    f"record from {nxt['valid_from'].isoformat()}"
                )
            elif (
                prev["valid_to"] < nxt["valid_from"]
                and prev.get("close_reason") != CloseReason.DELETED
            ):
                issues.append(
                    f"{key}: gap between {prev['valid_to'].isoformat()} and "
                    f"{nxt['valid_from'].isoformat()}"
                )

    return issues


def assert_history_valid(frame: pd.DataFrame, *, target: Optional[str] = None) -> None:
    """Raise InvariantViolation if verify_history finds anything."""
    issues = verify_history(frame)
    if issues:
        keys = {issue.split(":", 1)[0] for issue in issues}
        raise InvariantViolation(
            f"Historical relation has {len(issues)} invariant violation(s)",
            keys=keys,
            issues=issues,
            target=target,
            suggestion="Repair the affected keys manually; the engine never auto-heals history.",
        )
