"""Abstract base class for merge stores.

A merge store persists the two engine relations - the historical record
and the current-state table - behind narrow read/write contracts. Writes
for one relation are applied inside a single transaction so readers never
observe a half-applied change.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional

import pandas as pd

from historian.lib.errors import InvariantViolation

logger = logging.getLogger(__name__)

__all__ = [
    "CURRENT_STATE_COLUMNS",
    "HISTORY_COLUMNS",
    "CloseReason",
    "MergeStore",
    "StoreWriteResult",
    "current_state_schema",
    "history_schema",
    "normalize_timestamps",
]

# Engine-owned columns, appended after the business columns
HISTORY_COLUMNS = [
    "surrogate_key",
    "fingerprint",
    "valid_from",
    "valid_to",
    "is_current",
    "close_reason",
    "run_id",
]
CURRENT_STATE_COLUMNS = [
    "surrogate_key",
    "fingerprint",
    "updated_at",
    "is_deleted",
]

TIMESTAMP_COLUMNS = ("valid_from", "valid_to", "updated_at")


class CloseReason:
    """Why a historical record stopped being current."""

    SUPERSEDED = "superseded"
    DELETED = "deleted"


def history_schema(payload_columns: List[str]) -> List[str]:
    return ["surrogate_key"] + list(payload_columns) + [
        c for c in HISTORY_COLUMNS if c != "surrogate_key"
    ]


def current_state_schema(payload_columns: List[str]) -> List[str]:
    return ["surrogate_key"] + list(payload_columns) + [
        c for c in CURRENT_STATE_COLUMNS if c != "surrogate_key"
    ]


def normalize_timestamps(frame: pd.DataFrame) -> pd.DataFrame:
    """Coerce engine timestamp columns to tz-aware UTC."""
    for col in TIMESTAMP_COLUMNS:
        if col in frame.columns:
            frame[col] = pd.to_datetime(frame[col], utc=True)
    return frame


@dataclass
class StoreWriteResult:
    """Result of one transactional write against a relation."""

    table: str
    inserted: int = 0
    closed: int = 0
    deleted: int = 0
    tombstoned: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "table": self.table,
            "inserted": self.inserted,
            "closed": self.closed,
            "deleted": self.deleted,
            "tombstoned": self.tombstoned,
            "metadata": self.metadata,
        }


class MergeStore(ABC):
    """Abstract base class for merge stores.

    Subclasses implement the primitive reads and writes plus a transaction
    context; this class composes them into the two relation-level writes
    the executors use.
    """

    def __init__(self, **options: Any) -> None:
        self.options = options
        self._schemas: Dict[str, List[str]] = {}

    @property
    @abstractmethod
    def scheme(self) -> str:
        """Return the store type (e.g., 'memory', 'duckdb')."""
        pass

    @property
    def location(self) -> Optional[str]:
        """Where the relations persist, or None if they die with the store.

        Run watermarks are kept per (target, location); stores without a
        location do not track them by default.
        """
        return None

    # ------------------------------------------------------------------
    # Primitives
    # ------------------------------------------------------------------

    @abstractmethod
    def ensure_table(self, table: str, columns: List[str], sample: Optional[pd.DataFrame] = None) -> None:
        """Create a relation if it does not exist yet.

        Args:
            table: Relation name
            columns: Ordered column names
            sample: Rows used to infer column types on first creation
        """
        pass

    @abstractmethod
    def table_exists(self, table: str) -> bool:
        pass

    @abstractmethod
    def read_table(
        self,
        table: str,
        *,
        where_current: Optional[str] = None,
        keys: Optional[Iterable[str]] = None,
    ) -> pd.DataFrame:
        """Read rows from a relation.

        Args:
            table: Relation name
            where_current: Boolean column that must be true (e.g. 'is_current')
            keys: Restrict to these surrogate keys
        """
        pass

    @abstractmethod
    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Apply everything inside the block atomically or not at all."""
        pass

    @abstractmethod
    def _insert_rows(self, table: str, rows: pd.DataFrame) -> int:
        pass

    @abstractmethod
    def _close_current(
        self,
        table: str,
        keys: List[str],
        valid_to: datetime,
        close_reason: str,
    ) -> int:
        """Close the current record of each key. Returns rows updated."""
        pass

    @abstractmethod
    def _delete_keys(self, table: str, keys: List[str]) -> int:
        pass

    @abstractmethod
    def _tombstone_keys(self, table: str, keys: List[str], updated_at: datetime) -> int:
        pass

    @abstractmethod
    def _current_counts(self, table: str, keys: List[str]) -> Dict[str, int]:
        """Number of is_current rows per key, for keys that have any."""
        pass

    def close(self) -> None:
        """Release any held resources."""
        pass

    # ------------------------------------------------------------------
    # Relation-level reads
    # ------------------------------------------------------------------

    def read_history(self, table: str) -> pd.DataFrame:
        if not self.table_exists(table):
            return pd.DataFrame(columns=self._schemas.get(table, HISTORY_COLUMNS))
        return normalize_timestamps(self.read_table(table))

    def read_current_history(self, table: str, keys: Optional[Iterable[str]] = None) -> pd.DataFrame:
        """Historical records with is_current = true."""
        if not self.table_exists(table):
            return pd.DataFrame(columns=self._schemas.get(table, HISTORY_COLUMNS))
        return normalize_timestamps(
            self.read_table(table, where_current="is_current", keys=keys)
        )

    def read_current_state(self, table: str, *, include_deleted: bool = True) -> pd.DataFrame:
        if not self.table_exists(table):
            return pd.DataFrame(columns=self._schemas.get(table, CURRENT_STATE_COLUMNS))
        frame = normalize_timestamps(self.read_table(table))
        if not include_deleted and not frame.empty:
            frame = frame[~frame["is_deleted"].astype(bool)].reset_index(drop=True)
        return frame

    # ------------------------------------------------------------------
    # Relation-level writes
    # ------------------------------------------------------------------

    def apply_history(
        self,
        table: str,
        columns: List[str],
        *,
        closes: Dict[str, str],
        inserts: pd.DataFrame,
        run_timestamp: datetime,
    ) -> StoreWriteResult:
        """Close and insert historical records in one transaction.

        Args:
            table: History relation name
            columns: Full ordered schema of the relation
            closes: surrogate_key -> close reason for records to close
            inserts: New current records (already shaped to the schema)
            run_timestamp: valid_to for every closed record

        Raises:
            InvariantViolation: If a close misses its record or any touched
                key ends up with more than one current record. Nothing is
                committed in that case.
        """
        self._schemas[table] = columns
        result = StoreWriteResult(table=table)
        if not closes and inserts.empty:
            return result

        self.ensure_table(table, columns, sample=inserts)

        with self.transaction():
            by_reason: Dict[str, List[str]] = {}
            for key, reason in closes.items():
                by_reason.setdefault(reason, []).append(key)

            for reason, keys in by_reason.items():
                closed = self._close_current(table, sorted(keys), run_timestamp, reason)
                if closed != len(keys):
                    raise InvariantViolation(
                        f"Expected to close {len(keys)} current record(s), closed {closed}",
                        keys=keys,
                        target=table,
                    )
                result.closed += closed

            if not inserts.empty:
                result.inserted = self._insert_rows(table, inserts[columns])

            touched = sorted(set(closes) | set(inserts["surrogate_key"] if not inserts.empty else []))
            counts = self._current_counts(table, touched)
            violations = sorted(k for k, n in counts.items() if n > 1)
            if violations:
                raise InvariantViolation(
                    f"{len(violations)} key(s) would have more than one current record",
                    keys=violations,
                    target=table,
                )

        logger.debug(
            "Committed history write to %s: %d closed, %d inserted",
            table,
            result.closed,
            result.inserted,
        )
        return result

    def apply_current_state(
        self,
        table: str,
        columns: List[str],
        *,
        upserts: pd.DataFrame,
        deletes: List[str],
        tombstones: List[str],
        run_timestamp: datetime,
    ) -> StoreWriteResult:
        """Upsert, delete and tombstone current-state rows in one transaction.

        Upserts replace any existing row for the same key, including a
        tombstoned one.
        """
        self._schemas[table] = columns
        result = StoreWriteResult(table=table)
        if upserts.empty and not deletes and not tombstones:
            return result

        self.ensure_table(table, columns, sample=upserts)

        with self.transaction():
            if not upserts.empty:
                replaced = self._delete_keys(table, sorted(upserts["surrogate_key"]))
                result.metadata["replaced"] = replaced
                result.inserted = self._insert_rows(table, upserts[columns])
            if deletes:
                result.deleted = self._delete_keys(table, sorted(deletes))
            if tombstones:
                result.tombstoned = self._tombstone_keys(table, sorted(tombstones), run_timestamp)

        logger.debug(
            "Committed current-state write to %s: %d upserted, %d deleted, %d tombstoned",
            table,
            result.inserted,
            result.deleted,
            result.tombstoned,
        )
        return result

    def __enter__(self) -> "MergeStore":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(scheme={self.scheme!r})"
