"""In-memory merge store backed by pandas DataFrames.

Useful for tests and for small targets that are persisted elsewhere.
Transactions snapshot the touched tables and restore them on failure.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional

import pandas as pd

from historian.lib.storage.base import MergeStore

logger = logging.getLogger(__name__)

__all__ = ["MemoryStore"]


class MemoryStore(MergeStore):
    """Merge store holding each relation as a DataFrame.

    Example:
        store = MemoryStore()
        coordinator = RunCoordinator(config, store)
        coordinator.run(batch)
        print(store.read_history("history"))
    """

    def __init__(self, **options: Any) -> None:
        super().__init__(**options)
        self._tables: Dict[str, pd.DataFrame] = {}
        self._lock = threading.RLock()
        self._snapshot: Optional[Dict[str, pd.DataFrame]] = None

    @property
    def scheme(self) -> str:
        return "memory"

    def ensure_table(self, table: str, columns: List[str], sample: Optional[pd.DataFrame] = None) -> None:
        with self._lock:
            if table not in self._tables:
                self._tables[table] = pd.DataFrame(columns=columns)
                logger.debug("Created in-memory table %s", table)

    def table_exists(self, table: str) -> bool:
        return table in self._tables

    def read_table(
        self,
        table: str,
        *,
        where_current: Optional[str] = None,
        keys: Optional[Iterable[str]] = None,
    ) -> pd.DataFrame:
        with self._lock:
            frame = self._tables[table]
            if where_current:
                frame = frame[frame[where_current].astype(bool)]
            if keys is not None:
                frame = frame[frame["surrogate_key"].isin(list(keys))]
            return frame.copy().reset_index(drop=True)

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._lock:
            if self._snapshot is not None:
                # Nested: the outer transaction owns rollback
                yield
                return
            self._snapshot = {name: frame.copy() for name, frame in self._tables.items()}
            try:
                yield
            except BaseException:
                self._tables = self._snapshot
                logger.debug("Rolled back in-memory transaction")
                raise
            finally:
                self._snapshot = None

    def _insert_rows(self, table: str, rows: pd.DataFrame) -> int:
        existing = self._tables[table]
        rows = rows.astype(object)
        if existing.empty:
            self._tables[table] = rows.reset_index(drop=True)
        else:
            self._tables[table] = pd.concat([existing, rows], ignore_index=True)
        return len(rows)

    def _close_current(
        self,
        table: str,
        keys: List[str],
        valid_to: datetime,
        close_reason: str,
    ) -> int:
        frame = self._tables[table]
        mask = frame["surrogate_key"].isin(keys) & frame["is_current"].astype(bool)
        frame.loc[mask, "valid_to"] = pd.Timestamp(valid_to)
        frame.loc[mask, "is_current"] = False
        frame.loc[mask, "close_reason"] = close_reason
        return int(mask.sum())

    def _delete_keys(self, table: str, keys: List[str]) -> int:
        frame = self._tables[table]
        mask = frame["surrogate_key"].isin(keys)
        self._tables[table] = frame[~mask].reset_index(drop=True)
        return int(mask.sum())

    def _tombstone_keys(self, table: str, keys: List[str], updated_at: datetime) -> int:
        frame = self._tables[table]
        mask = frame["surrogate_key"].isin(keys)
        frame.loc[mask, "is_deleted"] = True
        frame.loc[mask, "updated_at"] = pd.Timestamp(updated_at)
        return int(mask.sum())

    def _current_counts(self, table: str, keys: List[str]) -> Dict[str, int]:
        frame = self._tables[table]
        current = frame[frame["surrogate_key"].isin(keys) & frame["is_current"].astype(bool)]
        return current.groupby("surrogate_key").size().to_dict()

    def drop_table(self, table: str) -> None:
        with self._lock:
            self._tables.pop(table, None)
