"""DuckDB merge store.

Reads go through Ibis; writes run as plain SQL on the backend's DuckDB
connection inside an explicit transaction, staging incoming rows as a
registered DataFrame.
"""

from __future__ import annotations

import logging
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Union

import duckdb
import ibis
import pandas as pd

from historian.lib.errors import TransientStoreError
from historian.lib.storage.base import MergeStore

logger = logging.getLogger(__name__)

__all__ = ["DuckDBStore", "infer_sql_type"]

# Engine-owned column types; business columns are inferred or configured
ENGINE_COLUMN_TYPES = {
    "surrogate_key": "VARCHAR",
    "fingerprint": "VARCHAR",
    "valid_from": "TIMESTAMPTZ",
    "valid_to": "TIMESTAMPTZ",
    "is_current": "BOOLEAN",
    "close_reason": "VARCHAR",
    "run_id": "VARCHAR",
    "updated_at": "TIMESTAMPTZ",
    "is_deleted": "BOOLEAN",
}

# DuckDB errors that indicate the store, not the data, is at fault
TRANSIENT_ERRORS = (
    duckdb.IOException,
    duckdb.ConnectionException,
    duckdb.TransactionException,
)


def _quote(identifier: str) -> str:
    return '"' + identifier.replace('"', '""') + '"'


def infer_sql_type(values: pd.Series) -> str:
    """Pick a DuckDB type for a business column from sample values."""
    non_null = values.dropna()
    if non_null.empty:
        return "VARCHAR"

    dtype = values.dtype
    if pd.api.types.is_bool_dtype(dtype):
        return "BOOLEAN"
    if pd.api.types.is_integer_dtype(dtype):
        return "BIGINT"
    if pd.api.types.is_float_dtype(dtype):
        return "DOUBLE"
    if pd.api.types.is_datetime64_any_dtype(dtype):
        return "TIMESTAMPTZ" if getattr(dtype, "tz", None) is not None else "TIMESTAMP"

    # Object columns: decide from the python values
    kinds = {type(v) for v in non_null}
    if kinds <= {bool}:
        return "BOOLEAN"
    if all(isinstance(v, int) and not isinstance(v, bool) for v in non_null):
        return "BIGINT"
    if all(isinstance(v, (int, float)) and not isinstance(v, bool) for v in non_null):
        return "DOUBLE"
    if all(isinstance(v, (pd.Timestamp, datetime)) for v in non_null):
        return "TIMESTAMPTZ"
    return "VARCHAR"


class DuckDBStore(MergeStore):
    """Merge store persisted in a DuckDB database file (or in memory).

    Example:
        store = DuckDBStore(path="./warehouse/tags.duckdb")
        coordinator = RunCoordinator(config, store)
        coordinator.run(batch)

        # Downstream consumers read plain tables
        con = ibis.duckdb.connect("./warehouse/tags.duckdb")
        con.table("history").filter(lambda t: t.is_current).execute()
    """

    def __init__(
        self,
        path: Optional[Union[str, Path]] = None,
        *,
        column_types: Optional[Dict[str, str]] = None,
        **options: Any,
    ) -> None:
        super().__init__(**options)
        self.path = str(path) if path else ":memory:"
        self.column_types = dict(column_types or {})
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        try:
            self._con = ibis.duckdb.connect(self.path) if path else ibis.duckdb.connect()
        except TRANSIENT_ERRORS as e:
            raise TransientStoreError(
                f"Could not open DuckDB database {self.path}",
                operation="connect",
                cause=e,
            ) from e
        # One connection is shared by every thread using this store, so a
        # transaction holds the lock until it commits or rolls back
        self._lock = threading.RLock()
        self._in_transaction = False

    @property
    def scheme(self) -> str:
        return "duckdb"

    @property
    def location(self) -> Optional[str]:
        if self.path == ":memory:":
            return None
        return str(Path(self.path).resolve())

    @property
    def connection(self) -> "ibis.BaseBackend":
        """The Ibis backend, for read-only use by consumers."""
        return self._con

    def _execute(self, sql: str, operation: str, params: Optional[List[Any]] = None) -> Any:
        try:
            with self._lock:
                if params is None:
                    return self._con.raw_sql(sql)
                return self._con.con.execute(sql, params)
        except TRANSIENT_ERRORS as e:
            raise TransientStoreError(
                f"DuckDB {operation} failed",
                operation=operation,
                cause=e,
            ) from e

    def table_exists(self, table: str) -> bool:
        with self._lock:
            return table in self._con.list_tables()

    def ensure_table(self, table: str, columns: List[str], sample: Optional[pd.DataFrame] = None) -> None:
        with self._lock:
            self._ensure_table(table, columns, sample)

    def _ensure_table(self, table: str, columns: List[str], sample: Optional[pd.DataFrame]) -> None:
        if self.table_exists(table):
            return

        column_defs = []
        for col in columns:
            if col in ENGINE_COLUMN_TYPES:
                sql_type = ENGINE_COLUMN_TYPES[col]
            elif col in self.column_types:
                sql_type = self.column_types[col]
            elif sample is not None and col in sample.columns:
                sql_type = infer_sql_type(sample[col])
            else:
                sql_type = "VARCHAR"
            column_defs.append(f"{_quote(col)} {sql_type}")

        self._execute(
            f"CREATE TABLE IF NOT EXISTS {_quote(table)} ({', '.join(column_defs)})",
            "create_table",
        )
        logger.info("Created DuckDB table %s", table)

    def read_table(
        self,
        table: str,
        *,
        where_current: Optional[str] = None,
        keys: Optional[Iterable[str]] = None,
    ) -> pd.DataFrame:
        try:
            with self._lock:
                t = self._con.table(table)
                if where_current:
                    t = t.filter(t[where_current])
                if keys is not None:
                    t = t.filter(t.surrogate_key.isin(list(keys)))
                return t.execute()
        except TRANSIENT_ERRORS as e:
            raise TransientStoreError(
                f"Reading {table} failed",
                operation="read",
                cause=e,
            ) from e

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._lock:
            if self._in_transaction:
                # Nested on the owning thread: the outer block commits
                yield
                return

            self._execute("BEGIN TRANSACTION", "begin")
            self._in_transaction = True
            try:
                yield
            except BaseException:
                self._execute("ROLLBACK", "rollback")
                logger.debug("Rolled back DuckDB transaction")
                raise
            else:
                self._execute("COMMIT", "commit")
            finally:
                self._in_transaction = False

    def _column_types(self, table: str) -> Dict[str, str]:
        with self._lock:
            rows = self._execute(
                "SELECT column_name, data_type FROM information_schema.columns "
                "WHERE table_name = ? AND table_schema = current_schema()",
                "describe",
                params=[table],
            ).fetchall()
        return {name: data_type for name, data_type in rows}

    @contextmanager
    def _staged(self, frame: pd.DataFrame) -> Iterator[str]:
        name = f"_historian_stage_{uuid.uuid4().hex[:12]}"
        raw = self._con.con
        raw.register(name, frame)
        try:
            yield name
        finally:
            raw.unregister(name)

    def _insert_rows(self, table: str, rows: pd.DataFrame) -> int:
        if rows.empty:
            return 0
        types = self._column_types(table)
        select_list = ", ".join(
            f"CAST({_quote(col)} AS {types.get(col, 'VARCHAR')})" for col in rows.columns
        )
        column_list = ", ".join(_quote(col) for col in rows.columns)
        with self._staged(rows) as stage:
            self._execute(
                f"INSERT INTO {_quote(table)} ({column_list}) SELECT {select_list} FROM {stage}",
                "insert",
            )
        return len(rows)

    def _keys_frame(self, keys: List[str]) -> pd.DataFrame:
        return pd.DataFrame({"surrogate_key": pd.Series(keys, dtype=object)})

    def _count_matching(self, table: str, stage: str, current_only: bool) -> int:
        extra = " AND t.is_current" if current_only else ""
        row = self._execute(
            f"SELECT count(*) FROM {_quote(table)} t "
            f"WHERE t.surrogate_key IN (SELECT surrogate_key FROM {stage}){extra}",
            "count",
        ).fetchone()
        return int(row[0])

    def _close_current(
        self,
        table: str,
        keys: List[str],
        valid_to: datetime,
        close_reason: str,
    ) -> int:
        if not keys:
            return 0
        ts = pd.Timestamp(valid_to).isoformat()
        with self._staged(self._keys_frame(keys)) as stage:
            matched = self._count_matching(table, stage, current_only=True)
            self._execute(
                f"UPDATE {_quote(table)} SET valid_to = TIMESTAMPTZ '{ts}', "
                f"is_current = false, close_reason = '{close_reason}' "
                f"WHERE is_current AND surrogate_key IN (SELECT surrogate_key FROM {stage})",
                "close",
            )
        return matched

    def _delete_keys(self, table: str, keys: List[str]) -> int:
        if not keys:
            return 0
        with self._staged(self._keys_frame(keys)) as stage:
            matched = self._count_matching(table, stage, current_only=False)
            self._execute(
                f"DELETE FROM {_quote(table)} "
                f"WHERE surrogate_key IN (SELECT surrogate_key FROM {stage})",
                "delete",
            )
        return matched

    def _tombstone_keys(self, table: str, keys: List[str], updated_at: datetime) -> int:
        if not keys:
            return 0
        ts = pd.Timestamp(updated_at).isoformat()
        with self._staged(self._keys_frame(keys)) as stage:
            matched = self._count_matching(table, stage, current_only=False)
            self._execute(
                f"UPDATE {_quote(table)} SET is_deleted = true, "
                f"updated_at = TIMESTAMPTZ '{ts}' "
                f"WHERE surrogate_key IN (SELECT surrogate_key FROM {stage})",
                "tombstone",
            )
        return matched

    def _current_counts(self, table: str, keys: List[str]) -> Dict[str, int]:
        if not keys:
            return {}
        with self._staged(self._keys_frame(keys)) as stage:
            rows = self._execute(
                f"SELECT surrogate_key, count(*) FROM {_quote(table)} "
                f"WHERE is_current AND surrogate_key IN (SELECT surrogate_key FROM {stage}) "
                "GROUP BY surrogate_key",
                "count",
            ).fetchall()
        return {key: int(n) for key, n in rows}

    def close(self) -> None:
        disconnect = getattr(self._con, "disconnect", None)
        if disconnect is not None:
            disconnect()
