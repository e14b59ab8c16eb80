"""Snapshot batches handed to the engine by the external collaborator.

A batch is the full set of rows for one invocation, tagged with whether it
is a complete extract (FULL) or a windowed one (PARTIAL). The kind is always
stated explicitly by the caller; the engine never guesses it.
"""

from __future__ import annotations

import glob as glob_module
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

import ibis
import pandas as pd

from historian.lib.config import BatchKind
from historian.lib.errors import ConfigurationError

logger = logging.getLogger(__name__)

__all__ = ["SnapshotBatch", "read_batch"]


@dataclass
class SnapshotBatch:
    """Rows of one snapshot plus the batch-kind flag.

    Row order is irrelevant to every downstream step.
    """

    rows: pd.DataFrame
    kind: BatchKind
    source: Optional[str] = None  # Where the rows came from, for logging
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if isinstance(self.kind, str):
            self.kind = _coerce_kind(self.kind)
        if not isinstance(self.rows, pd.DataFrame):
            raise TypeError(
                f"SnapshotBatch.rows must be a pandas DataFrame, got {type(self.rows).__name__}"
            )

    @classmethod
    def from_records(
        cls,
        records: Iterable[Mapping[str, Any]],
        kind: Union[BatchKind, str],
        *,
        source: Optional[str] = None,
    ) -> "SnapshotBatch":
        """Build a batch from row mappings.

        Rows may omit columns; omitted values become nulls.

        Example:
            >>> batch = SnapshotBatch.from_records(
            ...     [{"id": 1, "name": "Alice"}, {"id": 2, "name": "Bob"}],
            ...     BatchKind.FULL,
            ... )
        """
        rows = [dict(r) for r in records]
        # Keep python objects so ints with gaps don't become floats
        frame = pd.DataFrame(rows, dtype=object) if rows else pd.DataFrame()
        frame = frame.where(frame.notna(), None)
        return cls(rows=frame, kind=kind, source=source)

    @classmethod
    def from_dataframe(
        cls,
        frame: pd.DataFrame,
        kind: Union[BatchKind, str],
        *,
        source: Optional[str] = None,
    ) -> "SnapshotBatch":
        return cls(rows=frame.reset_index(drop=True), kind=kind, source=source)

    @property
    def is_full(self) -> bool:
        return self.kind == BatchKind.FULL

    def __len__(self) -> int:
        return len(self.rows)


def read_batch(
    path: Union[str, Path],
    kind: Union[BatchKind, str],
    *,
    columns: Optional[List[str]] = None,
) -> SnapshotBatch:
    """Read a snapshot from CSV or Parquet files.

    Handles glob patterns (e.g., ``extracts/tags_*.parquet``) by expanding
    them first, then reads through Ibis on an in-process DuckDB.

    Args:
        path: File path or glob pattern
        kind: FULL or PARTIAL - must be stated by the caller
        columns: Optional subset of columns to keep

    Returns:
        SnapshotBatch with the file contents
    """
    source: Union[str, List[str]] = str(path)

    if "*" in source or "?" in source:
        files = sorted(glob_module.glob(source))
        if not files:
            raise ConfigurationError(
                f"No files found matching pattern: {path}",
                field="batch",
                value=path,
            )
        source = files
    elif not Path(source).exists():
        raise ConfigurationError(
            f"Snapshot file not found: {path}",
            field="batch",
            value=path,
        )

    con = ibis.duckdb.connect()
    try:
        first = source[0] if isinstance(source, list) else source
        if first.endswith(".csv"):
            t = con.read_csv(source)
        else:
            t = con.read_parquet(source)

        if columns:
            t = t.select(*columns)

        frame = t.execute()
    finally:
        con.disconnect()
    logger.info("Read %d rows from %s", len(frame), path)

    return SnapshotBatch(rows=frame, kind=kind, source=str(path))


def _coerce_kind(value: str) -> BatchKind:
    try:
        return BatchKind(value.lower())
    except ValueError:
        raise ConfigurationError(
            f"Unknown batch kind '{value}'",
            field="kind",
            value=value,
            suggestion="Use 'full' for complete extracts or 'partial' for windowed ones",
        ) from None
