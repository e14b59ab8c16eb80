"""Merge store abstraction for the engine.

Provides a unified interface for persisting the historical and
current-state relations: in memory (pandas) or in DuckDB (via Ibis).

Usage:
    from historian.lib.storage import get_store

    # In memory
    store = get_store("memory")

    # DuckDB file
    store = get_store("duckdb", path="./warehouse/tags.duckdb")

    # Or infer from a path
    store = get_store("./warehouse/tags.duckdb")
"""

from typing import Any, Optional

from historian.lib.errors import ConfigurationError
from historian.lib.storage.base import CloseReason, MergeStore, StoreWriteResult
from historian.lib.storage.duckdb_store import DuckDBStore
from historian.lib.storage.memory import MemoryStore

__all__ = [
    "CloseReason",
    "DuckDBStore",
    "MemoryStore",
    "MergeStore",
    "StoreWriteResult",
    "get_store",
]


def get_store(store_type: str, *, path: Optional[str] = None, **options: Any) -> MergeStore:
    """Get the merge store for a type name or database path.

    Args:
        store_type: 'memory', 'duckdb', or a path ending in .duckdb/.db
        path: Database file for duckdb (None = in-memory DuckDB)
        **options: Store-specific options (e.g. column_types)

    Examples:
        >>> store = get_store("memory")
        >>> store = get_store("duckdb", path="./warehouse/tags.duckdb")
        >>> store = get_store("./warehouse/tags.duckdb")
    """
    kind = store_type.lower()

    if kind == "memory":
        return MemoryStore(**options)
    elif kind == "duckdb":
        return DuckDBStore(path, **options)
    elif kind.endswith((".duckdb", ".db")):
        return DuckDBStore(store_type, **options)
    else:
        raise ConfigurationError(
            f"Unknown store type '{store_type}'",
            field="store.type",
            value=store_type,
            suggestion="Use 'memory', 'duckdb', or a path to a .duckdb file",
        )
