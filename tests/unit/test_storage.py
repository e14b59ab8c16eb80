"""Tests for merge stores (in-memory and DuckDB)."""

import pandas as pd
import pytest

from historian.lib.errors import ConfigurationError, InvariantViolation
from historian.lib.storage import DuckDBStore, MemoryStore, get_store
from historian.lib.storage.base import CloseReason, current_state_schema, history_schema
from historian.lib.storage.duckdb_store import infer_sql_type
from tests.conftest import T1, T2

PAYLOAD = ["entity_id", "name"]
HISTORY = history_schema(PAYLOAD)
CURRENT = current_state_schema(PAYLOAD)


@pytest.fixture(params=["memory", "duckdb"])
def store(request, tmp_path):
    if request.param == "memory":
        s = MemoryStore()
    else:
        s = DuckDBStore(tmp_path / "warehouse.duckdb")
    yield s
    s.close()


def history_rows(keys, run_timestamp=T1):
    return pd.DataFrame(
        {
            "surrogate_key": keys,
            "entity_id": list(range(1, len(keys) + 1)),
            "name": [f"name-{k}" for k in keys],
            "fingerprint": [f"fp-{k}" for k in keys],
            "valid_from": pd.Series([pd.Timestamp(run_timestamp)] * len(keys)),
            "valid_to": pd.Series([None] * len(keys), dtype=object),
            "is_current": [True] * len(keys),
            "close_reason": pd.Series([None] * len(keys), dtype=object),
            "run_id": ["run-1"] * len(keys),
        }
    )[HISTORY]


def current_rows(keys, run_timestamp=T1):
    return pd.DataFrame(
        {
            "surrogate_key": keys,
            "entity_id": list(range(1, len(keys) + 1)),
            "name": [f"name-{k}" for k in keys],
            "fingerprint": [f"fp-{k}" for k in keys],
            "updated_at": pd.Series([pd.Timestamp(run_timestamp)] * len(keys)),
            "is_deleted": [False] * len(keys),
        }
    )[CURRENT]


class TestHistoryWrites:
    """Tests for MergeStore.apply_history."""

    def test_missing_table_reads_empty(self, store):
        assert not store.table_exists("history")
        assert store.read_history("history").empty
        assert store.read_current_history("history").empty

    def test_insert_and_read_back(self, store):
        result = store.apply_history(
            "history", HISTORY, closes={}, inserts=history_rows(["a", "b"]), run_timestamp=T1
        )

        assert result.inserted == 2
        history = store.read_history("history")
        assert sorted(history["surrogate_key"]) == ["a", "b"]
        assert (history["valid_from"] == pd.Timestamp(T1)).all()
        assert history["valid_to"].isna().all()

    def test_close_and_insert_in_one_write(self, store):
        store.apply_history(
            "history", HISTORY, closes={}, inserts=history_rows(["a", "b"]), run_timestamp=T1
        )
        result = store.apply_history(
            "history",
            HISTORY,
            closes={"a": CloseReason.SUPERSEDED, "b": CloseReason.DELETED},
            inserts=history_rows(["a"], T2),
            run_timestamp=T2,
        )

        assert result.closed == 2
        assert result.inserted == 1
        current = store.read_current_history("history")
        assert current["surrogate_key"].tolist() == ["a"]
        assert current.loc[0, "valid_from"] == pd.Timestamp(T2)

        history = store.read_history("history")
        closed = history[history["close_reason"].notna()].set_index("surrogate_key")
        assert closed.loc["a", "close_reason"] == CloseReason.SUPERSEDED
        assert closed.loc["b", "close_reason"] == CloseReason.DELETED
        assert (closed["valid_to"] == pd.Timestamp(T2)).all()

    def test_close_without_current_record_rolls_back(self, store):
        store.apply_history(
            "history", HISTORY, closes={}, inserts=history_rows(["a"]), run_timestamp=T1
        )

        with pytest.raises(InvariantViolation):
            store.apply_history(
                "history",
                HISTORY,
                closes={"a": CloseReason.SUPERSEDED, "ghost": CloseReason.SUPERSEDED},
                inserts=history_rows(["a"], T2),
                run_timestamp=T2,
            )

        history = store.read_history("history")
        assert len(history) == 1
        assert pd.isna(history.loc[0, "valid_to"])

    def test_second_current_record_rolls_back(self, store):
        store.apply_history(
            "history", HISTORY, closes={}, inserts=history_rows(["a"]), run_timestamp=T1
        )

        with pytest.raises(InvariantViolation, match="more than one current record"):
            store.apply_history(
                "history", HISTORY, closes={}, inserts=history_rows(["a"], T2), run_timestamp=T2
            )

        assert len(store.read_history("history")) == 1

    def test_empty_write_is_noop(self, store):
        result = store.apply_history(
            "history", HISTORY, closes={}, inserts=pd.DataFrame(columns=HISTORY), run_timestamp=T1
        )
        assert result.inserted == 0
        assert not store.table_exists("history")


class TestCurrentStateWrites:
    """Tests for MergeStore.apply_current_state."""

    def test_upsert_replaces_by_key(self, store):
        store.apply_current_state(
            "current_state", CURRENT, upserts=current_rows(["a", "b"]),
            deletes=[], tombstones=[], run_timestamp=T1,
        )
        replacement = current_rows(["a"], T2)
        replacement["name"] = "renamed"
        store.apply_current_state(
            "current_state", CURRENT, upserts=replacement,
            deletes=[], tombstones=[], run_timestamp=T2,
        )

        current = store.read_current_state("current_state").set_index("surrogate_key")
        assert len(current) == 2
        assert current.loc["a", "name"] == "renamed"
        assert current.loc["a", "updated_at"] == pd.Timestamp(T2)
        assert current.loc["b", "updated_at"] == pd.Timestamp(T1)

    def test_delete_and_tombstone(self, store):
        store.apply_current_state(
            "current_state", CURRENT, upserts=current_rows(["a", "b", "c"]),
            deletes=[], tombstones=[], run_timestamp=T1,
        )
        result = store.apply_current_state(
            "current_state", CURRENT, upserts=pd.DataFrame(columns=CURRENT),
            deletes=["a"], tombstones=["b"], run_timestamp=T2,
        )

        assert result.deleted == 1
        assert result.tombstoned == 1
        everything = store.read_current_state("current_state").set_index("surrogate_key")
        assert sorted(everything.index) == ["b", "c"]
        assert bool(everything.loc["b", "is_deleted"])
        assert everything.loc["b", "updated_at"] == pd.Timestamp(T2)

        live = store.read_current_state("current_state", include_deleted=False)
        assert live["surrogate_key"].tolist() == ["c"]


class TestGetStore:
    """Tests for the get_store factory."""

    def test_memory(self):
        assert isinstance(get_store("memory"), MemoryStore)

    def test_duckdb_in_memory(self):
        store = get_store("duckdb")
        assert isinstance(store, DuckDBStore)
        assert store.path == ":memory:"
        store.close()

    def test_duckdb_from_path(self, tmp_path):
        path = str(tmp_path / "nested" / "tags.duckdb")
        store = get_store(path)
        assert isinstance(store, DuckDBStore)
        assert store.path == path
        store.close()

    def test_unknown_type(self):
        with pytest.raises(ConfigurationError, match="Unknown store type"):
            get_store("oracle")


class TestDuckDBStore:
    """DuckDB-specific behavior."""

    def test_tables_survive_reopen(self, tmp_path):
        path = tmp_path / "warehouse.duckdb"
        with DuckDBStore(path) as store:
            store.apply_history(
                "history", HISTORY, closes={}, inserts=history_rows(["a"]), run_timestamp=T1
            )

        with DuckDBStore(path) as reopened:
            assert reopened.read_current_history("history")["surrogate_key"].tolist() == ["a"]

    def test_configured_column_types(self, tmp_path):
        with DuckDBStore(tmp_path / "w.duckdb", column_types={"entity_id": "INTEGER"}) as store:
            store.apply_history(
                "history", HISTORY, closes={}, inserts=history_rows(["a"]), run_timestamp=T1
            )
            schema = store.connection.table("history").schema()
            assert str(schema["entity_id"]).startswith("int32")

    def test_location(self, tmp_path):
        path = tmp_path / "w.duckdb"
        with DuckDBStore(path) as store:
            assert store.location == str(path.resolve())
        with DuckDBStore() as in_memory:
            assert in_memory.location is None
        assert MemoryStore().location is None

    def test_table_name_with_quote(self, tmp_path):
        with DuckDBStore(tmp_path / "w.duckdb") as store:
            store.apply_history(
                "o'brien", HISTORY, closes={}, inserts=history_rows(["a"]), run_timestamp=T1
            )
            assert store.read_history("o'brien")["surrogate_key"].tolist() == ["a"]

    def test_column_types_from_current_schema_only(self, tmp_path):
        with DuckDBStore(tmp_path / "w.duckdb") as store:
            store.connection.raw_sql("CREATE SCHEMA archive")
            store.connection.raw_sql(
                'CREATE TABLE archive."history" (entity_id VARCHAR, valid_from VARCHAR)'
            )
            store.apply_history(
                "history", HISTORY, closes={}, inserts=history_rows(["a"]), run_timestamp=T1
            )

            history = store.read_history("history")
            assert history["entity_id"].tolist() == [1]
            assert history.loc[0, "valid_from"] == pd.Timestamp(T1)

    def test_infer_sql_type(self):
        assert infer_sql_type(pd.Series([1, 2])) == "BIGINT"
        assert infer_sql_type(pd.Series([1.5, None])) == "DOUBLE"
        assert infer_sql_type(pd.Series([1, None], dtype=object)) == "BIGINT"
        assert infer_sql_type(pd.Series([True, False], dtype=object)) == "BOOLEAN"
        assert infer_sql_type(pd.Series(["x", 1], dtype=object)) == "VARCHAR"
        assert infer_sql_type(pd.Series([None, None], dtype=object)) == "VARCHAR"
