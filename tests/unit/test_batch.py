"""Tests for snapshot batches and file reading."""

from types import SimpleNamespace

import ibis
import pandas as pd
import pytest

import historian.lib.batch as batch_module
from historian.lib.batch import SnapshotBatch, read_batch
from historian.lib.config import BatchKind
from historian.lib.errors import ConfigurationError


class TestSnapshotBatch:
    """Tests for SnapshotBatch construction."""

    def test_from_records_fills_missing_columns(self):
        batch = SnapshotBatch.from_records(
            [{"id": 1, "name": "A"}, {"id": 2}], BatchKind.PARTIAL
        )

        assert len(batch) == 2
        assert not batch.is_full
        assert batch.rows.loc[1, "name"] is None

    def test_from_records_keeps_integers(self):
        batch = SnapshotBatch.from_records([{"id": 1}, {"id": None}], BatchKind.FULL)
        assert batch.rows.loc[0, "id"] == 1
        assert isinstance(batch.rows.loc[0, "id"], int)

    def test_empty_records(self):
        batch = SnapshotBatch.from_records([], BatchKind.FULL)
        assert len(batch) == 0
        assert batch.is_full

    def test_kind_from_string(self):
        batch = SnapshotBatch.from_records([{"id": 1}], "Partial")
        assert batch.kind == BatchKind.PARTIAL

    def test_unknown_kind(self):
        with pytest.raises(ConfigurationError, match="Unknown batch kind"):
            SnapshotBatch.from_records([{"id": 1}], "delta")

    def test_rows_must_be_dataframe(self):
        with pytest.raises(TypeError):
            SnapshotBatch(rows=[{"id": 1}], kind=BatchKind.FULL)


class TestReadBatch:
    """Tests for read_batch."""

    @pytest.fixture
    def frame(self):
        return pd.DataFrame({"id": [1, 2, 3], "name": ["a", "b", "c"]})

    def test_csv(self, tmp_path, frame):
        path = tmp_path / "tags.csv"
        frame.to_csv(path, index=False)

        batch = read_batch(path, BatchKind.FULL)

        assert batch.kind == BatchKind.FULL
        assert batch.source == str(path)
        assert sorted(batch.rows["id"]) == [1, 2, 3]

    def test_parquet_columns(self, tmp_path, frame):
        path = tmp_path / "tags.parquet"
        frame.to_parquet(path, index=False)

        batch = read_batch(path, "partial", columns=["id"])

        assert list(batch.rows.columns) == ["id"]
        assert batch.kind == BatchKind.PARTIAL

    def test_glob(self, tmp_path, frame):
        frame.iloc[:2].to_parquet(tmp_path / "part-0.parquet", index=False)
        frame.iloc[2:].to_parquet(tmp_path / "part-1.parquet", index=False)

        batch = read_batch(tmp_path / "part-*.parquet", BatchKind.FULL)
        assert sorted(batch.rows["name"]) == ["a", "b", "c"]

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            read_batch(tmp_path / "absent.csv", BatchKind.FULL)

    def test_glob_without_matches(self, tmp_path):
        with pytest.raises(ConfigurationError, match="No files found"):
            read_batch(tmp_path / "none-*.csv", BatchKind.FULL)

    def test_connection_closed_after_read(self, tmp_path, frame, monkeypatch):
        path = tmp_path / "tags.csv"
        frame.to_csv(path, index=False)

        closed = []

        class TrackingBackend:
            def __init__(self):
                self._con = ibis.duckdb.connect()

            def __getattr__(self, name):
                return getattr(self._con, name)

            def disconnect(self):
                closed.append(self._con)
                self._con.disconnect()

        def tracking_connect():
            return TrackingBackend()

        monkeypatch.setattr(
            batch_module, "ibis", SimpleNamespace(duckdb=SimpleNamespace(connect=tracking_connect))
        )

        batch = read_batch(path, BatchKind.FULL)

        assert len(batch) == 3
        assert len(closed) == 1
