"""Tests for the snapshot differ."""

from datetime import timedelta

import pandas as pd
import pytest

from historian.lib.config import BatchKind, EngineConfig, ScopePredicate
from historian.lib.differ import ChangeType, diff_snapshot, partition_by_key_range
from historian.lib.errors import DuplicateKeyInBatch, InvariantViolation
from historian.lib.keys import key_batch, surrogate_key
from tests.conftest import T2, entity, make_batch


def keyed(rows, config, kind=BatchKind.FULL):
    return key_batch(make_batch(rows, kind), config)


def prior_of(rows, config):
    """Persisted current rows as the executors would read them."""
    return keyed(rows, config).frame


def sk(entity_id):
    return surrogate_key({"entity_id": entity_id}, ["entity_id"])


class TestClassification:
    """Tests for NEW / CHANGED / UNCHANGED / MISSING."""

    def test_everything_new_against_empty_prior(self, engine_config):
        diff = diff_snapshot(keyed([entity(1, "A"), entity(2, "B")], engine_config), pd.DataFrame())

        assert diff.counts() == {"new": 2, "changed": 0, "unchanged": 0, "missing": 0}
        assert diff.has_writes

    def test_unchanged_and_new(self, engine_config):
        prior = prior_of([entity(1, "A")], engine_config)
        diff = diff_snapshot(keyed([entity(1, "A"), entity(2, "B")], engine_config), prior)

        classification = diff.classification()
        assert classification[sk(1)] == ChangeType.UNCHANGED
        assert classification[sk(2)] == ChangeType.NEW

    def test_changed(self, engine_config):
        prior = prior_of([entity(1, "A")], engine_config)
        diff = diff_snapshot(keyed([entity(1, "A", status="closed")], engine_config), prior)

        assert diff.keys(ChangeType.CHANGED) == [sk(1)]
        assert diff.changed.loc[0, "status"] == "closed"

    def test_untracked_change_is_unchanged(self):
        config = EngineConfig(
            key_attributes=["entity_id"],
            tracked_attributes=["name"],
            passthrough_attributes=["loaded_at"],
        )
        prior = prior_of([{"entity_id": 1, "name": "A", "loaded_at": "t1"}], config)
        diff = diff_snapshot(keyed([{"entity_id": 1, "name": "A", "loaded_at": "t2"}], config), prior)

        assert diff.keys(ChangeType.UNCHANGED) == [sk(1)]
        assert not diff.has_writes

    def test_missing_under_full(self, engine_config):
        prior = prior_of([entity(1, "A"), entity(2, "B")], engine_config)
        diff = diff_snapshot(
            keyed([entity(1, "A")], engine_config), prior, detect_missing=True
        )

        assert diff.keys(ChangeType.MISSING) == [sk(2)]
        assert diff.missing.loc[0, "name"] == "B"

    def test_no_missing_under_partial(self, engine_config):
        prior = prior_of([entity(1, "A"), entity(2, "B")], engine_config)
        diff = diff_snapshot(
            keyed([entity(1, "A")], engine_config, BatchKind.PARTIAL), prior, detect_missing=True
        )

        assert diff.missing.empty
        assert diff.keys(ChangeType.UNCHANGED) == [sk(1)]

    def test_no_missing_without_detection(self, engine_config):
        prior = prior_of([entity(1, "A"), entity(2, "B")], engine_config)
        diff = diff_snapshot(keyed([entity(1, "A")], engine_config), prior, detect_missing=False)

        assert diff.missing.empty

    def test_every_key_classified_once(self, engine_config):
        prior = prior_of([entity(1, "A"), entity(2, "B"), entity(3, "C")], engine_config)
        batch = [entity(1, "A"), entity(2, "B2"), entity(4, "D")]
        diff = diff_snapshot(keyed(batch, engine_config), prior, detect_missing=True)

        classification = diff.classification()
        assert classification == {
            sk(1): ChangeType.UNCHANGED,
            sk(2): ChangeType.CHANGED,
            sk(3): ChangeType.MISSING,
            sk(4): ChangeType.NEW,
        }
        assert sum(diff.counts().values()) == 4

    def test_prior_is_indexed_by_key(self, engine_config):
        prior = prior_of([entity(1, "A")], engine_config)
        diff = diff_snapshot(keyed([entity(1, "B")], engine_config), prior)

        assert diff.prior.loc[sk(1), "name"] == "A"


class TestStructuralErrors:
    """Tests for errors that abort classification."""

    def test_duplicate_key_in_batch(self, engine_config):
        batch = keyed([entity(1, "A"), entity(1, "A again"), entity(2, "B")], engine_config)

        with pytest.raises(DuplicateKeyInBatch) as exc_info:
            diff_snapshot(batch, pd.DataFrame())

        assert exc_info.value.keys == [sk(1)]

    def test_duplicate_current_rows_in_prior(self, engine_config):
        prior = pd.concat([prior_of([entity(1, "A")], engine_config)] * 2, ignore_index=True)

        with pytest.raises(InvariantViolation):
            diff_snapshot(keyed([entity(1, "A")], engine_config), prior)


class TestScopePredicate:
    """Tests for restricting MISSING evaluation."""

    @pytest.fixture
    def regional_config(self):
        return EngineConfig(
            key_attributes=["entity_id"],
            tracked_attributes=["name"],
            passthrough_attributes=["region"],
            deletion_policy="close",
        )

    def test_expression_limits_missing(self, regional_config):
        prior = prior_of(
            [
                {"entity_id": 1, "name": "A", "region": "EU"},
                {"entity_id": 2, "name": "B", "region": "US"},
                {"entity_id": 3, "name": "C", "region": "EU"},
            ],
            regional_config,
        )
        batch = keyed([{"entity_id": 3, "name": "C", "region": "EU"}], regional_config)

        diff = diff_snapshot(
            batch,
            prior,
            detect_missing=True,
            scope=ScopePredicate(expression="region == 'EU'"),
        )

        assert diff.keys(ChangeType.MISSING) == [sk(1)]

    def test_lookback_limits_missing(self, regional_config):
        prior = prior_of(
            [
                {"entity_id": 1, "name": "A", "region": "EU"},
                {"entity_id": 2, "name": "B", "region": "US"},
            ],
            regional_config,
        )
        prior["valid_from"] = [
            pd.Timestamp(T2) - timedelta(days=30),
            pd.Timestamp(T2) - timedelta(days=1),
        ]
        batch = keyed([], regional_config)

        diff = diff_snapshot(
            batch,
            prior,
            detect_missing=True,
            scope=ScopePredicate(lookback=timedelta(days=7)),
            run_timestamp=T2,
        )

        assert diff.keys(ChangeType.MISSING) == [sk(2)]

    def test_lookback_needs_run_timestamp(self, regional_config):
        prior = prior_of([{"entity_id": 1, "name": "A", "region": "EU"}], regional_config)
        prior["valid_from"] = [pd.Timestamp(T2)]

        with pytest.raises(ValueError, match="run_timestamp"):
            diff_snapshot(
                keyed([], regional_config),
                prior,
                detect_missing=True,
                scope=ScopePredicate(lookback=timedelta(days=7)),
            )


class TestParallelClassification:
    """Tests for hash-range partitioned classification."""

    def test_partitions_cover_every_key_once(self, engine_config):
        frame = keyed([entity(i, f"E{i}") for i in range(200)], engine_config).frame
        parts = partition_by_key_range(frame, 4)

        assert len(parts) == 4
        assert sum(len(p) for p in parts) == 200
        combined = pd.concat(parts)["surrogate_key"]
        assert combined.is_unique
        assert set(combined) == set(frame["surrogate_key"])

    def test_partitions_of_empty_frame(self, engine_config):
        frame = keyed([], engine_config).frame
        assert len(partition_by_key_range(frame, 3)) == 3

    def test_workers_match_single_threaded(self, engine_config):
        prior = prior_of([entity(i, f"E{i}") for i in range(100)], engine_config)
        batch_rows = [entity(i, f"E{i}" if i % 3 else f"changed{i}") for i in range(20, 150)]

        single = diff_snapshot(keyed(batch_rows, engine_config), prior, detect_missing=True)
        parallel = diff_snapshot(
            keyed(batch_rows, engine_config), prior, detect_missing=True, workers=4
        )

        assert single.classification() == parallel.classification()
        assert single.counts() == {"new": 50, "changed": 27, "unchanged": 53, "missing": 20}
