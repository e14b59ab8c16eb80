"""Snapshot differ.

Compares a keyed snapshot against the current persisted state and
classifies every surrogate key found on either side:

- NEW: in the batch, not persisted
- CHANGED: on both sides, fingerprints differ
- UNCHANGED: on both sides, fingerprints equal
- MISSING: persisted, absent from a FULL batch (only when deletions are on)

Classification is read-only and independent per key, so it can be split
across workers by surrogate-key hash range.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Tuple

import pandas as pd

from historian.lib.config import BatchKind, ScopePredicate
from historian.lib.errors import DuplicateKeyInBatch, InvariantViolation
from historian.lib.keys import KeyedBatch

logger = logging.getLogger(__name__)

__all__ = ["ChangeType", "DiffResult", "diff_snapshot", "partition_by_key_range"]

# Hex digits of the surrogate key used for range partitioning
_RANGE_DIGITS = 4
_RANGE_SIZE = 16 ** _RANGE_DIGITS


class ChangeType(Enum):
    """Classification of one surrogate key."""

    NEW = "new"
    CHANGED = "changed"
    UNCHANGED = "unchanged"
    MISSING = "missing"


@dataclass
class DiffResult:
    """Per-key classification of one batch against persisted state.

    ``new``, ``changed`` and ``unchanged`` hold batch rows; ``missing`` holds
    the persisted rows that disappeared. ``prior`` is the persisted current
    set the batch was compared against, indexed by surrogate key.
    """

    kind: BatchKind
    new: pd.DataFrame
    changed: pd.DataFrame
    unchanged: pd.DataFrame
    missing: pd.DataFrame
    prior: pd.DataFrame = field(default_factory=pd.DataFrame)

    def keys(self, change_type: ChangeType) -> List[str]:
        frame = {
            ChangeType.NEW: self.new,
            ChangeType.CHANGED: self.changed,
            ChangeType.UNCHANGED: self.unchanged,
            ChangeType.MISSING: self.missing,
        }[change_type]
        return list(frame["surrogate_key"]) if not frame.empty else []

    def classification(self) -> Dict[str, ChangeType]:
        """Map every classified surrogate key to its ChangeType."""
        result: Dict[str, ChangeType] = {}
        for change_type in ChangeType:
            for key in self.keys(change_type):
                result[key] = change_type
        return result

    def counts(self) -> Dict[str, int]:
        return {
            "new": len(self.new),
            "changed": len(self.changed),
            "unchanged": len(self.unchanged),
            "missing": len(self.missing),
        }

    @property
    def has_writes(self) -> bool:
        return not (self.new.empty and self.changed.empty and self.missing.empty)

    def __str__(self) -> str:
        c = self.counts()
        return (
            f"DiffResult(new={c['new']}, changed={c['changed']}, "
            f"unchanged={c['unchanged']}, missing={c['missing']})"
        )


def partition_by_key_range(frame: pd.DataFrame, partitions: int) -> List[pd.DataFrame]:
    """Split a frame into contiguous surrogate-key hash ranges.

    Every key falls in exactly one partition, and a key lands in the same
    partition regardless of which frame it is in.
    """
    if partitions <= 1:
        return [frame]
    if frame.empty:
        return [frame] * partitions

    prefix = frame["surrogate_key"].str.slice(0, _RANGE_DIGITS).map(lambda h: int(h, 16))
    bucket = prefix * partitions // _RANGE_SIZE
    return [frame[bucket == i] for i in range(partitions)]


def _check_batch_duplicates(frame: pd.DataFrame) -> None:
    dupes = frame.loc[frame["surrogate_key"].duplicated(keep=False), "surrogate_key"]
    if not dupes.empty:
        keys = set(dupes)
        raise DuplicateKeyInBatch(
            f"Batch contains {len(keys)} surrogate key(s) more than once",
            keys=keys,
        )


def _check_prior_duplicates(prior: pd.DataFrame) -> None:
    dupes = prior.loc[prior["surrogate_key"].duplicated(keep=False), "surrogate_key"]
    if not dupes.empty:
        keys = set(dupes)
        raise InvariantViolation(
            f"{len(keys)} surrogate key(s) have more than one current record",
            keys=keys,
            suggestion="Repair the persisted relation before running again.",
        )


def _classify_partition(
    batch_part: pd.DataFrame,
    prior_part: pd.DataFrame,
    missing_candidates: Optional[pd.Index],
) -> Tuple[pd.DataFrame, pd.DataFrame, pd.DataFrame, pd.DataFrame]:
    """Classify one key range. Returns (new, changed, unchanged, missing)."""
    prior_fp = prior_part.set_index("surrogate_key")["fingerprint"]

    in_prior = batch_part["surrogate_key"].isin(prior_fp.index)
    new = batch_part[~in_prior]

    matched = batch_part[in_prior]
    prior_for_matched = matched["surrogate_key"].map(prior_fp)
    same = matched["fingerprint"] == prior_for_matched
    changed = matched[~same]
    unchanged = matched[same]

    if missing_candidates is None:
        missing = prior_part.iloc[0:0]
    else:
        absent = ~prior_part["surrogate_key"].isin(batch_part["surrogate_key"])
        candidate = prior_part["surrogate_key"].isin(missing_candidates)
        missing = prior_part[absent & candidate]

    return new, changed, unchanged, missing


def diff_snapshot(
    keyed: KeyedBatch,
    prior: pd.DataFrame,
    *,
    detect_missing: bool = False,
    scope: Optional[ScopePredicate] = None,
    run_timestamp: Optional[datetime] = None,
    timestamp_column: str = "valid_from",
    workers: int = 1,
) -> DiffResult:
    """Classify a keyed batch against the persisted current set.

    Args:
        keyed: Batch with surrogate keys and fingerprints
        prior: Persisted current rows (needs surrogate_key and fingerprint)
        detect_missing: Whether the deletion policy asks for MISSING at all
        scope: Optional predicate limiting which prior rows may be MISSING
        run_timestamp: Run instant, needed when scope has a lookback
        timestamp_column: Prior column the scope lookback compares against
        workers: Number of parallel classification workers

    Returns:
        DiffResult with one classification per surrogate key

    Raises:
        DuplicateKeyInBatch: If the batch holds a surrogate key twice
        InvariantViolation: If prior holds two current rows for one key
    """
    batch_frame = keyed.frame
    if prior is None or prior.empty:
        prior = pd.DataFrame(columns=list(batch_frame.columns))

    _check_batch_duplicates(batch_frame)
    _check_prior_duplicates(prior)

    # MISSING is never inferred from a partial extract
    missing_candidates: Optional[pd.Index] = None
    if detect_missing and keyed.kind == BatchKind.FULL:
        candidates = prior
        if scope is not None:
            if scope.lookback is not None and run_timestamp is None:
                raise ValueError("run_timestamp is required for a scope lookback")
            candidates = scope.apply(prior, run_timestamp, timestamp_column)
        missing_candidates = pd.Index(candidates["surrogate_key"])
    elif detect_missing:
        logger.debug("PARTIAL batch: skipping MISSING detection")

    batch_parts = partition_by_key_range(batch_frame, workers)
    prior_parts = partition_by_key_range(prior, workers)

    if workers > 1:
        with ThreadPoolExecutor(max_workers=workers) as pool:
            results = list(
                pool.map(
                    lambda parts: _classify_partition(parts[0], parts[1], missing_candidates),
                    zip(batch_parts, prior_parts),
                )
            )
    else:
        results = [_classify_partition(batch_parts[0], prior_parts[0], missing_candidates)]

    def _concat(frames: List[pd.DataFrame], template: pd.DataFrame) -> pd.DataFrame:
        non_empty = [f for f in frames if not f.empty]
        if not non_empty:
            return template.iloc[0:0].reset_index(drop=True)
        return pd.concat(non_empty).reset_index(drop=True)

    diff = DiffResult(
        kind=keyed.kind,
        new=_concat([r[0] for r in results], batch_frame),
        changed=_concat([r[1] for r in results], batch_frame),
        unchanged=_concat([r[2] for r in results], batch_frame),
        missing=_concat([r[3] for r in results], prior),
        prior=prior.set_index("surrogate_key", drop=False),
    )

    logger.info("Classified %d batch rows: %s", len(batch_frame), diff)
    return diff
