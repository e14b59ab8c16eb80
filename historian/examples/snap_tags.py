"""
Example Target: MovieLens Tag Snapshots
=======================================
Demonstrates SCD Type 2 history plus a current-state table for user tags.

This example shows:
- A composite business key (tag_id, user_id, movie_id)
- Two FULL snapshots a day apart: one tag edited, one removed, one added
- DeletionPolicy.CLOSE: removed tags close their history and leave the
  current-state table

Setup:
    python -c "from historian.examples.snap_tags import create_sample_data; create_sample_data()"

Run:
    python -c "from historian.examples.snap_tags import run; print(run())"

Output columns in history:
    - surrogate_key: MD5 over tag_id, user_id, movie_id
    - tag_id, user_id, movie_id: Business key
    - tag, tagged_at: Tracked attributes
    - valid_from / valid_to: Validity interval (valid_to NULL if current)
    - is_current, close_reason, run_id
"""

import csv
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List

from historian.lib.batch import read_batch
from historian.lib.config import BatchKind, DeletionPolicy, EngineConfig
from historian.lib.runner import RunCoordinator
from historian.lib.storage import MergeStore, get_store

SAMPLE_DIR = Path(__file__).parent / "sample_data"

# ============================================
# TARGET
# ============================================

config = EngineConfig(
    key_attributes=["tag_id", "user_id", "movie_id"],
    tracked_attributes=["tag", "tagged_at"],
    deletion_policy=DeletionPolicy.CLOSE,
    target="movielens.tags",
    history_table="snap_tags_history",
    current_table="snap_tags",
)

SNAPSHOT_DATES = ["2025-01-14", "2025-01-15"]


def create_sample_data() -> Path:
    """Write two daily tag snapshots.

    Between the days, tag 2 is re-worded, tag 3 is removed and tag 4 appears.
    """
    SAMPLE_DIR.mkdir(parents=True, exist_ok=True)

    header = ["tag_id", "user_id", "movie_id", "tag", "tagged_at"]
    day_one = [
        [1, 2, 60756, "funny", 1445714994],
        [2, 2, 60756, "Highly quotable", 1445714996],
        [3, 2, 89774, "Boxing story", 1445715207],
    ]
    day_two = [
        [1, 2, 60756, "funny", 1445714994],
        [2, 2, 60756, "highly quotable", 1445801396],
        [4, 7, 48516, "way too long", 1445801400],
    ]

    for run_date, rows in zip(SNAPSHOT_DATES, (day_one, day_two)):
        with open(SAMPLE_DIR / f"tags_{run_date}.csv", "w", newline="") as f:
            writer = csv.writer(f)
            writer.writerow(header)
            writer.writerows(rows)

    print(f"Created sample data in {SAMPLE_DIR}")
    return SAMPLE_DIR


def run(store: MergeStore = None) -> List[Dict[str, Any]]:
    """Merge both snapshots in order and return the run results."""
    store = store or get_store("memory")
    coordinator = RunCoordinator(config, store, track_watermark=False)

    results = []
    for run_date in SNAPSHOT_DATES:
        batch = read_batch(SAMPLE_DIR / f"tags_{run_date}.csv", BatchKind.FULL)
        run_ts = datetime.fromisoformat(run_date).replace(tzinfo=timezone.utc)
        results.append(coordinator.run(batch, run_timestamp=run_ts).to_dict())
    return results


if __name__ == "__main__":
    create_sample_data()
    for result in run():
        print(result)
