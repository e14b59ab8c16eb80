"""Run watermark persistence.

A run watermark is the timestamp of the last successful run against a
target. The coordinator refuses run timestamps that would move a target
backwards in time.

Watermarks are stored as JSON files in a state directory, one per target
and store location, so two stores never share a watermark for the same
target name.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import pandas as pd

logger = logging.getLogger(__name__)

__all__ = [
    "delete_watermark",
    "get_watermark",
    "get_watermark_record",
    "list_watermarks",
    "save_watermark",
]

# Default state directory - can be overridden via environment variable
DEFAULT_STATE_DIR = ".state"

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


def _get_state_dir() -> Path:
    state_dir = os.environ.get("HISTORIAN_STATE_DIR", DEFAULT_STATE_DIR)
    return Path(state_dir)


def _get_watermark_path(target: str, store: Optional[str] = None) -> Path:
    safe = _UNSAFE_CHARS.sub("_", target)
    if store:
        digest = hashlib.sha256(store.encode("utf-8")).hexdigest()[:12]
        safe = f"{safe}_{digest}"
    return _get_state_dir() / f"{safe}_watermark.json"


def _to_utc(value: datetime) -> datetime:
    ts = pd.Timestamp(value)
    if ts.tzinfo is None:
        ts = ts.tz_localize("UTC")
    return ts.tz_convert("UTC").to_pydatetime()


def get_watermark_record(target: str, store: Optional[str] = None) -> Optional[Dict[str, Any]]:
    """Raw watermark record for a target, or None if there is none."""
    path = _get_watermark_path(target, store)

    if not path.exists():
        logger.debug("No watermark found for %s", target)
        return None

    try:
        data = json.loads(path.read_text())
    except json.JSONDecodeError as e:
        logger.warning("Invalid watermark file for %s: %s", target, e)
        return None
    return data


def get_watermark(target: str, store: Optional[str] = None) -> Optional[datetime]:
    """Get the run timestamp of the last successful run.

    Args:
        target: Merge target name
        store: Store location (see MergeStore.location)

    Returns:
        Last run timestamp (UTC), or None if no watermark exists

    Example:
        >>> last_run = get_watermark("movielens.tags")
        >>> if last_run:
        ...     print(f"Last merged at {last_run.isoformat()}")
    """
    data = get_watermark_record(target, store)
    if not data or not data.get("last_run_timestamp"):
        return None

    try:
        value = datetime.fromisoformat(data["last_run_timestamp"])
    except ValueError as e:
        logger.warning("Invalid watermark value for %s: %s", target, e)
        return None

    logger.debug(
        "Found watermark for %s: %s (run %s)",
        target,
        value.isoformat(),
        data.get("run_id", "unknown"),
    )
    return _to_utc(value)


def save_watermark(
    target: str,
    run_timestamp: datetime,
    run_id: Optional[str] = None,
    store: Optional[str] = None,
) -> None:
    """Save the watermark after a successful run.

    Args:
        target: Merge target name
        run_timestamp: The run's logical instant
        run_id: Identifier of the run
        store: Store location (see MergeStore.location)

    Example:
        >>> save_watermark("movielens.tags", datetime(2025, 1, 15, tzinfo=timezone.utc))
    """
    state_dir = _get_state_dir()
    state_dir.mkdir(parents=True, exist_ok=True)

    path = _get_watermark_path(target, store)
    data = {
        "target": target,
        "store": store,
        "last_run_timestamp": _to_utc(run_timestamp).isoformat(),
        "run_id": run_id,
        "updated_at": datetime.now(timezone.utc).isoformat(),
    }

    path.write_text(json.dumps(data, indent=2))
    logger.info("Saved watermark for %s: %s", target, data["last_run_timestamp"])


def delete_watermark(target: str, store: Optional[str] = None) -> bool:
    """Delete a target's watermark.

    Returns:
        True if the watermark was deleted, False if it didn't exist
    """
    path = _get_watermark_path(target, store)

    if path.exists():
        path.unlink()
        logger.info("Deleted watermark for %s", target)
        return True

    return False


def list_watermarks() -> Dict[str, Dict[str, Any]]:
    """List all stored watermarks.

    Keyed by target name, or by ``target@store`` for store-scoped watermarks.
    """
    state_dir = _get_state_dir()

    if not state_dir.exists():
        return {}

    watermarks = {}
    for path in sorted(state_dir.glob("*_watermark.json")):
        try:
            data = json.loads(path.read_text())
        except json.JSONDecodeError as e:
            logger.warning("Invalid watermark file %s: %s", path, e)
            continue
        key = data.get("target", path.stem)
        if data.get("store"):
            key = f"{key}@{data['store']}"
        watermarks[key] = data

    return watermarks
