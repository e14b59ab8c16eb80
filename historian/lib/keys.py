"""Surrogate keys and content fingerprints.

Both are hashes over an ordered concatenation of attribute values:

- values are rendered with a type tag so ``1``, ``"1"`` and ``True`` differ
- backslash and the ``|`` separator are escaped inside rendered values
- nulls render as the bare sentinel ``\\N``, which no escaped value can produce

The surrogate key uses MD5 over the key attributes, the same digest dbt's
``generate_surrogate_key`` uses. The fingerprint uses SHA-256 over the
tracked attributes. Nothing depends on process state, so keys are stable
across runs and restarts.
"""

from __future__ import annotations

import hashlib
import logging
import math
from dataclasses import dataclass, field
from datetime import date, datetime, time
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Sequence, Tuple

import numpy as np
import pandas as pd

from historian.lib.errors import MissingKeyAttribute

if TYPE_CHECKING:
    from historian.lib.batch import SnapshotBatch
    from historian.lib.config import BatchKind, EngineConfig

logger = logging.getLogger(__name__)

__all__ = [
    "KeyedBatch",
    "NULL_SENTINEL",
    "SEPARATOR",
    "compute_keys",
    "fingerprint",
    "key_batch",
    "render_value",
    "surrogate_key",
]

SEPARATOR = "|"
NULL_SENTINEL = "\\N"


def _is_null(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (str, bytes)):
        return False
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        # Containers: pd.isna returns an array
        return False


def _escape(text: str) -> str:
    return text.replace("\\", "\\\\").replace(SEPARATOR, "\\" + SEPARATOR)


def render_value(value: Any) -> str:
    """Render one value as its tagged, escaped hash input.

    Example:
        >>> render_value(None)
        '\\\\N'
        >>> render_value(3.0)
        'i:3'
        >>> render_value("a|b")
        's:a\\\\|b'
    """
    if _is_null(value):
        return NULL_SENTINEL

    if isinstance(value, (bool, np.bool_)):
        rendered = "b:true" if value else "b:false"
    elif isinstance(value, (int, np.integer)):
        rendered = f"i:{int(value)}"
    elif isinstance(value, (float, np.floating)):
        number = float(value)
        if math.isfinite(number) and number.is_integer():
            # pandas upcasts int columns containing nulls to float
            rendered = f"i:{int(number)}"
        else:
            rendered = f"f:{number!r}"
    elif isinstance(value, Decimal):
        if value == value.to_integral_value():
            rendered = f"i:{int(value)}"
        else:
            rendered = f"f:{float(value)!r}"
    elif isinstance(value, (pd.Timestamp, datetime)):
        rendered = f"t:{pd.Timestamp(value).isoformat()}"
    elif isinstance(value, date):
        rendered = f"d:{value.isoformat()}"
    elif isinstance(value, time):
        rendered = f"h:{value.isoformat()}"
    elif isinstance(value, bytes):
        rendered = f"x:{value.hex()}"
    else:
        rendered = f"s:{value}"

    return _escape(rendered)


def _digest(values: Sequence[Any], algorithm: str) -> str:
    payload = SEPARATOR.join(render_value(v) for v in values)
    return hashlib.new(algorithm, payload.encode("utf-8")).hexdigest()


def surrogate_key(row: Mapping[str, Any], key_attributes: Sequence[str]) -> str:
    """Hash the key attributes of a row.

    Raises:
        MissingKeyAttribute: If a key attribute is absent or null
    """
    values = []
    for attr in key_attributes:
        if attr not in row or _is_null(row[attr]):
            raise MissingKeyAttribute(attr, row=dict(row))
        values.append(row[attr])
    return _digest(values, "md5")


def fingerprint(row: Mapping[str, Any], tracked_attributes: Sequence[str]) -> str:
    """Hash the tracked attributes of a row.

    Absent tracked attributes hash the same as nulls.
    """
    return _digest([row.get(attr) for attr in tracked_attributes], "sha256")


def compute_keys(row: Mapping[str, Any], config: "EngineConfig") -> Tuple[str, str]:
    """Return ``(surrogate_key, fingerprint)`` for one row."""
    return (
        surrogate_key(row, config.key_attributes),
        fingerprint(row, config.tracked_attributes),
    )


@dataclass
class KeyedBatch:
    """A snapshot with surrogate keys and fingerprints attached.

    ``frame`` holds accepted rows with ``surrogate_key`` and ``fingerprint``
    columns; ``rejected`` holds one MissingKeyAttribute per refused row.
    """

    frame: pd.DataFrame
    kind: "BatchKind"
    rejected: List[MissingKeyAttribute] = field(default_factory=list)

    @property
    def rejected_count(self) -> int:
        return len(self.rejected)

    def rejected_rows(self) -> List[Dict[str, Any]]:
        """Rejected rows for reporting."""
        return [
            {"row_index": err.row_index, "attribute": err.attribute, "row": err.row}
            for err in self.rejected
        ]


def key_batch(batch: "SnapshotBatch", config: "EngineConfig") -> KeyedBatch:
    """Attach surrogate keys and fingerprints to every row of a batch.

    Rows missing a key attribute are rejected rather than raising, so that
    one bad row does not hide the rest of the batch. The caller decides
    whether rejections abort the run.

    Args:
        batch: Incoming snapshot
        config: Engine configuration

    Returns:
        KeyedBatch with accepted rows and rejections
    """
    rows = batch.rows
    output_columns = config.payload_columns + ["surrogate_key", "fingerprint"]

    if rows.empty:
        return KeyedBatch(frame=pd.DataFrame(columns=output_columns), kind=batch.kind)

    absent_keys = [c for c in config.key_attributes if c not in rows.columns]
    rejected: List[MissingKeyAttribute] = []

    if absent_keys:
        logger.warning(
            "Key attribute(s) %s absent from batch; rejecting all %d rows",
            absent_keys,
            len(rows),
        )
        for idx, record in zip(rows.index, rows.to_dict(orient="records")):
            rejected.append(
                MissingKeyAttribute(absent_keys[0], row=record, row_index=idx)
            )
        return KeyedBatch(
            frame=pd.DataFrame(columns=output_columns),
            kind=batch.kind,
            rejected=rejected,
        )

    # Absent tracked/passthrough columns become nulls
    frame = rows.copy()
    for col in config.payload_columns:
        if col not in frame.columns:
            frame[col] = None
    frame = frame[config.payload_columns]

    accepted_positions = []
    surrogate_keys = []
    fingerprints = []
    records = frame.to_dict(orient="records")

    for position, (idx, record) in enumerate(zip(frame.index, records)):
        try:
            sk = surrogate_key(record, config.key_attributes)
        except MissingKeyAttribute as e:
            e.row_index = idx
            e.details["row_index"] = idx
            rejected.append(e)
            continue
        accepted_positions.append(position)
        surrogate_keys.append(sk)
        fingerprints.append(fingerprint(record, config.tracked_attributes))

    # Positional, so duplicate index labels select each row once
    keyed = frame.iloc[accepted_positions].reset_index(drop=True)
    keyed["surrogate_key"] = surrogate_keys
    keyed["fingerprint"] = fingerprints

    if rejected:
        logger.warning(
            "Rejected %d of %d rows with missing key attributes",
            len(rejected),
            len(rows),
        )

    return KeyedBatch(frame=keyed, kind=batch.kind, rejected=rejected)
