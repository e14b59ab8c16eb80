"""Engine configuration.

Declarative configuration for one merge target: which attributes identify
an entity, which attributes are tracked for changes, and what happens to
entities that disappear from a full extract.

Configuration is validated on instantiation so that problems surface
before any row is processed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

import pandas as pd

from historian.lib.errors import ConfigurationError

logger = logging.getLogger(__name__)

__all__ = ["BatchKind", "DeletionPolicy", "EngineConfig", "ScopePredicate"]


class BatchKind(Enum):
    """How complete is the incoming snapshot?"""

    FULL = "full"  # Complete extract, absence means deletion
    PARTIAL = "partial"  # Windowed or watermark extract, absence means nothing


class DeletionPolicy(Enum):
    """What to do with entities missing from a FULL batch."""

    NONE = "none"  # Never infer deletions
    CLOSE = "close"  # Close history, delete the current-state row
    TOMBSTONE = "tombstone"  # Close history, flag the current-state row


@dataclass
class ScopePredicate:
    """Restricts which persisted rows are evaluated for MISSING.

    Rows outside the scope are never classified MISSING, so a run does not
    have to consider the whole table.

    Example:
        # Only entities touched in the last 7 days
        ScopePredicate(lookback=timedelta(days=7))

        # Only one region
        ScopePredicate(expression="region == 'EU'")
    """

    expression: Optional[str] = None  # pandas DataFrame.query expression
    lookback: Optional[timedelta] = None  # Relative to the run timestamp

    def __post_init__(self) -> None:
        if self.expression is None and self.lookback is None:
            raise ConfigurationError(
                "scope_predicate needs an expression, a lookback, or both",
                field="scope_predicate",
            )
        if self.lookback is not None and self.lookback <= timedelta(0):
            raise ConfigurationError(
                "scope_predicate.lookback must be positive",
                field="scope_predicate.lookback",
                value=self.lookback,
            )

    def apply(
        self,
        frame: pd.DataFrame,
        run_timestamp: datetime,
        timestamp_column: str,
    ) -> pd.DataFrame:
        """Return only the rows of frame that fall inside the scope.

        Args:
            frame: Persisted rows (history or current-state)
            run_timestamp: The run's logical instant
            timestamp_column: Column holding each row's last-touch time
        """
        if frame.empty:
            return frame

        scoped = frame
        if self.lookback is not None:
            touched = pd.to_datetime(scoped[timestamp_column], utc=True)
            cutoff = pd.Timestamp(run_timestamp) - self.lookback
            if cutoff.tzinfo is None:
                cutoff = cutoff.tz_localize("UTC")
            scoped = scoped[touched >= cutoff]

        if self.expression:
            scoped = scoped.query(self.expression)

        return scoped

    def to_dict(self) -> Dict[str, Any]:
        return {
            "expression": self.expression,
            "lookback_seconds": (
                self.lookback.total_seconds() if self.lookback is not None else None
            ),
        }


@dataclass
class EngineConfig:
    """Declarative configuration for one merge target.

    Example:
        config = EngineConfig(
            key_attributes=["tag_id", "user_id", "movie_id"],
            tracked_attributes=["tag", "tagged_at"],
            deletion_policy=DeletionPolicy.CLOSE,
            target="movielens.tags",
        )
    """

    # Identity
    key_attributes: List[str]  # What makes an entity unique
    tracked_attributes: List[str]  # What counts as a change

    # Behavior
    deletion_policy: DeletionPolicy = DeletionPolicy.NONE
    scope_predicate: Optional[ScopePredicate] = None
    strict: bool = False  # Abort the batch on any rejected row
    allow_key_overlap: bool = False

    # Targets
    target: str = "default"  # Logical name for locks and watermarks
    history_table: str = "history"
    current_table: str = "current_state"

    # Parallel classification
    workers: int = 1

    # Extra columns carried through without affecting the fingerprint
    passthrough_attributes: List[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        """Validate configuration on instantiation."""
        if isinstance(self.deletion_policy, str):
            self.deletion_policy = _coerce_policy(self.deletion_policy)

        errors = self._validate()
        if errors:
            raise ConfigurationError(
                "EngineConfig configuration errors",
                issues=errors,
                target=self.target,
                suggestion="Fix the configuration and try again.",
            )

    def _validate(self) -> List[str]:
        """Validate configuration and return list of errors."""
        errors = []

        if not self.key_attributes:
            errors.append(
                "key_attributes is required (what identifies an entity?)"
            )
        elif len(set(self.key_attributes)) != len(self.key_attributes):
            errors.append("key_attributes contains duplicate names")

        if not self.tracked_attributes:
            errors.append(
                "tracked_attributes is required (which columns count as a change?)"
            )
        elif len(set(self.tracked_attributes)) != len(self.tracked_attributes):
            errors.append("tracked_attributes contains duplicate names")

        overlap = set(self.key_attributes or []) & set(self.tracked_attributes or [])
        if overlap and not self.allow_key_overlap:
            errors.append(
                f"tracked_attributes overlaps key_attributes: {sorted(overlap)}. "
                "Set allow_key_overlap=True if this is intended."
            )

        reserved = set(self.reserved_columns)
        clashes = reserved & set(
            (self.key_attributes or [])
            + (self.tracked_attributes or [])
            + self.passthrough_attributes
        )
        if clashes:
            errors.append(f"Attribute names clash with engine columns: {sorted(clashes)}")

        if not isinstance(self.deletion_policy, DeletionPolicy):
            errors.append(f"deletion_policy must be a DeletionPolicy, got {self.deletion_policy!r}")

        if self.workers < 1:
            errors.append("workers must be at least 1")

        if not self.target:
            errors.append("target is required")

        if self.history_table == self.current_table:
            errors.append("history_table and current_table must differ")

        # Warnings (logged but don't fail)
        if self.scope_predicate is not None and self.deletion_policy == DeletionPolicy.NONE:
            logger.warning(
                "scope_predicate has no effect when deletion_policy is NONE "
                "(MISSING is never inferred)."
            )

        return errors

    @property
    def reserved_columns(self) -> List[str]:
        """Engine-owned column names that attributes may not use."""
        return [
            "surrogate_key",
            "fingerprint",
            "valid_from",
            "valid_to",
            "is_current",
            "close_reason",
            "run_id",
            "updated_at",
            "is_deleted",
        ]

    @property
    def payload_columns(self) -> List[str]:
        """Business columns persisted on every record, keys first."""
        seen: Dict[str, None] = {}
        for col in self.key_attributes + self.tracked_attributes + self.passthrough_attributes:
            seen.setdefault(col, None)
        return list(seen)

    @property
    def detects_missing(self) -> bool:
        return self.deletion_policy != DeletionPolicy.NONE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target": self.target,
            "key_attributes": list(self.key_attributes),
            "tracked_attributes": list(self.tracked_attributes),
            "passthrough_attributes": list(self.passthrough_attributes),
            "deletion_policy": self.deletion_policy.value,
            "scope_predicate": (
                self.scope_predicate.to_dict() if self.scope_predicate else None
            ),
            "strict": self.strict,
            "history_table": self.history_table,
            "current_table": self.current_table,
            "workers": self.workers,
        }


def _coerce_policy(value: str) -> DeletionPolicy:
    try:
        return DeletionPolicy(value.lower())
    except ValueError:
        raise ConfigurationError(
            f"Unknown deletion_policy '{value}'",
            field="deletion_policy",
            value=value,
            suggestion="Use one of: none, close, tombstone",
        ) from None
