"""Structured exception hierarchy for the merge engine.

Provides specific exception types for the engine's failure modes,
with rich context for debugging and troubleshooting.

Per-row errors (MissingKeyAttribute) are collected on the run result;
structural errors (DuplicateKeyInBatch, InvariantViolation) abort the run.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

__all__ = [
    "HistorianError",
    "ConfigurationError",
    "MissingKeyAttribute",
    "DuplicateKeyInBatch",
    "InvariantViolation",
    "TransientStoreError",
    "ConcurrentWriteError",
    "RunCancelled",
]


class HistorianError(Exception):
    """Base exception for all engine errors.

    Provides structured error information for debugging.
    """

    def __init__(
        self,
        message: str,
        *,
        target: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        self.message = message
        self.target = target
        self.details = details or {}
        self.suggestion = suggestion

        parts = [message]

        if target:
            parts.insert(0, f"[{target}]")

        if details:
            detail_lines = [f"  {k}: {v}" for k, v in details.items()]
            parts.append("\nDetails:")
            parts.extend(detail_lines)

        if suggestion:
            parts.append(f"\nSuggestion: {suggestion}")

        super().__init__("\n".join(parts) if len(parts) > 1 else message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for structured logging."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "target": self.target,
            "details": self.details,
            "suggestion": self.suggestion,
        }


class ConfigurationError(HistorianError):
    """Error in engine configuration.

    Raised at startup, before any row is processed.
    """

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        value: Any = None,
        issues: Optional[List[str]] = None,
        **kwargs: Any,
    ) -> None:
        self.field = field
        self.value = value
        self.issues = issues or []

        details = kwargs.pop("details", {})
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)

        if issues:
            issue_lines = "\n".join(f"  - {issue}" for issue in issues)
            message = f"{message}\n\nIssues found:\n{issue_lines}"

        super().__init__(message, details=details, **kwargs)


class MissingKeyAttribute(HistorianError):
    """A row lacks a configured key attribute (absent or null).

    The row is rejected; the batch only aborts in strict mode.
    """

    def __init__(
        self,
        attribute: str,
        *,
        row: Optional[Dict[str, Any]] = None,
        row_index: Any = None,
        rejected: Optional[List["MissingKeyAttribute"]] = None,
        **kwargs: Any,
    ) -> None:
        self.attribute = attribute
        self.row = row
        self.row_index = row_index
        self.rejected = list(rejected or [])

        details = kwargs.pop("details", {})
        details["attribute"] = attribute
        if row_index is not None:
            details["row_index"] = row_index

        message = f"Row is missing key attribute '{attribute}'"
        if self.rejected:
            # Strict mode reports every refused row in one error
            details["rejected_count"] = len(self.rejected)
            details["rejected_rows"] = [
                {"row_index": err.row_index, "attribute": err.attribute} for err in self.rejected
            ]
            issue_lines = "\n".join(
                f"  - row {err.row_index}: missing '{err.attribute}'" for err in self.rejected[:20]
            )
            message = (
                f"{len(self.rejected)} row(s) missing key attributes\n\nIssues found:\n{issue_lines}"
            )

        suggestion = kwargs.pop("suggestion", None) or (
            "Every incoming row must carry all key_attributes with non-null values. "
            "Check the upstream extract or staging model."
        )

        super().__init__(
            message,
            details=details,
            suggestion=suggestion,
            **kwargs,
        )


class DuplicateKeyInBatch(HistorianError):
    """The same surrogate key appears more than once in one batch."""

    def __init__(
        self,
        message: str,
        *,
        keys: Optional[Iterable[str]] = None,
        **kwargs: Any,
    ) -> None:
        self.keys = sorted(keys or [])

        details = kwargs.pop("details", {})
        if self.keys:
            details["duplicate_count"] = len(self.keys)
            details["sample_keys"] = ", ".join(self.keys[:5])

        suggestion = kwargs.pop("suggestion", None) or (
            "Deduplicate the snapshot upstream; the engine will not pick a winner."
        )

        super().__init__(message, details=details, suggestion=suggestion, **kwargs)


class InvariantViolation(HistorianError):
    """A persisted-state invariant does not hold.

    Never auto-healed: surfaced for manual or compensating repair.
    """

    def __init__(
        self,
        message: str,
        *,
        keys: Optional[Iterable[str]] = None,
        issues: Optional[List[str]] = None,
        **kwargs: Any,
    ) -> None:
        self.keys = sorted(keys or [])
        self.issues = issues or []

        details = kwargs.pop("details", {})
        if self.keys:
            details["affected_keys"] = len(self.keys)
            details["sample_keys"] = ", ".join(self.keys[:5])

        if self.issues:
            issue_lines = "\n".join(f"  - {issue}" for issue in self.issues[:20])
            message = f"{message}\n\nIssues found:\n{issue_lines}"

        super().__init__(message, details=details, **kwargs)


class TransientStoreError(HistorianError):
    """The underlying store is temporarily unavailable.

    Retried with bounded backoff by the run coordinator.
    """

    def __init__(
        self,
        message: str,
        *,
        operation: Optional[str] = None,
        cause: Optional[BaseException] = None,
        **kwargs: Any,
    ) -> None:
        self.operation = operation
        self.cause = cause

        details = kwargs.pop("details", {})
        if operation:
            details["operation"] = operation
        if cause:
            details["cause"] = str(cause)
            details["cause_type"] = type(cause).__name__

        suggestion = kwargs.pop("suggestion", None) or (
            "Check that the store is reachable. Writes are idempotent under the "
            "same run timestamp, so the run can be retried safely."
        )

        super().__init__(message, details=details, suggestion=suggestion, **kwargs)


class ConcurrentWriteError(HistorianError):
    """Another run holds a claim on overlapping keys of the same target."""

    def __init__(
        self,
        message: str,
        *,
        holder: Optional[str] = None,
        keys: Optional[Iterable[str]] = None,
        **kwargs: Any,
    ) -> None:
        self.holder = holder
        self.keys = sorted(keys or [])

        details = kwargs.pop("details", {})
        if holder:
            details["holder"] = holder
        if self.keys:
            details["conflicting_keys"] = len(self.keys)

        super().__init__(message, details=details, **kwargs)


class RunCancelled(HistorianError):
    """The run was cancelled before its writes were committed."""

    pass
