"""Retry utilities for store operations.

Store reads and writes are retried with bounded exponential backoff when
the store reports a transient failure. Writes are idempotent under a fixed
run timestamp, so a retried write cannot duplicate records.

Implementation: uses the tenacity library.
"""

from __future__ import annotations

import logging
from functools import wraps
from typing import Any, Callable, Optional, Tuple, Type, TypeVar

import tenacity
from tenacity.wait import wait_base

from historian.lib.errors import TransientStoreError

logger = logging.getLogger(__name__)

__all__ = ["RetryConfig", "retry_operation", "with_retry"]

F = TypeVar("F", bound=Callable[..., Any])

# Only store availability problems are worth retrying
DEFAULT_RETRY_EXCEPTIONS: Tuple[Type[BaseException], ...] = (TransientStoreError,)


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(
        self,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
        exponential: bool = True,
        jitter: bool = True,
        max_backoff_seconds: float = 30.0,
        retry_exceptions: Tuple[Type[BaseException], ...] = DEFAULT_RETRY_EXCEPTIONS,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.exponential = exponential
        self.jitter = jitter
        self.max_backoff_seconds = max_backoff_seconds
        self.retry_exceptions = retry_exceptions

    @classmethod
    def none(cls) -> "RetryConfig":
        """No retry - fail immediately."""
        return cls(max_attempts=1)

    @classmethod
    def default(cls) -> "RetryConfig":
        """Default retry: 3 attempts with exponential backoff."""
        return cls()

    @classmethod
    def aggressive(cls) -> "RetryConfig":
        """Aggressive retry: 5 attempts with longer backoff."""
        return cls(max_attempts=5, backoff_seconds=5.0)

    def wait_strategy(self) -> wait_base:
        wait: wait_base
        if self.exponential:
            wait = tenacity.wait_exponential(
                multiplier=self.backoff_seconds,
                min=self.backoff_seconds,
                max=self.max_backoff_seconds,
            )
        else:
            wait = tenacity.wait_fixed(self.backoff_seconds)

        if self.jitter:
            wait = wait + tenacity.wait_random(0, self.backoff_seconds * 0.5)
        return wait

    def __repr__(self) -> str:
        return (
            f"RetryConfig(max_attempts={self.max_attempts}, "
            f"backoff_seconds={self.backoff_seconds}, exponential={self.exponential})"
        )


def retry_operation(
    operation: Callable[[], Any],
    config: RetryConfig,
    operation_name: str = "operation",
) -> Any:
    """Execute an operation with retry logic.

    Args:
        operation: Callable to execute
        config: Retry configuration
        operation_name: Name for logging

    Returns:
        Result of the operation

    Example:
        frame = retry_operation(
            lambda: store.read_current_history("history"),
            RetryConfig.default(),
            "read history",
        )
    """

    def before_sleep_handler(retry_state: tenacity.RetryCallState) -> None:
        exception = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "%s attempt %d/%d failed: %s. Retrying in %.1fs...",
            operation_name,
            retry_state.attempt_number,
            config.max_attempts,
            exception,
            retry_state.next_action.sleep if retry_state.next_action else 0,
        )

    retryer = tenacity.Retrying(
        stop=tenacity.stop_after_attempt(config.max_attempts),
        wait=config.wait_strategy(),
        retry=tenacity.retry_if_exception_type(config.retry_exceptions),
        before_sleep=before_sleep_handler,
        reraise=True,
    )

    try:
        return retryer(operation)
    except config.retry_exceptions:
        logger.error(
            "%s failed after %d attempts",
            operation_name,
            config.max_attempts,
        )
        raise


def with_retry(
    max_attempts: int = 3,
    backoff_seconds: float = 1.0,
    exponential: bool = True,
    jitter: bool = True,
    retry_exceptions: Optional[Tuple[Type[BaseException], ...]] = None,
) -> Callable[[F], F]:
    """Retry decorator for flaky store calls.

    Example:
        @with_retry(max_attempts=5, backoff_seconds=2.0)
        def load_snapshot():
            return read_batch("extracts/tags.parquet", BatchKind.FULL)
    """
    config = RetryConfig(
        max_attempts=max_attempts,
        backoff_seconds=backoff_seconds,
        exponential=exponential,
        jitter=jitter,
        retry_exceptions=retry_exceptions or DEFAULT_RETRY_EXCEPTIONS,
    )

    def decorator(fn: F) -> F:
        @wraps(fn)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            return retry_operation(lambda: fn(*args, **kwargs), config, fn.__qualname__)

        return wrapper  # type: ignore

    return decorator
