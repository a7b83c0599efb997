"""
Bounded retry with exponential backoff for transient provider failures.

Only ``TransientProviderError`` is retried.  Every other exception
(validation, not-found, authentication surfaced as ValidationError)
propagates on the first attempt.  When the budget is exhausted the last
transient error is wrapped in ``RetryExhaustedError`` so callers still see a
typed, retryable failure.
"""

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from recon_kernel.exceptions import RetryExhaustedError, TransientProviderError
from recon_kernel.logging_config import get_logger

logger = get_logger("utils.retry")

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget: attempts include the first call."""

    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 5.0
    multiplier: float = 2.0

    def delay_for(self, attempt: int) -> float:
        """Backoff before retry number ``attempt`` (1-based)."""
        return min(self.base_delay * (self.multiplier ** (attempt - 1)), self.max_delay)


DEFAULT_RETRY_POLICY = RetryPolicy()


def call_with_retry(
    operation: str,
    fn: Callable[..., T],
    *args: Any,
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    sleep: Callable[[float], None] = time.sleep,
    **kwargs: Any,
) -> T:
    """
    Call ``fn(*args, **kwargs)``, retrying on TransientProviderError.

    Raises:
        RetryExhaustedError: after ``policy.max_attempts`` transient failures.
        Any non-transient exception raised by ``fn``, unchanged.
    """
    attempt = 1
    while True:
        try:
            return fn(*args, **kwargs)
        except TransientProviderError as exc:
            if attempt >= policy.max_attempts:
                logger.error(
                    "retry_exhausted",
                    extra={"operation": operation, "attempts": attempt, "error": str(exc)},
                )
                raise RetryExhaustedError(operation, attempt, str(exc)) from exc
            delay = policy.delay_for(attempt)
            logger.warning(
                "retry_scheduled",
                extra={
                    "operation": operation,
                    "attempt": attempt,
                    "delay_seconds": delay,
                    "error": str(exc),
                },
            )
            sleep(delay)
            attempt += 1
