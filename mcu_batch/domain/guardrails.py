"""Domain Guardrails - Bounded Retry for Transient Storage Errors.

Per-item writes against the hosted store can fail with network-class
errors that succeed on a second attempt. Those, and only those, are
retried with a small exponential backoff. Validation-class errors and
every other storage error fail immediately.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from mcu_batch.domain.ports import BatchValidationError, TransientStorageError

logger = logging.getLogger(__name__)

T = TypeVar('T')


@dataclass(frozen=True)
class RetryPolicy:
    """Configuration for bounded retry with exponential backoff.

    Attributes:
        max_attempts: Total attempts including the first one (1 disables retry)
        base_delay_seconds: Delay before the second attempt
        max_delay_seconds: Upper bound for any single delay
    """
    max_attempts: int = 3
    base_delay_seconds: float = 0.25
    max_delay_seconds: float = 2.0

    def delay_for(self, attempt: int) -> float:
        """Backoff delay after the given (zero-based) failed attempt."""
        return min(self.base_delay_seconds * (2 ** attempt), self.max_delay_seconds)

    @classmethod
    def no_retry(cls) -> 'RetryPolicy':
        return cls(max_attempts=1, base_delay_seconds=0.0, max_delay_seconds=0.0)


def call_with_retry(
    operation: Callable[[], T],
    policy: Optional[RetryPolicy] = None,
    description: str = "storage call",
    sleep: Callable[[float], None] = time.sleep
) -> T:
    """Invoke an operation, retrying only TransientStorageError.

    Parameters:
        operation: Zero-argument callable to invoke
        policy: Retry policy (defaults to RetryPolicy())
        description: Label used in log messages
        sleep: Sleep function (injectable for tests)

    Returns:
        The operation's return value

    Raises:
        The last TransientStorageError once attempts are exhausted, or any
        other exception immediately
    """
    policy = policy or RetryPolicy()
    attempts = max(1, policy.max_attempts)

    for attempt in range(attempts):
        try:
            return operation()
        except BatchValidationError:
            raise
        except TransientStorageError as e:
            if attempt + 1 >= attempts:
                logger.error(f"{description} failed after {attempts} attempts: {e}")
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                f"{description} failed with transient error (attempt {attempt + 1}/{attempts}), "
                f"retrying in {delay:.2f}s: {e}"
            )
            sleep(delay)

    # Unreachable: the loop either returns or raises
    raise RuntimeError(f"{description}: retry loop exited unexpectedly")
