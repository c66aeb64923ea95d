"""
Retry policy for transient directory failures.

A flapping LDAP server or a slow network should not fail a whole
reconciliation run on the first attempt. The policy is built from the
``error_handling`` configuration section and is only ever applied to
connection setup; a search that fails mid-snapshot is never retried page
by page.
"""

import time
import logging
from typing import Any, Callable, Dict, Optional, Tuple, Type

logger = logging.getLogger(__name__)

# Message fragments of errors worth another attempt
TRANSIENT_MESSAGES = (
    'timeout',
    'timed out',
    'connection reset',
    'connection refused',
    'network is unreachable',
    'temporary failure',
    'unavailable',
    'busy',
    'socket',
)


class MaxRetriesExceeded(Exception):
    """Raised when every attempt allowed by a RetryPolicy failed."""

    def __init__(self, attempts: int, last_exception: Exception):
        self.attempts = attempts
        self.last_exception = last_exception
        super().__init__(f"Failed after {attempts} attempts: {last_exception}")


def is_retryable_error(exception: Exception) -> bool:
    """Return True if the exception looks like a transient network or server failure."""
    if isinstance(exception, (ConnectionError, TimeoutError)):
        return True
    message = str(exception).lower()
    return any(fragment in message for fragment in TRANSIENT_MESSAGES)


class RetryPolicy:
    """
    How often, and how patiently, an operation is attempted.

    Waits grow by ``backoff`` after each failure and are capped at
    ``max_wait``.
    """

    def __init__(self, max_attempts: int = 3, wait_seconds: float = 5.0,
                 backoff: float = 1.0, max_wait: Optional[float] = None):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.wait_seconds = wait_seconds
        self.backoff = backoff
        self.max_wait = max_wait

    @classmethod
    def from_config(cls, error_config: Optional[Dict[str, Any]]) -> 'RetryPolicy':
        """
        Build a policy from an ``error_handling`` section.

        ``max_retries`` counts attempts, as it always has in configuration
        files; zero or a negative value still allows one attempt.
        """
        error_config = error_config or {}
        return cls(
            max_attempts=max(1, int(error_config.get('max_retries', 3))),
            wait_seconds=float(error_config.get('retry_wait_seconds', 5)),
            backoff=float(error_config.get('backoff_multiplier', 1.0)),
            max_wait=error_config.get('max_wait_seconds'),
        )

    def waits(self):
        """Yield the wait before each retry, in order."""
        wait = self.wait_seconds
        for _ in range(self.max_attempts - 1):
            yield wait if self.max_wait is None else min(wait, self.max_wait)
            wait *= self.backoff

    def call(self, func: Callable[[], Any], operation: str,
             retry_on: Tuple[Type[Exception], ...] = (Exception,),
             should_retry: Callable[[Exception], bool] = is_retryable_error) -> Any:
        """
        Call func until it succeeds or the policy runs out of attempts.

        Args:
            func: Zero-argument callable to attempt
            operation: Name used in log messages
            retry_on: Exception types that count as failed attempts
            should_retry: Predicate for caught exceptions; a rejected one is raised at once

        Returns:
            Whatever func returned

        Raises:
            MaxRetriesExceeded: If every attempt failed with a retryable error
        """
        waits = self.waits()
        attempt = 0
        while True:
            attempt += 1
            try:
                result = func()
            except retry_on as e:
                if not should_retry(e):
                    raise
                wait = next(waits, None)
                if wait is None:
                    raise MaxRetriesExceeded(attempt, e) from e
                logger.warning(f"{operation} failed on attempt {attempt}, "
                               f"retrying in {wait:.1f}s due to {type(e).__name__}: {e}")
                time.sleep(wait)
                continue

            if attempt > 1:
                logger.info(f"{operation} succeeded on attempt {attempt}")
            return result
