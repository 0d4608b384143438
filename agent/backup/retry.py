"""
Exponential backoff retry for network operations.
"""

import time
import random
import logging
from dataclasses import dataclass, replace
from typing import Callable, Optional

from .errors import is_retriable_error


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt budget and backoff bounds for one kind of operation."""
    max_attempts: int = 3
    base_delay: float = 2.0
    max_delay: float = 30.0
    jitter: float = 0.2

    def with_attempts(self, max_attempts: int) -> 'RetryPolicy':
        return replace(self, max_attempts=max_attempts)


@dataclass(frozen=True)
class RetryPolicies:
    """The policies strategies thread through their network calls."""
    default: RetryPolicy = RetryPolicy()
    upload: RetryPolicy = RetryPolicy(max_attempts=5)
    failure_report: RetryPolicy = RetryPolicy(max_attempts=2, base_delay=1.0)

    @classmethod
    def from_config(cls, cfg) -> 'RetryPolicies':
        default = RetryPolicy(
            max_attempts=cfg.RETRY_MAX_ATTEMPTS,
            base_delay=cfg.RETRY_BASE_DELAY,
            max_delay=cfg.RETRY_MAX_DELAY
        )
        return cls(
            default=default,
            upload=default.with_attempts(cfg.UPLOAD_MAX_ATTEMPTS),
            failure_report=replace(
                default,
                max_attempts=cfg.FAILURE_REPORT_MAX_ATTEMPTS,
                base_delay=cfg.FAILURE_REPORT_BASE_DELAY
            )
        )


def calculate_backoff_delay(
    attempt: int,
    base_delay: float = 2.0,
    max_delay: float = 30.0,
    jitter: float = 0.2,
    rng: Optional[random.Random] = None
) -> float:
    """
    Calculate the delay before the next attempt.

    Args:
        attempt: Zero-based number of the attempt that just failed
        base_delay: Delay in seconds after the first failure
        max_delay: Upper bound in seconds
        jitter: Relative spread applied around the exponential delay (0.2 = +/-20%)
        rng: Random source (defaults to the module-level generator)

    Returns:
        Delay in seconds, never above max_delay
    """
    delay = base_delay * (2 ** attempt)
    if jitter:
        spread = (rng or random).uniform(-jitter, jitter)
        delay += delay * spread
    return min(delay, max_delay)


def retry_with_backoff(
    operation: Callable,
    policy: RetryPolicy = RetryPolicy(),
    on_retry: Optional[Callable] = None,
    should_retry: Optional[Callable] = None,
    sleep: Callable = time.sleep
):
    """
    Call an operation, retrying transient failures with exponential backoff.

    Args:
        operation: Zero-argument callable to invoke
        policy: Attempt budget and delay bounds
        on_retry: Optional callback(attempt_number, error, delay) invoked before each sleep
        should_retry: Predicate deciding whether an error is worth retrying
            (default: is_retriable_error)
        sleep: Function used to wait between attempts

    Returns:
        Whatever the operation returns on its first successful call

    Raises:
        Exception: The last error, unchanged, once attempts are exhausted or
            as soon as a non-retriable error occurs
    """
    should_retry = should_retry or is_retriable_error

    for attempt in range(policy.max_attempts):
        try:
            return operation()
        except Exception as e:
            if attempt == policy.max_attempts - 1 or not should_retry(e):
                raise

            delay = calculate_backoff_delay(
                attempt, policy.base_delay, policy.max_delay, policy.jitter
            )

            if on_retry:
                try:
                    on_retry(attempt + 1, e, delay)
                except Exception as hook_error:
                    logger.debug(f"Retry hook failed: {hook_error}")

            sleep(delay)
