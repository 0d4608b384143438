"""
Unit tests for retry engine (agent/backup/retry.py).

Tests backoff delay calculation and retry_with_backoff termination.
"""

import random
from types import SimpleNamespace

import pytest
import requests

from agent.backup.errors import ApiError, ConfigurationError
from agent.backup.retry import (
    RetryPolicy,
    RetryPolicies,
    calculate_backoff_delay,
    retry_with_backoff
)


class TestCalculateBackoffDelay:
    """Test calculate_backoff_delay."""

    def test_delay_doubles_without_jitter(self):
        """Test delays grow exponentially when jitter is disabled."""
        delays = [calculate_backoff_delay(n, 2.0, 1000.0, jitter=0) for n in range(5)]

        assert delays == [2.0, 4.0, 8.0, 16.0, 32.0]

    def test_delay_is_monotone_and_capped(self):
        """Test delays never decrease and never exceed max_delay."""
        delays = [calculate_backoff_delay(n, 2.0, 30.0, jitter=0) for n in range(10)]

        assert all(a <= b for a, b in zip(delays, delays[1:]))
        assert max(delays) == 30.0

    def test_jitter_stays_within_bounds(self):
        """Test jittered delay stays within +/-20% of the exponential value."""
        rng = random.Random(42)

        for _ in range(100):
            delay = calculate_backoff_delay(2, 2.0, 1000.0, jitter=0.2, rng=rng)
            assert 6.4 <= delay <= 9.6

    def test_jitter_never_exceeds_cap(self):
        """Test the cap applies after jitter."""
        rng = random.Random(7)

        for attempt in range(10):
            assert calculate_backoff_delay(attempt, 2.0, 30.0, jitter=0.2, rng=rng) <= 30.0


class TestRetryWithBackoff:
    """Test retry_with_backoff."""

    def test_returns_first_success(self, no_sleep):
        """Test successful operation is called once."""
        calls = []

        def operation():
            calls.append(1)
            return 'ok'

        assert retry_with_backoff(operation, RetryPolicy(), sleep=no_sleep.append) == 'ok'
        assert len(calls) == 1
        assert no_sleep == []

    def test_retries_transient_errors_until_success(self, no_sleep):
        """Test transient failures are retried."""
        outcomes = [requests.ConnectionError('reset'), ApiError('busy', status_code=503), 'done']

        def operation():
            outcome = outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        result = retry_with_backoff(operation, RetryPolicy(jitter=0), sleep=no_sleep.append)

        assert result == 'done'
        assert no_sleep == [2.0, 4.0]

    def test_always_failing_operation_is_called_max_attempts_times(self, no_sleep):
        """Test termination after exactly max_attempts calls, re-raising the last error."""
        calls = []
        last_error = ApiError('unavailable', status_code=503)

        def operation():
            calls.append(1)
            raise last_error

        with pytest.raises(ApiError) as exc_info:
            retry_with_backoff(operation, RetryPolicy(max_attempts=4), sleep=no_sleep.append)

        assert exc_info.value is last_error
        assert len(calls) == 4
        assert len(no_sleep) == 3

    def test_non_retriable_error_is_not_retried(self, no_sleep):
        """Test non-retriable errors propagate immediately."""
        calls = []

        def operation():
            calls.append(1)
            raise ApiError('forbidden', status_code=403)

        with pytest.raises(ApiError):
            retry_with_backoff(operation, RetryPolicy(), sleep=no_sleep.append)

        assert len(calls) == 1
        assert no_sleep == []

    def test_configuration_error_is_not_retried(self, no_sleep):
        """Test configuration errors never retry."""
        calls = []

        def operation():
            calls.append(1)
            raise ConfigurationError('timeout option invalid')

        with pytest.raises(ConfigurationError):
            retry_with_backoff(operation, RetryPolicy(), sleep=no_sleep.append)

        assert len(calls) == 1

    def test_on_retry_receives_attempt_error_and_delay(self, no_sleep):
        """Test on_retry hook is called before each sleep."""
        hook_calls = []
        error = requests.Timeout('timed out')

        def operation():
            raise error

        with pytest.raises(requests.Timeout):
            retry_with_backoff(
                operation,
                RetryPolicy(max_attempts=3, jitter=0),
                on_retry=lambda attempt, err, delay: hook_calls.append((attempt, err, delay)),
                sleep=no_sleep.append
            )

        assert hook_calls == [(1, error, 2.0), (2, error, 4.0)]

    def test_on_retry_failure_does_not_stop_retrying(self, no_sleep):
        """Test a failing hook is ignored."""
        outcomes = [requests.ConnectionError('refused'), 'ok']

        def operation():
            outcome = outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        def broken_hook(attempt, error, delay):
            raise RuntimeError('hook failed')

        assert retry_with_backoff(
            operation, RetryPolicy(), on_retry=broken_hook, sleep=no_sleep.append
        ) == 'ok'

    def test_custom_should_retry(self, no_sleep):
        """Test a custom predicate overrides the default classification."""
        calls = []

        def operation():
            calls.append(1)
            raise ValueError('custom')

        with pytest.raises(ValueError):
            retry_with_backoff(
                operation,
                RetryPolicy(max_attempts=3),
                should_retry=lambda e: True,
                sleep=no_sleep.append
            )

        assert len(calls) == 3


class TestRetryPolicies:
    """Test RetryPolicies built from configuration."""

    def test_defaults(self):
        """Test the named policies have the documented budgets."""
        policies = RetryPolicies()

        assert policies.default.max_attempts == 3
        assert policies.upload.max_attempts == 5
        assert policies.failure_report.max_attempts == 2
        assert policies.failure_report.base_delay == 1.0

    def test_from_config(self):
        """Test policies follow configuration values."""
        cfg = SimpleNamespace(
            RETRY_MAX_ATTEMPTS=4,
            RETRY_BASE_DELAY=1.5,
            RETRY_MAX_DELAY=10.0,
            UPLOAD_MAX_ATTEMPTS=6,
            FAILURE_REPORT_MAX_ATTEMPTS=2,
            FAILURE_REPORT_BASE_DELAY=0.5,
        )

        policies = RetryPolicies.from_config(cfg)

        assert policies.default == RetryPolicy(4, 1.5, 10.0)
        assert policies.upload.max_attempts == 6
        assert policies.upload.base_delay == 1.5
        assert policies.failure_report.max_attempts == 2
        assert policies.failure_report.base_delay == 0.5
