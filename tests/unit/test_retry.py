"""
Tests for bounded retry with exponential backoff.

- Only TransientProviderError is retried
- Backoff doubles up to max_delay
- Exhaustion raises RetryExhaustedError carrying the attempt count
"""

import pytest

from recon_kernel.exceptions import RetryExhaustedError, TransientProviderError, ValidationError
from recon_kernel.utils.retry import RetryPolicy, call_with_retry

FAST = RetryPolicy(max_attempts=4, base_delay=0.5, max_delay=1.5, multiplier=2.0)


class Flaky:
    def __init__(self, failures, exc=TransientProviderError("429 rate limited", status=429)):
        self.failures = failures
        self.exc = exc
        self.calls = 0

    def __call__(self, value):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc
        return value * 2


class TestRetry:
    def test_success_first_try(self):
        fn = Flaky(0)
        assert call_with_retry("op", fn, 21, policy=FAST, sleep=lambda _: None) == 42
        assert fn.calls == 1

    def test_recovers_after_transient_failures(self):
        delays = []
        fn = Flaky(3)

        assert call_with_retry("op", fn, 1, policy=FAST, sleep=delays.append) == 2
        assert delays == [0.5, 1.0, 1.5]

    def test_exhausted(self, captured_logs):
        fn = Flaky(10)
        with pytest.raises(RetryExhaustedError) as exc_info:
            call_with_retry("ledger.lookup", fn, 1, policy=FAST, sleep=lambda _: None)

        assert fn.calls == 4
        assert exc_info.value.attempts == 4
        assert exc_info.value.operation == "ledger.lookup"
        assert any(r["message"] == "retry_exhausted" for r in captured_logs())

    def test_non_transient_propagates_immediately(self):
        fn = Flaky(1, exc=ValidationError("unauthorized"))
        with pytest.raises(ValidationError):
            call_with_retry("op", fn, 1, policy=FAST, sleep=lambda _: None)
        assert fn.calls == 1

    def test_exhausted_error_is_still_transient(self):
        assert issubclass(RetryExhaustedError, TransientProviderError)

    def test_delay_for(self):
        policy = RetryPolicy()
        assert [policy.delay_for(n) for n in (1, 2, 3, 5)] == [0.5, 1.0, 2.0, 5.0]
