"""Tests for the retry / backoff policy."""
import pytest

from app.core.exceptions import AlreadyProcessing, InvalidJobPayload, UnknownJobKind
from app.services.retry_policy import BackoffPolicy


class TestBackoffPolicy:
    def test_defaults(self):
        policy = BackoffPolicy()
        assert policy.type == "exponential"
        assert policy.delay_ms == 2000
        assert policy.max_attempts == 3

    def test_exponential_growth(self):
        policy = BackoffPolicy()
        # after attempt 1 fails -> wait before attempt 2, and so on
        assert policy.delay_for(1) == 2000
        assert policy.delay_for(2) == 4000
        assert policy.delay_for(3) == 8000

    def test_fixed_delay(self):
        policy = BackoffPolicy(type="fixed", delay_ms=500)
        assert [policy.delay_for(n) for n in (1, 2, 3)] == [500, 500, 500]

    def test_retry_until_attempts_exhausted(self):
        policy = BackoffPolicy(max_attempts=3)
        assert policy.should_retry(1)
        assert policy.should_retry(2)
        assert not policy.should_retry(3)

    def test_lock_contention_is_retried(self):
        assert BackoffPolicy().should_retry(1, AlreadyProcessing("appointment_1"))

    @pytest.mark.parametrize("error", [UnknownJobKind("unknown"), InvalidJobPayload("bad")])
    def test_permanent_errors_are_not_retried(self, error):
        assert not BackoffPolicy().should_retry(1, error)

    def test_from_job_row(self):
        class Row:
            backoff_type = "fixed"
            backoff_delay_ms = 10
            max_attempts = 7

        policy = BackoffPolicy.for_job(Row())
        assert policy == BackoffPolicy(type="fixed", delay_ms=10, max_attempts=7)

    @pytest.mark.parametrize("kwargs", [
        {"type": "linear"},
        {"delay_ms": -1},
        {"max_attempts": 0},
    ])
    def test_rejects_invalid_configuration(self, kwargs):
        with pytest.raises(ValueError):
            BackoffPolicy(**kwargs)
