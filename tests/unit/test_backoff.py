"""
Unit tests for the backoff policy.
"""

import pytest

from webhook_relay.dispatch.backoff import BackoffPolicy


class TestBackoffPolicy:
    """Tests for BackoffPolicy."""

    def test_default_schedule(self):
        """Base 2s doubles after every failed attempt."""
        policy = BackoffPolicy(base_seconds=2.0, max_attempts=8)

        assert policy.schedule() == [2.0, 4.0, 8.0, 16.0, 32.0, 64.0, 128.0]

    def test_schedule_is_non_decreasing(self):
        policy = BackoffPolicy(base_seconds=0.5, max_attempts=12, max_delay_seconds=60)
        delays = policy.schedule()

        assert all(a <= b for a, b in zip(delays, delays[1:]))
        assert max(delays) == 60

    def test_cap_applies(self):
        policy = BackoffPolicy(base_seconds=2.0, max_attempts=8, max_delay_seconds=10)

        assert policy.delay_for(3) == 8.0
        assert policy.delay_for(4) == 10
        assert policy.delay_for(7) == 10

    def test_no_delay_before_first_attempt(self):
        policy = BackoffPolicy(base_seconds=2.0, max_attempts=8)

        assert policy.delay_for(0) == 0.0

    def test_is_exhausted(self):
        policy = BackoffPolicy(base_seconds=2.0, max_attempts=3)

        assert policy.is_exhausted(2) is False
        assert policy.is_exhausted(3) is True

    def test_single_attempt_has_no_retries(self):
        assert BackoffPolicy(base_seconds=2.0, max_attempts=1).schedule() == []

    @pytest.mark.parametrize(
        "base_seconds,max_attempts",
        [(-1.0, 3), (1.0, 0)],
    )
    def test_rejects_invalid_configuration(self, base_seconds, max_attempts):
        with pytest.raises(ValueError):
            BackoffPolicy(base_seconds=base_seconds, max_attempts=max_attempts)
