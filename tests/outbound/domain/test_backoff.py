import random
from datetime import UTC, datetime, timedelta

import pytest
from outbound.errors import (
    NoActiveChannelInstance,
    PermanentTransportError,
    TransientTransportError,
)
from outbound.queue.backoff import FailureKind, RetryPolicy, classify_failure


class TestRetryPolicy:
    def test_delay_doubles_per_attempt(self):
        policy = RetryPolicy(base=10, cap=900, jitter=0)
        assert [policy.base_delay(n) for n in (1, 2, 3, 4)] == [10, 20, 40, 80]

    def test_delay_is_capped(self):
        policy = RetryPolicy(base=10, cap=900, jitter=0)
        assert policy.base_delay(7) == 640
        assert policy.base_delay(8) == 900
        assert policy.base_delay(500) == 900

    def test_delay_is_monotonic(self):
        policy = RetryPolicy(base=10, cap=900, jitter=0)
        delays = [policy.base_delay(n) for n in range(1, 100)]
        assert delays == sorted(delays)

    def test_zero_attempts_counts_as_first(self):
        policy = RetryPolicy(base=10, cap=900, jitter=0)
        assert policy.base_delay(0) == 10

    def test_jitter_stays_within_bounds(self):
        policy = RetryPolicy(base=10, cap=900, jitter=5, rng=random.Random(7))
        for _ in range(50):
            delay = policy.delay(1).total_seconds()
            assert 10 <= delay <= 15

    def test_next_attempt_at(self):
        now = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)
        policy = RetryPolicy(base=10, cap=900, jitter=0)
        assert policy.next_attempt_at(2, now) == now + timedelta(seconds=20)

    def test_defaults_come_from_settings(self, monkeypatch):
        from outbound.config import reset_settings

        monkeypatch.setenv("OUTBOUND_BACKOFF_BASE_SECONDS", "2")
        reset_settings()
        assert RetryPolicy(jitter=0).base_delay(3) == 8


class TestClassifyFailure:
    @pytest.mark.parametrize(
        "outcome, expected",
        [
            ({"status": "failed", "failure": "permanent"}, FailureKind.PERMANENT),
            ({"status": "failed", "failure": "no_instance"}, FailureKind.NO_INSTANCE),
            ({"status": "failed", "failure": "transient"}, FailureKind.TRANSIENT),
            ({"status": "failed"}, FailureKind.TRANSIENT),
            (NoActiveChannelInstance("chat_api"), FailureKind.NO_INSTANCE),
            (PermanentTransportError("blocked", 403), FailureKind.PERMANENT),
            (TransientTransportError("timeout"), FailureKind.TRANSIENT),
            (ConnectionResetError(), FailureKind.TRANSIENT),
        ],
    )
    def test_classification(self, outcome, expected):
        assert classify_failure(outcome) == expected
