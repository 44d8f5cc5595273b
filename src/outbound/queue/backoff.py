"""Retry/Backoff Policy — when to try a failed message again.

Exponential backoff on the number of attempts already spent, capped, plus
a random jitter so a burst of failures does not retry in lockstep::

    delay(n) = min(base * 2 ** (n - 1), cap) + uniform(0, jitter)
"""

import random
from datetime import timedelta
from enum import Enum

from outbound.config import get_settings
from outbound.errors import NoActiveChannelInstance, TransportError
from outbound.queue.message import as_utc


class FailureKind(Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    NO_INSTANCE = "no_instance"


class RetryPolicy:
    def __init__(self, base=None, cap=None, jitter=None, rng=None):
        settings = get_settings()
        self.base = settings.backoff_base_seconds if base is None else base
        self.cap = settings.backoff_cap_seconds if cap is None else cap
        self.jitter = settings.backoff_jitter_seconds if jitter is None else jitter
        self.rng = rng or random.Random()

    def base_delay(self, attempts: int) -> float:
        """Deterministic part of the delay, in seconds. ``attempts`` counts the failed one."""
        exponent = max(attempts, 1) - 1
        # 2 ** exponent grows without bound; compare before multiplying out
        if exponent >= 64:
            return float(self.cap)
        return float(min(self.base * 2**exponent, self.cap))

    def delay(self, attempts: int) -> timedelta:
        jitter = self.rng.uniform(0, self.jitter) if self.jitter else 0.0
        return timedelta(seconds=self.base_delay(attempts) + jitter)

    def next_attempt_at(self, attempts: int, now):
        return as_utc(now) + self.delay(attempts)


def classify_failure(outcome) -> FailureKind:
    """Classify a failed send result or a raised exception."""
    if isinstance(outcome, NoActiveChannelInstance):
        return FailureKind.NO_INSTANCE
    if isinstance(outcome, TransportError):
        return FailureKind.TRANSIENT if outcome.retryable else FailureKind.PERMANENT
    if isinstance(outcome, dict):
        failure = outcome.get("failure")
        if failure in (kind.value for kind in FailureKind):
            return FailureKind(failure)
    # Anything unrecognized (timeouts, connection resets) is worth a retry
    return FailureKind.TRANSIENT
