"""Rate Limiter — "may this channel send now, and if not, for how long must it wait?"

Counts are derived from the Queue Store (rows sent in the last minute and
hour) at read time; there are no separate counters to keep consistent.
Two concurrent drain loops may both see a channel under its ceiling and
overshoot slightly. That is an accepted soft limit.

The limiter never sleeps. It answers with a ``RateDecision`` and the caller
reschedules (or, for short waits, waits itself).
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta

from protean.utils.globals import current_domain

from outbound.queue.message import QueuedMessage, as_utc
from outbound.ratelimit.rate_limit import RateLimitConfig, parse_clock, rate_limit_for

MINUTE = timedelta(seconds=60)
HOUR = timedelta(seconds=3600)

# Gaps longer than this are pauses, not pacing
_PACING_GAP = timedelta(seconds=60)


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    retry_after: timedelta = timedelta(0)
    reason: str | None = None

    @classmethod
    def allow(cls):
        return cls(allowed=True)


@dataclass
class RateLimitWindow:
    """Send timestamps of one channel over the last hour, oldest first."""

    channel: str
    sent_at: list = field(default_factory=list)

    def record(self, at):
        self.sent_at.append(as_utc(at))
        self.sent_at.sort()

    @property
    def last_sent_at(self):
        return self.sent_at[-1] if self.sent_at else None

    def within(self, now, span):
        start = as_utc(now) - span
        return [t for t in self.sent_at if t > start]

    def state(self, now):
        """Observability snapshot of the window."""
        recent = self.within(now, HOUR)
        gaps = [
            (later - earlier)
            for earlier, later in zip(recent, recent[1:], strict=False)
            if later - earlier < _PACING_GAP
        ]
        average_ms = int(sum(g.total_seconds() for g in gaps) * 1000 / len(gaps)) if gaps else 0
        return {
            "channel": self.channel,
            "sent_last_minute": len(self.within(now, MINUTE)),
            "sent_last_hour": len(recent),
            "last_sent_at": self.last_sent_at.isoformat() if self.last_sent_at else None,
            "average_inter_send_delay_ms": average_ms,
        }


# ---------------------------------------------------------------------------
# Send window
# ---------------------------------------------------------------------------
def in_send_window(config: RateLimitConfig, now) -> bool:
    """Is ``now`` inside the channel's daily window (bounds inclusive, may wrap midnight)?"""
    if not config.has_window:
        return True

    start = parse_clock(config.send_window_start)
    end = parse_clock(config.send_window_end)
    local = as_utc(now).astimezone(config.zone)
    current = local.time().replace(second=0, microsecond=0)

    if start <= end:
        return start <= current <= end
    return current >= start or current <= end


def next_window_opening(config: RateLimitConfig, now) -> datetime:
    """The next moment (UTC) the window opens strictly after ``now``."""
    start = parse_clock(config.send_window_start)
    local = as_utc(now).astimezone(config.zone)
    opening = local.replace(hour=start.hour, minute=start.minute, second=0, microsecond=0)
    if opening <= local:
        opening = (local + timedelta(days=1)).replace(hour=start.hour, minute=start.minute, second=0, microsecond=0)
    return as_utc(opening)


# ---------------------------------------------------------------------------
# Limiter
# ---------------------------------------------------------------------------
class RateLimiter:
    """Per-channel gate consulted by the Dispatcher and the Digest Aggregator."""

    def __init__(self, configs: dict | None = None):
        # Explicit configs win over the stored ones (used by tests and tools)
        self._configs = dict(configs or {})

    def config_for(self, channel) -> RateLimitConfig:
        if channel not in self._configs:
            self._configs[channel] = rate_limit_for(channel)
        return self._configs[channel]

    def window_for(self, channel, now) -> RateLimitWindow:
        """Read the channel's sends of the last hour from the Queue Store."""
        repo = current_domain.repository_for(QueuedMessage)
        rows = repo.sent_since(channel, as_utc(now) - HOUR)
        window = RateLimitWindow(channel=channel)
        for row in rows:
            window.record(row.sent_at)
        return window

    def can_send_now(self, channel, now, window: RateLimitWindow | None = None) -> RateDecision:
        now = as_utc(now)
        config = self.config_for(channel)
        window = window if window is not None else self.window_for(channel, now)

        if not in_send_window(config, now):
            opening = next_window_opening(config, now)
            return RateDecision(False, opening - now, "outside send window")

        waits = []
        for span, ceiling, label in (
            (MINUTE, config.max_per_minute, "minute"),
            (HOUR, config.max_per_hour, "hour"),
        ):
            recent = window.within(now, span)
            if len(recent) >= ceiling:
                # Wait until enough of the oldest sends fall out of the span
                releasing = recent[len(recent) - ceiling]
                waits.append((releasing + span - now, f"{label} limit reached ({len(recent)}/{ceiling})"))

        if waits:
            retry_after, reason = max(waits, key=lambda w: w[0])
            return RateDecision(False, retry_after, reason)

        min_delay = timedelta(milliseconds=config.min_delay_between_sends_ms or 0)
        last = window.last_sent_at
        if min_delay and last is not None and now - last < min_delay:
            return RateDecision(False, last + min_delay - now, "minimum delay between sends")

        return RateDecision.allow()

    def window_state(self, channel, now):
        state = self.window_for(channel, now).state(now)
        config = self.config_for(channel)
        state.update(
            max_per_minute=config.max_per_minute,
            max_per_hour=config.max_per_hour,
            min_delay_between_sends_ms=config.min_delay_between_sends_ms,
            in_send_window=in_send_window(config, now),
        )
        return state
