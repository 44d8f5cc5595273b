"""RateLimitConfig aggregate — per-channel throughput ceilings and send window.

A channel without a row falls back to the settings defaults, so a fresh
installation is throttled conservatively without any setup.
"""

from datetime import UTC, datetime, time
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from protean.exceptions import ValidationError
from protean.fields import Boolean, DateTime, Integer, String
from protean.utils.globals import current_domain
from protean.utils.mixins import handle

from outbound.config import get_settings
from outbound.domain import outbound
from outbound.queue.message import Channel


def parse_clock(value, field="send_window"):
    """Parse ``HH:MM`` into a ``time``."""
    parts = (value or "").split(":")
    if len(parts) != 2:
        raise ValidationError({field: [f"Invalid time format: {value}. Use HH:MM"]})
    try:
        hour, minute = int(parts[0]), int(parts[1])
        return time(hour, minute)
    except ValueError:
        raise ValidationError({field: [f"Invalid time format: {value}. Use HH:MM"]}) from None


@outbound.aggregate
class RateLimitConfig:
    channel: String(choices=Channel, required=True, unique=True)
    max_per_minute: Integer(min_value=1, required=True)
    max_per_hour: Integer(min_value=1, required=True)
    min_delay_between_sends_ms: Integer(min_value=0, default=0)
    send_window_start: String(max_length=5)  # "08:00"
    send_window_end: String(max_length=5)  # "20:00"
    respect_send_window: Boolean(default=False)
    timezone: String(max_length=64, default="UTC")
    updated_at: DateTime()

    @classmethod
    def defaults_for(cls, channel):
        """An unsaved config built from the settings defaults."""
        settings = get_settings()
        return cls(
            channel=channel,
            max_per_minute=settings.max_per_minute,
            max_per_hour=settings.max_per_hour,
            min_delay_between_sends_ms=settings.min_delay_between_sends_ms,
            send_window_start=settings.send_window_start,
            send_window_end=settings.send_window_end,
            respect_send_window=settings.respect_send_window,
            timezone=settings.timezone,
        )

    def update(self, **values):
        for key, value in values.items():
            if value is not None:
                setattr(self, key, value)
        self.validate_window()
        self.updated_at = datetime.now(UTC)

    def validate_window(self):
        if self.respect_send_window and not (self.send_window_start and self.send_window_end):
            raise ValidationError({"send_window": ["Both start and end are required when the window is respected"]})
        if self.send_window_start:
            parse_clock(self.send_window_start, "send_window_start")
        if self.send_window_end:
            parse_clock(self.send_window_end, "send_window_end")
        try:
            ZoneInfo(self.timezone or "UTC")
        except (ZoneInfoNotFoundError, ValueError):
            raise ValidationError({"timezone": [f"Unknown timezone: {self.timezone}"]}) from None

    @property
    def has_window(self):
        return bool(self.respect_send_window and self.send_window_start and self.send_window_end)

    @property
    def zone(self):
        return ZoneInfo(self.timezone or "UTC")


def rate_limit_for(channel) -> RateLimitConfig:
    """The persisted config for ``channel``, or the defaults."""
    repo = current_domain.repository_for(RateLimitConfig)
    rows = repo._dao.query.filter(channel=channel).all().items
    return rows[0] if rows else RateLimitConfig.defaults_for(channel)


# ---------------------------------------------------------------------------
# Command
# ---------------------------------------------------------------------------
@outbound.command(part_of="RateLimitConfig")
class ConfigureRateLimit:
    """Create or update the rate limits of a channel."""

    channel: String(required=True)
    max_per_minute: Integer(min_value=1)
    max_per_hour: Integer(min_value=1)
    min_delay_between_sends_ms: Integer(min_value=0)
    send_window_start: String(max_length=5)
    send_window_end: String(max_length=5)
    respect_send_window: Boolean()
    timezone: String(max_length=64)


@outbound.command_handler(part_of=RateLimitConfig)
class ConfigureRateLimitHandler:
    @handle(ConfigureRateLimit)
    def configure(self, command: ConfigureRateLimit):
        repo = current_domain.repository_for(RateLimitConfig)
        rows = repo._dao.query.filter(channel=command.channel).all().items
        config = rows[0] if rows else RateLimitConfig.defaults_for(command.channel)

        config.update(
            max_per_minute=command.max_per_minute,
            max_per_hour=command.max_per_hour,
            min_delay_between_sends_ms=command.min_delay_between_sends_ms,
            send_window_start=command.send_window_start,
            send_window_end=command.send_window_end,
            respect_send_window=command.respect_send_window,
            timezone=command.timezone,
        )
        repo.add(config)
        return str(config.id)
