"""DestinationPreference aggregate — whether a destination takes digests.

Digest eligibility is a property of the destination, not of each message:
a destination with ``digest_enabled`` receives its non-critical messages
batched every ``digest_interval_minutes``. Turning digests off releases
the messages already held for the destination back to the Dispatcher.
"""

from datetime import UTC, datetime, timedelta

import structlog
from protean.fields import Boolean, DateTime, Integer, String
from protean.utils.globals import current_domain
from protean.utils.mixins import handle

from outbound.config import get_settings
from outbound.domain import outbound
from outbound.queue.message import Channel, QueuedMessage, as_utc
from outbound.recipient.normalizer import normalize_recipient

logger = structlog.get_logger(__name__)


@outbound.aggregate
class DestinationPreference:
    recipient_key: String(required=True, max_length=320)
    channel: String(choices=Channel, required=True)
    digest_enabled: Boolean(default=False)
    digest_interval_minutes: Integer(min_value=1)
    updated_at: DateTime()

    @property
    def interval(self):
        return timedelta(minutes=self.digest_interval_minutes or get_settings().digest_interval_minutes)

    def next_digest_at(self, now):
        """The next interval boundary (aligned on midnight UTC) strictly after ``now``."""
        now = as_utc(now)
        midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
        step = self.interval
        elapsed = now - midnight
        return midnight + step * (elapsed // step + 1)


def preference_for(recipient_key, channel):
    repo = current_domain.repository_for(DestinationPreference)
    rows = repo._dao.query.filter(recipient_key=recipient_key, channel=channel).all().items
    return rows[0] if rows else None


def release_held_items(recipient_key, channel) -> int:
    """Hand a destination's held messages back to the Dispatcher."""
    repo = current_domain.repository_for(QueuedMessage)
    held = repo.held_for_digest(recipient_key, channel)
    for message in held:
        message.release_from_digest()
        repo.add(message)
    if held:
        logger.info("Held digest items released", recipient_key=recipient_key, channel=channel, released=len(held))
    return len(held)


@outbound.command(part_of="DestinationPreference")
class SetDigestPreference:
    recipient: String(required=True, max_length=320)
    channel: String(required=True)
    digest_enabled: Boolean(required=True)
    digest_interval_minutes: Integer(min_value=1)


@outbound.command_handler(part_of=DestinationPreference)
class DestinationPreferenceCommandHandler:
    @handle(SetDigestPreference)
    def set_digest_preference(self, command: SetDigestPreference):
        recipient_key = normalize_recipient(command.recipient, command.channel)

        preference = preference_for(recipient_key, command.channel)
        if preference is None:
            preference = DestinationPreference(recipient_key=recipient_key, channel=command.channel)

        preference.digest_enabled = command.digest_enabled
        if command.digest_interval_minutes:
            preference.digest_interval_minutes = command.digest_interval_minutes
        preference.updated_at = datetime.now(UTC)

        current_domain.repository_for(DestinationPreference).add(preference)
        if not preference.digest_enabled:
            release_held_items(recipient_key, command.channel)
        return str(preference.id)
