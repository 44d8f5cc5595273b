"""QueuedMessage aggregate — the unit of outbound work.

Each row is one message for one recipient on one channel. The queue row is
the single source of truth for delivery state; the Dispatcher and the
Status Tracker are the only processes that move it through its lifecycle.

State Machine (5 states):
    PENDING → SENT → DELIVERED → READ
    PENDING → SENT → READ
    PENDING → FAILED            (terminal for the Dispatcher)
    FAILED  → PENDING           (operator requeue only)

A message is eligible for dispatch iff it is PENDING, due
(``scheduled_for`` empty or in the past), still has attempts left, is not
held for a digest, and is not claimed by a live drain loop.
"""

import json
from datetime import UTC, datetime, timedelta
from enum import Enum

from protean.exceptions import ValidationError
from protean.fields import Boolean, DateTime, Identifier, Integer, String, Text

from outbound.domain import outbound
from outbound.queue.events import (
    MessageAttemptFailed,
    MessageDelivered,
    MessageDigested,
    MessageFailed,
    MessageQueued,
    MessageRead,
    MessageRequeued,
    MessageRescheduled,
    MessageSent,
)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class Channel(Enum):
    CHAT_API = "chat_api"
    WEBHOOK = "webhook"
    EMAIL = "email"


class MessageStatus(Enum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


class Priority(Enum):
    CRITICAL = 1
    HIGH = 2
    NORMAL = 3


DIGEST_MESSAGE_TYPE = "digest"

# Default priority per message type; unknown types are NORMAL
MESSAGE_TYPE_PRIORITIES: dict[str, int] = {
    "emergency_alert": Priority.CRITICAL.value,
    "customer_notification": Priority.HIGH.value,
    "status_change": Priority.HIGH.value,
    "order_created": Priority.HIGH.value,
    "delivery_confirmation": Priority.HIGH.value,
    "delivery_confirmation_followup": Priority.HIGH.value,
    "manager_alert": Priority.HIGH.value,
    "phase_stall_alert": Priority.HIGH.value,
    "ai_auto_reply": Priority.HIGH.value,
    "manager_smart_alert": Priority.HIGH.value,
    "smart_alert": Priority.HIGH.value,
    "daily_report": Priority.NORMAL.value,
    "scheduled_report": Priority.NORMAL.value,
    "scheduled_report_image": Priority.NORMAL.value,
    DIGEST_MESSAGE_TYPE: Priority.HIGH.value,
}


def default_priority(message_type: str) -> int:
    return MESSAGE_TYPE_PRIORITIES.get(message_type, Priority.NORMAL.value)


# ---------------------------------------------------------------------------
# State Machine
# ---------------------------------------------------------------------------
_VALID_TRANSITIONS = {
    MessageStatus.PENDING: {MessageStatus.SENT, MessageStatus.FAILED},
    MessageStatus.SENT: {MessageStatus.DELIVERED, MessageStatus.READ},
    MessageStatus.DELIVERED: {MessageStatus.READ},
    MessageStatus.READ: set(),
    MessageStatus.FAILED: {MessageStatus.PENDING},  # Operator requeue
}

# Callbacks may arrive out of order; status never moves down this ladder
_DELIVERY_RANK = {
    MessageStatus.PENDING: 0,
    MessageStatus.SENT: 1,
    MessageStatus.DELIVERED: 2,
    MessageStatus.READ: 3,
}


def as_utc(value):
    """Normalize a datetime to timezone-aware UTC (naive values are taken as UTC)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


# ---------------------------------------------------------------------------
# Aggregate Root
# ---------------------------------------------------------------------------
@outbound.aggregate
class QueuedMessage:
    """A message waiting for, or past, delivery to an external channel."""

    # Routing
    recipient_key: String(required=True, max_length=320)
    recipient_name: String(max_length=200)
    channel: String(choices=Channel, required=True)
    organization_id: Identifier()

    # Payload
    message_type: String(required=True, max_length=100)
    subject: String(max_length=500)
    content: Text(required=True)
    media_base64: Text()
    media_url: String(max_length=2000)
    media_mimetype: String(max_length=100)
    media_caption: String(max_length=1000)
    media_filename: String(max_length=255)
    message_metadata: Text()  # JSON object

    # Scheduling
    priority: Integer(min_value=1, max_value=3, default=Priority.NORMAL.value)
    scheduled_for: DateTime()  # Null means "now"
    attempts: Integer(default=0, min_value=0)
    max_attempts: Integer(default=3, min_value=1)

    # Lifecycle
    status: String(choices=MessageStatus, default=MessageStatus.PENDING.value)
    sent_at: DateTime()
    delivered_at: DateTime()
    read_at: DateTime()
    last_error: String(max_length=1000)
    transport_message_id: String(max_length=200)

    # Digest
    digest_eligible: Boolean(default=False)
    digest_id: Identifier()

    # Drain-loop claim
    claimed_by: String(max_length=64)
    claimed_at: DateTime()

    # Timestamps
    created_at: DateTime()
    updated_at: DateTime()

    # -------------------------------------------------------------------
    # Factory
    # -------------------------------------------------------------------
    @classmethod
    def create(
        cls,
        recipient_key,
        channel,
        message_type,
        content,
        priority=None,
        scheduled_for=None,
        metadata=None,
        max_attempts=3,
        recipient_name=None,
        subject=None,
        organization_id=None,
        media_base64=None,
        media_url=None,
        media_mimetype=None,
        media_caption=None,
        media_filename=None,
        digest_eligible=False,
        created_at=None,
    ):
        """Create a new message in PENDING status."""
        now = as_utc(created_at) or datetime.now(UTC)
        priority = priority if priority is not None else default_priority(message_type)

        message = cls(
            recipient_key=recipient_key,
            recipient_name=recipient_name,
            channel=channel,
            organization_id=organization_id,
            message_type=message_type,
            subject=subject,
            content=content,
            media_base64=media_base64,
            media_url=media_url,
            media_mimetype=media_mimetype,
            media_caption=media_caption,
            media_filename=media_filename,
            message_metadata=json.dumps(metadata or {}),
            priority=priority,
            scheduled_for=as_utc(scheduled_for),
            attempts=0,
            max_attempts=max_attempts,
            status=MessageStatus.PENDING.value,
            digest_eligible=digest_eligible,
            created_at=now,
            updated_at=now,
        )

        message.raise_(
            MessageQueued(
                message_id=str(message.id),
                recipient_key=recipient_key,
                channel=channel,
                message_type=message_type,
                priority=priority,
                scheduled_for=message.scheduled_for,
                digest_eligible=digest_eligible,
                queued_at=now,
            )
        )

        return message

    # -------------------------------------------------------------------
    # Metadata
    # -------------------------------------------------------------------
    def get_metadata(self) -> dict:
        return json.loads(self.message_metadata) if self.message_metadata else {}

    def update_metadata(self, **values):
        data = self.get_metadata()
        data.update(values)
        self.message_metadata = json.dumps(data)

    # -------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------
    @property
    def has_media(self):
        return bool(self.media_base64 or self.media_url)

    def is_terminal(self):
        return MessageStatus(self.status) != MessageStatus.PENDING

    def is_due(self, now):
        return self.scheduled_for is None or as_utc(self.scheduled_for) <= as_utc(now)

    def is_claimed(self, now, ttl_seconds):
        if not self.claimed_by or self.claimed_at is None:
            return False
        return as_utc(self.claimed_at) + timedelta(seconds=ttl_seconds) > as_utc(now)

    def is_eligible(self, now, claim_ttl_seconds=300):
        """Eligible for the Dispatcher right now."""
        return (
            MessageStatus(self.status) == MessageStatus.PENDING
            and self.is_due(now)
            and self.attempts < self.max_attempts
            and not self.digest_eligible
            and not self.is_claimed(now, claim_ttl_seconds)
        )

    # -------------------------------------------------------------------
    # State transitions
    # -------------------------------------------------------------------
    def _assert_can_transition(self, target_status):
        """Validate state machine transition."""
        current = MessageStatus(self.status)
        if target_status not in _VALID_TRANSITIONS.get(current, set()):
            raise ValidationError({"status": [f"Cannot transition from {current.value} to {target_status.value}"]})

    def _assert_pending(self, action):
        if MessageStatus(self.status) != MessageStatus.PENDING:
            raise ValidationError({"status": [f"Cannot {action} a message in {self.status} status"]})

    def claim(self, token, now=None):
        """Reserve the row for one drain loop."""
        self._assert_pending("claim")
        self.claimed_by = token
        self.claimed_at = as_utc(now) or datetime.now(UTC)
        self.updated_at = self.claimed_at

    def release_claim(self):
        self.claimed_by = None
        self.claimed_at = None

    def mark_sent(self, sent_at=None, transport_message_id=None):
        """The transport accepted the message."""
        self._assert_can_transition(MessageStatus.SENT)

        now = as_utc(sent_at) or datetime.now(UTC)
        self.status = MessageStatus.SENT.value
        self.sent_at = now
        self.last_error = None
        if transport_message_id:
            self.transport_message_id = transport_message_id
        self.release_claim()
        self.updated_at = now

        self.raise_(
            MessageSent(
                message_id=str(self.id),
                recipient_key=self.recipient_key,
                channel=self.channel,
                message_type=self.message_type,
                transport_message_id=transport_message_id,
                sent_at=now,
            )
        )

    def reschedule(self, scheduled_for, reason):
        """Push the message back without spending an attempt (rate limit, send window)."""
        self._assert_pending("reschedule")

        self.scheduled_for = as_utc(scheduled_for)
        self.release_claim()
        self.updated_at = datetime.now(UTC)

        self.raise_(
            MessageRescheduled(
                message_id=str(self.id),
                channel=self.channel,
                reason=reason,
                scheduled_for=self.scheduled_for,
            )
        )

    def record_failed_attempt(self, error, retry_at):
        """A retryable failure: spend one attempt and wait until ``retry_at``."""
        self._assert_pending("retry")
        if self.attempts + 1 >= self.max_attempts:
            raise ValidationError({"attempts": ["No attempts left; mark the message failed instead"]})

        now = datetime.now(UTC)
        self.attempts = self.attempts + 1
        self.last_error = (error or "")[:1000]
        self.scheduled_for = as_utc(retry_at)
        self.release_claim()
        self.updated_at = now

        self.raise_(
            MessageAttemptFailed(
                message_id=str(self.id),
                channel=self.channel,
                error=self.last_error,
                attempts=self.attempts,
                max_attempts=self.max_attempts,
                retry_at=self.scheduled_for,
            )
        )

    def mark_failed(self, error, permanent=False):
        """Terminal failure. Spends the attempt that just failed."""
        self._assert_can_transition(MessageStatus.FAILED)

        now = datetime.now(UTC)
        self.status = MessageStatus.FAILED.value
        self.attempts = min(self.attempts + 1, self.max_attempts)
        self.last_error = (error or "Unknown delivery error")[:1000]
        self.release_claim()
        self.updated_at = now

        self.raise_(
            MessageFailed(
                message_id=str(self.id),
                recipient_key=self.recipient_key,
                channel=self.channel,
                error=self.last_error,
                attempts=self.attempts,
                permanent=permanent,
                failed_at=now,
            )
        )

    def note_infrastructure_error(self, error):
        """Record a problem that is not the message's fault; attempts are untouched."""
        self._assert_pending("annotate")
        self.last_error = (error or "")[:1000]
        self.release_claim()
        self.updated_at = datetime.now(UTC)

    def consume_into_digest(self, digest_id, consumed_at=None):
        """The message was delivered as part of a digest send."""
        self._assert_can_transition(MessageStatus.SENT)

        now = as_utc(consumed_at) or datetime.now(UTC)
        self.status = MessageStatus.SENT.value
        self.sent_at = now
        self.digest_id = digest_id
        self.updated_at = now

        self.raise_(
            MessageDigested(
                message_id=str(self.id),
                digest_id=str(digest_id),
                recipient_key=self.recipient_key,
                channel=self.channel,
                digested_at=now,
            )
        )

    def release_from_digest(self):
        """The destination stopped taking digests; dispatch this message on its own."""
        self._assert_pending("release from digest")

        self.digest_eligible = False
        self.scheduled_for = None
        self.updated_at = datetime.now(UTC)

    # -------------------------------------------------------------------
    # Delivery callbacks (idempotent)
    # -------------------------------------------------------------------
    def _callback_ignored(self):
        # A failed row is terminal; late delivery reports do not touch it
        return MessageStatus(self.status) == MessageStatus.FAILED

    def _promote(self, target):
        current = MessageStatus(self.status)
        if current == MessageStatus.FAILED:
            return
        if _DELIVERY_RANK[target] > _DELIVERY_RANK[current]:
            self.status = target.value

    def confirm_sent(self, at):
        """Transport says the message left its outbox. Returns True if anything changed."""
        if self._callback_ignored():
            return False
        if self.sent_at is not None:
            return False
        self.sent_at = as_utc(at)
        self._promote(MessageStatus.SENT)
        self.release_claim()
        self.updated_at = datetime.now(UTC)
        return True

    def mark_delivered(self, delivered_at=None):
        """Returns True if anything changed."""
        if self._callback_ignored():
            return False
        if self.delivered_at is not None:
            return False

        now = as_utc(delivered_at) or datetime.now(UTC)
        self.delivered_at = now
        if self.sent_at is None:
            self.sent_at = now
        self._promote(MessageStatus.DELIVERED)
        self.release_claim()
        self.updated_at = datetime.now(UTC)

        self.raise_(
            MessageDelivered(
                message_id=str(self.id),
                channel=self.channel,
                delivered_at=now,
            )
        )
        return True

    def mark_read(self, read_at=None):
        """Returns True if anything changed."""
        if self._callback_ignored():
            return False
        if self.read_at is not None:
            return False

        now = as_utc(read_at) or datetime.now(UTC)
        self.read_at = now
        if self.sent_at is None:
            self.sent_at = now
        self._promote(MessageStatus.READ)
        self.release_claim()
        self.updated_at = datetime.now(UTC)

        self.raise_(
            MessageRead(
                message_id=str(self.id),
                channel=self.channel,
                read_at=now,
            )
        )
        return True

    def record_transport_failure(self, error, at=None):
        """A failure reported after the transport accepted the message.

        The message is not re-queued; the report is kept in metadata.
        """
        reported_at = (as_utc(at) or datetime.now(UTC)).isoformat()
        failures = self.get_metadata().get("transport_failures", {})
        if reported_at in failures:
            return False
        failures[reported_at] = (error or "Transport reported failure")[:500]
        self.update_metadata(transport_failures=failures)
        self.updated_at = datetime.now(UTC)
        return True

    # -------------------------------------------------------------------
    # Operator actions
    # -------------------------------------------------------------------
    def requeue(self, scheduled_for=None):
        """Give a failed message a fresh attempt budget."""
        if MessageStatus(self.status) != MessageStatus.FAILED:
            raise ValidationError({"status": ["Only failed messages can be requeued"]})

        now = datetime.now(UTC)
        self.status = MessageStatus.PENDING.value
        self.attempts = 0
        self.last_error = None
        self.scheduled_for = as_utc(scheduled_for) or now
        self.updated_at = now

        self.raise_(
            MessageRequeued(
                message_id=str(self.id),
                channel=self.channel,
                requeued_at=now,
            )
        )
