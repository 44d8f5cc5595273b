"""Domain events for the QueuedMessage aggregate."""

from protean.fields import Boolean, DateTime, Identifier, Integer, String

from outbound.domain import outbound


@outbound.event(part_of="QueuedMessage")
class MessageQueued:
    """A message was accepted into the queue."""

    __version__ = 1

    message_id: Identifier(required=True)
    recipient_key: String(required=True)
    channel: String(required=True)
    message_type: String(required=True)
    priority: Integer(required=True)
    scheduled_for: DateTime()
    digest_eligible: Boolean(default=False)
    queued_at: DateTime(required=True)


@outbound.event(part_of="QueuedMessage")
class MessageSent:
    """The transport accepted the message."""

    __version__ = 1

    message_id: Identifier(required=True)
    recipient_key: String(required=True)
    channel: String(required=True)
    message_type: String(required=True)
    transport_message_id: String()
    sent_at: DateTime(required=True)


@outbound.event(part_of="QueuedMessage")
class MessageRescheduled:
    """The message was pushed back without spending an attempt."""

    __version__ = 1

    message_id: Identifier(required=True)
    channel: String(required=True)
    reason: String(required=True)
    scheduled_for: DateTime()


@outbound.event(part_of="QueuedMessage")
class MessageAttemptFailed:
    """A retryable delivery attempt failed; another attempt is scheduled."""

    __version__ = 1

    message_id: Identifier(required=True)
    channel: String(required=True)
    error: String(required=True)
    attempts: Integer(required=True)
    max_attempts: Integer(required=True)
    retry_at: DateTime()


@outbound.event(part_of="QueuedMessage")
class MessageFailed:
    """The message will not be retried."""

    __version__ = 1

    message_id: Identifier(required=True)
    recipient_key: String(required=True)
    channel: String(required=True)
    error: String(required=True)
    attempts: Integer(required=True)
    permanent: Boolean(default=False)
    failed_at: DateTime(required=True)


@outbound.event(part_of="QueuedMessage")
class MessageDelivered:
    """The transport confirmed delivery to the recipient's device."""

    __version__ = 1

    message_id: Identifier(required=True)
    channel: String(required=True)
    delivered_at: DateTime(required=True)


@outbound.event(part_of="QueuedMessage")
class MessageRead:
    """The transport reported the recipient read the message."""

    __version__ = 1

    message_id: Identifier(required=True)
    channel: String(required=True)
    read_at: DateTime(required=True)


@outbound.event(part_of="QueuedMessage")
class MessageDigested:
    """The message was delivered as part of a digest."""

    __version__ = 1

    message_id: Identifier(required=True)
    digest_id: Identifier(required=True)
    recipient_key: String(required=True)
    channel: String(required=True)
    digested_at: DateTime(required=True)


@outbound.event(part_of="QueuedMessage")
class MessageRequeued:
    """An operator gave a failed message a fresh attempt budget."""

    __version__ = 1

    message_id: Identifier(required=True)
    channel: String(required=True)
    requeued_at: DateTime(required=True)
