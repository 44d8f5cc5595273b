"""Error taxonomy for the delivery pipeline.

Enqueue-time errors are raised to the caller. Dispatch-time errors never
reach the enqueuing code: they end up on the queue row as ``last_error``.
"""

from protean.exceptions import ValidationError


class InvalidRecipient(ValidationError):
    """The recipient cannot be canonicalized; the message is never queued."""

    def __init__(self, recipient, reason="Invalid recipient"):
        self.recipient = recipient
        self.reason = reason
        super().__init__({"recipient": [f"{reason}: {recipient!r}"]})


class InvalidMetadata(ValidationError):
    """Metadata is not a map of string keys to scalars or nested maps."""

    def __init__(self, reason):
        super().__init__({"metadata": [reason]})


class NoActiveChannelInstance(Exception):
    """No configured and active transport instance exists for a channel."""

    def __init__(self, channel, destination=None):
        self.channel = channel
        self.destination = destination
        target = f"{channel}/{destination}" if destination else channel
        super().__init__(f"No active channel instance for {target}")


class TransportError(Exception):
    """A transport call did not succeed."""

    retryable = True

    def __init__(self, message, status_code=None):
        self.status_code = status_code
        super().__init__(message)


class TransientTransportError(TransportError):
    """Timeout, 5xx or "not connected": worth another attempt later."""

    retryable = True


class PermanentTransportError(TransportError):
    """Recipient rejected or blocked: retrying only wastes quota."""

    retryable = False


class RateLimited(Exception):
    """A channel is over its ceiling or outside its send window."""

    def __init__(self, channel, retry_after, reason=""):
        self.channel = channel
        self.retry_after = retry_after
        self.reason = reason
        super().__init__(f"Channel {channel} rate limited for {retry_after}: {reason}")


class UnknownCallbackTarget(Exception):
    """A delivery callback references no known queue row."""

    def __init__(self, transport_message_id=None, queue_id=None):
        self.transport_message_id = transport_message_id
        self.queue_id = queue_id
        super().__init__(f"No queued message for transport id {transport_message_id!r} / queue id {queue_id!r}")
