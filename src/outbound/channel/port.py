"""Channel sender port — abstract interface for outbound transports."""

from abc import ABC, abstractmethod

from outbound.queue.backoff import FailureKind

# Response bodies quoted in errors are cut to this length
ERROR_BODY_LIMIT = 200


def sent_result(message_id=None) -> dict:
    return {"status": "sent", "message_id": message_id}


def failed_result(error, failure=FailureKind.TRANSIENT, status_code=None) -> dict:
    return {
        "status": "failed",
        "message_id": None,
        "error": error,
        "failure": failure.value,
        "status_code": status_code,
    }


def failure_for_status(status_code) -> FailureKind:
    """4xx responses other than 408/429 are the recipient's problem; the rest may clear up."""
    if status_code is None:
        return FailureKind.TRANSIENT
    if 400 <= status_code < 500 and status_code not in (408, 429):
        return FailureKind.PERMANENT
    return FailureKind.TRANSIENT


class ChannelSender(ABC):
    """Abstract interface for channel senders."""

    @abstractmethod
    def send(self, message, instance) -> dict:
        """Deliver one queued message through ``instance``.

        Returns:
            dict with keys: status ("sent" or "failed"), message_id,
            error (on failure), failure (a FailureKind value, on failure)
        """
        ...
