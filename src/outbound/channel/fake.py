"""Fake sender — records sent messages for testing."""

from uuid import uuid4

from outbound.channel.port import ChannelSender, failed_result, sent_result
from outbound.queue.backoff import FailureKind


class FakeChannelSender(ChannelSender):
    """Sender that records messages in memory for test assertions."""

    def __init__(self, channel: str):
        self.channel = channel
        self.sent_messages: list[dict] = []
        self.calls = 0
        self.should_succeed = True
        self.failure_reason = "Delivery failed"
        self.failure = FailureKind.TRANSIENT
        self.fail_times = None

    def configure(
        self,
        should_succeed: bool = True,
        failure_reason: str = "Delivery failed",
        failure: FailureKind = FailureKind.TRANSIENT,
        fail_times: int | None = None,
    ):
        """Configure the fake sender behavior for testing.

        With ``fail_times`` set, only the first N calls fail.
        """
        self.should_succeed = should_succeed
        self.failure_reason = failure_reason
        self.failure = failure
        self.fail_times = fail_times

    def send(self, message, instance) -> dict:
        self.calls += 1

        failing = not self.should_succeed
        if self.fail_times is not None:
            failing = self.calls <= self.fail_times
        if failing:
            return failed_result(self.failure_reason, self.failure)

        transport_id = f"{self.channel}-{uuid4().hex[:12]}"
        self.sent_messages.append(
            {
                "message_id": transport_id,
                "queue_id": str(message.id),
                "to": message.recipient_key,
                "message_type": message.message_type,
                "subject": message.subject,
                "content": message.content,
                "priority": message.priority,
                "instance_key": getattr(instance, "instance_key", None),
            }
        )
        return sent_result(transport_id)

    def reset(self):
        """Clear sent messages (useful between tests)."""
        self.sent_messages.clear()
        self.calls = 0
        self.configure()
