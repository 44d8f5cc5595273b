"""Shared BDD fixtures and step definitions for the Outbound domain."""

from datetime import UTC, datetime

from outbound.queue.message import MessageStatus, QueuedMessage
from pytest_bdd import given, parsers, then

T0 = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)


def _chat_message():
    m = QueuedMessage.create(
        recipient_key="551188887777",
        channel="chat_api",
        message_type="status_change",
        content="Order #1042 shipped",
    )
    m._events.clear()
    return m


# ---------------------------------------------------------------------------
# Given steps: messages
# ---------------------------------------------------------------------------
@given("a pending chat message", target_fixture="message")
def pending_message():
    return _chat_message()


@given("a sent chat message", target_fixture="message")
def sent_message():
    m = _chat_message()
    m.mark_sent(T0, "wamid-1")
    m._events.clear()
    return m


@given("a failed chat message", target_fixture="message")
def failed_message():
    m = _chat_message()
    m.mark_failed("400 - number blocked", permanent=True)
    m._events.clear()
    return m


# ---------------------------------------------------------------------------
# Then steps: messages
# ---------------------------------------------------------------------------
@then(parsers.cfparse('the message status is "{status}"'))
def message_status_is(message, status):
    assert message.status == MessageStatus(status).value


@then(parsers.cfparse("the message has spent {count:d} attempts"))
def message_attempts(message, count):
    assert message.attempts == count


@then("the message has a delivered timestamp")
def message_has_delivered_at(message):
    assert message.delivered_at is not None
