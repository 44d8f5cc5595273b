"""BDD tests for the drain loop."""

from datetime import datetime

from outbound.channel import get_sender
from outbound.channel.instance import RegisterChannelInstance
from outbound.queue.enqueue import enqueue
from outbound.queue.message import MessageStatus, QueuedMessage
from outbound.ratelimit.rate_limit import ConfigureRateLimit
from protean import current_domain
from pytest_bdd import given, parsers, scenarios, then, when

scenarios("features/delivery_pipeline.feature")


def _pending():
    return current_domain.repository_for(QueuedMessage).by_status(MessageStatus.PENDING.value)


@given("the chat channel has an active instance")
def chat_instance():
    current_domain.process(
        RegisterChannelInstance(
            channel="chat_api",
            instance_key="instance-main",
            api_url="https://gateway.example.com",
            api_token="live-token-123",
        ),
        asynchronous=False,
    )


@given(parsers.cfparse("the chat channel allows {count:d} messages per minute"))
def chat_minute_ceiling(count):
    current_domain.process(
        ConfigureRateLimit(
            channel="chat_api",
            max_per_minute=count,
            min_delay_between_sends_ms=0,
            respect_send_window=False,
        ),
        asynchronous=False,
    )


@given(parsers.cfparse('the clock reads "{moment}"'))
def clock_reads(clock, moment):
    clock.now = datetime.fromisoformat(moment)


@given(parsers.cfparse('a "{message_type}" message queued for "{recipient}"'))
def queued_chat_message(clock, message_type, recipient):
    enqueue(recipient, "chat_api", message_type, f"A {message_type} message", now=clock.now)


@given(parsers.cfparse('a "{message_type}" email queued for "{recipient}"'))
def queued_email(clock, message_type, recipient):
    enqueue(recipient, "email", message_type, f"A {message_type} message", now=clock.now)


@given(parsers.cfparse('{count:d} "{message_type}" messages queued for "{recipient}"'))
def queued_burst(clock, count, message_type, recipient):
    for n in range(count):
        enqueue(recipient, "chat_api", message_type, f"Update {n}", now=clock.now)


@when("the queue is drained", target_fixture="report")
def drain(dispatcher):
    return dispatcher.drain()


@then(parsers.cfparse("{count:d} messages were sent"))
def messages_sent(report, count):
    assert report.sent == count
    sent = [*get_sender("chat_api").sent_messages, *get_sender("email").sent_messages]
    assert len(sent) == count


@then(parsers.cfparse('the first message sent was a "{message_type}"'))
def first_sent(message_type):
    assert get_sender("chat_api").sent_messages[0]["message_type"] == message_type


@then(parsers.cfparse("{count:d} messages are pending with no attempts spent"))
def pending_untouched(count):
    pending = _pending()
    assert len(pending) == count
    assert all(m.attempts == 0 for m in pending)


@then(parsers.cfparse('the pending message is scheduled for "{moment}"'))
def pending_scheduled_for(moment):
    [message] = _pending()
    assert message.scheduled_for == datetime.fromisoformat(moment)
