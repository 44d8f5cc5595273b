"""Application tests for the drain loop."""

from datetime import UTC, datetime, timedelta

from outbound.audit.log import LogStatus, NotificationLog
from outbound.channel import get_sender, set_sender
from outbound.queue.backoff import FailureKind
from outbound.queue.dispatcher import ProcessMessageQueue
from outbound.queue.enqueue import enqueue, enqueue_with_audit
from outbound.queue.message import MessageStatus, QueuedMessage
from outbound.ratelimit.rate_limit import ConfigureRateLimit
from protean import current_domain


def _queue(clock, n=0, **overrides):
    """Queue a chat message created ``n`` seconds into the past ten minutes."""
    defaults = {
        "recipient": "11 8888-7777",
        "channel": "chat_api",
        "message_type": "status_change",
        "content": f"Update {n}",
        "now": clock.now - timedelta(minutes=10) + timedelta(seconds=n),
    }
    defaults.update(overrides)
    return enqueue(defaults.pop("recipient"), defaults.pop("channel"), defaults.pop("message_type"), **defaults)


def _get(queue_id):
    return current_domain.repository_for(QueuedMessage).get(queue_id)


class TestDispatchOrder:
    def test_priority_first(self, clock, dispatcher, instances, unthrottled):
        _queue(clock, 1, message_type="daily_report")
        _queue(clock, 2, message_type="status_change")
        _queue(clock, 3, message_type="emergency_alert")

        report = dispatcher.drain()

        assert report.sent == 3
        assert [m["priority"] for m in get_sender("chat_api").sent_messages] == [1, 2, 3]

    def test_fifo_inside_a_priority_band(self, clock, dispatcher, instances, unthrottled):
        first = _queue(clock, 1)
        second = _queue(clock, 2)

        dispatcher.drain()

        sent = get_sender("chat_api").sent_messages
        assert [m["queue_id"] for m in sent] == [first, second]

    def test_future_messages_wait(self, clock, dispatcher, instances, unthrottled):
        queue_id = _queue(clock, scheduled_for=clock.now + timedelta(minutes=5))

        assert dispatcher.drain().processed == 0
        clock.advance(minutes=5)
        assert dispatcher.drain().sent == 1
        assert _get(queue_id).status == MessageStatus.SENT.value

    def test_batch_size_limits_one_run(self, clock, instances, unthrottled):
        from outbound.queue.dispatcher import QueueDispatcher

        for n in range(4):
            _queue(clock, n)

        report = QueueDispatcher(clock=clock, sleep=clock.sleep, batch_size=3).drain()
        assert report.processed == 3

    def test_query_limit_keeps_the_most_urgent_rows(self, clock, monkeypatch):
        from outbound.config import reset_settings

        first = _queue(clock, 1, message_type="daily_report")
        _queue(clock, 2, message_type="daily_report")
        _queue(clock, 3, message_type="daily_report")
        critical = _queue(clock, 4, message_type="emergency_alert")

        monkeypatch.setenv("OUTBOUND_QUERY_LIMIT", "2")
        reset_settings()
        due = current_domain.repository_for(QueuedMessage).due_for_dispatch(clock.now)

        assert [m.id for m in due] == [critical, first]


class TestSuccessfulSend:
    def test_sent_row_carries_transport_id(self, clock, dispatcher, instances, unthrottled):
        queue_id = _queue(clock)
        dispatcher.drain()

        message = _get(queue_id)
        assert message.status == MessageStatus.SENT.value
        assert message.sent_at == clock.now
        assert message.transport_message_id == get_sender("chat_api").sent_messages[0]["message_id"]
        assert message.claimed_by is None

    def test_sender_receives_the_active_instance(self, clock, dispatcher, instances, unthrottled):
        _queue(clock)
        dispatcher.drain()
        assert get_sender("chat_api").sent_messages[0]["instance_key"] == "instance-main"

    def test_audit_log_follows_the_outcome(self, clock, dispatcher, instances, unthrottled):
        result = enqueue_with_audit("11 8888-7777", "chat_api", "status_change", "Shipped", order_id="ORD-1")
        dispatcher.drain()

        log = current_domain.repository_for(NotificationLog).get(result["log_id"])
        assert log.status == LogStatus.SENT.value


class TestRateLimiting:
    def test_min_delay_is_slept_out_between_sends(self, clock, dispatcher, instances):
        for n in range(3):
            _queue(clock, n)

        report = dispatcher.drain()

        assert report.sent == 3
        assert clock.sleeps == [3.0, 3.0]

    def test_minute_ceiling_reschedules_without_spending_attempts(self, clock, dispatcher, instances):
        current_domain.process(
            ConfigureRateLimit(
                channel="chat_api",
                max_per_minute=2,
                min_delay_between_sends_ms=0,
                respect_send_window=False,
            ),
            asynchronous=False,
        )
        ids = [_queue(clock, n) for n in range(5)]
        started = clock.now

        report = dispatcher.drain()

        assert report.sent == 2
        assert report.rescheduled == 3
        for queue_id in ids[2:]:
            message = _get(queue_id)
            assert message.status == MessageStatus.PENDING.value
            assert message.attempts == 0
            assert message.scheduled_for == started + timedelta(seconds=60)

        clock.advance(seconds=61)
        report = dispatcher.drain()
        assert report.sent == 2
        assert report.rescheduled == 1

    def test_critical_message_outside_send_window_waits_for_opening(self, clock, dispatcher, instances):
        clock.now = datetime(2026, 3, 10, 22, 0, tzinfo=UTC)
        queue_id = _queue(clock, message_type="emergency_alert", content="Gateway down")

        report = dispatcher.drain()

        message = _get(queue_id)
        assert report.rescheduled == 1
        assert message.status == MessageStatus.PENDING.value
        assert message.attempts == 0
        assert message.scheduled_for == datetime(2026, 3, 11, 8, 0, tzinfo=UTC)
        assert get_sender("chat_api").sent_messages == []

    def test_blocked_channel_does_not_block_other_channels(self, clock, dispatcher, instances):
        clock.now = datetime(2026, 3, 10, 22, 0, tzinfo=UTC)
        current_domain.process(
            ConfigureRateLimit(channel="email", respect_send_window=False, min_delay_between_sends_ms=0),
            asynchronous=False,
        )
        _queue(clock, 1)
        email_id = _queue(clock, 2, recipient="ops@example.com", channel="email")

        report = dispatcher.drain()

        assert report.rescheduled == 1
        assert _get(email_id).status == MessageStatus.SENT.value


class TestFailures:
    def test_transient_failure_backs_off(self, clock, dispatcher, instances, unthrottled):
        get_sender("chat_api").configure(should_succeed=False, failure_reason="503 - upstream down")
        queue_id = _queue(clock)

        report = dispatcher.drain()

        message = _get(queue_id)
        assert report.retried == 1
        assert message.status == MessageStatus.PENDING.value
        assert message.attempts == 1
        assert message.last_error == "503 - upstream down"
        assert message.scheduled_for == clock.now + timedelta(seconds=10)

    def test_attempts_never_exceed_max(self, clock, dispatcher, instances, unthrottled):
        get_sender("chat_api").configure(should_succeed=False)
        queue_id = _queue(clock)

        dispatcher.drain()
        clock.advance(seconds=10)
        dispatcher.drain()
        assert _get(queue_id).attempts == 2
        assert _get(queue_id).scheduled_for == clock.now + timedelta(seconds=20)

        clock.advance(seconds=20)
        report = dispatcher.drain()
        assert report.failed == 1

        clock.advance(hours=1)
        assert dispatcher.drain().processed == 0

        message = _get(queue_id)
        assert message.status == MessageStatus.FAILED.value
        assert message.attempts == 3
        assert get_sender("chat_api").calls == 3

    def test_succeeds_after_a_retry(self, clock, dispatcher, instances, unthrottled):
        get_sender("chat_api").configure(fail_times=1)
        queue_id = _queue(clock)

        dispatcher.drain()
        clock.advance(seconds=10)
        dispatcher.drain()

        message = _get(queue_id)
        assert message.status == MessageStatus.SENT.value
        assert message.attempts == 1

    def test_permanent_failure_is_terminal_at_once(self, clock, dispatcher, instances, unthrottled):
        get_sender("chat_api").configure(
            should_succeed=False,
            failure_reason="400 - number blocked",
            failure=FailureKind.PERMANENT,
        )
        result = enqueue_with_audit("11 8888-7777", "chat_api", "status_change", "Shipped")

        report = dispatcher.drain()

        message = _get(result["queue_id"])
        assert report.failed == 1
        assert message.status == MessageStatus.FAILED.value
        assert message.attempts == 1
        log = current_domain.repository_for(NotificationLog).get(result["log_id"])
        assert log.status == LogStatus.FAILED.value
        assert log.error_message == "400 - number blocked"

    def test_sender_exception_is_a_transient_failure(self, clock, dispatcher, instances, unthrottled):
        class Exploding:
            def send(self, message, instance):
                raise RuntimeError("socket closed")

        set_sender("chat_api", Exploding())
        queue_id = _queue(clock)

        report = dispatcher.drain()

        assert report.retried == 1
        assert _get(queue_id).last_error == "socket closed"

    def test_failed_row_is_left_alone(self, clock, dispatcher, instances, unthrottled):
        get_sender("chat_api").configure(should_succeed=False, failure=FailureKind.PERMANENT)
        queue_id = _queue(clock)
        dispatcher.drain()
        failed = _get(queue_id)

        get_sender("chat_api").configure()
        clock.advance(days=1)
        dispatcher.drain()

        again = _get(queue_id)
        assert again.status == MessageStatus.FAILED.value
        assert again.attempts == failed.attempts
        assert again.last_error == failed.last_error


class TestChannelInstances:
    def test_no_instance_leaves_row_pending(self, clock, dispatcher, unthrottled):
        first = _queue(clock, 1)
        second = _queue(clock, 2)

        report = dispatcher.drain()

        assert report.skipped == 2
        for queue_id in (first, second):
            message = _get(queue_id)
            assert message.status == MessageStatus.PENDING.value
            assert message.attempts == 0
        assert "No active channel instance" in _get(first).last_error

    def test_revoked_credentials_leave_row_pending(self, clock, dispatcher, instances, unthrottled):
        get_sender("chat_api").configure(
            should_succeed=False,
            failure_reason="Authentication failed with all header styles (401)",
            failure=FailureKind.NO_INSTANCE,
        )
        first = _queue(clock, 1)
        _queue(clock, 2)

        report = dispatcher.drain()

        assert report.skipped == 2
        assert get_sender("chat_api").calls == 1
        assert _get(first).attempts == 0
        assert _get(first).status == MessageStatus.PENDING.value

    def test_dead_channel_does_not_crowd_out_the_batch(self, clock, unthrottled):
        from outbound.channel.instance import RegisterChannelInstance
        from outbound.queue.dispatcher import QueueDispatcher

        current_domain.process(
            RegisterChannelInstance(
                channel="chat_api",
                instance_key="instance-main",
                api_url="https://gateway.example.com",
                api_token="live-token-123",
            ),
            asynchronous=False,
        )
        # Critical email rows come first, but email has no instance
        for n in range(2):
            _queue(clock, n, recipient="ops@example.com", channel="email", message_type="emergency_alert")
        chat = _queue(clock, 5)

        report = QueueDispatcher(clock=clock, sleep=clock.sleep, batch_size=2).drain()

        assert report.sent == 1
        assert report.skipped == 2
        assert _get(chat).status == MessageStatus.SENT.value

    def test_webhook_destination_without_instance(self, clock, dispatcher, instances):
        queue_id = _queue(clock, recipient="sales-alerts", channel="webhook")
        dispatcher.drain()
        assert _get(queue_id).status == MessageStatus.PENDING.value


class TestClaims:
    def test_live_claim_is_not_dispatched(self, clock, dispatcher, instances, unthrottled):
        queue_id = _queue(clock)
        repo = current_domain.repository_for(QueuedMessage)
        message = repo.get(queue_id)
        message.claim("another-loop", clock.now)
        repo.add(message)

        assert dispatcher.drain().processed == 0

        clock.advance(seconds=301)
        assert dispatcher.drain().sent == 1


class TestProcessMessageQueueCommand:
    def test_command_returns_the_report(self, instances, unthrottled):
        enqueue("11 8888-7777", "chat_api", "status_change", "Shipped")

        report = current_domain.process(ProcessMessageQueue(), asynchronous=False)

        assert report["processed"] == 1
        assert report["sent"] == 1
        assert report["results"][0]["outcome"] == "sent"
        assert report["run_id"]
