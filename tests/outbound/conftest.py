from datetime import UTC, datetime, timedelta

import pytest
from protean.integrations.pytest import DomainFixture

# Inside the default 08:00-20:00 UTC send window
NOON = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)


class FakeClock:
    """A clock whose ``sleep`` advances time instead of blocking."""

    def __init__(self, start=NOON):
        self.now = start
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now = self.now + timedelta(seconds=seconds)

    def advance(self, **delta):
        self.now = self.now + timedelta(**delta)
        return self.now


@pytest.fixture(scope="session")
def outbound_bed():
    from outbound.domain import outbound

    bed = DomainFixture(outbound)
    bed.setup()
    yield bed
    bed.teardown()


@pytest.fixture(autouse=True)
def _ctx(outbound_bed):
    from outbound.channel import reset_senders
    from outbound.config import reset_settings

    reset_settings()
    reset_senders()
    with outbound_bed.domain_context():
        yield

        from protean import current_domain

        # Clear all databases
        for _, provider in current_domain.providers.items():
            provider._data_reset()

        # Drain event stores
        current_domain.event_store.store._data_reset()
    reset_senders()
    reset_settings()


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def instances():
    """One connected transport instance per channel (webhook: ``ops-alerts``)."""
    from outbound.channel.instance import RegisterChannelInstance
    from protean import current_domain

    ids = {}
    for channel, key, destination in (
        ("chat_api", "instance-main", None),
        ("email", "mail-main", None),
        ("webhook", "hook-ops", "ops-alerts"),
    ):
        ids[channel] = current_domain.process(
            RegisterChannelInstance(
                channel=channel,
                instance_key=key,
                api_url="https://gateway.example.com",
                api_token="live-token-123",
                destination=destination,
            ),
            asynchronous=False,
        )
    return ids


@pytest.fixture()
def unthrottled():
    """Lift every limit on the chat channel so sends are only paced by the test."""
    from outbound.ratelimit.rate_limit import ConfigureRateLimit
    from protean import current_domain

    current_domain.process(
        ConfigureRateLimit(
            channel="chat_api",
            max_per_minute=1000,
            max_per_hour=10000,
            min_delay_between_sends_ms=0,
            respect_send_window=False,
        ),
        asynchronous=False,
    )


@pytest.fixture()
def dispatcher(clock):
    """A dispatcher on the fake clock with jitter-free backoff."""
    from outbound.queue.backoff import RetryPolicy
    from outbound.queue.dispatcher import QueueDispatcher

    return QueueDispatcher(clock=clock, sleep=clock.sleep, policy=RetryPolicy(jitter=0))
