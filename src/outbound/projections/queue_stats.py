"""QueueDailyStats — per-day throughput of the outbound queue."""

from datetime import datetime

from protean.core.projector import on
from protean.exceptions import ObjectNotFoundError
from protean.fields import DateTime, Identifier, Integer, String
from protean.utils.globals import current_domain

from outbound.domain import outbound
from outbound.queue.events import (
    MessageAttemptFailed,
    MessageDigested,
    MessageFailed,
    MessageQueued,
    MessageSent,
)
from outbound.queue.message import QueuedMessage


@outbound.projection
class QueueDailyStats:
    """Daily counts of queued, sent, retried and failed messages."""

    id = Identifier(identifier=True)
    date = String(required=True)  # ISO date string YYYY-MM-DD
    total_queued = Integer(default=0)
    total_sent = Integer(default=0)
    total_digested = Integer(default=0)
    total_retried = Integer(default=0)
    total_failed = Integer(default=0)
    updated_at = DateTime()


def _date_key(dt: datetime) -> str:
    return dt.strftime("%Y-%m-%d") if dt else ""


def _get_or_create(date_str: str, timestamp: datetime):
    repo = current_domain.repository_for(QueueDailyStats)
    try:
        return repo.get(date_str)
    except ObjectNotFoundError:
        return QueueDailyStats(
            id=date_str,
            date=date_str,
            total_queued=0,
            total_sent=0,
            total_digested=0,
            total_retried=0,
            total_failed=0,
            updated_at=timestamp,
        )


def _bump(counter: str, timestamp: datetime):
    view = _get_or_create(_date_key(timestamp), timestamp)
    setattr(view, counter, (getattr(view, counter) or 0) + 1)
    view.updated_at = timestamp
    current_domain.repository_for(QueueDailyStats).add(view)


@outbound.projector(projector_for=QueueDailyStats, aggregates=[QueuedMessage])
class QueueDailyStatsProjector:
    @on(MessageQueued)
    def on_message_queued(self, event):
        _bump("total_queued", event.queued_at)

    @on(MessageSent)
    def on_message_sent(self, event):
        _bump("total_sent", event.sent_at)

    @on(MessageDigested)
    def on_message_digested(self, event):
        _bump("total_digested", event.digested_at)

    @on(MessageAttemptFailed)
    def on_attempt_failed(self, event):
        _bump("total_retried", event.retry_at)

    @on(MessageFailed)
    def on_message_failed(self, event):
        _bump("total_failed", event.failed_at)
