"""Queue Store queries.

The custom repository is what ``current_domain.repository_for(QueuedMessage)``
returns. Status, due time and send time are filtered in the store and rows
come back ordered by priority, so the query limit never cuts off a more
urgent row in favour of a less urgent one. Claims and the attempt budget
are checked in Python on the rows that come back.
"""

from datetime import timedelta

from protean.exceptions import ObjectNotFoundError
from protean.utils.query import Q

from outbound.config import get_settings
from outbound.domain import outbound
from outbound.queue.message import MessageStatus, QueuedMessage, as_utc

WENT_OUT = [MessageStatus.SENT.value, MessageStatus.DELIVERED.value, MessageStatus.READ.value]


def dispatch_order(message):
    """Priority first (1 before 3), then FIFO inside a priority band."""
    return (
        message.priority,
        as_utc(message.scheduled_for or message.created_at),
        as_utc(message.created_at),
    )


def _due(now):
    return Q(scheduled_for__isnull=True) | Q(scheduled_for__lte=as_utc(now))


@outbound.repository(part_of=QueuedMessage)
class QueuedMessageRepository:
    def _filter(self, *args, order_by=None, **filters):
        query = self._dao.query.filter(*args, **filters)
        if order_by:
            query = query.order_by(order_by)
        return query.limit(get_settings().query_limit).all().items

    def by_status(self, status, channel=None):
        filters = {"status": status}
        if channel:
            filters["channel"] = channel
        return self._filter(order_by=["created_at"], **filters)

    def due_for_dispatch(self, now, claim_ttl_seconds=None, limit=None):
        """Eligible rows in dispatch order."""
        ttl = claim_ttl_seconds or get_settings().claim_ttl_seconds
        pending = self._filter(
            _due(now),
            status=MessageStatus.PENDING.value,
            digest_eligible=False,
            order_by=["priority", "created_at"],
        )
        eligible = sorted(
            (m for m in pending if m.is_eligible(now, ttl)),
            key=dispatch_order,
        )
        return eligible[:limit] if limit else eligible

    def sent_since(self, channel, since):
        """Individually sent rows of a channel since ``since``, newest first.

        Digest constituents are excluded: only the digest itself went out.
        Rows already delivered or read were sent too, so they count.
        """
        return self._filter(
            channel=channel,
            status__in=WENT_OUT,
            sent_at__gte=as_utc(since),
            digest_id__isnull=True,
            order_by=["-sent_at"],
        )

    def pending_digest_items(self, now):
        pending = self._filter(
            _due(now),
            status=MessageStatus.PENDING.value,
            digest_eligible=True,
            order_by=["priority", "created_at"],
        )
        return sorted(pending, key=dispatch_order)

    def held_for_digest(self, recipient_key, channel):
        """Pending rows of one destination still waiting for a digest."""
        return self._filter(
            recipient_key=recipient_key,
            channel=channel,
            status=MessageStatus.PENDING.value,
            digest_eligible=True,
            order_by=["created_at"],
        )

    def by_transport_id(self, transport_message_id):
        rows = self._filter(transport_message_id=transport_message_id)
        if not rows:
            raise ObjectNotFoundError(f"No message with transport id {transport_message_id}")
        return rows[0]

    def sent_before(self, cutoff):
        """Rows that went out (sent, delivered or read) before ``cutoff``."""
        return self._filter(status__in=WENT_OUT, sent_at__lt=as_utc(cutoff), order_by=["sent_at"])


def retention_cutoff(now, hours):
    return as_utc(now) - timedelta(hours=hours)
