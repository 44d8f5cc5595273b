"""NotificationLog — audit twin of a queued message.

One row per message that was enqueued "with audit", carrying the business
context the queue row does not know about (order, trigger). The row is
written before the message is queued, so a rejected enqueue still leaves a
``failed`` entry behind, and is updated when the Dispatcher reaches an
outcome. Writes are best-effort: a failing audit write is logged and never
rolls back the queue transition.
"""

from datetime import UTC, datetime
from enum import Enum
from uuid import uuid4

import structlog
from protean.fields import DateTime, Identifier, String
from protean.utils.globals import current_domain

from outbound.domain import outbound

logger = structlog.get_logger(__name__)


class LogStatus(Enum):
    QUEUED = "queued"
    SENT = "sent"
    FAILED = "failed"


@outbound.projection
class NotificationLog:
    log_id: Identifier(identifier=True, required=True)
    queue_id: Identifier()
    order_id: String(max_length=100)
    channel: String(required=True)
    recipient: String(required=True, max_length=320)
    trigger_type: String(max_length=100)
    message_type: String(required=True, max_length=100)
    status: String(choices=LogStatus, default=LogStatus.QUEUED.value)
    error_message: String(max_length=1000)
    created_at: DateTime()
    updated_at: DateTime()


def open_log_entry(recipient, channel, message_type, order_id=None, trigger_type=None, log_id=None) -> str:
    """Record the audit row before the message is queued and return its id."""
    now = datetime.now(UTC)
    entry = NotificationLog(
        log_id=log_id or str(uuid4()),
        order_id=order_id,
        channel=channel,
        recipient=recipient,
        trigger_type=trigger_type,
        message_type=message_type,
        status=LogStatus.QUEUED.value,
        created_at=now,
        updated_at=now,
    )
    current_domain.repository_for(NotificationLog).add(entry)
    return str(entry.log_id)


def _update(entry, **values):
    for key, value in values.items():
        setattr(entry, key, value)
    entry.updated_at = datetime.now(UTC)
    current_domain.repository_for(NotificationLog).add(entry)


def link_queued_message(log_id, message) -> bool:
    """Point the audit row at the queued message."""
    try:
        entry = current_domain.repository_for(NotificationLog).get(log_id)
        _update(entry, queue_id=str(message.id), recipient=message.recipient_key)
        return True
    except Exception as exc:
        logger.error("Failed to link notification log", log_id=str(log_id), error=str(exc))
        return False


def record_enqueue_failure(log_id, error) -> bool:
    """The message never made it into the queue."""
    try:
        entry = current_domain.repository_for(NotificationLog).get(log_id)
        _update(entry, status=LogStatus.FAILED.value, error_message=str(error)[:1000])
        return True
    except Exception as exc:
        logger.error("Failed to update notification log", log_id=str(log_id), error=str(exc))
        return False


def record_queue_outcome(queue_id, status, error=None) -> bool:
    """Mirror a terminal dispatch outcome onto the audit row, if there is one."""
    try:
        repo = current_domain.repository_for(NotificationLog)
        rows = repo._dao.query.filter(queue_id=str(queue_id)).all().items
        if not rows:
            return False

        _update(rows[0], status=LogStatus(status).value, error_message=(error or "")[:1000] or None)
        return True
    except Exception as exc:
        logger.error("Failed to update notification log", queue_id=str(queue_id), error=str(exc))
        return False
