"""Status Tracker — applies delivery callbacks from the transports.

Callbacks are at-least-once and may arrive out of order. Every update is
idempotent (a timestamp that is already set is never overwritten) and the
status never moves backwards. A ``failed`` report for a message the
transport had accepted is kept in the row's metadata; the message is not
re-queued.

The caller (a transport webhook) always gets a success answer: unknown ids
and unknown statuses are logged and dropped so the transport does not
retry them forever.
"""

from datetime import UTC, datetime

import structlog
from protean.exceptions import ObjectNotFoundError, ValidationError
from protean.fields import DateTime, Identifier, String, Text
from protean.utils.globals import current_domain
from protean.utils.mixins import handle

from outbound.domain import outbound
from outbound.errors import UnknownCallbackTarget
from outbound.queue.message import QueuedMessage, as_utc

logger = structlog.get_logger(__name__)

CALLBACK_STATUSES = ("sent", "delivered", "read", "failed")


def find_callback_target(transport_message_id=None, queue_id=None) -> QueuedMessage:
    repo = current_domain.repository_for(QueuedMessage)
    if queue_id:
        try:
            return repo.get(queue_id)
        except (ObjectNotFoundError, ValidationError):
            pass
    if transport_message_id:
        try:
            return repo.by_transport_id(transport_message_id)
        except ObjectNotFoundError:
            pass
    raise UnknownCallbackTarget(transport_message_id, queue_id)


def update_status(
    status,
    transport_message_id=None,
    queue_id=None,
    timestamp=None,
    error_detail=None,
) -> bool:
    """Apply one delivery callback. Always returns True."""
    status = (status or "").lower()
    if status not in CALLBACK_STATUSES:
        logger.warning("Ignoring callback with unknown status", status=status, transport_message_id=transport_message_id)
        return True

    try:
        message = find_callback_target(transport_message_id, queue_id)
    except UnknownCallbackTarget as exc:
        logger.warning("Dropping callback for unknown message", error=str(exc), status=status)
        return True

    at = as_utc(timestamp) or datetime.now(UTC)
    if status == "sent":
        changed = message.confirm_sent(at)
    elif status == "delivered":
        changed = message.mark_delivered(at)
    elif status == "read":
        changed = message.mark_read(at)
    else:
        changed = message.record_transport_failure(error_detail, at)

    if changed:
        current_domain.repository_for(QueuedMessage).add(message)

    logger.info(
        "Delivery status callback applied",
        message_id=str(message.id),
        callback_status=status,
        status=message.status,
        changed=changed,
    )
    return True


@outbound.command(part_of="QueuedMessage")
class UpdateDeliveryStatus:
    """A transport reported what happened to a message it accepted."""

    status: String(required=True, max_length=20)
    transport_message_id: String(max_length=200)
    queue_id: Identifier()
    timestamp: DateTime()
    error_detail: Text()


@outbound.command_handler(part_of=QueuedMessage)
class UpdateDeliveryStatusHandler:
    @handle(UpdateDeliveryStatus)
    def update_delivery_status(self, command: UpdateDeliveryStatus):
        return update_status(
            command.status,
            transport_message_id=command.transport_message_id,
            queue_id=command.queue_id,
            timestamp=command.timestamp,
            error_detail=command.error_detail,
        )
