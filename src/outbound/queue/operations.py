"""Operator commands — requeue a failed message, purge old sent rows."""

from datetime import UTC, datetime

import structlog
from protean.fields import DateTime, Identifier, Integer
from protean.utils.globals import current_domain
from protean.utils.mixins import handle

from outbound.domain import outbound
from outbound.queue.message import QueuedMessage
from outbound.queue.repository import retention_cutoff

logger = structlog.get_logger(__name__)


@outbound.command(part_of="QueuedMessage")
class RequeueMessage:
    """Give a failed message a fresh attempt budget."""

    message_id: Identifier(required=True)
    scheduled_for: DateTime()


@outbound.command(part_of="QueuedMessage")
class PurgeSentMessages:
    """Delete rows that went out more than ``older_than_hours`` ago."""

    older_than_hours: Integer(min_value=1, default=24)
    as_of: DateTime()


@outbound.command_handler(part_of=QueuedMessage)
class QueueOperationsHandler:
    @handle(RequeueMessage)
    def requeue(self, command: RequeueMessage):
        repo = current_domain.repository_for(QueuedMessage)
        message = repo.get(command.message_id)
        message.requeue(command.scheduled_for)
        repo.add(message)
        logger.info("Message requeued", message_id=str(message.id), channel=message.channel)

    @handle(PurgeSentMessages)
    def purge(self, command: PurgeSentMessages):
        repo = current_domain.repository_for(QueuedMessage)
        cutoff = retention_cutoff(command.as_of or datetime.now(UTC), command.older_than_hours or 24)

        purged = 0
        for message in repo.sent_before(cutoff):
            repo._dao.delete(message)
            purged += 1

        logger.info("Sent messages purged", purged=purged, cutoff=cutoff.isoformat())
        return purged
