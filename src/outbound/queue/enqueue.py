"""Enqueue API — the only way a message enters the queue.

Callers never talk to a transport directly. ``enqueue`` validates and
canonicalizes the input and persists one PENDING row; the Dispatcher takes
it from there. Enqueue errors (bad recipient, bad metadata) are raised to
the caller and no row is queued; an audited enqueue still records the
rejection on its log entry.
"""

import json
from datetime import UTC, datetime

import structlog
from protean.exceptions import ValidationError
from protean.fields import DateTime, Identifier, Integer, String, Text
from protean.utils.globals import current_domain
from protean.utils.mixins import handle

from outbound.audit.log import link_queued_message, open_log_entry, record_enqueue_failure
from outbound.config import get_settings
from outbound.digest.preference import preference_for
from outbound.domain import outbound
from outbound.errors import InvalidMetadata
from outbound.queue.message import Channel, Priority, QueuedMessage, as_utc, default_priority
from outbound.recipient.normalizer import normalize_recipient

logger = structlog.get_logger(__name__)

_SCALARS = (str, int, float, bool, type(None))

ENQUEUE_FIELDS = (
    "recipient",
    "channel",
    "message_type",
    "content",
    "priority",
    "scheduled_for",
    "metadata",
    "subject",
    "recipient_name",
    "organization_id",
    "media_base64",
    "media_url",
    "media_mimetype",
    "media_caption",
    "media_filename",
    "max_attempts",
)


def validate_metadata(metadata, path="metadata"):
    """Metadata is a map of string keys to scalars or nested maps."""
    if metadata is None:
        return {}
    if not isinstance(metadata, dict):
        raise InvalidMetadata(f"{path} must be a map, got {type(metadata).__name__}")
    for key, value in metadata.items():
        if not isinstance(key, str):
            raise InvalidMetadata(f"{path} keys must be strings, got {key!r}")
        if isinstance(value, dict):
            validate_metadata(value, f"{path}.{key}")
        elif not isinstance(value, _SCALARS):
            raise InvalidMetadata(f"{path}.{key} must be a scalar or a map, got {type(value).__name__}")
    return metadata


def _parse_datetime(value):
    if value is None or isinstance(value, datetime):
        return as_utc(value)
    try:
        return as_utc(datetime.fromisoformat(str(value)))
    except ValueError:
        raise ValidationError({"scheduled_for": [f"Invalid datetime: {value}"]}) from None


def build_message(
    recipient,
    channel,
    message_type,
    content,
    priority=None,
    scheduled_for=None,
    metadata=None,
    max_attempts=None,
    now=None,
    **optional,
) -> QueuedMessage:
    """Validate input and build an unsaved PENDING message."""
    if channel not in {c.value for c in Channel}:
        raise ValidationError({"channel": [f"Unknown channel: {channel}"]})
    if not content:
        raise ValidationError({"content": ["Content is required"]})

    now = as_utc(now) or datetime.now(UTC)
    recipient_key = normalize_recipient(recipient, channel)
    metadata = dict(validate_metadata(metadata))
    metadata.setdefault("queued_at", now.isoformat())

    if priority is None:
        priority = default_priority(message_type)
    scheduled_for = _parse_datetime(scheduled_for)

    # Critical messages always go out individually
    digest_eligible = False
    if priority != Priority.CRITICAL.value:
        preference = preference_for(recipient_key, channel)
        if preference is not None and preference.digest_enabled:
            digest_eligible = True
            boundary = preference.next_digest_at(now)
            scheduled_for = max(scheduled_for, boundary) if scheduled_for else boundary

    return QueuedMessage.create(
        recipient_key=recipient_key,
        channel=channel,
        message_type=message_type,
        content=content,
        priority=priority,
        scheduled_for=scheduled_for,
        metadata=metadata,
        max_attempts=max_attempts or get_settings().max_attempts,
        digest_eligible=digest_eligible,
        created_at=now,
        **{k: v for k, v in optional.items() if v is not None},
    )


def enqueue(recipient, channel, message_type, content, **options) -> str:
    """Queue one message and return its id."""
    message = build_message(recipient, channel, message_type, content, **options)
    current_domain.repository_for(QueuedMessage).add(message)

    logger.info(
        "Message queued",
        message_id=str(message.id),
        channel=message.channel,
        message_type=message.message_type,
        priority=message.priority,
        digest_eligible=message.digest_eligible,
    )
    return str(message.id)


def enqueue_batch(inputs) -> dict:
    """Queue each input independently; one bad input does not sink the batch."""
    results = []
    for index, item in enumerate(inputs):
        if not isinstance(item, dict):
            error = f"Expected a message object, got {type(item).__name__}"
            logger.warning("Batch item rejected", index=index, error=error)
            results.append({"index": index, "success": False, "error": error})
            continue
        try:
            queue_id = enqueue(**{k: v for k, v in item.items() if k in ENQUEUE_FIELDS})
            results.append({"index": index, "success": True, "queue_id": queue_id})
        except (ValidationError, TypeError) as exc:
            error = exc.messages if isinstance(exc, ValidationError) else str(exc)
            logger.warning("Batch item rejected", index=index, error=str(error))
            results.append({"index": index, "success": False, "error": error})

    queued = sum(1 for r in results if r["success"])
    return {
        "success": queued == len(results),
        "queued": queued,
        "failed": len(results) - queued,
        "results": results,
    }


def _log_recipient(recipient, channel):
    try:
        return normalize_recipient(recipient, channel)
    except ValidationError:
        return str(recipient or "")[:320] or "unknown"


def enqueue_with_audit(
    recipient,
    channel,
    message_type,
    content,
    order_id=None,
    trigger_type=None,
    **options,
) -> dict:
    """Open a NotificationLog row, then queue the message.

    A rejected enqueue marks the log row ``failed`` and the error is raised
    to the caller as with ``enqueue``.
    """
    log_id = None
    try:
        log_id = open_log_entry(
            _log_recipient(recipient, channel),
            channel,
            message_type,
            order_id=order_id,
            trigger_type=trigger_type,
        )
    except Exception as exc:
        logger.error("Failed to open notification log", channel=channel, error=str(exc))

    metadata = dict(options.pop("metadata", None) or {})
    if log_id:
        metadata["notification_log_id"] = log_id
    if trigger_type:
        metadata["trigger_type"] = trigger_type

    try:
        message = build_message(recipient, channel, message_type, content, metadata=metadata, **options)
    except ValidationError as exc:
        if log_id:
            record_enqueue_failure(log_id, exc.messages)
        logger.warning("Audited enqueue rejected", log_id=log_id, order_id=order_id, error=str(exc.messages))
        raise

    current_domain.repository_for(QueuedMessage).add(message)
    if log_id:
        link_queued_message(log_id, message)

    logger.info(
        "Message queued with audit",
        message_id=str(message.id),
        log_id=log_id,
        order_id=order_id,
        trigger_type=trigger_type,
    )
    return {"queue_id": str(message.id), "log_id": log_id}


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------
@outbound.command(part_of="QueuedMessage")
class EnqueueMessage:
    recipient: String(required=True, max_length=320)
    channel: String(required=True)
    message_type: String(required=True, max_length=100)
    content: Text(required=True)
    priority: Integer(min_value=1, max_value=3)
    scheduled_for: DateTime()
    message_metadata: Text()  # JSON object
    subject: String(max_length=500)
    recipient_name: String(max_length=200)
    organization_id: Identifier()
    media_base64: Text()
    media_url: String(max_length=2000)
    media_mimetype: String(max_length=100)
    media_caption: String(max_length=1000)
    media_filename: String(max_length=255)
    max_attempts: Integer(min_value=1)


@outbound.command(part_of="QueuedMessage")
class EnqueueWithAudit:
    recipient: String(required=True, max_length=320)
    channel: String(required=True)
    message_type: String(required=True, max_length=100)
    content: Text(required=True)
    priority: Integer(min_value=1, max_value=3)
    scheduled_for: DateTime()
    message_metadata: Text()  # JSON object
    subject: String(max_length=500)
    recipient_name: String(max_length=200)
    organization_id: Identifier()
    media_base64: Text()
    media_url: String(max_length=2000)
    media_mimetype: String(max_length=100)
    media_caption: String(max_length=1000)
    media_filename: String(max_length=255)
    max_attempts: Integer(min_value=1)
    order_id: String(max_length=100)
    trigger_type: String(max_length=100)


@outbound.command(part_of="QueuedMessage")
class EnqueueBatch:
    messages: Text(required=True)  # JSON: list of message dicts


def _command_options(command):
    options = {name: getattr(command, name) for name in ENQUEUE_FIELDS if name != "metadata"}
    options["metadata"] = _load_json(command.message_metadata, "metadata") if command.message_metadata else None
    return options


def _load_json(raw, field):
    try:
        return json.loads(raw)
    except ValueError:
        raise ValidationError({field: ["Invalid JSON"]}) from None


@outbound.command_handler(part_of=QueuedMessage)
class EnqueueCommandHandler:
    @handle(EnqueueMessage)
    def handle_enqueue(self, command: EnqueueMessage):
        return enqueue(**_command_options(command))

    @handle(EnqueueWithAudit)
    def handle_enqueue_with_audit(self, command: EnqueueWithAudit):
        return enqueue_with_audit(
            order_id=command.order_id,
            trigger_type=command.trigger_type,
            **_command_options(command),
        )

    @handle(EnqueueBatch)
    def handle_enqueue_batch(self, command: EnqueueBatch):
        inputs = _load_json(command.messages, "messages")
        if not isinstance(inputs, list):
            raise ValidationError({"messages": ["Expected a list of messages"]})
        return enqueue_batch(inputs)
