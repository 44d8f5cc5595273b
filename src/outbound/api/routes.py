"""FastAPI routes for the Outbound domain.

Thin adapters that translate HTTP requests into domain commands.
No business logic — just schema→command→response translation.
"""

import json
from datetime import UTC, datetime

import structlog
from fastapi import APIRouter, HTTPException
from protean.exceptions import ObjectNotFoundError, ValidationError
from protean.utils.globals import current_domain

from outbound.api.schemas import (
    ConfigureRateLimitRequest,
    CountResponse,
    DailyStatsResponse,
    DigestPreferenceRequest,
    DigestReportResponse,
    DrainReportResponse,
    EnqueueBatchRequest,
    EnqueueBatchResponse,
    EnqueueRequest,
    EnqueueResponse,
    EnqueueWithAuditRequest,
    EnqueueWithAuditResponse,
    FlushDigestsRequest,
    IdResponse,
    MessageListResponse,
    MessageResponse,
    ProcessQueueRequest,
    PurgeRequest,
    RateLimitWindowResponse,
    RegisterInstanceRequest,
    RequeueRequest,
    StatusCallbackRequest,
    StatusResponse,
)
from outbound.channel.instance import RegisterChannelInstance
from outbound.digest.aggregator import FlushDigests
from outbound.digest.preference import SetDigestPreference
from outbound.projections.queue_stats import QueueDailyStats
from outbound.queue.dispatcher import ProcessMessageQueue
from outbound.queue.enqueue import EnqueueBatch, EnqueueMessage, EnqueueWithAudit
from outbound.queue.message import Channel, MessageStatus, QueuedMessage
from outbound.queue.operations import PurgeSentMessages, RequeueMessage
from outbound.queue.status import UpdateDeliveryStatus
from outbound.ratelimit.limiter import RateLimiter
from outbound.ratelimit.rate_limit import ConfigureRateLimit

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/outbound", tags=["outbound"])


def _process(command):
    """Run a command, mapping domain errors onto HTTP errors."""
    try:
        return current_domain.process(command, asynchronous=False)
    except ObjectNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=exc.messages) from exc


def _iso(value):
    return value.isoformat() if value else None


def _message_response(message: QueuedMessage) -> MessageResponse:
    return MessageResponse(
        queue_id=str(message.id),
        recipient_key=message.recipient_key,
        channel=message.channel,
        message_type=message.message_type,
        priority=message.priority,
        status=message.status,
        attempts=message.attempts,
        max_attempts=message.max_attempts,
        scheduled_for=_iso(message.scheduled_for),
        sent_at=_iso(message.sent_at),
        delivered_at=_iso(message.delivered_at),
        read_at=_iso(message.read_at),
        last_error=message.last_error,
        transport_message_id=message.transport_message_id,
        digest_eligible=bool(message.digest_eligible),
        digest_id=str(message.digest_id) if message.digest_id else None,
        metadata=message.get_metadata(),
        created_at=_iso(message.created_at),
    )


def _enqueue_fields(body: EnqueueRequest) -> dict:
    fields = body.model_dump(exclude={"metadata", "order_id", "trigger_type"}, exclude_none=True)
    if body.metadata is not None:
        fields["message_metadata"] = json.dumps(body.metadata)
    return fields


# ---------------------------------------------------------------------------
# Enqueue
# ---------------------------------------------------------------------------
@router.post("/messages", status_code=201, response_model=EnqueueResponse)
async def enqueue_message(body: EnqueueRequest) -> EnqueueResponse:
    """Queue one message for delivery."""
    queue_id = _process(EnqueueMessage(**_enqueue_fields(body)))
    return EnqueueResponse(queue_id=queue_id)


@router.post("/messages/audited", status_code=201, response_model=EnqueueWithAuditResponse)
async def enqueue_with_audit(body: EnqueueWithAuditRequest) -> EnqueueWithAuditResponse:
    """Queue one message and open its notification log entry."""
    command = EnqueueWithAudit(
        order_id=body.order_id,
        trigger_type=body.trigger_type,
        **_enqueue_fields(body),
    )
    return EnqueueWithAuditResponse(**_process(command))


@router.post("/messages/batch", status_code=201, response_model=EnqueueBatchResponse)
async def enqueue_batch(body: EnqueueBatchRequest) -> EnqueueBatchResponse:
    """Queue many messages; each one succeeds or fails on its own."""
    command = EnqueueBatch(messages=json.dumps(body.messages, default=str))
    return EnqueueBatchResponse(**_process(command))


# ---------------------------------------------------------------------------
# Queue inspection
# ---------------------------------------------------------------------------
@router.get("/messages", response_model=MessageListResponse)
async def list_messages(status: str = MessageStatus.PENDING.value, channel: str | None = None) -> MessageListResponse:
    """List queued messages by status."""
    if status not in {s.value for s in MessageStatus}:
        raise HTTPException(status_code=422, detail=f"Unknown status: {status}")
    rows = current_domain.repository_for(QueuedMessage).by_status(status, channel=channel)
    return MessageListResponse(messages=[_message_response(m) for m in rows])


@router.get("/messages/{queue_id}", response_model=MessageResponse)
async def get_message(queue_id: str) -> MessageResponse:
    try:
        message = current_domain.repository_for(QueuedMessage).get(queue_id)
    except ObjectNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return _message_response(message)


@router.post("/messages/{queue_id}/requeue", status_code=201, response_model=StatusResponse)
async def requeue_message(queue_id: str, body: RequeueRequest | None = None) -> StatusResponse:
    """Give a failed message a fresh attempt budget."""
    _process(RequeueMessage(message_id=queue_id, scheduled_for=body.scheduled_for if body else None))
    return StatusResponse()


# ---------------------------------------------------------------------------
# Delivery callbacks
# ---------------------------------------------------------------------------
@router.post("/status", response_model=StatusResponse)
async def status_callback(body: StatusCallbackRequest) -> StatusResponse:
    """Delivery status reported by a transport. Always acknowledged."""
    try:
        command = UpdateDeliveryStatus(
            status=body.status,
            transport_message_id=body.transport_message_id,
            queue_id=body.queue_id,
            timestamp=body.timestamp,
            error_detail=body.error_detail,
        )
        current_domain.process(command, asynchronous=False)
    except ValidationError as exc:
        logger.warning("Dropping malformed status callback", errors=exc.messages)
    return StatusResponse()


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------
@router.put("/rate-limits/{channel}", response_model=IdResponse)
async def configure_rate_limit(channel: str, body: ConfigureRateLimitRequest) -> IdResponse:
    command = ConfigureRateLimit(channel=channel, **body.model_dump(exclude_none=True))
    return IdResponse(id=_process(command))


@router.get("/rate-limits/{channel}", response_model=RateLimitWindowResponse)
async def get_rate_limit_window(channel: str) -> RateLimitWindowResponse:
    """Current throughput of a channel against its limits."""
    if channel not in {c.value for c in Channel}:
        raise HTTPException(status_code=404, detail=f"Unknown channel: {channel}")
    state = RateLimiter().window_state(channel, datetime.now(UTC))
    return RateLimitWindowResponse(**state)


@router.put("/preferences/digest", response_model=IdResponse)
async def set_digest_preference(body: DigestPreferenceRequest) -> IdResponse:
    return IdResponse(id=_process(SetDigestPreference(**body.model_dump(exclude_none=True))))


@router.post("/instances", status_code=201, response_model=IdResponse)
async def register_instance(body: RegisterInstanceRequest) -> IdResponse:
    return IdResponse(id=_process(RegisterChannelInstance(**body.model_dump(exclude_none=True))))


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------
@router.get("/stats/{date}", response_model=DailyStatsResponse)
async def get_daily_stats(date: str) -> DailyStatsResponse:
    try:
        view = current_domain.repository_for(QueueDailyStats).get(date)
    except ObjectNotFoundError:
        return DailyStatsResponse(date=date)
    return DailyStatsResponse(
        date=view.date,
        total_queued=view.total_queued or 0,
        total_sent=view.total_sent or 0,
        total_digested=view.total_digested or 0,
        total_retried=view.total_retried or 0,
        total_failed=view.total_failed or 0,
    )


# ---------------------------------------------------------------------------
# Maintenance endpoints for periodic background jobs
# ---------------------------------------------------------------------------
@router.post("/maintenance/dispatch", response_model=DrainReportResponse)
def dispatch(body: ProcessQueueRequest | None = None) -> DrainReportResponse:
    """Run one drain loop.

    Designed to be called periodically by an external scheduler (e.g., every minute).
    The drain sleeps and makes blocking HTTP calls, so the maintenance routes are
    plain functions served from the threadpool.
    """
    command = ProcessMessageQueue(
        as_of=body.as_of if body else None,
        batch_size=body.batch_size if body else None,
    )
    return DrainReportResponse(**_process(command))


@router.post("/maintenance/digests", response_model=DigestReportResponse)
def flush_digests(body: FlushDigestsRequest | None = None) -> DigestReportResponse:
    """Send the due digests (e.g., every 15 minutes)."""
    return DigestReportResponse(**_process(FlushDigests(as_of=body.as_of if body else None)))


@router.post("/maintenance/purge", response_model=CountResponse)
def purge_sent(body: PurgeRequest | None = None) -> CountResponse:
    command = PurgeSentMessages(older_than_hours=body.older_than_hours if body else 24)
    return CountResponse(count=_process(command))
