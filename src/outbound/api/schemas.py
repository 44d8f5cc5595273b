"""Pydantic request/response models for the Outbound API.

API schemas are separate from Protean commands (anti-corruption pattern).
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Request Models
# ---------------------------------------------------------------------------
class EnqueueRequest(BaseModel):
    recipient: str = Field(..., min_length=1, max_length=320, examples=["+55 (11) 98888-7777"])
    channel: str = Field(..., examples=["chat_api"])
    message_type: str = Field(..., min_length=1, max_length=100, examples=["status_change"])
    content: str = Field(..., min_length=1)
    priority: int | None = Field(default=None, ge=1, le=3)
    scheduled_for: datetime | None = None
    metadata: dict[str, Any] | None = None
    subject: str | None = Field(default=None, max_length=500)
    recipient_name: str | None = Field(default=None, max_length=200)
    organization_id: str | None = None
    media_base64: str | None = None
    media_url: str | None = Field(default=None, max_length=2000)
    media_mimetype: str | None = Field(default=None, max_length=100)
    media_caption: str | None = Field(default=None, max_length=1000)
    media_filename: str | None = Field(default=None, max_length=255)
    max_attempts: int | None = Field(default=None, ge=1)


class EnqueueWithAuditRequest(EnqueueRequest):
    order_id: str | None = Field(default=None, max_length=100)
    trigger_type: str | None = Field(default=None, max_length=100)


class EnqueueBatchRequest(BaseModel):
    messages: list[dict[str, Any]] = Field(..., min_length=1)


class StatusCallbackRequest(BaseModel):
    status: str | None = Field(default=None, examples=["delivered"])
    transport_message_id: str | None = None
    queue_id: str | None = None
    timestamp: datetime | None = None
    error_detail: str | None = None


class ProcessQueueRequest(BaseModel):
    as_of: datetime | None = None
    batch_size: int | None = Field(default=None, ge=1)


class FlushDigestsRequest(BaseModel):
    as_of: datetime | None = None


class RequeueRequest(BaseModel):
    scheduled_for: datetime | None = None


class PurgeRequest(BaseModel):
    older_than_hours: int = Field(default=24, ge=1)


class ConfigureRateLimitRequest(BaseModel):
    max_per_minute: int | None = Field(default=None, ge=1)
    max_per_hour: int | None = Field(default=None, ge=1)
    min_delay_between_sends_ms: int | None = Field(default=None, ge=0)
    send_window_start: str | None = Field(default=None, pattern=r"^\d{2}:\d{2}$", examples=["08:00"])
    send_window_end: str | None = Field(default=None, pattern=r"^\d{2}:\d{2}$", examples=["20:00"])
    respect_send_window: bool | None = None
    timezone: str | None = Field(default=None, examples=["America/Sao_Paulo"])


class DigestPreferenceRequest(BaseModel):
    recipient: str = Field(..., min_length=1, max_length=320)
    channel: str
    digest_enabled: bool
    digest_interval_minutes: int | None = Field(default=None, ge=1)


class RegisterInstanceRequest(BaseModel):
    channel: str
    instance_key: str = Field(..., min_length=1, max_length=200)
    api_url: str | None = Field(default=None, max_length=2000)
    api_token: str | None = Field(default=None, max_length=500)
    destination: str | None = Field(default=None, max_length=100)
    connected: bool = True


# ---------------------------------------------------------------------------
# Response Models
# ---------------------------------------------------------------------------
class StatusResponse(BaseModel):
    status: str = "ok"


class EnqueueResponse(BaseModel):
    queue_id: str


class EnqueueWithAuditResponse(BaseModel):
    queue_id: str
    log_id: str | None = None


class BatchResultItem(BaseModel):
    index: int
    success: bool
    queue_id: str | None = None
    error: Any = None


class EnqueueBatchResponse(BaseModel):
    success: bool
    queued: int
    failed: int
    results: list[BatchResultItem]


class IdResponse(BaseModel):
    id: str


class CountResponse(BaseModel):
    count: int


class MessageResponse(BaseModel):
    queue_id: str
    recipient_key: str
    channel: str
    message_type: str
    priority: int
    status: str
    attempts: int
    max_attempts: int
    scheduled_for: str | None = None
    sent_at: str | None = None
    delivered_at: str | None = None
    read_at: str | None = None
    last_error: str | None = None
    transport_message_id: str | None = None
    digest_eligible: bool = False
    digest_id: str | None = None
    metadata: dict[str, Any] = {}
    created_at: str | None = None


class MessageListResponse(BaseModel):
    messages: list[MessageResponse]


class RateLimitWindowResponse(BaseModel):
    channel: str
    sent_last_minute: int
    sent_last_hour: int
    last_sent_at: str | None = None
    average_inter_send_delay_ms: int
    max_per_minute: int
    max_per_hour: int
    min_delay_between_sends_ms: int
    in_send_window: bool


class DailyStatsResponse(BaseModel):
    date: str
    total_queued: int = 0
    total_sent: int = 0
    total_digested: int = 0
    total_retried: int = 0
    total_failed: int = 0


class DrainReportResponse(BaseModel):
    run_id: str
    processed: int
    sent: int
    retried: int
    failed: int
    rescheduled: int
    skipped: int


class DigestReportResponse(BaseModel):
    digests_sent: int
    items_consumed: int
    deferred: int
    failed: int
