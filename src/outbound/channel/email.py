"""Email sender — delivers through an HTTP email API (``POST {base}/send``)."""

import httpx
import structlog

from outbound.channel.port import (
    ERROR_BODY_LIMIT,
    ChannelSender,
    failed_result,
    failure_for_status,
    sent_result,
)
from outbound.config import get_settings
from outbound.queue.backoff import FailureKind

logger = structlog.get_logger(__name__)


class EmailSender(ChannelSender):
    def __init__(self, client: httpx.Client | None = None):
        self.client = client or httpx.Client(timeout=get_settings().request_timeout_seconds)

    def send(self, message, instance) -> dict:
        settings = get_settings()
        base_url = instance.base_url or settings.email_api_url.rstrip("/")
        if not base_url:
            return failed_result("Email API URL is not configured", FailureKind.NO_INSTANCE)

        payload = {
            "from": settings.email_from_address,
            "to": [message.recipient_key],
            "subject": message.subject or message.message_type.replace("_", " ").capitalize(),
            "text": message.content,
        }
        if message.media_base64:
            payload["attachments"] = [
                {
                    "filename": message.media_filename or "attachment",
                    "content": message.media_base64,
                    "content_type": message.media_mimetype or "application/octet-stream",
                }
            ]

        headers = {}
        if instance.api_token:
            headers["Authorization"] = f"Bearer {instance.api_token}"

        try:
            response = self.client.post(f"{base_url}/send", json=payload, headers=headers)
        except httpx.TimeoutException as exc:
            return failed_result(f"Timeout calling email API: {exc}", FailureKind.TRANSIENT)
        except httpx.HTTPError as exc:
            return failed_result(f"Email API unreachable: {exc}", FailureKind.TRANSIENT)

        if response.is_success:
            try:
                transport_id = response.json().get("id")
            except (ValueError, AttributeError):
                transport_id = None
            return sent_result(str(transport_id) if transport_id else None)

        body = response.text[:ERROR_BODY_LIMIT]
        logger.info("Email API rejected message", status_code=response.status_code, body=body)
        if response.status_code in (401, 403):
            return failed_result(f"{response.status_code} - {body}", FailureKind.NO_INSTANCE, response.status_code)
        return failed_result(
            f"{response.status_code} - {body}",
            failure_for_status(response.status_code),
            response.status_code,
        )
